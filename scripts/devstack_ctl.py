from __future__ import annotations

import argparse
import asyncio
import sys

from controller.correlator import correlate, render_table
from controller.registry import ServiceRegistry, default_registry
from controller.service import StopOptions
from core.config import ToolConfig, default_config, load_config
from core.errors import CodeError
from core.logging import setup_logging
from core.ps import ProcessProbe


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dev stack supervision helper")
    parser.add_argument(
        "--config-root",
        default=".",
        help="Directory containing config/ (defaults to current working directory)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    pid = sub.add_parser("pid", help="Print running services and their shared pids")
    pid.add_argument("--type", dest="types", action="append", help="Restrict to a service type")

    stop_all = sub.add_parser("stop-all", help="Stop running services, dependents first")
    stop_all.add_argument("--type", dest="types", action="append", help="Restrict to a service type")
    stop_all.add_argument("--reset", action="store_true", help="Reset on-disk state once stopped")

    order = sub.add_parser("order", help="Print the start order of service types")
    order.add_argument("types", nargs="+")
    return parser


def _load(config_root: str) -> ToolConfig:
    try:
        return load_config(config_root)
    except FileNotFoundError:
        return default_config()


def _types(registry: ServiceRegistry, requested: list[str] | None) -> list[str]:
    if not requested:
        return registry.list_services()
    for name in requested:
        registry.get_service(name)
    return requested


async def _handle_pid(args: argparse.Namespace, cfg: ToolConfig) -> int:
    registry = default_registry()
    types = _types(registry, args.types)
    running = await registry.running_all(types, ProcessProbe(), cfg)
    print(render_table(correlate(running, registry.graph)))
    return 0


async def _handle_stop_all(args: argparse.Namespace, cfg: ToolConfig) -> int:
    registry = default_registry()
    types = _types(registry, args.types)
    probe = ProcessProbe()
    options = StopOptions(strict=False, reset=args.reset)
    failed = 0
    for name in registry.graph.stop_order(types):
        service_class = registry.get_service(name)
        result = await service_class.stop_all(None, options, probe, cfg)
        if result.ok:
            print(f"STOPPED {name}")
        else:
            failed += 1
            assert result.error is not None
            print(f"FAILED {name}: {result.error.message}", file=sys.stderr)
    return 1 if failed else 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    cfg = _load(args.config_root)

    if args.command == "order":
        try:
            print(" ".join(default_registry().graph.start_order(args.types)))
        except (KeyError, ValueError) as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 2
        return 0

    setup_logging(cfg.logging)
    try:
        if args.command == "pid":
            return asyncio.run(_handle_pid(args, cfg))
        if args.command == "stop-all":
            return asyncio.run(_handle_stop_all(args, cfg))
    except KeyError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except CodeError as exc:
        print(f"error: {exc.message} ({exc.code})", file=sys.stderr)
        return 1

    parser.error(f"Unknown command: {args.command}")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
