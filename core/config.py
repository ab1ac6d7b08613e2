from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, cast

from pydantic import BaseModel, Field


class AppCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    name: str = "devstack"
    env_prefix: str = "DEVSTACK"


class LoggingCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    level: str = "INFO"
    json_format: bool = False
    log_dir: Path = Path("var/log/devstack")


class PathsCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    run_dir: Path = Path("var/run/devstack")
    tmp_dir: Path = Path("var/tmp/devstack")


class RetryPolicy(BaseModel):
    """Bounded polling schedule (delays in seconds)."""

    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid", "frozen": True}

    wait_before_first_call: float = 0.1
    wait_between_calls: float = 1.0
    max_calls: int = 20


class ReadinessCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    pid_poll: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(
            wait_before_first_call=0.1, wait_between_calls=1.0, max_calls=200
        )
    )
    log_scan: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(
            wait_before_first_call=0.2, wait_between_calls=0.4, max_calls=200
        )
    )
    rpc_probe: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(
            wait_before_first_call=0.2, wait_between_calls=0.4, max_calls=200
        )
    )
    stop: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(
            wait_before_first_call=0.1, wait_between_calls=1.0, max_calls=20
        )
    )
    bash_timeout: float = 5.0


class PortRange(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid", "frozen": True}

    start: int
    end: int


class PortsCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    ganache: PortRange = PortRange(start=8545, end=8554)
    ipfs_api: PortRange = PortRange(start=5002, end=5002)
    ipfs_gateway: PortRange = PortRange(start=13900, end=13900)
    mongo: PortRange = PortRange(start=13500, end=13599)
    redis: PortRange = PortRange(start=13600, end=13699)
    market_api: PortRange = PortRange(start=3000, end=3009)
    market_mongo: PortRange = PortRange(start=27020, end=27029)
    market_redis: PortRange = PortRange(start=27030, end=27039)
    core: PortRange = PortRange(start=13000, end=13099)
    worker: PortRange = PortRange(start=13100, end=13199)
    resultproxy: PortRange = PortRange(start=13200, end=13299)
    sms: PortRange = PortRange(start=13300, end=13399)
    blockchainadapter: PortRange = PortRange(start=13400, end=13499)


class ToolConfig(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    app: AppCfg = Field(default_factory=AppCfg)
    logging: LoggingCfg = Field(default_factory=LoggingCfg)
    paths: PathsCfg = Field(default_factory=PathsCfg)
    readiness: ReadinessCfg = Field(default_factory=ReadinessCfg)
    ports: PortsCfg = Field(default_factory=PortsCfg)

    def env_var_name(self, name: str) -> str:
        """Return the prefixed marker env var name, e.g. ``DEVSTACK_HOST``."""
        return f"{self.app.env_prefix}_{name.upper()}"


def _read_yaml(path: Path) -> dict[str, Any]:
    """Safe YAML read; returns {} if file missing/empty."""
    import yaml  # lazy import

    if not path.exists():
        return {}
    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    return data or {}


def default_config() -> ToolConfig:
    """Return the all-defaults configuration."""
    return ToolConfig()


def load_config(base_dir: str | Path) -> ToolConfig:
    """Load config models from ./config/base.yaml."""

    base_path = Path(base_dir)
    base_yaml = base_path / "config" / "base.yaml"
    data = _read_yaml(base_yaml)
    if not data:
        msg = f"Missing or empty config file: {base_yaml}"
        raise FileNotFoundError(msg)

    return cast(ToolConfig, ToolConfig.model_validate(data))
