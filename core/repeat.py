"""Bounded, cancellable polling loop used by every readiness wait."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from core.config import RetryPolicy
from core.errors import OperationCancelledError, OperationTimeoutError, Result

logger = logging.getLogger(__name__)

PollFunc = Callable[[], Awaitable[Any] | Any]


async def sleep_or_cancel(delay: float, cancel: asyncio.Event | None) -> bool:
    """Sleep ``delay`` seconds; return True if ``cancel`` fired meanwhile."""
    if cancel is None:
        if delay > 0:
            await asyncio.sleep(delay)
        return False
    if cancel.is_set():
        return True
    if delay <= 0:
        return False
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    return cancel.is_set()


async def repeat_call_until(
    func: PollFunc,
    policy: RetryPolicy,
    cancel: asyncio.Event | None = None,
    description: str = "operation",
) -> Result:
    """Call ``func`` until it returns a truthy-enough value.

    ``None`` or ``False`` mean "not yet"; so does an exception raised by
    ``func``. Any other value stops the loop and is returned as the
    success payload.

    Args:
        func: Sync or async zero-argument callable
        policy: Initial delay, inter-call delay and call budget
        cancel: Optional event; once set the loop stops with a cancellation
        description: Label used in log lines and error messages

    Returns:
        ``Result.success(value)`` on success, otherwise a failed Result holding
        :class:`OperationCancelledError` or :class:`OperationTimeoutError`
    """
    if policy.max_calls <= 0:
        raise ValueError(f"max_calls must be > 0, got {policy.max_calls}")

    if await sleep_or_cancel(policy.wait_before_first_call, cancel):
        return Result.failure(OperationCancelledError(f"{description} cancelled"))

    for call_index in range(policy.max_calls):
        if call_index > 0 and await sleep_or_cancel(policy.wait_between_calls, cancel):
            return Result.failure(OperationCancelledError(f"{description} cancelled"))

        try:
            out = func()
            if inspect.isawaitable(out):
                out = await out
        except Exception as exc:
            logger.debug("%s: call %d raised %r", description, call_index + 1, exc)
            out = False

        if out is not None and out is not False:
            return Result.success(out)

    return Result.failure(
        OperationTimeoutError(f"{description} timed out after {policy.max_calls} calls")
    )
