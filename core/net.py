from __future__ import annotations

import asyncio
import contextlib


async def is_port_in_use(hostname: str, port: int, timeout: float = 0.5) -> bool:
    """Return True when something accepts TCP connections on ``hostname:port``."""

    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(hostname, port), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True
