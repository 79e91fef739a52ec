"""Fire-and-forget coroutines whose failure never reaches the caller."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

from shopchat.log import get_logger

logger = get_logger(__name__)

# Strong references so pending tasks are not garbage collected mid-flight.
_background: set[asyncio.Task[None]] = set()


async def _guarded(coro: Coroutine[Any, Any, Any], event: str, fields: dict[str, Any]) -> None:
    try:
        await coro
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(event, error=str(e), **fields)


def spawn_best_effort(
    coro: Coroutine[Any, Any, Any], event: str, **fields: Any
) -> asyncio.Task[None]:
    """Schedule ``coro`` on the running loop. The task always resolves to None.

    A failure is logged under ``event`` with ``fields`` and discarded.
    """
    task = asyncio.create_task(_guarded(coro, event, fields))
    _background.add(task)
    task.add_done_callback(_background.discard)
    return task


async def drain(timeout: float = 5.0) -> None:
    """Wait for outstanding best-effort tasks, used on shutdown and in tests."""
    pending = [t for t in _background if not t.done()]
    if pending:
        await asyncio.wait(pending, timeout=timeout)
