from __future__ import annotations

import asyncio
from typing import AsyncIterator, Awaitable, TypeVar

from session_engine.errors import CancellationError

T = TypeVar("T")


async def race_abort(awaitable: Awaitable[T], abort: asyncio.Event | None) -> T:
    """Await ``awaitable`` unless ``abort`` fires first, in which case raise CancellationError."""
    if abort is None:
        return await awaitable
    if abort.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise CancellationError()
    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(abort.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        # The source must be idle before its owner can close it.
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise
    finally:
        waiter.cancel()
    if work.done():
        return work.result()
    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise CancellationError()


async def iterate_until_abort(source: AsyncIterator[T], abort: asyncio.Event | None) -> AsyncIterator[T]:
    """Yield from ``source``, checking ``abort`` at every step."""
    iterator = source.__aiter__()
    try:
        while True:
            try:
                item = await race_abort(iterator.__anext__(), abort)
            except StopAsyncIteration:
                return
            yield item
    finally:
        close = getattr(iterator, "aclose", None)
        if close is not None:
            await close()
