"""
# core/cancellation.py

Module Contract
- Purpose: Per-run cooperative cancellation. One CancellationToken is created per pipeline run and handed to every suspendable call.
- Inputs:
  - cancel(reason) from a user-visible stop action
- Outputs:
  - is_cancelled(), raise_if_cancelled(), wait()
  - run(awaitable): races a network await against the token; on cancel the awaitable's task is cancelled and AnalysisCancelled is raised
  - iterate(async_iterable): same race applied to every __anext__ of a stream
- Side effects:
  - Cancels asyncio tasks it created itself; never touches tasks it does not own.
"""
import asyncio
from typing import AsyncIterable, AsyncIterator, Awaitable, Optional, TypeVar

from core.errors import AnalysisCancelled
from utils.logging_utils import get_logger

logger = get_logger("cancellation")

T = TypeVar("T")
_EXHAUSTED = object()


async def _next_item(iterator: AsyncIterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


class CancellationToken:
    """Cancellation handle for exactly one pipeline run"""

    def __init__(self, label: str = ""):
        self.label = label
        self.reason: Optional[str] = None
        self._event = asyncio.Event()

    def cancel(self, reason: str = "stopped by user") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info(f"[CANCEL] Token {self.label or id(self)} cancelled: {reason}")

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AnalysisCancelled()

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first."""
        if self.is_cancelled():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise AnalysisCancelled()

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()
            if not work.done():
                work.cancel()
                # Let the aborted call unwind its transport before we report
                await asyncio.gather(work, return_exceptions=True)

        if work.cancelled():
            raise AnalysisCancelled()
        return work.result()

    async def iterate(self, source: AsyncIterable[T]) -> AsyncIterator[T]:
        """Yield items from ``source``, checking the token before and between items."""
        iterator = source.__aiter__()
        try:
            while True:
                self.raise_if_cancelled()
                item = await self.run(_next_item(iterator))
                if item is _EXHAUSTED:
                    return
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
