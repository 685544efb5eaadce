"""
Unit tests for core/cancellation.py

- Token state
- run(): racing a single await
- iterate(): racing every item of a stream
"""

import asyncio

import pytest
from core.cancellation import CancellationToken
from core.errors import AnalysisCancelled


# =============================================================================
# State
# =============================================================================

def test_cancel_is_idempotent():
    token = CancellationToken("t")
    token.cancel("first")
    token.cancel("second")
    assert token.is_cancelled()
    assert token.reason == "first"


def test_raise_if_cancelled():
    token = CancellationToken()
    token.raise_if_cancelled()
    token.cancel()
    with pytest.raises(AnalysisCancelled):
        token.raise_if_cancelled()


# =============================================================================
# run()
# =============================================================================

@pytest.mark.asyncio
async def test_run_returns_result():
    async def work():
        return 42

    assert await CancellationToken().run(work()) == 42


@pytest.mark.asyncio
async def test_run_propagates_errors():
    async def work():
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await CancellationToken().run(work())


@pytest.mark.asyncio
async def test_run_already_cancelled_never_starts_work():
    started = []

    async def work():
        started.append(True)

    token = CancellationToken()
    token.cancel()
    with pytest.raises(AnalysisCancelled):
        await token.run(work())
    assert started == []


@pytest.mark.asyncio
async def test_run_aborts_in_flight_await():
    """Cancelling mid-await cancels the underlying task"""
    token = CancellationToken()
    aborted = asyncio.Event()

    async def slow():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            aborted.set()
            raise

    async def stop_soon():
        await asyncio.sleep(0.01)
        token.cancel()

    stopper = asyncio.ensure_future(stop_soon())
    with pytest.raises(AnalysisCancelled):
        await token.run(slow())
    await stopper
    assert aborted.is_set()


# =============================================================================
# iterate()
# =============================================================================

@pytest.mark.asyncio
async def test_iterate_yields_all_items():
    async def source():
        for item in ("a", "b", "c"):
            yield item

    items = [item async for item in CancellationToken().iterate(source())]
    assert items == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_iterate_stops_between_items_and_closes_source():
    token = CancellationToken()
    closed = []

    async def source():
        try:
            for i in range(100):
                yield i
        finally:
            closed.append(True)

    seen = []
    with pytest.raises(AnalysisCancelled):
        async for item in token.iterate(source()):
            seen.append(item)
            if item == 2:
                token.cancel()
    assert seen == [0, 1, 2]
    assert closed == [True]


@pytest.mark.asyncio
async def test_iterate_aborts_stalled_stream():
    """A stream waiting on the network is interrupted by cancel()"""
    token = CancellationToken()

    async def source():
        yield "first"
        await asyncio.sleep(10)
        yield "never"

    seen = []

    async def consume():
        async for item in token.iterate(source()):
            seen.append(item)

    task = asyncio.ensure_future(consume())
    await asyncio.sleep(0.01)
    token.cancel()
    with pytest.raises(AnalysisCancelled):
        await task
    assert seen == ["first"]
