import asyncio

import pytest

from radical.futures import FutureState, create_future, value


@pytest.mark.asyncio
async def test_future_is_awaitable():
    f = create_future(lambda: 6 * 7)

    assert await f == 42
    assert f.state is FutureState.RESOLVED


@pytest.mark.asyncio
async def test_gather_futures():
    futures = [create_future(lambda i=i: i * i) for i in range(5)]

    results = await asyncio.gather(*futures)

    assert results == [0, 1, 4, 9, 16]


@pytest.mark.asyncio
async def test_awaiting_errored_future_raises():
    def boom():
        raise ValueError("boom")

    f = create_future(boom)

    with pytest.raises(ValueError, match="boom"):
        await f


@pytest.mark.asyncio
async def test_coroutine_function_expression_inside_running_loop():
    async def compute(x):
        await asyncio.sleep(0.01)
        return x + 1

    # sequential evaluation happens while this test's loop is running
    f = create_future(compute, args=(1,))

    assert value(f) == 2
