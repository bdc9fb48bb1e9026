# tests/integration/backends/test_dask_parallel.py

import warnings

import pytest

pytest.importorskip("distributed")

from radical.futures import FutureState, create_future, factory, set_plan, value  # noqa: E402

pytestmark = pytest.mark.integration


def square(x):
    return x * x


def warn_then_fail():
    warnings.warn("dask warning")
    raise KeyError("dask failure")


@pytest.fixture(scope="function")
def backend():
    # Setup: create backend with a small local cluster
    backend = factory.create_backend(
        "dask",
        config={"n_workers": 2, "threads_per_worker": 1,
                "client_options": {"dashboard_address": None}},
    )
    set_plan(backend)
    yield backend
    set_plan("sequential")
    backend.shutdown()


def test_values_with_dask_backend(backend):
    futures = [create_future(square, args=(i,)) for i in range(10)]

    assert value(futures, timeout=120) == [i * i for i in range(10)]
    assert backend.nbr_of_workers() == 2


def test_error_and_warning_with_dask_backend(backend):
    f = create_future(warn_then_fail)

    with pytest.warns(UserWarning, match="dask warning"):
        with pytest.raises(KeyError):
            f.value(timeout=120)
    assert f.state is FutureState.ERRORED


def test_seeded_futures_match_sequential(backend):
    from radical.futures import set_root_seed, using_plan

    def draw():
        import random
        return random.random()

    set_root_seed(7)
    remote = value([create_future(draw, seed=True) for _ in range(3)], timeout=120)

    set_root_seed(7)
    with using_plan("sequential"):
        local = value([create_future(draw, seed=True) for _ in range(3)])

    assert remote == local
