import os
import time
import warnings

import pytest

from radical.futures import (
    CancellationError,
    FutureState,
    JobFailedError,
    create_future,
    set_plan,
    value,
)
from radical.futures.backends.execution.batch_job import PAYLOAD_FILE, RESULT_FILE

pytestmark = pytest.mark.integration


def square(x):
    return x * x


def sleepy():
    time.sleep(30)
    return "woke up"


def die():
    os._exit(4)


def warn_then_fail():
    warnings.warn("batch warning")
    raise ValueError("batch failure")


@pytest.fixture
def batch(tmp_path):
    plan = set_plan("batch", workdir=tmp_path / "jobs", poll_interval=0.05,
                    max_poll_interval=0.5)
    yield plan
    set_plan("sequential")
    plan.session.shutdown(wait=False)


def test_values(batch):
    futures = [create_future(square, args=(i,)) for i in range(5)]

    assert value(futures, timeout=120) == [0, 1, 4, 9, 16]


def test_job_directories_are_removed_after_collect(batch):
    f = create_future(square, args=(3,))
    jobdir = f._handle.native.jobdir

    assert (jobdir / PAYLOAD_FILE).exists()
    assert f.value(timeout=120) == 9
    assert not jobdir.exists()


def test_keep_files(tmp_path):
    plan = set_plan("batch", workdir=tmp_path, keep_files=True, poll_interval=0.05)
    try:
        f = create_future(square, args=(4,))
        assert f.value(timeout=120) == 16
        assert (f._handle.native.jobdir / RESULT_FILE).exists()
    finally:
        set_plan("sequential")


def test_error_and_conditions(batch):
    f = create_future(warn_then_fail)

    with pytest.warns(UserWarning, match="batch warning"):
        with pytest.raises(ValueError, match="batch failure"):
            f.value(timeout=120)
    assert f.state is FutureState.ERRORED


def test_job_without_result(batch):
    f = create_future(die)

    with pytest.raises(JobFailedError) as excinfo:
        f.value(timeout=120)
    assert excinfo.value.job_state == "FAILED"
    assert f.state is FutureState.ERRORED


def test_cancel_running_job(batch):
    f = create_future(sleepy)

    assert f.cancel()
    assert f.state is FutureState.CANCELLED
    with pytest.raises(CancellationError):
        f.value()


def test_source_expression(batch):
    base = 10
    f = create_future("base + 5")

    assert f.value(timeout=120) == 15
