"""Unit tests for the Future state machine."""

import threading
import warnings
from unittest import mock

import pytest

from radical.futures import (
    BackendConnectivityError,
    CancellationError,
    FutureState,
    FutureStateError,
    HandleStatus,
    create_future,
    future,
    message,
    resolved,
    value,
)
from radical.futures.backends.execution.base import BaseExecutionBackend, Handle
from radical.futures.evaluator import evaluate
from radical.futures.future import Future
from radical.futures.plan import Plan
from radical.futures.workitem import build_work_item


class ManualBackend(BaseExecutionBackend):
    """Evaluates work items only when the test releases them."""

    name = "manual"

    def __init__(self):
        super().__init__()
        self.items = {}
        self.started = set()
        self.lost = set()

    def submit(self, item):
        self.items[item.uid] = item
        return Handle(uid=item.uid)

    def release(self, uid):
        handle = next(h for h in self.owned() if h.uid == uid)
        handle.result = evaluate(self.items[uid])

    def poll(self, handle):
        if handle.uid in self.lost:
            return HandleStatus.FAILED
        if handle.result is None:
            return HandleStatus.PENDING
        return HandleStatus.DONE if handle.result.ok else HandleStatus.FAILED

    def collect(self, handle, timeout=None):
        if handle.uid in self.lost:
            raise BackendConnectivityError("worker vanished", worker="host:1")
        if handle.result is None:
            raise TimeoutError(handle.uid)
        return handle.result

    def cancel(self, handle):
        return handle.uid not in self.started

    def running(self, handle):
        return handle.uid in self.started

    def shutdown(self, wait=True):
        self._closed = True

    def nbr_of_workers(self):
        return 1


@pytest.fixture
def manual():
    backend = ManualBackend()
    return backend, Plan("manual", backend.params, backend)


def make(plan, expression, **kwargs):
    item, _ = build_work_item(expression, **kwargs)
    return Future(item, plan)


class TestTransitions:

    def test_resolved_on_sequential_plan(self):
        f = create_future(lambda: 1)

        assert f.state is FutureState.SUBMITTED
        assert f.resolved()
        assert f.state is FutureState.RESOLVED
        assert f.value() == 1

    def test_pending_then_running_then_resolved(self, manual):
        backend, plan = manual
        f = make(plan, lambda: 2)

        assert not f.resolved()
        assert f.state is FutureState.SUBMITTED

        backend.started.add(f.uid)
        assert f.running()
        assert f.state is FutureState.RUNNING

        backend.release(f.uid)
        assert f.resolved()
        assert f.state is FutureState.RESOLVED
        assert not backend.owned()

    def test_timeout_leaves_state(self, manual):
        _, plan = manual
        f = make(plan, lambda: 3)

        with pytest.raises(TimeoutError):
            f.value(timeout=0)
        assert f.state is FutureState.SUBMITTED

    def test_invalid_transition(self):
        f = create_future(lambda: 1)
        f.value()

        with pytest.raises(FutureStateError):
            f._transition(FutureState.RUNNING)

    def test_errored(self):
        def boom():
            raise ValueError("bad input")

        f = create_future(boom)

        assert f.resolved()
        assert f.state is FutureState.ERRORED
        assert isinstance(f.result().error, ValueError)


class TestLazy:

    def test_lazy_future_is_not_submitted(self, manual):
        backend, plan = manual
        item, _ = build_work_item(lambda: 4)
        f = Future(item, plan, lazy=True)

        assert f.state is FutureState.CREATED
        assert backend.items == {}

        with pytest.raises(FutureStateError):
            f.collect()

    def test_value_submits_lazy_future(self):
        f = create_future(lambda: 5, lazy=True)

        assert f.state is FutureState.CREATED
        assert f.value() == 5
        assert f.state is FutureState.RESOLVED

    def test_double_submit(self):
        f = create_future(lambda: 6, lazy=True)
        f.submit()

        with pytest.raises(FutureStateError):
            f.submit()


class TestCancel:

    def test_cancel_created(self):
        f = create_future(lambda: 1, lazy=True)

        assert f.cancel()
        assert f.state is FutureState.CANCELLED
        with pytest.raises(CancellationError):
            f.value()

    def test_cancel_queued(self, manual):
        backend, plan = manual
        f = make(plan, lambda: 1)

        assert f.cancel()
        assert f.cancel()
        assert f.state is FutureState.CANCELLED
        assert f.resolved()
        assert not backend.owned()

    def test_cancel_running_is_refused(self, manual):
        backend, plan = manual
        f = make(plan, lambda: 1)
        backend.started.add(f.uid)

        assert not f.cancel()
        assert f.state is FutureState.SUBMITTED

    def test_cancel_resolved_is_a_no_op(self):
        f = create_future(lambda: 1)
        f.value()

        assert not f.cancel()
        assert f.state is FutureState.RESOLVED


class TestValue:

    def test_collect_is_idempotent(self):
        f = create_future(lambda: [1])
        assert f.collect() is f.collect()

    def test_error_raised_on_every_call(self):
        def boom():
            raise KeyError("k")

        f = create_future(boom)

        for _ in range(3):
            with pytest.raises(KeyError):
                f.value()

    def test_conditions_replayed_once(self, capsys):
        def chatty():
            print("out")
            message("msg")
            warnings.warn("careful")
            return 1

        f = create_future(chatty)

        # nothing is signalled before the value is requested
        assert capsys.readouterr() == ("", "")

        with pytest.warns(UserWarning, match="careful"):
            assert f.value() == 1
        assert capsys.readouterr() == ("out\n", "msg\n")

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            assert f.value() == 1
        assert capsys.readouterr() == ("", "")

    def test_warnings_replayed_before_error(self):
        def warn_then_fail():
            warnings.warn("first")
            raise RuntimeError("second")

        f = create_future(warn_then_fail)

        with pytest.warns(UserWarning, match="first"):
            with pytest.raises(RuntimeError, match="second"):
                f.value()

    def test_lost_backend_errors_the_future(self, manual):
        backend, plan = manual
        f = make(plan, lambda: 1)
        backend.lost.add(f.uid)

        with pytest.raises(BackendConnectivityError):
            f.value()
        assert f.state is FutureState.ERRORED
        # the failure is recorded, not re-fetched
        with mock.patch.object(backend, "collect") as collect:
            with pytest.raises(BackendConnectivityError):
                f.value()
            collect.assert_not_called()

    def test_conditions_property(self):
        f = create_future(lambda: 1, lazy=True)
        assert f.conditions is None

        f.value()
        assert len(f.conditions) == 0

    def test_concurrent_value_calls(self, manual):
        backend, plan = manual
        f = make(plan, lambda: 9)
        backend.release(f.uid)

        results = []
        threads = [threading.Thread(target=lambda: results.append(f.value()))
                   for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == [9] * 4


class TestHelpers:

    def test_future_shorthand_with_source(self):
        x = 20
        f = future("x + 1")
        assert f.value() == 21
        assert x == 20

    def test_future_shorthand_with_arguments(self):
        assert future(pow, 2, 5).value() == 32

    def test_value_of_collections(self):
        fs = {"a": future(lambda: 1), "b": [future(lambda: 2), 3]}

        assert value(fs) == {"a": 1, "b": [2, 3]}
        assert resolved(fs) == {"a": True, "b": [True, True]}

    def test_future_is_bound_to_its_plan(self):
        f = create_future(lambda: 1, lazy=True)
        plan = f.plan

        from radical.futures import set_plan
        set_plan("sequential")

        assert f.plan is plan
        assert f.value() == 1

    def test_repr(self):
        f = create_future(lambda: 1, label="answer")
        assert "answer" in repr(f)
        assert "sequential" in repr(f)
