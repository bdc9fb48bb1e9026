"""Unit tests for the plan registry."""

import gc
import logging
from unittest import mock

import pytest

from radical.futures import configure, create_future, get_plan, set_plan, using_plan
from radical.futures.backends.execution.sequential import SequentialExecutionBackend
from radical.futures.plan import PlanRegistry, enter_worker, get_registry


class TestPlanRegistry:

    def test_default_plan_is_sequential(self):
        plan = get_plan()

        assert plan.name == "sequential"
        assert isinstance(plan.session, SequentialExecutionBackend)
        assert get_plan() is plan

    def test_default_plan_from_settings(self, monkeypatch):
        monkeypatch.setenv("RADICAL_FUTURES_PLAN", "Multisession")
        from radical.futures.config import reset_settings
        reset_settings()

        registry = PlanRegistry()
        with mock.patch("radical.futures.plan.factory") as factory:
            plan = registry.get_plan()

        factory.create_backend.assert_called_once_with("multisession", None)
        assert plan.session is factory.create_backend.return_value

    def test_set_plan_by_name_with_params(self):
        plan = set_plan("multisession", workers=2)
        try:
            assert plan.name == "multisession"
            assert plan.params.workers == 2
            assert get_plan() is plan
        finally:
            set_plan("sequential")
            get_registry().join_retiring()

    def test_set_plan_with_class_and_instance(self):
        plan = set_plan(SequentialExecutionBackend)
        assert isinstance(plan.session, SequentialExecutionBackend)

        session = SequentialExecutionBackend()
        assert set_plan(session).session is session

        with pytest.raises(TypeError):
            set_plan(session, workers=2)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            set_plan("does-not-exist")

    def test_invalid_params(self):
        with pytest.raises(ValueError):
            set_plan("multisession", bogus=1)

    def test_unsupported_spec(self):
        with pytest.raises(TypeError):
            set_plan(42)

    def test_using_plan_restores_previous(self):
        outer = get_plan()
        inner_session = SequentialExecutionBackend()

        with using_plan(inner_session) as inner:
            assert get_plan() is inner
            f = create_future(lambda: 1)
            assert f.session is inner_session

        assert get_plan() is outer
        assert not outer.session._closed
        assert f.value() == 1

    def test_using_plan_restores_on_error(self):
        outer = get_plan()

        with pytest.raises(RuntimeError):
            with using_plan(SequentialExecutionBackend()):
                raise RuntimeError("inside")

        assert get_plan() is outer


class TestRetirement:

    def test_superseded_session_is_shut_down_when_idle(self):
        old = get_plan().session
        set_plan(SequentialExecutionBackend())
        get_registry().join_retiring(timeout=5)

        assert old._closed

    def test_futures_keep_their_session(self):
        f = create_future(lambda: 1, lazy=True)
        old = f.session

        set_plan(SequentialExecutionBackend())

        assert f.session is old
        assert get_plan().session is not old
        assert f.value() == 1

    def test_lazy_future_keeps_retired_session_alive(self):
        plan = set_plan("multisession", workers=1)
        f = create_future(pow, args=(2, 10), lazy=True)

        set_plan("sequential")
        get_registry().join_retiring(timeout=0.5)

        assert not plan.session._closed
        assert f.value(timeout=60) == 1024

        get_registry().join_retiring(timeout=30)
        assert plan.session._closed

    def test_unsubmitted_future_reserves_its_session(self):
        session = get_plan().session
        f = create_future(lambda: 1, lazy=True)

        assert not session.idle()
        assert f.cancel()
        assert session.idle()

    def test_dropped_future_releases_its_session(self):
        session = get_plan().session
        f = create_future(lambda: 1, lazy=True)

        del f
        gc.collect()

        assert session.idle()

    def test_failed_creation_releases_its_session(self):
        session = get_plan().session

        with pytest.raises(TypeError):
            create_future(42)

        assert session.idle()

    def test_forced_shutdown_after_grace_period(self, caplog):
        configure(grace_period=0.05)
        session = mock.create_autospec(SequentialExecutionBackend, instance=True)
        session.name = "sequential"
        session.uid = "sequential.busy"
        session.params = SequentialExecutionBackend.Params()
        session.wait_idle.return_value = False

        set_plan(session)
        with caplog.at_level(logging.WARNING, logger="radical.futures.plan"):
            set_plan("sequential")
            get_registry().join_retiring(timeout=5)

        session.wait_idle.assert_called_once_with(0.05)
        session.shutdown.assert_called_once_with(wait=False)
        assert "forcing shutdown" in caplog.text

    def test_idle_session_shutdown_waits(self):
        session = mock.create_autospec(SequentialExecutionBackend, instance=True)
        session.name = "sequential"
        session.uid = "sequential.idle"
        session.params = SequentialExecutionBackend.Params()
        session.wait_idle.return_value = True

        set_plan(session)
        set_plan("sequential")
        get_registry().join_retiring(timeout=5)

        session.shutdown.assert_called_once_with(wait=True)


class TestWorkerMode:

    def test_enter_worker_forces_sequential(self):
        enter_worker()

        with mock.patch("radical.futures.plan.factory") as factory:
            factory.create_backend.return_value = SequentialExecutionBackend()
            plan = set_plan("multisession", workers=4)

        factory.create_backend.assert_called_once_with("sequential", None)
        assert plan.name == "sequential"
