"""Plan registry: which backend session new futures are submitted to.

There is one process-wide current plan. Changing it creates a new backend
session; the superseded session is retired in the background once all the
futures it owns have finished, or forcefully after a grace period.
"""

from __future__ import annotations

import atexit
import contextlib
import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Union

from pydantic import BaseModel

from .backends.execution.base import BaseExecutionBackend
from .backends.factory import factory
from .config import get_settings

logger = logging.getLogger(__name__)

PlanSpec = Union[str, type, BaseExecutionBackend]


@dataclass(frozen=True)
class Plan:
    """A backend name, its validated parameters and the live session."""

    name: str
    params: BaseModel
    session: BaseExecutionBackend


class PlanRegistry:
    """Holds the current plan and retires superseded sessions."""

    def __init__(self):
        self._lock = threading.RLock()
        self._plan: Optional[Plan] = None
        self._retiring: list[threading.Thread] = []
        self._in_worker = False

    def _build(self, spec: PlanSpec, config: Optional[dict[str, Any]],
               params: dict[str, Any]) -> Plan:
        if isinstance(spec, BaseExecutionBackend):
            if config or params:
                raise TypeError("Parameters cannot be given with a backend instance")
            return Plan(spec.name, spec.params, spec)

        if isinstance(spec, type) and issubclass(spec, BaseExecutionBackend):
            session = spec(spec.Params(**{**(config or {}), **params}))
            return Plan(spec.name, session.params, session)

        if not isinstance(spec, str):
            raise TypeError(f"Unsupported plan specification: {spec!r}")

        name = spec.strip().lower()
        if self._in_worker and name != "sequential":
            logger.debug(f"Ignoring plan '{name}' inside a worker, using sequential")
            name, config, params = "sequential", None, {}
        session = factory.create_backend(name, config, **params)
        return Plan(name, session.params, session)

    def _swap(self, new: Plan, retire: bool) -> Optional[Plan]:
        with self._lock:
            old, self._plan = self._plan, new
        logger.info(f"Plan set to '{new.name}' ({new.session.uid})")
        if retire and old is not None and old.session is not new.session:
            self._retire(old)
        return old

    def get_plan(self) -> Plan:
        """The current plan, created from the default settings on first use."""
        with self._lock:
            if self._plan is None:
                name = "sequential" if self._in_worker else get_settings().plan
                self._plan = self._build(name, None, {})
                logger.debug(f"Default plan '{self._plan.name}' created")
            return self._plan

    def bind(self, uid: str) -> Plan:
        """The current plan, with its session reserved for future ``uid``.

        Reading the plan and reserving happen under the registry lock, so a
        concurrent plan change cannot retire the session in between.
        """
        with self._lock:
            plan = self.get_plan()
            plan.session.reserve(uid)
            return plan

    def set_plan(self, backend: PlanSpec = "sequential",
                 config: Optional[dict[str, Any]] = None, **params) -> Plan:
        """Make ``backend`` the plan for futures created from now on.

        Futures created earlier keep running on their own session, which is
        retired once they finished.

        Args:
            backend: Registered backend name, backend class, or an existing
                backend session.
            config: Backend parameters as a dictionary.
            **params: Backend parameters, overriding ``config``.

        Returns:
            Plan: The new current plan.
        """
        plan = self._build(backend, config, params)
        self._swap(plan, retire=True)
        return plan

    @contextlib.contextmanager
    def using_plan(self, backend: PlanSpec = "sequential",
                   config: Optional[dict[str, Any]] = None,
                   **params) -> Iterator[Plan]:
        """Temporarily switch plans; the previous plan is restored on exit."""
        previous = self.get_plan()
        plan = self._build(backend, config, params)
        self._swap(plan, retire=False)
        try:
            yield plan
        finally:
            self._swap(previous, retire=True)

    def _retire(self, plan: Plan) -> None:
        grace = get_settings().grace_period
        thread = threading.Thread(target=self._teardown, args=(plan.session, grace),
                                  daemon=True, name=f"retire-{plan.session.uid}")
        with self._lock:
            self._retiring = [t for t in self._retiring if t.is_alive()]
            self._retiring.append(thread)
        thread.start()

    @staticmethod
    def _teardown(session: BaseExecutionBackend, grace: float) -> None:
        if session.wait_idle(grace):
            logger.debug(f"Retired session {session.uid} is idle, shutting down")
            session.shutdown(wait=True)
            return
        logger.warning(f"Session {session.uid} still has running futures after "
                       f"the grace period of {grace}s, forcing shutdown")
        session.shutdown(wait=False)

    def join_retiring(self, timeout: Optional[float] = None) -> None:
        """Wait for retired sessions to be torn down."""
        with self._lock:
            threads = list(self._retiring)
        for thread in threads:
            thread.join(timeout)

    def enter_worker(self) -> None:
        """Force this process's plan to sequential (called in worker processes)."""
        with self._lock:
            if self._in_worker:
                return
            self._in_worker = True
            current = self._plan
            self._plan = None
        if current is not None and current.name != "sequential":
            current.session.shutdown(wait=False)

    def leave_worker(self) -> None:
        with self._lock:
            self._in_worker = False

    def shutdown(self, wait: bool = True) -> None:
        """Shut the current session down and forget the plan."""
        with self._lock:
            plan, self._plan = self._plan, None
        if plan is not None:
            plan.session.shutdown(wait=wait)
        self.join_retiring(timeout=None if wait else 0)


_registry = PlanRegistry()
atexit.register(_registry.shutdown, wait=False)


def get_registry() -> PlanRegistry:
    return _registry


def get_plan() -> Plan:
    return _registry.get_plan()


def bind_plan(uid: str) -> Plan:
    return _registry.bind(uid)


def set_plan(backend: PlanSpec = "sequential",
             config: Optional[dict[str, Any]] = None, **params) -> Plan:
    return _registry.set_plan(backend, config, **params)


def using_plan(backend: PlanSpec = "sequential",
               config: Optional[dict[str, Any]] = None, **params):
    return _registry.using_plan(backend, config, **params)


def enter_worker() -> None:
    _registry.enter_worker()


def reset_plan() -> None:
    """Shut down the current plan and leave worker mode, so the next plan
    comes from the settings again."""
    _registry.shutdown(wait=True)
    _registry.leave_worker()
