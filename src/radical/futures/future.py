"""Futures: deferred values evaluated by the backend of the current plan."""

from __future__ import annotations

import asyncio
import logging
import threading
import weakref
from collections.abc import Iterable, Mapping
from typing import Any, Optional

from .conditions import ConditionLog, replay_conditions
from .constants import TRANSITIONS, FutureState, HandleStatus
from .errors import BackendConnectivityError, CancellationError, FutureStateError
from .plan import Plan, bind_plan, get_plan
from .result import FutureResult
from .utils import caller_environment, get_next_uid
from .workitem import Expression, WorkItem, build_work_item

logger = logging.getLogger(__name__)


class Future:
    """A value that is being, or will be, computed by a backend.

    A future is bound to the plan that was current when it was created, and
    keeps using that plan's backend session even if the plan changes.

    Attributes:
        uid: Unique identifier, e.g. ``future.000001``.
        item: The immutable work item.
        lazy: Whether submission is deferred until the value is needed.
    """

    def __init__(self, item: WorkItem, plan: Optional[Plan] = None, *,
                 lazy: bool = False):
        self.uid = item.uid
        self.item = item
        self.lazy = lazy
        if plan is None:
            plan = bind_plan(self.uid)
        else:
            plan.session.reserve(self.uid)
        self._plan = plan
        # a future dropped before submission no longer holds its session
        weakref.finalize(self, plan.session.unreserve, self.uid)
        self._lock = threading.RLock()
        self._state = FutureState.CREATED
        self._handle = None
        self._result: Optional[FutureResult] = None
        self._replayed = False

        if not lazy:
            self.submit()

    @property
    def state(self) -> FutureState:
        return self._state

    @property
    def plan(self) -> Plan:
        return self._plan

    @property
    def session(self):
        return self._plan.session

    @property
    def label(self) -> Optional[str]:
        return self.item.label

    def _transition(self, new: FutureState) -> None:
        if new not in TRANSITIONS[self._state]:
            raise FutureStateError(
                f"{self.uid}: invalid transition {self._state.value} -> {new.value}")
        logger.debug(f"{self.uid}: {self._state.value} -> {new.value}")
        self._state = new

    def submit(self) -> Future:
        """Hand the work item to the plan's backend.

        Raises:
            FutureStateError: If the future was already submitted or cancelled.
            DependencyTransferError: If the work item cannot be transferred.
        """
        with self._lock:
            if self._state is not FutureState.CREATED:
                raise FutureStateError(
                    f"{self.uid} cannot be submitted in state {self._state.value}")
            try:
                handle = self.session.submit(self.item)
            except Exception:
                self.session.unreserve(self.uid)
                raise
            self.session.attach(handle)
            self._handle = handle
            self._transition(FutureState.SUBMITTED)
        return self

    def _ensure_submitted(self) -> None:
        with self._lock:
            if self._state is FutureState.CREATED:
                self.submit()

    def resolved(self) -> bool:
        """Non-blocking check whether the value is available.

        Submits a lazy future that was not submitted yet.
        """
        with self._lock:
            if self._state.terminal:
                return True
            self._ensure_submitted()

            status = self.session.poll(self._handle)
            if status is HandleStatus.PENDING:
                if self._state is FutureState.SUBMITTED and self.session.running(self._handle):
                    self._transition(FutureState.RUNNING)
                return False

            self.collect()
            return True

    def running(self) -> bool:
        with self._lock:
            if self._state in (FutureState.SUBMITTED, FutureState.RUNNING):
                self.resolved()
            return self._state is FutureState.RUNNING

    def done(self) -> bool:
        return self.resolved()

    def collect(self, timeout: Optional[float] = None) -> FutureResult:
        """Block until the backend delivered the result and record it.

        Collecting is idempotent: once terminal, the same result is returned
        without contacting the backend again.

        Raises:
            FutureStateError: If the future was never submitted.
            CancellationError: If the future was cancelled.
            TimeoutError: If ``timeout`` passed without a result.
        """
        with self._lock:
            if self._state is FutureState.CANCELLED:
                raise CancellationError(f"{self.uid} was cancelled")
            if self._state is FutureState.CREATED:
                raise FutureStateError(f"{self.uid} was never submitted")
            if self._result is not None:
                return self._result

            try:
                result = self.session.collect(self._handle, timeout)
            except BackendConnectivityError as e:
                logger.warning(f"{self.uid} lost its execution context: {e}")
                result = FutureResult.failure(e, worker=e.worker)
            except CancellationError:
                self._transition(FutureState.CANCELLED)
                self.session.detach(self._handle)
                raise

            self._result = result
            self._transition(FutureState.RESOLVED if result.ok else FutureState.ERRORED)
            self.session.detach(self._handle)
            return result

    def result(self, timeout: Optional[float] = None) -> FutureResult:
        """The evaluation outcome, without replaying conditions or raising."""
        self._ensure_submitted()
        return self.collect(timeout)

    def value(self, timeout: Optional[float] = None) -> Any:
        """The value of the expression.

        Blocks until it is available. The conditions captured during
        evaluation (output, messages, warnings, log records) are re-signalled
        here on the first call. If the expression raised, its exception is
        raised, on every call.

        Raises:
            CancellationError: If the future was cancelled.
            TimeoutError: If ``timeout`` passed without a result.
        """
        result = self.result(timeout)
        with self._lock:
            replay = not self._replayed
            self._replayed = True
        if replay:
            replay_conditions(result.conditions, stdout=self.item.stdout)
        result.raise_error()
        return result.value

    def cancel(self) -> bool:
        """Try to cancel the future.

        Returns:
            bool: ``True`` if the future is now cancelled. A future already
            resolved, or whose backend cannot stop it, is left unchanged.
        """
        with self._lock:
            if self._state.terminal:
                return self._state is FutureState.CANCELLED
            if self._state is FutureState.CREATED:
                self._transition(FutureState.CANCELLED)
                self.session.unreserve(self.uid)
                return True
            if not self.session.cancel(self._handle):
                return False
            self._transition(FutureState.CANCELLED)
            self.session.detach(self._handle)
            logger.debug(f"{self.uid} cancelled")
            return True

    @property
    def conditions(self) -> Optional[ConditionLog]:
        return self._result.conditions if self._result is not None else None

    def __await__(self):
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, self.value).__await__()

    def __repr__(self) -> str:
        label = f", label={self.label!r}" if self.label else ""
        return (f"Future(uid={self.uid!r}, state={self._state.value}, "
                f"backend={self._plan.name!r}{label})")


def create_future(expression: Expression,
                  *,
                  args: tuple = (),
                  kwargs: Optional[Mapping[str, Any]] = None,
                  env: Optional[Mapping[str, Any]] = None,
                  seed: Any = False,
                  lazy: bool = False,
                  globals: Any = True,
                  packages: Iterable[str] = (),
                  stdout: Optional[bool] = None,
                  label: Optional[str] = None) -> Future:
    """Create a future evaluating ``expression`` on the current plan.

    Args:
        expression: A callable, called with ``args``/``kwargs``, or Python
            source code whose last expression statement gives the value.
        env: Namespace source code is evaluated against. Defaults to the
            caller's locals and globals.
        seed: ``True`` assigns the next parallel-safe RNG stream, an int or
            six-integer sequence a specific one.
        lazy: Defer submission until the value is requested.
        globals: ``True`` exports the free variables found by scanning, a
            list of names or a mapping exports exactly those, ``False`` none.
        packages: Extra modules to import before evaluation.
        stdout: Capture and relay standard output (default from settings).
        label: Optional name for logs and ``repr``.

    Returns:
        Future: The new future, already submitted unless ``lazy``.
    """
    if isinstance(expression, str) and env is None:
        env = caller_environment()

    uid = f"future.{get_next_uid()}"
    plan = bind_plan(uid)
    try:
        item, _ = build_work_item(expression, args=tuple(args), kwargs=kwargs,
                                  env=env, seed=seed, globals=globals,
                                  packages=packages, stdout=stdout, label=label,
                                  uid=uid)
    except Exception:
        plan.session.unreserve(uid)
        raise
    return Future(item, plan, lazy=lazy)


def future(expression: Expression, *args, **kwargs) -> Future:
    """Shorthand for ``create_future(expression, args=args, kwargs=kwargs)``."""
    env = caller_environment() if isinstance(expression, str) else None
    return create_future(expression, args=args, kwargs=kwargs, env=env)


def value(obj: Any, timeout: Optional[float] = None) -> Any:
    """Values of a future, or of all futures in a list or dict.

    Non-future elements are returned unchanged.
    """
    if isinstance(obj, Future):
        return obj.value(timeout)
    if isinstance(obj, Mapping):
        return {k: value(v, timeout) for k, v in obj.items()}
    if isinstance(obj, Iterable) and not isinstance(obj, (str, bytes)):
        return [value(v, timeout) for v in obj]
    return obj


def resolved(obj: Any) -> Any:
    """Non-blocking resolution state of a future or of each future in a collection."""
    if isinstance(obj, Future):
        return obj.resolved()
    if isinstance(obj, Mapping):
        return {k: resolved(v) for k, v in obj.items()}
    if isinstance(obj, Iterable) and not isinstance(obj, (str, bytes)):
        return [resolved(v) for v in obj]
    return True


def nbr_of_workers() -> int:
    """Number of workers of the current plan's backend."""
    return get_plan().session.nbr_of_workers()


def nbr_of_free_workers() -> int:
    return get_plan().session.nbr_of_free_workers()
