"""Base execution backend.

Every backend variant evaluates work items somewhere (inline, in worker
processes, on remote workers, as scheduler jobs) behind the same small,
synchronous contract: ``submit`` hands a work item over and returns a handle,
``poll``/``collect`` observe and fetch its result.
"""

from __future__ import annotations

import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, ConfigDict

from ...constants import HandleStatus
from ...utils import get_next_uid

if TYPE_CHECKING:
    from ...result import FutureResult
    from ...workitem import WorkItem


@dataclass(eq=False)
class Handle:
    """A backend's receipt for one submitted work item.

    Attributes:
        uid: The uid of the work item (and of the future owning it).
        native: Backend specific object tracking the item, e.g. a
            ``concurrent.futures.Future`` or a scheduler job id.
        submitted: Wall clock time of submission.
        result: The collected result, cached once available.
        error: Infrastructure failure that prevented a result, if any.
    """

    uid: str
    native: Any = None
    submitted: float = field(default_factory=time.time)
    result: Optional[FutureResult] = None
    error: Optional[BaseException] = None


class BaseExecutionBackend(ABC):
    """Abstract base class for backend sessions.

    A backend instance is a *session*: it owns its workers (if any) and the
    futures submitted to it, and lives until it is shut down, normally after
    a plan change superseded it and all its futures finished.
    """

    name: str = "base"

    class Params(BaseModel):
        """Parameter schema of the backend, validated by the factory."""

        model_config = ConfigDict(extra="forbid")

    def __init__(self, params: Optional[BaseModel] = None):
        self.params = params if params is not None else self.Params()
        self.uid = f"{self.name}.{get_next_uid()}"
        self._owned: dict[str, Handle] = {}
        self._reserved: set[str] = set()
        self._owned_lock = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------ #
    # contract

    @abstractmethod
    def submit(self, item: WorkItem) -> Handle:
        """Accept a work item for evaluation.

        Raises:
            DependencyTransferError: If the item cannot be serialized.
            BackendConnectivityError: If the backend cannot accept work.
        """

    @abstractmethod
    def poll(self, handle: Handle) -> HandleStatus:
        """Non-blocking status of a submitted item.

        ``DONE`` and ``FAILED`` both mean a subsequent ``collect`` returns
        immediately. ``FAILED`` covers errors of the expression as well as
        infrastructure failures.
        """

    @abstractmethod
    def collect(self, handle: Handle, timeout: Optional[float] = None) -> FutureResult:
        """Block until the item finished and return its result.

        Raises:
            BackendConnectivityError: If the execution context was lost.
            TimeoutError: If ``timeout`` seconds passed without a result.
        """

    @abstractmethod
    def cancel(self, handle: Handle) -> bool:
        """Try to stop an item. Returns whether it will never run to completion."""

    @abstractmethod
    def running(self, handle: Handle) -> bool:
        """Whether the item is currently being evaluated."""

    @abstractmethod
    def shutdown(self, wait: bool = True) -> None:
        """Release the session's resources."""

    @abstractmethod
    def nbr_of_workers(self) -> int:
        """Number of work items the session can evaluate concurrently."""

    def nbr_of_free_workers(self) -> int:
        busy = sum(1 for h in self.owned() if self.running(h))
        return max(0, self.nbr_of_workers() - busy)

    def state(self) -> str:
        return "SHUTDOWN" if self._closed else "RUNNING"

    # ------------------------------------------------------------------ #
    # ownership, used to tear superseded sessions down

    def reserve(self, uid: str) -> None:
        """Claim the session for a future that is bound to it but not yet submitted."""
        with self._owned_lock:
            self._reserved.add(uid)

    def unreserve(self, uid: str) -> None:
        with self._owned_lock:
            self._reserved.discard(uid)

    def attach(self, handle: Handle) -> None:
        with self._owned_lock:
            self._reserved.discard(handle.uid)
            self._owned[handle.uid] = handle

    def detach(self, handle: Handle) -> None:
        with self._owned_lock:
            self._reserved.discard(handle.uid)
            self._owned.pop(handle.uid, None)

    def owned(self) -> list[Handle]:
        with self._owned_lock:
            return list(self._owned.values())

    def idle(self) -> bool:
        """Whether no owned work item is still waiting for or in evaluation.

        Reserved futures count as waiting until they are submitted or dropped.
        """
        with self._owned_lock:
            if self._reserved:
                return False
        return all(self.poll(h) is not HandleStatus.PENDING for h in self.owned())

    def wait_idle(self, timeout: Optional[float] = None, interval: float = 0.1) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.idle():
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(interval)
        return True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(uid={self.uid!r}, state={self.state()})"


def worker_environment(extra: Optional[dict[str, str]] = None) -> dict[str, str]:
    """Environment for worker processes started by a backend.

    The directory holding the ``radical`` namespace package is put first on
    ``PYTHONPATH`` so workers import the same radical.futures as the caller.
    """
    env = dict(os.environ)
    src = str(Path(__file__).resolve().parents[4])
    paths = [src] + [p for p in env.get("PYTHONPATH", "").split(os.pathsep) if p]
    env["PYTHONPATH"] = os.pathsep.join(dict.fromkeys(paths))
    env.update(extra or {})
    return env


__all__ = ["BaseExecutionBackend", "Handle", "worker_environment"]
