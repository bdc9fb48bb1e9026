from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional

from .conditions import Condition, ConditionKind, ConditionLog
from .errors import RemoteTraceback


@dataclass
class FutureResult:
    """Everything a backend reports back about one evaluated work item.

    Attributes:
        value: The value of the expression (``None`` if it raised).
        conditions: Signals captured during evaluation, in order. If the
            expression raised, the last entry is the ERROR condition.
        error: The exception raised by the expression or by the backend.
        traceback: Traceback text, formatted where the error was raised.
        worker: Where the item ran, as ``hostname:pid``.
        started: Wall clock time evaluation started.
        finished: Wall clock time evaluation finished.
        rng_misuse: Whether the default RNG was used without a stream.
    """

    value: Any = None
    conditions: ConditionLog = field(default_factory=ConditionLog)
    error: Optional[BaseException] = None
    traceback: Optional[str] = None
    worker: Optional[str] = None
    started: Optional[float] = None
    finished: Optional[float] = None
    rng_misuse: bool = False

    def __post_init__(self):
        self._tb = self.error.__traceback__ if self.error is not None else None

    def __getstate__(self):
        state = self.__dict__.copy()
        state["_tb"] = None
        return state

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def duration(self) -> Optional[float]:
        if self.started is None or self.finished is None:
            return None
        return self.finished - self.started

    @classmethod
    def failure(cls, error: BaseException, *, worker: Optional[str] = None,
                traceback: Optional[str] = None) -> FutureResult:
        """Result for an item whose backend failed before it reported back."""
        log = ConditionLog()
        log.append(Condition(ConditionKind.ERROR, str(error),
                             category=type(error)))
        now = time.time()
        return cls(error=error, conditions=log, worker=worker,
                   traceback=traceback, finished=now)

    def raise_error(self) -> None:
        """Raise the captured error, with the same traceback on every call."""
        error = self.error
        if error is None:
            return
        if self._tb is None and self.traceback and error.__cause__ is None:
            error.__cause__ = RemoteTraceback(self.traceback)
        raise error.with_traceback(self._tb)
