"""Capture and replay of conditions signalled while a work item evaluates.

A work item may print, emit warnings, log, signal informational messages via
:func:`message`, and finally raise. All of that is recorded, in order, into a
:class:`ConditionLog` wherever the item runs, shipped back with the result and
replayed in the caller when the future's value is requested. That way the
caller observes the same signals, in the same order, whichever backend
evaluated the item.
"""

from __future__ import annotations

import contextlib
import io
import logging
import sys
import threading
import time
import warnings
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Iterator, Optional

from .errors import FutureStateError

logger = logging.getLogger(__name__)

_local = threading.local()
_listeners: list[Callable[["Condition"], None]] = []


class ConditionKind(str, Enum):
    MESSAGE = "message"
    WARNING = "warning"
    OUTPUT = "output"
    LOG = "log"
    ERROR = "error"


@dataclass(frozen=True)
class Condition:
    """One captured signal.

    Attributes:
        kind: What was signalled.
        text: Message text, printed output or the error's string form.
        category: Warning category or exception class, if any.
        filename: Source file the warning was attributed to.
        lineno: Source line the warning was attributed to.
        logger_name: Logger a captured log record was emitted on.
        level: Level of a captured log record.
        time: Wall clock time the signal was captured.
    """

    kind: ConditionKind
    text: str
    category: Optional[type] = None
    filename: Optional[str] = None
    lineno: Optional[int] = None
    logger_name: Optional[str] = None
    level: Optional[int] = None
    time: float = field(default_factory=time.time)


class ConditionLog(Sequence):
    """Ordered, append-only sequence of conditions with at most one
    terminal error, which is always the last entry."""

    def __init__(self, conditions=()):
        self._conditions: list[Condition] = []
        for condition in conditions:
            self.append(condition)

    def append(self, condition: Condition) -> None:
        if self.error is not None:
            raise FutureStateError(
                "ConditionLog already holds a terminal error; "
                f"cannot append {condition.kind.value} condition")

        # consecutive output chunks are kept as one condition
        if (condition.kind is ConditionKind.OUTPUT and self._conditions
                and self._conditions[-1].kind is ConditionKind.OUTPUT):
            last = self._conditions[-1]
            self._conditions[-1] = replace(last, text=last.text + condition.text)
            return

        self._conditions.append(condition)

    def __getitem__(self, index):
        return self._conditions[index]

    def __len__(self) -> int:
        return len(self._conditions)

    def __eq__(self, other) -> bool:
        if not isinstance(other, ConditionLog):
            return NotImplemented
        return self._conditions == other._conditions

    def __repr__(self) -> str:
        kinds = ", ".join(c.kind.value for c in self._conditions)
        return f"ConditionLog([{kinds}])"

    def kinds(self) -> list[ConditionKind]:
        return [c.kind for c in self._conditions]

    @property
    def warnings(self) -> list[Condition]:
        return [c for c in self._conditions if c.kind is ConditionKind.WARNING]

    @property
    def messages(self) -> list[Condition]:
        return [c for c in self._conditions if c.kind is ConditionKind.MESSAGE]

    @property
    def stdout(self) -> str:
        return "".join(c.text for c in self._conditions
                       if c.kind is ConditionKind.OUTPUT)

    @property
    def error(self) -> Optional[Condition]:
        if self._conditions and self._conditions[-1].kind is ConditionKind.ERROR:
            return self._conditions[-1]
        return None


class _OutputStream(io.TextIOBase):
    """Text stream appending everything written as OUTPUT conditions."""

    def __init__(self, log: ConditionLog):
        self._log = log

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        if text:
            self._log.append(Condition(ConditionKind.OUTPUT, text))
        return len(text)


class _RecordCapture(logging.Handler):
    """Logging handler turning records into LOG conditions."""

    def __init__(self, log: ConditionLog, level=logging.NOTSET):
        super().__init__(level)
        self._log = log
        self._thread = threading.get_ident()

    def emit(self, record: logging.LogRecord) -> None:
        if record.thread != self._thread:
            return
        text = record.getMessage()
        if record.exc_info:
            text = f"{text}\n{logging.Formatter().formatException(record.exc_info)}"
        self._log.append(Condition(ConditionKind.LOG, text,
                                   logger_name=record.name, level=record.levelno,
                                   filename=record.pathname, lineno=record.lineno))


def _active_log() -> Optional[ConditionLog]:
    stack = getattr(_local, "stack", None)
    return stack[-1] if stack else None


def message(text: str) -> None:
    """Signal an informational message.

    Inside a work item the message is captured and relayed to the caller when
    the future's value is collected; elsewhere it goes straight to stderr.
    """
    log = _active_log()
    if log is None:
        sys.stderr.write(text if text.endswith("\n") else text + "\n")
    else:
        log.append(Condition(ConditionKind.MESSAGE, text))


@contextlib.contextmanager
def capture_conditions(log: Optional[ConditionLog] = None, *,
                       stdout: bool = True,
                       log_records: bool = False,
                       log_level: Optional[int] = None) -> Iterator[ConditionLog]:
    """Record conditions signalled inside the ``with`` block into ``log``.

    Args:
        log: The log to append to. A new one is created if omitted.
        stdout: Capture text written to ``sys.stdout``.
        log_records: Capture log records reaching the root logger. Only done in
            worker processes; in the caller they already went through its
            logging configuration.
        log_level: Root logger level while capturing records.

    Yields:
        ConditionLog: the log being filled.
    """
    log = ConditionLog() if log is None else log

    def _showwarning(msg, category, filename, lineno, file=None, line=None):
        log.append(Condition(ConditionKind.WARNING, str(msg), category=category,
                             filename=filename, lineno=lineno))

    stack = getattr(_local, "stack", None)
    if stack is None:
        stack = _local.stack = []

    root = logging.getLogger()
    handler = None
    old_level = root.level

    with warnings.catch_warnings():
        warnings.simplefilter("always")
        warnings.showwarning = _showwarning
        stack.append(log)
        try:
            if log_records:
                handler = _RecordCapture(log)
                root.addHandler(handler)
                if log_level is not None:
                    root.setLevel(log_level)
            redirect = (contextlib.redirect_stdout(_OutputStream(log))
                        if stdout else contextlib.nullcontext())
            with redirect:
                yield log
        finally:
            stack.pop()
            if handler is not None:
                root.removeHandler(handler)
                root.setLevel(old_level)


def add_condition_listener(func: Callable[[Condition], None]) -> None:
    """Register ``func`` to observe every condition replayed in the caller."""
    if func not in _listeners:
        _listeners.append(func)


def remove_condition_listener(func: Callable[[Condition], None]) -> None:
    if func in _listeners:
        _listeners.remove(func)


def replay_conditions(log: ConditionLog, *, stdout: bool = True) -> None:
    """Re-signal captured conditions in the calling context, in order.

    The terminal error, if any, is not raised here; the future raises it.
    """
    for condition in log:
        for listener in list(_listeners):
            try:
                listener(condition)
            except Exception:
                logger.exception(f"Condition listener {listener!r} failed")

        kind = condition.kind
        if kind is ConditionKind.OUTPUT:
            if stdout:
                sys.stdout.write(condition.text)
        elif kind is ConditionKind.MESSAGE:
            text = condition.text
            sys.stderr.write(text if text.endswith("\n") else text + "\n")
        elif kind is ConditionKind.WARNING:
            category = condition.category
            if not (isinstance(category, type) and issubclass(category, Warning)):
                category = UserWarning
            warnings.warn_explicit(condition.text, category,
                                   condition.filename or "<future>",
                                   condition.lineno or 0)
        elif kind is ConditionKind.LOG:
            logging.getLogger(condition.logger_name).log(
                condition.level or logging.INFO, condition.text)
