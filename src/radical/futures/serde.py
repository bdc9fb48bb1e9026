"""
Serialization & deserialization of work items and results.

Payloads (work items, results) go through cloudpickle so that lambdas,
closures and functions defined in ``__main__`` travel by value. Transport
envelopes only ever hold primitives and bytes, so plain pickle does for them.
"""

from __future__ import annotations

import pickle
import traceback as tb
from typing import TYPE_CHECKING, Any

import cloudpickle

from .conditions import Condition, ConditionKind, ConditionLog
from .errors import DependencyTransferError, EvaluationError

if TYPE_CHECKING:
    from .result import FutureResult
    from .workitem import WorkItem


def dumps(obj: Any) -> bytes:
    return cloudpickle.dumps(obj)


def loads(data: bytes) -> Any:
    return cloudpickle.loads(data)


def ser_envelope(obj: Any) -> bytes:
    return pickle.dumps(obj)


def des_envelope(data: bytes) -> Any:
    return pickle.loads(data)


def ser_work_item(item: WorkItem) -> bytes:
    """Serialize a work item for another process, failing fast at submit."""
    try:
        return dumps(item)
    except Exception as e:
        name = None
        for key, value in item.globals.items():
            try:
                dumps(value)
            except Exception:
                name = key
                break
        what = f"global '{name}'" if name else f"work item {item.uid}"
        raise DependencyTransferError(
            f"Cannot serialize {what} for transfer: {e}", name=name, root_cause=e
        ) from e


def des_work_item(data: bytes) -> WorkItem:
    return loads(data)


def ser_result(result: FutureResult) -> bytes:
    """Serialize a result in the worker.

    A value or exception that cannot be pickled does not lose the result:
    the error is replaced by an :class:`EvaluationError` carrying its text
    and traceback, an unpicklable value turns the result into an error.
    """
    try:
        return dumps(result)
    except Exception as e:
        reason = e

    if result.error is not None:
        error = result.error
        replacement = EvaluationError(
            f"{type(error).__name__}: {error}",
            exc_type=type(error).__name__,
            remote_traceback=result.traceback,
        )
    else:
        replacement = EvaluationError(
            f"Value of type {type(result.value).__name__} cannot be "
            f"transferred back to the caller: {reason}",
            exc_type=type(reason).__name__,
            remote_traceback="".join(tb.format_exception(reason)),
        )

    conditions = ConditionLog(c for c in result.conditions
                              if c.kind is not ConditionKind.ERROR)
    conditions.append(Condition(ConditionKind.ERROR, str(replacement),
                                category=EvaluationError))
    result.value = None
    result.error = replacement
    result.conditions = conditions
    return dumps(result)


def des_result(data: bytes) -> FutureResult:
    return loads(data)
