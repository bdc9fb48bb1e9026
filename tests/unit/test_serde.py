import threading

import pytest

from radical.futures.conditions import ConditionKind
from radical.futures.errors import DependencyTransferError, EvaluationError
from radical.futures.evaluator import evaluate
from radical.futures.serde import des_result, ser_result, ser_work_item
from radical.futures.workitem import WorkItem, build_work_item


class UnpicklableError(Exception):

    def __init__(self):
        super().__init__("cannot travel")
        self.lock = threading.Lock()


def raise_unpicklable():
    raise UnpicklableError()


def return_lock():
    return threading.Lock()


def test_work_item_failure_names_the_global():
    item = WorkItem(uid="future.x", expression="lock", globals={"lock": threading.Lock()})

    with pytest.raises(DependencyTransferError) as excinfo:
        ser_work_item(item)
    assert excinfo.value.name == "lock"


def test_unpicklable_error_is_replaced():
    item, _ = build_work_item(raise_unpicklable)
    result = des_result(ser_result(evaluate(item)))

    assert isinstance(result.error, EvaluationError)
    assert result.error.exc_type == "UnpicklableError"
    assert "cannot travel" in str(result.error)
    assert result.conditions.kinds() == [ConditionKind.ERROR]


def test_unpicklable_value_becomes_error():
    item, _ = build_work_item(return_lock)
    result = des_result(ser_result(evaluate(item)))

    assert result.value is None
    assert isinstance(result.error, EvaluationError)
    assert "cannot be transferred back" in str(result.error)
