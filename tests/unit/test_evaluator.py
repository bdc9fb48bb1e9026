"""Unit tests for in-process evaluation of work items."""

import logging
import random
import warnings

import cloudpickle
import pytest

from radical.futures.conditions import ConditionKind, message
from radical.futures.errors import RngSafetyWarning
from radical.futures.evaluator import evaluate, run_serialized
from radical.futures.result import FutureResult
from radical.futures.serde import des_result, ser_work_item
from radical.futures.workitem import build_work_item


def chatty(x):
    print("computing")
    warnings.warn("careful")
    message("note")
    return x + 1


def failing():
    warnings.warn("about to fail")
    raise KeyError("missing")


def exits():
    raise SystemExit(3)


def draw():
    return random.random()


def numpy_draw():
    import numpy
    return numpy.random.random()


def draw_and_fail():
    random.random()
    raise RuntimeError("after drawing")


class TestEvaluate:

    def test_value_and_conditions(self):
        item, _ = build_work_item(chatty, args=(1,))
        result = evaluate(item)

        assert result.ok
        assert result.value == 2
        assert result.conditions.kinds() == [ConditionKind.OUTPUT,
                                             ConditionKind.WARNING,
                                             ConditionKind.MESSAGE]
        assert result.worker
        assert result.duration >= 0

    def test_source_returns_last_expression(self):
        item, _ = build_work_item("y = x * 2\ny + 1", env={"x": 20})
        assert evaluate(item).value == 41

    def test_source_ending_in_statement_returns_none(self):
        item, _ = build_work_item("y = 1", env={})
        assert evaluate(item).value is None

    def test_error_is_last_condition(self):
        item, _ = build_work_item(failing)
        result = evaluate(item)

        assert isinstance(result.error, KeyError)
        assert result.conditions.kinds() == [ConditionKind.WARNING, ConditionKind.ERROR]
        assert result.conditions.error.category is KeyError
        assert "KeyError" in result.traceback

    def test_system_exit_is_an_error_of_the_item(self):
        item, _ = build_work_item(exits)
        result = evaluate(item)

        assert isinstance(result.error, SystemExit)
        assert result.error.code == 3
        assert result.conditions.kinds() == [ConditionKind.ERROR]

    def test_rng_warning_precedes_error(self):
        item, _ = build_work_item(draw_and_fail)
        result = evaluate(item)

        assert result.rng_misuse
        kinds = result.conditions.kinds()
        assert kinds == [ConditionKind.WARNING, ConditionKind.ERROR]
        assert result.conditions[0].category is RngSafetyWarning

    def test_rng_check_can_be_disabled(self):
        from radical.futures.config import configure

        configure(rng_check=False)
        item, _ = build_work_item(draw)
        assert not evaluate(item).rng_misuse

    def test_seeded_items_are_reproducible(self):
        a, _ = build_work_item(draw, seed=42)
        b, _ = build_work_item(draw, seed=42)
        c, _ = build_work_item(draw, seed=43)

        ra, rb, rc = evaluate(a), evaluate(b), evaluate(c)
        assert ra.value == rb.value != rc.value
        assert not ra.rng_misuse
        assert len(ra.conditions) == 0

    def test_seeded_item_leaves_caller_rng_untouched(self):
        random.seed(1)
        expected = random.random()

        random.seed(1)
        item, _ = build_work_item(draw, seed=5)
        evaluate(item)

        assert random.random() == expected

    def test_seeded_item_leaves_caller_numpy_rng_untouched(self):
        numpy = pytest.importorskip("numpy")
        numpy.random.seed(1)
        expected = numpy.random.random()

        numpy.random.seed(1)
        item, _ = build_work_item(numpy_draw, seed=5)
        first = evaluate(item).value

        assert numpy.random.random() == expected
        assert evaluate(item).value == first

    def test_stdout_relay_can_be_disabled(self, capsys):
        item, _ = build_work_item(chatty, args=(1,), stdout=False)
        result = evaluate(item)

        assert ConditionKind.OUTPUT not in result.conditions.kinds()
        assert capsys.readouterr().out == "computing\n"

    def test_coroutine_result_is_awaited(self):
        async def coro():
            return "done"

        item, _ = build_work_item(coro)
        assert evaluate(item).value == "done"

    def test_log_records_are_captured_in_workers_only(self):
        def log_something():
            logging.getLogger("user.code").warning("from the item")
            return 1

        item, _ = build_work_item(log_something)

        assert len(evaluate(item).conditions) == 0
        result = evaluate(item, in_worker=True)
        assert result.conditions.kinds() == [ConditionKind.LOG]
        assert result.conditions[0].text == "from the item"


class TestRunSerialized:

    def test_roundtrip(self):
        item, _ = build_work_item("a + b", env={"a": 1, "b": 2})
        result = des_result(run_serialized(ser_work_item(item)))

        assert isinstance(result, FutureResult)
        assert result.value == 3

    def test_bad_payload_becomes_failed_result(self):
        result = des_result(run_serialized(cloudpickle.dumps("not a work item")))

        assert not result.ok
        assert result.conditions.kinds() == [ConditionKind.ERROR]

    def test_garbage_payload(self):
        result = des_result(run_serialized(b"not a pickle"))
        assert not result.ok
