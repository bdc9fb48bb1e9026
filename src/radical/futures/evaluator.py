"""Evaluation of work items, in the caller or in a worker process."""

from __future__ import annotations

import ast
import asyncio
import builtins
import importlib
import inspect
import logging
import os
import socket
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from .conditions import Condition, ConditionKind, ConditionLog, capture_conditions
from .errors import RngSafetyWarning
from .result import FutureResult
from .rng import (
    activate_stream,
    default_rng_state,
    detect_unsafe_usage,
    restore_default_rng,
    save_default_rng,
)
from .workitem import WorkItem

logger = logging.getLogger(__name__)

_RNG_WARNING = (
    "Work item '{name}' used the default random number generator without a "
    "parallel-safe stream; results are not reproducible. Create the future "
    "with seed=True to assign it an independent L'Ecuyer-CMRG stream."
)


def worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _import_packages(packages) -> None:
    for name in packages:
        importlib.import_module(name)


def _run_source(item: WorkItem) -> Any:
    namespace = dict(item.globals)
    namespace["__builtins__"] = builtins
    namespace.setdefault("__name__", "__future__")

    tree = ast.parse(item.expression, filename=f"<future {item.uid}>", mode="exec")
    last = None
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last = ast.Expression(tree.body.pop().value)

    filename = f"<future {item.uid}>"
    exec(compile(tree, filename, "exec"), namespace)
    if last is None:
        return None
    return eval(compile(last, filename, "eval"), namespace)


def _run_coroutine(coro) -> Any:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    # the caller's loop is busy running us, give the coroutine its own
    with ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


def _run_expression(item: WorkItem) -> Any:
    if isinstance(item.expression, str):
        value = _run_source(item)
    else:
        value = item.expression(*item.args, **dict(item.kwargs))
    if inspect.iscoroutine(value):
        value = _run_coroutine(value)
    return value


def evaluate(item: WorkItem, *, in_worker: bool = False) -> FutureResult:
    """Evaluate ``item`` and capture its value, error and conditions.

    Never raises for errors of the expression itself, ``SystemExit``
    included: they become the result's ``error`` and the last entry of its
    condition log.

    Args:
        item: The work item.
        in_worker: ``True`` inside a worker process. Log records are then
            captured as conditions and the local plan is forced to
            sequential so nested futures do not oversubscribe the host.
    """
    if in_worker:
        from .plan import enter_worker
        enter_worker()

    log = ConditionLog()
    value = None
    error = None
    tb_text = None

    check_rng = item.seed is None and item.rng_check
    rng_before = default_rng_state() if check_rng else None
    saved_rng = save_default_rng() if item.seed is not None and not in_worker else None

    started = time.time()
    with capture_conditions(log, stdout=item.stdout, log_records=in_worker,
                            log_level=item.log_level):
        try:
            _import_packages(item.packages)
            activate_stream(item.seed)
            value = _run_expression(item)
        except (Exception, SystemExit) as e:
            # exiting fails the item, not its worker
            error = e
            tb_text = traceback.format_exc()
        finally:
            activate_stream(None)
    finished = time.time()

    misuse = False
    if check_rng and detect_unsafe_usage(rng_before, default_rng_state()):
        misuse = True
        log.append(Condition(ConditionKind.WARNING,
                             _RNG_WARNING.format(name=item.name),
                             category=RngSafetyWarning))
    if saved_rng is not None:
        restore_default_rng(saved_rng)

    if error is not None:
        log.append(Condition(ConditionKind.ERROR,
                             f"{type(error).__name__}: {error}",
                             category=type(error)))
        logger.debug(f"Work item {item.uid} raised {type(error).__name__}: {error}")

    return FutureResult(value=value, conditions=log, error=error,
                        traceback=tb_text, worker=worker_id(),
                        started=started, finished=finished, rng_misuse=misuse)


def run_serialized(payload: bytes) -> bytes:
    """Worker entry point: serialized work item in, serialized result out."""
    from .serde import des_work_item, ser_result

    try:
        item = des_work_item(payload)
        if not isinstance(item, WorkItem):
            raise TypeError(f"Expected a WorkItem, got {type(item).__name__}")
    except Exception as e:
        # e.g. a by-reference function whose module is missing on the worker
        result = FutureResult.failure(e, worker=worker_id(),
                                      traceback=traceback.format_exc())
        return ser_result(result)

    logger.debug(f"Evaluating {item.uid} in {worker_id()} "
                 f"({threading.current_thread().name})")
    return ser_result(evaluate(item, in_worker=True))
