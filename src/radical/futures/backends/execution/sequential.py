"""Sequential backend: work items are evaluated in the calling thread."""

from __future__ import annotations

import logging
from typing import Optional

from ...constants import HandleStatus
from ...evaluator import evaluate
from ...result import FutureResult
from ...workitem import WorkItem
from .base import BaseExecutionBackend, Handle

logger = logging.getLogger(__name__)


class SequentialExecutionBackend(BaseExecutionBackend):
    """Evaluates each work item inline during ``submit``.

    Conditions are captured and replayed exactly as with the parallel
    backends, so switching plans never changes what the caller observes.
    """

    name = "sequential"

    def submit(self, item: WorkItem) -> Handle:
        handle = Handle(uid=item.uid)
        logger.debug(f"Evaluating {item.uid} inline")
        handle.result = evaluate(item)
        return handle

    def poll(self, handle: Handle) -> HandleStatus:
        if handle.result is None:
            return HandleStatus.PENDING
        return HandleStatus.DONE if handle.result.ok else HandleStatus.FAILED

    def collect(self, handle: Handle, timeout: Optional[float] = None) -> FutureResult:
        return handle.result

    def cancel(self, handle: Handle) -> bool:
        return False

    def running(self, handle: Handle) -> bool:
        return False

    def nbr_of_workers(self) -> int:
        return 1

    def nbr_of_free_workers(self) -> int:
        return 1

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
