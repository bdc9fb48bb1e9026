"""Multisession backend using a pool of local worker processes.

Work items are cloudpickled and evaluated by ``ProcessPoolExecutor`` workers,
each a fresh interpreter (``spawn`` by default), so warnings filters, stdout
redirection and RNG state of one item never leak into the caller or into
another worker.
"""

from __future__ import annotations

import logging
import multiprocessing
import os
import threading
from concurrent.futures import CancelledError, ProcessPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from concurrent.futures.process import BrokenProcessPool
from typing import Literal, Optional

import typeguard
from pydantic import BaseModel, ConfigDict, Field

from ...constants import HandleStatus
from ...errors import BackendConnectivityError, CancellationError
from ...evaluator import run_serialized
from ...result import FutureResult
from ...serde import des_result, ser_work_item
from ...workitem import WorkItem
from .base import BaseExecutionBackend, Handle

logger = logging.getLogger(__name__)


class MultisessionExecutionBackend(BaseExecutionBackend):
    """Evaluates work items on a fixed-size pool of local processes."""

    name = "multisession"

    class Params(BaseModel):
        """
        Attributes:
            workers: Number of worker processes.
            queue_depth: How many items may wait beyond one per worker before
                ``submit`` blocks.
            start_method: ``multiprocessing`` start method of the workers.
        """

        model_config = ConfigDict(extra="forbid")

        workers: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1)
        queue_depth: int = Field(default=64, ge=0)
        start_method: Literal["spawn", "forkserver", "fork"] = "spawn"

    @typeguard.typechecked
    def __init__(self, params: Optional[BaseModel] = None):
        super().__init__(params)
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(
            self.params.workers + self.params.queue_depth)
        self._inflight = 0
        self.executor = self._new_executor()
        logger.info(f"Multisession backend started with "
                    f"{self.params.workers} {self.params.start_method} workers")

    def _new_executor(self) -> ProcessPoolExecutor:
        ctx = multiprocessing.get_context(self.params.start_method)
        return ProcessPoolExecutor(max_workers=self.params.workers, mp_context=ctx)

    def _restart_pool(self, broken: ProcessPoolExecutor) -> None:
        with self._lock:
            if self.executor is not broken:
                return
            logger.warning("Worker process pool is broken, starting a new one")
            broken.shutdown(wait=False, cancel_futures=True)
            self.executor = self._new_executor()

    def _release(self, _future) -> None:
        with self._lock:
            self._inflight -= 1
        self._slots.release()

    def submit(self, item: WorkItem) -> Handle:
        payload = ser_work_item(item)

        # backpressure: blocks while workers + queue_depth items are in flight
        self._slots.acquire()
        executor = self.executor
        try:
            try:
                future = executor.submit(run_serialized, payload)
            except BrokenProcessPool:
                self._restart_pool(executor)
                future = self.executor.submit(run_serialized, payload)
        except (BrokenProcessPool, RuntimeError) as e:
            self._slots.release()
            raise BackendConnectivityError(
                f"Cannot submit {item.uid}: worker pool unavailable",
                root_cause=e) from e

        with self._lock:
            self._inflight += 1
        future.add_done_callback(self._release)
        logger.debug(f"Submitted {item.uid} to the process pool")
        return Handle(uid=item.uid, native=future)

    def _fetch(self, handle: Handle, timeout: Optional[float]) -> None:
        if handle.result is not None or handle.error is not None:
            return
        try:
            data = handle.native.result(timeout)
        except FuturesTimeout:
            raise TimeoutError(
                f"No result for {handle.uid} within {timeout} seconds") from None
        except CancelledError as e:
            raise CancellationError(f"{handle.uid} was cancelled") from e
        except BrokenProcessPool as e:
            self._restart_pool_later(e)
            handle.error = BackendConnectivityError(
                f"Worker process evaluating {handle.uid} terminated abruptly",
                root_cause=e)
            return
        handle.result = des_result(data)

    def _restart_pool_later(self, error: BaseException) -> None:
        executor = self.executor
        if getattr(executor, "_broken", False):
            logger.debug(f"Process pool broken: {error}")
            self._restart_pool(executor)

    def poll(self, handle: Handle) -> HandleStatus:
        future = handle.native
        if not future.done():
            return HandleStatus.PENDING
        if future.cancelled():
            return HandleStatus.FAILED
        self._fetch(handle, None)
        if handle.error is not None or not handle.result.ok:
            return HandleStatus.FAILED
        return HandleStatus.DONE

    def collect(self, handle: Handle, timeout: Optional[float] = None) -> FutureResult:
        self._fetch(handle, timeout)
        if handle.error is not None:
            raise handle.error
        return handle.result

    def cancel(self, handle: Handle) -> bool:
        return handle.native.cancel()

    def running(self, handle: Handle) -> bool:
        return handle.native.running()

    def nbr_of_workers(self) -> int:
        return self.params.workers

    def nbr_of_free_workers(self) -> int:
        with self._lock:
            return max(0, self.params.workers - self._inflight)

    def shutdown(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self.executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("Multisession backend shutdown complete")
