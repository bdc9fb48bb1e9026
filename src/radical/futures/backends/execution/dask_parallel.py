import logging
from concurrent.futures import CancelledError
from typing import Any, Dict, Optional

import typeguard
from dask.distributed import Client, KilledWorker
from dask.distributed import TimeoutError as DaskTimeoutError
from distributed.client import FutureCancelledError
from pydantic import BaseModel, ConfigDict, Field

from ...constants import HandleStatus
from ...errors import BackendConnectivityError, CancellationError
from ...evaluator import run_serialized
from ...result import FutureResult
from ...serde import des_result, ser_work_item
from ...workitem import WorkItem
from .base import BaseExecutionBackend, Handle

logger = logging.getLogger(__name__)


class DaskExecutionBackend(BaseExecutionBackend):
    """A Dask execution backend.

    Work items are cloudpickled and submitted to a ``dask.distributed``
    cluster, either a new local one or an existing scheduler at ``address``.
    """

    name = "dask"

    class Params(BaseModel):
        """
        Attributes:
            address: Address of a running dask scheduler. A local cluster is
                started when omitted.
            n_workers: Number of workers of the local cluster.
            threads_per_worker: Threads per local worker. Evaluation captures
                process-wide state (warnings, stdout), so keep this at 1.
            client_options: Extra keyword arguments for ``Client``.
        """

        model_config = ConfigDict(extra="forbid")

        address: Optional[str] = None
        n_workers: Optional[int] = Field(default=None, ge=1)
        threads_per_worker: int = Field(default=1, ge=1)
        client_options: Dict[str, Any] = Field(default_factory=dict)

    @typeguard.typechecked
    def __init__(self, params: Optional[BaseModel] = None):
        """Initialize the Dask execution backend.

        Args:
            params: Validated ``Params``. Either ``address`` or the local
                cluster options are used to create the dask ``Client``.
        """
        super().__init__(params)
        self._client = None
        self.initialize()

    def initialize(self) -> None:
        """Initialize the Dask client.

        Raises:
            BackendConnectivityError: If the Dask client cannot be created.
        """
        options = dict(self.params.client_options)
        if self.params.address:
            options["address"] = self.params.address
        else:
            options.setdefault("threads_per_worker", self.params.threads_per_worker)
            if self.params.n_workers is not None:
                options.setdefault("n_workers", self.params.n_workers)

        try:
            self._client = Client(**options)
        except (OSError, DaskTimeoutError) as e:
            raise BackendConnectivityError(
                f"Failed to initialize Dask client: {e}", root_cause=e) from e
        logger.info(f"Dask backend initialized with dashboard at "
                    f"{self._client.dashboard_link}")

    def submit(self, item: WorkItem) -> Handle:
        payload = ser_work_item(item)
        future = self._client.submit(run_serialized, payload, key=item.uid, pure=False)
        logger.debug(f"Submitted {item.uid} to dask")
        return Handle(uid=item.uid, native=future)

    def _fetch(self, handle: Handle, timeout: Optional[float]) -> None:
        if handle.result is not None or handle.error is not None:
            return
        try:
            data = handle.native.result(timeout=timeout)
        except DaskTimeoutError:
            raise TimeoutError(
                f"No result for {handle.uid} within {timeout} seconds") from None
        except (FutureCancelledError, CancelledError) as e:
            raise CancellationError(f"{handle.uid} was cancelled") from e
        except KilledWorker as e:
            handle.error = BackendConnectivityError(
                f"Dask workers evaluating {handle.uid} died", root_cause=e)
            return
        handle.result = des_result(data)

    def poll(self, handle: Handle) -> HandleStatus:
        future = handle.native
        if not future.done():
            return HandleStatus.PENDING
        if future.status != "finished":
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
        """Cancel a work item. Dask may already be evaluating it."""
        if handle.native.done():
            return False
        handle.native.cancel()
        return True

    def running(self, handle: Handle) -> bool:
        if handle.native.status != "pending":
            return False
        return any(handle.uid in keys for keys in self._client.processing().values())

    def nbr_of_workers(self) -> int:
        return sum(self._client.nthreads().values())

    def shutdown(self, wait: bool = True) -> None:
        """Shutdown the Dask client and clean up resources."""
        if self._client is not None:
            self._client.close()
            logger.info("Dask client shutdown complete")
            self._client = None
        self._closed = True
