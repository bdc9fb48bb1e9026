"""Cluster backend: persistent workers connected back over TCP.

The session listens on an authkey-protected ``multiprocessing.connection``
socket. Workers (``cluster_worker``) are launched on the local host, over
``ssh``, or started by hand, connect to the session and then evaluate one work
item at a time. Items are queued in the session and handed to whichever
worker is free.
"""

from __future__ import annotations

import logging
import multiprocessing
import os
import pickle
import socket
import subprocess
import sys
import threading
from collections import deque
from dataclasses import dataclass, field
from multiprocessing.connection import Client, Listener
from typing import Literal, Optional, Union

import typeguard
from pydantic import BaseModel, ConfigDict, Field

from ...constants import HandleStatus
from ...errors import BackendConnectivityError, CancellationError
from ...result import FutureResult
from ...serde import des_envelope, des_result, ser_envelope, ser_work_item
from ...workitem import WorkItem
from .base import BaseExecutionBackend, Handle, worker_environment
from .cluster_messages import Evaluate, Evaluated, Shutdown, WorkerHello
from .cluster_worker import AUTHKEY_ENV

logger = logging.getLogger(__name__)

WORKER_MODULE = "radical.futures.backends.execution.cluster_worker"

_LOCALHOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


@dataclass(eq=False)
class _Job:
    payload: Optional[bytes]
    state: str = "queued"
    worker: Optional[str] = None
    event: threading.Event = field(default_factory=threading.Event)


class _Worker:

    def __init__(self, name: str, conn):
        self.name = name
        self.conn = conn
        self.job: Optional[Handle] = None
        self.alive = True

    def __repr__(self):
        return f"_Worker({self.name!r}, alive={self.alive})"


class ClusterExecutionBackend(BaseExecutionBackend):
    """Evaluates work items on workers that connect back to this session."""

    name = "cluster"

    class Params(BaseModel):
        """
        Attributes:
            workers: Number of workers to launch on this host, or one host
                name per worker. Non-local hosts are reached over ``ssh``.
            host: Address to listen on. Defaults to the loopback interface
                when all workers are local, to all interfaces otherwise.
            port: Port to listen on, ``0`` picks a free one.
            master: Address workers connect to.
            launch: ``auto`` starts the workers, ``manual`` expects them to be
                started by the user (see ``worker_command``).
            python: Interpreter for local workers.
            remote_python: Interpreter for workers started over ssh.
            ssh: Command prefix used to reach remote hosts.
            connect_timeout: Seconds to wait for launched workers to connect.
        """

        model_config = ConfigDict(extra="forbid")

        workers: Union[int, list[str]] = 2
        host: Optional[str] = None
        port: int = Field(default=0, ge=0, le=65535)
        master: Optional[str] = None
        launch: Literal["auto", "manual"] = "auto"
        python: str = Field(default_factory=lambda: sys.executable)
        remote_python: str = "python3"
        ssh: list[str] = Field(default_factory=lambda: ["ssh"])
        connect_timeout: float = Field(default=60.0, gt=0)

    @typeguard.typechecked
    def __init__(self, params: Optional[BaseModel] = None):
        super().__init__(params)

        self.hosts = self._hosts()
        self.authkey = os.urandom(32)
        self._cond = threading.Condition()
        self._workers: list[_Worker] = []
        self._queue: deque[Handle] = deque()
        self._processes: list[subprocess.Popen] = []
        self._connected = 0

        remote = any(h not in _LOCALHOSTS for h in self.hosts)
        bind = self.params.host or ("0.0.0.0" if remote else "127.0.0.1")
        self._listener = Listener((bind, self.params.port), authkey=self.authkey)
        self.address = self._listener.address
        logger.info(f"Cluster session {self.uid} listening on "
                    f"{self.address[0]}:{self.address[1]}")

        self._acceptor = threading.Thread(target=self._accept_loop, daemon=True,
                                          name=f"{self.uid}.accept")
        self._acceptor.start()

        if self.params.launch == "auto":
            for host in self.hosts:
                self._launch(host)
            self._wait_for_workers(len(self.hosts))

    def _hosts(self) -> list[str]:
        workers = self.params.workers
        if isinstance(workers, int):
            if workers < 1:
                raise ValueError("Cluster needs at least one worker")
            return ["localhost"] * workers
        if not workers:
            raise ValueError("Cluster needs at least one worker host")
        return list(workers)

    # ------------------------------------------------------------------ #
    # worker launch

    def worker_command(self, host: str = "localhost") -> list[str]:
        """Command line that starts a worker for this session on ``host``.

        The worker reads the session's authkey (``authkey.hex()``) from the
        ``RADICAL_FUTURES_AUTHKEY`` environment variable or from stdin.
        """
        if self.params.master:
            master = self.params.master
        elif host in _LOCALHOSTS:
            master = "127.0.0.1"
        else:
            master = socket.getfqdn()
        python = self.params.python if host in _LOCALHOSTS else self.params.remote_python
        return [python, "-m", WORKER_MODULE, "--host", master,
                "--port", str(self.address[1])]

    def _launch(self, host: str) -> None:
        cmd = self.worker_command(host)
        if host in _LOCALHOSTS:
            env = worker_environment({AUTHKEY_ENV: self.authkey.hex()})
            proc = subprocess.Popen(cmd, env=env, stdin=subprocess.DEVNULL)
        else:
            cmd = list(self.params.ssh) + [host] + cmd
            proc = subprocess.Popen(cmd, stdin=subprocess.PIPE, text=True)
            proc.stdin.write(self.authkey.hex() + "\n")
            proc.stdin.close()
        self._processes.append(proc)
        logger.debug(f"Launched cluster worker on {host} (pid {proc.pid})")

    def _wait_for_workers(self, expected: int) -> None:
        def _ready():
            exited = all(p.poll() is not None for p in self._processes)
            return self._connected >= expected or exited

        with self._cond:
            self._cond.wait_for(_ready, timeout=self.params.connect_timeout)
            connected = self._connected

        if connected == 0:
            self.shutdown(wait=False)
            raise BackendConnectivityError(
                f"No cluster worker connected within "
                f"{self.params.connect_timeout} seconds")
        if connected < expected:
            logger.warning(f"Only {connected} of {expected} cluster workers "
                           f"connected to {self.uid}")

    # ------------------------------------------------------------------ #
    # connections

    def _accept_loop(self) -> None:
        while not self._closed:
            try:
                conn = self._listener.accept()
            except multiprocessing.AuthenticationError as e:
                logger.warning(f"Rejected cluster connection: {e}")
                continue
            except OSError as e:
                if not self._closed:
                    logger.error(f"Cluster listener failed: {e}")
                break

            if self._closed:
                conn.close()
                break

            try:
                hello = des_envelope(conn.recv_bytes())
            except (EOFError, OSError, pickle.UnpicklingError) as e:
                logger.warning(f"Cluster worker dropped during handshake: {e}")
                conn.close()
                continue

            if not isinstance(hello, WorkerHello):
                logger.warning(f"Unexpected handshake message {hello!r}")
                conn.close()
                continue

            worker = _Worker(hello.worker, conn)
            threading.Thread(target=self._receive_loop, args=(worker,),
                             daemon=True, name=f"{self.uid}.{hello.worker}").start()
            with self._cond:
                self._workers.append(worker)
                self._connected += 1
                self._dispatch()
                self._cond.notify_all()
            logger.info(f"Cluster worker {worker.name} connected to {self.uid}")

    def _receive_loop(self, worker: _Worker) -> None:
        while True:
            try:
                msg = des_envelope(worker.conn.recv_bytes())
            except (EOFError, OSError) as e:
                self._lost(worker, e)
                return

            if not isinstance(msg, Evaluated):
                logger.warning(f"Unexpected message from {worker.name}: {msg!r}")
                continue

            with self._cond:
                handle = worker.job
                worker.job = None
                self._dispatch()
                self._cond.notify_all()

            if handle is None or handle.uid != msg.uid:
                logger.warning(f"Worker {worker.name} returned unknown item {msg.uid}")
                continue

            try:
                handle.result = des_result(msg.payload)
            except Exception as e:
                handle.error = BackendConnectivityError(
                    f"Cannot decode the result of {handle.uid} from {worker.name}",
                    worker=worker.name, root_cause=e)
            self._finish(handle)

    def _lost(self, worker: _Worker, error: BaseException) -> None:
        with self._cond:
            if not worker.alive:
                return
            worker.alive = False
            handle, worker.job = worker.job, None
            orphaned = self._orphans()
            self._cond.notify_all()

        worker.conn.close()
        if not self._closed:
            logger.warning(f"Lost connection to cluster worker {worker.name}")

        if handle is not None:
            handle.error = BackendConnectivityError(
                f"Connection to cluster worker {worker.name} lost while "
                f"evaluating {handle.uid}", worker=worker.name, root_cause=error)
            self._finish(handle)
        for queued in orphaned:
            queued.error = BackendConnectivityError(
                f"No cluster workers left to evaluate {queued.uid}")
            self._finish(queued)

    def _orphans(self) -> list[Handle]:
        # caller holds self._cond
        if self._closed or any(w.alive for w in self._workers):
            return []
        orphaned = list(self._queue)
        self._queue.clear()
        return orphaned

    def _dispatch(self) -> None:
        # caller holds self._cond
        for worker in self._workers:
            if not self._queue:
                return
            if not worker.alive or worker.job is not None:
                continue

            handle = self._queue.popleft()
            job = handle.native
            try:
                worker.conn.send_bytes(ser_envelope(Evaluate(uid=handle.uid,
                                                             payload=job.payload)))
            except OSError as e:
                logger.warning(f"Cannot send {handle.uid} to {worker.name}: {e}")
                self._queue.appendleft(handle)
                worker.alive = False
                worker.conn.close()
                continue

            worker.job = handle
            job.state = "running"
            job.worker = worker.name
            job.payload = None

        for handle in self._orphans():
            handle.error = BackendConnectivityError(
                f"No cluster workers left to evaluate {handle.uid}")
            self._finish(handle)

    @staticmethod
    def _finish(handle: Handle) -> None:
        handle.native.state = "done"
        handle.native.event.set()

    # ------------------------------------------------------------------ #
    # contract

    def submit(self, item: WorkItem) -> Handle:
        if self._closed:
            raise BackendConnectivityError(f"Cluster session {self.uid} is shut down")

        handle = Handle(uid=item.uid, native=_Job(payload=ser_work_item(item)))
        with self._cond:
            if self._connected and not any(w.alive for w in self._workers):
                raise BackendConnectivityError(
                    f"All workers of cluster session {self.uid} are gone")
            self._queue.append(handle)
            self._dispatch()
        logger.debug(f"Queued {item.uid} on cluster session {self.uid}")
        return handle

    def poll(self, handle: Handle) -> HandleStatus:
        if not handle.native.event.is_set():
            return HandleStatus.PENDING
        if handle.error is not None or not handle.result.ok:
            return HandleStatus.FAILED
        return HandleStatus.DONE

    def collect(self, handle: Handle, timeout: Optional[float] = None) -> FutureResult:
        if not handle.native.event.wait(timeout):
            raise TimeoutError(f"No result for {handle.uid} within {timeout} seconds")
        if handle.error is not None:
            raise handle.error
        return handle.result

    def cancel(self, handle: Handle) -> bool:
        with self._cond:
            if handle not in self._queue:
                return False
            self._queue.remove(handle)
        handle.error = CancellationError(f"{handle.uid} was cancelled")
        self._finish(handle)
        return True

    def running(self, handle: Handle) -> bool:
        return handle.native.state == "running"

    def nbr_of_workers(self) -> int:
        if self.params.launch == "auto":
            return len(self.hosts)
        with self._cond:
            return sum(1 for w in self._workers if w.alive)

    def nbr_of_free_workers(self) -> int:
        with self._cond:
            return sum(1 for w in self._workers if w.alive and w.job is None)

    def shutdown(self, wait: bool = True) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            queued = list(self._queue)
            self._queue.clear()
            workers = list(self._workers)

        for handle in queued:
            handle.error = BackendConnectivityError(
                f"Cluster session {self.uid} shut down before {handle.uid} ran")
            self._finish(handle)

        for worker in workers:
            if not worker.alive:
                continue
            try:
                worker.conn.send_bytes(ser_envelope(Shutdown()))
            except OSError as e:
                logger.debug(f"Cannot stop worker {worker.name}: {e}")

        if wait:
            for worker in workers:
                job = worker.job
                if job is not None:
                    job.native.event.wait()
        for worker in workers:
            worker.conn.close()

        self._stop_listener()

        for proc in self._processes:
            try:
                proc.wait(timeout=5 if wait else 1)
            except subprocess.TimeoutExpired:
                logger.warning(f"Cluster worker pid {proc.pid} did not exit, terminating")
                proc.terminate()
                proc.wait()
        logger.info(f"Cluster session {self.uid} shutdown complete")

    def _stop_listener(self) -> None:
        host, port = self.address
        if host in ("0.0.0.0", ""):
            host = "127.0.0.1"
        # wake the acceptor blocked in accept()
        try:
            Client((host, port), authkey=self.authkey).close()
        except (OSError, multiprocessing.AuthenticationError) as e:
            logger.debug(f"Listener of {self.uid} already closed: {e}")
        self._listener.close()
        self._acceptor.join(timeout=5)
