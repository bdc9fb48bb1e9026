"""Messages exchanged between a cluster session and its workers.

Each message travels as one pickled envelope over a
``multiprocessing.connection`` connection, which frames it by length.
Payloads are cloudpickled work items and results, opaque at this level.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class WorkerHello:
    """First message of a worker after the authkey handshake."""

    worker: str
    host: str
    pid: int


@dataclass(frozen=True)
class Evaluate:
    uid: str
    payload: bytes


@dataclass(frozen=True)
class Evaluated:
    uid: str
    payload: bytes


@dataclass(frozen=True)
class Shutdown:
    pass


Message = WorkerHello | Evaluate | Evaluated | Shutdown
