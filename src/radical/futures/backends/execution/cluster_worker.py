"""Cluster worker process.

Connects back to a cluster session and evaluates one work item at a time
until told to stop or the connection drops::

    RADICAL_FUTURES_AUTHKEY=<hex> python -m \\
        radical.futures.backends.execution.cluster_worker --host H --port P

Without the environment variable the authkey is read as one hex line from
stdin, which is how it is passed over ``ssh``.
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
import sys
from multiprocessing.connection import Client
from typing import Optional

from ...evaluator import run_serialized
from ...serde import des_envelope, ser_envelope
from .cluster_messages import Evaluate, Evaluated, Shutdown, WorkerHello

logger = logging.getLogger(__name__)

AUTHKEY_ENV = "RADICAL_FUTURES_AUTHKEY"


def read_authkey() -> bytes:
    value = os.environ.get(AUTHKEY_ENV)
    if value is None:
        value = sys.stdin.readline()
    return bytes.fromhex(value.strip())


def serve(host: str, port: int, authkey: bytes, name: Optional[str] = None) -> int:
    """Evaluate work items sent by the session at ``host:port``.

    Returns:
        int: The number of work items evaluated.
    """
    name = name or f"{socket.gethostname()}:{os.getpid()}"
    conn = Client((host, port), authkey=authkey)
    conn.send_bytes(ser_envelope(WorkerHello(worker=name,
                                             host=socket.gethostname(),
                                             pid=os.getpid())))
    logger.debug(f"Worker {name} connected to {host}:{port}")

    count = 0
    try:
        while True:
            try:
                msg = des_envelope(conn.recv_bytes())
            except EOFError:
                logger.debug(f"Worker {name}: session closed the connection")
                break

            if isinstance(msg, Shutdown):
                break
            if isinstance(msg, Evaluate):
                payload = run_serialized(msg.payload)
                conn.send_bytes(ser_envelope(Evaluated(uid=msg.uid, payload=payload)))
                count += 1
            else:
                logger.warning(f"Worker {name}: ignoring unexpected message {msg!r}")
    finally:
        conn.close()
    return count


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="radical.futures cluster worker")
    parser.add_argument("--host", required=True)
    parser.add_argument("--port", required=True, type=int)
    parser.add_argument("--name", default=None)
    args = parser.parse_args(argv)

    serve(args.host, args.port, read_authkey(), args.name)
    return 0


if __name__ == "__main__":
    sys.exit(main())
