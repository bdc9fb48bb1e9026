"""Entry point of a batch job: evaluate the job directory's work item.

    python -m radical.futures.backends.execution.batch_job <jobdir>

Reads ``payload.pkl`` and writes ``result.pkl`` atomically, so the session
never observes a partially written result.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from ...evaluator import run_serialized

logger = logging.getLogger(__name__)

PAYLOAD_FILE = "payload.pkl"
RESULT_FILE = "result.pkl"


def run_job(jobdir: Path) -> Path:
    jobdir = Path(jobdir)
    payload = (jobdir / PAYLOAD_FILE).read_bytes()
    data = run_serialized(payload)

    target = jobdir / RESULT_FILE
    tmp = target.with_suffix(".tmp")
    with open(tmp, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, target)
    return target


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        sys.stderr.write("usage: python -m radical.futures.backends.execution."
                         "batch_job <jobdir>\n")
        return 2
    run_job(Path(argv[0]))
    return 0


if __name__ == "__main__":
    sys.exit(main())
