"""Batch backend: one scheduler job per work item.

Each work item gets its own job directory holding the cloudpickled payload and
a shell script that runs ``batch_job`` on it. The script is handed to a job
scheduler (or, for ``local``, started as a detached process); completion is
detected through the atomically written result file, with the scheduler's
native job state consulted to notice jobs that died without one.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal, Optional

import typeguard
from pydantic import BaseModel, ConfigDict, Field

from ...constants import HandleStatus, JobMainStates, StateMapper
from ...errors import CancellationError, JobFailedError
from ...result import FutureResult
from ...serde import des_result, ser_work_item
from ...workitem import WorkItem
from .base import BaseExecutionBackend, Handle, worker_environment
from .batch_job import PAYLOAD_FILE, RESULT_FILE

logger = logging.getLogger(__name__)

JOB_MODULE = "radical.futures.backends.execution.batch_job"
SCRIPT_FILE = "job.sh"
OUTPUT_FILE = "job.out"


def _first_token(output: str, job_id: str) -> Optional[str]:
    for line in output.splitlines():
        if line.strip():
            return line.split()[0]
    return None


def _sge_state(output: str, job_id: str) -> Optional[str]:
    for line in output.splitlines():
        cols = line.split()
        if len(cols) > 4 and cols[0] == job_id:
            return cols[4]
    return None


def _pbs_state(output: str, job_id: str) -> Optional[str]:
    match = re.search(r"job_state\s*=\s*(\w+)", output)
    return match.group(1) if match else None


@dataclass(frozen=True)
class Scheduler:
    """Command templates of a job scheduler.

    Templates are formatted with ``script``, ``output``, ``name`` and
    ``job_id``.
    """

    name: str
    submit: tuple[str, ...]
    status: tuple[str, ...]
    kill: tuple[str, ...]
    directive: str
    job_id: str
    parse_state: Callable[[str, str], Optional[str]]
    script_on_stdin: bool = False


SCHEDULERS = {
    "slurm": Scheduler(
        "slurm",
        submit=("sbatch", "--parsable", "--job-name={name}", "--output={output}", "{script}"),
        status=("squeue", "-h", "-j", "{job_id}", "-o", "%t"),
        kill=("scancel", "{job_id}"),
        directive="#SBATCH --{key}={value}",
        job_id=r"^(\d+)",
        parse_state=_first_token),
    "sge": Scheduler(
        "sge",
        submit=("qsub", "-terse", "-N", "{name}", "-o", "{output}", "-j", "y", "{script}"),
        status=("qstat",),
        kill=("qdel", "{job_id}"),
        directive="#$ -{key} {value}",
        job_id=r"^(\d+)",
        parse_state=_sge_state),
    "pbs": Scheduler(
        "pbs",
        submit=("qsub", "-N", "{name}", "-o", "{output}", "-j", "oe", "{script}"),
        status=("qstat", "-f", "{job_id}"),
        kill=("qdel", "{job_id}"),
        directive="#PBS -{key} {value}",
        job_id=r"^(\S+)",
        parse_state=_pbs_state),
    "lsf": Scheduler(
        "lsf",
        submit=("bsub", "-J", "{name}", "-o", "{output}"),
        status=("bjobs", "-noheader", "-o", "stat", "{job_id}"),
        kill=("bkill", "{job_id}"),
        directive="#BSUB -{key} {value}",
        job_id=r"Job <(\d+)>",
        parse_state=_first_token,
        script_on_stdin=True),
}

StateMapper.register_backend_states_with_defaults("local")
StateMapper.register_backend_states(
    "slurm",
    pending_state=("PD", "CF", "RQ", "RS", "RH", "S"),
    running_state=("R", "CG", "SI", "SO", "ST"),
    done_state=("CD",),
    failed_state=("F", "NF", "TO", "OOM", "BF", "DL", "PR", "RV"),
    canceled_state=("CA",))
StateMapper.register_backend_states(
    "sge",
    pending_state=("qw", "hqw", "hRwq", "Rq"),
    running_state=("r", "t", "Rr", "Rt", "s", "S", "T"),
    done_state=(),
    failed_state=("Eqw", "E"),
    canceled_state=("dr", "dt", "d"))
StateMapper.register_backend_states(
    "pbs",
    pending_state=("Q", "H", "W", "T", "S"),
    running_state=("R", "E", "B", "U"),
    done_state=("C", "F", "X"),
    failed_state=(),
    canceled_state=())
StateMapper.register_backend_states(
    "lsf",
    pending_state=("PEND", "PSUSP", "WAIT"),
    running_state=("RUN", "USUSP", "SSUSP", "PROV"),
    done_state=("DONE",),
    failed_state=("EXIT", "ZOMBI", "UNKWN"),
    canceled_state=())


@dataclass(eq=False)
class _BatchJob:
    jobdir: Path
    job_id: str
    process: Optional[subprocess.Popen] = None
    cancelled: bool = False


class BatchExecutionBackend(BaseExecutionBackend):
    """Evaluates each work item as a separate batch job."""

    name = "batch"

    class Params(BaseModel):
        """
        Attributes:
            scheduler: ``local`` runs jobs as detached processes on this host,
                the others submit them to the named job scheduler.
            workdir: Directory receiving the job directories. A temporary
                directory is created (and removed at shutdown) if omitted.
            python: Interpreter running the jobs.
            resources: Scheduler directives written to the job script, e.g.
                ``{"time": "00:10:00"}`` becomes ``#SBATCH --time=00:10:00``.
            workers: Number of jobs assumed to run concurrently.
            poll_interval: Initial delay between status checks in ``collect``.
            max_poll_interval: Upper bound of the growing status check delay.
            keep_files: Keep job directories after their result was collected.
        """

        model_config = ConfigDict(extra="forbid")

        scheduler: Literal["local", "slurm", "sge", "pbs", "lsf"] = "local"
        workdir: Optional[Path] = None
        python: str = Field(default_factory=lambda: sys.executable)
        resources: dict[str, str] = Field(default_factory=dict)
        workers: int = Field(default=100, ge=1)
        poll_interval: float = Field(default=0.2, gt=0)
        max_poll_interval: float = Field(default=5.0, gt=0)
        keep_files: bool = False

    @typeguard.typechecked
    def __init__(self, params: Optional[BaseModel] = None):
        super().__init__(params)
        self.scheduler = SCHEDULERS.get(self.params.scheduler)
        self.mapper = StateMapper(self.params.scheduler)

        if self.params.workdir is None:
            self.workdir = Path(tempfile.mkdtemp(prefix="radical.futures.batch."))
            self._own_workdir = True
        else:
            self.workdir = Path(self.params.workdir).resolve()
            self.workdir.mkdir(parents=True, exist_ok=True)
            self._own_workdir = False
        logger.info(f"Batch backend ({self.params.scheduler}) using {self.workdir}")

    # ------------------------------------------------------------------ #
    # job preparation and submission

    def _script(self, jobdir: Path) -> str:
        lines = ["#!/bin/sh"]
        if self.scheduler is not None:
            for key, value in self.params.resources.items():
                lines.append(self.scheduler.directive.format(key=key, value=value))
        pythonpath = worker_environment()["PYTHONPATH"]
        lines += [
            f"export PYTHONPATH={shlex.quote(pythonpath)}",
            f"cd {shlex.quote(str(jobdir))}",
            f"exec {shlex.quote(self.params.python)} -m {JOB_MODULE} "
            f"{shlex.quote(str(jobdir))}",
        ]
        return "\n".join(lines) + "\n"

    def _prepare(self, item: WorkItem, payload: bytes) -> Path:
        # uids restart in every process, a shared workdir may hold older jobs
        jobdir = Path(tempfile.mkdtemp(prefix=f"{item.uid}.", dir=self.workdir))
        (jobdir / PAYLOAD_FILE).write_bytes(payload)
        script = jobdir / SCRIPT_FILE
        script.write_text(self._script(jobdir))
        script.chmod(0o755)
        return jobdir

    def _submit_local(self, jobdir: Path) -> _BatchJob:
        with open(jobdir / OUTPUT_FILE, "wb") as out:
            proc = subprocess.Popen(["/bin/sh", str(jobdir / SCRIPT_FILE)],
                                    stdout=out, stderr=subprocess.STDOUT,
                                    stdin=subprocess.DEVNULL, cwd=jobdir,
                                    start_new_session=True)
        return _BatchJob(jobdir=jobdir, job_id=str(proc.pid), process=proc)

    def _submit_scheduler(self, jobdir: Path, uid: str) -> _BatchJob:
        sched = self.scheduler
        script = jobdir / SCRIPT_FILE
        cmd = [arg.format(script=script, output=jobdir / OUTPUT_FILE,
                          name=f"rf-{uid}") for arg in sched.submit]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True,
                                  input=script.read_text() if sched.script_on_stdin else None)
        except OSError as e:
            raise JobFailedError(f"Cannot run '{cmd[0]}' to submit {uid}: {e}",
                                 job_state="SUBMIT", root_cause=e) from e

        if proc.returncode != 0:
            raise JobFailedError(
                f"'{cmd[0]}' failed to submit {uid} (exit code "
                f"{proc.returncode}): {proc.stderr.strip()}", job_state="SUBMIT")

        match = re.search(sched.job_id, proc.stdout.strip(), re.MULTILINE)
        if match is None:
            raise JobFailedError(
                f"Cannot find the job id of {uid} in '{proc.stdout.strip()}'",
                job_state="SUBMIT")
        return _BatchJob(jobdir=jobdir, job_id=match.group(1))

    def submit(self, item: WorkItem) -> Handle:
        payload = ser_work_item(item)
        jobdir = self._prepare(item, payload)

        if self.scheduler is None:
            job = self._submit_local(jobdir)
        else:
            job = self._submit_scheduler(jobdir, item.uid)

        logger.debug(f"Submitted {item.uid} as {self.params.scheduler} job {job.job_id}")
        return Handle(uid=item.uid, native=job)

    # ------------------------------------------------------------------ #
    # status

    def _native_state(self, job: _BatchJob) -> Optional[str]:
        if job.process is not None:
            code = job.process.poll()
            if job.cancelled:
                return JobMainStates.CANCELED.value
            if code is None:
                return JobMainStates.RUNNING.value
            return JobMainStates.DONE.value if code == 0 else JobMainStates.FAILED.value

        cmd = [arg.format(job_id=job.job_id) for arg in self.scheduler.status]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            logger.warning(f"Cannot query state of job {job.job_id}: {e}")
            return JobMainStates.PENDING.value
        if proc.returncode != 0:
            return None
        return self.scheduler.parse_state(proc.stdout, job.job_id)

    def _job_state(self, job: _BatchJob) -> Optional[JobMainStates]:
        code = self._native_state(job)
        if code is None:
            return None
        return self.mapper.to_main_state(code, default=JobMainStates.PENDING)

    def _load_result(self, handle: Handle) -> bool:
        path = handle.native.jobdir / RESULT_FILE
        if not path.exists():
            return False
        try:
            handle.result = des_result(path.read_bytes())
        except Exception as e:
            handle.error = JobFailedError(
                f"Cannot read the result of {handle.uid} from {path}",
                job_id=handle.native.job_id, job_state="DONE", root_cause=e)
        return True

    def _check(self, handle: Handle) -> bool:
        """Whether the item finished, loading its result if so."""
        if handle.result is not None or handle.error is not None:
            return True
        if self._load_result(handle):
            return True

        job = handle.native
        state = self._job_state(job)
        if state is not None and state not in self.mapper.terminal_states:
            return False

        # the job may have finished between the two checks
        if self._load_result(handle):
            return True
        name = state.value if state is not None else "UNKNOWN"
        handle.error = JobFailedError(
            f"Job {job.job_id} of {handle.uid} ended ({name}) without a result, "
            f"see {job.jobdir / OUTPUT_FILE}", job_id=job.job_id, job_state=name)
        return True

    def poll(self, handle: Handle) -> HandleStatus:
        if not self._check(handle):
            return HandleStatus.PENDING
        if handle.error is not None or not handle.result.ok:
            return HandleStatus.FAILED
        return HandleStatus.DONE

    def collect(self, handle: Handle, timeout: Optional[float] = None) -> FutureResult:
        deadline = None if timeout is None else time.monotonic() + timeout
        interval = self.params.poll_interval

        while not self._check(handle):
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(
                        f"No result for {handle.uid} within {timeout} seconds")
                time.sleep(min(interval, remaining))
            else:
                time.sleep(interval)
            interval = min(interval * 1.5, self.params.max_poll_interval)

        if not self.params.keep_files:
            shutil.rmtree(handle.native.jobdir, ignore_errors=True)
        if handle.error is not None:
            raise handle.error
        return handle.result

    def cancel(self, handle: Handle) -> bool:
        if self._check(handle):
            return False
        job = handle.native

        if job.process is not None:
            try:
                os.killpg(job.process.pid, signal.SIGTERM)
            except ProcessLookupError:
                return False
            job.process.wait()
        else:
            cmd = [arg.format(job_id=job.job_id) for arg in self.scheduler.kill]
            proc = subprocess.run(cmd, capture_output=True, text=True)
            if proc.returncode != 0:
                logger.warning(f"'{cmd[0]}' could not cancel job {job.job_id}: "
                               f"{proc.stderr.strip()}")
                return False

        job.cancelled = True
        handle.error = CancellationError(f"{handle.uid} was cancelled")
        logger.debug(f"Cancelled job {job.job_id} of {handle.uid}")
        return True

    def running(self, handle: Handle) -> bool:
        if handle.result is not None or handle.error is not None:
            return False
        return self._job_state(handle.native) is JobMainStates.RUNNING

    def nbr_of_workers(self) -> int:
        return self.params.workers

    def nbr_of_free_workers(self) -> int:
        pending = sum(1 for h in self.owned() if self.poll(h) is HandleStatus.PENDING)
        return max(0, self.params.workers - pending)

    def shutdown(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True

        outstanding = self.owned()
        if not wait:
            for handle in outstanding:
                self.cancel(handle)

        if self._own_workdir and not self.params.keep_files and not outstanding:
            shutil.rmtree(self.workdir, ignore_errors=True)
        elif outstanding:
            logger.debug(f"Keeping {self.workdir}: {len(outstanding)} results "
                         f"not collected yet")
        logger.info("Batch backend shutdown complete")
