"""Job runner.

Runs one attempt of one job as external processes, with its own log file,
its own scratch directory and a clean output directory.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import os
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from collections import deque
from pathlib import Path
from typing import IO, List, Optional, Tuple

import psutil

from seqbatch.errors import JobInputError
from seqbatch.schemas import Job, JobResourceProfile, RunResult
from seqbatch.stage import Stage

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
MIN_HEARTBEAT_SEC = 10
TERMINATE_GRACE_SEC = 10
STDERR_TAIL_LINES = 10
EXIT_NOT_STARTED = 127


class CancellationToken:
    """Operator-initiated abort shared by the controller and its runners."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class PeakMemoryMonitor:
    """Tracks peak RSS of a process tree by polling.

    peak_mib stays None when the process cannot be inspected.
    """

    def __init__(self, pid: int):
        self.peak_mib: Optional[int] = None
        try:
            self._proc: Optional[psutil.Process] = psutil.Process(pid)
        except psutil.Error:
            self._proc = None

    def sample(self) -> None:
        if self._proc is None:
            return
        try:
            rss = self._proc.memory_info().rss
            for child in self._proc.children(recursive=True):
                try:
                    rss += child.memory_info().rss
                except psutil.Error:
                    continue
        except psutil.Error:
            return
        current = rss // MIB
        if self.peak_mib is None or current > self.peak_mib:
            self.peak_mib = current


def tail(path: Path, lines: int = STDERR_TAIL_LINES) -> str:
    """Last lines of a log file, or an empty string if it cannot be read."""
    try:
        with open(path, errors="replace") as f:
            return "".join(deque(f, maxlen=lines)).rstrip("\n")
    except OSError:
        return ""


def _pump_stderr(stream: IO[str], log: IO[str], job_id: str) -> None:
    """Copy child stderr into the job log and echo it to the console."""
    for line in stream:
        log.write(line)
        log.flush()
        sys.stderr.write(f"[{job_id}] {line}")
    stream.close()


def _terminate(proc: subprocess.Popen) -> None:
    """Terminate a child and its descendants, killing after a grace period."""
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.Error:
        children = []

    for child in children:
        try:
            child.terminate()
        except psutil.Error:
            continue
    proc.terminate()

    try:
        proc.wait(timeout=TERMINATE_GRACE_SEC)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()
    _gone, alive = psutil.wait_procs(children, timeout=TERMINATE_GRACE_SEC)
    for child in alive:
        try:
            child.kill()
        except psutil.Error:
            continue


class JobRunner:
    """Executes job attempts for one stage."""

    def __init__(
        self,
        stage: Stage,
        logs_dir: Path,
        scratch_root: Optional[Path] = None,
        heartbeat_sec: int = 60,
        show_stderr: bool = False,
        poll_interval: float = 1.0,
    ):
        """
        Initialize the runner.

        Args:
            stage: Stage that builds commands and checks output.
            logs_dir: Directory for per-job, per-tier log files.
            scratch_root: Parent of job scratch directories (system temp if None).
            heartbeat_sec: Seconds between "still running" log lines (min 10).
            show_stderr: Echo child stderr to the console as well as the log.
            poll_interval: Seconds between exit / memory / cancel checks.
        """
        self.stage = stage
        self.logs_dir = Path(logs_dir)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self.scratch_root = Path(scratch_root) if scratch_root else Path(tempfile.gettempdir())
        self.heartbeat_sec = max(MIN_HEARTBEAT_SEC, heartbeat_sec)
        self.show_stderr = show_stderr
        self.poll_interval = poll_interval

    def log_path(self, job: Job, profile: JobResourceProfile) -> Path:
        return self.logs_dir / f"{job.job_id}.{profile.tier.label}.log"

    def _clean_output(self, job: Job) -> None:
        path = job.output_dir
        if path.is_dir() and not path.is_symlink():
            logger.debug(f"[{job.job_id}] Removing previous output {path}")
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            logger.debug(f"[{job.job_id}] Removing stale file at {path}")
            path.unlink()

    def _prepare(self, job: Job, profile: JobResourceProfile) -> Tuple[Path, Path]:
        """Clean output dir, private scratch and temp space for one attempt."""
        self._clean_output(job)
        job.output_dir.mkdir(parents=True, exist_ok=True)

        prefix = f"{job.job_id}.{profile.tier.label}."
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix=prefix, dir=self.scratch_root))

        temp_parent = self.stage.temp_root(profile)
        if temp_parent is None:
            temp = scratch / "tmp"
            temp.mkdir()
            return scratch, temp
        try:
            temp_parent.mkdir(parents=True, exist_ok=True)
            temp = Path(tempfile.mkdtemp(prefix=prefix, dir=temp_parent))
        except OSError:
            shutil.rmtree(scratch, ignore_errors=True)
            raise
        return scratch, temp

    def run(
        self,
        job: Job,
        profile: JobResourceProfile,
        cancel: Optional[CancellationToken] = None,
    ) -> RunResult:
        """Run one attempt.

        Never raises for job-level problems: a bad input, a missing tool, a
        non-zero exit, missing output or a filesystem error while preparing
        the attempt all come back as a failed RunResult. On failure the
        output directory is removed so no partial primary output survives
        the attempt.

        Args:
            job: Job to run.
            profile: Threads, memory and fidelity for this attempt.
            cancel: Optional token; when set, the child is terminated.

        Returns:
            RunResult for this attempt.
        """
        log_path = self.log_path(job, profile)
        result = RunResult(job_id=job.job_id, tier=profile.tier, success=False, log_path=log_path)

        if cancel is not None and cancel.cancelled:
            result.cancelled = True
            result.detail = "cancelled"
            return result

        try:
            scratch, temp = self._prepare(job, profile)
        except OSError as e:
            logger.warning(f"[{job.job_id}] Cannot prepare {profile.tier.label} attempt: {e}")
            result.detail = f"setup failed: {e}"
            self._discard_output(job)
            return result

        try:
            with open(log_path, "a") as log:
                log.write(
                    f"=== {job.job_id} {profile.tier.label}: threads={profile.threads} "
                    f"memory={profile.memory_ceiling_mib}MiB "
                    f"reduced_fidelity={profile.reduced_fidelity}\n"
                )
                log.flush()
                self._attempt(job, profile, scratch, temp, log, result, cancel)
        except OSError as e:
            logger.warning(f"[{job.job_id}] {profile.tier.label} attempt aborted: {e}")
            result.success = False
            result.detail = f"I/O error: {e}"
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
            if not temp.is_relative_to(scratch):
                shutil.rmtree(temp, ignore_errors=True)
            if not result.success:
                self._discard_output(job)

        result.stderr_tail = tail(log_path)
        return result

    def _discard_output(self, job: Job) -> None:
        try:
            self._clean_output(job)
        except OSError as e:
            logger.warning(f"[{job.job_id}] Cannot remove partial output {job.output_dir}: {e}")

    def _attempt(
        self,
        job: Job,
        profile: JobResourceProfile,
        scratch: Path,
        temp: Path,
        log: IO[str],
        result: RunResult,
        cancel: Optional[CancellationToken],
    ) -> None:
        try:
            commands = self.stage.commands(job, profile, scratch, temp)
        except JobInputError as e:
            log.write(f"ERROR: {e}\n")
            result.detail = str(e)
            return

        for argv in commands:
            returncode, peak = self._execute(argv, job, profile, log, cancel)
            result.returncode = returncode
            if peak is not None and (result.peak_memory_mib is None or peak > result.peak_memory_mib):
                result.peak_memory_mib = peak

            if cancel is not None and cancel.cancelled:
                result.cancelled = True
                result.detail = "cancelled"
                return
            if returncode != 0:
                result.detail = f"{Path(argv[0]).name} exited with code {returncode}"
                return

        if not self.stage.output_complete(job):
            log.write(f"ERROR: primary output missing or empty in {job.output_dir}\n")
            result.detail = "primary output missing or empty"
            return

        result.success = True

    def _execute(
        self,
        argv: List[str],
        job: Job,
        profile: JobResourceProfile,
        log: IO[str],
        cancel: Optional[CancellationToken],
    ) -> Tuple[int, Optional[int]]:
        """Run one command to completion. Returns (returncode, peak MiB)."""
        env = os.environ.copy()
        env["SEQBATCH_JOB_ID"] = job.job_id
        env["SEQBATCH_THREADS"] = str(profile.threads)
        env["SEQBATCH_MEMORY_MIB"] = str(profile.memory_ceiling_mib)

        log.write(f"$ {' '.join(argv)}\n")
        log.flush()

        try:
            proc = subprocess.Popen(
                argv,
                stdout=log,
                stderr=subprocess.PIPE if self.show_stderr else log,
                env=env,
                text=True,
            )
        except OSError as e:
            log.write(f"ERROR: cannot start {argv[0]}: {e}\n")
            log.flush()
            return EXIT_NOT_STARTED, None

        pump = None
        if self.show_stderr:
            pump = threading.Thread(
                target=_pump_stderr, args=(proc.stderr, log, job.job_id), daemon=True
            )
            pump.start()

        monitor = PeakMemoryMonitor(proc.pid)
        started = last_beat = time.monotonic()
        while True:
            monitor.sample()
            try:
                returncode = proc.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass

            if cancel is not None and cancel.cancelled:
                logger.warning(f"[{job.job_id}] Cancelling {argv[0]}")
                _terminate(proc)
                returncode = proc.returncode
                break

            now = time.monotonic()
            if now - last_beat >= self.heartbeat_sec:
                logger.info(f"[{job.job_id}] {Path(argv[0]).name} still running ({int(now - started)}s)")
                last_beat = now

        if pump is not None:
            pump.join()
        if monitor.peak_mib is None:
            log.write("WARNING: peak memory unavailable for this command\n")
        log.flush()
        return returncode, monitor.peak_mib
