# jobs.py
"""Operational commands over tracked jobs: check, list, wait and kill.

Every command returns a ``CommandResult``. Expected conditions such as a bad
argument, an unknown job or a job that already finished come back as error
results and are never raised.
"""
import errno
import logging
import os
import signal as signal_module
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from models import (
    PROVIDERS,
    Job,
    format_elapsed,
    is_valid_job_id,
    parse_iso,
    sort_key_spawned,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# SIGKILL is excluded: jobs run as process-group leaders and SIGKILL gives the
# provider CLI no chance to clean up its children.
ALLOWED_SIGNALS = ("SIGTERM", "SIGINT")

MIN_WAIT_MS = 1000
MAX_WAIT_MS = 60 * 60 * 1000
DEFAULT_POLL_INTERVAL_MS = 500
DEFAULT_LIST_LIMIT = 50
RESPONSE_PREVIEW_CHARS = 500
MAX_PID = 4194304

LIST_FILTERS = {
    "active": lambda job: job.status in ("spawned", "running"),
    "completed": lambda job: job.status == "completed",
    "failed": lambda job: job.status in ("failed", "timeout"),
    "all": lambda job: True,
}


@dataclass
class CommandResult:
    text: str
    is_error: bool = False

    @property
    def ok(self) -> bool:
        return not self.is_error


def _error(text) -> CommandResult:
    return CommandResult(text, is_error=True)


def send_signal(pid: int, signame: str):
    """Signal the job's whole process group where process groups exist."""
    signum = getattr(signal_module, signame)
    if hasattr(os, "killpg"):
        os.killpg(pid, signum)
    else:
        os.kill(pid, signum)


def _is_esrch(exc: BaseException) -> bool:
    return isinstance(exc, ProcessLookupError) or getattr(exc, "errno", None) == errno.ESRCH


class JobSources:
    """Ordered read sources: the first one that knows a job wins."""

    def __init__(self, *sources):
        self.sources = [s for s in sources if s is not None]

    def get(self, provider, job_id) -> Optional[Job]:
        for source in self.sources:
            if hasattr(source, "is_initialized") and not source.is_initialized():
                continue
            job = source.get_job(provider, job_id)
            if job is not None:
                return job
        return None

    def list(self, provider=None) -> List[Job]:
        seen = set()
        merged = []
        for source in self.sources:
            if hasattr(source, "is_initialized") and not source.is_initialized():
                continue
            for job in source.list_jobs(provider):
                if job.key in seen:
                    continue
                seen.add(job.key)
                merged.append(job)
        return merged


class JobManager:
    def __init__(self, store, legacy, send_signal=send_signal, poll_interval_ms=DEFAULT_POLL_INTERVAL_MS):
        self.store = store
        self.legacy = legacy
        self.sources = JobSources(store, legacy)
        self.send_signal = send_signal
        self.poll_interval_ms = poll_interval_ms

    # ---------------- Validation ----------------
    def _validate(self, provider, job_id) -> Optional[CommandResult]:
        if provider not in PROVIDERS:
            return _error(f"Invalid provider: {provider}. Expected one of: {', '.join(PROVIDERS)}")
        if not job_id or not isinstance(job_id, str):
            return _error("job_id is required.")
        if not is_valid_job_id(job_id):
            return _error(f"Invalid job_id: {job_id}. Expected 8 hexadecimal characters.")
        return None

    def find_job_status_file(self, provider, job_id):
        return self.legacy.find_job_status_file(provider, job_id)

    # ---------------- Writes ----------------
    def _save(self, job: Job, **changes) -> bool:
        """Persist changes for a job that may so far only exist as a legacy file."""
        if self.store.get_job(job.provider, job.job_id) is not None:
            return self.store.update_job_status(job.provider, job.job_id, **changes)
        return self.store.upsert_job(job.merged(**changes))

    # ---------------- Check ----------------
    def check_job_status(self, provider, job_id) -> CommandResult:
        invalid = self._validate(provider, job_id)
        if invalid:
            return invalid

        job = self.sources.get(provider, job_id)
        if job is None:
            return _error(f"No job found with ID: {job_id}")
        return CommandResult(render_job(job))

    # ---------------- List ----------------
    def list_jobs(self, provider, status_filter="active", limit=DEFAULT_LIST_LIMIT) -> CommandResult:
        if provider not in PROVIDERS:
            return _error(f"Invalid provider: {provider}. Expected one of: {', '.join(PROVIDERS)}")
        if status_filter not in LIST_FILTERS:
            return _error(f"Invalid status filter: {status_filter}. Expected one of: {', '.join(LIST_FILTERS)}")

        jobs = self.collect_jobs(provider, status_filter, limit)
        if not jobs:
            if status_filter == "active":
                return CommandResult(f"No active {provider} jobs found.")
            filter_desc = f" with status={status_filter}" if status_filter != "all" else ""
            return CommandResult(f"No {provider} jobs found{filter_desc}.")

        blocks = "\n\n".join(render_job_line(job) for job in jobs)
        if status_filter == "active":
            return CommandResult(f"**{len(jobs)} active {provider} job(s):**\n\n{blocks}")
        return CommandResult(f"**{len(jobs)} {provider} job(s) found:**\n\n{blocks}")

    def collect_jobs(self, provider, status_filter="all", limit=None) -> List[Job]:
        predicate = LIST_FILTERS[status_filter]
        jobs = [j for j in self.sources.list(provider) if predicate(j)]
        jobs.sort(key=sort_key_spawned, reverse=True)
        if limit is not None and limit >= 0:
            jobs = jobs[:limit]
        return jobs

    # ---------------- Wait ----------------
    def wait_for_job(self, provider, job_id, timeout_ms=MAX_WAIT_MS, cancel_event=None) -> CommandResult:
        """Poll until the job reaches a terminal state or the timeout expires.

        The timeout is clamped to [1s, 1h] so a zero or negative value still
        waits a little instead of returning straight away. Setting
        ``cancel_event`` abandons the wait; the job itself is never touched.
        """
        invalid = self._validate(provider, job_id)
        if invalid:
            return invalid

        try:
            timeout_ms = int(timeout_ms)
        except (TypeError, ValueError):
            timeout_ms = MAX_WAIT_MS
        effective_ms = max(MIN_WAIT_MS, min(timeout_ms, MAX_WAIT_MS))
        deadline = time.monotonic() + effective_ms / 1000.0
        interval = max(self.poll_interval_ms, 10) / 1000.0
        cancel_event = cancel_event or threading.Event()

        while True:
            job = self.sources.get(provider, job_id)
            if job is None:
                return _error(f"No job found with ID: {job_id}")
            if job.is_terminal:
                return self._terminal_result(job)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if cancel_event.wait(min(interval, remaining)):
                return _error(f"Wait for job {job_id} was cancelled. The job is still {job.status}.")

        return _error(
            f"Timed out waiting for job {job_id} after {effective_ms}ms. "
            f"The job is still running; use check_job_status to poll later."
        )

    def _terminal_result(self, job: Job) -> CommandResult:
        if job.status == "completed":
            response = self.legacy.read_completed_response(job)
            if response is None:
                preview = "(response file not found)"
            else:
                preview = response[:RESPONSE_PREVIEW_CHARS]
                if len(response) > RESPONSE_PREVIEW_CHARS:
                    preview += "..."
            lines = [
                f"**Job {job.job_id} completed.**",
                f"**Provider:** {job.provider}",
                f"**Model:** {job.model}",
                f"**Agent Role:** {job.agent_role}",
                f"**Response File:** {job.response_file}",
                f"**Fallback Model:** {job.fallback_model}" if job.used_fallback else None,
                "",
                "**Response preview:**",
                preview,
            ]
            return CommandResult("\n".join(line for line in lines if line is not None))

        lines = [
            f"**Job {job.job_id} {job.status}.**",
            f"**Provider:** {job.provider}",
            f"**Model:** {job.model}",
            f"**Agent Role:** {job.agent_role}",
            f"**Error:** {job.error}" if job.error else None,
        ]
        return _error("\n".join(line for line in lines if line is not None))

    # ---------------- Kill ----------------
    def kill_job(self, provider, job_id, signal="SIGTERM") -> CommandResult:
        if signal not in ALLOWED_SIGNALS:
            return _error(f"Invalid signal: {signal}. Allowed signals: {', '.join(ALLOWED_SIGNALS)}")
        invalid = self._validate(provider, job_id)
        if invalid:
            return invalid

        job = self.sources.get(provider, job_id)
        if job is None:
            return _error(f"No job found with ID: {job_id}")
        if job.is_terminal:
            return _error(f"Job {job_id} is already in terminal state: {job.status}. Cannot kill.")

        pid = job.pid
        if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0 or pid > MAX_PID:
            return _error(f"Job {job_id} has no valid PID recorded. Cannot send signal.")

        # Record the intent first so the spawner's exit handler can tell a
        # user kill from a crash.
        previous_flag = job.killed_by_user
        existed = self.store.get_job(provider, job.job_id) is not None
        self._save(job, killed_by_user=True)

        try:
            self.send_signal(pid, signal)
        except OSError as e:
            if _is_esrch(e):
                return self._resolve_exited(job, pid, signal, existed)
            # The process may or may not still be running; leave the record as it was.
            if existed:
                self.store.update_job_status(provider, job.job_id, killed_by_user=previous_flag)
            else:
                self.store.delete_job(provider, job.job_id)
            logger.warning("Failed to signal job %s/%s (pid %s): %s", provider, job_id, pid, e)
            return _error(f"Failed to kill process {pid}: {e}")

        recorded = self._save(
            job,
            status="failed",
            killed_by_user=True,
            completed_at=utc_now_iso(),
            error=f"Killed by user (signal: {signal})",
        )
        if not recorded:
            logger.error("Sent %s to job %s/%s (pid %s) but could not record it", signal, provider, job_id, pid)
            return _error(f"Sent {signal} to job {job_id} (PID {pid}), but the job status could not be recorded.")
        logger.info("Sent %s to job %s/%s (pid %s)", signal, provider, job_id, pid)
        return CommandResult(f"Sent {signal} to job {job_id} (PID {pid}). Job marked as failed.")

    def _resolve_exited(self, job: Job, pid: int, signal: str, in_store: bool) -> CommandResult:
        if in_store:
            current = self.store.get_job(job.provider, job.job_id) or job
        else:
            # Only the spawner writes the status file; the row added for the kill is stale.
            current = self.legacy.get_job(job.provider, job.job_id) or job

        if current.is_terminal:
            if not in_store:
                self.store.delete_job(job.provider, job.job_id)
            if current.status == "completed":
                logger.info("Job %s/%s exited before %s; keeping completed", job.provider, job.job_id, signal)
                return CommandResult(f"Process {pid} already exited. Job {job.job_id} completed successfully.")
            return CommandResult(f"Process {pid} already exited. Job {job.job_id} is {current.status}.")

        changes = dict(
            status="failed",
            killed_by_user=True,
            completed_at=utc_now_iso(),
            error=f"Killed by user (process already exited, signal: {signal})",
        )
        if in_store:
            recorded = self.store.update_job_status(job.provider, job.job_id, **changes)
        else:
            recorded = self.store.upsert_job(current.merged(**changes))
        if not recorded:
            return _error(
                f"Process {pid} already exited, but the status of job {job.job_id} could not be recorded."
            )
        logger.info("Job %s/%s process %s already gone; marked failed", job.provider, job.job_id, pid)
        return CommandResult(f"Process {pid} already exited. Job {job.job_id} marked as failed.")


# ---------------- Rendering ----------------
def render_job(job: Job, now=None) -> str:
    now = now or datetime.now(timezone.utc)
    spawned = parse_iso(job.spawned_at)
    completed = parse_iso(job.completed_at)

    timing = None
    if spawned and completed:
        timing = f"**Duration:** {format_elapsed((completed - spawned).total_seconds())}"
    elif spawned and job.is_active:
        timing = f"**Elapsed:** {format_elapsed((now - spawned).total_seconds())}"

    lines = [
        f"**Job ID:** {job.job_id}",
        f"**Provider:** {job.provider}",
        f"**Status:** {job.status}",
        f"**Model:** {job.model}",
        f"**Agent Role:** {job.agent_role}",
        f"**Spawned At:** {job.spawned_at}",
        f"**Completed At:** {job.completed_at}" if job.completed_at else None,
        timing,
        f"**PID:** {job.pid}" if job.pid else None,
        f"**Prompt File:** {job.prompt_file}",
        f"**Response File:** {job.response_file}",
        f"**Error:** {job.error}" if job.error else None,
        f"**Fallback Model:** {job.fallback_model}" if job.used_fallback else None,
        "**Killed By User:** yes" if job.killed_by_user else None,
    ]
    return "\n".join(line for line in lines if line is not None)


def render_job_line(job: Job) -> str:
    parts = [
        f"- **{job.job_id}** [{job.status}] {job.provider}/{job.model} ({job.agent_role})",
        f"  Spawned: {job.spawned_at}",
    ]
    if job.completed_at:
        parts.append(f"  Completed: {job.completed_at}")
    if job.error:
        parts.append(f"  Error: {job.error}")
    if job.pid:
        parts.append(f"  PID: {job.pid}")
    return "\n".join(parts)
