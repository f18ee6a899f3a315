"""
Shared fixtures for the jobctl tests.

Every test gets its own temporary project root, so the SQLite file and the
legacy prompts directory never leak between tests.
"""

import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from jobs import JobManager
from legacy import LegacyFileReader, get_prompts_dir
from models import Job, iso_timestamp
from storage import JobStore


def ago(**delta) -> str:
    """ISO timestamp for now minus the given timedelta kwargs."""
    return iso_timestamp(datetime.now(timezone.utc) - timedelta(**delta))


@pytest.fixture
def base_dir(tmp_path):
    return tmp_path


@pytest.fixture
def store(base_dir):
    s = JobStore()
    assert s.init(base_dir)
    yield s
    s.close()


@pytest.fixture
def prompts_dir(base_dir):
    path = get_prompts_dir(base_dir)
    os.makedirs(path, exist_ok=True)
    return path


@pytest.fixture
def reader(prompts_dir):
    return LegacyFileReader(prompts_dir)


@pytest.fixture
def make_job():
    """Factory for Job records with sensible defaults."""
    def _make(job_id="ab12cd34", provider="codex", status="running", **kwargs):
        defaults = {
            "slug": "review-auth-module",
            "pid": 12345,
            "prompt_file": f"/tmp/{provider}-prompt-{job_id}.md",
            "response_file": f"/tmp/{provider}-response-{job_id}.md",
            "model": "gpt-5.3-codex" if provider == "codex" else "gemini-3-pro-preview",
            "agent_role": "architect",
            "spawned_at": ago(minutes=5),
        }
        defaults.update(kwargs)
        return Job(provider=provider, job_id=job_id, status=status, **defaults)
    return _make


@pytest.fixture
def write_status_file(prompts_dir):
    """Write a legacy status file; pass raw=... to write arbitrary text."""
    def _write(job=None, raw=None, name=None):
        if name is None:
            name = f"{job.provider}-status-{job.slug}-{job.job_id}.json"
        path = os.path.join(prompts_dir, name)
        with open(path, "w", encoding="utf-8") as f:
            if raw is not None:
                f.write(raw)
            else:
                json.dump(job.to_dict(), f, indent=2)
        return path
    return _write


class SignalRecorder:
    """Stand-in for os.killpg that records calls and optionally fails."""

    def __init__(self, error=None, before_raise=None):
        self.calls = []
        self.error = error
        self.before_raise = before_raise

    def __call__(self, pid, signame):
        self.calls.append((pid, signame))
        if self.error is not None:
            if self.before_raise:
                self.before_raise()
            raise self.error


@pytest.fixture
def signals():
    return SignalRecorder()


@pytest.fixture
def manager(store, reader, signals):
    return JobManager(store, reader, send_signal=signals, poll_interval_ms=50)
