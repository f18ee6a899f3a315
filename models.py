# models.py
import re
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Optional

PROVIDERS = ("codex", "gemini")
ACTIVE_STATUSES = ("spawned", "running")
TERMINAL_STATUSES = ("completed", "failed", "timeout")
STATUSES = ACTIVE_STATUSES + TERMINAL_STATUSES

JOB_ID_RE = re.compile(r"^[0-9a-fA-F]{8}$")

# python attribute -> legacy JSON key
JSON_KEYS = {
    "provider": "provider",
    "job_id": "jobId",
    "slug": "slug",
    "status": "status",
    "pid": "pid",
    "prompt_file": "promptFile",
    "response_file": "responseFile",
    "model": "model",
    "agent_role": "agentRole",
    "spawned_at": "spawnedAt",
    "completed_at": "completedAt",
    "error": "error",
    "used_fallback": "usedFallback",
    "fallback_model": "fallbackModel",
    "killed_by_user": "killedByUser",
}

REQUIRED_JSON_KEYS = ("provider", "jobId", "promptFile")


@dataclass
class Job:
    # Legacy documents only need provider, jobId and promptFile. Other text
    # fields left out of a document default to "", and an empty spawned_at
    # means the age is unknown.
    provider: str
    job_id: str
    prompt_file: str
    slug: str = ""
    status: str = "spawned"   # spawned | running | completed | failed | timeout
    response_file: str = ""
    model: str = ""
    agent_role: str = ""
    spawned_at: str = ""
    pid: Optional[int] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    used_fallback: Optional[bool] = None
    fallback_model: Optional[str] = None
    killed_by_user: Optional[bool] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def key(self):
        return (self.provider, self.job_id.lower())

    def merged(self, **changes) -> "Job":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Legacy (camelCase) representation; unset optional fields are omitted."""
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            out[JSON_KEYS[f.name]] = value
        return out

    @classmethod
    def from_dict(cls, data) -> "Job":
        """Build a Job from a legacy status document.

        Raises ValueError when the document is not an object, lacks one of
        provider/jobId/promptFile, or carries an unknown provider or status.
        """
        if not isinstance(data, dict):
            raise ValueError("status document is not a JSON object")
        missing = [k for k in REQUIRED_JSON_KEYS if not data.get(k)]
        if missing:
            raise ValueError(f"missing required fields: {', '.join(missing)}")

        kwargs = {}
        for attr, key in JSON_KEYS.items():
            if key in data and data[key] is not None:
                kwargs[attr] = data[key]

        job = cls(**kwargs)
        if job.provider not in PROVIDERS:
            raise ValueError(f"unknown provider: {job.provider}")
        if job.status not in STATUSES:
            raise ValueError(f"unknown status: {job.status}")
        if job.pid is not None and (isinstance(job.pid, bool) or not isinstance(job.pid, int)):
            job.pid = None
        return job


@dataclass
class StatusFileMatch:
    slug: str
    path: str


@dataclass
class JobStats:
    total: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


@dataclass
class MigrationResult:
    imported: int = 0
    errors: int = 0


# ---------------- Time helpers ----------------
def iso_timestamp(dt: datetime) -> str:
    """UTC timestamp with millisecond precision and a trailing Z.

    Every stored timestamp uses this shape so string comparison in SQL
    matches chronological order.
    """
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def utc_now_iso() -> str:
    return iso_timestamp(datetime.now(timezone.utc))


def iso_ago(ms: int) -> str:
    return iso_timestamp(datetime.now(timezone.utc) - timedelta(milliseconds=ms))


def parse_iso(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def sort_key_spawned(job: Job) -> float:
    dt = parse_iso(job.spawned_at)
    return dt.timestamp() if dt else 0.0


def format_elapsed(seconds: float) -> str:
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def is_valid_job_id(job_id) -> bool:
    return isinstance(job_id, str) and bool(JOB_ID_RE.match(job_id))
