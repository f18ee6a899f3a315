# storage.py
"""SQLite-backed job state store.

One shared database at ``{base_dir}/.omc/state/jobs.db`` holds the metadata
of every codex/gemini background job; prompt and response text stay on disk.
A ``JobStore`` starts uninitialized. ``init`` opens it and ``close`` releases
it, and while no connection is open every call returns its empty value
(False, None, [], 0) instead of raising.
"""
import logging
import os
import sqlite3
from datetime import datetime, timezone

from legacy import LegacyFileReader
from models import (
    TERMINAL_STATUSES,
    Job,
    JobStats,
    MigrationResult,
    iso_ago,
    parse_iso,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

DEFAULT_CLEANUP_MAX_AGE_MS = 24 * 60 * 60 * 1000
DEFAULT_RECENT_WINDOW_MS = 60 * 60 * 1000
SUMMARY_RECENT_LIMIT = 10
SUMMARY_ERROR_CHARS = 80

DEFAULTS = {
    "cleanup_max_age_ms": str(DEFAULT_CLEANUP_MAX_AGE_MS),
    "stale_job_max_age_ms": str(60 * 60 * 1000),
    "wait_poll_interval_ms": "500",
    "reaper_interval_seconds": "60",
}

COLUMNS = (
    "job_id", "provider", "slug", "status", "pid",
    "prompt_file", "response_file", "model", "agent_role",
    "spawned_at", "completed_at", "error",
    "used_fallback", "fallback_model", "killed_by_user",
)

# Fields update_job_status may touch. Identity and spawned_at never change.
UPDATABLE = (
    "slug", "status", "pid", "prompt_file", "response_file", "model", "agent_role",
    "completed_at", "error", "used_fallback", "fallback_model", "killed_by_user",
)
BOOL_COLUMNS = ("used_fallback", "killed_by_user")

_ACTIVE_SQL = "('spawned', 'running')"
_TERMINAL_SQL = "('completed', 'failed', 'timeout')"


def get_db_path(base_dir) -> str:
    return os.path.join(str(base_dir), ".omc", "state", "jobs.db")


def _to_db(column, value):
    if column in BOOL_COLUMNS and value is not None:
        return 1 if value else 0
    return value


def _row_to_job(row) -> Job:
    data = {c: row[c] for c in COLUMNS}
    for c in BOOL_COLUMNS:
        if data[c] is not None:
            data[c] = bool(data[c])
    return Job(**data)


class JobStore:
    def __init__(self, base_dir=None):
        self.conn = None
        self.db_path = None
        if base_dir is not None:
            self.init(base_dir)

    # ---------------- Lifecycle ----------------
    def init(self, base_dir) -> bool:
        """Open (creating if needed) the job database under base_dir."""
        if self.conn is not None:
            self.close()
        db_path = get_db_path(base_dir)
        try:
            os.makedirs(os.path.dirname(db_path), exist_ok=True)
            conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
            conn.row_factory = sqlite3.Row

            # Several tool servers may share the file
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")

            self._init_schema(conn)
        except (OSError, sqlite3.Error) as e:
            logger.error("Failed to initialize job database at %s: %s", db_path, e)
            return False

        self.conn = conn
        self.db_path = db_path
        return True

    def _init_schema(self, conn):
        conn.executescript("""
        CREATE TABLE IF NOT EXISTS schema_info (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS jobs (
            job_id TEXT NOT NULL COLLATE NOCASE,
            provider TEXT NOT NULL CHECK (provider IN ('codex', 'gemini')),
            slug TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'spawned'
                CHECK (status IN ('spawned', 'running', 'completed', 'failed', 'timeout')),
            pid INTEGER,
            prompt_file TEXT NOT NULL,
            response_file TEXT NOT NULL,
            model TEXT NOT NULL,
            agent_role TEXT NOT NULL,
            spawned_at TEXT NOT NULL,
            completed_at TEXT,
            error TEXT,
            used_fallback INTEGER,
            fallback_model TEXT,
            killed_by_user INTEGER,
            PRIMARY KEY (provider, job_id)
        );

        CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
        CREATE INDEX IF NOT EXISTS idx_jobs_provider ON jobs(provider);
        CREATE INDEX IF NOT EXISTS idx_jobs_spawned_at ON jobs(spawned_at);
        CREATE INDEX IF NOT EXISTS idx_jobs_provider_status ON jobs(provider, status);

        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """)
        conn.execute(
            "INSERT OR REPLACE INTO schema_info (key, value) VALUES ('version', ?)",
            (str(SCHEMA_VERSION),),
        )
        conn.commit()

    def close(self):
        if self.conn is None:
            return
        try:
            self.conn.close()
        except sqlite3.Error as e:
            logger.debug("Ignoring error while closing job database: %s", e)
        self.conn = None

    def is_initialized(self) -> bool:
        return self.conn is not None

    def schema_version(self):
        if self.conn is None:
            return None
        row = self.conn.execute("SELECT value FROM schema_info WHERE key='version'").fetchone()
        return int(row["value"]) if row else None

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        fallback = DEFAULTS.get(key) if default is None else default
        if self.conn is None:
            return fallback
        try:
            row = self.conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        except sqlite3.Error as e:
            logger.error("Failed to read config %s: %s", key, e)
            row = None
        return row["value"] if row else fallback

    def set_config(self, key, value) -> bool:
        if self.conn is None:
            return False
        try:
            with self.conn:
                self.conn.execute("""
                    INSERT INTO config (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """, (key, str(value), utc_now_iso()))
            return True
        except sqlite3.Error as e:
            logger.error("Failed to set config %s: %s", key, e)
            return False

    def list_config(self):
        if self.conn is None:
            return []
        rows = self.conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()
        return [(r["key"], r["value"], r["updated_at"]) for r in rows]

    # ---------------- CRUD ----------------
    def _write_job(self, job: Job):
        values = [_to_db(c, getattr(job, c)) for c in COLUMNS]
        updates = ", ".join(f"{c}=excluded.{c}" for c in COLUMNS if c not in ("job_id", "provider"))
        self.conn.execute(f"""
            INSERT INTO jobs ({", ".join(COLUMNS)})
            VALUES ({", ".join("?" for _ in COLUMNS)})
            ON CONFLICT(provider, job_id) DO UPDATE SET {updates}
        """, values)

    def upsert_job(self, job: Job) -> bool:
        if self.conn is None:
            return False
        try:
            with self.conn:
                self._write_job(job)
            return True
        except sqlite3.Error as e:
            logger.error("Failed to upsert job %s/%s: %s", job.provider, job.job_id, e)
            return False

    def get_job(self, provider, job_id):
        if self.conn is None:
            return None
        try:
            row = self.conn.execute(
                "SELECT * FROM jobs WHERE provider=? AND job_id=?", (provider, job_id)
            ).fetchone()
        except sqlite3.Error as e:
            logger.error("Failed to get job %s/%s: %s", provider, job_id, e)
            return None
        return _row_to_job(row) if row else None

    def _select(self, where="", params=(), provider=None):
        if self.conn is None:
            return []
        clauses = [where] if where else []
        args = list(params)
        if provider:
            clauses.append("provider=?")
            args.append(provider)
        sql = "SELECT * FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY spawned_at DESC"
        try:
            rows = self.conn.execute(sql, args).fetchall()
        except sqlite3.Error as e:
            logger.error("Failed to query jobs: %s", e)
            return []
        return [_row_to_job(r) for r in rows]

    def get_jobs_by_status(self, provider, status):
        return self._select("status=?", (status,), provider)

    def get_active_jobs(self, provider=None):
        return self._select(f"status IN {_ACTIVE_SQL}", (), provider)

    def get_recent_jobs(self, provider=None, window_ms=DEFAULT_RECENT_WINDOW_MS):
        return self._select("spawned_at > ?", (iso_ago(window_ms),), provider)

    def list_jobs(self, provider=None):
        return self._select("", (), provider)

    def update_job_status(self, provider, job_id, **updates) -> bool:
        """Set only the given fields on one job; other columns stay as they are."""
        if self.conn is None:
            return False
        unknown = [k for k in updates if k not in UPDATABLE]
        if unknown:
            logger.error("Refusing to update unknown job fields: %s", ", ".join(unknown))
            return False
        if not updates:
            return True

        assignments = ", ".join(f"{k}=?" for k in updates)
        values = [_to_db(k, v) for k, v in updates.items()]
        try:
            with self.conn:
                self.conn.execute(
                    f"UPDATE jobs SET {assignments} WHERE provider=? AND job_id=?",
                    (*values, provider, job_id),
                )
            return True
        except sqlite3.Error as e:
            logger.error("Failed to update job %s/%s: %s", provider, job_id, e)
            return False

    def delete_job(self, provider, job_id) -> bool:
        if self.conn is None:
            return False
        try:
            with self.conn:
                self.conn.execute("DELETE FROM jobs WHERE provider=? AND job_id=?", (provider, job_id))
            return True
        except sqlite3.Error as e:
            logger.error("Failed to delete job %s/%s: %s", provider, job_id, e)
            return False

    # ---------------- Migration ----------------
    def migrate_from_json_files(self, directory) -> MigrationResult:
        """Import every legacy ``*-status-*.json`` file in one transaction.

        Unreadable files, bad JSON and documents missing provider, jobId or
        promptFile are counted in ``errors`` and skipped. If the database
        itself fails midway the whole batch is rolled back and nothing is
        reported as imported. Re-running overwrites the same rows.
        """
        result = MigrationResult()
        if self.conn is None or not os.path.isdir(str(directory)):
            return result

        reader = LegacyFileReader(directory)
        paths = list(reader.iter_status_files())
        try:
            with self.conn:
                for path in paths:
                    try:
                        job = reader.load_status_file(path)
                    except (OSError, ValueError) as e:
                        logger.warning("Skipping %s: %s", os.path.basename(path), e)
                        result.errors += 1
                        continue
                    try:
                        self._write_job(job)
                    except sqlite3.IntegrityError as e:
                        logger.warning("Skipping %s: %s", os.path.basename(path), e)
                        result.errors += 1
                        continue
                    result.imported += 1
        except sqlite3.Error as e:
            logger.error("Migration from %s rolled back: %s", directory, e)
            return MigrationResult(imported=0, errors=len(paths))

        logger.info("Migrated %d job(s) from %s (%d error(s))", result.imported, directory, result.errors)
        return result

    # ---------------- Cleanup ----------------
    def cleanup_old_jobs(self, max_age_ms=DEFAULT_CLEANUP_MAX_AGE_MS) -> int:
        """Delete terminal jobs spawned before now - max_age_ms.

        Active jobs are kept, and so are jobs imported without a spawn time.
        """
        if self.conn is None:
            return 0
        try:
            with self.conn:
                cur = self.conn.execute(
                    f"DELETE FROM jobs WHERE status IN {_TERMINAL_SQL} AND spawned_at != '' AND spawned_at < ?",
                    (iso_ago(max_age_ms),),
                )
        except sqlite3.Error as e:
            logger.error("Failed to clean up old jobs: %s", e)
            return 0
        if cur.rowcount:
            logger.info("Cleaned up %d old job(s)", cur.rowcount)
        return cur.rowcount

    def mark_stale_jobs(self, max_age_ms) -> int:
        """Time out active jobs spawned before now - max_age_ms."""
        if self.conn is None:
            return 0
        try:
            with self.conn:
                cur = self.conn.execute(
                    f"""
                    UPDATE jobs SET status='timeout', completed_at=?, error=?
                    WHERE status IN {_ACTIVE_SQL} AND spawned_at != '' AND spawned_at < ?
                    """,
                    (utc_now_iso(), "Job exceeded maximum age and was marked stale", iso_ago(max_age_ms)),
                )
        except sqlite3.Error as e:
            logger.error("Failed to mark stale jobs: %s", e)
            return 0
        if cur.rowcount:
            logger.info("Marked %d stale job(s) as timeout", cur.rowcount)
        return cur.rowcount

    # ---------------- Stats ----------------
    def get_job_stats(self):
        if self.conn is None:
            return None
        try:
            row = self.conn.execute(f"""
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN status IN {_ACTIVE_SQL} THEN 1 ELSE 0 END) AS active,
                    SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                    SUM(CASE WHEN status IN ('failed', 'timeout') THEN 1 ELSE 0 END) AS failed
                FROM jobs
            """).fetchone()
        except sqlite3.Error as e:
            logger.error("Failed to get job stats: %s", e)
            return None
        return JobStats(
            total=row["total"] or 0,
            active=row["active"] or 0,
            completed=row["completed"] or 0,
            failed=row["failed"] or 0,
        )

    def get_job_summary_for_precompact(self) -> str:
        """Markdown digest of job state to carry across a context compaction."""
        if self.conn is None:
            return ""

        lines = []
        now = datetime.now(timezone.utc)

        active = self.get_active_jobs()
        if active:
            lines.append("## Active Background Jobs")
            lines.append("")
            for job in active:
                spawned = parse_iso(job.spawned_at)
                elapsed_min = round((now - spawned).total_seconds() / 60) if spawned else 0
                lines.append(
                    f"- **{job.provider}** `{job.job_id}` ({job.agent_role}, {job.model}): "
                    f"{job.status} for {elapsed_min}m"
                )
                lines.append(f"  - Prompt: `{job.prompt_file}`")
                lines.append(f"  - Response: `{job.response_file}`")
                if job.pid:
                    lines.append(f"  - PID: {job.pid}")
            lines.append("")

        recent = [j for j in self.get_recent_jobs(None, DEFAULT_RECENT_WINDOW_MS)
                  if j.status in TERMINAL_STATUSES]
        if recent:
            lines.append("## Recent Completed Jobs (last hour)")
            lines.append("")
            for job in recent[:SUMMARY_RECENT_LIMIT]:
                label = "done" if job.status == "completed" else job.status
                fallback = f" (fallback: {job.fallback_model})" if job.used_fallback else ""
                error = f" - error: {job.error[:SUMMARY_ERROR_CHARS]}" if job.error else ""
                lines.append(f"- **{job.provider}** `{job.job_id}` ({job.agent_role}): {label}{fallback}{error}")
            if len(recent) > SUMMARY_RECENT_LIMIT:
                lines.append(f"- ... and {len(recent) - SUMMARY_RECENT_LIMIT} more")
            lines.append("")

        stats = self.get_job_stats()
        if stats and stats.total > 0:
            lines.append(
                f"**Job totals:** {stats.total} total, {stats.active} active, "
                f"{stats.completed} completed, {stats.failed} failed"
            )

        return "\n".join(lines)
