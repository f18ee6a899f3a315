"""
Tests for importing legacy status files into the job store.
"""

import json
import sqlite3
from unittest.mock import patch

from migrate import run_migration
from storage import JobStore


class TestMigrateFromJsonFiles:

    def test_counts_valid_and_invalid_files(self, store, prompts_dir, make_job, write_status_file):
        write_status_file(make_job("00000001", status="completed"))
        write_status_file(make_job("00000002", provider="gemini", status="running"))
        write_status_file(make_job("00000003", status="failed", error="boom", used_fallback=True,
                                   fallback_model="gpt-5.2"))
        write_status_file(raw="{not json", name="codex-status-broken-00000004.json")
        write_status_file(raw=json.dumps({"provider": "codex", "jobId": "00000005"}),
                          name="codex-status-noprompt-00000005.json")

        result = store.migrate_from_json_files(prompts_dir)

        assert result.imported == 3
        assert result.errors == 2
        assert store.get_job("codex", "00000001").status == "completed"
        assert store.get_job("gemini", "00000002").status == "running"
        failed = store.get_job("codex", "00000003")
        assert failed.used_fallback is True
        assert failed.error == "boom"
        assert store.get_job("codex", "00000005") is None

    def test_round_trips_every_field(self, store, prompts_dir, make_job, write_status_file):
        job = make_job(status="failed", completed_at="2026-01-01T00:00:00.000Z", error="x",
                       killed_by_user=True)
        write_status_file(job)
        store.migrate_from_json_files(prompts_dir)
        assert store.get_job("codex", "ab12cd34") == job

    def test_rerun_is_idempotent(self, store, prompts_dir, make_job, write_status_file):
        write_status_file(make_job("00000001"))
        write_status_file(make_job("00000002"))

        first = store.migrate_from_json_files(prompts_dir)
        second = store.migrate_from_json_files(prompts_dir)

        assert first.imported == second.imported == 2
        assert store.get_job_stats().total == 2

    def test_ignores_unrelated_files(self, store, prompts_dir, make_job, write_status_file):
        write_status_file(make_job())
        write_status_file(raw="{}", name="codex-prompt-review-ab12cd34.md")
        write_status_file(raw="{}", name="notes.json")
        result = store.migrate_from_json_files(prompts_dir)
        assert (result.imported, result.errors) == (1, 0)

    def test_invalid_provider_counts_as_error(self, store, prompts_dir, make_job, write_status_file):
        data = make_job().to_dict()
        data["provider"] = "claude"
        write_status_file(raw=json.dumps(data), name="claude-status-x-ab12cd34.json")
        result = store.migrate_from_json_files(prompts_dir)
        assert (result.imported, result.errors) == (0, 1)

    def test_missing_directory(self, store, tmp_path):
        result = store.migrate_from_json_files(tmp_path / "missing")
        assert (result.imported, result.errors) == (0, 0)

    def test_database_failure_rolls_back_whole_batch(self, store, prompts_dir, make_job, write_status_file):
        write_status_file(make_job("00000001"))
        write_status_file(make_job("00000002"))
        write_status_file(make_job("00000003"))

        original = JobStore._write_job
        calls = {"n": 0}

        def flaky(self, job):
            calls["n"] += 1
            if calls["n"] == 3:
                raise sqlite3.OperationalError("disk I/O error")
            return original(self, job)

        with patch.object(JobStore, "_write_job", flaky):
            result = store.migrate_from_json_files(prompts_dir)

        assert result.imported == 0
        assert store.get_job_stats().total == 0


def test_run_migration(base_dir, prompts_dir, make_job, write_status_file):
    write_status_file(make_job("00000001"))
    write_status_file(raw="oops", name="codex-status-bad-00000002.json")

    result = run_migration(base_dir)
    assert (result.imported, result.errors) == (1, 1)

    store = JobStore(base_dir)
    assert store.get_job("codex", "00000001") is not None
    store.close()
