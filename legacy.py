# legacy.py
"""Read-only access to the one-file-per-job status format.

Before the SQLite store existed every job was tracked as
``{provider}-status-{slug}-{jobId}.json`` inside the prompts directory, with
the model output written next to it as ``{provider}-response-{slug}-{jobId}.md``.
Nothing here writes; the files are a migration source and a fallback for
jobs the store does not know about.
"""
import json
import logging
import os
import re
from typing import Iterator, List, Optional

from models import (
    Job,
    StatusFileMatch,
    is_valid_job_id,
    sort_key_spawned,
)

logger = logging.getLogger(__name__)

FRONTMATTER_RE = re.compile(r"^---\n[\s\S]*?\n---\n\n")


def get_prompts_dir(base_dir) -> str:
    return os.path.join(str(base_dir), ".omc", "prompts")


class LegacyFileReader:
    def __init__(self, prompts_dir):
        self.prompts_dir = str(prompts_dir)

    # ---------------- File discovery ----------------
    def _list_dir(self) -> List[str]:
        if not os.path.isdir(self.prompts_dir):
            return []
        try:
            return sorted(os.listdir(self.prompts_dir))
        except OSError as e:
            logger.warning("Cannot list %s: %s", self.prompts_dir, e)
            return []

    def iter_status_files(self, provider=None) -> Iterator[str]:
        prefix = f"{provider}-status-" if provider else None
        for name in self._list_dir():
            if not name.endswith(".json") or "-status-" not in name:
                continue
            if prefix and not name.startswith(prefix):
                continue
            yield os.path.join(self.prompts_dir, name)

    def status_file_path(self, provider, slug, job_id) -> str:
        return os.path.join(self.prompts_dir, f"{provider}-status-{slug}-{job_id}.json")

    def response_file_path(self, provider, slug, job_id) -> str:
        return os.path.join(self.prompts_dir, f"{provider}-response-{slug}-{job_id}.md")

    # ---------------- Parsing ----------------
    def load_status_file(self, path) -> Job:
        """Parse one status file. Raises ValueError (or OSError) when unusable."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return Job.from_dict(data)

    def _try_load(self, path) -> Optional[Job]:
        try:
            return self.load_status_file(path)
        except (OSError, ValueError) as e:
            logger.debug("Skipping malformed status file %s: %s", path, e)
            return None

    # ---------------- Lookups ----------------
    def find_job_status_file(self, provider, job_id) -> Optional[StatusFileMatch]:
        # Reject anything that is not an 8-char hex id before touching the disk;
        # this also keeps path fragments like "../" out of the pattern below.
        if not is_valid_job_id(job_id):
            return None

        pattern = re.compile(
            rf"^{re.escape(provider)}-status-(.+)-{re.escape(job_id)}\.json$",
            re.IGNORECASE,
        )
        matches = []
        for name in self._list_dir():
            m = pattern.match(name)
            if m:
                matches.append(StatusFileMatch(slug=m.group(1), path=os.path.join(self.prompts_dir, name)))

        if not matches:
            return None
        if len(matches) == 1:
            return matches[0]

        # Several files for one id: prefer an active job, then the newest spawn
        best = None
        best_rank = None
        for match in matches:
            job = self._try_load(match.path)
            if job is None:
                continue
            rank = (job.is_active, sort_key_spawned(job))
            if best_rank is None or rank > best_rank:
                best, best_rank = match, rank
        return best or matches[0]

    def read_job_status(self, provider, slug, job_id) -> Optional[Job]:
        path = self.status_file_path(provider, slug, job_id)
        if not os.path.exists(path):
            return None
        return self._try_load(path)

    def get_job(self, provider, job_id) -> Optional[Job]:
        found = self.find_job_status_file(provider, job_id)
        if not found:
            return None
        return self._try_load(found.path)

    def list_jobs(self, provider=None) -> List[Job]:
        jobs = []
        for path in self.iter_status_files(provider):
            job = self._try_load(path)
            if job is not None and (provider is None or job.provider == provider):
                jobs.append(job)
        return jobs

    def read_completed_response(self, job: Job) -> Optional[str]:
        """Return the job's response text without its YAML front matter."""
        candidates = []
        if job.response_file:
            candidates.append(job.response_file)
        candidates.append(self.response_file_path(job.provider, job.slug, job.job_id))

        for path in candidates:
            if not os.path.isfile(path):
                continue
            try:
                with open(path, "r", encoding="utf-8") as f:
                    content = f.read()
            except OSError as e:
                logger.warning("Cannot read response file %s: %s", path, e)
                continue
            m = FRONTMATTER_RE.match(content)
            return content[m.end():] if m else content
        return None
