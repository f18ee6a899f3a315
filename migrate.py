# migrate.py
"""One-shot backfill of the job store from legacy status files.

    python migrate.py [BASE_DIR] [PROMPTS_DIR]

Safe to run more than once: rows are upserted, never duplicated.
"""
import logging
import sys

from legacy import get_prompts_dir
from storage import JobStore
from models import MigrationResult

logger = logging.getLogger(__name__)


def run_migration(base_dir, prompts_dir=None) -> MigrationResult:
    store = JobStore()
    if not store.init(base_dir):
        logger.error("Job database unavailable under %s; nothing migrated", base_dir)
        return MigrationResult()
    try:
        return store.migrate_from_json_files(prompts_dir or get_prompts_dir(base_dir))
    finally:
        store.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    base = sys.argv[1] if len(sys.argv) > 1 else "."
    prompts = sys.argv[2] if len(sys.argv) > 2 else None
    result = run_migration(base, prompts)
    print(f"imported={result.imported} errors={result.errors}")
