"""
Reset: remove every link record and queued job for a fresh run.

The businesses table is never touched.
"""

from typing import Tuple

from .database import Database
from .logger import get_logger
from .repositories import LinkRepository
from .work_queue import WorkQueue


def reset_state(database: Database) -> Tuple[int, int]:
    """
    Delete all link records (with their sources) and all queue jobs.

    Args:
        database: Database handle

    Returns:
        Tuple of (links_removed, jobs_removed)
    """
    logger = get_logger()
    links_removed = LinkRepository(database).delete_all()
    jobs_removed = WorkQueue(database).clear()

    logger.info(
        f"Reset complete: {links_removed} link record(s), {jobs_removed} job(s) removed",
        links_removed=links_removed,
        jobs_removed=jobs_removed,
    )
    return (links_removed, jobs_removed)
