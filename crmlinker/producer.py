"""
Producer: read CRM record ids from a CSV file and enqueue them.

The id is the first column; blank rows and rows starting with '#' are skipped.
"""

import csv
from itertools import islice
from pathlib import Path
from typing import Iterator, Optional

from .logger import get_logger
from .work_queue import WorkQueue


def read_record_ids(path: Path) -> Iterator[str]:
    with path.open("r", encoding="utf-8", newline="") as f:
        for row in csv.reader(f):
            if not row:
                continue
            record_id = row[0].strip()
            if record_id and not record_id.startswith("#"):
                yield record_id


def enqueue_from_file(path: Path, queue: WorkQueue, limit: Optional[int] = None) -> int:
    """
    Enqueue every record id in a CSV file.

    Args:
        path: CSV file with the record id in the first column
        queue: Work queue to add jobs to
        limit: Stop after this many ids (None = all)

    Returns:
        Number of jobs enqueued
    """
    if not path.exists():
        raise FileNotFoundError(f"ID file not found: {path}")

    logger = get_logger()
    logger.info("Starting producer", path=str(path), limit=limit)
    ids = read_record_ids(path)
    if limit is not None:
        ids = islice(ids, limit)

    enqueued = queue.enqueue(ids)
    logger.info(f"Producer finished: {enqueued} job(s) enqueued")
    return enqueued
