"""
Structured logging system for crmlinker.

Provides centralized logging with console and file outputs, a separate
JSON-lines issue log for records that need a human look, and session
metrics for the reconciliation report.
"""

import json
import logging
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks outcome counts for the end-of-session report.
    """

    def __init__(
        self,
        name: str = "crmlinker",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
        enable_issues: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
            enable_issues: Write unmatched/skipped/failed records to processing_issues.log
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()  # Remove existing handlers

        self.issue_logger = logging.getLogger(f"{name}.issues")
        self.issue_logger.setLevel(logging.INFO)
        self.issue_logger.handlers.clear()
        self.issue_logger.propagate = False

        self._lock = threading.Lock()
        self.started_at = datetime.now()
        self.metrics = {
            "api_calls": 0,
            "records_processed": 0,
            "links_created": 0,
            "outcomes": {},
            "match_types": {},
            "retries": 0,
            "failed": 0,
            "errors_by_type": {},
        }

        if log_dir is None:
            log_dir = Path("logs")

        # Console handler
        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(threadName)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        # File handler
        if enable_file:
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"crmlinker_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(threadName)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

        # Issue log, one JSON object per line
        if enable_issues:
            log_dir.mkdir(parents=True, exist_ok=True)
            issue_handler = logging.FileHandler(log_dir / "processing_issues.log", encoding='utf-8')
            issue_handler.setFormatter(logging.Formatter('%(message)s'))
            self.issue_logger.addHandler(issue_handler)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        """Internal logging method with context."""
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    def issue(self, kind: str, **context):
        """Append a record needing review to the issue log."""
        entry = {
            "timestamp": datetime.now().isoformat(timespec="milliseconds"),
            "issue": kind,
            **context,
        }
        self.issue_logger.warning(json.dumps(entry, default=str))

    # Metric tracking methods

    def record_api_call(self):
        """Increment API call counter."""
        with self._lock:
            self.metrics["api_calls"] += 1

    def record_outcome(self, status: str, match_type: Optional[str] = None, created: bool = False):
        """Count one completed reconciliation."""
        with self._lock:
            self.metrics["records_processed"] += 1
            outcomes = self.metrics["outcomes"]
            outcomes[status] = outcomes.get(status, 0) + 1
            if match_type:
                match_types = self.metrics["match_types"]
                match_types[match_type] = match_types.get(match_type, 0) + 1
            if created:
                self.metrics["links_created"] += 1

    def record_retry(self):
        """Count a job rescheduled after a retryable failure."""
        with self._lock:
            self.metrics["retries"] += 1

    def record_failure(self, error_type: str):
        """Count a job that failed for good."""
        with self._lock:
            self.metrics["records_processed"] += 1
            self.metrics["failed"] += 1
            errors = self.metrics["errors_by_type"]
            errors[error_type] = errors.get(error_type, 0) + 1

    def get_metrics(self) -> dict:
        """Return a snapshot of current metrics with duration and throughput."""
        with self._lock:
            metrics_copy = json.loads(json.dumps(self.metrics))

        duration = (datetime.now() - self.started_at).total_seconds()
        metrics_copy["duration_seconds"] = round(duration, 2)
        metrics_copy["records_per_second"] = (
            round(metrics_copy["records_processed"] / duration, 2) if duration > 0 else 0.0
        )
        return metrics_copy

    def log_session_report(self):
        """Log the tallied session report."""
        metrics = self.get_metrics()
        outcomes = metrics["outcomes"]
        match_types = metrics["match_types"]

        self.info("=== Reconciliation Session Report ===")
        self.info(
            f"Duration: {metrics['duration_seconds']}s "
            f"(~{metrics['records_per_second']} records/sec)"
        )
        self.info(f"API Calls: {metrics['api_calls']}")
        self.info(f"Records processed: {metrics['records_processed']}")
        self.info(f"Links created: {metrics['links_created']}")
        self.info(f"  Duplicates: {match_types.get('duplicate', 0)}")
        self.info(f"  Matches (direct id): {match_types.get('direct_id', 0)}")
        self.info(f"  Matches (fallback): {match_types.get('fallback_match', 0)}")
        self.info(f"  Unmatched: {match_types.get('unmatched', 0)}")
        self.info(f"Skipped: {outcomes.get('skipped', 0)}")
        self.info(f"Not found: {outcomes.get('not_found', 0)}")
        self.info(f"Retries: {metrics['retries']}")
        self.info(f"Failed: {metrics['failed']}")

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "crmlinker",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
