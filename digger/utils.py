"""
Utility functions for the bucket digger.

Logging Level Standards:
------------------------
- ERROR: Failures that stop the whole run
         "Unable to list the buckets: AccessDenied"
- WARNING: Per-bucket failures, the bucket is skipped or degraded
           "Unable to fetch the region for bucket logs, skipping it"
- INFO: Progress messages, counts
        "Found 42 S3 buckets"
- DEBUG: Per-page and per-call details
         "Bucket logs: 1200 objects, 5321 bytes in 3 pages"
"""
import logging
import re
import sys
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .models import BucketOutcome, OutcomeStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress tracker for bucket enrichment with rich display.

    Falls back to plain summary lines if the console (stderr by default) is
    not a terminal, e.g. when logs are piped to a file. ``add_outcome`` is
    called from worker threads.

    Usage:
        with ProgressTracker(total_buckets=len(buckets)) as tracker:
            pool = EnrichmentWorkerPool(workers, tracker=tracker)
            result = pool.run(buckets, stages)
    """

    def __init__(self, total_buckets: int = 0, show_progress: bool = True,
                 console: Optional[Console] = None):
        self.total_buckets = total_buckets
        self._console = console or Console(stderr=True)
        self.show_progress = show_progress and self._console.is_terminal

        # Counters, guarded by _lock
        self.completed = 0
        self.counts = {status.value: 0 for status in OutcomeStatus}
        self.total_bytes = 0
        self._lock = threading.Lock()

        self._progress: Optional[Progress] = None
        self._main_task: Optional[TaskID] = None

    def __enter__(self):
        if self.show_progress:
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=True,
            )
            self._main_task = self._progress.add_task("Digging buckets", total=self.total_buckets or 1)
            self._progress.start()
        else:
            logger.info(f"Digging through {self.total_buckets} buckets")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._progress is not None:
            self._progress.stop()
            self._print_summary_rich()
        else:
            self._print_summary_plain()
        return False

    def add_outcome(self, outcome: BucketOutcome):
        """Record one finished bucket."""
        with self._lock:
            self.completed += 1
            self.counts[outcome.status.value] += 1
            if outcome.status.included:
                self.total_bytes += outcome.bucket.size_bytes

        if self._progress is not None and self._main_task is not None:
            self._progress.update(
                self._main_task,
                advance=1,
                description=f"Digging {outcome.name}",
            )

    def _print_summary_rich(self):
        """Print a formatted summary using rich."""
        table = Table(title="Bucket Digger Summary", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Buckets", f"{self.completed:,}")
        table.add_row("Accepted", f"{self.counts['accepted']:,}")
        table.add_row("Degraded", f"{self.counts['degraded']:,}")
        table.add_row("Filtered", f"{self.counts['filtered']:,}")
        table.add_row("Skipped", f"{self.counts['skipped']:,}")

        self._console.print(Panel(table))

    def _print_summary_plain(self):
        """Log a plain text summary."""
        logger.info(
            f"Processed {self.completed:,} buckets: {self.counts['accepted']:,} accepted, "
            f"{self.counts['degraded']:,} degraded, {self.counts['filtered']:,} filtered, "
            f"{self.counts['skipped']:,} skipped"
        )


def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:8]}"


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


# Patterns for redacting account IDs in persisted logs
_LOG_REDACT_PATTERNS = [
    # ARNs first, so the account inside is masked with its structure kept
    (re.compile(r'(arn:aws[-a-z]*):([a-z0-9-]+):([a-z0-9-]*):(\d{12}):'), r'\1:\2:\3:***:'),
    (re.compile(r'\b\d{12}\b'), '***'),
]


def redact_log_message(message: str) -> str:
    """
    Mask AWS account IDs in a log message.

    Example: arn:aws:iam::123456789012:role/MyRole
          -> arn:aws:iam::***:role/MyRole
    """
    if not message:
        return message

    for pattern, replacement in _LOG_REDACT_PATTERNS:
        message = pattern.sub(replacement, message)

    return message


class RedactingFilter(logging.Filter):
    """Logging filter that masks account IDs in log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact sensitive data from the log record message."""
        if record.msg:
            record.msg = redact_log_message(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_log_message(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup logging configuration with console and optional file output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: If provided, also write logs to this file (account IDs masked)

    Returns:
        Logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    # Console handler (stderr, keeps stdout for the table)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(RedactingFilter())
        root_logger.addHandler(file_handler)
        root_logger.info(f"Logging to: {log_file}")

    # botocore is chatty at DEBUG
    logging.getLogger('botocore').setLevel(max(numeric_level, logging.INFO))
    logging.getLogger('urllib3').setLevel(max(numeric_level, logging.INFO))

    return logging.getLogger(__name__)
