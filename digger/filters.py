"""
Bucket inclusion filters.

A filter is bound to one field at construction:

- ``name``: regex search on the bucket name. Checked before metrics are
  collected, so rejected buckets cost no object listing.
- ``storageclasses``: regex search over the storage class labels present in
  the bucket. Labels are only known after metrics, so this runs afterwards;
  the bucket matches if any label matches.
"""
import logging
import re
from typing import Optional

from .constants import FILTER_NAME, FILTER_NONE, VALID_FILTER_FIELDS
from .errors import ConfigError
from .models import Bucket

logger = logging.getLogger(__name__)


class BucketFilter:
    """Compiled inclusion test for buckets."""

    def __init__(self, field: str, regex: str):
        normalized = (field or "").strip().lower()
        if normalized not in VALID_FILTER_FIELDS:
            raise ConfigError(
                f"'{field}' is not a valid filter field, expected one of: {', '.join(VALID_FILTER_FIELDS)}"
            )
        try:
            self.pattern = re.compile(regex)
        except (re.error, TypeError) as e:
            raise ConfigError(f"Invalid filter regex '{regex}': {e}") from e

        self.field = normalized
        self.regex = regex

    @property
    def before_metrics(self) -> bool:
        """True if the filter can be evaluated before object metrics exist."""
        return self.field == FILTER_NAME

    def matches(self, bucket: Bucket) -> bool:
        if self.field == FILTER_NAME:
            return self.pattern.search(bucket.name) is not None

        # storage classes: any label present in the bucket
        return any(self.pattern.search(label) for label in bucket.storage_classes)

    def __repr__(self) -> str:
        return f"BucketFilter(field={self.field!r}, regex={self.regex!r})"


def build_filter(field: Optional[str], regex: Optional[str]) -> Optional[BucketFilter]:
    """
    Build a filter from configuration values.

    Returns None when no filter is configured, which accepts every bucket.
    Raises ConfigError if only one of field/regex is given.
    """
    has_field = bool(field) and field.strip().lower() != FILTER_NONE
    has_regex = regex is not None and regex != ""

    if not has_field and not has_regex:
        return None
    if has_field and not has_regex:
        raise ConfigError(f"A regex is required when filtering on '{field}'")
    if has_regex and not has_field:
        raise ConfigError("A filter field is required when a regex is given")

    bucket_filter = BucketFilter(field, regex)  # type: ignore[arg-type]
    logger.debug(f"Using filter {bucket_filter!r}")
    return bucket_filter


def split_filter(bucket_filter: Optional[BucketFilter]):
    """
    Split a filter into its (pre-metrics, post-metrics) slots.

    Returns a tuple where at most one element is set.
    """
    if bucket_filter is None:
        return None, None
    if bucket_filter.before_metrics:
        return bucket_filter, None
    return None, bucket_filter

