"""
Constants for the bucket digger.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Byte/Size Conversion Constants
# =============================================================================

# SI units (base 1000), matching the sizes S3 reports in the console
SIZE_UNITS = {
    'b': 1000 ** 0,
    'kb': 1000 ** 1,
    'mb': 1000 ** 2,
    'gb': 1000 ** 3,
    'tb': 1000 ** 4,
    'pb': 1000 ** 5,
    'eb': 1000 ** 6,
}

DEFAULT_SIZE_UNIT = 'mb'

# =============================================================================
# AWS Settings
# =============================================================================

DEFAULT_REGION = 'us-east-1'

# Cost Explorer only has an endpoint in us-east-1
COST_EXPLORER_REGION = 'us-east-1'

# Service identifier used by Cost Explorer's SERVICE dimension
S3_SERVICE_NAME = 'Amazon Simple Storage Service'

# GetBucketLocation returns legacy constraints for some old buckets
LEGACY_LOCATION_CONSTRAINTS = {
    '': 'us-east-1',
    'EU': 'eu-west-1',
}

# Objects listed without a StorageClass are billed as STANDARD
DEFAULT_STORAGE_CLASS = 'STANDARD'

# ListObjectsV2 page size (not user-configurable)
OBJECT_PAGE_SIZE = 400

# Per-call timeouts applied to every boto3 client (seconds)
BOTO_CONNECT_TIMEOUT = 10
BOTO_READ_TIMEOUT = 60

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_WORKERS = 10
DEFAULT_COST_PERIOD_DAYS = 30
DEFAULT_COST_TAG = 'Name'
MIN_COST_PERIOD_DAYS = 1
MAX_COST_PERIOD_DAYS = 365

# =============================================================================
# Filters, Sorting and Grouping
# =============================================================================

FILTER_NONE = 'none'
FILTER_NAME = 'name'
FILTER_STORAGE_CLASSES = 'storageclasses'

VALID_FILTER_FIELDS = (FILTER_NAME, FILTER_STORAGE_CLASSES)

SORT_NAME = 'name'
SORT_REGION = 'region'
SORT_SIZE = 'size'
SORT_FILES = 'files'
SORT_CREATED = 'created'
SORT_MODIFIED = 'modified'
SORT_COST = 'cost'

VALID_SORT_KEYS = (
    SORT_NAME, SORT_REGION, SORT_SIZE, SORT_FILES,
    SORT_CREATED, SORT_MODIFIED, SORT_COST,
)

ORDER_ASC = 'asc'
ORDER_DESC = 'desc'
VALID_SORT_ORDERS = (ORDER_ASC, ORDER_DESC)

GROUP_NONE = 'none'
GROUP_REGION = 'region'
VALID_GROUP_KEYS = (GROUP_NONE, GROUP_REGION)

# =============================================================================
# Metrics Failure Policy
# =============================================================================

# keep: bucket stays in the report with zeroed metrics (DEGRADED)
# drop: bucket is removed from the report (SKIPPED)
METRICS_FAILURE_KEEP = 'keep'
METRICS_FAILURE_DROP = 'drop'
VALID_METRICS_FAILURE_POLICIES = (METRICS_FAILURE_KEEP, METRICS_FAILURE_DROP)

# =============================================================================
# Report Columns
# =============================================================================

REPORT_COLUMNS = [
    'name',
    'region',
    'size',
    'object_count',
    'storage_classes',
    'creation_date',
    'last_modified',
    'cost',
]
