"""
S3 access for the bucket digger: sessions, clients, catalog, region lookup
and object metrics.

Logging follows the collector convention:
- ERROR: failures that stop the run (catalog listing)
- WARNING: per-bucket failures (logged by the pipeline)
- DEBUG: per-page and per-call details
"""
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .constants import (
    BOTO_CONNECT_TIMEOUT,
    BOTO_READ_TIMEOUT,
    DEFAULT_STORAGE_CLASS,
    LEGACY_LOCATION_CONSTRAINTS,
    OBJECT_PAGE_SIZE,
)
from .errors import (
    CatalogError,
    MetricsError,
    RegionLookupError,
    describe_error,
    is_auth_error,
)
from .models import Bucket, ObjectMetrics

logger = logging.getLogger(__name__)

CLIENT_CONFIG = Config(
    connect_timeout=BOTO_CONNECT_TIMEOUT,
    read_timeout=BOTO_READ_TIMEOUT,
)


# =============================================================================
# Session Management
# =============================================================================

def get_session(profile: Optional[str] = None, region: Optional[str] = None) -> boto3.Session:
    """Create boto3 session. Credentials come from the usual AWS chain."""
    return boto3.Session(profile_name=profile, region_name=region)


def make_client(service: str, region: str, profile: Optional[str] = None) -> Any:
    """
    Create a client on its own session.

    boto3 sessions are not thread-safe, so clients built from worker threads
    each get a fresh session.
    """
    session = get_session(profile, region)
    return session.client(service, region_name=region, config=CLIENT_CONFIG)


def s3_client_factory(profile: Optional[str] = None):
    """Return a region -> S3 client factory suitable for ClientRegistry."""
    def factory(region: str) -> Any:
        return make_client('s3', region, profile)
    return factory


# =============================================================================
# Catalog
# =============================================================================

def list_buckets(client) -> List[Bucket]:
    """
    List every bucket visible to the client's credentials.

    Buckets come back in the service's listing order, with only name and
    creation date populated.

    Raises:
        CatalogError: if the listing call fails. The run must stop, since
            there is no way to know which buckets were missed.
    """
    try:
        response = client.list_buckets()
    except (ClientError, BotoCoreError) as e:
        if is_auth_error(e):
            raise CatalogError(f"Unable to list the buckets, check your AWS credentials: {describe_error(e)}") from e
        raise CatalogError(f"Unable to list the buckets: {describe_error(e)}") from e

    buckets = []
    for entry in response.get('Buckets', []):
        name = entry.get('Name', '')
        if not name:
            continue
        buckets.append(Bucket(name=name, creation_date=entry.get('CreationDate')))

    logger.info(f"Found {len(buckets)} S3 buckets")
    return buckets


# =============================================================================
# Region Lookup
# =============================================================================

def normalize_location(constraint: Optional[str]) -> str:
    """Map a GetBucketLocation constraint to a region name."""
    constraint = constraint or ''
    return LEGACY_LOCATION_CONSTRAINTS.get(constraint, constraint)


def resolve_region(bucket: Bucket, default_client) -> str:
    """
    Find the bucket's home region using the default-region client.

    Raises:
        RegionLookupError: if the location cannot be fetched.
    """
    try:
        location = default_client.get_bucket_location(Bucket=bucket.name)
    except (ClientError, BotoCoreError) as e:
        raise RegionLookupError(
            f"Could not get location for bucket {bucket.name}: {describe_error(e)}",
            bucket_name=bucket.name,
            original_error=e,
        ) from e

    region = normalize_location(location.get('LocationConstraint'))
    logger.debug(f"Bucket {bucket.name} is in {region}")
    return region


# =============================================================================
# Object Metrics
# =============================================================================

def storage_class_distribution(class_counts: Dict[str, int], object_count: int) -> Dict[str, float]:
    """
    Convert per-class object counts into percentages of the object count.

    Percentages are rounded to one decimal. An empty bucket has an empty
    distribution.
    """
    if object_count <= 0:
        return {}
    return {
        storage_class: round(count * 100.0 / object_count, 1)
        for storage_class, count in sorted(class_counts.items())
    }


def collect_object_metrics(bucket: Bucket, client) -> ObjectMetrics:
    """
    Page through the bucket's objects and aggregate count, size, most recent
    modification and storage class mix.

    Nothing is returned unless the listing completes, so a failure on a later
    page never leaves partial numbers behind.

    Raises:
        MetricsError: if any page of the listing fails.
    """
    object_count = 0
    size_bytes = 0
    last_modified: Optional[datetime] = None
    class_counts: Counter = Counter()
    pages = 0

    try:
        paginator = client.get_paginator('list_objects_v2')
        for page in paginator.paginate(
            Bucket=bucket.name,
            PaginationConfig={'PageSize': OBJECT_PAGE_SIZE},
        ):
            pages += 1
            for obj in page.get('Contents', []):
                object_count += 1
                size_bytes += obj.get('Size', 0) or 0
                modified = obj.get('LastModified')
                if modified is not None and (last_modified is None or modified > last_modified):
                    last_modified = modified
                class_counts[obj.get('StorageClass') or DEFAULT_STORAGE_CLASS] += 1
    except (ClientError, BotoCoreError) as e:
        raise MetricsError(
            f"Failed to list objects of bucket {bucket.name} after {pages} pages: {describe_error(e)}",
            bucket_name=bucket.name,
            original_error=e,
        ) from e

    logger.debug(f"Bucket {bucket.name}: {object_count} objects, {size_bytes} bytes in {pages} pages")

    return ObjectMetrics(
        object_count=object_count,
        size_bytes=size_bytes,
        last_modified=last_modified,
        storage_classes=storage_class_distribution(class_counts, object_count),
    )
