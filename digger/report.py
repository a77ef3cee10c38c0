"""
Report layer: size units, sorting, grouping, table rendering and export.
"""
import csv
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from .constants import (
    GROUP_NONE,
    REPORT_COLUMNS,
    SIZE_UNITS,
    SORT_COST,
    SORT_CREATED,
    SORT_FILES,
    SORT_MODIFIED,
    SORT_NAME,
    SORT_REGION,
    SORT_SIZE,
    VALID_GROUP_KEYS,
    VALID_SORT_KEYS,
)
from .errors import ConfigError
from .models import Bucket

logger = logging.getLogger(__name__)

# Sorts missing dates before every real one
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Size Units
# =============================================================================

def validate_unit(unit: str) -> str:
    """Return the normalized unit, or raise ConfigError if it is unknown."""
    normalized = (unit or "").lower()
    if normalized not in SIZE_UNITS:
        raise ConfigError(f"'{unit}' is not a valid unit, expected one of: {', '.join(SIZE_UNITS)}")
    return normalized


def convert_size(size_bytes: int, unit: str) -> float:
    """Convert a byte count to ``unit`` (base 1000), e.g. 1024 bytes -> 1.024 kb."""
    return size_bytes / SIZE_UNITS[validate_unit(unit)]


def format_storage_classes(storage_classes: Dict[str, float]) -> str:
    """Format a distribution as 'STANDARD(90.0%) GLACIER(10.0%) '."""
    return "".join(f"{label}({value:.1f}%) " for label, value in storage_classes.items())


def _format_date(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.strftime('%Y-%m-%d %H:%M:%S %Z').strip()


# =============================================================================
# Sorting and Grouping
# =============================================================================

def _as_aware(value: Optional[datetime]) -> datetime:
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


_SORT_KEYS = {
    SORT_NAME: lambda b: b.name,
    SORT_REGION: lambda b: b.region or "",
    SORT_SIZE: lambda b: b.size_bytes,
    SORT_FILES: lambda b: b.object_count,
    SORT_CREATED: lambda b: _as_aware(b.creation_date),
    SORT_MODIFIED: lambda b: _as_aware(b.last_modified),
    SORT_COST: lambda b: b.cost or 0.0,
}


def sort_buckets(buckets: List[Bucket], key: str = SORT_NAME, descending: bool = False) -> List[Bucket]:
    """
    Sort buckets on one column. Ties are always broken by ascending name,
    so the order does not depend on the input order.
    """
    key = (key or SORT_NAME).lower()
    if key not in VALID_SORT_KEYS:
        raise ConfigError(f"'{key}' is not a valid sort key, expected one of: {', '.join(VALID_SORT_KEYS)}")

    # Stable sorts: name first, then the requested column
    ordered = sorted(buckets, key=lambda b: b.name)
    return sorted(ordered, key=_SORT_KEYS[key], reverse=descending)


def group_buckets(buckets: List[Bucket], group_by: str = GROUP_NONE) -> Dict[str, List[Bucket]]:
    """
    Split buckets into labelled groups, keeping their order within a group.

    ``none`` returns a single group labelled ''. ``region`` returns one group
    per region, ordered by region name.
    """
    group_by = (group_by or GROUP_NONE).lower()
    if group_by not in VALID_GROUP_KEYS:
        raise ConfigError(f"'{group_by}' is not a valid group key, expected one of: {', '.join(VALID_GROUP_KEYS)}")

    if group_by == GROUP_NONE:
        return {"": list(buckets)}

    groups: Dict[str, List[Bucket]] = {}
    for bucket in buckets:
        groups.setdefault(bucket.region or "unknown", []).append(bucket)
    return {region: groups[region] for region in sorted(groups)}


# =============================================================================
# Rendering
# =============================================================================

def render_table(
    groups: Dict[str, List[Bucket]],
    unit: str,
    include_cost: bool = False,
    console: Optional[Console] = None,
) -> None:
    """Print one rich table per group."""
    console = console or Console()
    unit = validate_unit(unit)

    if not any(groups.values()):
        console.print("No buckets found.")
        return

    for label, buckets in groups.items():
        table = Table(title=f"Region: {label}" if label else None)
        table.add_column("NAME", style="cyan")
        table.add_column("REGION")
        table.add_column(f"TOTAL SIZE ({unit.upper()})", justify="right")
        table.add_column("NUMBER OF FILES", justify="right")
        table.add_column("STORAGE CLASSES")
        table.add_column("CREATED ON")
        table.add_column("LAST MODIFIED")
        if include_cost:
            table.add_column("COST", justify="right", style="green")

        for bucket in buckets:
            row = [
                bucket.name,
                bucket.region or "",
                f"{convert_size(bucket.size_bytes, unit):.2f}",
                str(bucket.object_count),
                format_storage_classes(bucket.storage_classes),
                _format_date(bucket.creation_date),
                _format_date(bucket.last_modified),
            ]
            if include_cost:
                row.append("" if bucket.cost is None else f"{bucket.cost:.2f}")
            table.add_row(*row)

        console.print(table)


# =============================================================================
# Export
# =============================================================================

def bucket_rows(buckets: List[Bucket], unit: str) -> List[Dict[str, Any]]:
    """Flatten buckets into export rows with the REPORT_COLUMNS keys."""
    unit = validate_unit(unit)
    rows = []
    for bucket in buckets:
        rows.append({
            'name': bucket.name,
            'region': bucket.region or "",
            'size': round(convert_size(bucket.size_bytes, unit), 2),
            'object_count': bucket.object_count,
            'storage_classes': format_storage_classes(bucket.storage_classes).strip(),
            'creation_date': bucket.creation_date.isoformat() if bucket.creation_date else "",
            'last_modified': bucket.last_modified.isoformat() if bucket.last_modified else "",
            'cost': bucket.cost,
        })
    return rows


def write_json(data: Any, filepath: str) -> None:
    """Write data to a local JSON file readable by the owner only."""
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        json.dump(data, f, indent=2, default=str)
    logger.info(f"Wrote {filepath}")


def write_csv(data: List[Dict], filepath: str, fieldnames: Optional[List[str]] = None) -> None:
    """Write rows to a local CSV file readable by the owner only."""
    if not fieldnames:
        fieldnames = list(data[0].keys()) if data else list(REPORT_COLUMNS)

    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(data)
    logger.info(f"Wrote {filepath}")
