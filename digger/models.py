"""
Data models for the bucket digger.
"""
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional


@dataclass(frozen=True)
class ObjectMetrics:
    """Aggregate metrics computed from one complete object listing."""
    object_count: int = 0
    size_bytes: int = 0
    last_modified: Optional[datetime] = None
    # Storage class label -> percentage of objects (one decimal)
    storage_classes: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class Bucket:
    """
    An S3 bucket and everything learned about it during enrichment.

    Buckets are immutable: every enrichment stage returns a new value, so the
    worker that owns a bucket is the only one that can see it in progress.
    The storage class mix is held in a read-only mapping for the same reason.
    """
    name: str
    creation_date: Optional[datetime] = None

    # Unset until the region is resolved
    region: Optional[str] = None

    # Object metrics
    object_count: int = 0
    size_bytes: int = 0
    last_modified: Optional[datetime] = None
    storage_classes: Mapping[str, float] = field(default_factory=dict)

    # Only present when cost collection was requested and succeeded
    cost: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, 'storage_classes', MappingProxyType(dict(self.storage_classes)))

    def with_region(self, region: str) -> 'Bucket':
        return replace(self, region=region)

    def with_metrics(self, metrics: ObjectMetrics) -> 'Bucket':
        return replace(
            self,
            object_count=metrics.object_count,
            size_bytes=metrics.size_bytes,
            last_modified=metrics.last_modified,
            storage_classes=metrics.storage_classes,
        )

    def with_cost(self, cost: float) -> 'Bucket':
        return replace(self, cost=cost)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data['storage_classes'] = dict(self.storage_classes)
        return data


class OutcomeStatus(str, Enum):
    """How a bucket's enrichment ended."""
    ACCEPTED = "accepted"    # fully enriched, passed all filters
    DEGRADED = "degraded"    # kept, but metrics or cost could not be collected
    FILTERED = "filtered"    # rejected by a filter
    SKIPPED = "skipped"      # dropped after a per-bucket failure

    @property
    def included(self) -> bool:
        """True if buckets with this status appear in the report."""
        return self in (OutcomeStatus.ACCEPTED, OutcomeStatus.DEGRADED)


@dataclass(frozen=True)
class BucketOutcome:
    """Tagged result of enriching one bucket."""
    bucket: Bucket
    status: OutcomeStatus
    reason: str = ""

    @property
    def name(self) -> str:
        return self.bucket.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.bucket.name,
            'status': self.status.value,
            'reason': self.reason,
        }


@dataclass
class PipelineResult:
    """All outcomes of one enrichment run, ordered by bucket name."""
    outcomes: List[BucketOutcome] = field(default_factory=list)

    def _with_status(self, *statuses: OutcomeStatus) -> List[BucketOutcome]:
        return [o for o in self.outcomes if o.status in statuses]

    @property
    def buckets(self) -> List[Bucket]:
        """Buckets that belong in the report (accepted and degraded)."""
        return [o.bucket for o in self.outcomes if o.status.included]

    @property
    def accepted(self) -> List[BucketOutcome]:
        return self._with_status(OutcomeStatus.ACCEPTED)

    @property
    def degraded(self) -> List[BucketOutcome]:
        return self._with_status(OutcomeStatus.DEGRADED)

    @property
    def filtered(self) -> List[BucketOutcome]:
        return self._with_status(OutcomeStatus.FILTERED)

    @property
    def skipped(self) -> List[BucketOutcome]:
        return self._with_status(OutcomeStatus.SKIPPED)

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in OutcomeStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        return counts

    def outcome_for(self, name: str) -> Optional[BucketOutcome]:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        return None


@dataclass
class RegionSummary:
    """Aggregated totals for the buckets of one region."""
    region: str
    bucket_count: int = 0
    object_count: int = 0
    size_bytes: int = 0
    cost: Optional[float] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return asdict(self)


def aggregate_by_region(buckets: List[Bucket]) -> List[RegionSummary]:
    """
    Aggregate buckets into per-region summaries, ordered by region name.
    """
    summaries: Dict[str, RegionSummary] = {}

    for bucket in buckets:
        key = bucket.region or "unknown"

        if key not in summaries:
            summaries[key] = RegionSummary(region=key)

        summary = summaries[key]
        summary.bucket_count += 1
        summary.object_count += bucket.object_count
        summary.size_bytes += bucket.size_bytes
        if bucket.cost is not None:
            summary.cost = (summary.cost or 0.0) + bucket.cost

    return [summaries[key] for key in sorted(summaries)]
