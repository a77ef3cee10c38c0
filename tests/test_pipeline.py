"""
Tests for digger/pipeline.py using stubbed stages.

Covers:
- per-bucket classification (accepted, degraded, filtered, skipped)
- metrics failure policy (keep / drop)
- cost stage failures and ordering
- determinism across worker counts
- end to end run with lazily created region clients
- worker count validation and unexpected errors
"""
import os
import sys
import threading
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from digger.config import DiggerConfig
from digger.errors import (
    ConfigError,
    CostQueryError,
    MetricsError,
    RegionLookupError,
    WorkerCountError,
)
from digger.filters import build_filter
from digger.models import Bucket, BucketOutcome, ObjectMetrics, OutcomeStatus
from digger.pipeline import (
    EnrichmentStages,
    EnrichmentWorkerPool,
    ResultSink,
    build_stages,
    enrich_bucket,
)
from digger.registry import ClientRegistry


# =============================================================================
# Stubs
# =============================================================================

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)
MODIFIED = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class CountingFactory:
    """Region -> fake client, counting calls."""

    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, region):
        with self._lock:
            self.calls.append(region)
        return Mock(name=f"s3-{region}", region=region)


def make_region_stub(regions):
    """resolve_region stub: bucket name -> region, RegionLookupError if missing."""
    def resolve_region(bucket, default_client):
        if bucket.name not in regions:
            raise RegionLookupError(f"no location for {bucket.name}", bucket_name=bucket.name)
        return regions[bucket.name]
    return resolve_region


def make_metrics_stub(metrics, failing=()):
    """collect_metrics stub: bucket name -> ObjectMetrics."""
    def collect_metrics(bucket, client):
        if bucket.name in failing:
            raise MetricsError(f"listing failed for {bucket.name}", bucket_name=bucket.name)
        return metrics.get(bucket.name, ObjectMetrics())
    return collect_metrics


def make_stages(regions, metrics=None, failing_metrics=(), bucket_filter=None,
                default_region='us-east-1', factory=None, **kwargs):
    factory = factory or CountingFactory()
    registry = ClientRegistry(factory)
    default_client = Mock(name='default-client')
    registry.seed(default_region, default_client)
    pre_filter = post_filter = None
    if bucket_filter is not None:
        if bucket_filter.before_metrics:
            pre_filter = bucket_filter
        else:
            post_filter = bucket_filter
    return EnrichmentStages(
        default_client=default_client,
        registry=registry,
        pre_filter=pre_filter,
        post_filter=post_filter,
        resolve_region=make_region_stub(regions),
        collect_metrics=make_metrics_stub(metrics or {}, failing_metrics),
        **kwargs
    )


def buckets_named(*names):
    return [Bucket(name=name, creation_date=CREATED) for name in names]


# =============================================================================
# enrich_bucket Tests
# =============================================================================

class TestEnrichBucket:
    """Tests for the per-bucket stage sequence."""

    def test_accepted_bucket_is_fully_enriched(self):
        metrics = {'logs': ObjectMetrics(3, 3000, MODIFIED, {'STANDARD': 100.0})}
        stages = make_stages({'logs': 'eu-west-1'}, metrics)

        outcome = enrich_bucket(buckets_named('logs')[0], stages)

        assert outcome.status == OutcomeStatus.ACCEPTED
        assert outcome.bucket.region == 'eu-west-1'
        assert outcome.bucket.object_count == 3
        assert outcome.bucket.size_bytes == 3000
        assert outcome.bucket.last_modified == MODIFIED
        assert outcome.bucket.storage_classes == {'STANDARD': 100.0}
        assert outcome.bucket.cost is None

    def test_input_bucket_is_not_modified(self):
        bucket = buckets_named('logs')[0]
        metrics = {'logs': ObjectMetrics(3, 3000, MODIFIED, {'STANDARD': 100.0})}
        stages = make_stages({'logs': 'eu-west-1'}, metrics)

        enrich_bucket(bucket, stages)

        assert bucket.region is None
        assert bucket.object_count == 0

    def test_storage_classes_are_read_only(self):
        source = {'STANDARD': 100.0}
        stages = make_stages({'logs': 'us-east-1'}, {'logs': ObjectMetrics(1, 10, MODIFIED, source)})

        bucket = enrich_bucket(buckets_named('logs')[0], stages).bucket
        source['GLACIER'] = 0.0

        with pytest.raises(TypeError):
            bucket.storage_classes['GLACIER'] = 50.0
        assert dict(bucket.storage_classes) == {'STANDARD': 100.0}
        assert bucket.to_dict()['storage_classes'] == {'STANDARD': 100.0}

    def test_region_failure_skips_bucket(self):
        stages = make_stages({})

        outcome = enrich_bucket(buckets_named('lost')[0], stages)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert 'lost' in outcome.reason

    def test_client_failure_skips_bucket(self):
        def factory(region):
            raise RuntimeError("bad endpoint")

        stages = make_stages({'far': 'mars-north-1'}, factory=factory)

        outcome = enrich_bucket(buckets_named('far')[0], stages)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert 'mars-north-1' in outcome.reason

    def test_metrics_failure_keeps_bucket_by_default(self):
        stages = make_stages({'broken': 'us-east-1'}, failing_metrics=('broken',))

        outcome = enrich_bucket(buckets_named('broken')[0], stages)

        assert outcome.status == OutcomeStatus.DEGRADED
        assert outcome.status.included
        assert outcome.bucket.object_count == 0
        assert outcome.bucket.size_bytes == 0
        assert outcome.bucket.storage_classes == {}
        assert outcome.bucket.region == 'us-east-1'

    def test_metrics_failure_drop_policy_skips_bucket(self):
        stages = make_stages({'broken': 'us-east-1'}, failing_metrics=('broken',), metrics_failure='drop')

        outcome = enrich_bucket(buckets_named('broken')[0], stages)

        assert outcome.status == OutcomeStatus.SKIPPED

    def test_metrics_failure_skips_cost(self):
        cost = Mock(return_value=1.5)
        stages = make_stages(
            {'broken': 'us-east-1'}, failing_metrics=('broken',),
            cost_client=Mock(), collect_cost=cost,
        )

        outcome = enrich_bucket(buckets_named('broken')[0], stages)

        assert outcome.status == OutcomeStatus.DEGRADED
        assert outcome.bucket.cost is None
        cost.assert_not_called()

    def test_degraded_bucket_still_goes_through_storage_class_filter(self):
        stages = make_stages(
            {'broken': 'us-east-1'}, failing_metrics=('broken',),
            bucket_filter=build_filter('storageclasses', 'GLACIER'),
        )

        outcome = enrich_bucket(buckets_named('broken')[0], stages)

        assert outcome.status == OutcomeStatus.FILTERED

    def test_cost_is_added(self):
        cost = Mock(return_value=12.34)
        ce_client = Mock()
        stages = make_stages(
            {'logs': 'us-east-1'}, cost_client=ce_client, collect_cost=cost,
            cost_period_days=90, cost_tag='bucket',
        )

        outcome = enrich_bucket(buckets_named('logs')[0], stages)

        assert outcome.status == OutcomeStatus.ACCEPTED
        assert outcome.bucket.cost == 12.34
        bucket_arg, client_arg, period_arg, tag_arg = cost.call_args[0]
        assert bucket_arg.name == 'logs'
        assert client_arg is ce_client
        assert period_arg == 90
        assert tag_arg == 'bucket'

    def test_cost_failure_degrades_bucket(self):
        def failing_cost(bucket, client, period, tag):
            raise CostQueryError("throttled", bucket_name=bucket.name)

        metrics = {'logs': ObjectMetrics(1, 10, MODIFIED, {'STANDARD': 100.0})}
        stages = make_stages({'logs': 'us-east-1'}, metrics, cost_client=Mock(), collect_cost=failing_cost)

        outcome = enrich_bucket(buckets_named('logs')[0], stages)

        assert outcome.status == OutcomeStatus.DEGRADED
        assert outcome.bucket.cost is None
        assert outcome.bucket.size_bytes == 10
        assert 'throttled' in outcome.reason

    def test_filtered_bucket_is_not_priced(self):
        cost = Mock(return_value=1.0)
        metrics = {'hot': ObjectMetrics(1, 10, MODIFIED, {'STANDARD': 100.0})}
        stages = make_stages(
            {'hot': 'us-east-1'}, metrics,
            bucket_filter=build_filter('storageclasses', 'GLACIER'),
            cost_client=Mock(), collect_cost=cost,
        )

        outcome = enrich_bucket(buckets_named('hot')[0], stages)

        assert outcome.status == OutcomeStatus.FILTERED
        cost.assert_not_called()

    def test_invalid_policy_rejected(self):
        with pytest.raises(ConfigError):
            make_stages({}, metrics_failure='ignore')


# =============================================================================
# Filter Tests
# =============================================================================

class TestFiltering:
    """Tests for name and storage class filters in a full run."""

    def test_name_filter_runs_before_region_lookup(self):
        resolve = Mock(return_value='us-east-1')
        stages = make_stages({}, bucket_filter=build_filter('name', '^prod-'))
        stages.resolve_region = resolve

        result = EnrichmentWorkerPool(2).run(buckets_named('prod-logs', 'prod-data', 'dev-logs'), stages)

        assert [b.name for b in result.buckets] == ['prod-data', 'prod-logs']
        assert [o.name for o in result.filtered] == ['dev-logs']
        assert resolve.call_count == 2

    def test_storage_class_filter(self):
        metrics = {
            'archive': ObjectMetrics(10, 100, MODIFIED, {'GLACIER': 10.0, 'STANDARD': 90.0}),
            'hot': ObjectMetrics(5, 50, MODIFIED, {'STANDARD': 100.0}),
        }
        stages = make_stages(
            {'archive': 'us-east-1', 'hot': 'us-east-1'}, metrics,
            bucket_filter=build_filter('storageclasses', 'GLACIER'),
        )

        result = EnrichmentWorkerPool(2).run(buckets_named('archive', 'hot'), stages)

        assert [b.name for b in result.buckets] == ['archive']
        assert [o.name for o in result.filtered] == ['hot']


# =============================================================================
# Worker Pool Tests
# =============================================================================

class TestEnrichmentWorkerPool:
    """Tests for EnrichmentWorkerPool.run."""

    @pytest.mark.parametrize("workers", [0, -1, True, "3", 2.5])
    def test_invalid_worker_count(self, workers):
        with pytest.raises(WorkerCountError):
            EnrichmentWorkerPool(workers)

    def test_empty_catalog(self):
        stages = make_stages({})

        result = EnrichmentWorkerPool(4).run([], stages)

        assert result.outcomes == []
        assert result.buckets == []

    def test_every_bucket_has_one_outcome(self):
        names = [f"bucket-{i:03d}" for i in range(50)]
        regions = {name: 'us-east-1' for name in names[::2]}
        stages = make_stages(regions)

        result = EnrichmentWorkerPool(8).run(buckets_named(*names), stages)

        assert [o.name for o in result.outcomes] == sorted(names)
        assert len(result.accepted) == 25
        assert len(result.skipped) == 25

    def test_same_result_for_any_worker_count(self):
        names = [f"bucket-{i:02d}" for i in range(30)]
        regions = {}
        metrics = {}
        for i, name in enumerate(names):
            if i % 7 == 0:
                continue  # region lookup fails
            regions[name] = ['us-east-1', 'eu-west-1', 'ap-southeast-2'][i % 3]
            metrics[name] = ObjectMetrics(i, i * 1000, MODIFIED, {'STANDARD': 100.0})

        results = []
        for workers in (1, 2, 4, 8, 64):
            stages = make_stages(regions, metrics, failing_metrics=('bucket-05',))
            result = EnrichmentWorkerPool(workers).run(buckets_named(*names), stages)
            results.append(result)

        first = results[0]
        for other in results[1:]:
            assert [b.to_dict() for b in other.buckets] == [b.to_dict() for b in first.buckets]
            assert other.counts() == first.counts()

    def test_end_to_end_with_lazy_region_clients(self):
        factory = CountingFactory()
        metrics = {
            'B': ObjectMetrics(2, 2048, MODIFIED, {'STANDARD': 50.0, 'GLACIER': 50.0}),
            'C': ObjectMetrics(1, 10, MODIFIED, {'STANDARD': 100.0}),
        }
        stages = make_stages(
            {'B': 'us-east-1', 'C': 'eu-west-1'}, metrics,
            default_region='ap-southeast-2', factory=factory,
        )

        result = EnrichmentWorkerPool(3).run(buckets_named('A', 'B', 'C'), stages)

        assert sorted(factory.calls) == ['eu-west-1', 'us-east-1']
        assert [b.name for b in result.buckets] == ['B', 'C']
        assert result.outcome_for('A').status == OutcomeStatus.SKIPPED

        b = result.outcome_for('B').bucket
        assert b.region == 'us-east-1'
        assert b.object_count == 2
        assert b.size_bytes == 2048
        c = result.outcome_for('C').bucket
        assert c.region == 'eu-west-1'
        assert c.storage_classes == {'STANDARD': 100.0}

    def test_unexpected_error_skips_bucket_and_keeps_going(self):
        def resolve_region(bucket, default_client):
            if bucket.name == 'weird':
                raise KeyError('LocationConstraint')
            return 'us-east-1'

        stages = make_stages({})
        stages.resolve_region = resolve_region

        result = EnrichmentWorkerPool(1).run(buckets_named('weird', 'fine'), stages)

        assert result.outcome_for('weird').status == OutcomeStatus.SKIPPED
        assert 'unexpected error' in result.outcome_for('weird').reason
        assert result.outcome_for('fine').status == OutcomeStatus.ACCEPTED

    def test_tracker_receives_every_outcome(self):
        tracker = Mock()
        stages = make_stages({'a': 'us-east-1', 'b': 'us-east-1'})

        EnrichmentWorkerPool(2, tracker=tracker).run(buckets_named('a', 'b', 'c'), stages)

        assert tracker.add_outcome.call_count == 3

    def test_tracker_failure_does_not_lose_buckets(self):
        tracker = Mock()
        tracker.add_outcome.side_effect = [RuntimeError("console closed"), None, None]
        stages = make_stages({'a': 'us-east-1', 'b': 'us-east-1', 'c': 'us-east-1'})

        result = EnrichmentWorkerPool(1, tracker=tracker).run(buckets_named('a', 'b', 'c'), stages)

        assert [o.name for o in result.outcomes] == ['a', 'b', 'c']
        assert tracker.add_outcome.call_count == 3

    def test_recording_failure_raised_after_queue_is_drained(self):
        tracker = Mock()
        stages = make_stages({'a': 'us-east-1', 'b': 'us-east-1'})

        with pytest.raises(ValueError, match="already recorded"):
            EnrichmentWorkerPool(1, tracker=tracker).run(buckets_named('a', 'a', 'b'), stages)

        assert [c.args[0].name for c in tracker.add_outcome.call_args_list] == ['a', 'b']

    def test_pool_can_be_reused(self):
        pool = EnrichmentWorkerPool(2)

        first = pool.run(buckets_named('a'), make_stages({'a': 'us-east-1'}))
        second = pool.run(buckets_named('b'), make_stages({'b': 'us-east-1'}))

        assert [b.name for b in first.buckets] == ['a']
        assert [b.name for b in second.buckets] == ['b']


# =============================================================================
# ResultSink / build_stages Tests
# =============================================================================

class TestResultSink:
    """Tests for ResultSink."""

    def test_duplicate_bucket_rejected(self):
        sink = ResultSink()
        bucket = buckets_named('a')[0]
        sink.add(BucketOutcome(bucket, OutcomeStatus.ACCEPTED))

        with pytest.raises(ValueError):
            sink.add(BucketOutcome(bucket, OutcomeStatus.SKIPPED))

        assert len(sink) == 1

    def test_result_is_sorted_by_name(self):
        sink = ResultSink()
        for name in ('c', 'a', 'b'):
            sink.add(BucketOutcome(Bucket(name=name), OutcomeStatus.ACCEPTED))

        assert [o.name for o in sink.result().outcomes] == ['a', 'b', 'c']


class TestBuildStages:
    """Tests for build_stages."""

    def test_seeds_default_region(self):
        factory = CountingFactory()
        default_client = Mock()
        config = DiggerConfig(default_region='eu-central-1').validate()

        stages = build_stages(config, default_client, factory)

        assert stages.registry.get_or_create('eu-central-1') is default_client
        assert factory.calls == []
        assert stages.include_cost is False

    def test_splits_filter(self):
        config = DiggerConfig(filter_field='storageclasses', filter_regex='GLACIER').validate()

        stages = build_stages(config, Mock(), CountingFactory())

        assert stages.pre_filter is None
        assert stages.post_filter.field == 'storageclasses'

    def test_cost_client_only_when_enabled(self):
        ce_client = Mock()

        disabled = build_stages(DiggerConfig().validate(), Mock(), CountingFactory(), ce_client)
        enabled = build_stages(DiggerConfig(cost=True, cost_period_days=7).validate(),
                               Mock(), CountingFactory(), ce_client)

        assert disabled.cost_client is None
        assert enabled.cost_client is ce_client
        assert enabled.cost_period_days == 7

    def test_new_registry_per_run(self):
        config = DiggerConfig().validate()

        first = build_stages(config, Mock(), CountingFactory())
        second = build_stages(config, Mock(), CountingFactory())

        assert first.registry is not second.registry
