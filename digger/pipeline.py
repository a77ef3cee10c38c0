"""
Concurrent bucket enrichment.

Every bucket from the catalog is pushed onto a job queue and a fixed number
of worker threads pull from it until the queue is closed. For each bucket a
worker runs, in order:

    name filter -> region lookup -> region client -> object metrics
        -> storage class filter -> cost (optional)

and records exactly one BucketOutcome in the shared ResultSink. Buckets are
immutable, so each stage hands the worker a new value and nothing a worker
holds is visible to another thread until it lands in the sink.

Failure policy per bucket:
- region lookup / region client failure: SKIPPED (dropped from the report)
- metrics failure: DEGRADED with zeroed metrics (policy 'keep') or
  SKIPPED (policy 'drop'); cost is not queried for that bucket
- cost failure: DEGRADED, cost left unset
- anything unexpected: SKIPPED, never stops the worker
"""
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterable, List, Optional

from . import cost as cost_stage
from . import s3 as s3_stage
from .constants import (
    DEFAULT_COST_PERIOD_DAYS,
    DEFAULT_COST_TAG,
    METRICS_FAILURE_DROP,
    METRICS_FAILURE_KEEP,
    VALID_METRICS_FAILURE_POLICIES,
)
from .errors import (
    ClientInitError,
    ConfigError,
    CostQueryError,
    MetricsError,
    RegionLookupError,
    WorkerCountError,
)
from .filters import BucketFilter, split_filter
from .models import Bucket, BucketOutcome, OutcomeStatus, PipelineResult
from .registry import ClientFactory, ClientRegistry

if TYPE_CHECKING:
    from .config import DiggerConfig
    from .utils import ProgressTracker

logger = logging.getLogger(__name__)

# Closes the job queue for one worker
_STOP = object()


class ResultSink:
    """Thread-safe, append-only collection of bucket outcomes."""

    def __init__(self):
        self._outcomes: List[BucketOutcome] = []
        self._names = set()
        self._lock = threading.Lock()

    def add(self, outcome: BucketOutcome) -> None:
        with self._lock:
            if outcome.name in self._names:
                raise ValueError(f"Bucket {outcome.name} was already recorded")
            self._names.add(outcome.name)
            self._outcomes.append(outcome)

    def __len__(self) -> int:
        with self._lock:
            return len(self._outcomes)

    def result(self) -> PipelineResult:
        """Snapshot of every outcome, ordered by bucket name."""
        with self._lock:
            outcomes = sorted(self._outcomes, key=lambda o: o.name)
        return PipelineResult(outcomes=outcomes)


@dataclass
class EnrichmentStages:
    """
    Collaborators sequenced by the worker pool for each bucket.

    The stage callables default to the real S3 / Cost Explorer
    implementations and can be swapped out in tests.
    """
    default_client: Any
    registry: ClientRegistry
    pre_filter: Optional[BucketFilter] = None
    post_filter: Optional[BucketFilter] = None
    cost_client: Any = None
    cost_period_days: int = DEFAULT_COST_PERIOD_DAYS
    cost_tag: str = DEFAULT_COST_TAG
    metrics_failure: str = METRICS_FAILURE_KEEP
    resolve_region: Callable[[Bucket, Any], str] = s3_stage.resolve_region
    collect_metrics: Callable[[Bucket, Any], Any] = s3_stage.collect_object_metrics
    collect_cost: Callable[..., float] = cost_stage.collect_bucket_cost

    def __post_init__(self):
        if self.metrics_failure not in VALID_METRICS_FAILURE_POLICIES:
            raise ConfigError(f"'{self.metrics_failure}' is not a valid metrics failure policy")

    @property
    def include_cost(self) -> bool:
        return self.cost_client is not None


def build_stages(
    config: 'DiggerConfig',
    default_client: Any,
    client_factory: ClientFactory,
    cost_client: Any = None,
) -> EnrichmentStages:
    """
    Build the stages for one run from a validated config.

    A new ClientRegistry is created on every call and seeded with the
    default-region client, so nothing is shared between runs.
    """
    registry = ClientRegistry(client_factory)
    registry.seed(config.default_region, default_client)

    pre_filter, post_filter = split_filter(config.build_filter())

    return EnrichmentStages(
        default_client=default_client,
        registry=registry,
        pre_filter=pre_filter,
        post_filter=post_filter,
        cost_client=cost_client if config.cost else None,
        cost_period_days=config.cost_period_days,
        cost_tag=config.cost_tag,
        metrics_failure=config.metrics_failure,
    )


def enrich_bucket(bucket: Bucket, stages: EnrichmentStages) -> BucketOutcome:
    """Run every stage for one bucket and classify the result."""
    if stages.pre_filter and not stages.pre_filter.matches(bucket):
        return BucketOutcome(bucket, OutcomeStatus.FILTERED, f"does not match {stages.pre_filter.field} filter")

    try:
        region = stages.resolve_region(bucket, stages.default_client)
    except RegionLookupError as e:
        logger.warning(f"Unable to fetch the region for bucket {bucket.name}, skipping it: {e}")
        return BucketOutcome(bucket, OutcomeStatus.SKIPPED, str(e))
    bucket = bucket.with_region(region)

    try:
        client = stages.registry.get_or_create(region)
    except ClientInitError as e:
        logger.warning(f"Skipping bucket {bucket.name}: {e}")
        return BucketOutcome(bucket, OutcomeStatus.SKIPPED, str(e))

    problems: List[str] = []
    metrics_ok = True
    try:
        bucket = bucket.with_metrics(stages.collect_metrics(bucket, client))
    except MetricsError as e:
        if stages.metrics_failure == METRICS_FAILURE_DROP:
            logger.warning(f"Unable to get the objects metrics for bucket {bucket.name}, skipping it: {e}")
            return BucketOutcome(bucket, OutcomeStatus.SKIPPED, str(e))
        logger.warning(f"Unable to get the objects metrics for bucket {bucket.name}, keeping it without metrics: {e}")
        problems.append(str(e))
        metrics_ok = False

    if stages.post_filter and not stages.post_filter.matches(bucket):
        return BucketOutcome(bucket, OutcomeStatus.FILTERED, f"does not match {stages.post_filter.field} filter")

    if stages.include_cost and metrics_ok:
        try:
            amount = stages.collect_cost(
                bucket, stages.cost_client, stages.cost_period_days, stages.cost_tag
            )
            bucket = bucket.with_cost(amount)
        except CostQueryError as e:
            logger.warning(f"Unable to get the cost for bucket {bucket.name}: {e}")
            problems.append(str(e))

    if problems:
        return BucketOutcome(bucket, OutcomeStatus.DEGRADED, "; ".join(problems))
    return BucketOutcome(bucket, OutcomeStatus.ACCEPTED)


class EnrichmentWorkerPool:
    """
    Fixed-size pool of worker threads enriching buckets from a job queue.

    The pool keeps no state between runs; ``run`` can be called any number
    of times.
    """

    def __init__(self, worker_count: int, tracker: Optional['ProgressTracker'] = None):
        if isinstance(worker_count, bool) or not isinstance(worker_count, int) or worker_count < 1:
            raise WorkerCountError(worker_count)
        self.worker_count = worker_count
        self.tracker = tracker

    def _work(self, jobs: queue.Queue, stages: EnrichmentStages, sink: ResultSink) -> None:
        """
        Drain the job queue until a stop marker arrives.

        A failure while recording one bucket does not stop the worker: it
        keeps draining, then re-raises the first such failure on exit.
        """
        failure: Optional[Exception] = None
        while True:
            bucket = jobs.get()
            try:
                if bucket is _STOP:
                    break
                try:
                    outcome = enrich_bucket(bucket, stages)
                except Exception as e:
                    logger.warning(f"Unexpected error enriching bucket {bucket.name}, skipping it: {e}")
                    outcome = BucketOutcome(bucket, OutcomeStatus.SKIPPED, f"unexpected error: {e}")

                try:
                    sink.add(outcome)
                except Exception as e:
                    logger.error(f"Unable to record bucket {bucket.name}: {e}")
                    failure = failure or e
                    continue

                if self.tracker:
                    try:
                        self.tracker.add_outcome(outcome)
                    except Exception as e:
                        logger.warning(f"Progress update failed for bucket {bucket.name}: {e}")
            finally:
                jobs.task_done()

        if failure is not None:
            raise failure

    def run(self, buckets: Iterable[Bucket], stages: EnrichmentStages) -> PipelineResult:
        """
        Enrich every bucket and block until all workers have exited.

        Returns the outcomes ordered by bucket name, so the result does not
        depend on which worker finished first.

        Raises:
            Exception: the first failure a worker hit while recording an
                outcome, after every worker has drained the queue
        """
        jobs_list = list(buckets)
        sink = ResultSink()
        if not jobs_list:
            return sink.result()

        workers = min(self.worker_count, len(jobs_list))
        # Room for every job plus one stop marker per worker; the producer never blocks
        jobs: queue.Queue = queue.Queue(maxsize=len(jobs_list) + workers)
        for bucket in jobs_list:
            jobs.put_nowait(bucket)
        for _ in range(workers):
            jobs.put_nowait(_STOP)

        logger.info(f"Enriching {len(jobs_list)} buckets with {workers} workers")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="digger-worker") as executor:
            futures = [executor.submit(self._work, jobs, stages, sink) for _ in range(workers)]

        for future in futures:
            error = future.exception()
            if error is not None:
                raise error

        result = sink.result()
        counts = result.counts()
        logger.info(
            f"Enrichment complete: {counts['accepted']} accepted, {counts['degraded']} degraded, "
            f"{counts['filtered']} filtered, {counts['skipped']} skipped"
        )
        return result
