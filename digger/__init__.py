"""
Bucket Digger shared library.
"""
# Import constants module for easy access
from . import constants
from .config import DiggerConfig, load_config
from .errors import (
    BucketError,
    CatalogError,
    ClientInitError,
    ConfigError,
    CostQueryError,
    DiggerError,
    MetricsError,
    RegionLookupError,
    WorkerCountError,
)
from .filters import BucketFilter, build_filter
from .models import (
    Bucket,
    BucketOutcome,
    ObjectMetrics,
    OutcomeStatus,
    PipelineResult,
    RegionSummary,
    aggregate_by_region,
)
from .pipeline import EnrichmentStages, EnrichmentWorkerPool, ResultSink, build_stages
from .registry import ClientRegistry

__version__ = '1.0.0'

__all__ = [
    # Constants
    'constants',
    # Config
    'DiggerConfig',
    'load_config',
    # Errors
    'DiggerError',
    'ConfigError',
    'WorkerCountError',
    'CatalogError',
    'BucketError',
    'ClientInitError',
    'RegionLookupError',
    'MetricsError',
    'CostQueryError',
    # Models
    'Bucket',
    'ObjectMetrics',
    'OutcomeStatus',
    'BucketOutcome',
    'PipelineResult',
    'RegionSummary',
    'aggregate_by_region',
    # Pipeline
    'BucketFilter',
    'build_filter',
    'ClientRegistry',
    'EnrichmentStages',
    'EnrichmentWorkerPool',
    'ResultSink',
    'build_stages',
]
