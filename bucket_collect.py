#!/usr/bin/env python3
"""
Bucket Digger - S3 Bucket Inventory

Lists every S3 bucket visible to the current credentials, digs through each
bucket's objects in parallel (size, object count, last modification, storage
class mix), optionally adds the amortized cost from Cost Explorer, then
filters, sorts, groups and prints the result as a table.

Usage:
    python3 bucket_collect.py
    python3 bucket_collect.py --unit gb --workers 20
    python3 bucket_collect.py --filter name --regex '^prod-' --sort size --order desc
    python3 bucket_collect.py --cost --cost-period 90 --group region
    python3 bucket_collect.py --output buckets.json
"""
import argparse
import logging
import sys
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

sys.path.insert(0, '.')
from digger import __version__
from digger.config import DiggerConfig, generate_sample_config, load_config
from digger.constants import (
    COST_EXPLORER_REGION,
    REPORT_COLUMNS,
    SIZE_UNITS,
    VALID_FILTER_FIELDS,
    VALID_GROUP_KEYS,
    VALID_METRICS_FAILURE_POLICIES,
    VALID_SORT_KEYS,
    VALID_SORT_ORDERS,
)
from digger.errors import CatalogError, ConfigError, describe_error
from digger.models import PipelineResult, aggregate_by_region
from digger.pipeline import EnrichmentWorkerPool, build_stages
from digger.report import (
    bucket_rows,
    group_buckets,
    render_table,
    sort_buckets,
    write_csv,
    write_json,
)
from digger.s3 import list_buckets, make_client, s3_client_factory
from digger.utils import ProgressTracker, generate_run_id, get_timestamp, setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Bucket Digger - S3 bucket inventory',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Every bucket, sizes in MB
  python3 bucket_collect.py

  # Sizes in GB, 20 workers
  python3 bucket_collect.py --unit gb --workers 20

  # Production buckets only, largest first
  python3 bucket_collect.py --filter name --regex '^prod-' --sort size --order desc

  # Buckets holding Glacier objects
  python3 bucket_collect.py --filter storageclasses --regex GLACIER

  # Add the last 90 days of cost and group by region
  python3 bucket_collect.py --cost --cost-period 90 --group region

  # Export the table
  python3 bucket_collect.py --output buckets.csv
"""
    )

    # Basic options
    parser.add_argument('--config', '-c', help='Path to YAML config file')
    parser.add_argument('--generate-config', action='store_true',
                        help='Generate a sample config file and exit')
    parser.add_argument('--profile', help='AWS profile name')
    parser.add_argument('--region', help='Region used to list buckets and look up their location (default: us-east-1)')
    parser.add_argument('--output', '-o', help='Export the table to a .json or .csv file')
    parser.add_argument('--log-level', help='Logging level (default: INFO)')
    parser.add_argument('--log-file', help='Also write logs to this file, with account IDs masked')
    parser.add_argument('--no-progress', action='store_true', help='Disable the progress bar')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    # Collection options
    parser.add_argument('--unit', choices=list(SIZE_UNITS), type=str.lower,
                        help='Unit used to display bucket sizes, base 1000 (default: mb)')
    parser.add_argument('--workers', type=int, metavar='N',
                        help='Number of workers digging through S3 (default: 10)')
    parser.add_argument('--metrics-failure', choices=VALID_METRICS_FAILURE_POLICIES, type=str.lower,
                        help='Keep buckets whose objects cannot be listed (with zeroed metrics) '
                             'or drop them (default: keep)')

    # Filtering, sorting and grouping
    parser.add_argument('--filter', choices=VALID_FILTER_FIELDS, type=str.lower,
                        help='Field the --regex is matched against')
    parser.add_argument('--regex', help='Regular expression buckets must match to be shown')
    parser.add_argument('--sort', choices=VALID_SORT_KEYS, type=str.lower,
                        help='Column used to sort the table (default: name)')
    parser.add_argument('--order', choices=VALID_SORT_ORDERS, type=str.lower,
                        help='Sort order (default: asc)')
    parser.add_argument('--group', choices=VALID_GROUP_KEYS, type=str.lower,
                        help='Group the table (default: none)')

    # Cost options
    parser.add_argument('--cost', action='store_true', default=None,
                        help='Add each bucket\'s amortized cost from Cost Explorer')
    parser.add_argument('--cost-period', type=int, metavar='DAYS',
                        help='Number of days of cost to sum, 1 to 365 (default: 30)')
    parser.add_argument('--cost-tag',
                        help='Cost allocation tag whose value is the bucket name (default: Name)')

    return parser


def build_export(result: PipelineResult, config: DiggerConfig, buckets: List[Any]) -> Dict[str, Any]:
    """JSON document for --output: the reported buckets plus every outcome."""
    return {
        'run_id': generate_run_id(),
        'timestamp': get_timestamp(),
        'unit': config.unit,
        'counts': result.counts(),
        'buckets': bucket_rows(buckets, config.unit),
        'regions': [summary.to_dict() for summary in aggregate_by_region(buckets)],
        'outcomes': [outcome.to_dict() for outcome in result.outcomes],
    }


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle --generate-config
    if args.generate_config:
        print(generate_sample_config())
        sys.exit(0)

    setup_logging(args.log_level or 'INFO')

    # Load configuration from env/file/args
    try:
        config = load_config(args)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    setup_logging(config.log_level, log_file=args.log_file)
    logger.debug(f"Configuration: {config.to_dict()}")

    # Default-region client, used for the catalog and every location lookup
    try:
        default_client = make_client('s3', config.default_region, config.profile)
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Unable to initialize the AWS session: {describe_error(e)}")
        logger.error("Check your AWS credentials are configured correctly.")
        sys.exit(1)

    try:
        buckets = list_buckets(default_client)
    except CatalogError as e:
        logger.error(str(e))
        sys.exit(1)

    cost_client = None
    if config.cost:
        try:
            cost_client = make_client('ce', COST_EXPLORER_REGION, config.profile)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Unable to initialize the Cost Explorer client: {describe_error(e)}")
            sys.exit(1)

    stages = build_stages(config, default_client, s3_client_factory(config.profile), cost_client)

    with ProgressTracker(total_buckets=len(buckets), show_progress=config.show_progress) as tracker:
        pool = EnrichmentWorkerPool(config.workers, tracker=tracker)
        result = pool.run(buckets, stages)

    for outcome in result.degraded:
        logger.debug(f"Bucket {outcome.name} is incomplete: {outcome.reason}")

    reported = sort_buckets(result.buckets, config.sort_key, config.descending)
    render_table(group_buckets(reported, config.group_by), config.unit, include_cost=config.cost)

    if config.output:
        try:
            if config.output.lower().endswith('.csv'):
                write_csv(bucket_rows(reported, config.unit), config.output, fieldnames=REPORT_COLUMNS)
            else:
                write_json(build_export(result, config, reported), config.output)
        except OSError as e:
            logger.error(f"Unable to write {config.output}: {e}")
            sys.exit(1)


if __name__ == '__main__':
    main()
