"""
Per-bucket cost from AWS Cost Explorer.

Cost Explorer cannot report cost per bucket directly. Buckets are matched
through a cost allocation tag whose value is the bucket name (the tag key is
configurable, ``Name`` by default), so only buckets tagged that way and with
the tag activated for cost allocation report a non-zero cost.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from .constants import S3_SERVICE_NAME
from .errors import CostQueryError, describe_error
from .models import Bucket

logger = logging.getLogger(__name__)

COST_METRIC = 'AmortizedCost'
COST_GRANULARITY = 'MONTHLY'


# =============================================================================
# Date Helpers
# =============================================================================

def get_cost_window(period_days: int, today: Optional[date] = None) -> Tuple[str, str]:
    """
    Return the trailing window [today - period_days, today + 1 day).

    Returns:
        Tuple of (start_date, end_date) as YYYY-MM-DD strings, end exclusive

    Example:
        period_days=30 on 2026-02-13 returns ('2026-01-14', '2026-02-14')
    """
    if today is None:
        today = datetime.now(timezone.utc).date()
    start = today - timedelta(days=period_days)
    end = today + timedelta(days=1)
    return start.strftime('%Y-%m-%d'), end.strftime('%Y-%m-%d')


def build_cost_filter(bucket_name: str, cost_tag: str) -> Dict[str, Any]:
    """Cost Explorer filter: S3 service AND cost tag equal to the bucket name."""
    return {
        'And': [
            {
                'Dimensions': {
                    'Key': 'SERVICE',
                    'Values': [S3_SERVICE_NAME],
                }
            },
            {
                'Tags': {
                    'Key': cost_tag,
                    'Values': [bucket_name],
                }
            },
        ]
    }


# =============================================================================
# Cost Collection
# =============================================================================

def collect_bucket_cost(
    bucket: Bucket,
    ce_client,
    period_days: int,
    cost_tag: str,
    today: Optional[date] = None,
) -> float:
    """
    Sum the bucket's amortized cost over the trailing window.

    Args:
        bucket: bucket to price
        ce_client: boto3 Cost Explorer client
        period_days: length of the trailing window in days
        cost_tag: cost allocation tag key holding the bucket name
        today: anchor date (default: current UTC date)

    Returns:
        Total amortized cost; 0.0 when Cost Explorer returns no periods

    Raises:
        CostQueryError: if the query fails or returns an unreadable amount
    """
    start_date, end_date = get_cost_window(period_days, today)
    request: Dict[str, Any] = {
        'TimePeriod': {'Start': start_date, 'End': end_date},
        'Granularity': COST_GRANULARITY,
        'Metrics': [COST_METRIC],
        'Filter': build_cost_filter(bucket.name, cost_tag),
    }

    total = 0.0
    periods = 0
    try:
        while True:
            response = ce_client.get_cost_and_usage(**request)
            for result in response.get('ResultsByTime', []):
                periods += 1
                amount = result.get('Total', {}).get(COST_METRIC, {}).get('Amount', 0)
                total += float(amount or 0)

            token = response.get('NextPageToken')
            if not token:
                break
            request['NextPageToken'] = token
    except (ClientError, BotoCoreError) as e:
        raise CostQueryError(
            f"Failed to query cost for bucket {bucket.name}: {describe_error(e)}",
            bucket_name=bucket.name,
            original_error=e,
        ) from e
    except (TypeError, ValueError) as e:
        raise CostQueryError(
            f"Unexpected cost amount for bucket {bucket.name}: {e}",
            bucket_name=bucket.name,
            original_error=e,
        ) from e

    logger.debug(f"Bucket {bucket.name}: {total:.2f} over {periods} periods ({start_date} to {end_date})")
    return total
