"""AWS Lambda handler for timetable feed synchronization."""
import json
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from calendar_feed.fetcher import HttpConnectivityProbe, HttpFeedFetcher
from storage.byte_store import DynamoDBByteStore
from storage.cache_store import CacheStore
from timetable.coordinator import SyncCoordinator
from timetable.errors import SyncError
from timetable.notifications import build_notifications


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _subscription_keys(event: Dict[str, Any]) -> List[str]:
    keys = event.get('subscriptions')
    if keys is None:
        keys = os.environ.get('SUBSCRIPTION_KEYS', '')
    if isinstance(keys, str):
        keys = keys.split(',')
    return [str(key).strip() for key in keys if str(key).strip()]


def _sync_subscription(
    coordinator: SyncCoordinator,
    subscription_key: str,
    force_refresh: bool,
    now: datetime
) -> Dict[str, Any]:
    """Run one subscription through the coordinator and summarize it."""
    logger = logging.getLogger(__name__)

    # Zero TTL refetches but keeps the cached snapshot as the diff baseline
    ttl = timedelta(0) if force_refresh else None

    try:
        result = coordinator.get_schedule(subscription_key, ttl=ttl)
    except SyncError as e:
        logger.error(
            f"No schedule available for '{subscription_key}': {e}",
            extra={'reason': e.reason.value}
        )
        return {
            'subscription': subscription_key,
            'status': 'failed',
            'reason': e.reason.value,
            'error': str(e),
        }

    return {
        'subscription': subscription_key,
        'status': result.status.value,
        'from_cache': result.from_cache,
        'fetched_at': result.fetched_at.isoformat() if result.fetched_at else None,
        'event_count': len(result.events),
        'changes': [change.to_dict() for change in result.changes],
        'notifications': [
            {'title': n.title, 'body': n.body, 'data': n.data}
            for n in build_notifications(result.changes, now)
        ],
        'warnings': result.warnings,
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for timetable sync.

    Args:
        event: EventBridge payload, optionally with ``subscriptions`` and
            ``force_refresh``
        context: Lambda context object

    Returns:
        Response dict with statusCode and per-subscription results
    """
    # Read configuration from environment variables
    table_name = os.environ.get('TABLE_NAME', 'timetable-cache')
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    feed_url_template = os.environ.get(
        'FEED_URL_TEMPLATE', 'https://zeus.ionis-it.com/api/group/{key}/ics'
    )
    feed_auth_token = os.environ.get('FEED_AUTH_TOKEN') or None
    connectivity_url = os.environ.get('CONNECTIVITY_URL', 'https://zeus.ionis-it.com')
    cache_ttl_seconds = int(os.environ.get('CACHE_TTL_SECONDS', '3600'))
    cache_max_age_days = int(os.environ.get('CACHE_MAX_AGE_DAYS', '7'))
    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '30'))

    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    subscription_keys = _subscription_keys(event or {})
    force_refresh = bool((event or {}).get('force_refresh', False))
    logger.info(
        f"Lambda execution started",
        extra={
            'table_name': table_name,
            'subscriptions': subscription_keys,
            'cache_ttl_seconds': cache_ttl_seconds,
            'force_refresh': force_refresh
        }
    )

    try:
        coordinator = SyncCoordinator(
            cache=CacheStore(DynamoDBByteStore(table_name=table_name)),
            fetcher=HttpFeedFetcher(
                feed_url_template,
                auth_token=feed_auth_token,
                timeout=timeout_seconds
            ),
            connectivity=HttpConnectivityProbe(connectivity_url),
            ttl=timedelta(seconds=cache_ttl_seconds),
            max_age=timedelta(days=cache_max_age_days),
        )

        now = datetime.now(timezone.utc)
        results = []
        for subscription_key in subscription_keys:
            logger.info(f"Synchronizing subscription '{subscription_key}'")
            results.append(
                _sync_subscription(coordinator, subscription_key, force_refresh, now)
            )

        purged = coordinator.housekeeping()
        duration = time.time() - start_time
        failed = [r['subscription'] for r in results if r['status'] == 'failed']
        degraded = [r['subscription'] for r in results if r['status'] == 'degraded']

        logger.info(
            f"Lambda execution completed",
            extra={
                'duration_seconds': round(duration, 2),
                'failed': failed,
                'degraded': degraded,
                'purged': purged
            }
        )

        return {
            'statusCode': 500 if failed else 200,
            'body': json.dumps({
                'message': (
                    'Schedule sync failed for one or more subscriptions'
                    if failed else 'Sync completed successfully'
                ),
                'statistics': {
                    'subscriptions': len(results),
                    'failed': len(failed),
                    'degraded': len(degraded),
                    'cache_entries_purged': purged,
                    'duration_seconds': round(duration, 2)
                },
                'results': results
            })
        }

    except Exception as e:
        duration = time.time() - start_time

        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )

        return {
            'statusCode': 500,
            'body': json.dumps({
                'message': 'Sync failed',
                'error': str(e),
                'error_type': type(e).__name__,
                'duration_seconds': round(duration, 2)
            })
        }
