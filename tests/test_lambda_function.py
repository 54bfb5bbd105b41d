"""Integration tests for Lambda handler."""
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest

from lambda_function import JsonFormatter, _subscription_keys, lambda_handler, setup_logging
from storage.byte_store import MemoryByteStore
from storage.cache_store import CacheStore
from timetable.errors import FetchError
from timetable.models import Event, Snapshot

FEED = (
    "BEGIN:VCALENDAR\r\n"
    "VERSION:2.0\r\n"
    "BEGIN:VEVENT\r\n"
    "UID:algo-1\r\n"
    "SUMMARY:ALGO - TD\r\n"
    "LOCATION:Amphi 4\r\n"
    "DTSTART:20240116T090000Z\r\n"
    "DTEND:20240116T110000Z\r\n"
    "END:VEVENT\r\n"
    "END:VCALENDAR\r\n"
).encode()


@pytest.fixture
def mock_env():
    """Set up environment variables for testing."""
    env_vars = {
        'TABLE_NAME': 'test-timetable-cache',
        'LOG_LEVEL': 'INFO',
        'FEED_URL_TEMPLATE': 'https://zeus.example.com/api/group/{key}/ics',
        'FEED_AUTH_TOKEN': 'secret',
        'CONNECTIVITY_URL': 'https://zeus.example.com',
        'CACHE_TTL_SECONDS': '3600',
        'TIMEOUT_SECONDS': '30',
        'SUBSCRIPTION_KEYS': 'group-42, group-7'
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.memory_limit_in_mb = 512
    context.invoked_function_arn = 'arn:aws:lambda:us-east-1:123456789012:function:test-function'
    context.aws_request_id = 'test-request-id'
    return context


@pytest.fixture
def byte_store():
    return MemoryByteStore()


@pytest.fixture
def mock_components(byte_store):
    """Patch the network and DynamoDB collaborators of the handler."""
    with patch('lambda_function.DynamoDBByteStore') as mock_store_class, \
            patch('lambda_function.HttpFeedFetcher') as mock_fetcher_class, \
            patch('lambda_function.HttpConnectivityProbe') as mock_probe_class:
        mock_store_class.return_value = byte_store

        mock_fetcher = Mock()
        mock_fetcher.fetch.return_value = FEED
        mock_fetcher_class.return_value = mock_fetcher

        mock_probe = Mock()
        mock_probe.is_online.return_value = True
        mock_probe_class.return_value = mock_probe

        yield {
            'store_class': mock_store_class,
            'fetcher_class': mock_fetcher_class,
            'fetcher': mock_fetcher,
            'probe': mock_probe,
        }


def _seed(byte_store, key: str, age: timedelta) -> None:
    start = datetime(2024, 1, 16, 9, 0, tzinfo=timezone.utc)
    snapshot = Snapshot(
        subscription_key=key,
        events=[Event(id='algo-1', title='ALGO - TD', start=start,
                      end=start + timedelta(hours=2), location='Amphi 4')],
        fetched_at=datetime.now(timezone.utc) - age,
    )
    CacheStore(byte_store).write(key, snapshot)


class TestLambdaHandler:
    """Test cases for Lambda handler."""

    def test_successful_sync(self, mock_env, mock_context, mock_components):
        """Test successful end-to-end sync process."""
        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['message'] == 'Sync completed successfully'
        assert body['statistics']['subscriptions'] == 2
        assert body['statistics']['failed'] == 0
        assert body['statistics']['degraded'] == 0
        assert 'duration_seconds' in body['statistics']

        first = body['results'][0]
        assert first['subscription'] == 'group-42'
        assert first['status'] == 'fresh'
        assert first['from_cache'] is False
        assert first['event_count'] == 1
        assert [c['kind'] for c in first['changes']] == ['added']
        assert first['notifications'][0]['title'] == 'New class'

        # Verify component wiring
        mock_components['store_class'].assert_called_once_with(table_name='test-timetable-cache')
        mock_components['fetcher_class'].assert_called_once_with(
            'https://zeus.example.com/api/group/{key}/ics',
            auth_token='secret',
            timeout=30
        )
        assert [c.args[0] for c in mock_components['fetcher'].fetch.call_args_list] == [
            'group-42', 'group-7'
        ]

    def test_subscriptions_from_payload(self, mock_env, mock_context, mock_components):
        response = lambda_handler({'subscriptions': ['group-1']}, mock_context)

        body = json.loads(response['body'])
        assert [r['subscription'] for r in body['results']] == ['group-1']

    def test_subscriptions_string_from_payload(self, mock_env, mock_context, mock_components):
        """Test that a comma-separated string is split like the env var."""
        response = lambda_handler({'subscriptions': 'group-1, group-2'}, mock_context)

        body = json.loads(response['body'])
        assert [r['subscription'] for r in body['results']] == ['group-1', 'group-2']
        assert mock_components['fetcher'].fetch.call_count == 2

    def test_second_run_served_from_cache(self, mock_env, mock_context, mock_components):
        lambda_handler({'subscriptions': ['group-42']}, mock_context)
        response = lambda_handler({'subscriptions': ['group-42']}, mock_context)

        body = json.loads(response['body'])
        assert body['results'][0]['from_cache'] is True
        assert body['results'][0]['changes'] == []
        assert mock_components['fetcher'].fetch.call_count == 1

    def test_force_refresh_refetches(self, mock_env, mock_context, mock_components, byte_store):
        _seed(byte_store, 'group-42', timedelta(minutes=1))

        response = lambda_handler(
            {'subscriptions': ['group-42'], 'force_refresh': True}, mock_context
        )

        body = json.loads(response['body'])
        assert body['results'][0]['from_cache'] is False
        assert body['results'][0]['changes'] == []
        mock_components['fetcher'].fetch.assert_called_once_with('group-42')

    def test_fetch_failure_without_cache(self, mock_env, mock_context, mock_components):
        """Test error response when a subscription has no data at all."""
        mock_components['fetcher'].fetch.side_effect = FetchError('Network error')

        response = lambda_handler({'subscriptions': ['group-42']}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Schedule sync failed for one or more subscriptions'
        assert body['statistics']['failed'] == 1
        result = body['results'][0]
        assert result['status'] == 'failed'
        assert result['reason'] == 'fetch_failed_no_cache'
        assert 'Network error' in result['error']

    def test_offline_without_cache(self, mock_env, mock_context, mock_components):
        mock_components['probe'].is_online.return_value = False

        response = lambda_handler({'subscriptions': ['group-42']}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['results'][0]['reason'] == 'no_data_offline'
        mock_components['fetcher'].fetch.assert_not_called()

    def test_fetch_failure_with_stale_cache_is_degraded(
        self, mock_env, mock_context, mock_components, byte_store
    ):
        """Test that stale data is served when the feed is unreachable."""
        _seed(byte_store, 'group-42', timedelta(hours=2))
        mock_components['fetcher'].fetch.side_effect = FetchError('Network error')

        response = lambda_handler({'subscriptions': ['group-42']}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['statistics']['degraded'] == 1
        result = body['results'][0]
        assert result['status'] == 'degraded'
        assert result['from_cache'] is True
        assert result['event_count'] == 1
        assert len(result['warnings']) == 1

    def test_housekeeping_purges_old_entries(
        self, mock_env, mock_context, mock_components, byte_store
    ):
        _seed(byte_store, 'abandoned', timedelta(days=30))

        response = lambda_handler({'subscriptions': []}, mock_context)

        body = json.loads(response['body'])
        assert body['statistics']['cache_entries_purged'] == 1
        assert CacheStore(byte_store).keys() == []

    def test_unexpected_failure(self, mock_env, mock_context, mock_components):
        """Test error handling for failures outside the per-subscription flow."""
        mock_components['store_class'].side_effect = Exception('DynamoDB error')

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Sync failed'
        assert 'DynamoDB error' in body['error']
        assert body['error_type'] == 'Exception'
        assert 'duration_seconds' in body

    @patch('lambda_function.setup_logging')
    def test_logging_output(
        self,
        mock_setup_logging,
        mock_env,
        mock_context,
        mock_components,
        caplog
    ):
        """Test that logging output is generated correctly."""
        with caplog.at_level(logging.INFO, logger='lambda_function'):
            response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        log_messages = [record.message for record in caplog.records]
        assert any('Lambda execution started' in msg for msg in log_messages)
        assert any("Synchronizing subscription 'group-42'" in msg for msg in log_messages)
        assert any('Lambda execution completed' in msg for msg in log_messages)


class TestSetupLogging:
    """Test cases for logging setup."""

    def test_setup_logging_default_level(self):
        """Test logging setup with default INFO level."""
        setup_logging()
        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_debug_level(self):
        setup_logging('DEBUG')
        assert logging.getLogger().level == logging.DEBUG

    def test_setup_logging_unknown_level_falls_back_to_info(self):
        setup_logging('CHATTY')
        assert logging.getLogger().level == logging.INFO

    def test_json_formatter(self):
        record = logging.LogRecord(
            'timetable.coordinator', logging.WARNING, __file__, 1,
            "Showing cached schedule", None, None
        )

        data = json.loads(JsonFormatter().format(record))

        assert data['level'] == 'WARNING'
        assert data['message'] == 'Showing cached schedule'
        assert data['logger'] == 'timetable.coordinator'


class TestSubscriptionKeys:
    """Test cases for subscription key resolution."""

    def test_single_string_is_one_key(self):
        assert _subscription_keys({'subscriptions': 'group-42'}) == ['group-42']

    def test_list_is_kept(self):
        assert _subscription_keys({'subscriptions': ['group-42', ' group-7 ']}) == [
            'group-42', 'group-7'
        ]

    def test_env_fallback(self):
        with patch.dict(os.environ, {'SUBSCRIPTION_KEYS': 'group-42,,group-7'}):
            assert _subscription_keys({}) == ['group-42', 'group-7']
