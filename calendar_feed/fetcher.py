"""HTTP collaborators: feed byte fetcher and connectivity probe."""
import logging
import time
from datetime import date
from typing import Optional

import requests

from timetable.errors import FetchError

logger = logging.getLogger(__name__)


def school_year_start(today: date) -> date:
    """
    First of September of the school year containing ``today``.

    Args:
        today: Reference date

    Returns:
        September 1st of this year from September on, otherwise of last year
    """
    year = today.year if today.month >= 9 else today.year - 1
    return date(year, 9, 1)


class HttpFeedFetcher:
    """Fetches raw ICS bytes for a subscription over HTTP."""

    def __init__(
        self,
        url_template: str,
        auth_token: Optional[str] = None,
        timeout: int = 30,
        max_retries: int = 3,
        start_date: Optional[date] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the feed fetcher.

        Args:
            url_template: Feed URL with a ``{key}`` placeholder
            auth_token: Bearer token sent with every request, if any
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Number of attempts before giving up (default: 3)
            start_date: First day requested from the feed (default: school year start)
            session: Optional requests session to reuse connections
        """
        self.url_template = url_template
        self.auth_token = auth_token
        self.timeout = timeout
        self.max_retries = max_retries
        self.start_date = start_date
        self.session = session or requests.Session()

    def fetch(self, subscription_key: str) -> bytes:
        """
        Fetch the feed for a subscription with retry logic.

        Args:
            subscription_key: Subscription (group) identifier

        Returns:
            Raw feed bytes

        Raises:
            FetchError: If all retry attempts fail
        """
        url = self.url_template.format(key=subscription_key)
        start = self.start_date or school_year_start(date.today())
        params = {'startDate': start.isoformat()}
        headers = {'Accept': 'text/calendar'}
        if self.auth_token:
            headers['Authorization'] = f"Bearer {self.auth_token}"

        base_delay = 1  # seconds

        for attempt in range(self.max_retries):
            try:
                logger.info(
                    f"Fetching feed for '{subscription_key}' "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                response = self.session.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=self.timeout
                )
                response.raise_for_status()
                logger.info(
                    f"Received {len(response.content)} bytes for '{subscription_key}'"
                )
                return response.content

            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} retry attempts failed. Last error: {e}"
                    )
                    raise FetchError(
                        f"Failed to fetch feed for '{subscription_key}': {e}"
                    ) from e

        raise FetchError(f"No fetch attempted for '{subscription_key}'")


class HttpConnectivityProbe:
    """Reports whether the feed host answers at all."""

    def __init__(self, url: str, timeout: int = 5, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def is_online(self) -> bool:
        try:
            self.session.head(self.url, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            logger.info(f"Connectivity probe to {self.url} failed: {e}")
            return False
        return True


class StaticConnectivityProbe:
    """Probe with a fixed answer, for environments without a probe target."""

    def __init__(self, online: bool = True):
        self.online = online

    def is_online(self) -> bool:
        return self.online
