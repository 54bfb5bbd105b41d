"""Cache-or-fetch orchestration for subscription timetables."""
import hashlib
import logging
import threading
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

from calendar_feed.ics_parser import FeedParser, decode_feed
from storage.cache_store import CacheStore
from timetable.change_detector import ChangeDetector
from timetable.errors import CacheError, FetchError, FetchFailedNoCache, NoDataOffline
from timetable.models import ScheduleResult, ScheduleStatus, Snapshot

logger = logging.getLogger(__name__)


class FeedFetcher(Protocol):
    def fetch(self, subscription_key: str) -> bytes: ...


class ConnectivityProbe(Protocol):
    def is_online(self) -> bool: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncCoordinator:
    """
    Serves a subscription's events from cache or network.

    Concurrent calls for the same subscription join the refresh already in
    flight and share its outcome; calls for different subscriptions run
    independently.
    """

    DEFAULT_TTL = timedelta(hours=1)
    DEFAULT_MAX_AGE = timedelta(days=7)

    def __init__(
        self,
        cache: CacheStore,
        fetcher: FeedFetcher,
        connectivity: ConnectivityProbe,
        parser: Optional[FeedParser] = None,
        detector: Optional[ChangeDetector] = None,
        ttl: timedelta = DEFAULT_TTL,
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the coordinator.

        Args:
            cache: Snapshot cache
            fetcher: Collaborator returning raw feed bytes
            connectivity: Collaborator reporting online state
            parser: Feed parser (default: FeedParser())
            detector: Change detector (default: ChangeDetector())
            ttl: Default freshness window for cached snapshots
            max_age: Default age beyond which housekeeping drops snapshots
            clock: Callable returning the current aware time
        """
        self.cache = cache
        self.fetcher = fetcher
        self.connectivity = connectivity
        self.parser = parser or FeedParser()
        self.detector = detector or ChangeDetector()
        self.ttl = ttl
        self.max_age = max_age
        self.clock = clock
        self._in_flight: Dict[str, Future] = {}
        self._in_flight_guard = threading.Lock()

    def get_schedule(
        self,
        subscription_key: str,
        ttl: Optional[timedelta] = None
    ) -> ScheduleResult:
        """
        Return current events and the change report for a subscription.

        Args:
            subscription_key: Subscription identifier
            ttl: Freshness window overriding the default

        Returns:
            ScheduleResult with status FRESH or DEGRADED

        Raises:
            NoDataOffline: Offline and nothing cached
            FetchFailedNoCache: Fetch failed and nothing cached
        """
        with self._in_flight_guard:
            flight = self._in_flight.get(subscription_key)
            is_leader = flight is None
            if is_leader:
                flight = Future()
                self._in_flight[subscription_key] = flight

        if not is_leader:
            logger.info(f"Joining in-flight refresh for '{subscription_key}'")
            return flight.result().copy()

        try:
            result = self._sync(subscription_key, ttl if ttl is not None else self.ttl)
        except Exception as e:
            flight.set_exception(e)
            raise
        else:
            flight.set_result(result)
            return result.copy()
        finally:
            # Waiters must never block on a future the leader abandoned
            if not flight.done():
                flight.set_exception(
                    RuntimeError(f"Refresh for '{subscription_key}' was interrupted")
                )
            with self._in_flight_guard:
                self._in_flight.pop(subscription_key, None)

    def invalidate(self, subscription_key: str) -> bool:
        """Drop the cached snapshot so the next call refetches."""
        try:
            self.cache.clear(subscription_key)
        except CacheError as e:
            logger.error(f"Failed to invalidate '{subscription_key}': {e}")
            return False
        return True

    def invalidate_all(self) -> int:
        try:
            return self.cache.clear_all()
        except CacheError as e:
            logger.error(f"Failed to invalidate cache: {e}")
            return 0

    def housekeeping(self, max_age: Optional[timedelta] = None) -> int:
        """Purge old snapshots across all subscriptions. Returns count removed."""
        try:
            return self.cache.purge_older_than(
                self.clock(),
                max_age if max_age is not None else self.max_age
            )
        except CacheError as e:
            logger.error(f"Cache housekeeping failed: {e}")
            return 0

    def _sync(self, subscription_key: str, ttl: timedelta) -> ScheduleResult:
        """
        Walk the cache / connectivity / fetch decision tree once.

        When the fetched bytes match the cached snapshot's digest, the
        cached events are reused without parsing, so parse warnings from
        the earlier fetch are not reported again.

        Args:
            subscription_key: Subscription identifier
            ttl: Freshness window

        Returns:
            ScheduleResult
        """
        previous = self.cache.read(subscription_key)

        if previous is not None and CacheStore.is_fresh(previous, self.clock(), ttl):
            logger.info(f"Cache HIT (fresh) for '{subscription_key}'")
            return ScheduleResult(
                events=list(previous.events),
                changes=[],
                status=ScheduleStatus.FRESH,
                from_cache=True,
                fetched_at=previous.fetched_at,
            )

        if not self.connectivity.is_online():
            if previous is not None:
                return self._degraded(previous, 'offline')
            logger.error(f"Offline with no cached schedule for '{subscription_key}'")
            raise NoDataOffline(subscription_key)

        try:
            raw = self.fetcher.fetch(subscription_key)
        except FetchError as e:
            if previous is not None:
                return self._degraded(previous, f"fetch failed: {e}")
            logger.error(
                f"Fetch failed with no cached schedule for '{subscription_key}': {e}"
            )
            raise FetchFailedNoCache(subscription_key, e) from e

        fetched_at = self.clock()
        digest = hashlib.sha256(raw).hexdigest()
        warnings = []

        if previous is not None and previous.raw_digest == digest:
            logger.info(f"Feed for '{subscription_key}' unchanged, skipping parse")
            events = list(previous.events)
        else:
            events, warnings = self.parser.parse(decode_feed(raw))

        snapshot = Snapshot(
            subscription_key=subscription_key,
            events=events,
            fetched_at=fetched_at,
            raw_digest=digest,
        )
        try:
            if not self.cache.write(subscription_key, snapshot):
                warnings.append(
                    f"Schedule was not cached: a newer snapshot for "
                    f"'{subscription_key}' is already stored"
                )
        except CacheError as e:
            logger.warning(f"Serving uncached schedule for '{subscription_key}': {e}")
            warnings.append(f"Schedule could not be cached: {e}")

        changes = self.detector.diff(
            previous.events if previous is not None else [],
            events
        )

        logger.info(
            f"Refreshed '{subscription_key}': {len(events)} events, "
            f"{len(changes)} changes"
        )
        return ScheduleResult(
            events=list(events),
            changes=changes,
            status=ScheduleStatus.FRESH,
            from_cache=False,
            fetched_at=fetched_at,
            warnings=list(warnings),
        )

    def _degraded(self, previous: Snapshot, reason: str) -> ScheduleResult:
        message = (
            f"Showing cached schedule for '{previous.subscription_key}' from "
            f"{previous.fetched_at.isoformat()} ({reason})"
        )
        logger.warning(message)
        return ScheduleResult(
            events=list(previous.events),
            changes=[],
            status=ScheduleStatus.DEGRADED,
            from_cache=True,
            fetched_at=previous.fetched_at,
            warnings=[message],
        )
