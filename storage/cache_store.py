"""Snapshot cache keyed by subscription, persisted through a byte store."""
import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from storage.byte_store import ByteStore
from timetable.errors import ByteStoreError, CacheError
from timetable.models import Event, Snapshot

logger = logging.getLogger(__name__)


class CacheStore:
    """Reads and writes timestamped snapshots, one per subscription key."""

    KEY_PREFIX = 'timetable_cache:'
    FORMAT_VERSION = 1

    def __init__(self, byte_store: ByteStore, key_prefix: str = KEY_PREFIX):
        """
        Initialize the cache.

        Args:
            byte_store: Persistent store holding the encoded snapshots
            key_prefix: Prefix separating cache entries from other data
        """
        self.byte_store = byte_store
        self.key_prefix = key_prefix
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def read(self, subscription_key: str) -> Optional[Snapshot]:
        """
        Load the snapshot for a subscription.

        Missing, corrupt or unreadable entries all count as absent.

        Args:
            subscription_key: Subscription identifier

        Returns:
            Snapshot or None
        """
        storage_key = self._storage_key(subscription_key)
        try:
            raw = self.byte_store.get(storage_key)
        except ByteStoreError as e:
            logger.warning(f"Cache read failed for '{subscription_key}': {e}")
            return None

        if raw is None:
            logger.info(f"Cache miss: {storage_key}")
            return None

        snapshot = self._decode(raw)
        if snapshot is None:
            logger.warning(f"Ignoring corrupt cache entry: {storage_key}")
        return snapshot

    def write(self, subscription_key: str, snapshot: Snapshot) -> bool:
        """
        Persist a snapshot, replacing any previous one.

        A snapshot fetched earlier than the one already cached is rejected,
        so a slow, abandoned refresh cannot overwrite newer data.

        Args:
            subscription_key: Subscription identifier
            snapshot: Snapshot to store

        Returns:
            True if written, False if rejected as outdated

        Raises:
            CacheError: If the underlying store fails
        """
        storage_key = self._storage_key(subscription_key)
        payload = self._encode(subscription_key, snapshot)

        with self._lock_for(storage_key):
            try:
                existing_raw = self.byte_store.get(storage_key)
            except ByteStoreError as e:
                raise CacheError(f"Cannot read cache entry {storage_key}: {e}") from e

            existing = self._decode(existing_raw) if existing_raw is not None else None
            if existing is not None and existing.fetched_at > snapshot.fetched_at:
                logger.info(
                    f"Rejected outdated snapshot for '{subscription_key}': "
                    f"{snapshot.fetched_at.isoformat()} < {existing.fetched_at.isoformat()}"
                )
                return False

            try:
                self.byte_store.set(storage_key, payload)
            except ByteStoreError as e:
                raise CacheError(f"Cannot write cache entry {storage_key}: {e}") from e

        logger.info(
            f"Saved to cache: {storage_key} ({len(snapshot.events)} events)"
        )
        return True

    @staticmethod
    def is_fresh(snapshot: Snapshot, now: datetime, ttl: timedelta) -> bool:
        return now - snapshot.fetched_at < ttl

    def purge_older_than(self, now: datetime, max_age: timedelta) -> int:
        """
        Remove snapshots fetched before ``now - max_age``, for any key.

        Corrupt entries are removed as well.

        Args:
            now: Reference time
            max_age: Maximum snapshot age to keep

        Returns:
            Count of removed entries

        Raises:
            CacheError: If the underlying store fails
        """
        cutoff = now - max_age
        removed = 0

        for storage_key in self._list_storage_keys():
            with self._lock_for(storage_key):
                try:
                    raw = self.byte_store.get(storage_key)
                    if raw is None:
                        continue
                    snapshot = self._decode(raw)
                    if snapshot is None or snapshot.fetched_at < cutoff:
                        self.byte_store.remove(storage_key)
                        removed += 1
                except ByteStoreError as e:
                    raise CacheError(f"Cannot purge cache entry {storage_key}: {e}") from e

        if removed:
            logger.info(f"Purged {removed} cache entries older than {cutoff.isoformat()}")
        return removed

    def clear(self, subscription_key: str) -> None:
        storage_key = self._storage_key(subscription_key)
        with self._lock_for(storage_key):
            try:
                self.byte_store.remove(storage_key)
            except ByteStoreError as e:
                raise CacheError(f"Cannot clear cache entry {storage_key}: {e}") from e
        logger.info(f"Cleared cache entry: {storage_key}")

    def clear_all(self) -> int:
        """Remove every cached snapshot. Returns the count removed."""
        storage_keys = self._list_storage_keys()
        for storage_key in storage_keys:
            with self._lock_for(storage_key):
                try:
                    self.byte_store.remove(storage_key)
                except ByteStoreError as e:
                    raise CacheError(f"Cannot clear cache entry {storage_key}: {e}") from e
        logger.info(f"Cleared {len(storage_keys)} cache entries")
        return len(storage_keys)

    def keys(self) -> List[str]:
        """Subscription keys with a stored entry."""
        return [
            storage_key[len(self.key_prefix):]
            for storage_key in self._list_storage_keys()
        ]

    def size(self) -> int:
        return len(self._list_storage_keys())

    def snapshots(self) -> List[Snapshot]:
        """All readable snapshots; corrupt entries are skipped."""
        result = []
        for subscription_key in self.keys():
            snapshot = self.read(subscription_key)
            if snapshot is not None:
                result.append(snapshot)
        return result

    def _storage_key(self, subscription_key: str) -> str:
        return f"{self.key_prefix}{subscription_key}"

    def _list_storage_keys(self) -> List[str]:
        try:
            return self.byte_store.list_keys_with_prefix(self.key_prefix)
        except ByteStoreError as e:
            raise CacheError(f"Cannot list cache entries: {e}") from e

    def _lock_for(self, storage_key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(storage_key)
            if lock is None:
                lock = self._locks[storage_key] = threading.Lock()
            return lock

    def _encode(self, subscription_key: str, snapshot: Snapshot) -> bytes:
        payload = {
            'version': self.FORMAT_VERSION,
            'subscription_key': subscription_key,
            'fetched_at': snapshot.fetched_at.isoformat(),
            'raw_digest': snapshot.raw_digest,
            'events': [event.to_dict() for event in snapshot.events],
        }
        return json.dumps(payload).encode('utf-8')

    def _decode(self, raw: bytes) -> Optional[Snapshot]:
        """
        Convert a stored entry back into a Snapshot.

        Returns:
            Snapshot or None if the entry cannot be decoded
        """
        try:
            data = json.loads(raw.decode('utf-8'))
            if data.get('version') != self.FORMAT_VERSION:
                return None
            fetched_at = datetime.fromisoformat(data['fetched_at'])
            if fetched_at.tzinfo is None:
                fetched_at = fetched_at.replace(tzinfo=timezone.utc)
            return Snapshot(
                subscription_key=data['subscription_key'],
                events=[Event.from_dict(item) for item in data['events']],
                fetched_at=fetched_at,
                raw_digest=data.get('raw_digest'),
            )
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.debug(f"Failed to decode cache entry: {e}")
            return None
