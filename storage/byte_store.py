"""Persistent key/value byte stores backing the snapshot cache."""
import logging
import threading
import zlib
from typing import Dict, List, Optional, Protocol

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from timetable.errors import ByteStoreError

logger = logging.getLogger(__name__)


class ByteStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...
    def set(self, key: str, value: bytes) -> None: ...
    def remove(self, key: str) -> None: ...
    def list_keys_with_prefix(self, prefix: str) -> List[str]: ...


class MemoryByteStore:
    """Holds entries in a process-local dict."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list_keys_with_prefix(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(key for key in self._data if key.startswith(prefix))


class DynamoDBByteStore:
    """Stores entries as binary items in a DynamoDB table."""

    KEY_ATTRIBUTE = 'cache_key'
    VALUE_ATTRIBUTE = 'payload'

    def __init__(self, table_name: str):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table (hash key ``cache_key``)
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBByteStore for table: {table_name}")

    def get(self, key: str) -> Optional[bytes]:
        try:
            response = self.table.get_item(Key={self.KEY_ATTRIBUTE: key})
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading '{key}' from DynamoDB: {e}")
            raise ByteStoreError(str(e)) from e

        item = response.get('Item')
        if item is None:
            return None
        payload = item.get(self.VALUE_ATTRIBUTE)
        if payload is None:
            return None
        # boto3 wraps binary attributes in boto3.dynamodb.types.Binary
        compressed = bytes(getattr(payload, 'value', payload))
        try:
            return zlib.decompress(compressed)
        except zlib.error as e:
            logger.warning(f"Ignoring undecompressable payload for '{key}': {e}")
            return None

    def set(self, key: str, value: bytes) -> None:
        """
        Store a value, zlib-compressed to stay well under DynamoDB's 400 KB item limit.

        Args:
            key: Entry key
            value: Raw bytes to store
        """
        try:
            self.table.put_item(
                Item={
                    self.KEY_ATTRIBUTE: key,
                    self.VALUE_ATTRIBUTE: zlib.compress(bytes(value)),
                }
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error writing '{key}' to DynamoDB: {e}")
            raise ByteStoreError(str(e)) from e

    def remove(self, key: str) -> None:
        try:
            self.table.delete_item(Key={self.KEY_ATTRIBUTE: key})
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error deleting '{key}' from DynamoDB: {e}")
            raise ByteStoreError(str(e)) from e

    def list_keys_with_prefix(self, prefix: str) -> List[str]:
        """
        List keys starting with a prefix using a paginated Scan.

        Args:
            prefix: Key prefix

        Returns:
            Sorted list of matching keys
        """
        scan_kwargs = {
            'FilterExpression': Attr(self.KEY_ATTRIBUTE).begins_with(prefix),
            'ProjectionExpression': self.KEY_ATTRIBUTE,
        }
        try:
            response = self.table.scan(**scan_kwargs)
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                    **scan_kwargs
                )
                items.extend(response.get('Items', []))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise ByteStoreError(str(e)) from e

        return sorted(item[self.KEY_ATTRIBUTE] for item in items)
