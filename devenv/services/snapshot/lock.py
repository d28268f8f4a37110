"""
Snapshot lock registry.

The lock document lives at a single key in the shared snapshot bucket and is
rewritten wholesale on every publish. There is no compare-and-swap: two
publishers racing on the same document can lose one update.
"""

import logging
from datetime import datetime, timezone

from ...errors import ObjectNotFoundError, ObjectStoreAuthError, ObjectStoreError
from .models import SnapshotLock, SnapshotLockListItem

logger = logging.getLogger(__name__)


class SnapshotLockRegistry:
    """Read-modify-write access to the lock document."""

    def __init__(self, store, lock_key: str = "automated-snapshots/v2/latest.yaml"):
        self.store = store
        self.lock_key = lock_key

    async def read(self) -> SnapshotLock:
        """
        Read the lock document.

        Raises:
            ObjectNotFoundError: If the document does not exist
            MalformedDocumentError: If the document cannot be parsed
        """
        raw = await self.store.get_object(self.lock_key)
        return SnapshotLock.from_yaml(raw.decode("utf-8"))

    async def fetch(self, target: str, channel: str) -> SnapshotLockListItem:
        """
        Return the newest snapshot of target on channel.

        Raises:
            SnapshotNotFoundError: Unknown target/channel or empty channel
        """
        lock = await self.read()
        item = lock.latest(target, channel)
        logger.info(f"[SNAPSHOT] Using snapshot: {item.to_json()}")
        return item

    async def publish(self, target: str, channel: str, item: SnapshotLockListItem) -> SnapshotLock:
        """
        Make item the newest snapshot of target on channel.

        A missing or unreadable document starts an empty registry. Credential
        failures and malformed documents are raised.
        """
        try:
            lock = await self.read()
        except ObjectStoreAuthError:
            raise
        except ObjectNotFoundError:
            logger.info(f"[SNAPSHOT] No lock document at {self.lock_key}, starting a new one")
            lock = SnapshotLock()
        except ObjectStoreError as e:
            logger.warning(f"[SNAPSHOT] Failed to fetch existing lock document, will generate a new one: {e}")
            lock = SnapshotLock()

        lock.prepend(target, channel, item)
        lock.generated_at = datetime.now(timezone.utc)

        await self.store.put_object(self.lock_key, lock.to_yaml().encode("utf-8"))
        logger.info(f"[SNAPSHOT] ✅ Published {item.uri} as latest '{target}' snapshot on '{channel}'")
        return lock
