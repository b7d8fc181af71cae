import asyncio
import json
import logging
import time

from mailmirror.constants import ITEMS_KEY_PREFIX
from mailmirror.domain.merge import merge_incremental
from mailmirror.domain.models import MailItem
from mailmirror.errors import DecodeError

logger = logging.getLogger(__name__)


def encode_items(items):
    return json.dumps([item.to_dict() for item in items], separators=(",", ":")).encode("utf-8")


def decode_items(raw):
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise DecodeError(f"Cached items are not valid JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise DecodeError("Cached items payload must be a JSON list.")
    return tuple(MailItem.from_dict(entry) for entry in payload)


class CacheManager:
    """Two-tier mail item cache: per-account memory tier seeded from a durable store.

    The memory tier is authoritative for the running session. The durable tier
    only seeds it across restarts and is written after fetches and synced
    mutations.
    """

    def __init__(self, store):
        self.store = store
        self._memory = {}
        self._loaded_at = {}

    @staticmethod
    def storage_key(account):
        return f"{ITEMS_KEY_PREFIX}{account.key}"

    def get(self, account):
        return self._memory.get(account.key)

    def loaded_at(self, account):
        return self._loaded_at.get(account.key)

    def _remember(self, account, items):
        self._memory[account.key] = tuple(items)
        self._loaded_at[account.key] = time.time()

    async def load_into_memory(self, account):
        """Seed the memory tier from durable storage. Returns the items or None on a miss."""
        key = self.storage_key(account)
        try:
            raw = await asyncio.to_thread(self.store.get, key)
        except Exception as exc:
            logger.warning("Durable cache read failed for %s: %s", account.email, exc)
            return None
        if raw is None:
            logger.debug("No durable cache for %s", account.email)
            return None
        try:
            items = decode_items(raw)
        except DecodeError as exc:
            logger.warning("Dropping unreadable cache for %s: %s", account.email, exc)
            await self._remove_quietly(key)
            return None
        self._remember(account, items)
        logger.info("Loaded %d cached items for %s", len(items), account.email)
        return items

    async def update(self, account, items):
        """Fold a fetched batch into the memory tier and persist the result."""
        existing = self._memory.get(account.key) or ()
        merged = merge_incremental(existing, items, keep_local=True)
        self._remember(account, merged)
        await self.persist(account)
        return self._memory[account.key]

    async def replace(self, account, items):
        self._remember(account, items)
        await self.persist(account)

    async def persist(self, account):
        items = self._memory.get(account.key)
        if items is None:
            return False
        try:
            await asyncio.to_thread(self.store.set, self.storage_key(account), encode_items(items))
        except Exception as exc:
            logger.warning("Durable cache write failed for %s: %s", account.email, exc)
            return False
        return True

    async def clear(self, account):
        self._memory.pop(account.key, None)
        self._loaded_at.pop(account.key, None)
        await self._remove_quietly(self.storage_key(account))

    def clear_all(self):
        """Drop every account from the memory tier; durable entries reseed it on next load."""
        dropped = len(self._memory)
        self._memory.clear()
        self._loaded_at.clear()
        logger.info("Cleared %d in-memory mail caches", dropped)

    async def _remove_quietly(self, key):
        try:
            await asyncio.to_thread(self.store.remove, key)
        except Exception as exc:
            logger.warning("Unable to remove cache entry %s: %s", key, exc)


__all__ = ["CacheManager", "decode_items", "encode_items"]
