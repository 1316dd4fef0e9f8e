"""
Schema-versioned persistence of snapshots and cache entries.

Every blob is a JSON envelope::

    {"schema_version": 1, "kind": "snapshot", "saved_at": ..., "payload": {...}}

Blobs written by another schema version, or whose payload no longer
validates, are logged, deleted and treated as absent.
"""
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from ..exceptions import SnapshotSchemaError
from ..models import ConsolidatedSnapshot
from ..response_cache import CacheEntry
from .blob_store import BlobStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class SnapshotStore:
    def __init__(
        self,
        store: BlobStore,
        prefix: str = "pulse",
        history_limit: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.prefix = prefix
        self.history_limit = history_limit
        self._clock = clock

    # Key layout
    def _snapshot_key(self, version: int) -> str:
        return f"{self.prefix}:snapshot:v{version:012d}"

    @property
    def _snapshot_prefix(self) -> str:
        return f"{self.prefix}:snapshot:v"

    @property
    def _latest_key(self) -> str:
        return f"{self.prefix}:snapshot:latest"

    def _cache_key(self, key: str) -> str:
        return f"{self.prefix}:cache:{key}"

    @property
    def _cache_prefix(self) -> str:
        return f"{self.prefix}:cache:"

    def _wrap(self, kind: str, payload: Any) -> str:
        return json.dumps(
            {"schema_version": SCHEMA_VERSION, "kind": kind, "saved_at": self._clock(), "payload": payload},
            separators=(',', ':'),
            default=str,
        )

    def _unwrap(self, key: str, raw: str, kind: str) -> Any:
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SnapshotSchemaError(key, found_version="unparseable", expected_version=SCHEMA_VERSION) from e
        if not isinstance(envelope, dict) or envelope.get("schema_version") != SCHEMA_VERSION:
            found = envelope.get("schema_version") if isinstance(envelope, dict) else None
            raise SnapshotSchemaError(key, found_version=found, expected_version=SCHEMA_VERSION)
        if envelope.get("kind") != kind or "payload" not in envelope:
            raise SnapshotSchemaError(key, found_version=envelope.get("kind"), expected_version=kind)
        return envelope["payload"]

    async def _discard(self, key: str, error: Exception) -> None:
        logger.warning(f"Discarding incompatible persisted blob {key}: {error}",
                       extra={"event": "persisted_blob_discarded"})
        await self.store.delete(key)

    async def _discard_history(self, reason: Exception) -> None:
        """Drop the pointer and every stored version; the next run restarts numbering at 1."""
        keys = await self.store.keys(self._snapshot_prefix)
        logger.warning(f"Discarding snapshot history ({len(keys)} versions): {reason}",
                       extra={"event": "persisted_blob_discarded"})
        await self.store.delete(self._latest_key, *keys)

    async def save_snapshot(self, snapshot: ConsolidatedSnapshot) -> None:
        key = self._snapshot_key(snapshot.version)
        await self.store.set(key, self._wrap("snapshot", snapshot.model_dump(mode="json")))
        await self.store.set(self._latest_key, self._wrap("pointer", {"key": key, "version": snapshot.version}))
        await self._trim_history(key)
        logger.debug(f"Snapshot v{snapshot.version} persisted")

    async def _trim_history(self, current_key: str) -> None:
        # The version just written always survives, even if older runs left higher numbers behind
        others = sorted(k for k in await self.store.keys(self._snapshot_prefix) if k != current_key)
        excess = others[:max(len(others) - (self.history_limit - 1), 0)]
        if excess:
            await self.store.delete(*excess)

    async def load_latest_snapshot(self) -> Optional[ConsolidatedSnapshot]:
        raw_pointer = await self.store.get(self._latest_key)
        if raw_pointer is None:
            return None
        try:
            pointer = self._unwrap(self._latest_key, raw_pointer, "pointer")
            key = pointer["key"]
        except (SnapshotSchemaError, KeyError, TypeError) as e:
            await self._discard_history(e)
            return None

        raw = await self.store.get(key)
        if raw is None:
            logger.warning(f"Snapshot pointer references missing key {key}")
            return None
        try:
            return ConsolidatedSnapshot.model_validate(self._unwrap(key, raw, "snapshot"))
        except (SnapshotSchemaError, ValidationError) as e:
            await self._discard_history(e)
            return None

    async def save_cache_entry(self, key: str, entry: CacheEntry) -> None:
        await self.store.set(self._cache_key(key), self._wrap("cache_entry", entry.to_dict()))

    async def load_cache_entries(self) -> Dict[str, CacheEntry]:
        entries: Dict[str, CacheEntry] = {}
        for store_key in await self.store.keys(self._cache_prefix):
            raw = await self.store.get(store_key)
            if raw is None:
                continue
            try:
                entry = CacheEntry.from_dict(self._unwrap(store_key, raw, "cache_entry"))
            except (SnapshotSchemaError, KeyError, TypeError, ValueError) as e:
                await self._discard(store_key, e)
                continue
            entries[store_key[len(self._cache_prefix):]] = entry
        return entries

    async def delete_cache_entries(self, prefix: str = "") -> int:
        keys = await self.store.keys(self._cache_prefix + prefix)
        if not keys:
            return 0
        return await self.store.delete(*keys)
