"""
Durable storage for consolidated snapshots and response cache entries.
"""

from .blob_store import BlobStore, InMemoryBlobStore, RedisBlobStore, create_blob_store
from .snapshot_store import SCHEMA_VERSION, SnapshotStore

__all__ = [
    "BlobStore",
    "InMemoryBlobStore",
    "RedisBlobStore",
    "create_blob_store",
    "SCHEMA_VERSION",
    "SnapshotStore",
]
