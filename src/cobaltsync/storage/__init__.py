"""
Local library storage.

SQLite holds every library domain as ordered JSON records; payload files
and thumbnails live in plain directories beside the database.

Usage:
    from cobaltsync.storage import LibraryStore

    store = LibraryStore()
    store.upsert("targets", [{"id": "t1", "name": "M31"}])
"""

from cobaltsync.storage.library_store import LibraryStore, StorageError

__all__ = [
    "LibraryStore",
    "StorageError",
]
