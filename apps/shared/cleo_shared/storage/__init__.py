"""Object storage for capture bytes and derived media."""

from cleo_shared.storage.object_store import LocalObjectStore, ObjectStore

__all__ = ["LocalObjectStore", "ObjectStore"]
