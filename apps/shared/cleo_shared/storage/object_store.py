"""Object storage collaborator.

References are relative, slash-separated keys such as
``image/user_1/2025-01-01/123456.png``. Writes to the same key overwrite,
which is what makes redone media processing idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path, PurePosixPath
from typing import Protocol, runtime_checkable

from cleo_shared.errors import StorageError

logger = logging.getLogger(__name__)


@runtime_checkable
class ObjectStore(Protocol):
    async def get(self, ref: str) -> bytes: ...

    async def put(self, ref: str, data: bytes) -> str: ...

    async def delete(self, ref: str) -> None: ...


class LocalObjectStore:
    """Filesystem-backed store rooted at ``media_base_path``."""

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path)

    def path_for(self, ref: str) -> Path:
        rel = PurePosixPath(ref)
        if rel.is_absolute() or ".." in rel.parts:
            raise StorageError(f"Invalid storage reference: {ref!r}")
        return self.base_path.joinpath(*rel.parts)

    async def get(self, ref: str) -> bytes:
        path = self.path_for(ref)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StorageError(f"Object not found: {ref}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {ref}: {e}") from e

    async def put(self, ref: str, data: bytes) -> str:
        path = self.path_for(ref)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".part")
            tmp.write_bytes(data)
            tmp.replace(path)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"Failed to write {ref}: {e}") from e
        logger.debug("Stored %s (%d bytes)", ref, len(data))
        return ref

    async def delete(self, ref: str) -> None:
        path = self.path_for(ref)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise StorageError(f"Failed to delete {ref}: {e}") from e
