"""Deterministic storage keys for derived media.

The leading component of a capture path is its media kind (``image/`` or
``video/``); derived outputs swap it for their own prefix, so redoing the
work for a capture always overwrites the same objects.
"""

from pathlib import PurePosixPath


def _derived_stem(storage_path: str) -> PurePosixPath:
    parts = PurePosixPath(storage_path).parts
    rest = PurePosixPath(*parts[1:]) if len(parts) > 1 else PurePosixPath(*parts)
    return rest.parent / rest.stem


def thumbnail_path(storage_path: str) -> str:
    """``image/user_1/2025-01-01/123.png`` → ``thumbnails/user_1/2025-01-01/123.jpg``"""
    return f"thumbnails/{_derived_stem(storage_path)}.jpg"


def frames_dir(storage_path: str) -> str:
    """``video/user_1/2025-01-01/123.mp4`` → ``frames/user_1/2025-01-01/123``"""
    return f"frames/{_derived_stem(storage_path)}"
