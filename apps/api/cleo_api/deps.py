"""Shared dependencies for API endpoints."""

import logging

from fastapi import Header, HTTPException

from cleo_shared.config.settings import get_settings
from cleo_shared.platforms.x import XClient
from cleo_shared.publishing.service import PublishService
from cleo_shared.storage import LocalObjectStore

logger = logging.getLogger(__name__)

_platform: XClient | None = None
_service: PublishService | None = None


async def init_deps() -> None:
    """Initialize shared dependencies (called on app startup)."""
    global _platform, _service
    settings = get_settings()

    # Create tables if they don't exist (migrations own the schema in production)
    from cleo_shared.db.engine import create_tables, get_session_factory

    await create_tables()

    _platform = XClient(settings)
    _service = PublishService(
        get_session_factory(),
        LocalObjectStore(settings.media_base_path),
        _platform,
        settings,
    )
    logger.info("Publish service ready (media at %s)", settings.media_base_path)


async def close_deps() -> None:
    """Close shared dependencies (called on app shutdown)."""
    global _platform, _service
    if _platform:
        await _platform.close()
    _platform = None
    _service = None

    from cleo_shared.db.engine import close_engine

    await close_engine()


def get_publish_service() -> PublishService:
    """Get the shared PublishService."""
    assert _service is not None, "PublishService not initialized; call init_deps() first"
    return _service


def current_owner(x_user_id: str | None = Header(default=None)) -> int:
    """Owner of the request, set by the session layer in front of this API."""
    if not x_user_id or not x_user_id.isdigit():
        raise HTTPException(status_code=401, detail="Missing or invalid X-User-Id header")
    return int(x_user_id)
