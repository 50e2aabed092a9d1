"""X API v2 client: media upload, tweet creation and OAuth token refresh.

Images go through the one-shot multipart upload. Videos use the chunked
initialize / append / finalize endpoints; finalize may report that X is
still transcoding, in which case the caller polls ``poll_status`` until the
media is ready.
"""

from __future__ import annotations

import logging
from typing import Any

import aiohttp

from cleo_shared.config.settings import Settings
from cleo_shared.platforms.base import (
    BasePlatformClient,
    CreatedPost,
    MediaHandle,
    MediaState,
    MediaStatus,
    TokenGrant,
    UploadProgress,
)
from cleo_shared.platforms.x.errors import AuthError, RateLimitError, XApiError

logger = logging.getLogger(__name__)

# X rejects video/quicktime on the v2 upload endpoints
_CONTENT_TYPE_ALIASES = {"video/quicktime": "video/mp4"}

_PROCESSING_STATES = {
    "succeeded": MediaState.READY,
    "failed": MediaState.FAILED,
    "pending": MediaState.PENDING,
    "in_progress": MediaState.PENDING,
}


def media_category(content_type: str) -> str:
    if content_type.startswith("video/"):
        return "tweet_video"
    if content_type == "image/gif":
        return "tweet_gif"
    return "tweet_image"


def _processing_state(data: dict[str, Any]) -> tuple[MediaState, float | None]:
    """Map ``processing_info`` to a MediaState; absent info means ready."""
    info = data.get("processing_info")
    if not info:
        return MediaState.READY, None
    state = _PROCESSING_STATES.get(info.get("state", ""), MediaState.PENDING)
    return state, info.get("check_after_secs")


class XClient(BasePlatformClient):
    """aiohttp-based X API client.

    Usage:
        async with XClient(settings) as client:
            handle = await client.upload_media(token, data, "image/png")
            post = await client.create_post(token, "hello", [handle.media_id])
    """

    def __init__(self, settings: Settings, session: aiohttp.ClientSession | None = None) -> None:
        self._settings = settings
        self._base = settings.x_api_base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    @property
    def platform(self) -> str:
        return "x"

    async def __aenter__(self) -> "XClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._settings.platform_request_timeout_seconds)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()

    # ──────────────────────────────────────────────
    # HTTP plumbing
    # ──────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        step: str,
        access_token: str | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        headers = kwargs.pop("headers", {})
        if access_token is not None:
            headers["Authorization"] = f"Bearer {access_token}"

        async with self._get_session().request(
            method, f"{self._base}{path}", headers=headers, **kwargs
        ) as resp:
            body = await resp.text()
            if resp.status in (401, 403):
                raise AuthError(f"{step} unauthorized", status=resp.status, body=body)
            if resp.status == 429:
                retry_after = resp.headers.get("Retry-After")
                raise RateLimitError(
                    int(retry_after) if retry_after and retry_after.isdigit() else None,
                    body=body,
                )
            if resp.status >= 400:
                raise XApiError(f"{step} failed", status=resp.status, body=body)
            if not body:
                return {}
            try:
                return await resp.json(content_type=None)
            except ValueError as e:
                raise XApiError(f"Failed to parse {step} response: {e} - body: {body[:500]}") from e

    # ──────────────────────────────────────────────
    # Media
    # ──────────────────────────────────────────────

    async def upload_media(
        self,
        access_token: str,
        data: bytes,
        content_type: str,
        on_progress: UploadProgress | None = None,
    ) -> MediaHandle:
        content_type = _CONTENT_TYPE_ALIASES.get(content_type, content_type)
        if content_type.startswith("video/"):
            return await self._upload_chunked(access_token, data, content_type, on_progress)

        form = aiohttp.FormData()
        form.add_field("media_category", media_category(content_type))
        form.add_field("media_type", content_type)
        form.add_field("media", data, content_type=content_type, filename="media")
        payload = await self._request(
            "POST", "/2/media/upload", step="UPLOAD", access_token=access_token, data=form
        )
        media_id = _media_id(payload, "UPLOAD")
        if on_progress is not None:
            await on_progress(1, 1)
        logger.info("Uploaded %s (%d bytes) as media %s", content_type, len(data), media_id)
        return MediaHandle(media_id=media_id)

    async def _upload_chunked(
        self,
        access_token: str,
        data: bytes,
        content_type: str,
        on_progress: UploadProgress | None,
    ) -> MediaHandle:
        init = await self._request(
            "POST",
            "/2/media/upload/initialize",
            step="INIT",
            access_token=access_token,
            json={
                "media_type": content_type,
                "total_bytes": len(data),
                "media_category": media_category(content_type),
            },
        )
        media_id = _media_id(init, "INIT")

        chunk_size = self._settings.upload_chunk_size
        chunks = [data[i : i + chunk_size] for i in range(0, len(data), chunk_size)] or [b""]
        total = len(chunks)
        logger.info("Chunked upload %s: %d bytes in %d segments", media_id, len(data), total)

        for index, chunk in enumerate(chunks):
            form = aiohttp.FormData()
            form.add_field("segment_index", str(index))
            form.add_field("media", chunk, content_type=content_type, filename="media")
            await self._request(
                "POST",
                f"/2/media/upload/{media_id}/append",
                step=f"APPEND segment {index}",
                access_token=access_token,
                data=form,
            )
            if on_progress is not None:
                await on_progress(index + 1, total)

        final = await self._request(
            "POST",
            f"/2/media/upload/{media_id}/finalize",
            step="FINALIZE",
            access_token=access_token,
        )
        state, check_after = _processing_state(final.get("data", {}))
        if state is MediaState.FAILED:
            raise XApiError(f"Media {media_id} processing failed")
        return MediaHandle(media_id=media_id, state=state, check_after_secs=check_after)

    async def poll_status(self, access_token: str, media_id: str) -> MediaStatus:
        payload = await self._request(
            "GET",
            "/2/media/upload",
            step="STATUS",
            access_token=access_token,
            params={"command": "STATUS", "media_id": media_id},
        )
        state, check_after = _processing_state(payload.get("data", {}))
        return MediaStatus(state=state, check_after_secs=check_after)

    # ──────────────────────────────────────────────
    # Posts
    # ──────────────────────────────────────────────

    async def create_post(
        self,
        access_token: str,
        text: str,
        media_ids: list[str],
        reply_to: str | None = None,
    ) -> CreatedPost:
        body: dict[str, Any] = {"text": text}
        if reply_to:
            body["reply"] = {"in_reply_to_tweet_id": reply_to}
        if media_ids:
            body["media"] = {"media_ids": media_ids}

        payload = await self._request(
            "POST", "/2/tweets", step="POST", access_token=access_token, json=body
        )
        data = payload.get("data") or {}
        if not data.get("id"):
            raise XApiError(f"POST response missing tweet id: {payload}")
        return CreatedPost(id=str(data["id"]), text=data.get("text", text))

    # ──────────────────────────────────────────────
    # OAuth
    # ──────────────────────────────────────────────

    async def refresh_credential(self, refresh_token: str) -> TokenGrant:
        payload = await self._request(
            "POST",
            "/2/oauth2/token",
            step="REFRESH",
            auth=aiohttp.BasicAuth(self._settings.x_client_id, self._settings.x_client_secret),
            data={"refresh_token": refresh_token, "grant_type": "refresh_token"},
        )
        if "access_token" not in payload:
            raise XApiError(f"REFRESH response missing access_token: {list(payload)}")
        return TokenGrant(
            access_token=payload["access_token"],
            expires_in=int(payload.get("expires_in", 7200)),
            refresh_token=payload.get("refresh_token"),
        )


def _media_id(payload: dict[str, Any], step: str) -> str:
    media_id = (payload.get("data") or {}).get("id")
    if not media_id:
        raise XApiError(f"{step} response missing media id: {payload}")
    return str(media_id)
