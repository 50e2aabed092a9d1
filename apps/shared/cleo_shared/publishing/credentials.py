"""Credential guard: hands out a usable X access token per user.

Expired tokens are refreshed through the platform client and written back
in a single UPDATE, so concurrent readers see either the old or the new
(access, refresh, expiry) triple and never a mix. Two callers refreshing at
the same time both write a complete triple; the last one wins.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

import aiohttp
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cleo_shared.db.models import CredentialRow, as_utc, utc_now
from cleo_shared.errors import CredentialExpiredUnrefreshable, PlatformRejected
from cleo_shared.platforms.base import BasePlatformClient

logger = logging.getLogger(__name__)


class CredentialGuard:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        platform: BasePlatformClient,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._platform = platform
        self._clock = clock

    async def ensure_valid(self, owner_id: int) -> str:
        """Return a non-expired access token for ``owner_id``.

        Raises:
            CredentialExpiredUnrefreshable: no credential, no refresh token,
                or the refresh call failed. Stored state is left untouched.
        """
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(
                        CredentialRow.access_token,
                        CredentialRow.refresh_token,
                        CredentialRow.token_expires_at,
                    ).where(CredentialRow.user_id == owner_id)
                )
            ).one_or_none()

        if row is None:
            raise CredentialExpiredUnrefreshable(f"User {owner_id} has no connected X account")

        access_token, refresh_token, expires_at = row
        now = self._clock()
        if as_utc(expires_at) > now:
            return access_token

        if not refresh_token:
            raise CredentialExpiredUnrefreshable(
                "Access token expired and no refresh token is stored; reconnect the account"
            )

        logger.info("Refreshing expired X token for user %s", owner_id)
        try:
            grant = await self._platform.refresh_credential(refresh_token)
        except (PlatformRejected, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Token refresh failed for user %s: %s", owner_id, e)
            raise CredentialExpiredUnrefreshable(f"Token refresh failed: {e}") from e

        new_expiry = now + timedelta(seconds=grant.expires_in)
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(CredentialRow)
                .where(CredentialRow.user_id == owner_id)
                .values(
                    access_token=grant.access_token,
                    refresh_token=func.coalesce(grant.refresh_token, CredentialRow.refresh_token),
                    token_expires_at=new_expiry,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        logger.info(
            "Stored refreshed token for user %s (expires %s, rotated=%s)",
            owner_id,
            new_expiry.isoformat(),
            grant.refresh_token is not None,
        )
        return grant.access_token
