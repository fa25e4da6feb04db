from __future__ import annotations

import asyncio
from typing import Optional, Protocol

import httpx

from authgate.logging import get_logger
from authgate.service.errors import NetworkFailureError, ProfileNotFoundError
from authgate.storage.models import ProfileRecord, RoleGrant

logger = get_logger(__name__)

# Failures of the backing store round trip that are reported as network failures
_TRANSPORT_ERRORS = (httpx.HTTPError, OSError, asyncio.TimeoutError)
# A 200 whose body is not the expected JSON (captive portal, proxy error page)
_MALFORMED_RESPONSE_ERRORS = (ValueError, TypeError, KeyError)


class ProfileStore(Protocol):
    async def get_profile(self, user_id: str) -> Optional[ProfileRecord]: ...

    async def set_must_change_password(self, user_id: str, value: bool) -> None: ...


class RoleResolver:
    """Fetches the authorization role and must-change-password flag for a user.

    Single request/response, no retries: a failure is fatal for the attempt
    and the user retries by logging in again.
    """

    def __init__(self, store: ProfileStore) -> None:
        self.store = store
        self.calls = 0

    async def resolve(self, user_id: str) -> RoleGrant:
        self.calls += 1
        try:
            record = await self.store.get_profile(user_id)
        except _TRANSPORT_ERRORS as exc:
            logger.error(
                "role_resolution_network_failure",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NetworkFailureError(
                "could not reach the profile store", detail={"user_id": user_id}
            ) from exc
        except _MALFORMED_RESPONSE_ERRORS as exc:
            logger.error(
                "role_resolution_malformed_response",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NetworkFailureError(
                "profile store returned a malformed response",
                detail={"user_id": user_id, "error_type": type(exc).__name__},
            ) from exc

        if record is None or not record.role:
            logger.warning("role_resolution_profile_missing", user_id=user_id)
            raise ProfileNotFoundError(
                "no authorization record for user", detail={"user_id": user_id}
            )

        logger.info(
            "role_resolved",
            user_id=user_id,
            role=record.role,
            must_change_password=record.must_change_password,
        )
        return RoleGrant(role=record.role, must_change_password=record.must_change_password)

    async def mark_password_changed(self, user_id: str) -> None:
        try:
            await self.store.set_must_change_password(user_id, False)
        except _TRANSPORT_ERRORS as exc:
            logger.error(
                "password_flag_update_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NetworkFailureError(
                "could not update the profile store", detail={"user_id": user_id}
            ) from exc
