from __future__ import annotations

from typing import Callable, Optional

import httpx

from authgate.logging import get_logger
from authgate.service.errors import SessionExpiredDuringOperationError
from authgate.storage.models import ProfileRecord

logger = get_logger(__name__)

PROFILE_COLUMNS = "id,role,must_change_password"


class RestProfileStore:
    """Profile lookups against a PostgREST endpoint.

    Requests are authorized with the access token of the current provider
    session so row-level policies on the profiles table apply. Transport and
    non-auth HTTP errors propagate as ``httpx`` exceptions; 401/403 mean the
    session behind the token is gone.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        table: str = "profiles",
        access_token: Optional[Callable[[], Optional[str]]] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.table = table
        self._access_token = access_token
        self.timeout = timeout
        self._transport = transport

    @property
    def table_url(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        token = self._access_token() if self._access_token else None
        bearer = token or self.api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _check(self, response: httpx.Response, user_id: str) -> None:
        if response.status_code in (401, 403):
            logger.warning(
                "profile_store_unauthorized",
                user_id=user_id,
                status_code=response.status_code,
            )
            raise SessionExpiredDuringOperationError(
                "session no longer authorizes profile access",
                detail={"status_code": response.status_code},
            )
        response.raise_for_status()

    async def get_profile(self, user_id: str) -> Optional[ProfileRecord]:
        params = {"id": f"eq.{user_id}", "select": PROFILE_COLUMNS}
        async with self._client() as client:
            response = await client.get(self.table_url, params=params, headers=self._headers())
        self._check(response, user_id)
        rows = response.json()
        if not isinstance(rows, list) or not rows:
            return None
        row = rows[0]
        if not isinstance(row, dict):
            return None
        return ProfileRecord(
            user_id=str(row.get("id") or user_id),
            role=row.get("role"),
            must_change_password=bool(row.get("must_change_password")),
        )

    async def set_must_change_password(self, user_id: str, value: bool) -> None:
        params = {"id": f"eq.{user_id}"}
        headers = {**self._headers(), "Prefer": "return=minimal"}
        async with self._client() as client:
            response = await client.patch(
                self.table_url,
                params=params,
                json={"must_change_password": value},
                headers=headers,
            )
        self._check(response, user_id)
        logger.info("profile_password_flag_updated", user_id=user_id, value=value)
