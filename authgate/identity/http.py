from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import parse_qsl, urlsplit

import httpx

from authgate.config import DEFAULT_RECOVERY_MARKER
from authgate.identity.base import (
    PASSWORD_RECOVERY,
    SIGNED_IN,
    SIGNED_OUT,
    USER_UPDATED,
    ProviderEventEmitter,
)
from authgate.logging import get_logger, redact_email
from authgate.service.errors import (
    IdentityProviderError,
    InvalidCredentialsError,
    NetworkFailureError,
    PasswordRejectedError,
    SessionExpiredDuringOperationError,
)
from authgate.service.recovery import detect_recovery_intent
from authgate.storage.models import ProviderSession

logger = get_logger(__name__)


def _session_id_for(access_token: str) -> str:
    return hashlib.sha256(access_token.encode()).hexdigest()[:32]


class HttpIdentityProvider(ProviderEventEmitter):
    """GoTrue-compatible identity provider client.

    The push channel is client-side: each successful call emits the event
    the hosted provider's browser SDK would emit.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        arrival_url: Optional[str] = None,
        recovery_marker: str = DEFAULT_RECOVERY_MARKER,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.arrival_url = arrival_url
        self.recovery_marker = recovery_marker
        self.timeout = timeout
        self._transport = transport
        self._arrival_consumed = False

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"{self.base_url}/auth/v1",
            timeout=self.timeout,
            follow_redirects=False,
            transport=self._transport,
        )

    def _headers(self, access_token: Optional[str] = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error(
                "identity_request_failed",
                method=method,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NetworkFailureError("identity provider unreachable") from exc

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            for key in ("error_description", "msg", "message", "error"):
                if body.get(key):
                    return str(body[key])
        return f"HTTP {response.status_code}"

    @staticmethod
    def _json_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            logger.error(
                "identity_response_malformed",
                path=response.request.url.path,
                status_code=response.status_code,
            )
            raise IdentityProviderError(
                "identity provider returned a malformed response",
                detail={"status_code": response.status_code},
            ) from exc

    def _session_from_payload(self, payload: dict) -> ProviderSession:
        if not isinstance(payload, dict):
            raise IdentityProviderError("identity provider returned an incomplete session")
        user = payload.get("user")
        if not isinstance(user, dict):
            user = {}
        access_token = payload.get("access_token")
        if not access_token or not user.get("id"):
            raise IdentityProviderError("identity provider returned an incomplete session")
        expires_in = payload.get("expires_in")
        expires_at = None
        if expires_in and str(expires_in).isdigit():
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
        return ProviderSession(
            session_id=_session_id_for(access_token),
            user_id=str(user["id"]),
            email=user.get("email"),
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
        )

    def is_recovery_callback(self) -> bool:
        return detect_recovery_intent(self.arrival_url, self.recovery_marker).active

    def access_token(self) -> Optional[str]:
        return self._session.access_token if self._session else None

    async def sign_in(self, email: str, password: str) -> ProviderSession:
        response = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            headers=self._headers(),
        )
        if response.status_code in (400, 401):
            logger.info(
                "identity_sign_in_rejected",
                email=redact_email(email),
                status_code=response.status_code,
            )
            raise InvalidCredentialsError("Invalid email or password.")
        if response.is_error:
            raise IdentityProviderError(
                self._error_message(response), detail={"status_code": response.status_code}
            )
        self._session = self._session_from_payload(self._json_body(response))
        self.emit(SIGNED_IN, self._session)
        return self._session

    async def sign_out(self) -> None:
        token = self.access_token()
        self._session = None
        self.emit(SIGNED_OUT, None)
        if token is None:
            return
        response = await self._request("POST", "/logout", headers=self._headers(token))
        # 401/404 mean the server already forgot the session
        if response.is_error and response.status_code not in (401, 404):
            raise IdentityProviderError(
                self._error_message(response), detail={"status_code": response.status_code}
            )

    async def request_password_reset(self, email: str, redirect_to: str) -> None:
        response = await self._request(
            "POST",
            "/recover",
            params={"redirect_to": redirect_to},
            json={"email": email},
            headers=self._headers(),
        )
        if response.is_error:
            raise IdentityProviderError(
                self._error_message(response), detail={"status_code": response.status_code}
            )
        logger.info("identity_reset_requested", email=redact_email(email))

    async def update_password(self, new_password: str) -> None:
        token = self.access_token()
        if token is None:
            raise SessionExpiredDuringOperationError("no session to update")
        response = await self._request(
            "PUT", "/user", json={"password": new_password}, headers=self._headers(token)
        )
        if response.status_code in (401, 403):
            raise SessionExpiredDuringOperationError("session expired before password update")
        if response.status_code == 422:
            raise PasswordRejectedError(self._error_message(response))
        if response.is_error:
            raise IdentityProviderError(
                self._error_message(response), detail={"status_code": response.status_code}
            )
        self.emit(USER_UPDATED, self._session)

    async def restore_from_url(self, url: str) -> Optional[ProviderSession]:
        """Establish a session from a callback fragment (recovery or magic link)."""
        params = dict(parse_qsl(urlsplit(url).fragment.lstrip("#/")))
        access_token = params.get("access_token")
        if not access_token:
            return None
        response = await self._request("GET", "/user", headers=self._headers(access_token))
        if response.status_code in (401, 403):
            raise SessionExpiredDuringOperationError("callback link is invalid or expired")
        if response.is_error:
            raise IdentityProviderError(
                self._error_message(response), detail={"status_code": response.status_code}
            )
        payload = {
            "access_token": access_token,
            "refresh_token": params.get("refresh_token"),
            "expires_in": params.get("expires_in"),
            "user": self._json_body(response),
        }
        self._session = self._session_from_payload(payload)
        if params.get("type") == "recovery":
            self.emit(PASSWORD_RECOVERY, self._session)
        self.emit(SIGNED_IN, self._session)
        return self._session

    async def consume_arrival_url(self) -> Optional[ProviderSession]:
        """Exchange the token in the arrival URL fragment for a session, once.

        Runs before the first subscriber is attached, so the resulting session
        is what ``INITIAL_SESSION`` reports.
        """
        if self._arrival_consumed or not self.arrival_url:
            return None
        self._arrival_consumed = True
        session = await self.restore_from_url(self.arrival_url)
        if session is not None:
            logger.info(
                "identity_arrival_session_restored",
                user_id=session.user_id,
                recovery=self.is_recovery_callback(),
            )
        return session
