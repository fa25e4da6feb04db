from __future__ import annotations

import asyncio
import secrets
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlsplit

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
    InvalidCredentialsError,
    PasswordRejectedError,
    SessionExpiredDuringOperationError,
)
from authgate.service.recovery import detect_recovery_intent
from authgate.storage.models import ProviderSession

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6


@dataclass
class _Account:
    user_id: str
    email: str
    password: str


class MemoryIdentityProvider(ProviderEventEmitter):
    """In-process identity provider for development and tests.

    Holds accounts and one client-side session, issues recovery links, and
    lets callers inject failures (``fail_sign_out``, ``fail_update_password``)
    or push arbitrary events through ``emit``.
    """

    def __init__(
        self,
        *,
        arrival_url: Optional[str] = None,
        recovery_marker: str = DEFAULT_RECOVERY_MARKER,
    ) -> None:
        super().__init__()
        self.arrival_url = arrival_url
        self.recovery_marker = recovery_marker
        self.accounts: Dict[str, _Account] = {}
        self._recovery_tokens: Dict[str, str] = {}
        self.reset_requests: List[Tuple[str, str]] = []
        self.sign_in_calls = 0
        self.sign_out_calls = 0
        self.fail_sign_in: Optional[BaseException] = None
        self.fail_sign_out: Optional[BaseException] = None
        self.fail_update_password: Optional[BaseException] = None
        self._arrival_consumed = False

    def register_user(self, email: str, password: str, *, user_id: Optional[str] = None) -> str:
        account = _Account(user_id=user_id or str(uuid.uuid4()), email=email.lower(), password=password)
        self.accounts[account.email] = account
        return account.user_id

    def restore_session(self, user_id: str, email: Optional[str] = None) -> ProviderSession:
        """Seed a session as if restored from durable storage at page load."""
        self._session = ProviderSession.new(user_id, email=email)
        return self._session

    def is_recovery_callback(self) -> bool:
        return detect_recovery_intent(self.arrival_url, self.recovery_marker).active

    async def sign_in(self, email: str, password: str) -> ProviderSession:
        self.sign_in_calls += 1
        await asyncio.sleep(0)
        if self.fail_sign_in is not None:
            raise self.fail_sign_in
        account = self.accounts.get(email.lower())
        if account is None or not secrets.compare_digest(account.password, password):
            logger.info("memory_sign_in_rejected", email=redact_email(email))
            raise InvalidCredentialsError("Invalid email or password.")
        self._session = ProviderSession.new(account.user_id, email=account.email)
        self.emit(SIGNED_IN, self._session)
        return self._session

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        await asyncio.sleep(0)
        if self.fail_sign_out is not None:
            raise self.fail_sign_out
        self._session = None
        self.emit(SIGNED_OUT, None)

    async def request_password_reset(self, email: str, redirect_to: str) -> None:
        await asyncio.sleep(0)
        self.reset_requests.append((email, redirect_to))
        account = self.accounts.get(email.lower())
        # Unknown addresses succeed silently so the endpoint cannot enumerate accounts
        if account is not None:
            token = secrets.token_urlsafe(16)
            self._recovery_tokens[token] = account.email

    def issue_recovery_link(self, email: str, redirect_to: str) -> str:
        account = self.accounts[email.lower()]
        token = secrets.token_urlsafe(16)
        self._recovery_tokens[token] = account.email
        return f"{redirect_to}#access_token={token}&type=recovery"

    async def consume_arrival_url(self) -> Optional[ProviderSession]:
        """Open the recovery link the page arrived with, if it is one this provider issued."""
        if self._arrival_consumed or not self.arrival_url:
            return None
        self._arrival_consumed = True
        await asyncio.sleep(0)
        params = dict(parse_qsl(urlsplit(self.arrival_url).fragment))
        if params.get("access_token") not in self._recovery_tokens:
            return None
        return self.open_recovery_link(self.arrival_url)

    def open_recovery_link(self, url: str) -> ProviderSession:
        """Validate a recovery link, establishing a scoped session as a side effect."""
        params = dict(parse_qsl(urlsplit(url).fragment))
        email = self._recovery_tokens.pop(params.get("access_token", ""), None)
        if email is None:
            raise SessionExpiredDuringOperationError("recovery link is invalid or already used")
        account = self.accounts[email]
        self._session = ProviderSession.new(account.user_id, email=account.email, ttl_minutes=15)
        self.emit(PASSWORD_RECOVERY, self._session)
        self.emit(SIGNED_IN, self._session)
        return self._session

    async def update_password(self, new_password: str) -> None:
        await asyncio.sleep(0)
        if self.fail_update_password is not None:
            raise self.fail_update_password
        session = self._session
        if session is None:
            raise SessionExpiredDuringOperationError("no session to update")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise PasswordRejectedError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
            )
        for account in self.accounts.values():
            if account.user_id == session.user_id:
                account.password = new_password
        self.emit(USER_UPDATED, session)

    def expire_session(self) -> None:
        """Drop the session as a revoked or expired refresh would."""
        self._session = None
        self.emit(SIGNED_OUT, None)
