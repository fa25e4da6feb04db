from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


@dataclass(frozen=True)
class ProviderSession:
    """Session as reported by the identity provider."""

    session_id: str
    user_id: str
    email: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        email: Optional[str] = None,
        ttl_minutes: int = 60,
    ) -> "ProviderSession":
        now = datetime.now(timezone.utc)
        return cls(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            email=email,
            access_token=uuid.uuid4().hex,
            refresh_token=uuid.uuid4().hex,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= datetime.now(timezone.utc)


@dataclass
class ProfileRecord:
    """Authorization row held by the backing store, keyed by user id."""

    user_id: str
    role: Optional[str]
    must_change_password: bool = False
    meta: Dict | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class RoleGrant:
    role: str
    must_change_password: bool = False
