from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    PENDING_PASSWORD_CHANGE = "pending_password_change"
    ACTIVE = "active"
    RECOVERY_PENDING = "recovery_pending"


PASSWORD_CHANGE_STATES = frozenset(
    {SessionState.PENDING_PASSWORD_CHANGE, SessionState.RECOVERY_PENDING}
)


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only projection of the controller's session.

    A role is carried only by ``active`` sessions: its absence is what keeps
    privileged views closed while a password change is pending.
    """

    state: SessionState = SessionState.UNAUTHENTICATED
    user_id: Optional[str] = None
    role: Optional[str] = None
    is_ready: bool = False
    session_id: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.role is not None) != (self.state is SessionState.ACTIVE):
            raise ValueError(f"role must be set iff state is active (state={self.state.value})")
        if (self.user_id is None) != (self.state is SessionState.UNAUTHENTICATED):
            raise ValueError(
                f"user_id must be set iff state is not unauthenticated (state={self.state.value})"
            )

    @property
    def is_authenticated(self) -> bool:
        return self.state is SessionState.ACTIVE

    @property
    def requires_password_change(self) -> bool:
        return self.state in PASSWORD_CHANGE_STATES


class NoticeKind(str, Enum):
    INACTIVITY = "inactivity"
    SESSION_REVOKED = "session_revoked"
    PROFILE_NOT_FOUND = "profile_not_found"
    NETWORK_FAILURE = "network_failure"
    SIGN_OUT_FAILED = "sign_out_failed"
    RESET_EMAIL_SENT = "reset_email_sent"


NOTICE_MESSAGES = {
    NoticeKind.INACTIVITY: "You were signed out due to inactivity.",
    NoticeKind.SESSION_REVOKED: "Your session has ended. Please sign in again.",
    NoticeKind.PROFILE_NOT_FOUND: "Your user profile was not found. Contact the administrator.",
    NoticeKind.NETWORK_FAILURE: "Could not verify your account. Check your connection and sign in again.",
    NoticeKind.SIGN_OUT_FAILED: "You were signed out locally, but the server could not be reached.",
    NoticeKind.RESET_EMAIL_SENT: "Recovery email sent! Check your inbox.",
}


@dataclass(frozen=True)
class Notice:
    """One-shot user-facing message produced by a forced transition."""

    kind: NoticeKind
    message: str
    error_code: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def of(cls, kind: NoticeKind, error_code: Optional[str] = None) -> "Notice":
        return cls(kind=kind, message=NOTICE_MESSAGES[kind], error_code=error_code)
