from __future__ import annotations

from typing import Annotated, Any, Awaitable, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from authgate.identity.base import (
    INITIAL_SESSION,
    PASSWORD_RECOVERY,
    SIGNED_IN,
    SIGNED_OUT,
    TOKEN_REFRESHED,
    USER_DELETED,
    USER_UPDATED,
    IdentityProvider,
)
from authgate.logging import get_logger, set_correlation_id
from authgate.storage.models import ProviderSession

logger = get_logger(__name__)


class SessionEstablished(BaseModel):
    """The provider holds a live session (sign-in, restore, refresh)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["session_established"] = "session_established"
    session: ProviderSession
    initial: bool = False
    source_event: str = SIGNED_IN


class SessionEnded(BaseModel):
    """The provider no longer holds a session. Never suppressed."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["session_ended"] = "session_ended"
    reason: str = "signed_out"
    initial: bool = False


class RecoveryValidated(BaseModel):
    """The provider validated a recovery link and opened a scoped session."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["recovery_validated"] = "recovery_validated"
    session: ProviderSession


IdentityEvent = Annotated[
    Union[SessionEstablished, SessionEnded, RecoveryValidated],
    Field(discriminator="kind"),
]

_identity_event_adapter: TypeAdapter = TypeAdapter(IdentityEvent)

_ESTABLISHING_EVENTS = {SIGNED_IN, TOKEN_REFRESHED, USER_UPDATED}
_ENDING_EVENTS = {SIGNED_OUT: "signed_out", USER_DELETED: "user_deleted"}


def adapt_provider_event(
    name: str, session: Optional[ProviderSession]
) -> Optional[Union[SessionEstablished, SessionEnded, RecoveryValidated]]:
    """Map a raw push-channel event onto the closed identity event union.

    Returns None (and logs) for event names outside the known set and for
    establishing events that arrive without a session.
    """
    if name == INITIAL_SESSION:
        if session is None:
            return SessionEnded(reason="no_session", initial=True)
        return SessionEstablished(session=session, initial=True, source_event=name)
    if name in _ENDING_EVENTS:
        return SessionEnded(reason=_ENDING_EVENTS[name])
    if name in _ESTABLISHING_EVENTS:
        if session is None:
            logger.warning("identity_event_missing_session", identity_event=name)
            return None
        return SessionEstablished(session=session, source_event=name)
    if name == PASSWORD_RECOVERY:
        if session is None:
            logger.warning("identity_event_missing_session", identity_event=name)
            return None
        return RecoveryValidated(session=session)
    logger.warning("identity_event_rejected", identity_event=name)
    return None


def parse_identity_payload(
    payload: Any,
) -> Optional[Union[SessionEstablished, SessionEnded, RecoveryValidated]]:
    """Validate an already-tagged payload (e.g. relayed from another tab)."""
    try:
        return _identity_event_adapter.validate_python(payload)
    except ValidationError as exc:
        logger.warning("identity_payload_rejected", errors=exc.error_count())
        return None


EventSink = Callable[[Union[SessionEstablished, SessionEnded, RecoveryValidated]], Awaitable[None]]


class IdentityEventStream:
    """Subscription to the provider's push channel feeding a controller sink."""

    def __init__(self, provider: IdentityProvider, sink: EventSink) -> None:
        self.provider = provider
        self._sink = sink
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.delivered = 0
        self.rejected = 0

    @property
    def subscribed(self) -> bool:
        return self._unsubscribe is not None

    def open(self) -> None:
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self.provider.subscribe(self._on_raw_event)
        logger.debug("identity_stream_opened")

    def close(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
            logger.debug("identity_stream_closed")

    async def _on_raw_event(self, name: str, session: Optional[ProviderSession]) -> None:
        if self._unsubscribe is None:
            return
        event = adapt_provider_event(name, session)
        if event is None:
            self.rejected += 1
            return
        set_correlation_id()
        self.delivered += 1
        await self._sink(event)
