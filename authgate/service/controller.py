from __future__ import annotations

import asyncio
import re
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Set, Union

from authgate.config import Settings, get_settings
from authgate.identity.base import IdentityProvider
from authgate.logging import get_logger, redact_email, set_correlation_id
from authgate.service.activity import ActivityMonitor, ActivitySignal
from authgate.service.errors import (
    AuthGateError,
    InvalidCredentialsError,
    InvalidTransitionError,
    NetworkFailureError,
    ProfileNotFoundError,
    SessionExpiredDuringOperationError,
    ValidationError,
)
from authgate.service.events import (
    IdentityEventStream,
    RecoveryValidated,
    SessionEnded,
    SessionEstablished,
)
from authgate.service.recovery import (
    RecoveryIntent,
    build_reset_redirect,
    detect_recovery_intent,
)
from authgate.service.roles import RoleResolver
from authgate.service.state import (
    PASSWORD_CHANGE_STATES,
    Notice,
    NoticeKind,
    SessionSnapshot,
    SessionState,
)
from authgate.service.timers import InactivityTimer, ManualOperationGuard, ReadinessLatch
from authgate.storage.models import ProviderSession, RoleGrant

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class _Boot:
    pass


@dataclass(frozen=True)
class _LoginSucceeded:
    session: ProviderSession


@dataclass(frozen=True)
class _InactivityTimeout:
    pass


@dataclass(frozen=True)
class _Logout:
    reason: Optional[str] = None


@dataclass(frozen=True)
class _CompleteRecovery:
    new_password: str


_ControllerEvent = Union[
    _Boot,
    _LoginSucceeded,
    _InactivityTimeout,
    _Logout,
    _CompleteRecovery,
    SessionEstablished,
    SessionEnded,
    RecoveryValidated,
]

_FATAL_RESOLUTION_NOTICES = {
    ProfileNotFoundError: NoticeKind.PROFILE_NOT_FOUND,
    NetworkFailureError: NoticeKind.NETWORK_FAILURE,
}


class SessionController:
    """State machine deciding whether the client holds a usable session.

    Explicit operations (``login``, ``logout``, ``complete_recovery``), the
    identity provider's push channel and the inactivity timer all funnel
    into ``_dispatch``, which applies one event at a time under a lock. A
    transition that awaits the network runs to completion before the next
    queued event is applied.

    Two mechanisms resolve ordering races:

    - ``_epoch`` is bumped as soon as a "session ended" report arrives, before
      it queues. A promotion compares the epoch it captured before awaiting the
      role resolver and discards its result on mismatch, so "session ended"
      always wins over an in-flight promotion.
    - ``ManualOperationGuard`` suppresses the push channel's "session
      established" report for the session an explicit ``login()`` is already
      promoting.

    Consumers read ``snapshot`` and await ``wait_ready()``; nothing outside
    this class mutates the session.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        resolver: RoleResolver,
        settings: Optional[Settings] = None,
        *,
        arrival_url: Optional[str] = None,
        activity_monitor: Optional[ActivityMonitor] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.provider = provider
        self.resolver = resolver
        # Evaluated once, synchronously, before the identity stream is opened
        if arrival_url is not None:
            self.recovery_intent = detect_recovery_intent(
                arrival_url, self.settings.recovery_marker
            )
        else:
            self.recovery_intent = RecoveryIntent(active=provider.is_recovery_callback())

        self._snapshot = SessionSnapshot()
        self._ready = ReadinessLatch()
        self._lock = asyncio.Lock()
        self._epoch = 0
        self.inactivity_timer = InactivityTimer(
            self.settings.inactivity_timeout_seconds, self._on_inactivity_timeout
        )
        self.manual_guard = ManualOperationGuard(self.settings.manual_guard_grace_seconds)
        self.activity = activity_monitor or ActivityMonitor()
        self._stream = IdentityEventStream(provider, self._on_identity_event)
        self._listeners: List[Callable[[SessionSnapshot], None]] = []
        self._notice_listeners: List[Callable[[Notice], None]] = []
        self._notices: Deque[Notice] = deque()
        self._tasks: Set[asyncio.Task] = set()
        self._started = False
        self._closed = False
        self.promotions = 0
        self.suppressed_events = 0

    # -- read-only projection -------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def state(self) -> SessionState:
        return self._snapshot.state

    @property
    def role(self) -> Optional[str]:
        return self._snapshot.role

    @property
    def user_id(self) -> Optional[str]:
        return self._snapshot.user_id

    @property
    def is_ready(self) -> bool:
        return self._snapshot.is_ready

    @property
    def pending_timers(self) -> int:
        return int(self.inactivity_timer.pending) + int(self.manual_guard.pending)

    async def wait_ready(self, timeout: Optional[float] = None) -> SessionSnapshot:
        await self._ready.wait(timeout)
        return self._snapshot

    def add_listener(self, callback: Callable[[SessionSnapshot], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def add_notice_listener(self, callback: Callable[[Notice], None]) -> Callable[[], None]:
        self._notice_listeners.append(callback)

        def remove() -> None:
            if callback in self._notice_listeners:
                self._notice_listeners.remove(callback)

        return remove

    def pop_notice(self) -> Optional[Notice]:
        """Return and forget the oldest pending notice."""
        if not self._notices:
            return None
        return self._notices.popleft()

    @property
    def notices(self) -> List[Notice]:
        return list(self._notices)

    # -- lifecycle --------------------------------------------------------------

    async def start(self) -> SessionSnapshot:
        if self._started:
            raise InvalidTransitionError("controller already started")
        self._started = True
        set_correlation_id()
        logger.info("session_controller_starting", recovery_intent=self.recovery_intent.active)
        # The callback fragment must become a provider session before the boot
        # transition reads current_session() and before INITIAL_SESSION is sent
        try:
            await self.provider.consume_arrival_url()
        except AuthGateError as exc:
            logger.warning(
                "arrival_session_rejected",
                error_code=exc.error_code,
                error=exc.message,
            )
        await self._dispatch(_Boot())
        self._stream.open()
        return self._snapshot

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stream.close()
        self.manual_guard.cancel()
        self._stop_activity()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("session_controller_closed", state=self._snapshot.state.value)

    async def __aenter__(self) -> "SessionController":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -- operations -------------------------------------------------------------

    async def login(self, email: str, password: str) -> SessionSnapshot:
        """Sign in with credentials and promote the resulting session.

        ``InvalidCredentialsError`` propagates with no state change. Fatal
        resolution failures do not raise: they land in ``unauthenticated``
        with a notice.
        """
        set_correlation_id()
        if self._snapshot.state is not SessionState.UNAUTHENTICATED:
            raise InvalidTransitionError(
                "login requires an unauthenticated session",
                detail={"state": self._snapshot.state.value},
            )
        self.manual_guard.begin()
        session: Optional[ProviderSession] = None
        try:
            try:
                session = await self.provider.sign_in(email, password)
            except InvalidCredentialsError:
                logger.info("login_rejected", email=redact_email(email))
                raise
            await self._dispatch(_LoginSucceeded(session))
        finally:
            self.manual_guard.release(session.session_id if session else None)
        return self._snapshot

    async def logout(self, *, reason: Optional[str] = None) -> SessionSnapshot:
        set_correlation_id()
        await self._dispatch(_Logout(reason=reason))
        return self._snapshot

    async def complete_recovery(self, new_password: str) -> SessionSnapshot:
        """Set a new password and leave the password-change gate.

        ``PasswordRejectedError`` propagates with no state change.
        """
        set_correlation_id()
        await self._dispatch(_CompleteRecovery(new_password=new_password))
        return self._snapshot

    async def request_password_reset(
        self, email: str, redirect_target: Optional[str] = None
    ) -> None:
        set_correlation_id()
        email = (email or "").strip()
        if not _EMAIL_RE.match(email):
            raise ValidationError("Enter a valid email address.")
        redirect_to = redirect_target or build_reset_redirect(self.settings.app_base_url)
        logger.info(
            "password_reset_requested", email=redact_email(email), redirect_to=redirect_to
        )
        await self.provider.request_password_reset(email, redirect_to)
        self._push_notice(Notice.of(NoticeKind.RESET_EMAIL_SENT))

    def record_activity(self, signal: Union[str, ActivitySignal]) -> bool:
        return self.activity.notify(signal)

    # -- event sources ------------------------------------------------------

    async def _on_identity_event(
        self, event: Union[SessionEstablished, SessionEnded, RecoveryValidated]
    ) -> None:
        if isinstance(event, SessionEnded):
            # A boot-time "no session" report is stale once anything else happened
            if not event.initial:
                self._epoch += 1
        elif isinstance(event, SessionEstablished) and self.manual_guard.suppresses(
            event.session.session_id
        ):
            self.suppressed_events += 1
            logger.debug(
                "identity_event_suppressed",
                source_event=event.source_event,
                session_id=event.session.session_id,
            )
            return
        await self._dispatch(event)

    def _on_inactivity_timeout(self) -> None:
        self._spawn(self._dispatch(_InactivityTimeout()))

    def _on_activity(self, signal: ActivitySignal) -> None:
        if self._snapshot.state is SessionState.ACTIVE:
            self.inactivity_timer.arm()

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "session_background_task_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    # -- transition function --------------------------------------------------

    async def _dispatch(self, event: _ControllerEvent) -> None:
        async with self._lock:
            if isinstance(event, _Boot):
                self._apply_boot()
            elif isinstance(event, _LoginSucceeded):
                await self._establish(event.session, manual=True, source="login")
            elif isinstance(event, SessionEstablished):
                await self._establish(event.session, manual=False, source=event.source_event)
            elif isinstance(event, RecoveryValidated):
                self._apply_recovery_validated(event.session)
            elif isinstance(event, SessionEnded):
                self._apply_session_ended(event)
            elif isinstance(event, _InactivityTimeout):
                await self._apply_inactivity_timeout()
            elif isinstance(event, _Logout):
                await self._apply_logout(event.reason)
            elif isinstance(event, _CompleteRecovery):
                await self._apply_complete_recovery(event.new_password)
            else:
                raise TypeError(f"unhandled controller event: {event!r}")

    def _apply_boot(self) -> None:
        if not self.recovery_intent.active:
            return
        session = self.provider.current_session()
        if session is None:
            logger.info("recovery_boot_awaiting_session")
            return
        self._land(
            SessionState.RECOVERY_PENDING,
            user_id=session.user_id,
            session_id=session.session_id,
        )

    async def _establish(self, session: ProviderSession, *, manual: bool, source: str) -> None:
        current = self._snapshot
        if current.state is not SessionState.UNAUTHENTICATED:
            if current.user_id == session.user_id:
                logger.debug("session_refreshed", source=source, state=current.state.value)
                self._land(
                    current.state,
                    user_id=current.user_id,
                    role=current.role,
                    session_id=session.session_id,
                )
                return
            logger.warning(
                "session_user_switched",
                previous_user_id=current.user_id,
                user_id=session.user_id,
            )
            self._land(SessionState.UNAUTHENTICATED)

        if not manual and self.recovery_intent.active:
            # The provider opened this session by validating the recovery link
            logger.info("recovery_session_gated", user_id=session.user_id, source=source)
            self._land(
                SessionState.RECOVERY_PENDING,
                user_id=session.user_id,
                session_id=session.session_id,
            )
            return
        await self._promote(session, source=source)

    async def _promote(self, session: ProviderSession, *, source: str) -> None:
        self.promotions += 1
        self._land(
            SessionState.AUTHENTICATING,
            user_id=session.user_id,
            session_id=session.session_id,
        )
        epoch = self._epoch
        logger.info("session_promotion_started", user_id=session.user_id, source=source)
        try:
            grant = await self.resolver.resolve(session.user_id)
        except SessionExpiredDuringOperationError as exc:
            self._end_session(NoticeKind.SESSION_REVOKED, exc.error_code)
            return
        except (ProfileNotFoundError, NetworkFailureError) as exc:
            if self._is_stale(epoch, session.user_id):
                self._discard_stale(session.user_id)
                return
            await self._force_logout(exc)
            return
        except Exception as exc:
            if self._is_stale(epoch, session.user_id):
                self._discard_stale(session.user_id)
                return
            await self._force_logout(self._unexpected_failure(exc, "role_resolution"))
            return

        if self._is_stale(epoch, session.user_id):
            self._discard_stale(session.user_id)
            return
        self._apply_grant(session, grant)

    def _apply_grant(self, session: ProviderSession, grant: RoleGrant) -> None:
        if grant.must_change_password:
            logger.warning("password_change_required", user_id=session.user_id)
            self._land(
                SessionState.PENDING_PASSWORD_CHANGE,
                user_id=session.user_id,
                session_id=session.session_id,
            )
            return
        self._land(
            SessionState.ACTIVE,
            user_id=session.user_id,
            role=grant.role,
            session_id=session.session_id,
        )
        self._start_activity()

    def _apply_recovery_validated(self, session: ProviderSession) -> None:
        logger.info("recovery_link_validated", user_id=session.user_id)
        self._land(
            SessionState.RECOVERY_PENDING,
            user_id=session.user_id,
            session_id=session.session_id,
        )

    def _apply_session_ended(self, event: SessionEnded) -> None:
        state = self._snapshot.state
        if event.initial and state is not SessionState.UNAUTHENTICATED:
            logger.debug("initial_session_report_ignored", state=state.value)
            return
        if state is SessionState.UNAUTHENTICATED:
            self._land(SessionState.UNAUTHENTICATED)
            return
        logger.info("session_ended_by_provider", reason=event.reason, state=state.value)
        self._end_session(NoticeKind.SESSION_REVOKED, event.reason)

    async def _apply_inactivity_timeout(self) -> None:
        if self._snapshot.state is not SessionState.ACTIVE:
            logger.debug("inactivity_timeout_ignored", state=self._snapshot.state.value)
            return
        logger.info("session_inactive", user_id=self._snapshot.user_id)
        self._land(SessionState.UNAUTHENTICATED)
        self._push_notice(Notice.of(NoticeKind.INACTIVITY))
        await self._invalidate_provider_session()

    async def _apply_logout(self, reason: Optional[str]) -> None:
        logger.info("logout_requested", reason=reason, state=self._snapshot.state.value)
        self._land(SessionState.UNAUTHENTICATED)
        if not await self._invalidate_provider_session():
            self._push_notice(Notice.of(NoticeKind.SIGN_OUT_FAILED, "network_failure"))

    async def _apply_complete_recovery(self, new_password: str) -> None:
        current = self._snapshot
        if current.state not in PASSWORD_CHANGE_STATES:
            raise InvalidTransitionError(
                "no password change is pending",
                detail={"state": current.state.value},
            )
        user_id = current.user_id
        epoch = self._epoch
        try:
            await self.provider.update_password(new_password)
            await self.resolver.mark_password_changed(user_id)
            grant = await self.resolver.resolve(user_id)
        except SessionExpiredDuringOperationError as exc:
            self._end_session(NoticeKind.SESSION_REVOKED, exc.error_code)
            return
        except (ProfileNotFoundError, NetworkFailureError) as exc:
            if self._is_stale(epoch, user_id):
                self._discard_stale(user_id)
                return
            await self._force_logout(exc)
            return
        except AuthGateError:
            # Rejected password or provider refusal: the gate stays closed
            raise
        except Exception as exc:
            if self._is_stale(epoch, user_id):
                self._discard_stale(user_id)
                return
            await self._force_logout(self._unexpected_failure(exc, "complete_recovery"))
            return

        if self._is_stale(epoch, user_id):
            self._discard_stale(user_id)
            return
        logger.info("recovery_completed", user_id=user_id, from_state=current.state.value)
        self._land(
            SessionState.ACTIVE,
            user_id=user_id,
            role=grant.role,
            session_id=current.session_id,
        )
        self._start_activity()

    # -- helpers ------------------------------------------------------------

    def _is_stale(self, epoch: int, user_id: Optional[str]) -> bool:
        return epoch != self._epoch or self._snapshot.user_id != user_id

    def _unexpected_failure(self, exc: Exception, step: str) -> NetworkFailureError:
        logger.error(
            "session_step_failed",
            step=step,
            user_id=self._snapshot.user_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return NetworkFailureError(
            f"{step} failed unexpectedly", detail={"error_type": type(exc).__name__}
        )

    def _discard_stale(self, user_id: Optional[str]) -> None:
        logger.info("stale_response_discarded", user_id=user_id, epoch=self._epoch)
        self._end_session(NoticeKind.SESSION_REVOKED, "session_expired")

    def _end_session(self, kind: NoticeKind, error_code: Optional[str] = None) -> None:
        was_signed_in = self._snapshot.state is not SessionState.UNAUTHENTICATED
        self._land(SessionState.UNAUTHENTICATED)
        if was_signed_in:
            self._push_notice(Notice.of(kind, error_code))

    async def _force_logout(self, exc: AuthGateError) -> None:
        kind = _FATAL_RESOLUTION_NOTICES.get(type(exc), NoticeKind.NETWORK_FAILURE)
        logger.error(
            "session_forced_logout",
            user_id=self._snapshot.user_id,
            error_code=exc.error_code,
            error=exc.message,
        )
        self._land(SessionState.UNAUTHENTICATED)
        self._push_notice(Notice.of(kind, exc.error_code))
        await self._invalidate_provider_session()

    async def _invalidate_provider_session(self) -> bool:
        try:
            await self.provider.sign_out()
        except AuthGateError as exc:
            logger.error(
                "provider_sign_out_failed",
                error_code=exc.error_code,
                error=exc.message,
            )
            return False
        return True

    def _start_activity(self) -> None:
        self.inactivity_timer.arm()
        self.activity.attach(self._on_activity)

    def _stop_activity(self) -> None:
        self.inactivity_timer.cancel()
        self.activity.detach()

    def _land(
        self,
        state: SessionState,
        *,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        previous = self._snapshot
        if state is not SessionState.ACTIVE:
            self._stop_activity()
        if state is SessionState.UNAUTHENTICATED:
            self._epoch += 1
            user_id = role = session_id = None
        ready = previous.is_ready or state is not SessionState.AUTHENTICATING
        self._snapshot = SessionSnapshot(
            state=state,
            user_id=user_id,
            role=role,
            is_ready=ready,
            session_id=session_id,
        )
        if previous.state is not state:
            logger.info(
                "session_transition",
                from_state=previous.state.value,
                to_state=state.value,
                user_id=user_id,
                role=role,
            )
        if ready and self._ready.set():
            logger.info("session_ready", state=state.value)
        for callback in list(self._listeners):
            try:
                callback(self._snapshot)
            except Exception as exc:
                logger.error(
                    "session_listener_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    def _push_notice(self, notice: Notice) -> None:
        self._notices.append(notice)
        logger.info("session_notice", kind=notice.kind.value, error_code=notice.error_code)
        for callback in list(self._notice_listeners):
            try:
                callback(notice)
            except Exception as exc:
                logger.error(
                    "notice_listener_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
