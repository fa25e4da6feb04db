"""Ordering tests for concurrent event sources feeding the session controller.

The explicit login() call, the identity provider's push channel and timer
callbacks can all report changes for the same session. These tests pin the
ordering guarantees: one promotion per login, "session ended" beats an
in-flight promotion, and a recovery page load never reaches an active
session without complete_recovery().
"""

import asyncio

import httpx
import pytest

from authgate.identity.base import (
    INITIAL_SESSION,
    PASSWORD_RECOVERY,
    SIGNED_IN,
    SIGNED_OUT,
    TOKEN_REFRESHED,
    USER_UPDATED,
)
from authgate.service.controller import SessionController
from authgate.service.errors import InvalidCredentialsError
from authgate.service.state import NoticeKind, SessionState
from tests.helpers import (
    ADMIN_EMAIL,
    ADMIN_ID,
    ADMIN_PASSWORD,
    RECOVERY_URL,
    boot,
    settle,
    wait_for_state,
)


class TestLoginStreamRace:
    """login() and the push channel reporting the same sign-in."""

    @pytest.mark.asyncio
    async def test_login_then_stream_report_resolves_role_once(
        self, controller, provider, resolver
    ):
        await boot(controller, provider)

        await controller.login(ADMIN_EMAIL, ADMIN_PASSWORD)
        # Redeliver the establishment report for the session login produced
        provider.emit(SIGNED_IN, provider.current_session())
        await settle(controller, provider)

        assert resolver.calls == 1
        assert controller.promotions == 1
        assert controller.suppressed_events == 2
        assert controller.state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_report_after_grace_window_is_a_refresh(
        self, controller, provider, resolver, settings
    ):
        await boot(controller, provider)
        await controller.login(ADMIN_EMAIL, ADMIN_PASSWORD)
        await settle(controller, provider)

        await asyncio.sleep(settings.manual_guard_grace_seconds * 2)
        provider.emit(TOKEN_REFRESHED, provider.current_session())
        await settle(controller, provider)

        assert controller.manual_guard.active is False
        assert resolver.calls == 1
        assert controller.state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_session_ended_is_never_suppressed_by_guard(self, controller, provider):
        await boot(controller, provider)
        await controller.login(ADMIN_EMAIL, ADMIN_PASSWORD)
        assert controller.manual_guard.active

        provider.emit(SIGNED_OUT, None)
        await settle(controller, provider)

        assert controller.state is SessionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_other_user_session_replaces_current(self, controller, provider, store):
        other_id = provider.register_user("b@x.com", "pw2", user_id="user-b")
        store.upsert(other_id, "user")
        await boot(controller, provider)
        await controller.login(ADMIN_EMAIL, ADMIN_PASSWORD)
        await asyncio.sleep(0.1)

        provider.emit(SIGNED_IN, provider.restore_session(other_id, "b@x.com"))
        await settle(controller, provider)

        assert controller.user_id == other_id
        assert controller.role == "user"


    @pytest.mark.asyncio
    async def test_failed_login_does_not_hide_other_sign_in(
        self, controller, provider, resolver
    ):
        """A sign-in from elsewhere right after a rejected login is promoted."""
        await boot(controller, provider)
        with pytest.raises(InvalidCredentialsError):
            await controller.login(ADMIN_EMAIL, "wrong")

        provider.emit(SIGNED_IN, provider.restore_session(ADMIN_ID, ADMIN_EMAIL))
        await settle(controller, provider)

        assert controller.suppressed_events == 0
        assert controller.state is SessionState.ACTIVE
        assert resolver.calls == 1


class TestSessionEndedWins:
    """'Session ended' delivered while role resolution is pending."""

    async def _login_and_end_mid_resolution(self, controller, provider, store):
        await boot(controller, provider)
        store.hold()
        login = asyncio.create_task(controller.login(ADMIN_EMAIL, ADMIN_PASSWORD))
        await wait_for_state(controller, SessionState.AUTHENTICATING)

        provider.expire_session()
        # Let the report arrive and queue behind the running promotion
        await asyncio.sleep(0)
        return login

    @pytest.mark.asyncio
    async def test_pending_resolution_success_is_discarded(
        self, controller, provider, store
    ):
        login = await self._login_and_end_mid_resolution(controller, provider, store)

        store.release()
        snapshot = await login
        await settle(controller, provider)

        assert snapshot.state is SessionState.UNAUTHENTICATED
        assert controller.state is SessionState.UNAUTHENTICATED
        assert controller.role is None
        assert controller.inactivity_timer.armed_count == 0
        assert [n.kind for n in controller.notices] == [NoticeKind.SESSION_REVOKED]

    @pytest.mark.asyncio
    async def test_pending_resolution_failure_is_discarded(
        self, controller, provider, store
    ):
        login = await self._login_and_end_mid_resolution(controller, provider, store)

        store.fail_with = httpx.ReadTimeout("slow store")
        store.release()
        snapshot = await login
        await settle(controller, provider)

        assert snapshot.state is SessionState.UNAUTHENTICATED
        assert controller.state is SessionState.UNAUTHENTICATED
        assert provider.sign_out_calls == 0
        assert [n.kind for n in controller.notices] == [NoticeKind.SESSION_REVOKED]

    @pytest.mark.asyncio
    async def test_stale_initial_report_does_not_end_login(self, provider, resolver, settings):
        """An INITIAL_SESSION 'no session' report delivered late is ignored."""
        controller = SessionController(provider, resolver, settings)
        await controller.start()

        snapshot = await controller.login(ADMIN_EMAIL, ADMIN_PASSWORD)
        provider.emit(INITIAL_SESSION, None)
        await settle(controller, provider)

        assert snapshot.state is SessionState.ACTIVE
        assert controller.state is SessionState.ACTIVE
        assert controller.is_ready


class TestRecoveryIsolation:
    """A recovery-link page load never reaches active without complete_recovery()."""

    @pytest.fixture
    def recovery_controller(self, provider, resolver, settings):
        return SessionController(provider, resolver, settings, arrival_url=RECOVERY_URL)

    @pytest.mark.asyncio
    async def test_recovery_intent_is_captured_at_construction(self, recovery_controller):
        assert recovery_controller.recovery_intent.active is True
        assert recovery_controller.state is SessionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_stream_sign_in_lands_in_recovery_pending(
        self, recovery_controller, provider, resolver
    ):
        await boot(recovery_controller, provider)

        provider.emit(SIGNED_IN, provider.restore_session(ADMIN_ID, ADMIN_EMAIL))
        await settle(recovery_controller, provider)

        assert recovery_controller.state is SessionState.RECOVERY_PENDING
        assert recovery_controller.user_id == ADMIN_ID
        assert recovery_controller.role is None
        assert resolver.calls == 0

    @pytest.mark.asyncio
    async def test_boot_with_validated_link_session(self, recovery_controller, provider):
        provider.restore_session(ADMIN_ID, ADMIN_EMAIL)

        await recovery_controller.start()

        assert recovery_controller.state is SessionState.RECOVERY_PENDING
        assert recovery_controller.is_ready is True
        await settle(recovery_controller, provider)
        assert recovery_controller.state is SessionState.RECOVERY_PENDING

    @pytest.mark.asyncio
    async def test_arrival_link_is_consumed_before_first_settle(
        self, provider, resolver, settings
    ):
        link = provider.issue_recovery_link(ADMIN_EMAIL, "https://audits.example.com")
        provider.arrival_url = link
        controller = SessionController(provider, resolver, settings, arrival_url=link)

        snapshot = await boot(controller, provider)

        assert snapshot.state is SessionState.RECOVERY_PENDING
        assert snapshot.user_id == ADMIN_ID
        assert resolver.calls == 0

        await controller.complete_recovery("brand-new-password")

        assert controller.state is SessionState.ACTIVE
        await controller.close()

    @pytest.mark.asyncio
    async def test_unknown_arrival_token_settles_unauthenticated(
        self, provider, resolver, settings
    ):
        provider.arrival_url = RECOVERY_URL
        controller = SessionController(provider, resolver, settings, arrival_url=RECOVERY_URL)

        snapshot = await boot(controller, provider)

        assert snapshot.state is SessionState.UNAUTHENTICATED
        assert snapshot.is_ready is True

    @pytest.mark.asyncio
    async def test_no_stream_sequence_reaches_active(self, recovery_controller, provider):
        await boot(recovery_controller, provider)
        session = provider.restore_session(ADMIN_ID, ADMIN_EMAIL)
        sequence = [
            (SIGNED_IN, session),
            (TOKEN_REFRESHED, session),
            (USER_UPDATED, session),
            (SIGNED_OUT, None),
            (INITIAL_SESSION, session),
            (PASSWORD_RECOVERY, session),
            (SIGNED_IN, session),
            ("MFA_CHALLENGE_VERIFIED", session),
        ]

        for name, payload in sequence:
            provider.emit(name, payload)
            await settle(recovery_controller, provider)
            assert recovery_controller.state is not SessionState.ACTIVE
            assert recovery_controller.role is None

    @pytest.mark.asyncio
    async def test_complete_recovery_opens_session(
        self, recovery_controller, provider, resolver
    ):
        await boot(recovery_controller, provider)
        link = provider.issue_recovery_link(ADMIN_EMAIL, "https://audits.example.com")
        provider.open_recovery_link(link)
        await settle(recovery_controller, provider)
        assert recovery_controller.state is SessionState.RECOVERY_PENDING

        snapshot = await recovery_controller.complete_recovery("brand-new-password")
        await settle(recovery_controller, provider)

        assert snapshot.state is SessionState.ACTIVE
        assert snapshot.role == "admin"
        assert recovery_controller.state is SessionState.ACTIVE
        assert recovery_controller.inactivity_timer.pending
        assert resolver.calls == 1

    @pytest.mark.asyncio
    async def test_recovery_link_without_marker_still_gates(
        self, controller, provider, resolver
    ):
        """A PASSWORD_RECOVERY report gates even when the URL lacked the marker."""
        await boot(controller, provider)

        provider.emit(PASSWORD_RECOVERY, provider.restore_session(ADMIN_ID, ADMIN_EMAIL))
        await settle(controller, provider)

        assert controller.state is SessionState.RECOVERY_PENDING
        assert resolver.calls == 0
