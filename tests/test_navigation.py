"""Tests for readiness-gated navigation decisions."""

import asyncio

import pytest

from authgate.service.navigation import NavigationGuard
from tests.helpers import ADMIN_EMAIL, ADMIN_ID, ADMIN_PASSWORD, boot


class TestNavigationGuard:
    @pytest.mark.asyncio
    async def test_waits_for_readiness(self, controller, provider):
        guard = NavigationGuard(controller)
        decision = asyncio.create_task(guard.resolve("/audits", requires_auth=True))
        await asyncio.sleep(0)

        assert not decision.done()
        await boot(controller, provider)

        assert await asyncio.wait_for(decision, timeout=1.0) == "/login"

    @pytest.mark.asyncio
    async def test_ready_timeout(self, controller):
        guard = NavigationGuard(controller, ready_timeout=0.01)

        with pytest.raises(asyncio.TimeoutError):
            await guard.resolve("/audits", requires_auth=True)

    @pytest.mark.asyncio
    async def test_authenticated_routes(self, controller, provider):
        guard = NavigationGuard(controller, home_path="/dashboard")
        await boot(controller, provider)
        await controller.login(ADMIN_EMAIL, ADMIN_PASSWORD)

        assert await guard.resolve("/audits", requires_auth=True) == "/audits"
        assert await guard.resolve("/login") == "/dashboard"
        await controller.close()

    @pytest.mark.asyncio
    async def test_public_routes_pass_through(self, controller, provider):
        guard = NavigationGuard(controller)
        await boot(controller, provider)

        assert await guard.resolve("/login") == "/login"
        assert await guard.resolve("/about") == "/about"

    @pytest.mark.asyncio
    async def test_password_change_route(self, controller, provider, store):
        store.upsert(ADMIN_ID, "admin", must_change_password=True)
        guard = NavigationGuard(controller, password_path="/reset-password")
        await boot(controller, provider)
        await controller.login(ADMIN_EMAIL, ADMIN_PASSWORD)

        assert await guard.resolve("/audits", requires_auth=True) == "/reset-password"
        assert await guard.resolve("/reset-password") == "/reset-password"
