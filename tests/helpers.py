"""Shared constants and coroutines for controller tests."""

from __future__ import annotations

import asyncio

from authgate.identity.memory import MemoryIdentityProvider
from authgate.service.controller import SessionController

ADMIN_EMAIL = "a@x.com"
ADMIN_PASSWORD = "pw"
ADMIN_ID = "user-a"
RECOVERY_URL = "https://audits.example.com/#access_token=tok&type=recovery"


async def boot(controller: SessionController, provider: MemoryIdentityProvider):
    """Start the controller and wait for its first settled state."""
    await controller.start()
    await provider.drain()
    return await controller.wait_ready(timeout=1.0)


async def settle(controller: SessionController, provider: MemoryIdentityProvider) -> None:
    """Let queued push events and controller background tasks run out."""
    for _ in range(3):
        await provider.drain()
        await asyncio.sleep(0)


async def wait_for_state(controller: SessionController, state, timeout: float = 1.0) -> None:
    async def _poll():
        while controller.state is not state:
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout=timeout)
