from __future__ import annotations

from typing import Optional, Tuple

import httpx

from authgate.config import Settings, get_settings, reset_settings_cache
from authgate.identity.base import IdentityProvider
from authgate.identity.http import HttpIdentityProvider
from authgate.identity.memory import MemoryIdentityProvider
from authgate.logging import get_logger
from authgate.service.controller import SessionController
from authgate.service.navigation import NavigationGuard
from authgate.service.roles import ProfileStore, RoleResolver
from authgate.storage.memory import MemoryProfileStore
from authgate.storage.rest import RestProfileStore

logger = get_logger(__name__)


def build_backends(
    settings: Settings,
    arrival_url: Optional[str] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Tuple[IdentityProvider, ProfileStore]:
    if settings.use_memory_backends:
        return (
            MemoryIdentityProvider(
                arrival_url=arrival_url, recovery_marker=settings.recovery_marker
            ),
            MemoryProfileStore(),
        )
    provider = HttpIdentityProvider(
        settings.identity_url,
        api_key=settings.identity_api_key,
        arrival_url=arrival_url,
        recovery_marker=settings.recovery_marker,
        timeout=settings.http_timeout_seconds,
        transport=transport,
    )
    store = RestProfileStore(
        settings.identity_url,
        api_key=settings.identity_api_key,
        table=settings.profiles_table,
        access_token=provider.access_token,
        timeout=settings.http_timeout_seconds,
        transport=transport,
    )
    return provider, store


class Runtime:
    """Holds the controller and its collaborators for one page load."""

    def __init__(
        self,
        arrival_url: Optional[str] = None,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.arrival_url = arrival_url
        logger.info(
            "runtime_init_started",
            use_memory_backends=self.settings.use_memory_backends,
            arrival_url=arrival_url,
        )
        self.provider, self.store = build_backends(
            self.settings, arrival_url, transport=transport
        )
        self.resolver = RoleResolver(self.store)
        # Recovery intent is captured here, before start() subscribes to the stream
        self.controller = SessionController(
            self.provider,
            self.resolver,
            self.settings,
            arrival_url=arrival_url,
        )
        self.navigation = NavigationGuard(self.controller)
        logger.info(
            "runtime_init_completed",
            recovery_intent=self.controller.recovery_intent.active,
        )

    async def start(self) -> SessionController:
        await self.controller.start()
        return self.controller

    async def close(self) -> None:
        await self.controller.close()


runtime: Runtime | None = None


def get_runtime(arrival_url: Optional[str] = None) -> Runtime:
    """Get or create the page's Runtime singleton.

    ``arrival_url`` only matters on the first call: recovery intent is
    write-once per page load.
    """
    global runtime
    if runtime is None:
        runtime = Runtime(arrival_url=arrival_url)
    return runtime


def reset_runtime_for_tests() -> None:
    """Forget the Runtime singleton and cached settings for isolated test runs."""
    global runtime
    runtime = None
    reset_settings_cache()
