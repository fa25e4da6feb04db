from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Protocol, Set

from authgate.logging import get_logger
from authgate.storage.models import ProviderSession

logger = get_logger(__name__)

# Raw event names on the identity provider's push channel
SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
INITIAL_SESSION = "INITIAL_SESSION"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
USER_UPDATED = "USER_UPDATED"
USER_DELETED = "USER_DELETED"
PASSWORD_RECOVERY = "PASSWORD_RECOVERY"

ProviderCallback = Callable[[str, Optional[ProviderSession]], Awaitable[None]]


class IdentityProvider(Protocol):
    async def sign_in(self, email: str, password: str) -> ProviderSession: ...

    async def sign_out(self) -> None: ...

    async def request_password_reset(self, email: str, redirect_to: str) -> None: ...

    async def update_password(self, new_password: str) -> None: ...

    def subscribe(self, callback: ProviderCallback) -> Callable[[], None]: ...

    def current_session(self) -> Optional[ProviderSession]: ...

    def is_recovery_callback(self) -> bool: ...

    async def consume_arrival_url(self) -> Optional[ProviderSession]: ...


class ProviderEventEmitter:
    """Client-side push channel shared by the provider adapters.

    Subscribers are notified on their own tasks so a provider call made from
    inside a controller transition never re-enters that transition. Every
    new subscriber first receives ``INITIAL_SESSION`` with the current session.
    """

    def __init__(self) -> None:
        self._subscribers: List[ProviderCallback] = []
        self._tasks: Set[asyncio.Task] = set()
        self._session: Optional[ProviderSession] = None

    def current_session(self) -> Optional[ProviderSession]:
        return self._session

    def subscribe(self, callback: ProviderCallback) -> Callable[[], None]:
        self._subscribers.append(callback)
        self._schedule(callback, INITIAL_SESSION, self._session)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, event: str, session: Optional[ProviderSession]) -> None:
        logger.debug(
            "identity_event_emitted",
            identity_event=event,
            has_session=session is not None,
            subscribers=len(self._subscribers),
        )
        for callback in list(self._subscribers):
            self._schedule(callback, event, session)

    def _schedule(
        self, callback: ProviderCallback, event: str, session: Optional[ProviderSession]
    ) -> None:
        loop = asyncio.get_running_loop()
        task = loop.create_task(callback(event, session))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "identity_subscriber_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait until every delivered event has been handled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
