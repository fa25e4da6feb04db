from __future__ import annotations

import asyncio
from typing import Callable, Optional

from authgate.logging import get_logger

logger = get_logger(__name__)


class InactivityTimer:
    """Single outstanding deferred callback owned by the session controller.

    At most one handle is ever live: ``arm`` cancels the previous handle
    before scheduling a new one and ``cancel`` is idempotent.
    """

    def __init__(self, timeout_seconds: float, on_timeout: Callable[[], None]) -> None:
        self.timeout_seconds = timeout_seconds
        self._on_timeout = on_timeout
        self._handle: Optional[asyncio.TimerHandle] = None
        self.armed_count = 0
        self.fired_count = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None and not self._handle.cancelled()

    def arm(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout_seconds, self._fire)
        self.armed_count += 1

    def cancel(self) -> bool:
        handle, self._handle = self._handle, None
        if handle is None:
            return False
        handle.cancel()
        return True

    def _fire(self) -> None:
        self._handle = None
        self.fired_count += 1
        logger.info("inactivity_timer_fired", timeout_seconds=self.timeout_seconds)
        self._on_timeout()


class ManualOperationGuard:
    """Suppresses identity-stream "session established" reports that duplicate
    an explicit ``login()`` call.

    While a login is in flight every establishment report is suppressed.
    After a successful login a grace window runs on an owned timer handle;
    inside it only reports for the session the login produced are
    suppressed. A failed login drives no transition, so it opens no window.
    "Session ended" reports never consult the guard.
    """

    def __init__(self, grace_seconds: float) -> None:
        self.grace_seconds = grace_seconds
        self._in_flight = 0
        self._session_id: Optional[str] = None
        self._grace_handle: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._in_flight > 0 or self._grace_handle is not None

    @property
    def pending(self) -> bool:
        return self._grace_handle is not None

    def begin(self) -> None:
        self._cancel_grace()
        self._in_flight += 1
        self._session_id = None

    def release(self, session_id: Optional[str] = None) -> None:
        if self._in_flight == 0:
            return
        self._in_flight -= 1
        if self._in_flight:
            return
        self._session_id = session_id
        if session_id is None or self.grace_seconds <= 0:
            self._expire()
            return
        loop = asyncio.get_running_loop()
        self._grace_handle = loop.call_later(self.grace_seconds, self._expire)

    def suppresses(self, session_id: Optional[str]) -> bool:
        if self._in_flight:
            return True
        if self._grace_handle is None:
            return False
        return session_id is not None and session_id == self._session_id

    def cancel(self) -> None:
        self._in_flight = 0
        self._cancel_grace()
        self._session_id = None

    def _cancel_grace(self) -> None:
        handle, self._grace_handle = self._grace_handle, None
        if handle is not None:
            handle.cancel()

    def _expire(self) -> None:
        self._grace_handle = None
        self._session_id = None


class ReadinessLatch:
    """Awaitable one-shot: consumers await the controller's first settle."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.flips = 0

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def set(self) -> bool:
        if self._event.is_set():
            return False
        self._event.set()
        self.flips += 1
        return True

    async def wait(self, timeout: Optional[float] = None) -> None:
        if timeout is None:
            await self._event.wait()
            return
        await asyncio.wait_for(self._event.wait(), timeout=timeout)
