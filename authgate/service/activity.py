from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, Optional, Union

from authgate.logging import get_logger

logger = get_logger(__name__)


class ActivitySignal(str, Enum):
    """Coarse input activity that proves the user is still present."""

    POINTER_MOVE = "pointer_move"
    POINTER_DOWN = "pointer_down"
    KEY_PRESS = "key_press"
    SCROLL = "scroll"
    TOUCH_START = "touch_start"


# Browser event names accepted from the page host
DOM_EVENT_ALIASES: Dict[str, ActivitySignal] = {
    "mousemove": ActivitySignal.POINTER_MOVE,
    "mousedown": ActivitySignal.POINTER_DOWN,
    "keypress": ActivitySignal.KEY_PRESS,
    "keydown": ActivitySignal.KEY_PRESS,
    "scroll": ActivitySignal.SCROLL,
    "touchstart": ActivitySignal.TOUCH_START,
}


def parse_activity_signal(signal: Union[str, ActivitySignal]) -> ActivitySignal:
    if isinstance(signal, ActivitySignal):
        return signal
    key = str(signal).strip().lower()
    if key in DOM_EVENT_ALIASES:
        return DOM_EVENT_ALIASES[key]
    try:
        return ActivitySignal(key)
    except ValueError:
        raise ValueError(f"unknown activity signal: {signal!r}") from None


class ActivityMonitor:
    """Forwards activity signals to the controller while a session is active.

    The controller attaches a rearm callback when it enters ``active`` and
    detaches it on every transition out. Signals received while detached
    are counted and otherwise ignored.
    """

    def __init__(self) -> None:
        self._callback: Optional[Callable[[ActivitySignal], None]] = None
        self.forwarded = 0
        self.ignored = 0

    @property
    def attached(self) -> bool:
        return self._callback is not None

    def attach(self, callback: Callable[[ActivitySignal], None]) -> None:
        self._callback = callback
        logger.debug("activity_monitor_attached")

    def detach(self) -> None:
        if self._callback is None:
            return
        self._callback = None
        logger.debug("activity_monitor_detached")

    def notify(self, signal: Union[str, ActivitySignal]) -> bool:
        parsed = parse_activity_signal(signal)
        callback = self._callback
        if callback is None:
            self.ignored += 1
            return False
        self.forwarded += 1
        callback(parsed)
        return True
