from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlsplit, urlunsplit

from authgate.config import DEFAULT_RECOVERY_MARKER
from authgate.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RecoveryIntent:
    """Write-once classification of the page's arrival URL.

    Computed synchronously before the controller subscribes to the identity
    stream. The provider rewrites the URL after validating a recovery link,
    so this value is never re-evaluated.
    """

    active: bool
    source_url: Optional[str] = None

    def __bool__(self) -> bool:
        return self.active


NO_RECOVERY = RecoveryIntent(active=False)


def _fragment_params(fragment: str) -> list[tuple[str, str]]:
    # Hash-routed fragments look like "/reset?type=recovery"; plain ones like
    # "access_token=...&type=recovery".
    if "?" in fragment:
        fragment = fragment.split("?", 1)[1]
    return parse_qsl(fragment.lstrip("#/"), keep_blank_values=True)


def detect_recovery_intent(
    url: Optional[str], marker: str = DEFAULT_RECOVERY_MARKER
) -> RecoveryIntent:
    """Classify a page load as a password-recovery load.

    Only the fragment is inspected. A marker of the form ``key=value`` must
    match one fragment parameter exactly; any other marker is matched as a
    substring of the fragment.
    """
    if not url:
        return NO_RECOVERY
    fragment = urlsplit(url).fragment
    if not fragment:
        return NO_RECOVERY

    if "=" in marker:
        key, value = marker.split("=", 1)
        found = any(k == key and v == value for k, v in _fragment_params(fragment))
    else:
        found = marker in fragment

    if not found:
        return NO_RECOVERY
    logger.warning("recovery_link_detected", marker=marker)
    return RecoveryIntent(active=True, source_url=url)


_INDEX_SUFFIX = re.compile(r"/index\.html$")


def build_reset_redirect(base_url: str) -> str:
    """Return a clean redirect target for password-reset emails.

    Query and fragment are dropped, a trailing ``/index.html`` and trailing
    slashes are removed from the path.
    """
    parts = urlsplit(base_url)
    path = _INDEX_SUFFIX.sub("", parts.path).rstrip("/")
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))
