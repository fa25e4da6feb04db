from __future__ import annotations

from typing import Optional

from authgate.logging import get_logger
from authgate.service.controller import SessionController

logger = get_logger(__name__)


class NavigationGuard:
    """Routing decisions for the page shell.

    Every navigation first awaits the controller's readiness so no decision
    is made against the boot placeholder state.
    """

    def __init__(
        self,
        controller: SessionController,
        *,
        login_path: str = "/login",
        home_path: str = "/",
        password_path: Optional[str] = None,
        ready_timeout: Optional[float] = None,
    ) -> None:
        self.controller = controller
        self.login_path = login_path
        self.home_path = home_path
        self.password_path = password_path
        self.ready_timeout = ready_timeout

    async def resolve(self, target: str, *, requires_auth: bool = False) -> str:
        """Return the path the shell should actually render for ``target``."""
        snapshot = await self.controller.wait_ready(self.ready_timeout)
        if self.password_path and snapshot.requires_password_change:
            if target != self.password_path:
                logger.debug("navigation_redirect_password_change", target=target)
            return self.password_path
        if requires_auth and not snapshot.is_authenticated:
            logger.debug("navigation_redirect_login", target=target, state=snapshot.state.value)
            return self.login_path
        if target == self.login_path and snapshot.is_authenticated:
            logger.debug("navigation_redirect_home", target=target)
            return self.home_path
        return target
