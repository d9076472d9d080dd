"""Session tracking and verification gating."""

from enum import Enum
from typing import Callable, List, Optional

import structlog

from ..domain.errors import AuthUnverified, BackendError, PermissionDenied, translate_error
from ..domain.models import Identity
from ..repositories.base import AuthSession

logger = structlog.get_logger()


class SessionState(str, Enum):
    LOADING = "loading"
    SIGNED_OUT = "signed_out"
    UNVERIFIED = "unverified"
    READY = "ready"


class View(str, Enum):
    SIGN_IN = "sign_in"
    SIGN_UP = "sign_up"
    HOME = "home"
    HISTORY = "history"
    CHAT = "chat"
    SETTINGS = "settings"
    VERIFICATION_GATE = "verification_gate"
    LOADING = "loading"


PUBLIC_VIEWS = frozenset({View.SIGN_IN, View.SIGN_UP})
PROTECTED_VIEWS = frozenset({View.HOME, View.HISTORY, View.CHAT, View.SETTINGS})


def resolve_view(state: SessionState, requested: View) -> View:
    """Return the view actually shown when ``requested`` is asked for."""
    if requested in PUBLIC_VIEWS:
        return requested
    if state == SessionState.LOADING:
        return View.LOADING
    if state == SessionState.SIGNED_OUT:
        return View.SIGN_IN
    if state == SessionState.UNVERIFIED:
        return View.VERIFICATION_GATE
    if requested in (View.VERIFICATION_GATE, View.LOADING):
        return View.HOME
    return requested


SessionListener = Callable[[SessionState, Optional[Identity]], None]


class SessionManager:
    """Mirrors the provider's identity into local state.

    Each identity change triggers a reload so profile changes made elsewhere,
    such as a new photo, are picked up before dependents see the identity.
    """

    def __init__(self, auth: AuthSession) -> None:
        self.auth = auth
        self.identity: Optional[Identity] = None
        self._resolved = False
        self._listeners: List[SessionListener] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def state(self) -> SessionState:
        if not self._resolved:
            return SessionState.LOADING
        if self.identity is None:
            return SessionState.SIGNED_OUT
        if not self.identity.email_verified:
            return SessionState.UNVERIFIED
        return SessionState.READY

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def start(self) -> None:
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self.auth.on_identity_changed(self._on_identity_changed, self._on_listener_error)
        await self._on_identity_changed(self.auth.current_identity)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _publish(self, identity: Optional[Identity]) -> None:
        self.identity = identity
        self._resolved = True
        logger.info(
            "session_changed",
            uid=identity.uid if identity else None,
            state=self.state.value,
        )
        for listener in list(self._listeners):
            listener(self.state, identity)

    async def _on_identity_changed(self, identity: Optional[Identity]) -> None:
        if identity is None:
            self._publish(None)
            return
        try:
            fresh = await self.auth.reload()
        except BackendError as e:
            logger.warning("identity_reload_failed", uid=identity.uid, error=e.code)
            fresh = identity
        self._publish(fresh)

    async def _on_listener_error(self, error: Exception) -> None:
        logger.error("auth_listener_error", error=str(error))
        self._publish(None)

    def view_for(self, requested: View) -> View:
        return resolve_view(self.state, requested)

    def require_identity(self) -> Identity:
        if self.identity is None:
            raise PermissionDenied("Not authenticated. Please log in again.")
        return self.identity

    def require_verified(self) -> Identity:
        identity = self.require_identity()
        if not identity.email_verified:
            raise AuthUnverified()
        return identity

    async def resend_verification(self) -> None:
        identity = self.require_identity()
        try:
            await self.auth.send_verification_email()
        except BackendError as e:
            logger.error("verification_resend_failed", uid=identity.uid, error=e.code)
            raise translate_error(e) from e
        logger.info("verification_email_sent", uid=identity.uid)

    async def check_verification(self) -> bool:
        """Reload the identity and lift the gate if it is now verified."""
        identity = self.require_identity()
        try:
            fresh = await self.auth.reload()
        except BackendError as e:
            logger.error("verification_check_failed", uid=identity.uid, error=e.code)
            raise translate_error(e) from e
        if fresh is not None and fresh.email_verified:
            self._publish(fresh)
            return True
        return False

    async def sign_out(self) -> None:
        try:
            await self.auth.sign_out()
        except BackendError as e:
            logger.error("sign_out_failed", error=e.code)
            raise translate_error(e) from e
