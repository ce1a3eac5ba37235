"""Signed-in identity shared by every request of the process.

``SessionState`` subscribes once to an identity provider when the
application starts and keeps a read-only snapshot of the current identity.
Identities outside the allowed e-mail domain are signed out immediately and
never become the snapshot.

Ownership of an experience is checked here by comparing ``user_id`` values.
The store does not enforce it, so anything that talks to the store directly
can still change any record.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Protocol

from experiencehub.errors import AuthenticationError, PermissionDeniedError
from experiencehub.models import Experience

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Identity:
    user_id: str
    email: str


class AuthEvent(str, Enum):
    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"


Listener = Callable[[AuthEvent, "Identity | None"], None]


class IdentityProvider(Protocol):
    def current(self) -> Identity | None: ...

    def subscribe(self, listener: Listener) -> Callable[[], None]: ...

    def sign_out(self) -> None: ...


class LocalIdentityProvider:
    """In-process provider; ``sign_in`` plays the part of the OAuth callback."""

    def __init__(self) -> None:
        self._identity: Identity | None = None
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def current(self) -> Identity | None:
        return self._identity

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: AuthEvent, identity: Identity | None) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event, identity)

    def sign_in(self, identity: Identity) -> None:
        self._identity = identity
        self._emit(AuthEvent.SIGNED_IN, identity)

    def sign_out(self) -> None:
        self._identity = None
        self._emit(AuthEvent.SIGNED_OUT, None)


def email_allowed(email: str | None, domain: str) -> bool:
    """True when the e-mail's domain is ``domain`` or one of its sub-domains."""
    if not email or "@" not in email:
        return False
    host = email.rsplit("@", 1)[1].strip().lower()
    domain = domain.strip().lower().lstrip("@")
    return host == domain or host.endswith("." + domain)


class SessionState:
    """Process-wide snapshot of the signed-in identity."""

    def __init__(self, allowed_domain: str) -> None:
        self.allowed_domain = allowed_domain
        self._provider: IdentityProvider | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._identity: Identity | None = None
        self.last_rejected: str | None = None

    @property
    def snapshot(self) -> Identity | None:
        return self._identity

    @property
    def is_authenticated(self) -> bool:
        return self._identity is not None

    @property
    def started(self) -> bool:
        return self._unsubscribe is not None

    def start(self, provider: IdentityProvider) -> None:
        if self.started:
            self.stop()
        self._provider = provider
        self._unsubscribe = provider.subscribe(self._on_event)
        current = provider.current()
        if current is not None:
            self._on_event(AuthEvent.SIGNED_IN, current)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._unsubscribe = None
        self._provider = None
        self._identity = None

    def _on_event(self, event: AuthEvent, identity: Identity | None) -> None:
        if event is AuthEvent.SIGNED_OUT or identity is None:
            self._identity = None
            return
        if email_allowed(identity.email, self.allowed_domain):
            self._identity = identity
            self.last_rejected = None
            LOGGER.info("Signed in as %s", identity.email)
            return
        LOGGER.warning("Rejected sign-in for %s: only %s addresses are allowed", identity.email, self.allowed_domain)
        self._identity = None
        self.last_rejected = identity.email
        if self._provider is not None:
            self._provider.sign_out()

    def require_identity(self) -> Identity:
        if self._identity is None:
            raise AuthenticationError("Please sign in to continue")
        return self._identity

    def require_owner(self, record: Experience) -> Identity:
        identity = self.require_identity()
        if record.user_id != identity.user_id:
            raise PermissionDeniedError("You can only edit your own experiences")
        return identity
