"""
Sign-in providers.

``FirebaseAuthProvider`` verifies Firebase ID tokens produced by a Firebase
client sign-in. ``MockAuthProvider`` is used when Firebase is not
configured: it fabricates a demo learner after a short delay. Both notify
listeners on every sign-in and sign-out, so the session reacts the same way
in either mode.
"""

import random
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from firebase_admin import auth as firebase_auth

from .errors import AuthError
from .logger import logger
from .models import User

AuthListener = Callable[[Optional[User]], None]


class AuthProvider(ABC):
    """Base class: listener bookkeeping shared by every provider."""

    def __init__(self):
        self._listeners: List[AuthListener] = []
        self._lock = threading.Lock()
        self.current_user: Optional[User] = None

    def on_auth_state_changed(self, callback: AuthListener) -> Callable[[], None]:
        """
        Register ``callback`` for sign-in/sign-out events.

        Unlike the Firebase client SDK there is no initial call: a restored
        session keeps its user until a real sign-in or sign-out happens.
        Returns a function that unsubscribes.
        """
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, user: Optional[User]) -> None:
        self.current_user = user
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(user)

    @abstractmethod
    def sign_in(self, id_token: Optional[str] = None) -> User:
        """Sign in, notify listeners and return the user. Raises AuthError on failure."""

    def sign_out(self) -> None:
        logger.info(f"Signing out {self.current_user.id if self.current_user else 'nobody'}")
        self._notify(None)


class FirebaseAuthProvider(AuthProvider):
    """Verifies ID tokens with firebase-admin (the app must already be initialized)."""

    def __init__(self, app=None):
        super().__init__()
        self.app = app

    def sign_in(self, id_token: Optional[str] = None) -> User:
        if not id_token:
            raise AuthError("An ID token is required to sign in")
        try:
            claims = firebase_auth.verify_id_token(id_token, app=self.app)
        except Exception as e:
            logger.error(f"Error verifying sign-in token: {e}")
            raise AuthError("Sign-in failed") from e

        user = User(
            id=claims["uid"],
            name=claims.get("name") or "Learner",
            email=claims.get("email"),
            photo_url=claims.get("picture"),
            joined_at=int(time.time() * 1000),
        )
        logger.success(f"Signed in: {user.id}")
        self._notify(user)
        return user


class MockAuthProvider(AuthProvider):
    """Demo-mode provider: no credentials, a locally fabricated user."""

    def __init__(self, delay: float = 0.8):
        super().__init__()
        self.delay = delay

    def sign_in(self, id_token: Optional[str] = None) -> User:
        logger.info("Firebase not configured. Using mock auth.")
        if self.delay > 0:
            time.sleep(self.delay)
        user = User(
            id=f"mock-user-{random.randint(0, 999)}",
            name="Demo Student",
            email="student@cognipath.demo",
            photo_url=None,
            joined_at=int(time.time() * 1000),
        )
        self._notify(user)
        return user
