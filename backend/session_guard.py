"""
Client-side session lifecycle.

``SessionGuard`` keeps the signed-in user for an app session, follows the
auth client's state notifications and, when an activity source is attached
(web only), signs the user out after a fixed period without activity.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol

from data_backend import AuthError, BackendError, DataBackend, is_admin_user

logger = logging.getLogger(__name__)

INACTIVITY_TIMEOUT_SECONDS = int(os.getenv("INACTIVITY_TIMEOUT_MINUTES", "30")) * 60
ACTIVITY_EVENTS = ("mousedown", "mousemove", "keypress", "scroll", "touchstart", "click")
INACTIVITY_NOTICE = "You have been logged out due to inactivity."

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"

AuthStateCallback = Callable[[str, Optional[Dict[str, Any]]], None]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class ThreadingScheduler:
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


class AccessDenied(Exception):
    pass


class Subscription:
    def __init__(self, client: "AuthClient", callback: AuthStateCallback) -> None:
        self._client = client
        self._callback = callback

    def unsubscribe(self) -> None:
        self._client._remove_listener(self._callback)


class AuthClient:
    """Holds the current session and notifies subscribers when it changes."""

    def __init__(self, backend: DataBackend) -> None:
        self.backend = backend
        self._session: Optional[Dict[str, Any]] = None
        self._listeners: List[AuthStateCallback] = []
        self._lock = threading.Lock()

    def get_session(self) -> Optional[Dict[str, Any]]:
        return self._session

    def on_auth_state_change(self, callback: AuthStateCallback) -> Subscription:
        with self._lock:
            self._listeners.append(callback)
        return Subscription(self, callback)

    def _remove_listener(self, callback: AuthStateCallback) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def _emit(self, event: str, session: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            callback(event, session)

    def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        session = self.backend.sign_in_with_password(email, password)
        self._session = session
        self._emit(SIGNED_IN, session)
        return session

    def sign_out(self) -> None:
        session = self._session
        if session:
            self.backend.sign_out(session.get("access_token") or "")
        self._session = None
        self._emit(SIGNED_OUT, None)

    def refresh_session(self) -> Optional[Dict[str, Any]]:
        """Re-validate the stored token; an expired one signs the client out."""
        session = self._session
        if not session:
            return None
        user = self.backend.get_user(session.get("access_token") or "")
        if user is None:
            logger.info("Session token rejected by backend; signing out")
            self._session = None
            self._emit(SIGNED_OUT, None)
            return None
        self._session = {**session, "user": user}
        return self._session


class ActivitySource:
    """Listener registry for user activity signals (pointer, keys, scroll)."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[[], None]]] = {}

    def add_listener(self, event: str, listener: Callable[[], None]) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def remove_listener(self, event: str, listener: Callable[[], None]) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            self._listeners.pop(event, None)

    def emit(self, event: str) -> None:
        for listener in list(self._listeners.get(event, ())):
            listener()

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, ()))
        return sum(len(listeners) for listeners in self._listeners.values())


class SessionGuard:
    """
    Two states: signed out, or signed in with one inactivity timer running.

    User state only changes through auth-state notifications. The timer and
    the activity listeners exist exactly while a user is present and an
    activity source is attached; use the guard as a context manager so they
    are released on every exit path.
    """

    def __init__(
        self,
        auth: AuthClient,
        *,
        activity_source: Optional[ActivitySource] = None,
        scheduler: Optional[Scheduler] = None,
        notify: Optional[Callable[[str], None]] = None,
        timeout_seconds: float = INACTIVITY_TIMEOUT_SECONDS,
    ) -> None:
        self.auth = auth
        self.activity_source = activity_source
        self.scheduler = scheduler or ThreadingScheduler()
        self.notify = notify or logger.warning
        self.timeout_seconds = timeout_seconds
        self.user: Optional[Dict[str, Any]] = None
        self.loading = True
        self._subscription: Optional[Subscription] = None
        self._timer: Optional[TimerHandle] = None
        self._generation = 0
        self._listening = False
        self._lock = threading.RLock()

    @property
    def signed_in(self) -> bool:
        return self.user is not None

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def __enter__(self) -> "SessionGuard":
        self.mount()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unmount()

    def mount(self) -> None:
        with self._lock:
            if self._subscription is not None:
                return
            self._subscription = self.auth.on_auth_state_change(self._handle_auth_state_change)
            session = self.auth.get_session()
            self._set_user(session.get("user") if session else None)
            self.loading = False

    def unmount(self) -> None:
        with self._lock:
            if self._subscription is not None:
                self._subscription.unsubscribe()
                self._subscription = None
            self._disarm()

    def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        return self.auth.sign_in_with_password(email, password)

    def sign_out(self) -> None:
        self.auth.sign_out()

    def _handle_auth_state_change(self, event: str, session: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            if self._subscription is None:
                return
            logger.debug("Auth state change: %s", event)
            self._set_user(session.get("user") if session else None)

    def _set_user(self, user: Optional[Dict[str, Any]]) -> None:
        self.user = user
        if user is not None:
            self._arm()
        else:
            self._disarm()

    def _arm(self) -> None:
        # Non-web platforms have no activity source and never time out.
        if self.activity_source is None:
            return
        if not self._listening:
            for event in ACTIVITY_EVENTS:
                self.activity_source.add_listener(event, self._handle_activity)
            self._listening = True
            logger.debug("Inactivity guard armed for %ss", self.timeout_seconds)
        self._reset_timer()

    def _disarm(self) -> None:
        if self._listening and self.activity_source is not None:
            for event in ACTIVITY_EVENTS:
                self.activity_source.remove_listener(event, self._handle_activity)
            self._listening = False
            logger.debug("Inactivity guard disarmed")
        self._cancel_timer()

    def _reset_timer(self) -> None:
        self._cancel_timer()
        if self.user is None:
            return
        generation = self._generation
        self._timer = self.scheduler.call_later(
            self.timeout_seconds, lambda: self._handle_timeout(generation)
        )

    def _cancel_timer(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _handle_activity(self) -> None:
        with self._lock:
            if self.user is None or not self._listening:
                return
            self._reset_timer()

    def _handle_timeout(self, generation: int) -> None:
        with self._lock:
            # A replaced or cancelled timer may still fire on its own thread.
            if generation != self._generation or self.user is None:
                return
            self._timer = None
            self._generation += 1
        # The backend sign-out runs without the guard lock held.
        logger.info("Auto-logout triggered due to inactivity")
        try:
            self.auth.sign_out()
        except BackendError:
            logger.exception("Auto-logout error")
            return
        self.notify(INACTIVITY_NOTICE)


def login_error_message(exc: AuthError) -> str:
    message = exc.message or ""
    if "Invalid login credentials" in message:
        return "Invalid email or password. Please try again."
    if "Email not confirmed" in message:
        return "Please confirm your email address before logging in."
    return "Login failed. Please check your credentials and try again."


def admin_sign_in(guard: SessionGuard, email: str, password: str) -> Dict[str, Any]:
    """Sign in through the guard and keep the session only for admins."""
    if not email or not password:
        raise AuthError("Please enter both email and password")
    try:
        session = guard.sign_in(email, password)
    except AuthError as exc:
        raise AuthError(login_error_message(exc), exc.status_code) from exc
    if not is_admin_user(session.get("user")):
        # Don't leave a non-admin session active.
        guard.sign_out()
        raise AccessDenied("Access denied. You do not have admin privileges to access this area.")
    return session
