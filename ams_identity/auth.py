"""
Session State.

Provides an injectable ``SessionStore`` that holds the authenticated user
profile (or none) and the initial loading flag.  It is the single source
of truth read by the rest of the application.

Usage::

    from ams_identity.auth import SessionStore
    from ams_identity.logger import get_logger

    store = SessionStore(get_logger("session"))
    unsubscribe = store.subscribe(lambda snapshot: print(snapshot.user))
    store.transition(profile)
    store.user            # -> profile
    store.transition(None)
    unsubscribe()
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Optional

from ams_identity.logger import StructuredLogger
from ams_identity.models.user import UserProfile


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the store handed to listeners."""

    user: Optional[UserProfile]
    is_loading: bool
    epoch: int

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None


@dataclass(frozen=True)
class SessionTransition:
    """Result of one ``SessionStore.transition`` call.

    ``applied`` is ``False`` for stale sign-ins.  ``changed`` is ``True``
    only when the held user identity actually changed.
    """

    previous: Optional[UserProfile]
    current: Optional[UserProfile]
    applied: bool

    @property
    def changed(self) -> bool:
        previous_id = self.previous.id if self.previous is not None else None
        current_id = self.current.id if self.current is not None else None
        return self.applied and previous_id != current_id


SessionListener = Callable[[SessionSnapshot], None]


class SessionStore:
    """Owned state cell for the current session.

    All writes go through :meth:`transition`.  Every sign-out (transition
    to ``None``) advances the *epoch*; a sign-in carrying an older epoch
    is stale and is rejected, so a slow login cannot resurrect a session
    the user or backend has since ended.
    """

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger
        self._lock: threading.RLock = threading.RLock()
        self._user: Optional[UserProfile] = None
        self._is_loading: bool = True
        self._epoch: int = 0
        self._listeners: list[SessionListener] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def user(self) -> Optional[UserProfile]:
        with self._lock:
            return self._user

    @property
    def is_authenticated(self) -> bool:
        """``True`` when a user is currently signed in."""
        with self._lock:
            return self._user is not None

    @property
    def is_loading(self) -> bool:
        """``True`` until the first transition after process start."""
        with self._lock:
            return self._is_loading

    @property
    def epoch(self) -> int:
        """Sign-out counter captured by operations before they suspend."""
        with self._lock:
            return self._epoch

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                user=self._user, is_loading=self._is_loading, epoch=self._epoch,
            )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def transition(
        self,
        user: Optional[UserProfile],
        *,
        epoch: Optional[int] = None,
    ) -> SessionTransition:
        """Move the store to *user* (``None`` signs out).

        Any call, applied or not, ends the initial loading phase.

        Args:
            user: The profile to hold, or ``None`` to clear the session.
            epoch: The :attr:`epoch` observed when the sign-in began.  When
                given and a sign-out has happened since, the sign-in is
                rejected.

        Returns:
            A ``SessionTransition`` describing what happened.
        """
        with self._lock:
            previous = self._user
            was_loading = self._is_loading
            self._is_loading = False

            if user is not None and epoch is not None and epoch != self._epoch:
                self._logger.info(
                    "Rejected stale sign-in for %s (epoch %d, current %d).",
                    user.email, epoch, self._epoch,
                    extra={"event": "STALE_SIGN_IN", "user_id": user.id},
                )
                result = SessionTransition(previous=previous, current=previous, applied=False)
            else:
                if user is None:
                    self._epoch += 1
                self._user = user
                result = SessionTransition(previous=previous, current=user, applied=True)

            notify = result.changed or was_loading
            snapshot = self.snapshot()
            listeners = list(self._listeners)

        if notify:
            self._notify(listeners, snapshot)
        return result

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register *listener* for state changes.

        Returns:
            A callable that removes the listener.  Safe to call twice.
        """
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, listeners: list[SessionListener], snapshot: SessionSnapshot) -> None:
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                self._logger.error("Session listener %r failed.", listener, exc_info=True)
