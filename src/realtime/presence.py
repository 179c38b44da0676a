"""In-memory presence registry mapping users to live connection handles."""

import logging
from threading import Lock

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Thread-safe map of online users to their connection handles.

    A user may be connected through several handles at once (one per tab or
    device). A handle belongs to at most one user; announcing a different
    user on the same handle moves it. State is process-local and does not
    survive a restart.
    """

    def __init__(self) -> None:
        self._handles_by_user: dict[str, list[str]] = {}
        self._user_by_handle: dict[str, str] = {}
        self._lock = Lock()

    def set_online(self, user_id: str, handle: str) -> str | None:
        """Register ``handle`` for ``user_id``.

        Returns:
            The user the handle previously belonged to if that user has now
            gone offline, otherwise None.
        """
        with self._lock:
            previous = self._user_by_handle.get(handle)
            went_offline = None
            if previous is not None and previous != user_id:
                went_offline = self._detach(previous, handle)

            handles = self._handles_by_user.setdefault(user_id, [])
            if handle in handles:
                handles.remove(handle)
            handles.append(handle)
            self._user_by_handle[handle] = user_id

        logger.debug("User %s online on %s", user_id, handle)
        return went_offline

    def set_offline(self, handle: str) -> str | None:
        """Drop ``handle`` from the registry.

        Unknown handles are ignored.

        Returns:
            The owning user if it has no remaining handles, otherwise None.
        """
        with self._lock:
            user_id = self._user_by_handle.pop(handle, None)
            if user_id is None:
                return None
            went_offline = self._detach(user_id, handle)

        if went_offline:
            logger.debug("User %s offline", went_offline)
        return went_offline

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._handles_by_user.get(user_id))

    def handle_for(self, user_id: str) -> str | None:
        """Most recently registered handle for the user, if online."""
        with self._lock:
            handles = self._handles_by_user.get(user_id)
            return handles[-1] if handles else None

    def handles_for(self, user_id: str) -> list[str]:
        with self._lock:
            return list(self._handles_by_user.get(user_id, []))

    def user_for(self, handle: str) -> str | None:
        with self._lock:
            return self._user_by_handle.get(handle)

    def online_users(self) -> list[str]:
        with self._lock:
            return list(self._handles_by_user)

    def clear(self) -> None:
        with self._lock:
            self._handles_by_user.clear()
            self._user_by_handle.clear()

    def _detach(self, user_id: str, handle: str) -> str | None:
        # Caller holds the lock
        handles = self._handles_by_user.get(user_id, [])
        if handle in handles:
            handles.remove(handle)
        if handles:
            return None
        self._handles_by_user.pop(user_id, None)
        return user_id


# Global singleton instance
_presence_registry: PresenceRegistry | None = None


def get_presence_registry() -> PresenceRegistry:
    """Get or create the global presence registry."""
    global _presence_registry
    if _presence_registry is None:
        _presence_registry = PresenceRegistry()
    return _presence_registry


def reset_presence_registry() -> None:
    """Discard all presence state. Used at shutdown and in tests."""
    global _presence_registry
    _presence_registry = None
