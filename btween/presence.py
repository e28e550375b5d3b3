import logging
import threading

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Runtime map of user id -> active connection handles.

    A user is online iff they hold at least one handle. Handles are the
    Socket.IO session ids of the connections, so one user with several
    devices or tabs open has several handles.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._handles = {}
        self._owners = {}

    def register(self, user_id, handle):
        """Add a handle for user_id. Returns True only when this is the
        user's first handle, i.e. the user just came online."""
        with self._lock:
            previous = self._owners.get(handle)
            if previous is not None and previous != user_id:
                self._discard(previous, handle)
            self._owners[handle] = user_id
            handles = self._handles.setdefault(user_id, set())
            newly_online = not handles
            handles.add(handle)
        if newly_online:
            logger.info("user %s online", user_id)
        return newly_online

    def unregister(self, handle):
        """Remove a handle. Returns the owning user id if that user has no
        handles left (just went offline), otherwise None."""
        with self._lock:
            user_id = self._owners.pop(handle, None)
            if user_id is None:
                return None
            went_offline = self._discard(user_id, handle)
        if went_offline:
            logger.info("user %s offline", user_id)
            return user_id
        return None

    def _discard(self, user_id, handle):
        handles = self._handles.get(user_id)
        if handles is None:
            return False
        handles.discard(handle)
        if not handles:
            del self._handles[user_id]
            return True
        return False

    def is_online(self, user_id):
        with self._lock:
            return bool(self._handles.get(user_id))

    def connections_for(self, user_id):
        with self._lock:
            return set(self._handles.get(user_id, ()))

    def all_online_user_ids(self):
        with self._lock:
            return set(self._handles)

    def user_for(self, handle):
        with self._lock:
            return self._owners.get(handle)
