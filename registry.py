import logging
import threading

logger = logging.getLogger('ChatRelayRegistry')


class SessionRegistry:
    """Live connections (socket sid) mapped to authenticated usernames"""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions = {}  # {sid: username}, oldest registration first

    def register(self, sid, username):
        """Insert or overwrite the username for a connection"""
        with self._lock:
            # Re-inserting moves the sid to the end so the newest login wins
            self._sessions.pop(sid, None)
            self._sessions[sid] = username
        logger.info(f"Registered {username} on {sid}")

    def resolve(self, sid):
        with self._lock:
            return self._sessions.get(sid)

    def unregister(self, sid):
        """Remove a connection; returns the username it held, if any"""
        with self._lock:
            username = self._sessions.pop(sid, None)
        if username:
            logger.info(f"Unregistered {username} from {sid}")
        return username

    def list_active(self):
        with self._lock:
            # One entry per user even when logged in twice
            return list(dict.fromkeys(self._sessions.values()))

    def connection_for(self, username):
        """Most recently registered sid for a username"""
        with self._lock:
            for sid, name in reversed(list(self._sessions.items())):
                if name == username:
                    return sid
        return None

    def __contains__(self, sid):
        with self._lock:
            return sid in self._sessions

    def __len__(self):
        with self._lock:
            return len(self._sessions)
