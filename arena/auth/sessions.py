"""In-memory session registry backed by bcrypt credential checks."""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from arena import db
from arena.auth.utils import burn_password_check, generate_session_token, verify_password
from arena.errors import AuthError
from arena.models import Session, User, utcnow

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(
        self,
        ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ttl = ttl
        self.clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def authenticate(self, username: str, password: str, origin_ip: str = "") -> Session:
        """Check credentials and mint a session.

        Unknown users, wrong passwords and disabled accounts all raise the same
        AuthError. The actual reason goes to the log and the audit table.
        """
        user = db.get_user_by_username(username)
        if not user:
            burn_password_check(password)
            raise self._reject(username, None, "unknown user")

        if not verify_password(password, user.password_hash):
            raise self._reject(username, user.id, "invalid password")

        if not user.is_active:
            raise self._reject(username, user.id, "account disabled")

        now = self.clock()
        db.update_last_login(user.id, now)

        session = Session(
            token=generate_session_token(),
            user_id=user.id,
            created_at=now,
            expires_at=now + self.ttl,
            origin_ip=origin_ip,
        )
        with self._lock:
            self._sessions[session.token] = session
            active = len(self._sessions)

        logger.info(f"Session created for user {user.id} ({active} active)")
        db.log_event("LOGIN_SUCCESS", user.id, details=f"ip={origin_ip}")
        return session

    def _reject(self, username: str, user_id: int | None, reason: str) -> AuthError:
        logger.warning(f"Login failed for {username!r}: {reason}")
        db.log_event("LOGIN_FAILED", user_id, details=f"username={username}, reason={reason}", level="warning")
        return AuthError(reason)

    def get_session(self, token: str) -> Session | None:
        """Live session for a token, evicting it if it has expired."""
        if not token:
            return None
        now = self.clock()
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return None
            if session.is_expired(now):
                del self._sessions[token]
                logger.info(f"Session for user {session.user_id} expired")
                return None
            return session

    def resolve(self, token: str) -> User | None:
        session = self.get_session(token)
        if session is None:
            return None

        user = db.get_user_by_id(session.user_id)
        if user is None or not user.is_active:
            return None
        return user

    def revoke(self, token: str) -> bool:
        with self._lock:
            session = self._sessions.pop(token, None)
        if session is None:
            return False
        logger.info(f"Session revoked for user {session.user_id}")
        db.log_event("LOGOUT", session.user_id)
        return True

    def revoke_user(self, user_id: int) -> int:
        """Drop every session belonging to a user."""
        with self._lock:
            tokens = [t for t, s in self._sessions.items() if s.user_id == user_id]
            for token in tokens:
                del self._sessions[token]
        return len(tokens)

    def sweep_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [t for t, s in self._sessions.items() if s.is_expired(now)]
            for token in expired:
                del self._sessions[token]
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)

    def clear(self):
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
