from __future__ import annotations

import json
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import SessionRecord, User, ensure_utc, utcnow

_USER_DATETIME_FIELDS = (
    "email_verification_expires",
    "password_reset_expires",
    "created_at",
    "updated_at",
)
_SESSION_DATETIME_FIELDS = ("created_at", "last_accessed", "expires_at")


class MemoryStore:
    """In-memory credential store and durable session table.

    Used for tests and single-process development. When ``state_path`` is
    given the contents are written to a JSON file after every mutation and
    reloaded on start.
    """

    def __init__(self, state_path: str | Path | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self._user_id_seq: int = 1
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path:
            self._load_state()

    # users
    def create_user(self, name: str, email: str, password_hash: str) -> User:
        email = email.strip().lower()
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=self._user_id_seq,
                name=name,
                email=email,
                password_hash=password_hash,
                created_at=now,
                updated_at=now,
            )
            self._user_id_seq += 1
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email_verification_token == token),
                None,
            )
            return replace(user) if user else None

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.password_reset_token == token),
                None,
            )
            return replace(user) if user else None

    def set_email_verification_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.email_verification_token = token
            user.email_verification_expires = expires_at
            user.updated_at = utcnow()
            self._persist_state()

    def mark_email_verified(self, user_id: int) -> Optional[User]:
        """Set the verified flag and clear the verification token pair together."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            user.email_verification_token = None
            user.email_verification_expires = None
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def set_password_reset_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.password_reset_token = token
            user.password_reset_expires = expires_at
            user.updated_at = utcnow()
            self._persist_state()

    def update_password(self, user_id: int, password_hash: str) -> None:
        """Store a new hash and clear the reset token pair in one write."""
        with self._data_lock:
            user = self._require_user(user_id)
            user.password_hash = password_hash
            user.password_reset_token = None
            user.password_reset_expires = None
            user.updated_at = utcnow()
            self._persist_state()

    def _require_user(self, user_id: int) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return user

    # sessions
    def create_session(
        self,
        token: str,
        user_id: int,
        *,
        created_at: datetime,
        expires_at: datetime,
    ) -> SessionRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if token in self.sessions:
                raise ConstraintViolation("session token already exists", {"field": "token"})
            record = SessionRecord(
                token=token,
                user_id=user_id,
                created_at=created_at,
                last_accessed=created_at,
                expires_at=expires_at,
            )
            self.sessions[token] = record
            self._persist_state()
            return replace(record)

    def get_session_with_user(
        self, token: str
    ) -> Optional[tuple[SessionRecord, User]]:
        with self._data_lock:
            record = self.sessions.get(token)
            if not record:
                return None
            user = self.users.get(record.user_id)
            if not user:
                return None
            return replace(record), replace(user)

    def touch_session(self, token: str, last_accessed: datetime) -> None:
        with self._data_lock:
            record = self.sessions.get(token)
            if not record:
                return
            record.last_accessed = max(record.last_accessed, last_accessed)
            self._persist_state()

    def delete_session(self, token: str) -> Optional[int]:
        """Remove a session row, returning the owning user id if one existed."""
        with self._data_lock:
            record = self.sessions.pop(token, None)
            if record:
                self._persist_state()
            return record.user_id if record else None

    def list_user_sessions(self, user_id: int, now: datetime) -> List[SessionRecord]:
        with self._data_lock:
            live = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_live(now)
            ]
            return sorted(live, key=lambda s: s.created_at, reverse=True)

    def delete_user_sessions(self, user_id: int) -> int:
        with self._data_lock:
            stale = [tok for tok, sess in self.sessions.items() if sess.user_id == user_id]
            for tok in stale:
                self.sessions.pop(tok, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [tok for tok, sess in self.sessions.items() if not sess.is_live(now)]
            for tok in expired:
                self.sessions.pop(tok, None)
            if expired:
                self._persist_state()
            return len(expired)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # persistence
    @staticmethod
    def _serialize(obj: Any, datetime_fields: tuple[str, ...]) -> Dict[str, Any]:
        data = asdict(obj)
        for key in datetime_fields:
            if data.get(key) is not None:
                data[key] = data[key].isoformat()
        return data

    @staticmethod
    def _deserialize(raw: Dict[str, Any], datetime_fields: tuple[str, ...]) -> Dict[str, Any]:
        data = dict(raw)
        for key in datetime_fields:
            if data.get(key):
                data[key] = ensure_utc(datetime.fromisoformat(data[key]))
        return data

    def _persist_state(self) -> None:
        if not self.state_path:
            return
        state = {
            "user_id_seq": self._user_id_seq,
            "users": [self._serialize(u, _USER_DATETIME_FIELDS) for u in self.users.values()],
            "sessions": [
                self._serialize(s, _SESSION_DATETIME_FIELDS) for s in self.sessions.values()
            ],
        }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(self.state_path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: User(**self._deserialize(u, _USER_DATETIME_FIELDS))
            for u in data.get("users", [])
        }
        self.sessions = {
            s["token"]: SessionRecord(**self._deserialize(s, _SESSION_DATETIME_FIELDS))
            for s in data.get("sessions", [])
        }
        self._user_id_seq = data.get(
            "user_id_seq", max(self.users.keys(), default=0) + 1
        )
        self.logger.info(
            "memory_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True


__all__ = ["MemoryStore"]
