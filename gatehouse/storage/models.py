from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes coming back from drivers or JSON."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: int
    name: str
    email: str
    password_hash: str
    email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public_fields(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "email_verified": self.email_verified,
        }


@dataclass
class SessionRecord:
    """Row of the durable ``sessions`` table."""

    token: str
    user_id: int
    created_at: datetime
    last_accessed: datetime
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return ensure_utc(self.expires_at) > now


class MalformedSessionPayload(ValueError):
    """Stored session data could not be decoded."""


@dataclass
class SessionPayload:
    """User snapshot carried by a session, captured when the session is created."""

    user_id: int
    email: str
    name: str
    email_verified: bool
    created_at: datetime
    last_accessed: datetime

    @classmethod
    def from_user(cls, user: User, now: datetime) -> "SessionPayload":
        return cls(
            user_id=user.id,
            email=user.email,
            name=user.name,
            email_verified=user.email_verified,
            created_at=now,
            last_accessed=now,
        )

    def touched(self, now: datetime) -> "SessionPayload":
        # last_accessed never moves backwards
        return replace(self, last_accessed=max(self.last_accessed, now))

    def public_fields(self) -> Dict[str, Any]:
        return {
            "id": self.user_id,
            "name": self.name,
            "email": self.email,
            "email_verified": self.email_verified,
        }

    def to_json(self) -> str:
        return json.dumps(
            {
                "userId": self.user_id,
                "email": self.email,
                "name": self.name,
                "emailVerified": self.email_verified,
                "createdAt": self.created_at.isoformat(),
                "lastAccessed": self.last_accessed.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "SessionPayload":
        try:
            data = json.loads(raw)
            created_at = ensure_utc(datetime.fromisoformat(data["createdAt"]))
            last_accessed_raw = data.get("lastAccessed")
            last_accessed = (
                ensure_utc(datetime.fromisoformat(last_accessed_raw))
                if last_accessed_raw
                else created_at
            )
            user_id = data["userId"]
            if isinstance(user_id, bool) or not isinstance(user_id, int):
                raise TypeError("userId must be an integer")
            return cls(
                user_id=user_id,
                email=str(data["email"]),
                name=str(data["name"]),
                email_verified=bool(data.get("emailVerified", False)),
                created_at=created_at,
                last_accessed=last_accessed,
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise MalformedSessionPayload(str(exc)) from exc
