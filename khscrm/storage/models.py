from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Account roles. Every layer compares against these members."""

    OWNER = "OWNER"
    WORKER = "WORKER"


class RevokeReason(str, Enum):
    ROTATED = "rotated"
    LOGOUT = "logout"
    REUSE_DETECTED = "reuse_detected"
    ADMIN = "admin"


@dataclass
class User:
    id: str
    email: str
    name: str = ""
    role: Role = Role.WORKER
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


def hash_token(value: str) -> str:
    """Digest used to index refresh tokens; raw values are never stored."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@dataclass
class RefreshToken:
    id: str
    token_hash: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    remember_me: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[RevokeReason] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_value: str,
        ttl: timedelta,
        *,
        remember_me: bool = False,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_hash=hash_token(token_value),
            user_id=user_id,
            issued_at=issued,
            expires_at=issued + ttl,
            remember_me=remember_me,
        )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def was_rotated(self) -> bool:
        return self.revoked_reason == RevokeReason.ROTATED

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        # A token is already expired at exactly its expiry instant
        return (now or utcnow()) >= self.expires_at

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)
