from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from khscrm.logging import get_logger
from khscrm.storage.errors import ConstraintViolation
from khscrm.storage.models import RefreshToken, RevokeReason, Role, User, utcnow


class MemoryStore:
    """In-process user and refresh-token store for tests and local development.

    Records are copied on the way in and out so callers never hold a
    reference into the store's own state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # token_hash -> token id
        self._token_index: Dict[str, str] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        *,
        name: str = "",
        role: Role = Role.WORKER,
        is_active: bool = True,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", field="email")
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                role=Role(role),
                is_active=is_active,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[:limit]]

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            user.updated_at = utcnow()
            return replace(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            return replace(user)

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = when or utcnow()

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def _insert_locked(self, token: RefreshToken) -> RefreshToken:
        if token.user_id not in self.users:
            raise ConstraintViolation("refresh token user missing", {"user_id": token.user_id})
        if token.token_hash in self._token_index or token.id in self.refresh_tokens:
            raise ConstraintViolation("refresh token already exists", field="token_hash")
        stored = replace(token)
        self.refresh_tokens[stored.id] = stored
        self._token_index[stored.token_hash] = stored.id
        return replace(stored)

    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            return self._insert_locked(token)

    def find_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._token_index.get(token_hash)
            token = self.refresh_tokens.get(token_id) if token_id else None
            return replace(token) if token else None

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            return replace(token) if token else None

    def list_user_refresh_tokens(
        self,
        user_id: str,
        *,
        active_only: bool = False,
        now: Optional[datetime] = None,
    ) -> List[RefreshToken]:
        now = now or utcnow()
        with self._data_lock:
            tokens = [
                replace(t)
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and (not active_only or t.is_active(now))
            ]
        return sorted(tokens, key=lambda t: t.issued_at)

    def mark_refresh_revoked(
        self, token_id: str, reason: RevokeReason = RevokeReason.LOGOUT
    ) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token or token.is_revoked:
                return False
            token.revoked_at = utcnow()
            token.revoked_reason = reason
            return True

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: RevokeReason = RevokeReason.LOGOUT
    ) -> int:
        now = utcnow()
        revoked = 0
        with self._data_lock:
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and not token.is_revoked:
                    token.revoked_at = now
                    token.revoked_reason = reason
                    revoked += 1
        return revoked

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [t for t in self.refresh_tokens.values() if t.is_expired(now)]
            for token in expired:
                self.refresh_tokens.pop(token.id, None)
                self._token_index.pop(token.token_hash, None)
            return len(expired)

    def rotate_refresh_token(
        self, old_hash: str, new_token: RefreshToken, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Revoke ``old_hash`` and insert ``new_token`` as one step.

        Returns ``None`` when the old token is missing, revoked or expired,
        so at most one caller can ever rotate a given token.
        """
        now = now or utcnow()
        with self._data_lock:
            token_id = self._token_index.get(old_hash)
            current = self.refresh_tokens.get(token_id) if token_id else None
            if not current or not current.is_active(now):
                return None
            if new_token.user_id != current.user_id:
                raise ConstraintViolation(
                    "rotated token must belong to the same user",
                    {"user_id": new_token.user_id},
                )
            stored = self._insert_locked(new_token)
            current.revoked_at = now
            current.revoked_reason = RevokeReason.ROTATED
            current.replaced_by = stored.id
            return stored
