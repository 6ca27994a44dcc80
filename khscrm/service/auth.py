from __future__ import annotations

import base64
import contextlib
import hashlib
import hmac
import json
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from khscrm.config import Settings
from khscrm.logging import get_logger
from khscrm.service.errors import (
    AuthenticationError,
    ExpiredTokenError,
    InvalidCredentialsError,
    InvalidTokenError,
    RevokedTokenError,
    ValidationError,
)
from khscrm.storage.models import RefreshToken, RevokeReason, Role, User, hash_token

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
PASSWORD_ALGO = "argon2id"
_PASSWORD_RULES = (
    (re.compile(r"[a-z]"), "password must contain a lowercase letter"),
    (re.compile(r"[A-Z]"), "password must contain an uppercase letter"),
    (re.compile(r"\d"), "password must contain a digit"),
)


def password_problems(password: str) -> List[str]:
    """Every rule the password breaks, empty when it is acceptable."""
    problems = []
    if len(password) < 8:
        problems.append("password must be at least 8 characters")
    if len(password) > 128:
        problems.append("password must be at most 128 characters")
    for pattern, message in _PASSWORD_RULES:
        if not pattern.search(password):
            problems.append(message)
    return problems


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        name: str = "",
        role: Role = Role.WORKER,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]: ...

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def find_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]: ...

    def list_user_refresh_tokens(
        self,
        user_id: str,
        *,
        active_only: bool = False,
        now: Optional[datetime] = None,
    ) -> List[RefreshToken]: ...

    def mark_refresh_revoked(
        self, token_id: str, reason: RevokeReason = RevokeReason.LOGOUT
    ) -> bool: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: RevokeReason = RevokeReason.LOGOUT
    ) -> int: ...

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...

    def rotate_refresh_token(
        self, old_hash: str, new_token: RefreshToken, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]: ...


@dataclass(frozen=True)
class AuthContext:
    """Verified identity handed to request handlers."""

    user_id: str
    email: str
    role: Role
    session_id: Optional[str]
    expires_at: datetime


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    refresh_token_id: str
    token_type: str = "bearer"


class AuthService:
    """Credential checks, token issuance/rotation and bearer verification."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the account does not exist so both failure
        # paths pay for one argon2 verification.
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_dummy_verify(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def _burn_dummy_verify(self, password: str) -> None:
        with contextlib.suppress(InvalidHash, VerifyMismatchError):
            self._pwd_hasher.verify(self._dummy_hash, password)

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def create_user(
        self,
        email: str,
        password: str,
        *,
        name: str = "",
        role: Role = Role.WORKER,
    ) -> User:
        """Create an account with a hashed password.

        Raises ``ValidationError`` for a weak password. A duplicate email
        surfaces as the store's ``ConstraintViolation``.
        """
        problems = password_problems(password)
        if problems:
            raise ValidationError(
                "password does not meet requirements",
                detail=[{"field": "password", "message": msg} for msg in problems],
            )
        user = self.store.create_user(email, name=name, role=Role(role))
        self.save_password(user.id, password)
        self.logger.info("user_created", user_id=user.id, role=user.role.value)
        return user

    # credential verifier
    def verify_credentials(self, email: str, password: str) -> User:
        normalized = (email or "").strip().lower()
        if not normalized:
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        user = self.store.get_user_by_email(normalized)
        if user is None:
            self._burn_dummy_verify(password or "")
            self.logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        password_ok = self.verify_password(user.id, password or "")
        if not password_ok or not user.is_active:
            self.logger.info(
                "login_failed",
                user_id=user.id,
                reason="bad_password" if not password_ok else "inactive",
            )
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        return user

    # token issuer
    def _refresh_ttl(self, remember_me: bool) -> timedelta:
        if remember_me:
            return timedelta(days=self.settings.remember_me_refresh_ttl_days)
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def _new_refresh_record(
        self, user: User, remember_me: bool, now: datetime
    ) -> tuple[str, RefreshToken]:
        value = secrets.token_urlsafe(48)
        record = RefreshToken.new(
            user.id, value, self._refresh_ttl(remember_me), remember_me=remember_me, now=now
        )
        return value, record

    def _build_pair(
        self, user: User, refresh_value: str, record: RefreshToken, now: datetime
    ) -> TokenPair:
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        access_payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "role": Role(user.role).value,
            "sid": record.id,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(access_exp.timestamp()),
        }
        return TokenPair(
            access_token=self._encode_jwt(access_payload),
            refresh_token=refresh_value,
            access_expires_at=datetime.fromtimestamp(access_payload["exp"], timezone.utc),
            refresh_expires_at=record.expires_at,
            refresh_token_id=record.id,
        )

    def issue_tokens(self, user: User, remember_me: bool = False) -> TokenPair:
        now = self._now()
        value, record = self._new_refresh_record(user, remember_me, now)
        stored = self.store.insert_refresh_token(record)
        return self._build_pair(user, value, stored, now)

    def login(
        self, email: str, password: str, *, remember_me: bool = False
    ) -> tuple[User, TokenPair]:
        user = self.verify_credentials(email, password)
        tokens = self.issue_tokens(user, remember_me)
        self.store.touch_last_login(user.id, self._now())
        self.logger.info("login_succeeded", user_id=user.id, remember_me=remember_me)
        return user, tokens

    def refresh(self, refresh_token: str) -> tuple[User, TokenPair]:
        """Exchange a refresh token for a new pair, revoking the old token.

        Presenting a token that was already rotated means the value leaked or
        was replayed, so every session of its owner is revoked.
        """
        if not refresh_token:
            raise InvalidTokenError("invalid refresh token")
        old_hash = hash_token(refresh_token)
        record = self.store.find_refresh_token(old_hash)
        if record is None:
            raise InvalidTokenError("invalid refresh token")
        now = self._now()
        if record.is_revoked:
            if record.was_rotated:
                self._handle_reuse(record.user_id, record.id)
            raise RevokedTokenError("refresh token revoked")
        if record.is_expired(now):
            raise ExpiredTokenError("refresh token expired")
        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            raise InvalidTokenError("invalid refresh token")

        value, replacement = self._new_refresh_record(user, record.remember_me, now)
        stored = self.store.rotate_refresh_token(old_hash, replacement, now)
        if stored is None:
            # Another request rotated or revoked this token in the meantime
            self._handle_reuse(record.user_id, record.id)
            raise RevokedTokenError("refresh token revoked")
        self.logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            old_token_id=record.id,
            new_token_id=stored.id,
        )
        return user, self._build_pair(user, value, stored, now)

    def _handle_reuse(self, user_id: str, token_id: str) -> None:
        revoked = self.store.revoke_user_refresh_tokens(
            user_id, RevokeReason.REUSE_DETECTED
        )
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=user_id,
            token_id=token_id,
            revoked_count=revoked,
        )

    def revoke_session(self, user_id: str, token_id: Optional[str]) -> int:
        if not token_id:
            return 0
        record = self.store.get_refresh_token(token_id)
        if record is None or record.user_id != user_id:
            return 0
        changed = self.store.mark_refresh_revoked(token_id, RevokeReason.LOGOUT)
        if changed:
            self.logger.info("refresh_token_revoked", user_id=user_id, token_id=token_id)
        return 1 if changed else 0

    def revoke_all(
        self, user_id: str, reason: RevokeReason = RevokeReason.LOGOUT
    ) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id, reason)
        self.logger.info(
            "refresh_tokens_revoked_all",
            user_id=user_id,
            reason=RevokeReason(reason).value,
            revoked_count=revoked,
        )
        return revoked

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_refresh_tokens(self._now())
        self.logger.info("refresh_token_sweep_completed", removed=removed)
        return removed

    # session middleware
    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        payload = self._decode_jwt(token)
        if payload is None or payload.get("token_type") != "access":
            raise AuthenticationError("invalid token")
        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise AuthenticationError("invalid token")
        if exp_ts <= self._now().timestamp():
            raise AuthenticationError("token expired", detail={"reason": "expired"})
        try:
            role = Role(payload.get("role"))
        except ValueError:
            raise AuthenticationError("invalid token")
        user_id = payload.get("sub")
        if not user_id:
            raise AuthenticationError("invalid token")
        return AuthContext(
            user_id=str(user_id),
            email=str(payload.get("email") or ""),
            role=role,
            session_id=payload.get("sid"),
            expires_at=datetime.fromtimestamp(exp_ts, timezone.utc),
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Verify signature, algorithm, issuer and audience; expiry is left to callers."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted so a forged "none" header cannot skip the check
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        return payload
