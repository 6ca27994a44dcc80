from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from khscrm.config import Settings

RATE_LIMIT_MESSAGE = "Too many requests. Please try again later"


@dataclass(frozen=True)
class RateLimitPolicy:
    """A named request budget: ``max_requests`` per fixed window."""

    name: str
    max_requests: int
    window_seconds: int
    message: str = RATE_LIMIT_MESSAGE

    def key_for(self, client_key: str) -> str:
        return f"{self.name}:{client_key}"


AUTH_POLICY = "auth"
API_POLICY = "api"
STRICT_POLICY = "strict"


def build_policies(settings: Settings) -> Dict[str, RateLimitPolicy]:
    """Policies keyed by name.

    ``auth`` guards credential endpoints against stuffing, ``api`` covers
    general traffic and ``strict`` covers sensitive account operations.
    """
    return {
        AUTH_POLICY: RateLimitPolicy(
            AUTH_POLICY,
            settings.auth_rate_limit_max,
            settings.auth_rate_limit_window_seconds,
        ),
        API_POLICY: RateLimitPolicy(
            API_POLICY,
            settings.api_rate_limit_max,
            settings.api_rate_limit_window_seconds,
        ),
        STRICT_POLICY: RateLimitPolicy(
            STRICT_POLICY,
            settings.strict_rate_limit_max,
            settings.strict_rate_limit_window_seconds,
        ),
    }
