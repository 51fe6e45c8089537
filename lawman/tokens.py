"""
Session Token Issuer
====================

Short-lived access tokens plus long-lived refresh tokens (JWT, HS256).

- Access token: the caller's claims minus any password material, `type=access`.
  Sent as `Authorization: Bearer <token>`.
- Refresh token: only `sub` and a random `jti`, `type=refresh`. Delivered as an
  http-only cookie by the API.

Verification distinguishes a missing header, an expired token and any other
invalid token so the client can decide whether to refresh or re-login.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from .config import Settings, get_settings
from .errors import InvalidToken, TokenExpired, Unauthenticated

logger = logging.getLogger(__name__)

# Never copied into a token
SENSITIVE_CLAIMS = ("password", "password_hash", "passwordHash")

BEARER_PREFIX = "Bearer "


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class TokenIssuer:
    """Issues and verifies access/refresh tokens with one signing secret."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TokenIssuer":
        settings = settings or get_settings()
        return cls(
            secret=settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
            access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        )

    # -------------------------------------------------------------------------
    # Issue
    # -------------------------------------------------------------------------

    def _encode(self, claims: Dict[str, Any], token_type: str, ttl: timedelta, now: datetime) -> str:
        to_encode = dict(claims)
        to_encode.update({"type": token_type, "iat": now, "exp": now + ttl})
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def issue_access(self, claims: Dict[str, Any], now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        safe = {k: v for k, v in claims.items() if k not in SENSITIVE_CLAIMS}
        if "sub" in safe and safe["sub"] is not None:
            safe["sub"] = str(safe["sub"])
        return self._encode(safe, "access", self.access_ttl, now)

    def issue_refresh(self, subject: str, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        claims = {"sub": str(subject), "jti": secrets.token_hex(16)}
        return self._encode(claims, "refresh", self.refresh_ttl, now)

    def issue_tokens(self, claims: Dict[str, Any], now: Optional[datetime] = None) -> TokenPair:
        """
        Issue an access/refresh pair for an authenticated principal.

        The subject is taken from `sub`, falling back to `id`, `user_id` or
        `username`.
        """
        subject = None
        for key in ("sub", "id", "user_id", "username"):
            if claims.get(key):
                subject = claims[key]
                break
        if subject is None:
            raise ValueError("Token claims need a subject (sub/id/user_id/username)")

        access_claims = dict(claims)
        access_claims["sub"] = subject
        return TokenPair(
            access_token=self.issue_access(access_claims, now),
            refresh_token=self.issue_refresh(subject, now),
        )

    # -------------------------------------------------------------------------
    # Verify
    # -------------------------------------------------------------------------

    def _decode(self, token: str, expected_type: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as e:
            raise TokenExpired(f"{expected_type.capitalize()} token expired") from e
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid {expected_type} token: {e}")
            raise InvalidToken(f"Invalid {expected_type} token") from e

        if payload.get("type") != expected_type:
            raise InvalidToken(f"Expected a {expected_type} token")
        if not payload.get("sub"):
            raise InvalidToken("Token has no subject")
        return payload

    def verify_access(self, authorization: Optional[str]) -> Dict[str, Any]:
        """Verify an `Authorization` header value and return the access claims."""
        if not authorization or not authorization.startswith(BEARER_PREFIX):
            raise Unauthenticated("Missing bearer token")
        token = authorization[len(BEARER_PREFIX):].strip()
        if not token:
            raise Unauthenticated("Missing bearer token")
        return self._decode(token, "access")

    def verify_refresh(self, token: Optional[str]) -> Dict[str, Any]:
        if not token:
            raise Unauthenticated("Missing refresh token")
        return self._decode(token, "refresh")


def get_token_issuer() -> TokenIssuer:
    return TokenIssuer.from_settings()
