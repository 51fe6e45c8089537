"""
Staff Authentication
====================

Staff accounts are managed outside this service; here we only verify
passwords at login and turn verified token claims back into an `Actor`.

Roles:
- admin: everything, including case purge and ledger checks
- manager: all cases
- intake / consultant: day-to-day case work
"""

import logging
from dataclasses import dataclass
from typing import Optional

from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .clock import utcnow
from .db.models import StaffRole, StaffUser
from .errors import InvalidToken, PermissionDenied

logger = logging.getLogger(__name__)


# =============================================================================
# PASSWORD HASHING
# =============================================================================

# bcrypt truncates passwords at 72 bytes; enforce to avoid 500s.
MAX_PASSWORD_BYTES = 72

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def is_password_too_long(password: str) -> bool:
    """Return True if password exceeds bcrypt 72-byte limit."""
    return len(password.encode("utf-8")) > MAX_PASSWORD_BYTES


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verify a password against a hash"""
    if not hashed_password:
        return False
    if is_password_too_long(plain_password):
        logger.warning("Auth failed: password exceeds bcrypt 72-byte limit")
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError as e:
        logger.warning(f"Auth failed: invalid password format ({e})")
        return False


def get_password_hash(password: str) -> str:
    """Hash a password"""
    if is_password_too_long(password):
        raise ValueError("Password exceeds bcrypt 72-byte limit")
    return pwd_context.hash(password)


# =============================================================================
# ACTOR
# =============================================================================

@dataclass
class Actor:
    """Authenticated staff member behind a request"""
    username: str
    role: StaffRole
    display_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == StaffRole.ADMIN

    def token_claims(self) -> dict:
        return {
            "sub": self.username,
            "role": self.role.value,
            "name": self.display_name,
            "email": self.email,
        }

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "role": self.role.value,
            "display_name": self.display_name,
            "email": self.email,
            "is_admin": self.is_admin,
        }

    @classmethod
    def from_user(cls, user: StaffUser) -> "Actor":
        return cls(
            username=user.username,
            role=StaffRole(user.role),
            display_name=user.display_name,
            email=user.email,
        )

    @classmethod
    def from_claims(cls, claims: dict) -> "Actor":
        try:
            role = StaffRole(claims.get("role"))
        except ValueError as e:
            raise InvalidToken("Token carries an unknown role") from e
        return cls(
            username=claims["sub"],
            role=role,
            display_name=claims.get("name"),
            email=claims.get("email"),
        )


def require_admin(actor: Actor) -> Actor:
    if not actor.is_admin:
        raise PermissionDenied("Admin role required", details={"username": actor.username})
    return actor


def authenticate_staff(db: Session, username: str, password: str) -> Optional[Actor]:
    """
    Check a username/password pair against the staff table.

    Returns the Actor on success, None for unknown, inactive or wrong password.
    """
    user = db.get(StaffUser, username.strip().lower())
    if user is None or not user.is_active:
        logger.info(f"Login rejected for unknown or inactive user {username!r}")
        return None
    if not verify_password(password, user.password_hash):
        logger.info(f"Login rejected for {user.username}: bad password")
        return None

    user.last_login = utcnow()
    db.commit()
    return Actor.from_user(user)


def load_active_actor(db: Session, username: str) -> Optional[Actor]:
    """Re-read a staff member for token refresh; None if gone or deactivated."""
    user = db.get(StaffUser, username)
    if user is None or not user.is_active:
        return None
    return Actor.from_user(user)


def create_staff_user(
    db: Session,
    username: str,
    password: str,
    role: StaffRole = StaffRole.CONSULTANT,
    display_name: Optional[str] = None,
    email: Optional[str] = None,
) -> StaffUser:
    """Provisioning helper used by scripts/create_staff.py and tests."""
    user = StaffUser(
        username=username.strip().lower(),
        display_name=display_name,
        email=email,
        role=role,
        password_hash=get_password_hash(password),
        is_active=True,
    )
    db.add(user)
    db.commit()
    return user
