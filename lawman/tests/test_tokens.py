"""
Tests for the Session Token Issuer and staff authentication
===========================================================
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from lawman.auth import (
    Actor,
    authenticate_staff,
    create_staff_user,
    get_password_hash,
    require_admin,
    verify_password,
)
from lawman.db.models import StaffRole
from lawman.errors import InvalidToken, PermissionDenied, TokenExpired, Unauthenticated
from lawman.tokens import TokenIssuer

SECRET = "test-secret"


@pytest.fixture
def issuer():
    return TokenIssuer(SECRET)


def _raw(token):
    return jwt.decode(token, SECRET, algorithms=["HS256"])


class TestIssue:

    def test_access_token_strips_password(self, issuer):
        pair = issuer.issue_tokens({"sub": "kejdi", "role": "admin", "password": "hunter2"})
        claims = _raw(pair.access_token)

        assert "password" not in claims
        assert claims["sub"] == "kejdi"
        assert claims["role"] == "admin"
        assert claims["type"] == "access"

    def test_access_lifetime_is_15_minutes(self, issuer):
        claims = _raw(issuer.issue_access({"sub": "kejdi"}))
        assert claims["exp"] - claims["iat"] == 15 * 60

    def test_refresh_token_is_minimal(self, issuer):
        pair = issuer.issue_tokens({"sub": "kejdi", "role": "admin", "email": "k@x.al"})
        claims = _raw(pair.refresh_token)

        assert set(claims) == {"sub", "jti", "type", "iat", "exp"}
        assert claims["type"] == "refresh"
        assert len(claims["jti"]) == 32
        int(claims["jti"], 16)
        assert claims["exp"] - claims["iat"] == 7 * 24 * 60 * 60

    def test_refresh_jti_is_unique(self, issuer):
        first = _raw(issuer.issue_refresh("kejdi"))["jti"]
        second = _raw(issuer.issue_refresh("kejdi"))["jti"]
        assert first != second

    def test_subject_fallbacks(self, issuer):
        pair = issuer.issue_tokens({"id": 42, "role": "intake"})
        assert _raw(pair.access_token)["sub"] == "42"
        assert _raw(pair.refresh_token)["sub"] == "42"

        pair = issuer.issue_tokens({"username": "erisa"})
        assert _raw(pair.access_token)["sub"] == "erisa"

    def test_missing_subject(self, issuer):
        with pytest.raises(ValueError):
            issuer.issue_tokens({"role": "admin"})


class TestVerify:

    def test_round_trip(self, issuer):
        pair = issuer.issue_tokens({"sub": "kejdi", "role": "admin"})
        claims = issuer.verify_access(f"Bearer {pair.access_token}")
        assert claims["sub"] == "kejdi"

    @pytest.mark.parametrize("header", [None, "", "Token abc", "Bearer ", "bearer abc"])
    def test_missing_or_malformed_header(self, issuer, header):
        with pytest.raises(Unauthenticated):
            issuer.verify_access(header)

    def test_expired_access_token(self, issuer):
        issued = datetime.now(timezone.utc) - timedelta(minutes=16)
        token = issuer.issue_access({"sub": "kejdi"}, now=issued)

        with pytest.raises(TokenExpired) as exc_info:
            issuer.verify_access(f"Bearer {token}")
        assert exc_info.value.code == "token_expired"

    def test_tampered_token(self, issuer):
        token = issuer.issue_access({"sub": "kejdi"})
        forged = TokenIssuer("another-secret").issue_access({"sub": "kejdi", "role": "admin"})

        with pytest.raises(InvalidToken):
            issuer.verify_access(f"Bearer {forged}")
        with pytest.raises(InvalidToken):
            issuer.verify_access(f"Bearer {token[:-4]}abcd")

    def test_refresh_token_is_not_an_access_token(self, issuer):
        pair = issuer.issue_tokens({"sub": "kejdi"})
        with pytest.raises(InvalidToken):
            issuer.verify_access(f"Bearer {pair.refresh_token}")

    def test_access_token_is_not_a_refresh_token(self, issuer):
        pair = issuer.issue_tokens({"sub": "kejdi"})
        with pytest.raises(InvalidToken):
            issuer.verify_refresh(pair.access_token)

    def test_refresh_missing(self, issuer):
        with pytest.raises(Unauthenticated):
            issuer.verify_refresh(None)

    def test_expired_refresh_token(self, issuer):
        issued = datetime.now(timezone.utc) - timedelta(days=8)
        token = issuer.issue_refresh("kejdi", now=issued)
        with pytest.raises(TokenExpired):
            issuer.verify_refresh(token)


class TestPasswords:

    def test_hash_and_verify(self):
        hashed = get_password_hash("correct horse")
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong", hashed)

    def test_empty_hash_never_verifies(self):
        assert verify_password("anything", None) is False

    def test_too_long_password(self):
        with pytest.raises(ValueError):
            get_password_hash("x" * 73)


class TestStaffLogin:

    def test_authenticate(self, db):
        create_staff_user(db, "Kejdi", "s3cret-pass", role=StaffRole.ADMIN, display_name="Kejdi M.")

        actor = authenticate_staff(db, "kejdi", "s3cret-pass")
        assert actor.username == "kejdi"
        assert actor.is_admin
        assert authenticate_staff(db, "kejdi", "nope") is None
        assert authenticate_staff(db, "ghost", "s3cret-pass") is None

    def test_inactive_user_rejected(self, db):
        user = create_staff_user(db, "erisa", "s3cret-pass")
        user.is_active = False
        db.commit()
        assert authenticate_staff(db, "erisa", "s3cret-pass") is None

    def test_actor_claims_round_trip(self):
        actor = Actor("erisa", StaffRole.CONSULTANT, display_name="Erisa")
        assert Actor.from_claims(actor.token_claims()) == actor

    def test_unknown_role_in_claims(self):
        with pytest.raises(InvalidToken):
            Actor.from_claims({"sub": "erisa", "role": "superuser"})

    def test_require_admin(self):
        with pytest.raises(PermissionDenied):
            require_admin(Actor("erisa", StaffRole.CONSULTANT))
