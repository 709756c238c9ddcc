import base64
import json

import pytest

from authsession.config import Settings
from authsession.service.errors import (
    SESSION_INVALID_MESSAGE,
    MalformedTokenError,
    TokenExpiredError,
    TokenInvalidSignatureError,
)
from authsession.service.tokens import ACCESS, REFRESH, TokenCodec, expires_at, issued_at
from authsession.storage.models import UserRecord


def _user():
    return UserRecord(id="user-1", email="u1@example.com", password_hash="x", role="user")


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssue:
    def test_access_token_claims(self, codec, clock):
        token = codec.issue_access(_user(), session_id="sess-1")
        claims = codec.verify(token, expected_type=ACCESS)
        assert claims["sub"] == "user-1"
        assert claims["email"] == "u1@example.com"
        assert claims["role"] == "user"
        assert claims["sid"] == "sess-1"
        assert claims["token_type"] == ACCESS
        assert claims["exp"] == int((clock() + codec.access_ttl).timestamp())

    def test_refresh_token_has_no_profile_claims(self, codec):
        claims = codec.verify(codec.issue_refresh(_user()), expected_type=REFRESH)
        assert claims["token_type"] == REFRESH
        assert "email" not in claims
        assert "sid" not in claims

    def test_tokens_minted_in_the_same_instant_differ(self, codec):
        """jti keeps two tokens for one user apart even with a frozen clock."""
        assert codec.issue_access(_user()) != codec.issue_access(_user())

    def test_issued_at_roundtrip(self, codec, clock):
        claims = codec.verify(codec.issue_access(_user()))
        assert issued_at(claims) == clock()

    def test_issued_at_missing(self):
        assert issued_at({}) is None
        assert issued_at({"iat": "soon"}) is None
        assert issued_at({"iat": 1e20}) is None


class TestVerify:
    def test_expired_token(self, codec, clock):
        token = codec.issue_access(_user())
        clock.advance(days=8)
        with pytest.raises(TokenExpiredError) as exc_info:
            codec.verify(token)
        assert exc_info.value.message == SESSION_INVALID_MESSAGE
        assert exc_info.value.reason == "expired"

    def test_leeway_accepts_recently_expired_token(self, clock):
        codec = TokenCodec(
            Settings(jwt_secret="x" * 40, clock_skew_leeway_seconds=30), clock=clock
        )
        token = codec.issue_access(_user())
        clock.advance(days=7, seconds=10)
        assert codec.verify(token)["sub"] == "user-1"

    def test_wrong_secret(self, codec, clock):
        other = TokenCodec(Settings(jwt_secret="y" * 40), clock=clock)
        with pytest.raises(TokenInvalidSignatureError):
            codec.verify(other.issue_access(_user()))

    def test_tampered_payload(self, codec):
        header, _, signature = codec.issue_access(_user()).split(".")
        forged = _b64({"sub": "admin", "iss": "authsession", "aud": "authsession-clients"})
        with pytest.raises(TokenInvalidSignatureError):
            codec.verify(f"{header}.{forged}.{signature}")

    def test_alg_none_rejected(self, codec):
        _, payload, _ = codec.issue_access(_user()).split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(TokenInvalidSignatureError) as exc_info:
            codec.verify(f"{header}.{payload}.")
        assert exc_info.value.reason == "algorithm"

    def test_wrong_token_type(self, codec):
        with pytest.raises(TokenInvalidSignatureError) as exc_info:
            codec.verify(codec.issue_refresh(_user()), expected_type=ACCESS)
        assert exc_info.value.reason == "token_type"

    def test_wrong_audience(self, codec, clock):
        other = TokenCodec(
            Settings(jwt_secret=codec.settings.jwt_secret, jwt_audience="elsewhere"),
            clock=clock,
        )
        with pytest.raises(TokenInvalidSignatureError) as exc_info:
            codec.verify(other.issue_access(_user()))
        assert exc_info.value.reason == "audience"

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"])
    def test_malformed(self, codec, token):
        with pytest.raises(MalformedTokenError):
            codec.verify(token)

    def test_non_ascii_signature(self, codec):
        header, payload, _ = codec.issue_access(_user()).split(".")
        with pytest.raises(TokenInvalidSignatureError):
            codec.verify(f"{header}.{payload}.sigé")


class TestExpiresAt:
    def test_refresh_expiry(self, codec, clock):
        claims = codec.verify(codec.issue_refresh(_user()), expected_type=REFRESH)
        assert expires_at(claims) == clock() + codec.refresh_ttl

    @pytest.mark.parametrize("claims", [{}, {"exp": "later"}, {"exp": 1e20}, {"exp": None}])
    def test_unusable_expiry(self, claims):
        assert expires_at(claims) is None
