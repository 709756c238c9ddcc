"""HS256 access and refresh token codec.

Tokens are compact JWTs signed with the shared ``jwt_secret``. Every token
carries a random ``jti`` so two tokens minted in the same instant for the same
user never collide, and a fractional ``iat`` so per-user revocation marks can
be compared precisely.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from authsession.config import Settings
from authsession.logging import get_logger
from authsession.service.errors import (
    MalformedTokenError,
    TokenExpiredError,
    TokenInvalidSignatureError,
)
from authsession.storage.models import Clock, UserRecord, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _claim_time(claims: dict[str, Any], name: str) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(float(claims[name]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError, OverflowError, OSError):
        return None


def issued_at(claims: dict[str, Any]) -> Optional[datetime]:
    return _claim_time(claims, "iat")


def expires_at(claims: dict[str, Any]) -> Optional[datetime]:
    return _claim_time(claims, "exp")


class TokenCodec:
    """Signs and verifies tokens. Holds no mutable state."""

    def __init__(self, settings: Settings, *, clock: Clock = utcnow) -> None:
        self.settings = settings
        self._clock = clock
        self._leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    @property
    def access_ttl(self) -> timedelta:
        return self.settings.access_token_ttl

    @property
    def refresh_ttl(self) -> timedelta:
        return self.settings.refresh_token_ttl

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _base_claims(self, user: UserRecord, token_type: str, ttl: timedelta) -> dict[str, Any]:
        now = self._clock()
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now.timestamp(),
            "exp": int((now + ttl).timestamp()),
        }

    def issue_access(self, user: UserRecord, session_id: Optional[str] = None) -> str:
        claims = self._base_claims(user, ACCESS, self.access_ttl)
        claims["email"] = user.email
        claims["role"] = user.role
        if session_id:
            claims["sid"] = session_id
        return self._encode(claims)

    def issue_refresh(self, user: UserRecord) -> str:
        return self._encode(self._base_claims(user, REFRESH, self.refresh_ttl))

    def verify(self, token: str, expected_type: Optional[str] = None) -> dict[str, Any]:
        """Return the claims of a well-signed, unexpired token.

        Raises:
            MalformedTokenError: token is not a decodable JWT
            TokenInvalidSignatureError: signature, algorithm, issuer, audience
                or token type do not match
            TokenExpiredError: ``exp`` has passed
        """
        if not token or not isinstance(token, str):
            raise MalformedTokenError(reason="empty")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError(reason="segments") from None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise MalformedTokenError(reason="header") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalidSignatureError(reason="algorithm")

        try:
            signature_ok = hmac.compare_digest(
                self._sign(f"{header_b64}.{payload_b64}"), sig_b64
            )
        except TypeError:
            # non-ASCII signature segment
            signature_ok = False
        if not signature_ok:
            raise TokenInvalidSignatureError()
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError(reason="payload") from None
        if not isinstance(payload, dict):
            raise MalformedTokenError(reason="payload")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidSignatureError(reason="issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalidSignatureError(reason="audience")
        if expected_type and payload.get("token_type") != expected_type:
            raise TokenInvalidSignatureError(reason="token_type")
        if not payload.get("sub"):
            raise MalformedTokenError(reason="subject")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise MalformedTokenError(reason="exp") from None
        if exp_ts <= (self._clock() - self._leeway).timestamp():
            raise TokenExpiredError()
        return payload

