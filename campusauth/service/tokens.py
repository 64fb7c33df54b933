"""Compact HS256 token signing and verification.

Tokens are ``base64url(header).base64url(payload).base64url(signature)`` with a
fixed ``{"alg": "HS256", "typ": "JWT"}`` header. Verification failures are
split into three kinds so callers can tell tampering from expiry from garbage:

- :class:`MalformedTokenError` - structure, encoding, header or claims invalid
- :class:`InvalidSignatureError` - HMAC does not match
- :class:`TokenExpiredError` - signature valid but ``exp`` has passed
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from campusauth.config import Settings
from campusauth.logging import get_logger
from campusauth.storage.models import Role

logger = get_logger(__name__)

_ALGORITHM = "HS256"


class TokenError(Exception):
    """Base class for token verification failures."""


class MalformedTokenError(TokenError):
    pass


class InvalidSignatureError(TokenError):
    pass


class TokenExpiredError(TokenError):
    def __init__(self, expired_at: datetime) -> None:
        super().__init__(f"token expired at {expired_at.isoformat()}")
        self.expired_at = expired_at


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class ClaimSet:
    """Claims signed inside a token.

    ``iat``, ``exp`` and ``jti`` are filled in by :meth:`TokenCodec.sign`.
    """

    sub: str
    username: str
    role: Role
    device: Optional[str] = None
    token_type: TokenType = TokenType.ACCESS
    iat: Optional[int] = None
    exp: Optional[int] = None
    jti: Optional[str] = None

    def to_payload(self, issuer: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "iss": issuer,
            "sub": self.sub,
            "username": self.username,
            "role": self.role.value,
            "typ": self.token_type.value,
            "iat": self.iat,
            "exp": self.exp,
            "jti": self.jti,
        }
        if self.device is not None:
            payload["device"] = self.device
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ClaimSet":
        try:
            sub = payload["sub"]
            username = payload["username"]
            role = Role.parse(payload["role"])
            token_type = TokenType(payload.get("typ", TokenType.ACCESS.value))
            iat = int(payload["iat"])
            exp = int(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedTokenError(f"invalid claims: {exc}") from exc
        if not isinstance(sub, str) or not isinstance(username, str):
            raise MalformedTokenError("sub and username must be strings")
        device = payload.get("device")
        jti = payload.get("jti")
        return cls(
            sub=sub,
            username=username,
            role=role,
            device=device if isinstance(device, str) else None,
            token_type=token_type,
            iat=iat,
            exp=exp,
            jti=jti if isinstance(jti, str) else None,
        )

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.exp is None:
            return None
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    """Stateless signer/verifier bound to an immutable :class:`Settings`."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._secret = settings.jwt_secret.encode()
        self._issuer = settings.jwt_issuer
        self._leeway = timedelta(seconds=settings.token_leeway_seconds)
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, claims: ClaimSet, ttl: timedelta) -> str:
        """Sign ``claims`` with an expiry ``ttl`` from now."""
        now = self._clock()
        stamped = replace(
            claims,
            iat=int(now.timestamp()),
            exp=int((now + ttl).timestamp()),
            jti=claims.jti or uuid.uuid4().hex,
        )
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(stamped.to_payload(self._issuer), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> ClaimSet:
        """Return the verified claims or raise a :class:`TokenError`."""
        if not isinstance(token, str):
            raise MalformedTokenError("token must be a string")
        # base64url segments are ASCII; anything else cannot be compared or decoded
        if not token.isascii():
            raise MalformedTokenError("token must be ASCII")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError("token must have three segments") from None

        # Reject algorithm confusion before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedTokenError("undecodable header") from exc
        if not isinstance(header, dict):
            raise MalformedTokenError("header must be an object")
        if header.get("alg") != _ALGORITHM:
            logger.warning("token_invalid_algorithm", alg=header.get("alg"))
            raise MalformedTokenError("unsupported algorithm")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignatureError("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedTokenError("undecodable payload") from exc
        if not isinstance(payload, dict):
            raise MalformedTokenError("payload must be an object")
        if payload.get("iss") != self._issuer:
            raise MalformedTokenError("unexpected issuer")

        claims = ClaimSet.from_payload(payload)
        expires_at = claims.expires_at
        if expires_at is None or expires_at <= self._clock() - self._leeway:
            raise TokenExpiredError(expires_at or datetime.fromtimestamp(0, tz=timezone.utc))
        return claims


__all__ = [
    "ClaimSet",
    "InvalidSignatureError",
    "MalformedTokenError",
    "TokenCodec",
    "TokenError",
    "TokenExpiredError",
    "TokenType",
]
