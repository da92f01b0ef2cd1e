from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional

from authcore.config import JWTAlgorithm
from authcore.logging import get_logger
from authcore.service.errors import InvalidTokenError

logger = get_logger(__name__)

MIN_SECRET_BYTES = 32

_DIGESTS = {
    JWTAlgorithm.HS256: hashlib.sha256,
    JWTAlgorithm.HS384: hashlib.sha384,
    JWTAlgorithm.HS512: hashlib.sha512,
}


class ExpiredTokenError(InvalidTokenError):
    """Signature is intact but the token is past its ``exp``."""

    default_message = "token has expired"


class SecretTokenCodec:
    """Opaque client secrets and the fingerprints stored in their place."""

    def __init__(self, byte_length: int = MIN_SECRET_BYTES) -> None:
        if byte_length < MIN_SECRET_BYTES:
            raise ValueError(f"secrets must carry at least {MIN_SECRET_BYTES} bytes")
        self.byte_length = byte_length

    def new_secret(self) -> str:
        return secrets.token_urlsafe(self.byte_length)

    @staticmethod
    def fingerprint(secret: str) -> str:
        return hashlib.sha256(secret.encode()).hexdigest()


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    email: str
    exp: int
    roles: List[str] = field(default_factory=list)

    def has_any_role(self, required: Iterable[str]) -> bool:
        return not set(self.roles).isdisjoint(required)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class AccessTokenIssuer:
    """Stateless HMAC-signed JWTs carrying ``sub``, ``email``, ``roles`` and ``exp``.

    Access tokens are never revoked individually; their lifetime bounds the
    window in which a token minted before logout stays usable.
    """

    def __init__(
        self,
        signing_key: str,
        *,
        algorithm: JWTAlgorithm = JWTAlgorithm.HS256,
        ttl: timedelta = timedelta(minutes=15),
    ) -> None:
        if not signing_key:
            raise ValueError("access token signing key is required")
        self._key = signing_key.encode()
        self.algorithm = JWTAlgorithm(algorithm)
        self._digest = _DIGESTS[self.algorithm]
        self.ttl = ttl

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), self._digest).digest()
        )

    def issue(
        self, user_id: str, email: str, roles: Iterable[str], now: datetime
    ) -> str:
        header = {"alg": self.algorithm.value, "typ": "JWT"}
        payload = {
            "sub": user_id,
            "email": email,
            "roles": sorted(set(roles)),
            "exp": int((now + self.ttl).timestamp()),
        }
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def validate(self, token: str, now: datetime) -> AccessClaims:
        """Verify signature and expiry, raising ``InvalidTokenError`` or ``ExpiredTokenError``."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, TypeError, ValueError):
            raise InvalidTokenError()

        # Pin the algorithm to prevent algorithm confusion ("none", RS/HS swaps)
        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError()
        if not isinstance(header, dict) or header.get("alg") != self.algorithm.value:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise InvalidTokenError()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError()
        claims = self._claims_from_payload(payload)
        if claims is None:
            raise InvalidTokenError()
        if claims.exp <= now.timestamp():
            raise ExpiredTokenError()
        return claims

    @staticmethod
    def _claims_from_payload(payload: Any) -> Optional[AccessClaims]:
        if not isinstance(payload, dict):
            return None
        sub = payload.get("sub")
        email = payload.get("email")
        roles = payload.get("roles", [])
        exp = payload.get("exp")
        if not isinstance(sub, str) or not isinstance(email, str):
            return None
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            return None
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        return AccessClaims(sub=sub, email=email, exp=int(exp), roles=list(roles))


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Pull the token out of an ``Authorization: Bearer <token>`` header."""
    if not header:
        return None
    parts = header.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        return None
    return parts[1]
