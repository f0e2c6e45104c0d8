"""Signed access/refresh token construction and verification.

Tokens are compact HS256 JWTs. The issuer knows nothing about revocation;
callers persist the refresh record and consult the revocation store.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import InvalidTokenError
from sessionguard.storage.models import UserRole, utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
BEARER = "Bearer"


@dataclass(frozen=True)
class TokenSubject:
    user_id: str
    email: str
    role: UserRole


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    refresh_id: str
    expires_in: int
    issued_at: datetime
    refresh_expires_at: datetime
    token_type: str = BEARER


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    email: str
    role: UserRole
    issued_at: datetime
    expires_at: datetime
    issuer: str
    audience: str


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    refresh_id: str
    issued_at: datetime
    expires_at: datetime


def _from_ts(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class TokenIssuer:
    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._secret = settings.jwt_secret.encode()
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = timedelta(seconds=settings.access_token_ttl_seconds)
        self.refresh_ttl = timedelta(seconds=settings.refresh_token_ttl_seconds)
        self._access_leeway = settings.jwt_clock_skew_seconds
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        # Whole seconds so exp - iat is exactly the configured lifetime
        return self._clock().replace(microsecond=0)

    def issue(self, subject: TokenSubject) -> IssuedTokens:
        now = self._now()
        iat = int(now.timestamp())
        access_exp = iat + int(self.access_ttl.total_seconds())
        refresh_exp = iat + int(self.refresh_ttl.total_seconds())
        refresh_id = uuid.uuid4().hex
        access_payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject.user_id,
            "email": subject.email,
            "role": subject.role.value,
            "token_type": ACCESS_TOKEN_TYPE,
            "iat": iat,
            "exp": access_exp,
        }
        refresh_payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject.user_id,
            "token_type": REFRESH_TOKEN_TYPE,
            "jti": refresh_id,
            "iat": iat,
            "exp": refresh_exp,
        }
        return IssuedTokens(
            access_token=self._encode(access_payload),
            refresh_token=self._encode(refresh_payload),
            refresh_id=refresh_id,
            expires_in=access_exp - iat,
            issued_at=_from_ts(iat),
            refresh_expires_at=_from_ts(refresh_exp),
        )

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode(token, leeway=self._access_leeway)
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise InvalidTokenError()
        try:
            role = UserRole(payload.get("role"))
        except ValueError:
            logger.warning("jwt_unknown_role", role=payload.get("role"))
            raise InvalidTokenError() from None
        sub = payload.get("sub")
        email = payload.get("email")
        if not isinstance(sub, str) or not sub or not isinstance(email, str):
            raise InvalidTokenError()
        return AccessClaims(
            subject=sub,
            email=email,
            role=role,
            issued_at=_from_ts(int(payload.get("iat", 0))),
            expires_at=_from_ts(int(payload["exp"])),
            # Both were checked against this issuer in _decode
            issuer=self.issuer,
            audience=self.audience,
        )

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(token, leeway=0)
        if payload.get("token_type") != REFRESH_TOKEN_TYPE:
            raise InvalidTokenError()
        sub = payload.get("sub")
        jti = payload.get("jti")
        if not isinstance(sub, str) or not sub or not isinstance(jti, str) or not jti:
            raise InvalidTokenError()
        return RefreshClaims(
            user_id=sub,
            refresh_id=jti,
            issued_at=_from_ts(int(payload.get("iat", 0))),
            expires_at=_from_ts(int(payload["exp"])),
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str, *, leeway: int) -> dict[str, Any]:
        if not isinstance(token, str) or not token.isascii():
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError() from None

        # Pin the algorithm to prevent algorithm confusion attacks
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        # Compare bytes; str comparison rejects non-ASCII input with TypeError
        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError() from None
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError()
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidTokenError()
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidTokenError()
        # A token is dead once now >= exp
        if exp + leeway <= self._clock().timestamp():
            raise InvalidTokenError()
        return payload
