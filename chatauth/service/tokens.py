from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from chatauth.logging import get_logger
from chatauth.service.errors import EncodingError, ExpiredTokenError, InvalidTokenError

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}
_SEGMENT_RE = re.compile(r"[A-Za-z0-9_-]+")


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPayload:
    subject: str
    token_type: TokenType
    issued_at: int
    expires_at: Optional[int] = None
    session_id: Optional[str] = None
    roles: Tuple[str, ...] = ()
    permissions: Tuple[str, ...] = ()
    token_id: Optional[str] = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _dump(obj: dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode()


class TokenCodec:
    """Signs and verifies compact HS256 tokens carrying a typed payload.

    The token type lives inside the signed payload, so access and refresh
    tokens share one secret; ``verify`` always compares it against the type
    the caller expects.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._key = secret.encode()
        self.issuer = issuer
        self._clock = clock
        self.leeway_seconds = leeway_seconds

    def now(self) -> int:
        return int(self._clock())

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, payload: TokenPayload) -> str:
        claims = self._to_claims(payload)
        header_enc = _encode_segment(_dump(_HEADER))
        payload_enc = _encode_segment(_dump(claims))
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, expected_type: TokenType) -> TokenPayload:
        if not isinstance(token, str):
            raise InvalidTokenError()
        parts = token.split(".")
        if len(parts) != 3:
            raise InvalidTokenError("malformed token")
        if not all(_SEGMENT_RE.fullmatch(part) for part in parts):
            raise InvalidTokenError("malformed token")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error):
            logger.warning("token_header_decode_failed")
            raise InvalidTokenError("malformed token") from None
        # Reject any other algorithm, including "none"
        if not isinstance(header, dict) or header.get("alg") != _HEADER["alg"]:
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("invalid token signature")

        try:
            claims = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed token") from None
        payload = self._from_claims(claims)

        if payload.token_type != expected_type:
            logger.warning(
                "token_type_mismatch",
                expected=expected_type.value,
                actual=payload.token_type.value,
            )
            raise InvalidTokenError("unexpected token type")
        if payload.expires_at is not None and payload.expires_at + self.leeway_seconds <= self._clock():
            raise ExpiredTokenError()
        return payload

    def _to_claims(self, payload: TokenPayload) -> dict[str, Any]:
        if not isinstance(payload.subject, str) or not payload.subject:
            raise EncodingError("token subject is required")
        try:
            token_type = TokenType(payload.token_type)
        except ValueError:
            raise EncodingError(f"unknown token type: {payload.token_type!r}") from None
        if not isinstance(payload.issued_at, int) or payload.issued_at < 0:
            raise EncodingError("issued_at must be a non-negative integer")
        if payload.expires_at is not None:
            if not isinstance(payload.expires_at, int) or payload.expires_at < payload.issued_at:
                raise EncodingError("expires_at must be an integer not before issued_at")
        elif token_type is TokenType.ACCESS:
            raise EncodingError("access tokens must carry an expiry")
        if not all(isinstance(item, str) for item in (*payload.roles, *payload.permissions)):
            raise EncodingError("roles and permissions must be strings")

        claims: dict[str, Any] = {
            "iss": self.issuer,
            "sub": payload.subject,
            "type": token_type.value,
            "iat": payload.issued_at,
            "roles": list(payload.roles),
            "permissions": list(payload.permissions),
        }
        if payload.expires_at is not None:
            claims["exp"] = payload.expires_at
        if payload.session_id is not None:
            claims["sid"] = payload.session_id
        if payload.token_id is not None:
            claims["jti"] = payload.token_id
        return claims

    def _from_claims(self, claims: Any) -> TokenPayload:
        if not isinstance(claims, dict):
            raise InvalidTokenError("malformed token")
        if claims.get("iss") != self.issuer:
            raise InvalidTokenError("unexpected token issuer")

        subject = claims.get("sub")
        issued_at = claims.get("iat")
        expires_at = claims.get("exp")
        session_id = claims.get("sid")
        token_id = claims.get("jti")
        roles = claims.get("roles", [])
        permissions = claims.get("permissions", [])
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("token subject missing")
        try:
            token_type = TokenType(claims.get("type"))
        except ValueError:
            raise InvalidTokenError("unknown token type") from None
        if not _is_int(issued_at) or (expires_at is not None and not _is_int(expires_at)):
            raise InvalidTokenError("malformed token timestamps")
        if session_id is not None and not isinstance(session_id, str):
            raise InvalidTokenError("malformed session id")
        if token_id is not None and not isinstance(token_id, str):
            raise InvalidTokenError("malformed token id")
        if not _is_str_list(roles) or not _is_str_list(permissions):
            raise InvalidTokenError("malformed roles or permissions")
        if token_type is TokenType.ACCESS and expires_at is None:
            raise InvalidTokenError("access token without expiry")

        return TokenPayload(
            subject=subject,
            token_type=token_type,
            issued_at=issued_at,
            expires_at=expires_at,
            session_id=session_id,
            roles=tuple(roles),
            permissions=tuple(permissions),
            token_id=token_id,
        )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


__all__ = ["TokenCodec", "TokenPayload", "TokenType"]
