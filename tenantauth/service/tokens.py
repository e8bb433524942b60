from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import InvalidTokenError

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass
class Principal:
    """Authenticated identity with its tenant and role context."""

    user_id: str
    email: Optional[str] = None
    tenant_id: Optional[str] = None
    roles: List[str] = field(default_factory=list)

    def has_role(self, code: str) -> bool:
        return code in self.roles

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "Principal":
        roles = claims.get("roles") or []
        if not isinstance(roles, list):
            raise InvalidTokenError()
        return cls(
            user_id=str(claims.get("sub")),
            email=claims.get("email"),
            tenant_id=claims.get("tenantId"),
            roles=[str(role) for role in roles],
        )


def merge_roles(*groups: Iterable[str]) -> List[str]:
    """Order-preserving union of role code lists."""
    merged: List[str] = []
    for group in groups:
        for code in group or []:
            if code and code not in merged:
                merged.append(code)
    return merged


class TokenCodec:
    """HS256 signing and verification for access and refresh tokens.

    Access and refresh tokens are keyed by independent secrets so a leaked
    refresh secret cannot mint access tokens and vice versa.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock

    @property
    def access_secret(self) -> str:
        return self.settings.jwt_access_secret or ""

    @property
    def refresh_secret(self) -> str:
        return self.settings.jwt_refresh_secret or ""

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _base_claims(self, subject: str, ttl_seconds: int, token_type: str) -> dict[str, Any]:
        now = int(self._clock())
        return {
            "sub": subject,
            "iat": now,
            "exp": now + ttl_seconds,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "jti": str(uuid.uuid4()),
            "token_type": token_type,
        }

    def sign_access_token(self, principal: Principal) -> str:
        claims = self._base_claims(
            principal.user_id, self.settings.access_token_ttl_seconds, ACCESS_TOKEN_TYPE
        )
        claims.update(
            {
                "id": principal.user_id,
                "email": principal.email,
                "tenantId": principal.tenant_id,
                "roles": list(principal.roles),
            }
        )
        return self._sign(claims, self.access_secret)

    def sign_refresh_token(self, user_id: str) -> str:
        # Subject only; the jti keeps two tokens minted in the same second distinct
        claims = self._base_claims(
            user_id, self.settings.refresh_token_ttl_days * 86400, REFRESH_TOKEN_TYPE
        )
        return self._sign(claims, self.refresh_secret)

    def verify(
        self, token: str, expected_secret: str, *, token_type: Optional[str] = None
    ) -> dict[str, Any]:
        """Return the payload of a valid token or raise ``InvalidTokenError``.

        Every failure raises the same error so callers cannot tell a forged token
        from an expired one.
        """
        if not token or not isinstance(token, str):
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError()

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError()
        # Reject alg confusion (none, RS256 with an HMAC key, ...)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(
                expected_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError()
        if not isinstance(payload, dict) or not payload.get("sub"):
            raise InvalidTokenError()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError()
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidTokenError()
        if token_type and payload.get("token_type") != token_type:
            raise InvalidTokenError()
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidTokenError()
        if exp_ts <= self._clock() - self.settings.jwt_leeway_seconds:
            raise InvalidTokenError()
        return payload

    def verify_access_token(self, token: str) -> Principal:
        payload = self.verify(token, self.access_secret, token_type=ACCESS_TOKEN_TYPE)
        return Principal.from_claims(payload)

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        return self.verify(token, self.refresh_secret, token_type=REFRESH_TOKEN_TYPE)
