from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from tokenkeeper.config import Settings
from tokenkeeper.logging import get_logger
from tokenkeeper.service.errors import ExpiredCredentialError, MalformedCredentialError
from tokenkeeper.storage.models import utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class Identity:
    owner_id: str
    email: str


@dataclass(frozen=True)
class TokenClaims:
    owner_id: str
    email: str
    issued_at: datetime
    expires_at: datetime
    token_id: Optional[str] = None

    def identity(self) -> Identity:
        return Identity(owner_id=self.owner_id, email=self.email)


class TokenCodec:
    """Stateless HS256 signer and verifier for access tokens.

    Verification never consults the store: a token is valid when its
    signature matches the process secret, its issuer and audience match the
    configured values and its expiry has not passed on the local clock.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._leeway = timedelta(seconds=leeway_seconds)
        self._clock = clock or utcnow

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.clock_skew_leeway_seconds,
            clock=clock,
        )

    def issue(
        self,
        claims: dict[str, Any],
        lifetime: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> str:
        issued = now or self._clock()
        payload = dict(claims)
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "jti": str(uuid.uuid4()),
                "token_type": ACCESS_TOKEN_TYPE,
                "iat": int(issued.timestamp()),
                "exp": int((issued + lifetime).timestamp()),
            }
        )
        return self._encode_jwt(payload)

    def verify(self, token: str) -> TokenClaims:
        payload = self._decode_jwt(token)
        if payload.get("iss") != self.issuer:
            raise MalformedCredentialError("invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud or payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise MalformedCredentialError("invalid token")

        sub = payload.get("sub")
        email = payload.get("email")
        if not isinstance(sub, str) or not sub or not isinstance(email, str):
            raise MalformedCredentialError("invalid token")
        exp = payload.get("exp")
        iat = payload.get("iat")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise MalformedCredentialError("invalid token")
        if iat is not None and (isinstance(iat, bool) or not isinstance(iat, (int, float))):
            raise MalformedCredentialError("invalid token")

        now = self._clock()
        if exp <= (now - self._leeway).timestamp():
            raise ExpiredCredentialError("token has expired")

        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        issued_at = datetime.fromtimestamp(iat, tz=timezone.utc) if iat is not None else expires_at
        return TokenClaims(
            owner_id=sub,
            email=email,
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=payload.get("jti"),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise MalformedCredentialError("invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedCredentialError("invalid token") from None

        # Only HS256 is accepted; "none" and asymmetric algorithms are rejected
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError, RecursionError):
            logger.warning("jwt_header_decode_failed")
            raise MalformedCredentialError("invalid token") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedCredentialError("invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise MalformedCredentialError("invalid token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedCredentialError("invalid token") from None
        if not isinstance(payload, dict):
            raise MalformedCredentialError("invalid token")
        return payload
