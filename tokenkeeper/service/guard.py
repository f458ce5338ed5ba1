from __future__ import annotations

from typing import Optional

from tokenkeeper.logging import get_logger
from tokenkeeper.service.errors import (
    MalformedCredentialError,
    MissingCredentialError,
    ServiceError,
)
from tokenkeeper.service.tokens import Identity, TokenCodec

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "


class AuthGuard:
    """Resolves the caller from an ``Authorization: Bearer <token>`` header.

    Only the token signature and expiry are checked; the store is never
    consulted on this path.
    """

    def __init__(self, codec: TokenCodec) -> None:
        self.codec = codec

    def _extract_bearer(self, header: Optional[str]) -> str:
        if header is None or not header.strip():
            raise MissingCredentialError("authorization header required")
        if not header.startswith(BEARER_PREFIX):
            raise MalformedCredentialError("authorization header must use the Bearer scheme")
        token = header[len(BEARER_PREFIX):]
        if not token:
            raise MissingCredentialError("authorization header required")
        if any(ch.isspace() for ch in token):
            raise MalformedCredentialError("authorization header must use the Bearer scheme")
        return token

    def authenticate(self, raw_header: Optional[str]) -> Identity:
        token = self._extract_bearer(raw_header)
        claims = self.codec.verify(token)
        return claims.identity()

    def authenticate_optional(self, raw_header: Optional[str]) -> Optional[Identity]:
        try:
            return self.authenticate(raw_header)
        except ServiceError as exc:
            logger.debug("optional_auth_rejected", error_code=exc.error_code)
            return None
