"""JWT identity adapter — implements IdentityPort.

Mints short-lived HS256 custom tokens bound to a member's identity subject.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from src.ports.identity_port import IdentityError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class JwtIdentityIssuer:
    """python-jose implementation of IdentityPort."""

    def __init__(
        self,
        signing_key: str,
        issuer: str = "household-coordinator",
        ttl_minutes: int = 60,
    ) -> None:
        self._signing_key = signing_key
        self._issuer = issuer
        self._ttl = timedelta(minutes=ttl_minutes)

    def create_custom_token(self, uid: str, claims: dict[str, Any]) -> str:
        if not uid:
            raise IdentityError("Cannot mint a token without a subject")

        now = datetime.now(timezone.utc)
        payload = {
            "iss": self._issuer,
            "sub": uid,
            "uid": uid,
            "claims": dict(claims),
            "iat": now,
            "exp": now + self._ttl,
        }
        try:
            token = jwt.encode(payload, self._signing_key, algorithm=ALGORITHM)
        except JWTError as exc:
            raise IdentityError(f"Token signing failed: {exc}") from exc
        logger.debug("Custom token minted for %s", uid)
        return token

    def verify(self, token: str) -> dict[str, Any]:
        """Decode and validate a token minted by this issuer."""
        try:
            return jwt.decode(
                token, self._signing_key, algorithms=[ALGORITHM], issuer=self._issuer,
            )
        except JWTError as exc:
            raise IdentityError(f"Invalid token: {exc}") from exc
