"""QR sign-in token generation."""

from __future__ import annotations

import secrets

DEFAULT_TOKEN_BYTES = 16


def new_qr_token(nbytes: int = DEFAULT_TOKEN_BYTES) -> str:
    """Return a fresh URL-safe token from the OS CSPRNG."""
    return secrets.token_urlsafe(nbytes)
