"""Identity port — abstract interface for minting sign-in credentials.

Core modules depend on this protocol, never on a specific identity service.
"""

from __future__ import annotations

from typing import Any, Protocol


class IdentityError(Exception):
    """Raised when the identity service cannot mint a credential."""


class IdentityPort(Protocol):
    """Issues bearer credentials for an identity subject."""

    def create_custom_token(self, uid: str, claims: dict[str, Any]) -> str: ...
