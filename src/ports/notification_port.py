"""Push port — abstract interface for multicast device notifications.

Core modules depend on this protocol, never on a specific push provider.
"""

from __future__ import annotations

from typing import Protocol


class PushPort(Protocol):
    """Best-effort delivery of one notification to many device tokens."""

    async def send_multicast(self, tokens: list[str], title: str, body: str) -> None: ...
