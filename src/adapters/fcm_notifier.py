"""FCM push adapter — implements PushPort.

Sends one HTTP v1 message per device token over a single client. Delivery
is best-effort: per-token failures are logged and counted, never raised or
retried here.
"""

from __future__ import annotations

import asyncio
import logging

import httpx
from google.auth.transport.requests import Request
from google.oauth2 import service_account

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/firebase.messaging"]
_FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
_TIMEOUT_SECONDS = 10


class FcmNotifier:
    """Firebase Cloud Messaging implementation of PushPort."""

    def __init__(self, project_id: str, credentials) -> None:
        self._url = _FCM_SEND_URL.format(project_id=project_id)
        self._credentials = credentials

    @classmethod
    def from_service_account_file(cls, project_id: str, path: str) -> FcmNotifier:
        creds = service_account.Credentials.from_service_account_file(path, scopes=SCOPES)
        logger.info("Loaded FCM service account from %s", path)
        return cls(project_id, creds)

    def _access_token(self) -> str:
        if not self._credentials.valid:
            self._credentials.refresh(Request())
        return self._credentials.token

    async def send_multicast(self, tokens: list[str], title: str, body: str) -> None:
        if not tokens:
            return

        # Credential refresh is a blocking HTTP call.
        access_token = await asyncio.to_thread(self._access_token)
        headers = {"Authorization": f"Bearer {access_token}"}
        failures = 0
        async with httpx.AsyncClient(timeout=_TIMEOUT_SECONDS) as client:
            for token in tokens:
                message = {
                    "message": {
                        "token": token,
                        "notification": {"title": title, "body": body},
                    }
                }
                try:
                    resp = await client.post(self._url, json=message, headers=headers)
                    resp.raise_for_status()
                except httpx.HTTPError as exc:
                    failures += 1
                    logger.warning("FCM delivery failed for token %s…: %s", token[:8], exc)

        logger.info(
            "FCM multicast: %d delivered, %d failed", len(tokens) - failures, failures,
        )
