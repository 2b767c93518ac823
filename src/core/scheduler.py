"""
Household Coordinator — Scheduled Jobs.

Due-soon fan-out: every few minutes, notify the assignees of open chores whose
deadline falls inside the lookahead window, in one multicast call.

QR rotation: once a day, invalidate every outstanding QR code store-wide in a
single atomic batch.

Repeat rules: daily placeholder for recurrence evaluation.

Every job takes its store and ports as arguments; nothing is shared between
runs. A failed run is not retried here; the next firing is the retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from typing import TYPE_CHECKING

from src.core.batching import query_in_chunks
from src.core.qr_tokens import DEFAULT_TOKEN_BYTES, new_qr_token
from src.data.models import household_id_from_path, utcnow

if TYPE_CHECKING:
    from src.data.db import HouseholdStore
    from src.ports.notification_port import PushPort

logger = logging.getLogger(__name__)

DUE_SOON_WINDOW = timedelta(minutes=15)
DUE_SOON_TITLE = "Tehtävä erääntyy pian"
DUE_SOON_BODY = "Muistutus: tarkista tämän päivän tehtävät"


# ---------------------------------------------------------------------------
# Due-soon notifications
# ---------------------------------------------------------------------------


async def send_due_notifications(
    store: HouseholdStore,
    push: PushPort,
    now: datetime | None = None,
    window: timedelta = DUE_SOON_WINDOW,
    title: str = DUE_SOON_TITLE,
    body: str = DUE_SOON_BODY,
) -> list[str]:
    """Notify assignees of open chores due within [now, now + window].

    Device tokens from all matching chores are merged into one list, first
    occurrence wins, and sent in a single multicast call. A chore whose
    household cannot be resolved, or that has no assignees, is skipped.

    Returns:
        The device tokens the notification was sent to (empty if none).
    """
    now = now or utcnow()
    horizon = now + window

    chores = store.open_chores_due_between(now, horizon)
    tokens: list[str] = []
    seen: set[str] = set()

    for chore in chores:
        household_id = household_id_from_path(chore.path)
        if household_id is None:
            logger.warning("Skipping chore %s: household unresolvable", chore.path)
            continue
        if not chore.assignees:
            continue

        members = query_in_chunks(
            chore.assignees, partial(store.members_with_uid_in, household_id),
        )
        for member in members:
            for token in member.notification_tokens:
                if token not in seen:
                    seen.add(token)
                    tokens.append(token)

    if not tokens:
        logger.debug("Due-soon scan: %d chore(s), no device tokens", len(chores))
        return []

    await push.send_multicast(tokens, title, body)
    logger.info(
        "Due-soon notification sent to %d device(s) for %d chore(s)", len(tokens), len(chores),
    )
    return tokens


# ---------------------------------------------------------------------------
# QR rotation
# ---------------------------------------------------------------------------


@dataclass
class RotationSummary:
    households: int
    members: int


def rotate_qr_codes(
    store: HouseholdStore,
    now: datetime | None = None,
    token_bytes: int = DEFAULT_TOKEN_BYTES,
) -> RotationSummary:
    """Stamp every household and give every member a fresh QR token, atomically."""
    now = now or utcnow()
    households = store.list_households()
    members = store.list_members()

    batch = store.batch()
    for household in households:
        batch.update_household(household.id, rotated_at=now)
    for member in members:
        batch.update_member(member.household_id, member.id, qr_id=new_qr_token(token_bytes))
    batch.commit()

    logger.info(
        "Rotated QR tokens for %d member(s) across %d household(s)",
        len(members), len(households),
    )
    return RotationSummary(households=len(households), members=len(members))


# ---------------------------------------------------------------------------
# Repeat rules
# ---------------------------------------------------------------------------


def apply_repeat_rules(store: HouseholdStore) -> None:
    """Placeholder for recurrence-rule evaluation; intentionally does nothing.

    A real implementation would scan chores with a ``repeat_rule`` and open
    the next occurrence through ``store``.
    """
    logger.info("Repeat-rule job ran; recurrence evaluation is not implemented")
