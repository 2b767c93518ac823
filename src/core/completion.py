"""
Household Coordinator — Chore Completion Reactor.

Runs on every chore write. An open -> done edge awards the chore's points to
each assignee; every other edge is ignored.

Write events can be delivered more than once. Each award batch also writes a
ledger key (household, chore, completion timestamp), so a redelivered event
finds its key taken and the whole batch rolls back without touching points.
"""

from __future__ import annotations

import logging

from src.core.errors import AlreadyExists
from src.data.db import HouseholdStore
from src.data.models import STATUS_DONE, STATUS_OPEN, ChoreWriteEvent, household_id_from_path

logger = logging.getLogger(__name__)


def is_completion(event: ChoreWriteEvent) -> bool:
    """True only for an exact open -> done transition."""
    return (
        event.before is not None
        and event.after is not None
        and event.before.status == STATUS_OPEN
        and event.after.status == STATUS_DONE
    )


def on_chore_written(store: HouseholdStore, event: ChoreWriteEvent) -> int:
    """Award points for a completed chore. Returns the number of members awarded."""
    if not is_completion(event):
        return 0

    household_id = household_id_from_path(event.path)
    if household_id is None:
        logger.warning("Skipping award: cannot resolve household from %s", event.path)
        return 0

    chore = event.after
    assignees = list(dict.fromkeys(chore.assignees))
    if not assignees:
        logger.info("Chore %s completed with no assignees, nothing to award", event.path)
        return 0

    batch = store.batch()
    if chore.completed_at is not None:
        batch.record_award(household_id, chore.id, chore.completed_at)
    else:
        logger.warning("Chore %s has no completion time; awarding without duplicate guard", event.path)

    for member_id in assignees:
        batch.increment_member_points(household_id, member_id, chore.points)

    try:
        batch.commit()
    except AlreadyExists:
        logger.info("Duplicate completion event for %s ignored", event.path)
        return 0

    logger.info(
        "Awarded %d point(s) to %d assignee(s) for %s",
        chore.points, len(assignees), event.path,
    )
    return len(assignees)
