"""
Household Coordinator — Data Models.

Explicit schemas for every stored entity. Rows read back from the store are
validated through these models; a row that does not fit raises
RecordDecodeError instead of being coerced into shape.

Records are addressed by document-style paths:

    households/{householdId}
    households/{householdId}/members/{memberId}
    households/{householdId}/chores/{choreId}
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ValidationError, field_validator

from src.core.errors import RecordDecodeError

ChoreStatus = Literal["open", "done"]
STATUS_OPEN: ChoreStatus = "open"
STATUS_DONE: ChoreStatus = "done"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_aware(v: datetime | None) -> datetime | None:
    if v is None:
        return None
    if v.tzinfo is None:
        raise ValueError("timestamp must be timezone-aware")
    return v.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def household_path(household_id: str) -> str:
    return f"households/{household_id}"


def member_path(household_id: str, member_id: str) -> str:
    return f"households/{household_id}/members/{member_id}"


def chore_path(household_id: str, chore_id: str) -> str:
    return f"households/{household_id}/chores/{chore_id}"


def household_id_from_path(path: str | None) -> str | None:
    """Return the owning household id of a member/chore path, or None."""
    if not path:
        return None
    parts = path.strip("/").split("/")
    if len(parts) != 4 or parts[0] != "households" or parts[2] not in ("members", "chores"):
        return None
    return parts[1] or None


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class Household(BaseModel):
    """Tenant boundary grouping members and chores."""

    id: str
    name: str = ""
    locale: str = "fi-FI"
    timezone: str = "Europe/Helsinki"
    max_members: int = 10
    created_at: datetime | None = None
    rotated_at: datetime | None = None

    @field_validator("created_at", "rotated_at")
    @classmethod
    def check_timestamps(cls, v: datetime | None) -> datetime | None:
        return _require_aware(v)

    @property
    def path(self) -> str:
        return household_path(self.id)


class Member(BaseModel):
    """A household participant with an identity subject and a rotating QR token.

    ``uid`` doubles as the identity-service subject; records created only by a
    points increment may lack it, in which case the member id is used.
    """

    household_id: str
    id: str
    uid: str | None = None
    display_name: str = ""
    role: str = "parent"
    age: int | None = None
    qr_id: str | None = None
    notification_tokens: list[str] = []
    points: int = 0
    last_qr_use_at: datetime | None = None
    created_at: datetime | None = None

    @field_validator("last_qr_use_at", "created_at")
    @classmethod
    def check_timestamps(cls, v: datetime | None) -> datetime | None:
        return _require_aware(v)

    @property
    def path(self) -> str:
        return member_path(self.household_id, self.id)

    @property
    def subject(self) -> str:
        return self.uid or self.id


class Chore(BaseModel):
    """A trackable task with a deadline, assignees and a point reward."""

    household_id: str
    id: str
    title: str
    notes: str | None = None
    assignees: list[str] = []
    due_at: datetime
    repeat_rule: str | None = None  # stored, never evaluated
    points: int = 1
    proof_required: bool = False
    status: ChoreStatus = STATUS_OPEN
    created_by: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None

    @field_validator("due_at", "created_at", "completed_at")
    @classmethod
    def check_timestamps(cls, v: datetime | None) -> datetime | None:
        return _require_aware(v)

    @property
    def path(self) -> str:
        return chore_path(self.household_id, self.id)


@dataclass(frozen=True)
class ChoreWriteEvent:
    """Pre- and post-write snapshots of a chore record.

    Either side is None for a create (before) or delete (after).
    """

    path: str
    before: Chore | None
    after: Chore | None


_M = TypeVar("_M", bound=BaseModel)


def decode_record(model: type[_M], path: str, data: dict[str, Any]) -> _M:
    """Validate raw stored fields against an entity schema."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise RecordDecodeError(path, str(exc)) from exc
