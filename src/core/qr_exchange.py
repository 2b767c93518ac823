"""
Household Coordinator — QR Sign-In Exchange.

A secondary device signs in by presenting the QR token shown on an already
signed-in device. The token is exchanged for a custom credential and rotated
in the same step, so a captured QR code stops working the moment it is used.

Also hosts the two bootstrap operations that put a member's first token in
place: provisioning a fresh household, and seeding an exact member record.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
from dataclasses import dataclass

from src.core.errors import (
    CoordinatorError,
    Internal,
    InvalidArgument,
    NotFound,
    PermissionDenied,
)
from src.core.qr_tokens import DEFAULT_TOKEN_BYTES, new_qr_token
from src.data.db import HouseholdStore, new_id
from src.data.models import Household, Member, member_path, utcnow
from src.ports.identity_port import IdentityError, IdentityPort

logger = logging.getLogger(__name__)


@dataclass
class ProvisionResult:
    """Identifiers of a freshly provisioned household and its founding member."""

    household_id: str
    member_id: str
    qr_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "householdId": self.household_id,
            "memberId": self.member_id,
            "qrId": self.qr_id,
        }


def _tokens_match(stored: str | None, presented: str) -> bool:
    if not stored:
        return False
    return secrets.compare_digest(stored.encode(), presented.encode())


def exchange_qr_token(
    store: HouseholdStore,
    identity: IdentityPort,
    qr_id: str,
    household_id: str,
    member_id: str,
    token_bytes: int = DEFAULT_TOKEN_BYTES,
) -> str:
    """Exchange a presented QR token for a custom credential and rotate it.

    Raises:
        InvalidArgument: any of the three identifiers is missing.
        NotFound: no member at households/{household_id}/members/{member_id}.
        PermissionDenied: the stored token differs from ``qr_id``.
        Internal: the identity service or the store failed.
    """
    if not qr_id or not household_id or not member_id:
        raise InvalidArgument("Missing qrId/householdId/memberId")

    path = member_path(household_id, member_id)
    try:
        member = store.get_member(household_id, member_id)
    except (sqlite3.Error, CoordinatorError) as exc:
        logger.error("Member lookup failed for %s: %s", path, exc)
        raise Internal("Member lookup failed", context={"path": path}) from exc

    if member is None:
        raise NotFound("Member not found", context={"path": path})

    if not _tokens_match(member.qr_id, qr_id):
        logger.warning("Rejected QR exchange for %s: token invalid or rotated", path)
        raise PermissionDenied("QR invalid or rotated", context={"path": path})

    # Read and rotate are not compare-and-set: two exchanges racing on the
    # same token can both pass the check above.
    try:
        custom_token = identity.create_custom_token(member.subject, {"householdId": household_id})
        store.update_member(
            household_id, member_id,
            qr_id=new_qr_token(token_bytes),
            last_qr_use_at=utcnow(),
        )
    except (IdentityError, sqlite3.Error, CoordinatorError) as exc:
        logger.error("Custom token exchange failed for %s: %s", path, exc)
        raise Internal("Failed to create custom token", context={"path": path}) from exc

    logger.info("QR exchange succeeded for %s, token rotated", path)
    return custom_token


def provision_household(
    store: HouseholdStore,
    token_bytes: int = DEFAULT_TOKEN_BYTES,
) -> ProvisionResult:
    """Create a household together with its founding member in one batch."""
    now = utcnow()
    household = Household(
        id=new_id(),
        name="Dev Household",
        locale="fi-FI",
        timezone="Europe/Helsinki",
        max_members=10,
        created_at=now,
    )
    member_id = new_id()
    member = Member(
        household_id=household.id,
        id=member_id,
        uid=member_id,
        display_name="Test Member",
        role="parent",
        age=15,
        qr_id=new_qr_token(token_bytes),
        notification_tokens=[],
        created_at=now,
    )

    try:
        store.batch().create_household(household).create_member(member).commit()
    except (sqlite3.Error, CoordinatorError) as exc:
        logger.error("Household provisioning failed: %s", exc)
        raise Internal("Household provisioning failed") from exc

    logger.info("Provisioned household %s with founding member %s", household.id, member.id)
    return ProvisionResult(household_id=household.id, member_id=member.id, qr_id=member.qr_id)


def seed_member(
    store: HouseholdStore,
    household_id: str,
    member_id: str,
    qr_id: str,
) -> dict[str, bool]:
    """Upsert a household and member with an exact QR token.

    Merge semantics: only ``uid`` and ``qr_id`` are overwritten on an existing
    member; creation times are written only for new records.
    """
    if not household_id or not member_id or not qr_id:
        raise InvalidArgument("Missing householdId/memberId/qrId")

    now = utcnow()
    try:
        (
            store.batch()
            .merge_household(household_id, defaults={"created_at": now})
            .merge_member(household_id, member_id, defaults={"created_at": now}, uid=member_id, qr_id=qr_id)
            .commit()
        )
    except (sqlite3.Error, CoordinatorError) as exc:
        logger.error("Seeding %s failed: %s", member_path(household_id, member_id), exc)
        raise Internal("Seeding member failed") from exc

    logger.info("Seeded member %s", member_path(household_id, member_id))
    return {"ok": True}
