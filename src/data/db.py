"""
Household Coordinator — Document Store.

SQLite-backed store for households, members and chores, addressed by
document-style paths. Offers what the coordination handlers need and
nothing more: point reads, collection-group scans, an "is one of" filter
capped at IN_FILTER_LIMIT values, and atomic write batches.

One HouseholdStore is constructed at process start and handed to every
handler; it holds no state beyond its database path.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from src.core.errors import AlreadyExists, NotFound, RecordDecodeError
from src.data.models import (
    STATUS_DONE,
    STATUS_OPEN,
    Chore,
    ChoreWriteEvent,
    Household,
    Member,
    chore_path,
    decode_record,
    household_path,
    member_path,
    utcnow,
)

logger = logging.getLogger(__name__)

# Upper bound on values in a single "is one of" filter.
IN_FILTER_LIMIT = 10

_HOUSEHOLD_COLUMNS = frozenset(
    {"name", "locale", "timezone", "max_members", "created_at", "rotated_at"}
)
_MEMBER_COLUMNS = frozenset(
    {
        "uid", "display_name", "role", "age", "qr_id", "notification_tokens",
        "points", "last_qr_use_at", "created_at",
    }
)
_JSON_COLUMNS = frozenset({"notification_tokens", "assignees"})
_TIMESTAMP_COLUMNS = frozenset(
    {"created_at", "rotated_at", "last_qr_use_at", "due_at", "completed_at"}
)

_Op = Callable[[sqlite3.Connection], None]


def new_id() -> str:
    """Generate a 20-character document id."""
    return uuid.uuid4().hex[:20]


def to_storage_ts(value: datetime | None) -> str | None:
    """Normalize an aware datetime to a fixed-width UTC string.

    The fixed width keeps lexical order equal to chronological order, which
    the due-window range scan relies on.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError("timestamp must be timezone-aware")
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        return json.dumps(list(value or []))
    if column in _TIMESTAMP_COLUMNS:
        return to_storage_ts(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _check_columns(fields: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)}")


class HouseholdStore:
    """SQLite-backed document store for the household tenant tree."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS households (
                    id           TEXT PRIMARY KEY,
                    name         TEXT    NOT NULL DEFAULT '',
                    locale       TEXT    NOT NULL DEFAULT 'fi-FI',
                    timezone     TEXT    NOT NULL DEFAULT 'Europe/Helsinki',
                    max_members  INTEGER NOT NULL DEFAULT 10,
                    created_at   TEXT,
                    rotated_at   TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS members (
                    household_id        TEXT    NOT NULL,
                    id                  TEXT    NOT NULL,
                    uid                 TEXT,
                    display_name        TEXT    NOT NULL DEFAULT '',
                    role                TEXT    NOT NULL DEFAULT 'parent',
                    age                 INTEGER,
                    qr_id               TEXT,
                    notification_tokens TEXT    NOT NULL DEFAULT '[]',
                    points              INTEGER NOT NULL DEFAULT 0,
                    last_qr_use_at      TEXT,
                    created_at          TEXT,
                    PRIMARY KEY (household_id, id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chores (
                    household_id   TEXT    NOT NULL,
                    id             TEXT    NOT NULL,
                    title          TEXT    NOT NULL,
                    notes          TEXT,
                    assignees      TEXT    NOT NULL DEFAULT '[]',
                    due_at         TEXT    NOT NULL,
                    repeat_rule    TEXT,
                    points         INTEGER NOT NULL DEFAULT 1,
                    proof_required INTEGER NOT NULL DEFAULT 0,
                    status         TEXT    NOT NULL DEFAULT 'open',
                    created_by     TEXT,
                    created_at     TEXT,
                    completed_at   TEXT,
                    PRIMARY KEY (household_id, id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS award_ledger (
                    household_id TEXT NOT NULL,
                    chore_id     TEXT NOT NULL,
                    completed_at TEXT NOT NULL,
                    awarded_at   TEXT NOT NULL,
                    PRIMARY KEY (household_id, chore_id, completed_at)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_chores_status_due ON chores (status, due_at)"
            )
        logger.debug("Household store initialized at %s", self._db_path)

    # -- Row decoding -------------------------------------------------------

    @staticmethod
    def _load_json(row: sqlite3.Row, column: str, path: str) -> Any:
        try:
            return json.loads(row[column])
        except (TypeError, ValueError) as exc:
            raise RecordDecodeError(path, f"{column} is not valid JSON") from exc

    @staticmethod
    def _row_to_household(row: sqlite3.Row) -> Household:
        path = household_path(row["id"])
        return decode_record(Household, path, dict(row))

    @classmethod
    def _row_to_member(cls, row: sqlite3.Row) -> Member:
        path = member_path(row["household_id"], row["id"])
        data = dict(row)
        data["notification_tokens"] = cls._load_json(row, "notification_tokens", path)
        return decode_record(Member, path, data)

    @classmethod
    def _row_to_chore(cls, row: sqlite3.Row) -> Chore:
        path = chore_path(row["household_id"], row["id"])
        data = dict(row)
        data["assignees"] = cls._load_json(row, "assignees", path)
        return decode_record(Chore, path, data)

    # -- Households ---------------------------------------------------------

    def get_household(self, household_id: str) -> Household | None:
        """Fetch a single household by ID."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM households WHERE id = ?", (household_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_household(row)

    def list_households(self) -> list[Household]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM households ORDER BY id").fetchall()
        return [self._row_to_household(r) for r in rows]

    # -- Members ------------------------------------------------------------

    def get_member(self, household_id: str, member_id: str) -> Member | None:
        """Point read at households/{h}/members/{m}."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM members WHERE household_id = ? AND id = ?",
                (household_id, member_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_member(row)

    def list_members(self, household_id: str | None = None) -> list[Member]:
        """List members of one household, or of every household when None."""
        query = "SELECT * FROM members"
        params: list = []
        if household_id is not None:
            query += " WHERE household_id = ?"
            params.append(household_id)
        query += " ORDER BY household_id, id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_member(r) for r in rows]

    def members_with_uid_in(self, household_id: str, uids: list[str]) -> list[Member]:
        """Members of a household whose uid is one of ``uids``.

        Raises ValueError for more than IN_FILTER_LIMIT values; callers must
        batch larger lists themselves.
        """
        if len(uids) > IN_FILTER_LIMIT:
            raise ValueError(
                f"'in' filter accepts at most {IN_FILTER_LIMIT} values, got {len(uids)}"
            )
        if not uids:
            return []

        placeholders = ", ".join("?" for _ in uids)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM members WHERE household_id = ? AND uid IN ({placeholders})"
                " ORDER BY id",
                [household_id, *uids],
            ).fetchall()
        return [self._row_to_member(r) for r in rows]

    def update_member(self, household_id: str, member_id: str, **fields: Any) -> None:
        """Update fields of an existing member. Raises NotFound if absent."""
        batch = self.batch()
        batch.update_member(household_id, member_id, **fields)
        batch.commit()

    # -- Chores -------------------------------------------------------------

    def add_chore(
        self,
        household_id: str,
        title: str,
        due_at: datetime,
        assignees: list[str] | None = None,
        points: int = 1,
        notes: str | None = None,
        proof_required: bool = False,
        repeat_rule: str | None = None,
        created_by: str | None = None,
        chore_id: str | None = None,
    ) -> Chore:
        """Insert a new open chore."""
        chore = Chore(
            household_id=household_id,
            id=chore_id or new_id(),
            title=title,
            notes=notes,
            assignees=list(assignees or []),
            due_at=due_at,
            repeat_rule=repeat_rule,
            points=points,
            proof_required=proof_required,
            status=STATUS_OPEN,
            created_by=created_by,
            created_at=utcnow(),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chores
                    (household_id, id, title, notes, assignees, due_at, repeat_rule,
                     points, proof_required, status, created_by, created_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
                """,
                (
                    chore.household_id, chore.id, chore.title, chore.notes,
                    _encode("assignees", chore.assignees),
                    to_storage_ts(chore.due_at), chore.repeat_rule, chore.points,
                    int(chore.proof_required), chore.status, chore.created_by,
                    to_storage_ts(chore.created_at),
                ),
            )
        logger.info("Chore added: %s '%s' due %s", chore.path, title, chore.due_at.isoformat())
        return chore

    def get_chore(self, household_id: str, chore_id: str) -> Chore | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chores WHERE household_id = ? AND id = ?",
                (household_id, chore_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_chore(row)

    def open_chores_due_between(self, start: datetime, end: datetime) -> list[Chore]:
        """Collection-group scan: open chores with start <= due_at <= end."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM chores
                WHERE status = ? AND due_at >= ? AND due_at <= ?
                ORDER BY due_at
                """,
                (STATUS_OPEN, to_storage_ts(start), to_storage_ts(end)),
            ).fetchall()
        return [self._row_to_chore(r) for r in rows]

    def complete_chore(
        self, household_id: str, chore_id: str, completed_at: datetime | None = None,
    ) -> ChoreWriteEvent:
        """Set a chore to done and return its before/after snapshots."""
        return self._write_status(household_id, chore_id, STATUS_DONE, completed_at or utcnow())

    def reopen_chore(self, household_id: str, chore_id: str) -> ChoreWriteEvent:
        """Undo a completion and return its before/after snapshots."""
        return self._write_status(household_id, chore_id, STATUS_OPEN, None)

    def _write_status(
        self, household_id: str, chore_id: str, status: str, completed_at: datetime | None,
    ) -> ChoreWriteEvent:
        select = "SELECT * FROM chores WHERE household_id = ? AND id = ?"
        with self._connect() as conn:
            # Take the write lock before reading so the before snapshot is
            # the state this update actually replaces.
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(select, (household_id, chore_id)).fetchone()
            if row is None:
                raise NotFound(
                    "Chore not found", context={"path": chore_path(household_id, chore_id)}
                )
            conn.execute(
                "UPDATE chores SET status = ?, completed_at = ? WHERE household_id = ? AND id = ?",
                (status, to_storage_ts(completed_at), household_id, chore_id),
            )
            after_row = conn.execute(select, (household_id, chore_id)).fetchone()

        event = ChoreWriteEvent(
            path=chore_path(household_id, chore_id),
            before=self._row_to_chore(row),
            after=self._row_to_chore(after_row),
        )
        logger.info("Chore %s status %s -> %s", event.path, row["status"], status)
        return event

    # -- Award ledger -------------------------------------------------------

    def has_award(self, household_id: str, chore_id: str, completed_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM award_ledger
                WHERE household_id = ? AND chore_id = ? AND completed_at = ?
                """,
                (household_id, chore_id, to_storage_ts(completed_at)),
            ).fetchone()
        return row is not None

    # -- Batched writes -----------------------------------------------------

    def batch(self) -> WriteBatch:
        return WriteBatch(self)


class WriteBatch:
    """Atomic multi-record mutation: every queued write lands, or none does.

    Writes are queued in order and applied inside a single SQLite transaction
    on commit(). Any failure while applying rolls the whole batch back.
    """

    def __init__(self, store: HouseholdStore) -> None:
        self._store = store
        self._ops: list[_Op] = []

    def __len__(self) -> int:
        return len(self._ops)

    def create_household(self, household: Household) -> WriteBatch:
        fields = household.model_dump(exclude={"id"})

        def op(conn: sqlite3.Connection) -> None:
            columns = ["id", *fields]
            values = [household.id, *(_encode(c, v) for c, v in fields.items())]
            try:
                conn.execute(
                    f"INSERT INTO households ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    values,
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyExists(
                    "Household already exists", context={"path": household.path}
                ) from exc

        self._ops.append(op)
        return self

    def create_member(self, member: Member) -> WriteBatch:
        fields = member.model_dump(exclude={"household_id", "id"})

        def op(conn: sqlite3.Connection) -> None:
            columns = ["household_id", "id", *fields]
            values = [member.household_id, member.id, *(_encode(c, v) for c, v in fields.items())]
            try:
                conn.execute(
                    f"INSERT INTO members ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    values,
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyExists(
                    "Member already exists", context={"path": member.path}
                ) from exc

        self._ops.append(op)
        return self

    def update_household(self, household_id: str, **fields: Any) -> WriteBatch:
        """Update an existing household; NotFound on commit if absent."""
        _check_columns(fields, _HOUSEHOLD_COLUMNS)
        self._ops.append(
            self._update_op("households", ("id",), (household_id,), fields, household_path(household_id))
        )
        return self

    def update_member(self, household_id: str, member_id: str, **fields: Any) -> WriteBatch:
        """Update an existing member; NotFound on commit if absent."""
        _check_columns(fields, _MEMBER_COLUMNS)
        self._ops.append(
            self._update_op(
                "members", ("household_id", "id"), (household_id, member_id), fields,
                member_path(household_id, member_id),
            )
        )
        return self

    def merge_household(
        self, household_id: str, defaults: dict[str, Any] | None = None, **fields: Any,
    ) -> WriteBatch:
        """Upsert: create the household if absent, else overwrite only ``fields``.

        ``defaults`` are written only when the record is created.
        """
        defaults = defaults or {}
        _check_columns({**defaults, **fields}, _HOUSEHOLD_COLUMNS)
        self._ops.append(self._merge_op("households", ("id",), (household_id,), fields, defaults))
        return self

    def merge_member(
        self, household_id: str, member_id: str, defaults: dict[str, Any] | None = None, **fields: Any,
    ) -> WriteBatch:
        """Upsert: create the member if absent, else overwrite only ``fields``."""
        defaults = defaults or {}
        _check_columns({**defaults, **fields}, _MEMBER_COLUMNS)
        self._ops.append(
            self._merge_op(
                "members", ("household_id", "id"), (household_id, member_id), fields, defaults,
            )
        )
        return self

    def increment_member_points(self, household_id: str, member_id: str, amount: int) -> WriteBatch:
        """Atomic numeric increment; creates the member record if absent."""

        def op(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO members (household_id, id, points) VALUES (?, ?, ?)
                ON CONFLICT (household_id, id) DO UPDATE SET points = points + excluded.points
                """,
                (household_id, member_id, amount),
            )

        self._ops.append(op)
        return self

    def record_award(self, household_id: str, chore_id: str, completed_at: datetime) -> WriteBatch:
        """Insert a ledger key; AlreadyExists on commit if it is already present."""

        def op(conn: sqlite3.Connection) -> None:
            try:
                conn.execute(
                    """
                    INSERT INTO award_ledger (household_id, chore_id, completed_at, awarded_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (household_id, chore_id, to_storage_ts(completed_at), to_storage_ts(utcnow())),
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyExists(
                    "Completion already awarded",
                    context={"path": chore_path(household_id, chore_id)},
                ) from exc

        self._ops.append(op)
        return self

    def commit(self) -> None:
        """Apply all queued writes in one transaction."""
        if not self._ops:
            return
        with self._store._connect() as conn:
            for op in self._ops:
                op(conn)
        logger.debug("Committed batch of %d writes", len(self._ops))
        self._ops = []

    @staticmethod
    def _update_op(
        table: str, key_cols: tuple[str, ...], key: tuple[str, ...], fields: dict[str, Any], path: str,
    ) -> _Op:
        def op(conn: sqlite3.Connection) -> None:
            assignments = ", ".join(f"{c} = ?" for c in fields)
            where = " AND ".join(f"{c} = ?" for c in key_cols)
            values = [_encode(c, v) for c, v in fields.items()]
            if fields:
                cursor = conn.execute(f"UPDATE {table} SET {assignments} WHERE {where}", [*values, *key])
                found = cursor.rowcount > 0
            else:
                found = conn.execute(f"SELECT 1 FROM {table} WHERE {where}", key).fetchone() is not None
            if not found:
                raise NotFound("No document to update", context={"path": path})

        return op

    @staticmethod
    def _merge_op(
        table: str,
        key_cols: tuple[str, ...],
        key: tuple[str, ...],
        fields: dict[str, Any],
        defaults: dict[str, Any],
    ) -> _Op:
        def op(conn: sqlite3.Connection) -> None:
            inserted = {**defaults, **fields}
            columns = [*key_cols, *inserted]
            values = [*key, *(_encode(c, v) for c, v in inserted.items())]
            conflict = ", ".join(key_cols)
            if fields:
                on_conflict = "DO UPDATE SET " + ", ".join(f"{c} = excluded.{c}" for c in fields)
            else:
                on_conflict = "DO NOTHING"
            conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)}) "
                f"ON CONFLICT ({conflict}) {on_conflict}",
                values,
            )

        return op
