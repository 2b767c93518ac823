"""Tests for src.data.db — HouseholdStore and WriteBatch."""

import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from src.core.errors import AlreadyExists, NotFound, RecordDecodeError
from src.data.db import IN_FILTER_LIMIT, HouseholdStore, to_storage_ts


class TestInit:
    def test_creates_tables(self, tmp_db_path):
        HouseholdStore(db_path=tmp_db_path)
        with sqlite3.connect(tmp_db_path) as conn:
            tables = {
                row[0] for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                ).fetchall()
            }
        assert {"households", "members", "chores", "award_ledger"} <= tables

    def test_reopen_existing_db(self, tmp_db_path):
        HouseholdStore(db_path=tmp_db_path)
        store = HouseholdStore(db_path=tmp_db_path)
        assert store.list_households() == []


class TestStorageTimestamps:
    def test_fixed_width_utc(self):
        ts = to_storage_ts(datetime(2026, 3, 2, 14, 0, tzinfo=timezone(timedelta(hours=2))))
        assert ts == "2026-03-02T12:00:00.000000+00:00"

    def test_naive_rejected(self):
        with pytest.raises(ValueError):
            to_storage_ts(datetime(2026, 3, 2, 12, 0))


class TestMembers:
    def test_get_missing_member(self, store):
        assert store.get_member("h1", "nobody") is None

    def test_roundtrip_fields(self, store, add_member):
        add_member("h1", "alice", qr_id="qr-a", tokens=["t1", "t2"], points=5)
        member = store.get_member("h1", "alice")
        assert member.qr_id == "qr-a"
        assert member.notification_tokens == ["t1", "t2"]
        assert member.points == 5
        assert member.uid == "alice"

    def test_list_members_scoped_and_store_wide(self, store, add_member):
        add_member("h1", "alice")
        add_member("h1", "bob")
        add_member("h2", "carol")
        assert [m.id for m in store.list_members("h1")] == ["alice", "bob"]
        assert len(store.list_members()) == 3

    def test_update_missing_member_raises(self, store):
        with pytest.raises(NotFound):
            store.update_member("h1", "ghost", qr_id="x")

    def test_update_rejects_unknown_field(self, store, add_member):
        add_member("h1", "alice")
        with pytest.raises(ValueError):
            store.update_member("h1", "alice", favourite_colour="blue")

    def test_corrupted_row_raises_decode_error(self, store, add_member, tmp_db_path):
        add_member("h1", "alice")
        with sqlite3.connect(tmp_db_path) as conn:
            conn.execute("UPDATE members SET notification_tokens = 'not json' WHERE id = 'alice'")
        with pytest.raises(RecordDecodeError) as exc_info:
            store.get_member("h1", "alice")
        assert exc_info.value.path == "households/h1/members/alice"


class TestUidInFilter:
    def test_matches_only_listed_uids_in_household(self, store, add_member):
        add_member("h1", "alice")
        add_member("h1", "bob")
        add_member("h2", "alice")
        found = store.members_with_uid_in("h1", ["alice", "zed"])
        assert [(m.household_id, m.id) for m in found] == [("h1", "alice")]

    def test_empty_list(self, store):
        assert store.members_with_uid_in("h1", []) == []

    def test_rejects_more_than_limit(self, store):
        ids = [f"m{i}" for i in range(IN_FILTER_LIMIT + 1)]
        with pytest.raises(ValueError):
            store.members_with_uid_in("h1", ids)

    def test_accepts_exactly_limit(self, store, add_member):
        ids = [f"m{i}" for i in range(IN_FILTER_LIMIT)]
        for member_id in ids:
            add_member("h1", member_id)
        assert len(store.members_with_uid_in("h1", ids)) == IN_FILTER_LIMIT


class TestChores:
    def test_add_and_get(self, store, now):
        chore = store.add_chore("h1", "Dishes", due_at=now, assignees=["a", "b"], points=3)
        loaded = store.get_chore("h1", chore.id)
        assert loaded.title == "Dishes"
        assert loaded.assignees == ["a", "b"]
        assert loaded.points == 3
        assert loaded.status == "open"
        assert loaded.due_at == now

    def test_due_between_is_inclusive(self, store, now):
        horizon = now + timedelta(minutes=15)
        store.add_chore("h1", "at start", due_at=now, chore_id="start")
        store.add_chore("h1", "at horizon", due_at=horizon, chore_id="end")
        store.add_chore("h1", "before", due_at=now - timedelta(microseconds=1), chore_id="before")
        store.add_chore("h1", "after", due_at=horizon + timedelta(microseconds=1), chore_id="after")
        ids = {c.id for c in store.open_chores_due_between(now, horizon)}
        assert ids == {"start", "end"}

    def test_due_between_spans_households_and_skips_done(self, store, now):
        store.add_chore("h1", "a", due_at=now, chore_id="c1")
        store.add_chore("h2", "b", due_at=now, chore_id="c2")
        store.add_chore("h2", "c", due_at=now, chore_id="c3")
        store.complete_chore("h2", "c3")
        found = store.open_chores_due_between(now, now + timedelta(minutes=15))
        assert {(c.household_id, c.id) for c in found} == {("h1", "c1"), ("h2", "c2")}

    def test_complete_returns_before_and_after(self, store, now):
        store.add_chore("h1", "Dishes", due_at=now, chore_id="c1")
        event = store.complete_chore("h1", "c1", completed_at=now)
        assert event.path == "households/h1/chores/c1"
        assert event.before.status == "open"
        assert event.after.status == "done"
        assert event.after.completed_at == now

    def test_reopen_clears_completion(self, store, now):
        store.add_chore("h1", "Dishes", due_at=now, chore_id="c1")
        store.complete_chore("h1", "c1", completed_at=now)
        event = store.reopen_chore("h1", "c1")
        assert event.before.status == "done"
        assert event.after.status == "open"
        assert event.after.completed_at is None

    def test_complete_missing_chore(self, store):
        with pytest.raises(NotFound):
            store.complete_chore("h1", "ghost")

    def test_complete_reads_state_under_write_lock(self, store, now, tmp_db_path):
        store.add_chore("h1", "Dishes", due_at=now, chore_id="c1")
        other = sqlite3.connect(tmp_db_path, isolation_level=None)
        other.execute("BEGIN IMMEDIATE")

        events = []
        worker = threading.Thread(target=lambda: events.append(store.complete_chore("h1", "c1")))
        worker.start()
        time.sleep(0.2)
        # A competing writer completes the chore while the worker waits.
        other.execute(
            "UPDATE chores SET status = ?, completed_at = ? WHERE household_id = ? AND id = ?",
            ("done", to_storage_ts(now), "h1", "c1"),
        )
        other.execute("COMMIT")
        other.close()
        worker.join(timeout=5)

        assert events[0].before.status == "done"
        assert events[0].after.status == "done"

    def test_concurrent_completions_yield_one_transition(self, tmp_db_path, now):
        HouseholdStore(db_path=tmp_db_path).add_chore("h1", "Dishes", due_at=now, chore_id="c1")
        stores = [HouseholdStore(db_path=tmp_db_path) for _ in range(4)]
        barrier = threading.Barrier(len(stores))
        events = []

        def complete(s):
            barrier.wait()
            events.append(s.complete_chore("h1", "c1"))

        workers = [threading.Thread(target=complete, args=(s,)) for s in stores]
        for w in workers:
            w.start()
        for w in workers:
            w.join(timeout=10)

        transitions = [e for e in events if e.before.status == "open" and e.after.status == "done"]
        assert len(events) == 4
        assert len(transitions) == 1


class TestWriteBatch:
    def test_empty_commit_is_noop(self, store):
        batch = store.batch()
        assert len(batch) == 0
        batch.commit()

    def test_failure_rolls_back_whole_batch(self, store, add_member):
        add_member("h1", "alice", qr_id="before")
        batch = store.batch()
        batch.update_member("h1", "alice", qr_id="after")
        batch.update_member("h1", "ghost", qr_id="after")
        with pytest.raises(NotFound):
            batch.commit()
        assert store.get_member("h1", "alice").qr_id == "before"

    def test_increment_existing_member(self, store, add_member):
        add_member("h1", "alice", points=2)
        store.batch().increment_member_points("h1", "alice", 3).commit()
        assert store.get_member("h1", "alice").points == 5

    def test_increment_creates_missing_member(self, store):
        store.batch().increment_member_points("h1", "newbie", 4).commit()
        member = store.get_member("h1", "newbie")
        assert member.points == 4
        assert member.uid is None

    def test_merge_member_keeps_unspecified_fields(self, store, add_member):
        add_member("h1", "alice", qr_id="old", tokens=["t1"], points=7)
        store.batch().merge_member("h1", "alice", qr_id="new").commit()
        member = store.get_member("h1", "alice")
        assert member.qr_id == "new"
        assert member.notification_tokens == ["t1"]
        assert member.points == 7

    def test_merge_defaults_only_on_insert(self, store, now):
        later = now + timedelta(days=1)
        store.batch().merge_household("h1", defaults={"created_at": now}).commit()
        store.batch().merge_household("h1", defaults={"created_at": later}).commit()
        assert store.get_household("h1").created_at == now

    def test_record_award_twice_conflicts(self, store, now):
        store.batch().record_award("h1", "c1", now).commit()
        assert store.has_award("h1", "c1", now)
        with pytest.raises(AlreadyExists):
            store.batch().record_award("h1", "c1", now).commit()

    def test_create_duplicate_household(self, store):
        from src.data.models import Household

        store.batch().create_household(Household(id="h1")).commit()
        with pytest.raises(AlreadyExists):
            store.batch().create_household(Household(id="h1")).commit()
