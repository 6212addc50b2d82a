"""Tests for the SQLite-backed Grant Store."""

import os
import tempfile
import threading
from datetime import timedelta

import pytest

from memgate.core.types import GrantStatus, Sensitivity, utcnow
from memgate.exceptions import GrantNotFound
from memgate.stores.grant_store import GrantStore

from conftest import USER, make_grant


@pytest.fixture
def grant_store():
    store = GrantStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def file_db_path():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            os.unlink(path + suffix)


class TestIssueAndCheck:
    def test_issue_and_get(self, grant_store):
        grant = make_grant(grant_id="g1", scopes=["travel:read", "profile:read"], ceiling=Sensitivity.PUBLIC)
        assert grant_store.issue(grant) == "g1"
        stored = grant_store.get("g1")
        assert stored.scopes == frozenset({"travel:read", "profile:read"})
        assert stored.sensitivity_ceiling == Sensitivity.PUBLIC
        assert stored.expires_at == grant.expires_at
        assert grant_store.check("g1") == GrantStatus.VALID

    def test_missing_id_is_generated(self, grant_store):
        grant = make_grant(grant_id="")
        grant_id = grant_store.issue(grant)
        assert grant_id
        assert grant.grant_id == grant_id

    def test_unknown_grant(self, grant_store):
        with pytest.raises(GrantNotFound):
            grant_store.check("nope")

    def test_expiry_is_evaluated_at_check_time(self, grant_store):
        grant = make_grant(grant_id="g1", expires_in=timedelta(minutes=5))
        grant_store.issue(grant)
        assert grant_store.check("g1") == GrantStatus.VALID
        assert grant_store.check("g1", now=utcnow() + timedelta(minutes=6)) == GrantStatus.EXPIRED

    def test_list_grants(self, grant_store):
        grant_store.issue(make_grant(grant_id="g1"))
        grant_store.issue(make_grant(grant_id="g2", expires_in=timedelta(seconds=-1)))
        grant_store.issue(make_grant(grant_id="g3", user_id="u2"))
        assert [g.grant_id for g in grant_store.list_grants(user_id=USER)] == ["g1", "g2"]
        assert [g.grant_id for g in grant_store.list_grants(user_id=USER, active_only=True)] == ["g1"]


class TestRevocation:
    def test_revoke(self, grant_store):
        grant_store.issue(make_grant(grant_id="g1"))
        assert grant_store.revoke("g1") is True
        stored = grant_store.get("g1")
        assert stored.revoked is True
        assert stored.revoked_at is not None
        assert grant_store.check("g1") == GrantStatus.REVOKED

    def test_revoke_is_idempotent(self, grant_store):
        grant_store.issue(make_grant(grant_id="g1"))
        grant_store.revoke("g1")
        first_revoked_at = grant_store.get("g1").revoked_at
        assert grant_store.revoke("g1") is False
        assert grant_store.get("g1").revoked_at == first_revoked_at

    def test_revoke_unknown(self, grant_store):
        with pytest.raises(GrantNotFound):
            grant_store.revoke("nope")

    def test_revoked_beats_expired(self, grant_store):
        grant_store.issue(make_grant(grant_id="g1", expires_in=timedelta(seconds=-1)))
        grant_store.revoke("g1")
        assert grant_store.check("g1") == GrantStatus.REVOKED

    def test_revoke_all(self, grant_store):
        grant_store.issue(make_grant(grant_id="g1"))
        grant_store.issue(make_grant(grant_id="g2"))
        grant_store.issue(make_grant(grant_id="g3", agent_id="other-agent"))
        grant_store.revoke("g2")
        assert grant_store.revoke_all("travel-agent", USER) == ["g1"]
        assert grant_store.check("g3") == GrantStatus.VALID
        assert grant_store.stats() == {"total": 3, "revoked": 2}

    def test_check_after_revoke_from_other_thread(self, grant_store):
        grant_store.issue(make_grant(grant_id="g1"))
        revoked = threading.Event()

        def revoker():
            grant_store.revoke("g1")
            revoked.set()

        thread = threading.Thread(target=revoker)
        thread.start()
        assert revoked.wait(timeout=5)
        assert grant_store.check("g1") == GrantStatus.REVOKED
        thread.join()

    def test_concurrent_checks_and_revokes(self, grant_store):
        for i in range(20):
            grant_store.issue(make_grant(grant_id=f"g{i}"))
        errors = []

        def worker(i):
            try:
                grant_store.revoke(f"g{i}")
                assert grant_store.check(f"g{i}") == GrantStatus.REVOKED
            except Exception as exc:  # collected for the main thread
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert grant_store.stats()["revoked"] == 20


class TestHousekeeping:
    def test_sweep_keeps_rows(self, grant_store):
        grant_store.issue(make_grant(grant_id="old", expires_in=timedelta(seconds=-10)))
        grant_store.issue(make_grant(grant_id="live"))
        assert grant_store.sweep() == 1
        assert grant_store.sweep() == 0
        assert grant_store.check("old") == GrantStatus.EXPIRED
        assert grant_store.stats()["total"] == 2

    def test_sweeper_thread_stops(self, grant_store):
        grant_store.start_sweeper(0.01)
        assert grant_store._sweeper is not None
        grant_store.stop_sweeper()
        assert grant_store._sweeper is None

    def test_zero_interval_disables_sweeper(self, grant_store):
        grant_store.start_sweeper(0)
        assert grant_store._sweeper is None


class TestPersistence:
    def test_file_db_survives_reopen(self, file_db_path):
        store = GrantStore(file_db_path)
        store.issue(make_grant(grant_id="g1"))
        store.revoke("g1")
        store.close()

        reopened = GrantStore(file_db_path)
        try:
            assert reopened.check("g1") == GrantStatus.REVOKED
        finally:
            reopened.close()

    def test_wal_mode(self, file_db_path):
        store = GrantStore(file_db_path)
        try:
            with store._get_connection() as conn:
                assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        finally:
            store.close()

    def test_close(self, file_db_path):
        store = GrantStore(file_db_path)
        store.close()
        assert store._conn is None
        with pytest.raises(RuntimeError):
            store.get("g1")

    def test_repr(self, grant_store):
        assert "GrantStore" in repr(grant_store)
