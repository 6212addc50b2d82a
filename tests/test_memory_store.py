"""Tests for the in-memory Memory Store collaborator."""

from datetime import timedelta

import pytest

from memgate.core.types import MemoryEntry, Sensitivity, utcnow
from memgate.exceptions import ConsentRequired
from memgate.stores.memory_store import InMemoryMemoryStore


@pytest.fixture
def store():
    return InMemoryMemoryStore()


def test_write_without_consent_rejected(store):
    with pytest.raises(ConsentRequired):
        store.put(MemoryEntry("seatPreference", "Aisle", "u1"), consent=False)
    assert store.list_entries("u1") == []


def test_written_seq_increases(store):
    first = store.put(MemoryEntry("a", 1, "u1"), consent=True)
    second = store.put(MemoryEntry("b", 2, "u1"), consent=True)
    assert second.written_seq > first.written_seq
    assert first.written_at is not None


def test_overwrite_keeps_latest(store):
    store.put(MemoryEntry("seatPreference", "Aisle", "u1"), consent=True)
    store.put(MemoryEntry("seatPreference", "Window", "u1"), consent=True)
    assert store.get("u1", "seatPreference").value == "Window"
    assert len(store.list_entries("u1")) == 1


def test_entries_are_per_user(store):
    store.put(MemoryEntry("seatPreference", "Aisle", "u1"), consent=True)
    assert store.list_entries("u2") == []
    assert store.get("u2", "seatPreference") is None


def test_ttl_expiry(store):
    entry = store.put(MemoryEntry("otp", "123456", "u1", ttl=60), consent=True)
    assert entry.expires_at == entry.written_at + timedelta(seconds=60)
    assert store.list_entries("u1", now=utcnow() + timedelta(seconds=61)) == []
    assert store.list_entries("u1") == [entry]


def test_delete(store):
    store.put(MemoryEntry("seatPreference", "Aisle", "u1"), consent=True)
    assert store.delete("u1", "seatPreference") is True
    assert store.delete("u1", "seatPreference") is False


def test_load_entries(store):
    count = store.load_entries(
        [
            {"canonicalTypeId": "seatPreference", "value": "Aisle", "ownerUserId": "u1"},
            {"canonical_type_id": "annualSalary", "value": 1, "owner_user_id": "u1", "sensitivity": "confidential"},
        ]
    )
    assert count == 2
    assert store.get("u1", "annualSalary").sensitivity == Sensitivity.CONFIDENTIAL


def test_unknown_sensitivity_rejected():
    with pytest.raises(ValueError):
        MemoryEntry("x", 1, "u1", sensitivity="top-secret")
