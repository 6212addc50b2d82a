"""Shared fixtures: a small travel/profile manifest, policies and user memory."""

from __future__ import annotations

from datetime import timedelta

import pytest

from memgate.configs.base import GatewayConfig, ResolverConfig
from memgate.core.gateway import ContextGateway
from memgate.core.types import Grant, MemoryEntry, Sensitivity, utcnow
from memgate.observability import metrics
from memgate.stores.manifest import ManifestRegistry
from memgate.stores.memory_store import InMemoryMemoryStore
from memgate.stores.policy_store import PolicyStore

EMAIL_ID = "https://schema.memgate.dev/profile#emailAddress"
MEAL_ID = "https://schema.memgate.dev/travel#mealPreference"

MANIFEST = {
    "version": "2024-06",
    "capabilities": {
        "travel": {
            "scope": "travel",
            "types": [
                {"id": "seatPreference", "title": "Seat preference", "aliases": ["seat_pref"]},
                {"id": MEAL_ID, "title": "Meal preference", "aliases": ["meal"]},
                {"id": "loyaltyNumber", "title": "Frequent flyer number"},
            ],
        },
        "profile": {
            "scope": "profile",
            "types": [
                {"id": EMAIL_ID, "title": "Email address", "aliases": ["email"]},
                {"id": "homeAddress", "title": "Home address", "aliases": ["address"]},
            ],
        },
        "finance": {
            "scope": "finance",
            "types": [{"id": "annualSalary", "title": "Annual salary", "aliases": ["salary"]}],
        },
        "calendar": {
            "scope": "calendar",
            "types": [{"id": "workingHours", "title": "Working hours"}],
        },
    },
}

POLICIES = {
    "version": "1",
    "policies": [
        {
            "agent_id": "travel-agent",
            "intent": "book_business_travel",
            "required_scopes": [
                "calendar:availability_only",
                "travel:*",
                "profile:read",
                "expenses:create",
            ],
            "restrictions": [
                {"name": "no_salary_information", "kind": "exclude_category"},
                {
                    "name": "require_manager_approval_over_$5000",
                    "kind": "spend_threshold",
                    "params": {"scope": "expenses:create"},
                },
            ],
            "auto_approve": True,
            "audit_level": "detailed",
            "max_duration_seconds": 7200,
        },
        {
            "agent_id": "hr-bot",
            "intent": "payroll_review",
            "required_scopes": ["finance:read"],
            "auto_approve": False,
            "max_sensitivity": "confidential",
            "required_approvals": ["user_consent", "hr_admin"],
        },
        {
            "agent_id": "*",
            "intent": "read_profile",
            "required_scopes": ["profile:read"],
            "auto_approve": True,
            "audit_level": "minimal",
            "max_sensitivity": "public",
        },
    ],
}

USER = "u1"


def seed_memory(store: InMemoryMemoryStore, user_id: str = USER) -> InMemoryMemoryStore:
    records = [
        MemoryEntry("seatPreference", "Aisle", user_id),
        MemoryEntry(MEAL_ID, "vegetarian", user_id),
        MemoryEntry("loyaltyNumber", "BA123456", user_id, sensitivity=Sensitivity.BUSINESS),
        MemoryEntry(EMAIL_ID, "ada@example.com", user_id, sensitivity=Sensitivity.BUSINESS),
        MemoryEntry("homeAddress", {"street": "1 Main St", "city": "London"}, user_id),
        MemoryEntry("annualSalary", 120000, user_id, sensitivity=Sensitivity.CONFIDENTIAL),
        MemoryEntry(
            "workingHours",
            {"start": "09:00", "end": "17:00", "notes": {"_sensitivity": "confidential", "text": "therapy at 4"}},
            user_id,
        ),
    ]
    for entry in records:
        store.put(entry, consent=True)
    return store


def make_grant(
    *,
    scopes=("*",),
    ceiling: Sensitivity = Sensitivity.BUSINESS,
    user_id: str = USER,
    agent_id: str = "travel-agent",
    expires_in: timedelta = timedelta(hours=1),
    grant_id: str = "g-test",
) -> Grant:
    now = utcnow()
    return Grant(
        grant_id=grant_id,
        agent_id=agent_id,
        user_id=user_id,
        intent="book_business_travel",
        scopes=frozenset(scopes),
        issued_at=now,
        expires_at=now + expires_in,
        sensitivity_ceiling=ceiling,
    )


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def manifest():
    return ManifestRegistry(MANIFEST)


@pytest.fixture
def policies():
    return PolicyStore(POLICIES)


@pytest.fixture
def memory_store():
    return seed_memory(InMemoryMemoryStore())


@pytest.fixture
def grant():
    return make_grant()


@pytest.fixture
def gateway(memory_store, manifest, policies):
    config = GatewayConfig(resolver=ResolverConfig(stage_retries=0, retry_backoff_seconds=0.0))
    gw = ContextGateway(memory_store, manifest, policies, config=config)
    yield gw
    gw.close()
