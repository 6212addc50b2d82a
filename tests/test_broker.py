"""Tests for sensitivity classification and filtering in the Context Broker."""

import pytest

from memgate.core.broker import ContextBroker, hinted_sensitivity
from memgate.core.types import MatchStage, ResolutionStatus, ResolvedField, Sensitivity

from conftest import make_grant


@pytest.fixture
def broker():
    return ContextBroker()


@pytest.mark.parametrize(
    "key, expected",
    [
        ("seatPreference", Sensitivity.PUBLIC),
        ("annualSalary", Sensitivity.CONFIDENTIAL),
        ("bank_account", Sensitivity.CONFIDENTIAL),
        ("ssn", Sensitivity.SECRET),
        ("apiKey", Sensitivity.SECRET),
    ],
)
def test_key_hints(key, expected):
    assert hinted_sensitivity(key) == expected


def test_declared_level_is_a_floor(broker):
    assert broker.effective_sensitivity("Aisle", Sensitivity.BUSINESS) == Sensitivity.BUSINESS


def test_composite_is_max_of_parts(broker):
    value = {
        "name": "Ada",
        "contact": {"phone": "555", "_sensitivity": "business"},
        "history": [{"diagnosis": "none"}],
    }
    assert broker.effective_sensitivity(value) == Sensitivity.CONFIDENTIAL


def test_unknown_label_is_treated_as_secret(broker):
    assert broker.effective_sensitivity({"x": 1, "_sensitivity": "weird"}) == Sensitivity.SECRET


def test_strip_labels(broker):
    value = {"a": {"_sensitivity": "public", "b": [{"_sensitivity": "public", "c": 1}]}, "d": (1, 2)}
    assert broker.strip_labels(value) == {"a": {"b": [{"c": 1}]}, "d": (1, 2)}


def test_filter_within_ceiling(broker):
    outcome = broker.filter({"street": "1 Main St", "_sensitivity": "business"}, Sensitivity.PUBLIC, make_grant())
    assert not outcome.filtered
    assert outcome.value == {"street": "1 Main St"}
    assert outcome.sensitivity == Sensitivity.BUSINESS


def test_filter_withholds_whole_field(broker):
    value = {"start": "09:00", "notes": {"_sensitivity": "confidential", "text": "x"}}
    outcome = broker.filter(value, Sensitivity.PUBLIC, make_grant(ceiling=Sensitivity.BUSINESS))
    assert outcome.filtered
    assert outcome.value is None
    assert outcome.sensitivity == Sensitivity.CONFIDENTIAL


def test_public_ceiling(broker):
    outcome = broker.filter("ada@example.com", Sensitivity.BUSINESS, make_grant(ceiling=Sensitivity.PUBLIC))
    assert outcome.filtered


def test_custom_hints():
    broker = ContextBroker(hints={Sensitivity.CONFIDENTIAL: {"religion"}})
    assert broker.effective_sensitivity({"religion": "x"}) == Sensitivity.CONFIDENTIAL
    assert broker.effective_sensitivity({"salary": 1}) == Sensitivity.PUBLIC


def _field(**overrides):
    data = dict(
        requested_key="seat",
        matched_canonical_type_id="seatPreference",
        value="Aisle",
        confidence=0.95,
        match_stage=MatchStage.ALIAS,
        sensitivity=Sensitivity.PUBLIC,
    )
    data.update(overrides)
    return ResolvedField(**data)


class TestAutoApplicable:
    def test_public_confident_field(self):
        assert ContextBroker.is_auto_applicable(_field(), 0.7)

    def test_business_field_never_auto_applied(self):
        assert not ContextBroker.is_auto_applicable(_field(sensitivity=Sensitivity.BUSINESS), 0.7)

    def test_low_confidence(self):
        assert not ContextBroker.is_auto_applicable(_field(confidence=0.6), 0.7)

    def test_needs_confirmation(self):
        field = _field(status=ResolutionStatus.NEEDS_CONFIRMATION)
        assert not ContextBroker.is_auto_applicable(field, 0.5)
