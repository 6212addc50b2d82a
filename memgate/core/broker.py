"""Context Broker: sensitivity classification and filtering of outgoing values.

A composite value is as sensitive as its most sensitive part. Parts are
classified by explicit ``_sensitivity`` labels inside mappings and by
key-name hints (``salary``, ``ssn``, ...). When the effective level of a
field exceeds the grant's ceiling the whole field is withheld and marked
``filtered`` so callers can tell "withheld" from "not found".
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from memgate.core.matching import name_tokens
from memgate.core.types import Grant, ResolutionStatus, ResolvedField, Sensitivity

SENSITIVITY_LABEL = "_sensitivity"

SENSITIVE_HINTS: Dict[Sensitivity, set] = {
    Sensitivity.SECRET: {"password", "passcode", "secret", "token", "apikey", "pin", "cvv", "ssn", "passport"},
    Sensitivity.CONFIDENTIAL: {
        "salary", "income", "compensation", "bank", "iban", "routing", "tax",
        "health", "medical", "diagnosis", "medication", "therapy",
    },
}


@dataclass
class FilterOutcome:
    value: Any
    sensitivity: Sensitivity
    filtered: bool = False


def hinted_sensitivity(key: str, hints: Optional[Dict[Sensitivity, set]] = None) -> Sensitivity:
    hints = hints or SENSITIVE_HINTS
    tokens = name_tokens(key)
    words = set(tokens) | {"".join(tokens)}
    for level in sorted(hints, key=lambda s: s.rank, reverse=True):
        if words & hints[level]:
            return level
    return Sensitivity.PUBLIC


class ContextBroker:
    def __init__(self, hints: Optional[Dict[Sensitivity, set]] = None):
        self.hints = hints or SENSITIVE_HINTS

    def effective_sensitivity(self, value: Any, declared: Sensitivity = Sensitivity.PUBLIC) -> Sensitivity:
        """Max of *declared* and every level found inside *value*."""
        level = Sensitivity.parse(declared)
        if isinstance(value, Mapping):
            label = value.get(SENSITIVITY_LABEL)
            if label is not None:
                level = Sensitivity.highest(level, Sensitivity.parse(label, default=Sensitivity.SECRET))
            for key, child in value.items():
                if key == SENSITIVITY_LABEL:
                    continue
                level = Sensitivity.highest(
                    level,
                    hinted_sensitivity(str(key), self.hints),
                    self.effective_sensitivity(child),
                )
        elif isinstance(value, (list, tuple)):
            for child in value:
                level = Sensitivity.highest(level, self.effective_sensitivity(child))
        return level

    def strip_labels(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {k: self.strip_labels(v) for k, v in value.items() if k != SENSITIVITY_LABEL}
        if isinstance(value, list):
            return [self.strip_labels(v) for v in value]
        if isinstance(value, tuple):
            return tuple(self.strip_labels(v) for v in value)
        return value

    def filter(self, value: Any, sensitivity: Sensitivity, grant: Grant) -> FilterOutcome:
        effective = self.effective_sensitivity(value, sensitivity)
        if effective.exceeds(grant.sensitivity_ceiling):
            return FilterOutcome(value=None, sensitivity=effective, filtered=True)
        return FilterOutcome(value=self.strip_labels(value), sensitivity=effective, filtered=False)

    @staticmethod
    def is_auto_applicable(field: ResolvedField, min_confidence: float) -> bool:
        """Only public, confirmed, sufficiently confident values may be applied unprompted."""
        return (
            field.sensitivity == Sensitivity.PUBLIC
            and field.status == ResolutionStatus.OK
            and not field.filtered
            and field.confidence >= min_confidence
        )
