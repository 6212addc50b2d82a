"""Restriction predicates evaluated by the intent engine.

A policy lists its restrictions in order; each one inspects the access
request and either passes, denies (ending the chain), or asks for an
approval before a grant may be issued.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from memgate.core.matching import name_tokens
from memgate.core.types import Rule

logger = logging.getLogger(__name__)

_THRESHOLD_IN_NAME_RE = re.compile(r"over_?\$?(\d+(?:\.\d+)?)", re.IGNORECASE)


@dataclass
class AccessRequest:
    """Everything a restriction may look at."""
    agent_id: str
    user_id: str
    intent: str
    resources: Dict[str, Dict[str, Any]]  # resource -> {"access": level, ...attributes}
    scopes: List[str]
    context: Dict[str, Any] = field(default_factory=dict)
    duration_seconds: Optional[int] = None

    def attribute(self, name: str, resource: Optional[str] = None) -> Any:
        if resource is not None and name in self.resources.get(resource, {}):
            return self.resources[resource][name]
        return self.context.get(name)


@dataclass
class RestrictionOutcome:
    passed: bool = True
    reason: Optional[str] = None
    approval: Optional[str] = None

    @property
    def requires_approval(self) -> bool:
        return self.approval is not None


PASS = RestrictionOutcome()

Predicate = Callable[[Rule, AccessRequest], RestrictionOutcome]
_REGISTRY: Dict[str, Predicate] = {}


def register_restriction(kind: str):
    """Register a predicate for a restriction ``kind``."""
    def decorator(func: Predicate) -> Predicate:
        _REGISTRY[kind.strip().lower()] = func
        return func
    return decorator


def known_kinds() -> List[str]:
    return sorted(_REGISTRY)


def _requested_terms(request: AccessRequest) -> set:
    terms = set()
    for resource, attrs in request.resources.items():
        terms.update(name_tokens(resource))
        terms.add("".join(name_tokens(resource)))
        for key, value in attrs.items():
            terms.update(name_tokens(key))
            if isinstance(value, str):
                terms.update(name_tokens(value))
    for category in request.context.get("categories") or []:
        terms.update(name_tokens(str(category)))
    return terms


@register_restriction("exclude_category")
def exclude_category(rule: Rule, request: AccessRequest) -> RestrictionOutcome:
    categories = rule.params.get("categories") or []
    if not categories:
        # no_salary_information -> salary
        stripped = re.sub(r"^(no|exclude)_|_information$|_data$", "", rule.name)
        categories = [stripped]
    wanted = {"".join(name_tokens(str(c))) for c in categories}
    if wanted & _requested_terms(request):
        return RestrictionOutcome(passed=False, reason=rule.name)
    return PASS


@register_restriction("spend_threshold")
def spend_threshold(rule: Rule, request: AccessRequest) -> RestrictionOutcome:
    scope = str(rule.params.get("scope") or "expenses")
    resource = scope.split(":", 1)[0]
    if not any(s == scope or s.split(":", 1)[0] == resource for s in request.scopes):
        return PASS
    threshold = rule.params.get("threshold")
    if threshold is None:
        match = _THRESHOLD_IN_NAME_RE.search(rule.name)
        if match is None:
            logger.warning("Restriction %s has no threshold; treating as always requiring approval", rule.name)
            threshold = 0
        else:
            threshold = float(match.group(1))
    amount = request.attribute(str(rule.params.get("amount_field") or "amount"), resource)
    if amount is None:
        return PASS
    try:
        exceeded = float(amount) > float(threshold)
    except (TypeError, ValueError):
        return RestrictionOutcome(passed=False, reason=rule.name)
    if exceeded:
        approval = str(rule.params.get("approval") or "manager_approval")
        return RestrictionOutcome(passed=False, reason=rule.name, approval=approval)
    return PASS


@register_restriction("require_context")
def require_context(rule: Rule, request: AccessRequest) -> RestrictionOutcome:
    key = str(rule.params.get("key") or "")
    if not key:
        return RestrictionOutcome(passed=False, reason=rule.name)
    value = request.context.get(key)
    if value in (None, ""):
        return RestrictionOutcome(passed=False, reason=rule.name)
    allowed = rule.params.get("in")
    if allowed is not None and value not in allowed:
        return RestrictionOutcome(passed=False, reason=rule.name)
    if "equals" in rule.params and value != rule.params["equals"]:
        return RestrictionOutcome(passed=False, reason=rule.name)
    return PASS


@register_restriction("max_duration")
def max_duration(rule: Rule, request: AccessRequest) -> RestrictionOutcome:
    limit = int(rule.params.get("seconds") or 0)
    if limit and request.duration_seconds is not None and request.duration_seconds > limit:
        return RestrictionOutcome(passed=False, reason=rule.name)
    return PASS


def evaluate(rule: Rule, request: AccessRequest, *, strict: bool = True) -> RestrictionOutcome:
    predicate = _REGISTRY.get(rule.kind)
    if predicate is None:
        if strict:
            logger.warning("Unknown restriction kind %r (%s); denying", rule.kind, rule.name)
            return RestrictionOutcome(passed=False, reason=rule.name)
        logger.warning("Unknown restriction kind %r (%s); skipping", rule.kind, rule.name)
        return PASS
    return predicate(rule, request)
