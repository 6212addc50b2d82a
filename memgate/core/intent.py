"""Intent Engine: turns a declared business intent into a scoped grant.

The policy for (agent, intent) decides which scopes may be requested.
Its restrictions run in declaration order: the first denial wins, and
approvals asked for along the way turn the decision into ``pending``.
Grants are all-or-nothing per request.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from memgate.configs.base import GrantConfig
from memgate.core.restrictions import AccessRequest, evaluate
from memgate.core.types import (
    AccessDecision,
    AccessPolicy,
    DecisionStatus,
    Grant,
    utcnow,
)
from memgate.exceptions import ScopeNotPermitted, UnknownIntent
from memgate.observability import metrics
from memgate.stores.grant_store import GrantStore
from memgate.stores.policy_store import PolicyStore

logger = logging.getLogger(__name__)

DEFAULT_ACCESS = "read"

DataNeeded = Union[Mapping[str, Any], Iterable[str]]


def parse_data_needed(data_needed: DataNeeded) -> Tuple[Dict[str, Dict[str, Any]], List[str]]:
    """Split ``data_needed`` into per-resource attributes and ``resource:access`` scopes.

    Accepts ``{"calendar": "availability_only"}``,
    ``{"expenses": {"access": "create", "amount": 7500}}`` or a list of
    ready-made ``"resource:access"`` strings.
    """
    resources: Dict[str, Dict[str, Any]] = {}
    if isinstance(data_needed, Mapping):
        for resource, spec in data_needed.items():
            name = str(resource).strip()
            if not name:
                continue
            if isinstance(spec, Mapping):
                attrs = dict(spec)
                attrs["access"] = str(attrs.get("access") or DEFAULT_ACCESS).strip()
            else:
                attrs = {"access": str(spec or DEFAULT_ACCESS).strip()}
            resources[name] = attrs
    else:
        for scope in data_needed or []:
            name, _, access = str(scope).strip().partition(":")
            if name:
                resources[name] = {"access": access or DEFAULT_ACCESS}
    scopes = sorted(f"{name}:{attrs['access']}" for name, attrs in resources.items())
    return resources, scopes


def scope_covered(scope: str, allowed: Iterable[str]) -> bool:
    allowed = set(allowed)
    if "*" in allowed or scope in allowed:
        return True
    resource = scope.split(":", 1)[0]
    return f"{resource}:*" in allowed


def _merge(approvals: List[str], extra: Iterable[str]) -> List[str]:
    for approval in extra:
        if approval not in approvals:
            approvals.append(approval)
    return approvals


class IntentEngine:
    def __init__(
        self,
        policy_store: PolicyStore,
        grant_store: GrantStore,
        config: Optional[GrantConfig] = None,
        *,
        strict_restrictions: bool = True,
    ):
        self.policy_store = policy_store
        self.grant_store = grant_store
        self.config = config or GrantConfig()
        self.strict_restrictions = strict_restrictions

    def _policy(self, agent_id: str, intent: str) -> AccessPolicy:
        policy = self.policy_store.lookup(agent_id, intent)
        if policy is None:
            raise UnknownIntent(agent_id, intent)
        return policy

    def _duration(self, policy: AccessPolicy, duration_seconds: Optional[int]) -> int:
        if duration_seconds is not None and int(duration_seconds) <= 0:
            raise ValueError("duration_seconds must be positive")
        duration = int(duration_seconds or self.config.default_ttl_seconds)
        if policy.max_duration_seconds:
            duration = min(duration, policy.max_duration_seconds)
        return min(duration, self.config.max_ttl_seconds)

    def request_access(
        self,
        agent_id: str,
        user_id: str,
        intent: str,
        data_needed: DataNeeded,
        *,
        context: Optional[Dict[str, Any]] = None,
        duration_seconds: Optional[int] = None,
    ) -> AccessDecision:
        """Decide an access request. Raises ``UnknownIntent``; every other denial is returned."""
        policy = self._policy(agent_id, intent)
        resources, scopes = parse_data_needed(data_needed)

        def _decide(status: DecisionStatus, **kwargs) -> AccessDecision:
            metrics.record_decision(status.value)
            return AccessDecision(status=status, scopes=scopes, audit_level=policy.audit_level, **kwargs)

        if not scopes:
            return _decide(DecisionStatus.DENIED, reason="no_data_requested")

        rejected = [s for s in scopes if not scope_covered(s, policy.required_scopes)]
        if rejected:
            logger.info("Denied %s/%s: scopes %s not permitted", agent_id, intent, rejected)
            return _decide(DecisionStatus.DENIED, reason="scope_not_permitted")

        request = AccessRequest(
            agent_id=agent_id,
            user_id=user_id,
            intent=intent,
            resources=resources,
            scopes=scopes,
            context=dict(context or {}),
            duration_seconds=duration_seconds,
        )
        approvals: List[str] = []
        for rule in policy.restrictions:
            outcome = evaluate(rule, request, strict=self.strict_restrictions)
            if outcome.requires_approval:
                _merge(approvals, [outcome.approval])
            elif not outcome.passed:
                logger.info("Denied %s/%s by restriction %s", agent_id, intent, outcome.reason)
                return _decide(DecisionStatus.DENIED, reason=outcome.reason)

        if not policy.auto_approve:
            _merge(approvals, policy.required_approvals)
        if approvals:
            return _decide(DecisionStatus.PENDING, reason="approval_required", pending_approvals=approvals)

        grant = self._issue(policy, agent_id, user_id, scopes, duration_seconds, approved_by=None)
        return _decide(DecisionStatus.GRANTED, grant=grant)

    def issue_grant(
        self,
        agent_id: str,
        user_id: str,
        intent: str,
        scopes: Iterable[str],
        *,
        duration_seconds: Optional[int] = None,
        approved_by: Optional[str] = None,
    ) -> Grant:
        """Issue a grant after an external approval. Scopes are re-checked against the policy."""
        policy = self._policy(agent_id, intent)
        _, normalized = parse_data_needed(list(scopes))
        if not normalized:
            raise ScopeNotPermitted([])
        rejected = [s for s in normalized if not scope_covered(s, policy.required_scopes)]
        if rejected:
            raise ScopeNotPermitted(rejected)
        grant = self._issue(policy, agent_id, user_id, normalized, duration_seconds, approved_by=approved_by)
        metrics.record_decision(DecisionStatus.GRANTED.value)
        return grant

    def _issue(
        self,
        policy: AccessPolicy,
        agent_id: str,
        user_id: str,
        scopes: List[str],
        duration_seconds: Optional[int],
        *,
        approved_by: Optional[str],
    ) -> Grant:
        now = utcnow()
        grant = Grant(
            grant_id=str(uuid.uuid4()),
            agent_id=agent_id,
            user_id=user_id,
            intent=policy.intent,
            scopes=frozenset(scopes),
            issued_at=now,
            expires_at=now + timedelta(seconds=self._duration(policy, duration_seconds)),
            sensitivity_ceiling=policy.max_sensitivity,
            audit_level=policy.audit_level,
            approved_by=approved_by,
        )
        self.grant_store.issue(grant)
        logger.info(
            "Issued grant %s agent=%s user=%s intent=%s scopes=%s",
            grant.grant_id, agent_id, user_id, policy.intent, scopes,
        )
        return grant
