"""Policy Store: per-(agent, intent) access policies, externally authored."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from memgate.core.types import AccessPolicy, Rule, Sensitivity
from memgate.exceptions import InvalidDocument

logger = logging.getLogger(__name__)

WILDCARD_AGENT = "*"
_VALID_AUDIT_LEVELS = {"minimal", "standard", "detailed"}


class RuleModel(BaseModel):
    name: str
    kind: str
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("kind")
    @classmethod
    def _normalize_kind(cls, v: str) -> str:
        return str(v).strip().lower()


class PolicyModel(BaseModel):
    agent_id: str
    intent: str
    required_scopes: List[str] = Field(default_factory=list)
    restrictions: List[RuleModel] = Field(default_factory=list)
    auto_approve: bool = False
    audit_level: str = "standard"
    max_duration_seconds: Optional[int] = Field(default=None, ge=1)
    max_sensitivity: str = "business"
    required_approvals: List[str] = Field(default_factory=lambda: ["user_consent"])

    @field_validator("audit_level")
    @classmethod
    def _valid_audit_level(cls, v: str) -> str:
        v = str(v).strip().lower()
        if v not in _VALID_AUDIT_LEVELS:
            raise ValueError(f"Unknown audit level '{v}'. Valid: {sorted(_VALID_AUDIT_LEVELS)}")
        return v

    @field_validator("max_sensitivity")
    @classmethod
    def _valid_sensitivity(cls, v: str) -> str:
        return Sensitivity.parse(v).value

    def to_policy(self) -> AccessPolicy:
        return AccessPolicy(
            agent_id=self.agent_id.strip(),
            intent=self.intent.strip(),
            required_scopes=frozenset(s.strip() for s in self.required_scopes if s.strip()),
            restrictions=tuple(Rule(name=r.name, kind=r.kind, params=dict(r.params)) for r in self.restrictions),
            auto_approve=self.auto_approve,
            audit_level=self.audit_level,
            max_duration_seconds=self.max_duration_seconds,
            max_sensitivity=Sensitivity.parse(self.max_sensitivity),
            required_approvals=tuple(self.required_approvals),
        )


class PolicyDocument(BaseModel):
    version: str = "unversioned"
    policies: List[PolicyModel] = Field(default_factory=list)


@dataclass(frozen=True)
class PolicySnapshot:
    version: str
    generation: int
    policies: Mapping[Tuple[str, str], AccessPolicy] = field(default_factory=dict)

    def lookup(self, agent_id: str, intent: str) -> Optional[AccessPolicy]:
        policy = self.policies.get((agent_id, intent))
        if policy is None:
            policy = self.policies.get((WILDCARD_AGENT, intent))
        return policy

    def __len__(self) -> int:
        return len(self.policies)


def build_snapshot(document: Union[Dict[str, Any], PolicyDocument], generation: int = 0) -> PolicySnapshot:
    try:
        doc = document if isinstance(document, PolicyDocument) else PolicyDocument.model_validate(document)
    except ValidationError as exc:
        raise InvalidDocument(f"Invalid policy document: {exc}") from exc

    policies: Dict[Tuple[str, str], AccessPolicy] = {}
    for model in doc.policies:
        policy = model.to_policy()
        key = (policy.agent_id, policy.intent)
        if key in policies:
            raise InvalidDocument(f"Duplicate policy for agent={key[0]} intent={key[1]}")
        policies[key] = policy
    return PolicySnapshot(version=doc.version, generation=generation, policies=MappingProxyType(policies))


class PolicyStore:
    """Read-mostly holder of the current policy snapshot."""

    def __init__(self, document: Optional[Dict[str, Any]] = None):
        self._lock = threading.Lock()
        self._generation = 0
        self._snapshot = build_snapshot(document or {}, generation=0)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PolicyStore":
        try:
            with open(path, "r", encoding="utf-8") as handle:
                document = json.load(handle)
        except json.JSONDecodeError as exc:
            raise InvalidDocument(f"{path} is not valid JSON: {exc}") from exc
        return cls(document)

    def snapshot(self) -> PolicySnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.generation

    def lookup(self, agent_id: str, intent: str) -> Optional[AccessPolicy]:
        return self._snapshot.lookup(agent_id, intent)

    def reload(self, document: Dict[str, Any]) -> PolicySnapshot:
        with self._lock:
            snapshot = build_snapshot(document, generation=self._generation + 1)
            self._generation += 1
            self._snapshot = snapshot
        logger.info(
            "Policies reloaded: version=%s generation=%d policies=%d",
            snapshot.version, snapshot.generation, len(snapshot),
        )
        return snapshot
