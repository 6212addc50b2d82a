"""Core records shared by the resolver, broker, intent engine and grant store."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Sensitivity(str, Enum):
    PUBLIC = "public"
    BUSINESS = "business"
    CONFIDENTIAL = "confidential"
    SECRET = "secret"

    @property
    def rank(self) -> int:
        return _SENSITIVITY_RANK[self]

    @classmethod
    def parse(cls, value: Any, default: "Sensitivity" = None) -> "Sensitivity":
        if isinstance(value, Sensitivity):
            return value
        text = str(value or "").strip().lower()
        try:
            return cls(text)
        except ValueError:
            if default is not None:
                return default
            raise ValueError(f"Unknown sensitivity '{value}'. Valid: {[s.value for s in cls]}")

    @classmethod
    def highest(cls, *levels: "Sensitivity") -> "Sensitivity":
        return max(levels, key=lambda level: level.rank)

    def exceeds(self, ceiling: "Sensitivity") -> bool:
        return self.rank > ceiling.rank


_SENSITIVITY_RANK = {
    Sensitivity.PUBLIC: 0,
    Sensitivity.BUSINESS: 1,
    Sensitivity.CONFIDENTIAL: 2,
    Sensitivity.SECRET: 3,
}


class MatchStage(str, Enum):
    """Resolution pipeline stages, in priority order."""
    EXACT = "exact"
    ALIAS = "alias"
    CANONICAL = "canonical"
    NORMALIZED = "normalized"
    SHAPE = "shape"
    SEMANTIC = "semantic"

    @property
    def priority(self) -> int:
        return _STAGE_ORDER.index(self) + 1


_STAGE_ORDER = [
    MatchStage.EXACT,
    MatchStage.ALIAS,
    MatchStage.CANONICAL,
    MatchStage.NORMALIZED,
    MatchStage.SHAPE,
    MatchStage.SEMANTIC,
]

# Semantic confidence is the comparator score, so it has no fixed value.
STAGE_CONFIDENCE: Dict[MatchStage, float] = {
    MatchStage.EXACT: 1.0,
    MatchStage.ALIAS: 0.95,
    MatchStage.CANONICAL: 0.9,
    MatchStage.NORMALIZED: 0.75,
    MatchStage.SHAPE: 0.6,
}


class ResolutionStatus(str, Enum):
    OK = "ok"
    REJECTED = "rejected"
    NEEDS_CONFIRMATION = "needs_confirmation"


class GrantStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    REVOKED = "revoked"


class DecisionStatus(str, Enum):
    GRANTED = "granted"
    PENDING = "pending"
    DENIED = "denied"


@dataclass
class MemoryEntry:
    canonical_type_id: str
    value: Any
    owner_user_id: str
    sensitivity: Sensitivity = Sensitivity.PUBLIC
    ttl: Optional[int] = None  # seconds; None never expires
    provenance: Dict[str, Any] = field(default_factory=dict)
    scope: Optional[str] = None  # overrides the manifest capability scope
    written_at: Optional[datetime] = None
    written_seq: int = 0
    expires_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.sensitivity = Sensitivity.parse(self.sensitivity)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryEntry":
        return cls(
            canonical_type_id=str(data.get("canonical_type_id") or data["canonicalTypeId"]),
            value=data.get("value"),
            owner_user_id=str(data.get("owner_user_id") or data.get("ownerUserId") or "default"),
            sensitivity=Sensitivity.parse(data.get("sensitivity"), default=Sensitivity.PUBLIC),
            ttl=data.get("ttl"),
            provenance=dict(data.get("provenance") or {}),
            scope=data.get("scope"),
        )


@dataclass(frozen=True)
class ManifestType:
    """One canonical type published by a capability manifest."""
    type_id: str
    capability: str
    scope: str
    title: str = ""
    aliases: FrozenSet[str] = frozenset()
    json_schema: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class Rule:
    name: str
    kind: str
    params: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class AccessPolicy:
    agent_id: str
    intent: str
    required_scopes: FrozenSet[str]
    restrictions: Tuple[Rule, ...] = ()
    auto_approve: bool = False
    audit_level: str = "standard"
    max_duration_seconds: Optional[int] = None
    max_sensitivity: Sensitivity = Sensitivity.BUSINESS
    required_approvals: Tuple[str, ...] = ("user_consent",)


@dataclass
class Grant:
    grant_id: str
    agent_id: str
    user_id: str
    intent: str
    scopes: FrozenSet[str]
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    sensitivity_ceiling: Sensitivity = Sensitivity.BUSINESS
    audit_level: str = "standard"
    approved_by: Optional[str] = None

    def status(self, now: Optional[datetime] = None) -> GrantStatus:
        if self.revoked:
            return GrantStatus.REVOKED
        if (now or utcnow()) > self.expires_at:
            return GrantStatus.EXPIRED
        return GrantStatus.VALID

    def to_dict(self) -> Dict[str, Any]:
        return {
            "grant_id": self.grant_id,
            "agent_id": self.agent_id,
            "user_id": self.user_id,
            "intent": self.intent,
            "scopes": sorted(self.scopes),
            "issued_at": to_iso(self.issued_at),
            "expires_at": to_iso(self.expires_at),
            "revoked": self.revoked,
            "revoked_at": to_iso(self.revoked_at),
            "sensitivity_ceiling": self.sensitivity_ceiling.value,
            "audit_level": self.audit_level,
            "approved_by": self.approved_by,
        }


@dataclass
class ResolvedField:
    requested_key: str
    matched_canonical_type_id: Optional[str]
    value: Any
    confidence: float
    match_stage: Optional[MatchStage]
    sensitivity: Sensitivity
    status: ResolutionStatus = ResolutionStatus.OK
    auto_applicable: bool = False
    filtered: bool = False
    # value awaiting confirmation; set instead of ``value``
    candidate: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested_key": self.requested_key,
            "matched_canonical_type_id": self.matched_canonical_type_id,
            "value": self.value,
            "confidence": round(self.confidence, 4),
            "match_stage": self.match_stage.value if self.match_stage else None,
            "sensitivity": self.sensitivity.value,
            "status": self.status.value,
            "auto_applicable": self.auto_applicable,
            "filtered": self.filtered,
            "candidate": self.candidate,
        }


@dataclass
class ResolutionResult:
    status: ResolutionStatus
    entries: List[ResolvedField] = field(default_factory=list)
    filtered: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    degraded_stages: List[str] = field(default_factory=list)
    grant_id: Optional[str] = None
    # withheld fields, never serialized
    withheld: List[ResolvedField] = field(default_factory=list, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "entries": [entry.to_dict() for entry in self.entries],
            "rbac": {"allowed": True},
            "metadata": {
                "filtered": list(self.filtered),
                "missing": list(self.missing),
                "degraded_stages": list(self.degraded_stages),
                "grant_id": self.grant_id,
            },
        }


@dataclass
class AccessDecision:
    status: DecisionStatus
    grant: Optional[Grant] = None
    reason: Optional[str] = None
    pending_approvals: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    audit_level: str = "standard"

    @property
    def granted(self) -> bool:
        return self.status == DecisionStatus.GRANTED

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"granted": self.granted, "status": self.status.value}
        if self.grant is not None:
            payload["grant_id"] = self.grant.grant_id
            payload["expires_at"] = to_iso(self.grant.expires_at)
            payload["scopes"] = sorted(self.grant.scopes)
        if self.reason:
            payload["reason"] = self.reason
        if self.pending_approvals:
            payload["pending_approvals"] = list(self.pending_approvals)
        return payload


@dataclass(frozen=True)
class AuditRecord:
    agent_id: Optional[str]
    user_id: Optional[str]
    subject: str  # intent or requested key
    decision: str
    writer: str
    timestamp: datetime = field(default_factory=utcnow)
    grant_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = to_iso(self.timestamp)
        return payload
