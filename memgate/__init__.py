"""memgate package exports.

memgate: intent-scoped access to user memory for AI agents
- Field resolution: maps an agent's requested schema onto typed memory
- Intent engine: turns a declared purpose into a scoped, expiring grant
- Context broker: withholds values above the grant's sensitivity ceiling

Quick Start:
    from memgate import ContextGateway, ManifestRegistry, PolicyStore, InMemoryMemoryStore

    gateway = ContextGateway(InMemoryMemoryStore(), ManifestRegistry(manifest), PolicyStore(policies))
    decision = gateway.request_access("travel-agent", "u123", "book_business_travel", {"calendar": "read"})
    result = gateway.resolve("u123", {"seat_pref": "string"}, agent_id="travel-agent",
                             grant_id=decision.grant.grant_id)
"""

from memgate.configs.base import GatewayConfig, ResolverConfig, GrantConfig, AuditConfig, EmbedderConfig
from memgate.core.types import (
    AccessDecision,
    AccessPolicy,
    AuditRecord,
    DecisionStatus,
    Grant,
    GrantStatus,
    MatchStage,
    MemoryEntry,
    ResolutionResult,
    ResolutionStatus,
    ResolvedField,
    Rule,
    Sensitivity,
)
from memgate.core.audit import AuditEmitter, InMemoryAuditLog, JsonlAuditSink
from memgate.core.broker import ContextBroker
from memgate.core.cancellation import CancellationToken
from memgate.core.gateway import ContextGateway
from memgate.core.intent import IntentEngine
from memgate.core.resolver import FieldResolver
from memgate.stores.grant_store import GrantStore
from memgate.stores.manifest import ManifestRegistry
from memgate.stores.memory_store import BaseMemoryStore, InMemoryMemoryStore
from memgate.stores.policy_store import PolicyStore

__version__ = "0.1.0"
__all__ = [
    # Entry point
    "ContextGateway",
    # Components
    "FieldResolver",
    "IntentEngine",
    "ContextBroker",
    "GrantStore",
    "ManifestRegistry",
    "PolicyStore",
    "BaseMemoryStore",
    "InMemoryMemoryStore",
    "AuditEmitter",
    "InMemoryAuditLog",
    "JsonlAuditSink",
    "CancellationToken",
    # Records
    "AccessDecision",
    "AccessPolicy",
    "AuditRecord",
    "DecisionStatus",
    "Grant",
    "GrantStatus",
    "MatchStage",
    "MemoryEntry",
    "ResolutionResult",
    "ResolutionStatus",
    "ResolvedField",
    "Rule",
    "Sensitivity",
    # Config
    "GatewayConfig",
    "ResolverConfig",
    "GrantConfig",
    "AuditConfig",
    "EmbedderConfig",
]
