"""ContextGateway: the one entry point agents talk to.

Wires the intent engine, grant store, field resolver and context broker
together and emits exactly one audit record per access decision and per
terminal field outcome.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from memgate.configs.base import GatewayConfig
from memgate.core.audit import AuditEmitter, InMemoryAuditLog, create_sink
from memgate.core.broker import ContextBroker
from memgate.core.cancellation import CancellationToken
from memgate.core.intent import DataNeeded, IntentEngine
from memgate.core.resolver import AgentAliases, FieldResolver, ensure_grant_usable
from memgate.core.types import (
    AccessDecision,
    AuditRecord,
    Grant,
    GrantStatus,
    ResolutionResult,
    ResolutionStatus,
)
from memgate.embeddings.comparator import EmbeddingComparator, SemanticComparator, create_embedder
from memgate.exceptions import (
    GrantExpired,
    GrantMismatch,
    GrantNotFound,
    GrantRevoked,
    NoCandidate,
    ResolutionCancelled,
    ScopeNotPermitted,
    UnknownIntent,
)
from memgate.observability import metrics
from memgate.stores.grant_store import GrantStore
from memgate.stores.manifest import ManifestRegistry
from memgate.stores.memory_store import BaseMemoryStore, InMemoryMemoryStore
from memgate.stores.policy_store import PolicyStore

logger = logging.getLogger(__name__)

WRITER_INTENT = "intent_engine"
WRITER_RESOLVER = "field_resolver"
WRITER_BROKER = "context_broker"
WRITER_GRANTS = "grant_store"

# Keys kept at each audit level; "detailed" keeps everything.
_AUDIT_KEYS = {
    "minimal": {"reason"},
    "standard": {"reason", "scopes", "pending_approvals", "match_stage", "confidence", "approved_by"},
}

_GRANT_ERRORS = (GrantNotFound, GrantExpired, GrantRevoked, GrantMismatch)


def size_details(audit_level: str, details: Mapping[str, Any]) -> Dict[str, Any]:
    keep = _AUDIT_KEYS.get(audit_level)
    cleaned = {k: v for k, v in details.items() if v not in (None, [], {})}
    if keep is None:
        return cleaned
    return {k: v for k, v in cleaned.items() if k in keep}


class ContextGateway:
    def __init__(
        self,
        memory_store: BaseMemoryStore,
        manifest: ManifestRegistry,
        policy_store: PolicyStore,
        *,
        grant_store: Optional[GrantStore] = None,
        config: Optional[GatewayConfig] = None,
        comparator: Optional[SemanticComparator] = None,
        broker: Optional[ContextBroker] = None,
        audit: Optional[AuditEmitter] = None,
    ):
        self.config = config or GatewayConfig()
        self.memory_store = memory_store
        self.manifest = manifest
        self.policy_store = policy_store
        self.grant_store = grant_store or GrantStore(self.config.grants.db_path)
        self.audit = audit or AuditEmitter(
            InMemoryAuditLog(),
            max_attempts=self.config.audit.max_delivery_attempts,
            backoff=self.config.audit.retry_backoff_seconds,
            redelivery_interval=self.config.audit.redelivery_interval_seconds,
            max_redelivery_interval=self.config.audit.max_redelivery_interval_seconds,
        )
        self.intents = IntentEngine(
            policy_store,
            self.grant_store,
            self.config.grants,
            strict_restrictions=self.config.strict_restrictions,
        )
        self.resolver = FieldResolver(
            memory_store,
            manifest,
            comparator=comparator,
            broker=broker,
            config=self.config.resolver,
        )
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: Optional[GatewayConfig] = None,
        *,
        memory_store: Optional[BaseMemoryStore] = None,
    ) -> "ContextGateway":
        config = config or GatewayConfig.from_env()
        manifest = ManifestRegistry.from_file(config.manifest_path) if config.manifest_path else ManifestRegistry()
        policies = PolicyStore.from_file(config.policy_path) if config.policy_path else PolicyStore()
        comparator = None
        if config.resolver.enable_semantic:
            embedder = create_embedder(config.embedder.provider, config.embedder.config)
            comparator = EmbeddingComparator(embedder)
        audit = AuditEmitter(
            create_sink(config.audit.sink, config.audit.path),
            max_attempts=config.audit.max_delivery_attempts,
            backoff=config.audit.retry_backoff_seconds,
            redelivery_interval=config.audit.redelivery_interval_seconds,
            max_redelivery_interval=config.audit.max_redelivery_interval_seconds,
        )
        grant_store = GrantStore(config.grants.db_path)
        grant_store.start_sweeper(config.grants.sweep_interval_seconds)
        return cls(
            memory_store or InMemoryMemoryStore(),
            manifest,
            policies,
            grant_store=grant_store,
            config=config,
            comparator=comparator,
            audit=audit,
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _emit(
        self,
        *,
        writer: str,
        subject: str,
        decision: str,
        agent_id: Optional[str],
        user_id: Optional[str],
        grant_id: Optional[str] = None,
        audit_level: str = "standard",
        **details: Any,
    ) -> None:
        self.audit.emit(
            AuditRecord(
                agent_id=agent_id,
                user_id=user_id,
                subject=subject,
                decision=decision,
                writer=writer,
                grant_id=grant_id,
                details=size_details(audit_level, details),
            )
        )

    def query_audit(
        self,
        *,
        agent_id: Optional[str] = None,
        user_id: Optional[str] = None,
        grant_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Read back delivered audit records from the configured sink."""
        return self.audit.sink.find(agent_id=agent_id, user_id=user_id, grant_id=grant_id, limit=limit)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

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
        with metrics.measure("request_access"):
            try:
                decision = self.intents.request_access(
                    agent_id,
                    user_id,
                    intent,
                    data_needed,
                    context=context,
                    duration_seconds=duration_seconds,
                )
            except (UnknownIntent, ValueError) as exc:
                metrics.record_decision("denied")
                unknown = isinstance(exc, UnknownIntent)
                self._emit(
                    writer=WRITER_INTENT,
                    subject=intent,
                    decision="unknown_intent" if unknown else "denied",
                    agent_id=agent_id,
                    user_id=user_id,
                    reason=exc.code if unknown else "invalid_request",
                )
                raise

        self._emit(
            writer=WRITER_INTENT,
            subject=intent,
            decision=decision.status.value,
            agent_id=agent_id,
            user_id=user_id,
            grant_id=decision.grant.grant_id if decision.grant else None,
            audit_level=decision.audit_level,
            reason=decision.reason,
            scopes=decision.scopes,
            pending_approvals=decision.pending_approvals,
            context=context,
        )
        return decision

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
        """Approval ingestion: issue a grant for a previously pending request."""
        scopes = list(scopes)
        try:
            grant = self.intents.issue_grant(
                agent_id,
                user_id,
                intent,
                scopes,
                duration_seconds=duration_seconds,
                approved_by=approved_by,
            )
        except (UnknownIntent, ScopeNotPermitted) as exc:
            metrics.record_decision("denied")
            self._emit(
                writer=WRITER_INTENT,
                subject=intent,
                decision="denied",
                agent_id=agent_id,
                user_id=user_id,
                reason=exc.code,
                scopes=scopes,
                approved_by=approved_by,
            )
            raise
        self._emit(
            writer=WRITER_INTENT,
            subject=intent,
            decision="granted",
            agent_id=agent_id,
            user_id=user_id,
            grant_id=grant.grant_id,
            audit_level=grant.audit_level,
            scopes=sorted(grant.scopes),
            approved_by=approved_by,
        )
        return grant

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _authorize(self, grant_id: str, agent_id: str, user_id: str) -> Grant:
        grant = self.grant_store.get(grant_id)
        ensure_grant_usable(grant, user_id)
        if grant.agent_id != agent_id:
            raise GrantMismatch(f"Grant {grant_id} was not issued to agent={agent_id}")
        return grant

    def resolve(
        self,
        user_id: str,
        requested_schema: Mapping[str, Any],
        *,
        agent_id: str,
        grant_id: str,
        min_confidence: Optional[float] = None,
        agent_aliases: Optional[AgentAliases] = None,
        timeout: Optional[float] = None,
    ) -> ResolutionResult:
        """Resolve *requested_schema* for *agent_id* under *grant_id*.

        Grant problems raise (``GrantNotFound``, ``GrantExpired``,
        ``GrantRevoked``, ``GrantMismatch``), as do ``NoCandidate`` and
        ``ResolutionCancelled``. Every outcome is audited.
        """
        with metrics.measure("resolve"):
            try:
                grant = self._authorize(grant_id, agent_id, user_id)
            except _GRANT_ERRORS as exc:
                self._emit(
                    writer=WRITER_RESOLVER,
                    subject="resolve",
                    decision=ResolutionStatus.REJECTED.value,
                    agent_id=agent_id,
                    user_id=user_id,
                    grant_id=grant_id,
                    reason=exc.code,
                )
                raise

            if timeout is None:
                timeout = self.config.resolver.default_timeout_seconds or None
            cancel = CancellationToken(timeout)
            level = grant.audit_level
            try:
                result = self.resolver.resolve(
                    user_id,
                    requested_schema,
                    agent_aliases,
                    grant,
                    min_confidence=min_confidence,
                    cancel=cancel,
                )
            except NoCandidate as exc:
                metrics.record_no_candidate(len(exc.keys))
                for key in exc.keys:
                    self._emit(
                        writer=WRITER_RESOLVER,
                        subject=key,
                        decision="no_candidate",
                        agent_id=agent_id,
                        user_id=user_id,
                        grant_id=grant_id,
                        audit_level=level,
                        reason=exc.code,
                    )
                raise
            except (ResolutionCancelled, GrantExpired, GrantRevoked) as exc:
                self._emit(
                    writer=WRITER_RESOLVER,
                    subject="resolve",
                    decision="cancelled" if isinstance(exc, ResolutionCancelled) else ResolutionStatus.REJECTED.value,
                    agent_id=agent_id,
                    user_id=user_id,
                    grant_id=grant_id,
                    audit_level=level,
                    reason=cancel.reason if isinstance(exc, ResolutionCancelled) else exc.code,
                )
                raise
            except ValueError:
                self._emit(
                    writer=WRITER_RESOLVER,
                    subject="resolve",
                    decision=ResolutionStatus.REJECTED.value,
                    agent_id=agent_id,
                    user_id=user_id,
                    grant_id=grant_id,
                    audit_level=level,
                    reason="invalid_request",
                )
                raise

        self._audit_result(result, agent_id=agent_id, user_id=user_id, audit_level=level)
        return result

    def _audit_result(self, result: ResolutionResult, *, agent_id: str, user_id: str, audit_level: str) -> None:
        common = dict(agent_id=agent_id, user_id=user_id, grant_id=result.grant_id, audit_level=audit_level)
        if not (result.entries or result.withheld or result.missing):
            self._emit(
                writer=WRITER_RESOLVER,
                subject="resolve",
                decision="resolved",
                reason="no_fields_requested",
                **common,
            )
            return
        for entry in result.entries:
            needs_confirmation = entry.status == ResolutionStatus.NEEDS_CONFIRMATION
            metrics.record_match(entry.match_stage.value if entry.match_stage else None, needs_confirmation)
            self._emit(
                writer=WRITER_RESOLVER,
                subject=entry.requested_key,
                decision="needs_confirmation" if needs_confirmation else "resolved",
                match_stage=entry.match_stage.value if entry.match_stage else None,
                confidence=round(entry.confidence, 4),
                canonical_type_id=entry.matched_canonical_type_id,
                sensitivity=entry.sensitivity.value,
                degraded_stages=result.degraded_stages,
                **common,
            )
        for withheld in result.withheld:
            metrics.record_filtered()
            self._emit(
                writer=WRITER_BROKER,
                subject=withheld.requested_key,
                decision="filtered",
                reason="sensitivity_ceiling",
                sensitivity=withheld.sensitivity.value,
                **common,
            )
        for key in result.missing:
            metrics.record_no_candidate()
            self._emit(
                writer=WRITER_RESOLVER,
                subject=key,
                decision="no_candidate",
                reason=NoCandidate.code,
                degraded_stages=result.degraded_stages,
                **common,
            )

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def check_grant(
        self,
        grant_id: str,
        *,
        wait_for_audit: bool = False,
        timeout: Optional[float] = 5.0,
    ) -> GrantStatus:
        """Current status of *grant_id*.

        With ``wait_for_audit`` the call first waits until an audit record
        for the grant has reached the sink.
        """
        if wait_for_audit and not self.audit.wait_for_grant(grant_id, timeout=timeout):
            logger.warning("Audit for grant %s not delivered within %ss", grant_id, timeout)
        return self.grant_store.check(grant_id)

    def get_grant(self, grant_id: str) -> Grant:
        return self.grant_store.get(grant_id)

    def revoke(self, grant_id: str) -> bool:
        grant = self.grant_store.get(grant_id)
        revoked = self.grant_store.revoke(grant_id)
        if revoked:
            metrics.record_revocation()
        self._emit(
            writer=WRITER_GRANTS,
            subject=grant.intent,
            decision="revoked",
            agent_id=grant.agent_id,
            user_id=grant.user_id,
            grant_id=grant_id,
            audit_level=grant.audit_level,
            reason=None if revoked else "already_revoked",
        )
        return revoked

    def revoke_all(self, agent_id: str, user_id: str) -> int:
        revoked_ids = self.grant_store.revoke_all(agent_id, user_id)
        metrics.record_revocation(len(revoked_ids))
        for grant_id in revoked_ids:
            self._emit(
                writer=WRITER_GRANTS,
                subject="revoke_all",
                decision="revoked",
                agent_id=agent_id,
                user_id=user_id,
                grant_id=grant_id,
            )
        return len(revoked_ids)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self.audit.flush(timeout=5.0):
            logger.warning("Audit queue not drained on close")
        self.audit.close()
        self.resolver.close()
        self.grant_store.close()

    def __enter__(self) -> "ContextGateway":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

