"""Field Resolver: maps an agent's requested schema onto a user's memory.

Each requested field walks the stages of :class:`MatchStage` in priority
order and stops at the first stage that yields a candidate. Confidence is
fixed per stage except for the semantic stage, whose score comes from the
injected comparator. Within a stage the freshest entry wins, then the
lexicographically smallest canonical id.

Fields of one request resolve concurrently; stages of one field never do.
"""

from __future__ import annotations

import logging
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from memgate.configs.base import ResolverConfig
from memgate.core.broker import ContextBroker
from memgate.core.cancellation import CancellationToken
from memgate.core.matching import (
    canonical_for_request,
    is_alias_match,
    is_normalized_match,
    is_shape_match,
    iter_requested_fields,
    semantic_text_for_request,
    semantic_text_for_type,
)
from memgate.core.types import (
    STAGE_CONFIDENCE,
    Grant,
    GrantStatus,
    MatchStage,
    MemoryEntry,
    ResolutionResult,
    ResolutionStatus,
    ResolvedField,
)
from memgate.embeddings.comparator import SemanticComparator
from memgate.exceptions import (
    ExternalUnavailable,
    GrantExpired,
    GrantMismatch,
    GrantRevoked,
    NoCandidate,
    ResolutionCancelled,
)
from memgate.stores.manifest import ManifestRegistry, ManifestSnapshot, build_snapshot, local_name
from memgate.stores.memory_store import BaseMemoryStore
from memgate.utils.math import clamp_unit
from memgate.utils.parallel import ParallelExecutor
from memgate.utils.retry import call_with_retry

logger = logging.getLogger(__name__)

AgentAliases = Mapping[str, Union[str, Iterable[str]]]


@dataclass
class Candidate:
    entry: MemoryEntry
    confidence: float

    def sort_key(self) -> Tuple[float, float, int, str]:
        written = self.entry.written_at.timestamp() if self.entry.written_at else 0.0
        return (-self.confidence, -written, -self.entry.written_seq, self.entry.canonical_type_id)


@dataclass
class _RequestContext:
    user_id: str
    grant: Grant
    snapshot: ManifestSnapshot
    candidates: List[MemoryEntry]
    aliases: Dict[str, List[str]]
    min_confidence: float
    cancel: CancellationToken
    degraded: List[str] = field(default_factory=list)


def scope_allows(grant_scopes: Iterable[str], entry_scope: Optional[str]) -> bool:
    """True if any grant scope covers *entry_scope* (by its resource part)."""
    scopes = set(grant_scopes)
    if "*" in scopes:
        return True
    if not entry_scope:
        return False
    resource = entry_scope.split(":", 1)[0]
    return any(scope == entry_scope or scope.split(":", 1)[0] == resource for scope in scopes)


def ensure_grant_usable(grant: Grant, user_id: Optional[str] = None) -> None:
    status = grant.status()
    if status == GrantStatus.REVOKED:
        raise GrantRevoked(grant.grant_id)
    if status == GrantStatus.EXPIRED:
        raise GrantExpired(grant.grant_id)
    if user_id is not None and grant.user_id != user_id:
        raise GrantMismatch(f"Grant {grant.grant_id} was not issued for user={user_id}")


def _normalize_aliases(agent_aliases: Optional[AgentAliases]) -> Dict[str, List[str]]:
    normalized: Dict[str, List[str]] = {}
    for key, names in (agent_aliases or {}).items():
        if isinstance(names, str):
            names = [names]
        normalized[str(key)] = [str(n).strip() for n in names if str(n).strip()]
    return normalized


class FieldResolver:
    def __init__(
        self,
        memory_store: BaseMemoryStore,
        manifest: ManifestRegistry,
        *,
        comparator: Optional[SemanticComparator] = None,
        broker: Optional[ContextBroker] = None,
        config: Optional[ResolverConfig] = None,
        executor: Optional[ParallelExecutor] = None,
    ):
        self.memory_store = memory_store
        self.manifest = manifest
        self.comparator = comparator
        self.broker = broker or ContextBroker()
        self.config = config or ResolverConfig()
        self.executor = executor or ParallelExecutor(max_workers=self.config.max_workers)
        self._stages: List[Tuple[MatchStage, Callable[..., List[Candidate]]]] = [
            (MatchStage.EXACT, self._match_exact),
            (MatchStage.ALIAS, self._match_alias),
            (MatchStage.CANONICAL, self._match_canonical),
            (MatchStage.NORMALIZED, self._match_normalized),
            (MatchStage.SHAPE, self._match_shape),
            (MatchStage.SEMANTIC, self._match_semantic),
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(
        self,
        user_id: str,
        requested_schema: Mapping[str, Any],
        agent_aliases: Optional[AgentAliases],
        grant: Grant,
        *,
        min_confidence: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ResolutionResult:
        """Resolve every requested field against *user_id*'s memory.

        Raises ``GrantExpired``/``GrantRevoked`` for an unusable grant,
        ``NoCandidate`` when no field matched at all and
        ``ResolutionCancelled`` when *cancel* fires first.
        """
        ensure_grant_usable(grant, user_id)
        cancel = cancel or CancellationToken(self.config.default_timeout_seconds or None)
        threshold = self.config.min_confidence if min_confidence is None else clamp_unit(min_confidence)

        fields = iter_requested_fields(requested_schema)
        degraded: List[str] = []
        ctx = _RequestContext(
            user_id=user_id,
            grant=grant,
            snapshot=self._load_snapshot(cancel, degraded),
            candidates=[],
            aliases=_normalize_aliases(agent_aliases),
            min_confidence=threshold,
            cancel=cancel,
            degraded=degraded,
        )
        ctx.candidates = self._load_candidates(ctx)

        tasks = [(self._resolve_one, (key, fragment, ctx)) for key, fragment in fields]
        try:
            outcomes = self.executor.run_parallel(tasks, timeout=cancel.remaining())
        except FutureTimeout:
            cancel.cancel("timeout")
            raise ResolutionCancelled("Resolution timed out")

        result = ResolutionResult(status=ResolutionStatus.OK, grant_id=grant.grant_id)
        for (key, _), resolved in zip(fields, outcomes):
            if resolved is None:
                result.missing.append(key)
            elif resolved.filtered:
                result.filtered.append(key)
                result.withheld.append(resolved)
            else:
                result.entries.append(resolved)
        result.degraded_stages = sorted(set(ctx.degraded))

        if fields and not result.entries and not result.filtered:
            raise NoCandidate(result.missing)
        if any(e.status == ResolutionStatus.NEEDS_CONFIRMATION for e in result.entries):
            result.status = ResolutionStatus.NEEDS_CONFIRMATION
        return result

    def resolve_field(
        self,
        user_id: str,
        requested_key: str,
        fragment: Mapping[str, Any],
        grant: Grant,
        *,
        agent_aliases: Optional[AgentAliases] = None,
        min_confidence: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ResolvedField:
        """Resolve a single field; raises ``NoCandidate`` if nothing matched."""
        result = self.resolve(
            user_id,
            {requested_key: dict(fragment)},
            agent_aliases,
            grant,
            min_confidence=min_confidence,
            cancel=cancel,
        )
        if result.entries:
            return result.entries[0]
        return result.withheld[0]

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _retry(self, func, component: str, cancel: CancellationToken):
        return call_with_retry(
            func,
            component=component,
            retries=self.config.stage_retries,
            backoff=self.config.retry_backoff_seconds,
            max_backoff=self.config.retry_backoff_max_seconds,
            should_continue=lambda: not cancel.cancelled,
        )

    def _load_snapshot(self, cancel: CancellationToken, degraded: List[str]) -> ManifestSnapshot:
        try:
            return self._retry(self.manifest.snapshot, "manifest_registry", cancel)
        except ExternalUnavailable as exc:
            logger.error("Manifest registry unavailable, alias/canonical stages disabled: %s", exc)
            degraded.append("manifest_registry")
            return build_snapshot({})

    def _load_candidates(self, ctx: _RequestContext) -> List[MemoryEntry]:
        try:
            entries = self._retry(
                lambda: self.memory_store.list_entries(ctx.user_id),
                "memory_store",
                ctx.cancel,
            )
        except ExternalUnavailable as exc:
            logger.error("Memory store unavailable for user=%s: %s", ctx.user_id, exc)
            ctx.degraded.append("memory_store")
            return []
        visible = []
        for entry in entries:
            if entry.owner_user_id != ctx.user_id or entry.is_expired():
                continue
            entry_scope = entry.scope or ctx.snapshot.scope_of(entry.canonical_type_id)
            if scope_allows(ctx.grant.scopes, entry_scope):
                visible.append(entry)
        return visible

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _resolve_one(self, key: str, fragment: Dict[str, Any], ctx: _RequestContext) -> Optional[ResolvedField]:
        for stage, matcher in self._stages:
            ctx.cancel.raise_if_cancelled()
            matches = [c for c in matcher(key, fragment, ctx) if c.confidence > self.config.hard_floor]
            if not matches:
                continue
            best = min(matches, key=Candidate.sort_key)
            return self._finalize(key, stage, best, ctx)
        logger.debug("No candidate for field %r (user=%s)", key, ctx.user_id)
        return None

    def _finalize(self, key: str, stage: MatchStage, best: Candidate, ctx: _RequestContext) -> ResolvedField:
        entry = best.entry
        outcome = self.broker.filter(entry.value, entry.sensitivity, ctx.grant)
        resolved = ResolvedField(
            requested_key=key,
            matched_canonical_type_id=entry.canonical_type_id,
            value=outcome.value,
            confidence=best.confidence,
            match_stage=stage,
            sensitivity=outcome.sensitivity,
            filtered=outcome.filtered,
        )
        if outcome.filtered:
            resolved.matched_canonical_type_id = None
            return resolved
        if best.confidence < ctx.min_confidence:
            resolved.status = ResolutionStatus.NEEDS_CONFIRMATION
            resolved.candidate, resolved.value = resolved.value, None
        resolved.auto_applicable = ContextBroker.is_auto_applicable(resolved, ctx.min_confidence)
        return resolved

    def _fixed(self, stage: MatchStage, entries: Iterable[MemoryEntry]) -> List[Candidate]:
        confidence = STAGE_CONFIDENCE[stage]
        return [Candidate(entry=e, confidence=confidence) for e in entries]

    def _match_exact(self, key: str, fragment: Dict[str, Any], ctx: _RequestContext) -> List[Candidate]:
        return self._fixed(
            MatchStage.EXACT,
            (e for e in ctx.candidates if key in {e.canonical_type_id, local_name(e.canonical_type_id)}),
        )

    def _match_alias(self, key: str, fragment: Dict[str, Any], ctx: _RequestContext) -> List[Candidate]:
        agent_aliases = ctx.aliases.get(key, [])
        return self._fixed(
            MatchStage.ALIAS,
            (e for e in ctx.candidates if is_alias_match(key, e.canonical_type_id, ctx.snapshot, agent_aliases)),
        )

    def _match_canonical(self, key: str, fragment: Dict[str, Any], ctx: _RequestContext) -> List[Candidate]:
        wanted = canonical_for_request(key, fragment, ctx.snapshot, ctx.aliases.get(key, []))
        if not wanted:
            return []
        matched = []
        for entry in ctx.candidates:
            canonical = ctx.snapshot.canonicalize(entry.canonical_type_id) or entry.canonical_type_id
            if canonical in wanted:
                matched.append(entry)
        return self._fixed(MatchStage.CANONICAL, matched)

    def _match_normalized(self, key: str, fragment: Dict[str, Any], ctx: _RequestContext) -> List[Candidate]:
        return self._fixed(
            MatchStage.NORMALIZED,
            (e for e in ctx.candidates if is_normalized_match(key, e.canonical_type_id, ctx.snapshot)),
        )

    def _match_shape(self, key: str, fragment: Dict[str, Any], ctx: _RequestContext) -> List[Candidate]:
        return self._fixed(
            MatchStage.SHAPE,
            (e for e in ctx.candidates if is_shape_match(fragment, e.value)),
        )

    def _match_semantic(self, key: str, fragment: Dict[str, Any], ctx: _RequestContext) -> List[Candidate]:
        if self.comparator is None or not self.config.enable_semantic or not ctx.candidates:
            return []
        query = semantic_text_for_request(key, fragment)
        texts: Sequence[str] = [semantic_text_for_type(e.canonical_type_id, ctx.snapshot) for e in ctx.candidates]
        try:
            scores = self._retry(lambda: self.comparator.score(query, texts), "embedding_comparator", ctx.cancel)
        except ExternalUnavailable as exc:
            logger.error("Semantic stage skipped for field %r: %s", key, exc)
            ctx.degraded.append("semantic")
            return []
        return [Candidate(entry=e, confidence=clamp_unit(s)) for e, s in zip(ctx.candidates, scores)]

    def close(self) -> None:
        self.executor.shutdown()
