import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


_VALID_EMBEDDER_PROVIDERS = {"simple", "openai"}
_VALID_AUDIT_SINKS = {"memory", "jsonl"}


def feature_enabled(name: str, default: bool = True) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class ResolverConfig(BaseModel):
    """Configuration for the field resolution pipeline."""
    min_confidence: float = 0.7  # below this a match needs human confirmation
    hard_floor: float = 0.0  # matches at or below this are not candidates
    max_workers: int = 4  # fields resolved concurrently per request
    stage_retries: int = 2
    retry_backoff_seconds: float = 0.05
    retry_backoff_max_seconds: float = 1.0
    default_timeout_seconds: float = 10.0
    enable_semantic: bool = True

    @field_validator("min_confidence", "hard_floor")
    @classmethod
    def _clamp_unit_float(cls, v: float) -> float:
        return min(1.0, max(0.0, float(v)))

    @field_validator("max_workers")
    @classmethod
    def _clamp_workers(cls, v: int) -> int:
        return min(32, max(1, int(v)))

    @field_validator("stage_retries")
    @classmethod
    def _clamp_retries(cls, v: int) -> int:
        return min(10, max(0, int(v)))

    @field_validator("retry_backoff_seconds", "retry_backoff_max_seconds", "default_timeout_seconds")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        return max(0.0, float(v))


class GrantConfig(BaseModel):
    """Configuration for grant issuance and storage."""
    db_path: str = ":memory:"
    default_ttl_seconds: int = 3600
    max_ttl_seconds: int = 30 * 24 * 3600
    sweep_interval_seconds: float = 0.0  # 0 disables the housekeeping sweeper

    @field_validator("default_ttl_seconds", "max_ttl_seconds")
    @classmethod
    def _positive_int(cls, v: int) -> int:
        return max(1, int(v))


class AuditConfig(BaseModel):
    sink: str = Field(default="memory")
    path: str = Field(
        default_factory=lambda: os.path.join(os.path.expanduser("~"), ".memgate", "audit.jsonl")
    )
    max_delivery_attempts: int = 3
    retry_backoff_seconds: float = 0.05
    redelivery_interval_seconds: float = 1.0  # first retry of parked records
    max_redelivery_interval_seconds: float = 30.0

    @field_validator("sink")
    @classmethod
    def _valid_sink(cls, v: str) -> str:
        v = str(v).strip().lower()
        if v not in _VALID_AUDIT_SINKS:
            raise ValueError(f"Unknown audit sink '{v}'. Valid: {sorted(_VALID_AUDIT_SINKS)}")
        return v

    @field_validator("max_delivery_attempts")
    @classmethod
    def _positive_attempts(cls, v: int) -> int:
        return max(1, int(v))


class EmbedderConfig(BaseModel):
    provider: str = Field(default="simple")
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("provider")
    @classmethod
    def _valid_provider(cls, v: str) -> str:
        v = str(v).strip().lower()
        if v not in _VALID_EMBEDDER_PROVIDERS:
            raise ValueError(f"Unknown embedder provider '{v}'. Valid: {sorted(_VALID_EMBEDDER_PROVIDERS)}")
        return v


class GatewayConfig(BaseModel):
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    grants: GrantConfig = Field(default_factory=GrantConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    embedder: EmbedderConfig = Field(default_factory=EmbedderConfig)
    manifest_path: Optional[str] = None
    policy_path: Optional[str] = None
    strict_restrictions: bool = True

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Build a config from ``MEMGATE_*`` environment variables."""
        config = cls()
        if os.environ.get("MEMGATE_DB_PATH"):
            config.grants.db_path = os.environ["MEMGATE_DB_PATH"]
        if os.environ.get("MEMGATE_MANIFEST_PATH"):
            config.manifest_path = os.environ["MEMGATE_MANIFEST_PATH"]
        if os.environ.get("MEMGATE_POLICY_PATH"):
            config.policy_path = os.environ["MEMGATE_POLICY_PATH"]
        if os.environ.get("MEMGATE_AUDIT_PATH"):
            config.audit = AuditConfig(sink="jsonl", path=os.environ["MEMGATE_AUDIT_PATH"])
        if os.environ.get("MEMGATE_MIN_CONFIDENCE"):
            config.resolver = config.resolver.model_copy(
                update={"min_confidence": min(1.0, max(0.0, float(os.environ["MEMGATE_MIN_CONFIDENCE"])))}
            )
        if os.environ.get("MEMGATE_EMBEDDER"):
            config.embedder = EmbedderConfig(provider=os.environ["MEMGATE_EMBEDDER"])
        config.resolver.enable_semantic = feature_enabled("MEMGATE_SEMANTIC_MATCHING", default=True)
        config.strict_restrictions = feature_enabled("MEMGATE_STRICT_RESTRICTIONS", default=True)
        return config
