"""Pydantic schemas for the memgate REST API."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, model_validator


class AccessRequest(BaseModel):
    agent_id: str
    user_id: str = Field(default="default")
    intent: str
    data_needed: Union[Dict[str, Any], List[str]] = Field(default_factory=dict)
    context: Optional[Dict[str, Any]] = Field(default=None)
    duration_seconds: Optional[int] = Field(default=None, ge=1)


class GrantIssueRequest(BaseModel):
    """Approval ingestion: an approver confirms a pending request."""
    agent_id: str
    user_id: str = Field(default="default")
    intent: str
    scopes: List[str]
    duration_seconds: Optional[int] = Field(default=None, ge=1)
    approved_by: Optional[str] = Field(default=None)


class ResolveRequest(BaseModel):
    agent_id: str
    user_id: str = Field(default="default")
    grant_id: str
    requested_schema: Dict[str, Any] = Field(..., alias="schema")
    min_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    agent_aliases: Optional[Dict[str, Union[str, List[str]]]] = Field(default=None)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    model_config = {"populate_by_name": True}


class RevokeRequest(BaseModel):
    grant_id: Optional[str] = Field(default=None)
    agent_id: Optional[str] = Field(default=None)
    user_id: Optional[str] = Field(default=None)

    @model_validator(mode="after")
    def _target_required(self) -> "RevokeRequest":
        if not self.grant_id and not (self.agent_id and self.user_id):
            raise ValueError("grant_id or both agent_id and user_id are required")
        return self


class MemoryWriteRequest(BaseModel):
    canonical_type_id: str
    value: Any = None
    user_id: str = Field(default="default")
    sensitivity: str = Field(default="public")
    ttl: Optional[int] = Field(default=None, ge=1)
    provenance: Dict[str, Any] = Field(default_factory=dict)
    scope: Optional[str] = Field(default=None)
    consent: bool = Field(default=False)
