"""Error taxonomy for memgate.

Every error carries a stable ``code`` so the REST layer and audit records
can report it without string matching.
"""

from __future__ import annotations

from typing import Dict, List, Optional


class MemgateError(RuntimeError):
    """Base error with a machine-readable code."""

    code = "memgate_error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        if code:
            self.code = str(code)
        self.message = str(message)
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


class NoCandidate(MemgateError):
    """No pipeline stage produced a match above the hard floor."""

    code = "no_candidate"

    def __init__(self, keys: List[str]):
        self.keys = list(keys)
        super().__init__(f"No candidate found for: {', '.join(self.keys)}")


class UnknownIntent(MemgateError):
    code = "unknown_intent"

    def __init__(self, agent_id: str, intent: str):
        self.agent_id = agent_id
        self.intent = intent
        super().__init__(f"No access policy for agent={agent_id} intent={intent}")


class ScopeNotPermitted(MemgateError):
    code = "scope_not_permitted"

    def __init__(self, scopes: List[str]):
        self.scopes = sorted(scopes)
        super().__init__(f"Scopes not permitted by policy: {', '.join(self.scopes)}")


class GrantNotFound(MemgateError, KeyError):
    code = "grant_not_found"

    def __init__(self, grant_id: str):
        self.grant_id = grant_id
        MemgateError.__init__(self, f"Unknown grant {grant_id}")


class GrantExpired(MemgateError):
    code = "grant_expired"

    def __init__(self, grant_id: str):
        self.grant_id = grant_id
        super().__init__(f"Grant {grant_id} has expired")


class GrantRevoked(MemgateError):
    code = "grant_revoked"

    def __init__(self, grant_id: str):
        self.grant_id = grant_id
        super().__init__(f"Grant {grant_id} has been revoked")


class GrantMismatch(MemgateError, PermissionError):
    code = "grant_mismatch"


class ExternalUnavailable(MemgateError):
    """A collaborator (memory store, manifest registry, comparator) is unreachable."""

    code = "external_unavailable"

    def __init__(self, component: str, message: Optional[str] = None):
        self.component = component
        super().__init__(message or f"{component} is unavailable")


class ResolutionCancelled(MemgateError):
    code = "resolution_cancelled"


class ConsentRequired(MemgateError, PermissionError):
    code = "consent_required"


class InvalidDocument(MemgateError, ValueError):
    code = "invalid_document"
