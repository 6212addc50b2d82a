"""memgate REST API Server.

FastAPI front end for the context gateway.

Usage:
    memgate-api                    # Start server on default port 8200
    memgate-api --port 8080        # Custom port
    memgate-api --host 0.0.0.0     # Bind to all interfaces
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from memgate.api.schemas import (
    AccessRequest,
    GrantIssueRequest,
    MemoryWriteRequest,
    ResolveRequest,
    RevokeRequest,
)
from memgate.core.gateway import ContextGateway
from memgate.core.types import MemoryEntry, Sensitivity
from memgate.exceptions import (
    ConsentRequired,
    GrantExpired,
    GrantMismatch,
    GrantNotFound,
    GrantRevoked,
    NoCandidate,
    ResolutionCancelled,
    ScopeNotPermitted,
    UnknownIntent,
)
from memgate.observability import add_metrics_routes, logger as structured_logger

logger = logging.getLogger(__name__)

app = FastAPI(
    title="memgate API",
    description="Intent-scoped grants and schema-guided field resolution over user memory",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add metrics endpoints (/metrics, /metrics/json)
add_metrics_routes(app)

_gateway: Optional[ContextGateway] = None
_gateway_lock = threading.Lock()


def get_gateway() -> ContextGateway:
    """Get or create the global gateway (configured from ``MEMGATE_*``)."""
    global _gateway
    if _gateway is None:
        with _gateway_lock:
            if _gateway is None:
                _gateway = ContextGateway.from_config()
    return _gateway


def set_gateway(gateway: Optional[ContextGateway]) -> None:
    global _gateway
    with _gateway_lock:
        _gateway = gateway


def _rejected(status_code: int, reason: str, grant_id: Optional[str]) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "rejected",
            "entries": [],
            "rbac": {"allowed": False, "reason": reason},
            "metadata": {"grant_id": grant_id},
        },
    )


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "memgate"}


@app.get("/v1/version")
async def get_version():
    from memgate import __version__

    return {"version": __version__, "api_version": "v1"}


@app.post("/v1/access")
def request_access(request: AccessRequest):
    """Ask for a grant for a declared intent."""
    try:
        decision = get_gateway().request_access(
            request.agent_id,
            request.user_id,
            request.intent,
            request.data_needed,
            context=request.context,
            duration_seconds=request.duration_seconds,
        )
    except UnknownIntent as exc:
        raise HTTPException(status_code=404, detail=exc.to_dict())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    structured_logger.info(
        "access decided",
        agent_id=request.agent_id,
        intent=request.intent,
        status=decision.status.value,
    )
    return decision.to_dict()


@app.post("/v1/grants")
def issue_grant(request: GrantIssueRequest):
    try:
        grant = get_gateway().issue_grant(
            request.agent_id,
            request.user_id,
            request.intent,
            request.scopes,
            duration_seconds=request.duration_seconds,
            approved_by=request.approved_by,
        )
    except UnknownIntent as exc:
        raise HTTPException(status_code=404, detail=exc.to_dict())
    except ScopeNotPermitted as exc:
        raise HTTPException(status_code=403, detail=exc.to_dict())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return grant.to_dict()


@app.get("/v1/grants/{grant_id}")
def get_grant(grant_id: str):
    gateway = get_gateway()
    try:
        grant = gateway.get_grant(grant_id)
    except GrantNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.to_dict())
    payload = grant.to_dict()
    payload["status"] = grant.status().value
    return payload


@app.post("/v1/resolve")
def resolve(request: ResolveRequest):
    """Resolve a requested schema against the user's memory under a grant."""
    try:
        result = get_gateway().resolve(
            request.user_id,
            request.requested_schema,
            agent_id=request.agent_id,
            grant_id=request.grant_id,
            min_confidence=request.min_confidence,
            agent_aliases=request.agent_aliases,
            timeout=request.timeout_seconds,
        )
    except GrantNotFound as exc:
        return _rejected(404, exc.code, request.grant_id)
    except (GrantExpired, GrantRevoked, GrantMismatch) as exc:
        return _rejected(403, exc.code, request.grant_id)
    except NoCandidate as exc:
        # Nothing matched: hand the field list back for human-in-loop prompting.
        return {
            "status": "needs_confirmation",
            "entries": [],
            "rbac": {"allowed": True},
            "metadata": {
                "filtered": [],
                "missing": exc.keys,
                "degraded_stages": [],
                "grant_id": request.grant_id,
                "reason": exc.code,
            },
        }
    except ResolutionCancelled as exc:
        raise HTTPException(status_code=504, detail=exc.to_dict())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return result.to_dict()


@app.post("/v1/revoke")
def revoke(request: RevokeRequest):
    gateway = get_gateway()
    if request.grant_id:
        try:
            revoked = gateway.revoke(request.grant_id)
        except GrantNotFound as exc:
            raise HTTPException(status_code=404, detail=exc.to_dict())
        return {"grant_id": request.grant_id, "revoked": revoked}
    count = gateway.revoke_all(request.agent_id, request.user_id)
    return {"agent_id": request.agent_id, "user_id": request.user_id, "revoked_count": count}


@app.get("/v1/audit")
def list_audit(
    agent_id: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None),
    grant_id: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
):
    gateway = get_gateway()
    gateway.audit.flush(timeout=1.0)
    records = gateway.query_audit(agent_id=agent_id, user_id=user_id, grant_id=grant_id, limit=limit)
    return {"records": records, "count": len(records)}


@app.post("/v1/memories")
def write_memory(request: MemoryWriteRequest) -> Dict[str, Any]:
    """Consented write into the user's memory."""
    try:
        entry = MemoryEntry(
            canonical_type_id=request.canonical_type_id,
            value=request.value,
            owner_user_id=request.user_id,
            sensitivity=Sensitivity.parse(request.sensitivity),
            ttl=request.ttl,
            provenance=request.provenance,
            scope=request.scope,
        )
        stored = get_gateway().memory_store.put(entry, consent=request.consent)
    except ConsentRequired as exc:
        raise HTTPException(status_code=403, detail=exc.to_dict())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "canonical_type_id": stored.canonical_type_id,
        "user_id": stored.owner_user_id,
        "written_seq": stored.written_seq,
    }


def run():
    """Run the memgate API server."""
    import argparse

    parser = argparse.ArgumentParser(description="memgate REST API Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8200, help="Port to listen on")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    args = parser.parse_args()
    serve(args.host, args.port, reload=args.reload)


def serve(host: str, port: int, *, reload: bool = False) -> None:
    import uvicorn

    print(f"Starting memgate API server on http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    uvicorn.run("memgate.api.server:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
