from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request

from contactscout.context import AppContext
from contactscout.services.orchestrator import SearchOrchestrationService


def get_context(request: Request) -> AppContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Service is not ready")
    return context


def get_orchestrator(context: AppContext = Depends(get_context)) -> SearchOrchestrationService:
    return context.orchestrator


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity is supplied by the transport as an opaque id."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()
