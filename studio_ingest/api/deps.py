# studio_ingest/api/deps.py
# Request-scoped dependencies shared by the routers.

from __future__ import annotations

from fastapi import Header, HTTPException, Request

from studio_ingest.services.pipeline import IngestService


def get_service(request: Request) -> IngestService:
    return request.app.state.ingest


def current_user(x_user_id: str = Header(default="")) -> int:
    """The host application authenticates and forwards the actor id."""
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="missing or invalid X-User-Id header")
    if user_id <= 0:
        raise HTTPException(status_code=401, detail="missing or invalid X-User-Id header")
    return user_id
