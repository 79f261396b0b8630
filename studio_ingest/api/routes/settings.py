# studio_ingest/api/routes/settings.py
# Operator overrides stored in ingest_settings (dotted keys over compiled defaults).

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from studio_ingest.api.deps import current_user, get_service
from studio_ingest.schemas.ingest import SettingsIn, SettingsOut
from studio_ingest.services.pipeline import IngestService

# Router mounted under /api in main.py (→ /api/ingest/settings)
api_router = APIRouter(prefix="/ingest/settings", tags=["settings"], dependencies=[Depends(current_user)])


@api_router.get("", response_model=SettingsOut)
def api_get_settings(svc: IngestService = Depends(get_service)):
    """Effective config for the next invocation, plus the raw overrides."""
    return svc.settings_view()


@api_router.put("", response_model=SettingsOut)
def api_put_settings(body: SettingsIn, svc: IngestService = Depends(get_service)):
    """Bulk upsert. A null value drops the override (back to the default)."""
    return svc.update_settings(body.values)


@api_router.delete("/{key}")
def api_delete_setting(key: str, svc: IngestService = Depends(get_service)):
    if not svc.delete_setting(key):
        raise HTTPException(status_code=404, detail=f"no override for '{key}'")
    return {"deleted": key}


@api_router.post("/reset")
def api_reset_settings(svc: IngestService = Depends(get_service)):
    return {"removed": svc.reset_settings()}
