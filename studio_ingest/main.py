# studio_ingest/main.py — only app wiring, no endpoints here.
# Run: uvicorn studio_ingest.main:create_app --factory
from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from studio_ingest.api.routes import ingest, settings
from studio_ingest.core.config import IngestConfig, load_defaults, resolve_config
from studio_ingest.core.errors import IngestError, http_status_for
from studio_ingest.core.logging import get_logger, setup_logging
from studio_ingest.services.exiftool import ExifTool
from studio_ingest.services.promotion import AssociationRegistry
from studio_ingest.services.pipeline import IngestService
from studio_ingest.services.queue import TaskQueue
from studio_ingest.services.tracing import AttemptObserver

log = get_logger("api")


def create_app(config_path: Optional[Path] = None, *, defaults: Optional[dict] = None,
               queue: Optional[TaskQueue] = None, observer: Optional[AttemptObserver] = None,
               associations: Optional[AssociationRegistry] = None,
               exiftool_factory: Optional[Callable[[IngestConfig], ExifTool]] = None,
               configure_logging: bool = True) -> FastAPI:
    defaults = defaults if defaults is not None else load_defaults(config_path)
    base = resolve_config(defaults)
    if configure_logging:
        setup_logging(str(base.get("logging.level", "INFO")), base.logs_dir,
                      json_logs=bool(base.get("logging.json", False)))

    service = IngestService(defaults, queue=queue, observer=observer,
                            associations=associations, exiftool_factory=exiftool_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("ingest api up (db=%s)", service.db_path)
        yield
        service.queue.shutdown(wait=False)

    app = FastAPI(title="Studio Ingest API", version="0.1", lifespan=lifespan)
    app.state.ingest = service

    # CORS (allow Vite dev)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(IngestError)
    async def ingest_error_handler(request: Request, exc: IngestError):
        status = http_status_for(exc)
        if status >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content={"error": exc.code, "detail": exc.message})

    # API routers
    app.include_router(ingest.api_router, prefix="/api")
    app.include_router(settings.api_router, prefix="/api")

    # public (non-API) router for staged thumbnails/previews
    app.include_router(ingest.public_router)   # /ingest-files/*
    return app
