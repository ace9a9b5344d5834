"""FastAPI entrypoint for the tileset packing service."""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from packages.tilepack_core.atlas.errors import (
    DecodeError,
    EngineError,
    IndexConflictError,
    NotFoundError,
    ValidationError,
)

from .routers.tilesets import router as tilesets_router
from .storage.atlases import init_storage as init_atlas_storage
from .storage.object_index import get_object_index_store
from .storage.object_index import init_db as init_index_db

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("tilepack_api")

app = FastAPI(title="Tilepack API", version="0.1.0")

_cors_origins = [o.strip() for o in os.environ.get("TILEPACK_CORS_ORIGINS", "*").split(",")]
_cors_allow_credentials = "*" not in _cors_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=_cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(tilesets_router)


def _status_for(exc: EngineError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, IndexConflictError):
        return 409
    if isinstance(exc, DecodeError):
        return 422
    return 500


@app.exception_handler(EngineError)
async def _engine_error_handler(request: Request, exc: EngineError):
    status = _status_for(exc)
    log = logger.error if status >= 500 else logger.warning
    log("[API] %s %s failed: %s (%s)", request.method, request.url.path, exc, exc.error_code)
    headers = {"Retry-After": "1"} if isinstance(exc, IndexConflictError) else None
    return JSONResponse(
        status_code=status,
        content={"ok": False, "detail": str(exc), "error_code": exc.error_code, "atlas": exc.atlas_name},
        headers=headers,
    )


@app.on_event("startup")
def startup() -> None:
    logger.info("[STARTUP] Tilepack API starting up at %s", datetime.now(timezone.utc).isoformat())
    try:
        logger.info("[STARTUP] Initializing object index...")
        init_index_db()
        logger.info("[STARTUP] Object index initialized successfully")
    except Exception as e:
        logger.error("[STARTUP] Failed to initialize object index: %s", e)
        raise

    try:
        logger.info("[STARTUP] Preparing tileset directory...")
        init_atlas_storage()
    except Exception as e:
        logger.error("[STARTUP] Failed to prepare tileset directory: %s", e)
        raise

    logger.info("[STARTUP] Tilepack API startup complete")


@app.get("/healthz")
def healthz():
    logger.debug("[HEALTH] Health check requested")
    try:
        get_object_index_store().revision()
    except Exception as exc:
        logger.warning("[HEALTH] Object index check failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "error", "detail": str(exc)})
    return {"status": "ok"}
