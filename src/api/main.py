from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.middleware.request_context import RequestContextMiddleware
from src.api.routes import api_router
from src.config import get_settings
from src.db.connection import check_db_health
from src.handlers.errors import TransientStoreError
from src.ops.events import configure_ops_event_logging

logger = logging.getLogger(__name__)

settings = get_settings()
configure_ops_event_logging(max_size=settings.ops_event_buffer_size)

app = FastAPI(title="Board Voting Notifications", version="0.1.0")
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origin_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router)


@app.exception_handler(TransientStoreError)
async def transient_store_error(request: Request, exc: TransientStoreError) -> JSONResponse:
    logger.warning(
        "Store unavailable during %s %s: %s",
        request.method,
        request.url.path,
        exc,
        extra={"event_type": "api.store.unavailable"},
    )
    return JSONResponse(status_code=503, content={"detail": "voting store unavailable"})


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/db")
async def health_db() -> dict[str, str]:
    if await check_db_health():
        return {"status": "ok"}
    raise HTTPException(status_code=503, detail="database unavailable")
