"""FastAPI application setup for the study pipeline."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from study_pipeline.api.dependencies import (
    close_clients,
    get_app_settings,
    get_database,
    get_ingest_pipeline,
    get_rate_limiter,
)
from study_pipeline.api.errors import add_error_handlers
from study_pipeline.api.routes_admin import router as admin_router
from study_pipeline.api.routes_generate import router as generate_router
from study_pipeline.api.routes_uploads import router as uploads_router
from study_pipeline.core.logging import configure_logging

configure_logging()

app = FastAPI(
    title="Study Pipeline",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:5173",
        "http://localhost:5173",
        "capacitor://localhost",
    ],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

add_error_handlers(app)

app.include_router(uploads_router, prefix="/uploads", tags=["uploads"])
app.include_router(generate_router, prefix="/generate", tags=["generate"])
app.include_router(admin_router, prefix="", tags=["admin"])


@app.on_event("startup")
async def startup() -> None:
    """Warm up core singletons on startup."""
    get_app_settings()
    get_database()
    get_ingest_pipeline()
    get_rate_limiter()


@app.on_event("shutdown")
async def shutdown() -> None:
    await close_clients()


@app.get("/health", tags=["admin"])
def health() -> dict[str, bool]:
    """Simple liveness check."""
    return {"ok": True}
