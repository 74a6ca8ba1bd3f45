"""FastAPI application entry point for the short-link service.

Application Lifecycle Diagram
=============================
::
    ┌─────────────┐
    │  uvicorn    │
    │  startup    │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ lifespan()  │
    │ init_db()   │
    │ seed_plans()│
    │ services    │
    │ plan catalog│
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Serve HTTP  │
    │ requests    │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ lifespan()  │
    │ shutdown:   │
    │ cache, db   │
    └─────────────┘

How to Use
===========
**Step 1 — Run with uvicorn**::
    uvicorn app.main:app --host 0.0.0.0 --port 8000 --reload

**Step 2 — Create a link**::
    curl -X POST http://localhost:8000/links \
         -H "Content-Type: application/json" \
         -H "X-User-ID: <user id>" \
         -d '{"originalUrl": "https://example.com/a/b"}'

**Step 3 — Follow it**::
    curl -i http://localhost:8000/<shortCode>

Key Behaviours
===============
- Tables are created and plan reference data seeded on startup.
- ``ShortLinkError`` subclasses render as ``{"error", "detail", ...}`` with
  their own status code.
- Prometheus metrics are exposed at ``/metrics``.
"""

__all__ = ["app"]

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.config import get_settings
from app.database import async_session, close_db, init_db
from app.dependencies import _service_manager
from app.errors import ShortLinkError
from app.plans import seed_plans
from app.routes import router

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    async with async_session() as session:
        await seed_plans(session)
    await _service_manager.initialize()
    await _service_manager.plans.refresh()
    yield
    # Shutdown
    await _service_manager.cleanup()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Short links with per-plan quotas and click analytics",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ShortLinkError)
async def short_link_error_handler(request: Request, exc: ShortLinkError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_respect_env_var=False,
).instrument(app).expose(app)

app.include_router(router)
