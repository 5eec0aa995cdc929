"""
Main FastAPI application for the DocForge backend.
Handles CORS, request logging middleware, lifespan events, error mapping and router registration.
"""
import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import close_db, init_db
from app.dependencies.services import get_assistant
from app.routers import generate, health, jobs, metadata, templates
from app.services.exceptions import DocForgeError, EmptyGeneration
from app.services.job_manager import job_manager
from app.utils.helpers import utcnow

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Startup / shutdown helpers
# ---------------------------------------------------------------------------

async def _check_database() -> bool:
    """Initialise DB tables and verify the connection.  Returns True on success."""
    try:
        await init_db()
        logger.info("✓ Database connection OK")
        return True
    except Exception as exc:
        logger.error("✗ Database connection failed: %s", exc)
        raise


async def _check_assistant() -> bool:
    """Verify the assistant API answers.  Never raises; warnings are logged instead."""
    try:
        reachable = await get_assistant().check_health()
    except Exception as exc:
        logger.error("✗ Assistant unreachable (%s)", exc)
        return False
    if reachable:
        logger.info("✓ Assistant reachable at %s", settings.ASSISTANT_BASE_URL)
    else:
        logger.warning("⚠ Assistant at %s did not accept the API key", settings.ASSISTANT_BASE_URL)
    return reachable


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown event handler."""
    logger.info("=" * 60)
    logger.info("  Starting DocForge backend …")
    logger.info("=" * 60)

    # 1. Database (required; raises on failure)
    await _check_database()

    # 2. Assistant (optional; compile, matching and generation degrade without it)
    if not await _check_assistant():
        logger.warning(
            "Compile and generation requests will fail with 503 until the assistant is up; "
            "matching falls back to rule-based scores."
        )
    if not settings.COMPILER_WORKSPACE_SLUG:
        logger.info("COMPILER_WORKSPACE_SLUG not set; compiles need a template, customer or request workspace")

    # 3. Templates directory
    os.makedirs(settings.TEMPLATES_DIR, exist_ok=True)
    logger.info("✓ Templates directory: %s", os.path.abspath(settings.TEMPLATES_DIR))

    logger.info("=" * 60)
    logger.info("  DocForge backend ready on http://%s:%d", settings.HOST, settings.PORT)
    logger.info("  Swagger UI : http://%s:%d/docs", settings.HOST, settings.PORT)
    logger.info("  Health     : http://%s:%d/api/health", settings.HOST, settings.PORT)
    logger.info("=" * 60)

    yield  # ← server is running

    logger.info("Shutting down DocForge backend …")
    cleared = await job_manager.clear_all()
    if cleared:
        logger.info("Discarded %d job record(s)", cleared)
    await close_db()
    logger.info("✓ Shutdown complete.")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="DocForge API",
    description=(
        "**DocForge** — template compilation and document generation.\n\n"
        "Upload document templates, compile them into generators with an "
        "AI assistant, generate customer documents from live workspace data, "
        "and score customer documents against templates.\n\n"
        "Key endpoints:\n"
        "- `POST /api/templates/{slug}/upload` — upload a template file\n"
        "- `POST /api/templates/{slug}/compile` — compile a template\n"
        "- `POST /api/templates/{slug}/compile/stream` — compile with SSE progress\n"
        "- `POST /api/generate` — generate a document\n"
        "- `POST /api/template-matching/jobs` — start a matching job\n"
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / response logging middleware
# ---------------------------------------------------------------------------

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Log every request with method, path, status code, and elapsed time.
    Attaches an ``X-Process-Time`` header (milliseconds) to every response.
    """
    t0 = time.monotonic()
    response = await call_next(request)
    elapsed_ms = round((time.monotonic() - t0) * 1000, 2)

    # Skip noisy polling from the frontend
    if request.url.path not in ("/api/health/", "/") and not request.url.path.startswith(
        "/api/template-matching/jobs/"
    ):
        logger.info(
            "%s %s → %d  (%.2f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )

    response.headers["X-Process-Time"] = f"{elapsed_ms}ms"
    return response


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(DocForgeError)
async def docforge_exception_handler(request: Request, exc: DocForgeError):
    """Map typed pipeline errors to their HTTP status."""
    logger.warning(
        "%s on %s %s: %s",
        exc.__class__.__name__,
        request.method,
        request.url.path,
        exc.message,
    )
    content = {
        "detail": exc.message,
        "error": exc.__class__.__name__,
        "path": str(request.url.path),
    }
    if isinstance(exc, EmptyGeneration) and exc.raw_text:
        content["raw_text"] = exc.raw_text[:2000]
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a structured JSON error for any unhandled exception."""
    logger.error(
        "Unhandled exception on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "path": str(request.url.path),
            "timestamp": utcnow().isoformat(),
        },
    )


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(health.router,     prefix="/api/health",            tags=["Health"])
app.include_router(jobs.router,       prefix="/api/template-matching", tags=["Template Matching"])
app.include_router(templates.router,  prefix="/api/templates",         tags=["Templates"])
app.include_router(generate.router,   prefix="/api/generate",          tags=["Generate"])
app.include_router(metadata.router,   prefix="/api/metadata",          tags=["Metadata"])


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

@app.get("/", tags=["Root"], include_in_schema=False)
async def root():
    """API root — returns basic service info."""
    return {
        "name": "DocForge API",
        "version": "0.1.0",
        "description": "Template compilation and document generation backend",
        "docs": "/docs",
        "health": "/api/health",
        "endpoints": {
            "templates": "/api/templates",
            "generate": "/api/generate",
            "template_matching": "/api/template-matching/jobs",
            "metadata": "/api/metadata",
        },
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=True,
        log_level="info",
    )
