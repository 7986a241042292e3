import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware

from orchestrator.agent import models as agent_models  # noqa: F401 - import for table creation
from orchestrator.agent.org_router import router as org_router
from orchestrator.agent.router import router as agent_router
from orchestrator.agent.webhook_router import router as webhook_router
from orchestrator.config import get_settings
from orchestrator.database import Base, SessionLocal, engine
from orchestrator.logging_config import configure_logging

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://localhost:8000", "http://127.0.0.1:3000", "http://127.0.0.1:8000"]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"

        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"

        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # API responses carry task data; never cache them
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
        response.headers["Pragma"] = "no-cache"

        return response


settings = get_settings()
configure_logging(settings.log_level)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="Orchestration Decision Engine", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or DEFAULT_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Add security headers to all responses
app.add_middleware(SecurityHeadersMiddleware)

app.include_router(org_router)
app.include_router(agent_router)
app.include_router(webhook_router)


@app.get("/")
def read_root():
    return {"message": "Orchestration Decision Engine", "version": "0.1.0"}


@app.get("/healthz")
def healthz():
    """Health check endpoint that verifies database connectivity."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.error("Health check failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "database": "disconnected", "error": str(e)},
        )
    finally:
        db.close()
