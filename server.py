"""
Sandbox Recovery Server

FastAPI server exposing sandbox health checks and recovery to the web app.

Features:
- Read-only health and template resolution endpoints
- Recover-on-access and explicit recovery endpoints
- Internal API key authentication
- Sentry error reporting
"""

import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from config import settings
from services.cache import close_cache
from services.database import close_database
from services.exceptions import (
    SANDBOX_UNAVAILABLE_MESSAGE,
    ProjectNotFoundError,
    RecoveryVerificationError,
    SandboxRecoveryError,
    SandboxUnavailableError,
)
from services.sandbox_recovery import RecoveryOrchestrator, get_recovery_controller

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

PORT = int(os.getenv("PORT", "8000"))
HOST = os.getenv("HOST", "0.0.0.0")

# =============================================================================
# Sentry Initialization
# =============================================================================

if settings.sentry_dsn:
    sentry_environment = settings.sentry_environment or settings.node_env
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=sentry_environment,
        traces_sample_rate=1.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(transaction_style="endpoint"),
            HttpxIntegration(),
            LoggingIntegration(
                level=logging.INFO,  # Capture INFO+ as breadcrumbs
                event_level=logging.ERROR,  # Create events for ERROR+
            ),
        ],
        # Filter out health check noise from traces
        traces_sampler=lambda ctx: 0.0 if ctx.get("name") in ["/health"] else 1.0,
        release=f"sandbox-recovery@{os.getenv('VERSION', '1.0.0')}",
    )
    logger.info(f"Sentry initialized for sandbox recovery server (environment: {sentry_environment})")
else:
    logger.warning("SENTRY_DSN not set, Sentry monitoring disabled")


# =============================================================================
# Authentication
# =============================================================================

security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """Verify API key from Authorization header."""
    # Skip auth in development mode if no API key is configured
    if not settings.internal_api_key:
        return True

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Compare using constant-time comparison to prevent timing attacks
    if not secrets.compare_digest(credentials.credentials, settings.internal_api_key):
        raise HTTPException(
            status_code=401,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


async def get_controller() -> RecoveryOrchestrator:
    return await get_recovery_controller()


# =============================================================================
# Request Models
# =============================================================================

class RecoverRequest(BaseModel):
    """Request body for explicit recovery."""
    fragment_id: Optional[str] = None
    template_name: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


# =============================================================================
# App
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close pooled connections on shutdown."""
    logger.info(
        f"Sandbox recovery server ready (env={settings.deploy_environment()}, "
        f"provider={settings.default_sandbox_provider})"
    )
    yield
    await close_cache()
    await close_database()


app = FastAPI(
    title="Sandbox Recovery API",
    description="Health checks and recovery for project sandboxes",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Liveness check."""
    return {"status": "ok"}


@app.get("/api/sandbox/{project_id}/status", dependencies=[Depends(verify_api_key)])
async def get_sandbox_status(
    project_id: str,
    controller: RecoveryOrchestrator = Depends(get_controller),
):
    """Read-only health of a project's sandbox. Never triggers recovery."""
    status = await controller.check_health(project_id)
    return status.to_dict()


@app.get("/api/sandbox/{project_id}/template", dependencies=[Depends(verify_api_key)])
async def get_sandbox_template(
    project_id: str,
    fragment_id: Optional[str] = None,
    controller: RecoveryOrchestrator = Depends(get_controller),
):
    """Template a project resolves to."""
    resolution = await controller.resolve_template(project_id, fragment_id=fragment_id)
    return resolution.to_dict()


@app.get("/api/sandbox/{project_id}", dependencies=[Depends(verify_api_key)])
async def get_sandbox(
    project_id: str,
    controller: RecoveryOrchestrator = Depends(get_controller),
):
    """Current sandbox of a project, recovering it first if it is broken."""
    result = await controller.ensure_recovered(project_id)
    return {"sandbox_id": result.sandbox_id, "recovered": result.recovered}


@app.post("/api/sandbox/{project_id}/recover", dependencies=[Depends(verify_api_key)])
async def recover_sandbox(
    project_id: str,
    body: RecoverRequest,
    controller: RecoveryOrchestrator = Depends(get_controller),
):
    """Recover a project's sandbox, optionally to a specific fragment or template."""
    result = await controller.ensure_recovered(
        project_id,
        fragment_id=body.fragment_id,
        template_name=body.template_name,
        timeout=body.timeout_seconds,
    )
    return result.to_dict()


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(ProjectNotFoundError)
async def project_not_found_handler(request: Request, exc: ProjectNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(SandboxUnavailableError)
async def sandbox_unavailable_handler(request: Request, exc: SandboxUnavailableError):
    return JSONResponse(
        status_code=503,
        content={"detail": SANDBOX_UNAVAILABLE_MESSAGE, "reason": exc.reason},
        headers={"Retry-After": "5"},
    )


@app.exception_handler(RecoveryVerificationError)
async def verification_failed_handler(request: Request, exc: RecoveryVerificationError):
    logger.error(
        f"Recovery verification failed for {exc.project_id} "
        f"(sandbox={exc.sandbox_id}, missing={exc.missing_files})"
    )
    return JSONResponse(
        status_code=503,
        content={
            "detail": SANDBOX_UNAVAILABLE_MESSAGE,
            "reason": exc.reason,
            "missing_files": exc.missing_files,
        },
        headers={"Retry-After": "5"},
    )


@app.exception_handler(SandboxRecoveryError)
async def recovery_failed_handler(request: Request, exc: SandboxRecoveryError):
    logger.error(f"Sandbox recovery failed on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions."""
    logger.exception(f"Unhandled exception on {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    logger.info(f"Starting sandbox recovery server on {HOST}:{PORT}")
    uvicorn.run(
        "server:app",
        host=HOST,
        port=PORT,
        log_level="info",
    )
