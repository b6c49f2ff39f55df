"""
OfferOps API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from core.config import get_settings
from core.errors import AppError

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("OfferOps API starting up", version=settings.app_version, env=settings.app_env)
    yield
    logger.info("OfferOps API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Promotion of plans and offers across draft, staging and production",
    lifespan=lifespan,
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "api.request_failed",
        path=request.url.path,
        kind=exc.kind.value,
        status_code=exc.status_code,
        remote_system=exc.remote_system,
        error=exc.message,
    )
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import ci_webhook, configs, entities, progress, stores

app.include_router(stores.router)
app.include_router(entities.router)
app.include_router(configs.router)
app.include_router(ci_webhook.router)
app.include_router(progress.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
