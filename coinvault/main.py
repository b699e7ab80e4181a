"""CoinVault API — FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from coinvault.api.v1.billing import router as billing_router
from coinvault.api.v1.subscriptions import router as subscriptions_router
from coinvault.api.v1.webhooks import router as webhooks_router
from coinvault.config import settings
from coinvault.exceptions import CoinVaultError, IntegrationError

# Configure root logger so all coinvault.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    # Startup
    yield
    # Shutdown: dispose engine connections
    from coinvault.database import engine

    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Coin catalog backend: subscriptions and billing synchronized with Stripe.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CoinVaultError)
async def coinvault_error_handler(request: Request, exc: CoinVaultError) -> JSONResponse:
    """Render domain errors as ``{"detail", "kind"}`` with the error's status code."""
    if exc.status_code >= 500:
        logger.error("%s %s failed (%s): %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "kind": exc.kind},
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Datastore failures surface as integration errors."""
    logger.exception("Database error on %s %s", request.method, request.url.path)
    error = IntegrationError("Database operation failed")
    return JSONResponse(
        status_code=error.status_code,
        content={"detail": error.message, "kind": error.kind},
    )


# Routers
app.include_router(subscriptions_router)
app.include_router(billing_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }


def run() -> None:
    """Serve the API with uvicorn using the configured host and port."""
    uvicorn.run("coinvault.main:app", host=settings.host, port=settings.port, reload=settings.debug)


if __name__ == "__main__":
    run()
