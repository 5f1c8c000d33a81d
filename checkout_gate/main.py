"""
FastAPI Application Factory
===========================

Entry point for the checkout age gate service that sits between the
storefront checkout scripts and the bank identity providers / commerce APIs.

Architecture:
    Storefront → Checkout Age Gate (this service) → Identity provider (PAR / tokens)
                                                 → BigCommerce (catalog, carts)

Routers:
    - /select-bank, /retrieve-tokens, /verification-status, /reset : Verification flow
    - /token-expiry                                                 : Session token check
    - /participants, /logs                                          : Directory and diagnostics
    - /validate-cart, /restricted-items                             : Cart gate
    - /health                                                       : Health check

Running the Service:
    Development:
        uvicorn checkout_gate.main:create_app --factory --reload --port 3001

    Production:
        python -m checkout_gate.main
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .auth import auth_router
from .cart import cart_router
from .config import Settings, get_settings
from .errors import CheckoutGateError
from .services import ServiceContainer, build_services

logger = logging.getLogger("checkout_gate.main")


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging
        - Build the service container (unless one was injected)
        - Start the verification session sweeper
        - Warm the restricted SKU cache

    Shutdown tasks:
        - Stop the sweeper and drop verification records
        - Close upstream HTTP clients
    """
    settings: Settings = app.state.settings
    setup_logging(settings.LOG_LEVEL)

    services: Optional[ServiceContainer] = getattr(app.state, "services", None)
    if services is None:
        services = build_services(settings)
        app.state.services = services

    logger.info(
        "Starting checkout age gate",
        extra={
            "store_hash": settings.STORE_HASH,
            "category_id": settings.CATEGORY_ID,
            "log_level": settings.LOG_LEVEL,
        }
    )

    await services.init()

    if settings.CATALOG_WARM_ON_STARTUP:
        try:
            skus = await services.catalog.refresh()
            logger.info("Restricted SKU cache warmed", extra={"count": len(skus)})
        except CheckoutGateError as e:
            # the first cart check retries the load
            logger.error(f"Failed to warm restricted SKU cache: {e.message}")

    logger.info("Checkout age gate started", extra={"version": __version__})

    yield

    logger.info("Shutting down checkout age gate")
    await services.teardown()
    logger.info("Checkout age gate shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use (loaded from the environment when omitted)
        services: Pre-built service container (built in the lifespan when omitted)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or (services.settings if services else get_settings())

    app = FastAPI(
        title="Checkout Age Gate",
        description="Bank-backed age verification for restricted products at checkout",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.settings = settings
    if services is not None:
        app.state.services = services

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)
    app.include_router(cart_router)

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {
            "status": "ok",
            "service": "checkout-age-gate",
            "version": __version__
        }

    # Root endpoint
    @app.get("/", tags=["System"])
    async def root() -> Dict[str, Any]:
        """
        Root endpoint with service information.

        Returns:
            dict: Service metadata and available endpoints
        """
        return {
            "service": "checkout-age-gate",
            "version": __version__,
            "endpoints": {
                "health": "/health",
                "docs": "/docs",
                "select_bank": "/select-bank",
                "retrieve_tokens": "/retrieve-tokens",
                "validate_cart": "/validate-cart",
                "restricted_items": "/restricted-items",
            }
        }

    @app.exception_handler(CheckoutGateError)
    async def checkout_gate_exception_handler(request: Request, exc: CheckoutGateError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"{type(exc).__name__}: {exc.message}",
            extra={"path": request.url.path, "method": request.method, "error": exc.error}
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "error": "validation_error",
                "message": "Invalid request",
                "details": {"errors": jsonable_errors(exc)}
            }
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            content = {"error": "not_found", "message": f"No route for {request.method} {request.url.path}"}
        else:
            content = {"error": "http_error", "message": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL == "DEBUG" else None
            }
        )

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    """Field errors without the raw input, which may carry secrets."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "checkout_gate.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
