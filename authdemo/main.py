"""
FastAPI Authentication Demo Application Factory
================================================

Entry point of the demo: pages protected by a collection of identity-provider
clients (OAuth, CAS, SAML 2, OpenID Connect, form, basic auth, JWT).

Routes:
    - /                        : index with links to every protected area
    - /<area>/index.html       : protected pages (see authdemo.routes)
    - /loginForm               : login form of the FormClient
    - /jwt.html                : JWT generated from the current profile
    - /callback                : shared callback URL of the indirect clients
    - /logout                  : application logout
    - /saml2/metadata          : SAML service provider metadata
    - /health                  : health check

Environment Variables (see authdemo/config.py):
    - BASE_URL: Public base URL (e.g., "http://localhost:8080")
    - FB_ID / FB_SECRET, TWITTER_KEY / TWITTER_SECRET: OAuth applications
    - CAS_URL: CAS login URL
    - OIDC_CLIENT_ID / OIDC_SECRET / OIDC_DISCOVERY_URI: OpenID Connect
    - JWT_SALT: Secret of the generated JWTs
    - SESSION_SECRET: Session cookie signing secret
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn authdemo.main:app --reload --host 0.0.0.0 --port 8080

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn authdemo.main:app --reload
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
import uvicorn

from authdemo.auth.exceptions import (
    ClientNotFoundError,
    CredentialsError,
    HttpAction,
    ProtocolError,
    SecurityError,
)
from authdemo.auth.saml import SAML2Client
from authdemo.config import Settings, get_settings, validate_configuration
from authdemo.factory import build_config
from authdemo.models import ErrorResponse, HealthResponse
from authdemo.routes import create_demo_router

SERVICE_NAME = "authdemo"
SERVICE_VERSION = "1.0.0"

logger = logging.getLogger("authdemo.main")


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
        - Report configuration problems
        - Write the SAML service provider metadata

    Shutdown tasks:
        - Log shutdown information
    """
    settings: Settings = app.state.settings

    status = validate_configuration(settings)
    for warning in status["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    for error in status["errors"]:
        logger.error(f"Configuration error: {error}")

    for client in app.state.security_config.clients:
        if isinstance(client, SAML2Client):
            try:
                client.write_service_provider_metadata()
            except OSError as e:
                logger.warning(f"Unable to write SAML SP metadata: {e}")

    logger.info(
        "Authentication demo started",
        extra={
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "base_url": settings.BASE_URL,
        }
    )

    yield

    logger.info("Authentication demo shutdown complete")


ERROR_STATUS = {
    ClientNotFoundError: 400,
    CredentialsError: 401,
    ProtocolError: 502,
}


def _error_status(exc: SecurityError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


# Create FastAPI application
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Security configuration (clients and authorizers)
        - Session middleware
        - Demo routes
        - Exception handlers

    Args:
        settings: Settings to use, defaults to get_settings()

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    config = build_config(settings)

    app = FastAPI(
        title="Authentication Demo",
        description="Pages protected by OAuth, CAS, SAML 2, OpenID Connect, form, basic auth and JWT clients",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.security_config = config
    app.state.templates = Jinja2Templates(directory=settings.TEMPLATES_DIR)

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET,
        session_cookie=settings.SESSION_COOKIE,
        max_age=settings.SESSION_MAX_AGE,
        https_only=settings.BASE_URL.startswith("https://"),
    )

    app.include_router(create_demo_router(config, settings))

    # Health check endpoint
    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """
        Health check endpoint.

        Returns service status and the configured clients.
        """
        return HealthResponse(status="ok", service=SERVICE_NAME, clients=config.clients.names)

    @app.exception_handler(HttpAction)
    async def http_action_handler(request: Request, exc: HttpAction) -> Response:
        return Response(
            content=exc.content,
            status_code=exc.status_code,
            headers=exc.headers,
            media_type="text/plain",
        )

    @app.exception_handler(SecurityError)
    async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
        status_code = _error_status(exc)
        logger.warning(
            f"Security error: {exc}",
            extra={
                "path": request.url.path,
                "exception_type": type(exc).__name__,
            }
        )
        body = ErrorResponse(error=type(exc).__name__, message=str(exc))
        return JSONResponse(status_code=status_code, content=body.model_dump())

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

        body = ErrorResponse(
            error="internal_server_error",
            message="An unexpected error occurred",
            detail=str(exc) if settings.LOG_LEVEL == "DEBUG" else None,
        )
        return JSONResponse(status_code=500, content=body.model_dump())

    return app


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "authdemo.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=False,
    )
