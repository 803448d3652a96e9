# app/main.py
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from app.core.config import settings
from app.core.context import GatewayContext, build_gateway_context
from app.api.endpoints import mint
from app.api.models.mint import HealthResponse
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(context: Optional[GatewayContext] = None) -> FastAPI:
    """
    Build the FastAPI application.

    The gateway context is built from settings during startup unless one is
    passed in (tests pass a context wired with fakes).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "gateway_context", None) is None:
            app.state.gateway_context = build_gateway_context(settings)
        yield

    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json", # Standard location for OpenAPI spec
        lifespan=lifespan,
    )
    app.state.gateway_context = context

    # The prefix ensures all routes start with /api/v1
    app.include_router(mint.router, prefix=f"{settings.API_V1_STR}/mint", tags=["mint"])

    @app.get("/", response_model=HealthResponse, summary="Health Check", tags=["default"])
    def read_root():
        """ Basic health check endpoint. """
        logger.info("Root endpoint '/' accessed.")
        gateway_context = app.state.gateway_context
        if gateway_context is None:
            return HealthResponse(
                status="starting",
                message=f"Welcome to {settings.PROJECT_NAME}",
                networks=list(settings.X402_NETWORKS),
            )
        return HealthResponse(
            status="ok",
            message=f"Welcome to {settings.PROJECT_NAME}",
            minterAddress=gateway_context.actuator.address,
            networks=list(gateway_context.settings.X402_NETWORKS),
        )

    return app


app = create_app()

# TODO: Add CORS middleware once a browser frontend calls the mint endpoint directly
