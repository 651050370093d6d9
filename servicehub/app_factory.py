"""
FastAPI application factory.

Creates the application with CORS, the appointments router and a health probe.
"""
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from servicehub import config
from servicehub.api.appointments_api import router as appointments_router
from servicehub.startup import lifespan

logger = logging.getLogger(__name__)


def configure_cors(app: FastAPI):
    """Configure CORS middleware for the frontend."""
    origins = [config.FRONTEND_URL]
    extra = os.getenv("CORS_ORIGINS", "")
    origins.extend(o.strip() for o in extra.split(",") if o.strip())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
    )


def create_app(with_lifespan: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        with_lifespan: Attach the startup/shutdown manager. Tests pass False
            and populate app.state themselves.

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title="Service Appointments Backend",
        description="""
Appointment booking across real estate, insurance, visa and tax services.

## Authentication
Endpoints require Bearer token authentication.
""",
        version="1.0.0",
        lifespan=lifespan if with_lifespan else None,
        docs_url="/docs",
        openapi_url="/openapi.json",
    )

    configure_cors(app)
    app.include_router(appointments_router)

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "healthy"}

    return app
