"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from clipforge import __version__
from clipforge.config import Settings, settings
from clipforge.api.routes import router
from clipforge.services.container import ServiceContainer, build_services

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(
    app_settings: Optional[Settings] = None,
    services: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        app_settings: Settings to use, defaults to the environment
        services: Prebuilt services (tests pass fakes for external adapters)
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        logger.info(f"Starting {app_settings.app_name}...")
        app_settings.ensure_directories()

        container = services or build_services(app_settings)
        app.state.services = container
        await container.start()
        logger.info("Database initialized, workers started")

        yield

        # Shutdown
        logger.info(f"Shutting down {app_settings.app_name}...")
        await container.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title=app_settings.app_name,
        description="Platform-optimized short clip generation with plan quotas",
        version=__version__,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routes
    app.include_router(router, prefix="/api")

    # Serve stored clips when the public URL points back at this service
    app.mount(
        "/media",
        StaticFiles(directory=str(app_settings.storage_dir), check_dir=False),
        name="media",
    )

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "app": app_settings.app_name,
            "version": __version__,
            "api": "/api",
            "docs": "/docs"
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clipforge.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
