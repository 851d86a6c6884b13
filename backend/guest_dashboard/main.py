"""
Guest dashboard application entry point
"""
from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from guest_dashboard import __version__
from guest_dashboard.config import Settings, configure_logging
from guest_dashboard.routers import dashboard
from guest_dashboard.runtime import GuestDashboardRuntime

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[GuestDashboardRuntime] = None,
               settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI app.

    With no runtime given, one is built from settings on startup and
    closed on shutdown; an injected runtime stays owned by the caller.
    """
    settings = settings or (runtime.settings if runtime else Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.LOG_LEVEL)
        owned = runtime is None
        app.state.runtime = runtime or GuestDashboardRuntime(settings)
        app.state.runtime.start()
        logger.info(f"{settings.APP_NAME} {__version__} ready")

        yield

        if owned:
            app.state.runtime.close()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Location-aware guest dashboard: geofencing, reservations, inventory and state",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(dashboard.router)

    @app.get("/")
    def root():
        return {"name": settings.APP_NAME, "version": __version__}

    @app.get("/health")
    def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
