from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import logging

from .api.v1.endpoints import critical_results, qc, roster
from .config import AlertingSettings, get_settings
from .services import AlertingServices, build_services

logger = logging.getLogger(__name__)

DESCRIPTION = "Westgard QC evaluation and critical-result escalation for clinical laboratories"


def create_app(settings: Optional[AlertingSettings] = None,
               services: Optional[AlertingServices] = None) -> FastAPI:
    settings = settings or (services.settings if services else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Configure logging
        logging.basicConfig(level=getattr(logging, settings.log_level))
        logger.info(f"Starting up {settings.application_name} ({settings.environment})...")

        active = services
        if active is None:
            from .database import init_db
            init_db(settings.database_url)
            active = build_services(settings)
        app.state.services = active

        if settings.sweeper_enabled:
            active.ticker.start()
        yield
        await active.ticker.stop()
        logger.info(f"Shutting down {settings.application_name}...")

    app = FastAPI(
        title=settings.application_name,
        description=DESCRIPTION,
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(qc.router, prefix="/api/v1")
    app.include_router(critical_results.router, prefix="/api/v1")
    app.include_router(roster.router, prefix="/api/v1")

    @app.get("/")
    async def root():
        return {
            "project": settings.application_name,
            "status": "operational",
            "description": DESCRIPTION
        }

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/api/v1/status")
    async def api_status():
        ticker = app.state.services.ticker
        return {
            "api_version": "v1",
            "status": "operational",
            "endpoints_available": True,
            "sweeper_running": ticker.running,
            "sweep_cycles": ticker.cycles
        }

    return app


app = create_app()
