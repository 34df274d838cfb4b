"""FastAPI application factory."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import get_settings
from database import init_db
from .admin import router as admin_router
from .orders import router as orders_router
from .orders.fulfillment import router as fulfillment_router
from .payments import router as payments_router
from .services import Services, build_services
from .system import router as system_router

logger = logging.getLogger(__name__)

def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API.

    Args:
        services: Pre-built services. When omitted, the database is
            initialized from settings.conf on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown events."""
        logger.info("Initializing API...")
        owns_store = False
        if app.state.services is None:
            settings = get_settings()
            store = await init_db(settings['db_url'])
            app.state.services = build_services(store, settings)
            owns_store = True

        yield

        logger.info("Shutting down API...")
        if owns_store:
            await app.state.services.store.close()

    app = FastAPI(
        title="Marketplace Order API",
        description="Payment events, fulfillment and dispute handling for marketplace orders",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.services = services

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include all routers
    app.include_router(payments_router)
    app.include_router(orders_router)
    app.include_router(fulfillment_router)
    app.include_router(admin_router)
    app.include_router(system_router)

    @app.get("/")
    async def root():
        return {
            "name": "Marketplace Order API",
            "version": "1.0.0",
            "status": "running"
        }

    return app
