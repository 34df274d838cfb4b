"""Command line interface for running the API server and reconciliation sweep."""
import asyncio
import logging
import signal

import uvicorn

from config import get_settings
from database import init_db
from .main import create_app
from .services import Services, build_services

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global instances
services = None
server = None
should_exit = False

def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global should_exit
    logger.info("Shutdown signal received. Cleaning up...")
    should_exit = True

async def startup() -> Services:
    """Initialize database and services."""
    logger.info("Loading settings...")
    settings = get_settings()

    logger.info("Initializing database...")
    store = await init_db(settings['db_url'])

    logger.info("Creating services...")
    return build_services(store, settings)

class UvicornServer:
    """Wrapper for running uvicorn with proper lifecycle management."""

    def __init__(self, app, host: str = "0.0.0.0", port: int = 8000):
        self.config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info"
        )
        self.server = uvicorn.Server(self.config)

    async def run(self):
        """Run the server in a way that can be stopped."""
        await self.server.serve()

    async def stop(self):
        """Stop the server."""
        self.server.should_exit = True

async def run_api(app):
    """Run the API server."""
    global server
    server = UvicornServer(app)
    await server.run()

async def run_sweep(sweep):
    """Run the reconciliation sweep."""
    try:
        logger.info("Starting reconciliation sweep task")
        await sweep.run_forever()
    except Exception as e:
        logger.error(f"Reconciliation sweep error: {e}")
        raise

async def main():
    """Run the API server and the reconciliation sweep."""
    global services, server, should_exit

    try:
        # Register signal handlers in main thread
        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)

        # Initialize services
        services = await startup()
        app = create_app(services)

        # Create tasks for all services
        tasks = [
            asyncio.create_task(run_api(app), name="api"),
            asyncio.create_task(run_sweep(services.sweep), name="sweep")
        ]

        logger.info("All services started")

        # Wait for shutdown signal
        while not should_exit:
            await asyncio.sleep(1)

            # Check if any tasks failed
            for task in tasks:
                if task.done() and not task.cancelled():
                    exc = task.exception()
                    if exc:
                        logger.error(f"Task {task.get_name()} failed with error: {exc}")
                        should_exit = True
                        break

        # Cleanup started
        logger.info("Starting cleanup...")

    except Exception as e:
        logger.error(f"Fatal error: {e}")
    finally:
        if services:
            logger.info("Stopping reconciliation sweep...")
            services.sweep.stop()

        if server:
            logger.info("Stopping API server...")
            await server.stop()

        # Cancel all tasks
        for task in asyncio.all_tasks():
            if task is not asyncio.current_task() and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if services:
            logger.info("Closing database connections...")
            await services.store.close()

        logger.info("Cleanup complete.")

if __name__ == "__main__":
    asyncio.run(main())
