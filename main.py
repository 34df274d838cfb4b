"""Run one reconciliation sweep and exit.

For deployments where an external scheduler (cron, a job runner) invokes
the sweep on its fixed interval instead of the long-running API process.
Exits non-zero when any item failed, so the scheduler can alert.
"""
import asyncio
import json
import logging
import sys

from config import SettingsError, get_settings
from database import init_db
from notifications import StoreNotificationEmitter
from workers.reconciliation import ReconciliationSweep

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

async def main() -> int:
    """Initialize the store, run the sweep once and report its counts."""
    try:
        settings = get_settings()
    except SettingsError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    store = await init_db(settings['db_url'])
    try:
        sweep = ReconciliationSweep(store, StoreNotificationEmitter(store), settings)
        result = await sweep.run_once()
        print(json.dumps(result.to_dict(), indent=2))
        return 1 if result.total('errors') else 0
    finally:
        logger.info("Closing database connections...")
        await store.close()

if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
