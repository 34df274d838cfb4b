"""Database module for connecting to PostgreSQL / CockroachDB.

This module handles:
- Connection pool creation with retry on startup
- Schema management
- The ``Store`` abstraction every component receives at construction
"""

import logging
import ssl
from typing import Optional, Dict, Any
from urllib.parse import urlparse, parse_qs

import asyncpg
import backoff

from .exceptions import (
    DatabaseError,
    DatabaseSchemaError,
    DocumentExistsError,
    DocumentNotFoundError,
    StoreUnavailableError,
)
from .lib.schema_manager import SchemaManager
from .memory import MemoryStore
from .postgres import PostgresStore
from .store import Store, Transaction, from_timestamp, to_timestamp, utcnow

logger = logging.getLogger(__name__)

def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for hosted database connections."""
    ssl_context = ssl.create_default_context()
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    return ssl_context

def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    params = parse_qs(urlparse(db_url).query)
    sslmode = params.get('sslmode', ['disable'])[0]

    kwargs: Dict[str, Any] = {
        'server_settings': {
            'statement_timeout': '60000',  # 1 minute
        }
    }
    if sslmode in ('require', 'verify-ca', 'verify-full'):
        kwargs['ssl'] = _get_ssl_context()

    return kwargs

@backoff.on_exception(
    backoff.expo,
    (OSError, asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError),
    max_tries=5
)
async def create_pool(db_url: str) -> asyncpg.Pool:
    """Create a connection pool, retrying while the database comes up."""
    return await asyncpg.create_pool(
        db_url,
        min_size=2,
        max_size=20,
        max_inactive_connection_lifetime=300.0,
        command_timeout=60.0,
        **_get_connection_kwargs(db_url)
    )

async def init_db(db_url: Optional[str] = None) -> PostgresStore:
    """Connect to the database, apply the schema and return a store.

    Args:
        db_url: Optional database URL. If not provided, will use settings.

    Raises:
        StoreUnavailableError: If the database cannot be reached after retries
        DatabaseSchemaError: If the schema cannot be applied
    """
    # Import here to avoid circular imports
    from config import get_settings

    url = db_url or get_settings().get('db_url')
    if not url:
        raise ValueError("Database URL not provided")

    try:
        pool = await create_pool(url)
    except (OSError, asyncpg.exceptions.PostgresError) as e:
        logger.error(f"Database connection failed: {e}")
        raise StoreUnavailableError(f"Could not connect to database: {e}") from e

    try:
        await SchemaManager(pool).initialize()
    except DatabaseSchemaError:
        await pool.close()
        raise

    logger.info("Database initialized")
    return PostgresStore(pool)

# Export public interface
__all__ = [
    'init_db',
    'create_pool',
    'Store',
    'Transaction',
    'PostgresStore',
    'MemoryStore',
    'SchemaManager',
    'DatabaseError',
    'DatabaseSchemaError',
    'DocumentExistsError',
    'DocumentNotFoundError',
    'StoreUnavailableError',
    'to_timestamp',
    'from_timestamp',
    'utcnow',
]
