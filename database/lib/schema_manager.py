"""Database schema management module.

Schema versions live in ``database/schema/vN.py`` files, each exposing a
``schema`` dict with ``version``, ``tables`` and optional ``migrations``.
A fresh database gets the latest version's tables and indexes; an existing
one gets every later version's ``migrations`` statements in order.
"""
import importlib
import logging
from pathlib import Path
from typing import Dict, Any

from asyncpg.pool import Pool

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'schema'

class SchemaManager:
    """Manages database schema versioning and migrations."""

    def __init__(self, pool: Pool, schema_dir: Path = SCHEMA_DIR) -> None:
        """Initialize schema manager.

        Args:
            pool: Database connection pool
            schema_dir: Directory containing schema version files
        """
        self.pool = pool
        self._schema_dir = Path(schema_dir)
        self.current_version = 0

    async def initialize(self) -> None:
        """Create the version table if needed and apply pending versions.

        Raises:
            DatabaseSchemaError: If no schema files are found or a migration fails
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute('''
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INT8 PRIMARY KEY,
                        applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                ''')
                row = await conn.fetchrow(
                    'SELECT version FROM schema_version ORDER BY version DESC LIMIT 1'
                )
                self.current_version = row['version'] if row else 0

            schema_files = self.load_schema_files()
            if not schema_files:
                raise DatabaseSchemaError("No valid schema files found in schema directory")

            await self._apply_migrations(schema_files)

        except DatabaseSchemaError:
            raise
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseSchemaError(f"Failed to initialize schema: {e}") from e

    def load_schema_files(self) -> Dict[int, Dict[str, Any]]:
        """Load all schema version files.

        Returns:
            Dict mapping version numbers to schema definitions, ascending

        Raises:
            DatabaseSchemaError: If a file's declared version does not match its name
        """
        schema_files = {}

        if not self._schema_dir.exists():
            return schema_files

        for file in self._schema_dir.glob('v*.py'):
            try:
                version = int(file.stem[1:])
            except ValueError:
                logger.warning(f"Invalid schema filename: {file}")
                continue

            module = importlib.import_module(f"database.schema.{file.stem}")
            schema = getattr(module, 'schema', None)
            if schema is None:
                raise DatabaseSchemaError(f"Schema file {file} missing 'schema' definition")
            if schema['version'] != version:
                raise DatabaseSchemaError(
                    f"Schema version mismatch in {file}: "
                    f"Expected v{version}, got v{schema['version']}"
                )
            schema_files[version] = schema

        return dict(sorted(schema_files.items()))

    async def _apply_migrations(self, schema_files: Dict[int, Dict[str, Any]]) -> None:
        latest_version = max(schema_files.keys())
        if self.current_version >= latest_version:
            logger.info("Schema is up to date")
            return

        logger.info(f"Updating schema from version {self.current_version} to {latest_version}")

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                if self.current_version == 0:
                    schema = schema_files[latest_version]
                    for table in schema.get('tables', []):
                        await conn.execute(create_table_sql(table))
                        for statement in create_index_sql(table):
                            await conn.execute(statement)
                        logger.info(f"Created table {table['name']}")
                else:
                    for version in range(self.current_version + 1, latest_version + 1):
                        for statement in schema_files.get(version, {}).get('migrations', []):
                            await conn.execute(statement)
                await conn.execute(
                    'INSERT INTO schema_version (version) VALUES ($1)',
                    latest_version
                )

        self.current_version = latest_version
        logger.info(f"Successfully migrated to version {latest_version}")

def create_table_sql(table: Dict[str, Any]) -> str:
    """Render ``CREATE TABLE IF NOT EXISTS`` for a table definition."""
    columns = []
    constraints = []

    for col in table['columns']:
        col_def = f"{col['name']} {col['type']}"
        if col.get('primary_key'):
            constraints.append(f"PRIMARY KEY ({col['name']})")
        if 'default' in col:
            col_def += f" DEFAULT {col['default']}"
        if col.get('nullable') is False:
            col_def += " NOT NULL"
        columns.append(col_def)

    if isinstance(table.get('primary_key'), list):
        constraints.append(f"PRIMARY KEY ({', '.join(table['primary_key'])})")

    return f"CREATE TABLE IF NOT EXISTS {table['name']} ({', '.join(columns + constraints)})"

def create_index_sql(table: Dict[str, Any]) -> list:
    """Render ``CREATE INDEX IF NOT EXISTS`` statements for a table definition."""
    statements = []
    for idx in table.get('indexes', []):
        unique = 'UNIQUE ' if idx.get('unique') else ''
        where = f" WHERE {idx['where']}" if 'where' in idx else ''
        statements.append(
            f"CREATE {unique}INDEX IF NOT EXISTS {idx['name']} "
            f"ON {table['name']} ({', '.join(idx['columns'])}){where}"
        )
    return statements
