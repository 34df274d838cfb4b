"""asyncpg-backed ``Store``.

All documents live in the ``documents`` table (see ``database/schema``).
Transactional reads take a row lock with ``SELECT ... FOR UPDATE`` so two
writers of the same order, offer or listing are serialized by the database.
"""
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import asyncpg
import backoff
from asyncpg.pool import Pool

from .exceptions import (
    DatabaseError,
    DocumentExistsError,
    DocumentNotFoundError,
    StoreUnavailableError,
)
from .store import OPERATORS, Cursor, Filter, Store, T, Transaction

logger = logging.getLogger(__name__)

CONNECTION_ERRORS = (
    OSError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.InterfaceError,
)

_FIELD_RE = re.compile(r'^[a-z_][a-z0-9_]*$')

def _field(name: str) -> str:
    """Return the JSONB text accessor for a top-level document field."""
    if not _FIELD_RE.match(name):
        raise ValueError(f"Invalid document field name: {name!r}")
    return f"data->>'{name}'"

def _decode(raw: Any) -> Dict[str, Any]:
    return json.loads(raw) if isinstance(raw, str) else raw

class PostgresTransaction(Transaction):
    """Transaction bound to one pooled connection."""

    def __init__(self, conn):
        self._conn = conn

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        row = await self._conn.fetchrow(
            '''
            SELECT data FROM documents
            WHERE collection = $1 AND id = $2
            FOR UPDATE
            ''',
            collection,
            doc_id
        )
        return _decode(row['data']) if row else None

    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        inserted = await self._conn.fetchval(
            '''
            INSERT INTO documents (collection, id, data)
            VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (collection, id) DO NOTHING
            RETURNING id
            ''',
            collection,
            doc_id,
            json.dumps(data)
        )
        if inserted is None:
            raise DocumentExistsError(collection, doc_id)

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await self._conn.execute(
            '''
            INSERT INTO documents (collection, id, data)
            VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (collection, id)
            DO UPDATE SET data = EXCLUDED.data, updated_at = now()
            ''',
            collection,
            doc_id,
            json.dumps(data)
        )

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        updated = await self._conn.fetchval(
            '''
            UPDATE documents
            SET data = data || $3::jsonb, updated_at = now()
            WHERE collection = $1 AND id = $2
            RETURNING id
            ''',
            collection,
            doc_id,
            json.dumps(fields)
        )
        if updated is None:
            raise DocumentNotFoundError(collection, doc_id)

class PostgresStore(Store):
    """Store over an asyncpg pool created by ``database.init_db``."""

    def __init__(self, pool: Pool):
        self.pool = pool

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        try:
            return await self._run_with_retry(fn)
        except asyncpg.exceptions.SerializationError as e:
            logger.error(f"Transaction kept conflicting after retries: {e}")
            raise StoreUnavailableError(f"Transaction could not be serialized: {e}") from e
        except CONNECTION_ERRORS as e:
            logger.error(f"Store unavailable: {e}")
            raise StoreUnavailableError(f"Store unavailable: {e}") from e
        except asyncpg.exceptions.PostgresError as e:
            logger.error(f"Database error in transaction: {e}")
            raise DatabaseError(f"Database error: {e}") from e

    @backoff.on_exception(
        backoff.expo,
        asyncpg.exceptions.SerializationError,
        max_tries=5
    )
    async def _run_with_retry(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                return await fn(PostgresTransaction(conn))

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    'SELECT data FROM documents WHERE collection = $1 AND id = $2',
                    collection,
                    doc_id
                )
        except CONNECTION_ERRORS as e:
            raise StoreUnavailableError(f"Store unavailable: {e}") from e
        return _decode(row['data']) if row else None

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        start_after: Optional[Cursor] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        """Filter values must be strings (or lists of strings for ``in``)."""
        clauses = ['collection = $1']
        args: List[Any] = [collection]

        for field, op, value in filters:
            if op not in OPERATORS:
                raise ValueError(f"Unsupported operator: {op}")
            args.append(list(value) if op == 'in' else value)
            placeholder = f"${len(args)}"
            if op == 'in':
                clauses.append(f"{_field(field)} = ANY({placeholder}::text[])")
            elif op == '==':
                clauses.append(f"{_field(field)} = {placeholder}")
            else:
                clauses.append(f"{_field(field)} {op} {placeholder}")

        if order_by:
            clauses.append(f"{_field(order_by)} IS NOT NULL")
            if start_after is not None:
                args.extend(start_after)
                clauses.append(
                    f"({_field(order_by)}, id) > (${len(args) - 1}, ${len(args)})"
                )
            order_sql = f"ORDER BY {_field(order_by)}, id"
        else:
            if start_after is not None:
                args.append(start_after[1])
                clauses.append(f"id > ${len(args)}")
            order_sql = "ORDER BY id"

        sql = f"SELECT id, data FROM documents WHERE {' AND '.join(clauses)} {order_sql}"
        if limit is not None:
            args.append(limit)
            sql += f" LIMIT ${len(args)}"

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(sql, *args)
        except CONNECTION_ERRORS as e:
            raise StoreUnavailableError(f"Store unavailable: {e}") from e

        return [(row['id'], _decode(row['data'])) for row in rows]

    async def close(self) -> None:
        await self.pool.close()
