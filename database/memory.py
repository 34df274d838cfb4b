"""In-memory ``Store`` used by tests and local runs.

Transactions are serialized by a single ``asyncio.Lock`` and their writes are
buffered until ``fn`` returns, so an exception leaves the store untouched.
"""
import asyncio
import copy
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .exceptions import DocumentExistsError, DocumentNotFoundError, StoreUnavailableError
from .store import OPERATORS, Cursor, Filter, Store, T, Transaction


# (collection, doc_id) key of the write buffer
Key = Tuple[str, str]

def _matches(data: Dict[str, Any], field: str, op: str, value: Any) -> bool:
    if field not in data:
        return False
    current = data[field]
    if op == '==':
        return current == value
    if op == 'in':
        return current in value
    if current is None or value is None:
        return False
    if op == '<=':
        return current <= value
    if op == '<':
        return current < value
    if op == '>=':
        return current >= value
    if op == '>':
        return current > value
    raise ValueError(f"Unsupported operator: {op}")

class MemoryTransaction(Transaction):
    """Transaction over a ``MemoryStore`` snapshot with buffered writes."""

    def __init__(self, store: 'MemoryStore'):
        self._store = store
        self._writes: Dict[Key, Dict[str, Any]] = {}

    def _current(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        key = (collection, doc_id)
        if key in self._writes:
            return self._writes[key]
        return self._store._documents.get(collection, {}).get(doc_id)

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        data = self._current(collection, doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        if self._current(collection, doc_id) is not None:
            raise DocumentExistsError(collection, doc_id)
        self._writes[(collection, doc_id)] = copy.deepcopy(data)

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._writes[(collection, doc_id)] = copy.deepcopy(data)

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        current = self._current(collection, doc_id)
        if current is None:
            raise DocumentNotFoundError(collection, doc_id)
        merged = copy.deepcopy(current)
        merged.update(copy.deepcopy(fields))
        self._writes[(collection, doc_id)] = merged

    def commit(self) -> None:
        for (collection, doc_id), data in self._writes.items():
            self._store._documents.setdefault(collection, {})[doc_id] = data

class MemoryStore(Store):
    """Dict-backed store with serializable transactions."""

    def __init__(self):
        self._documents: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self._failures_pending = 0
        self.transactions_committed = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` transactions fail as if the store were down."""
        self._failures_pending = count

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self._lock:
            if self._failures_pending:
                self._failures_pending -= 1
                raise StoreUnavailableError("Memory store configured to fail")
            tx = MemoryTransaction(self)
            result = await fn(tx)
            tx.commit()
            self.transactions_committed += 1
            return result

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        data = self._documents.get(collection, {}).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        start_after: Optional[Cursor] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        for _, op, _ in filters:
            if op not in OPERATORS:
                raise ValueError(f"Unsupported operator: {op}")

        results = [
            (doc_id, data)
            for doc_id, data in self._documents.get(collection, {}).items()
            if all(_matches(data, field, op, value) for field, op, value in filters)
        ]

        if order_by:
            results = [item for item in results if item[1].get(order_by) is not None]
            results.sort(key=lambda item: (item[1][order_by], item[0]))
            if start_after is not None:
                results = [
                    item for item in results
                    if (item[1][order_by], item[0]) > start_after
                ]
        else:
            results.sort(key=lambda item: item[0])
            if start_after is not None:
                results = [item for item in results if item[0] > start_after[1]]

        if limit is not None:
            results = results[:limit]

        return [(doc_id, copy.deepcopy(data)) for doc_id, data in results]

    # Test helpers

    async def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Write a document directly, bypassing transactions."""
        self._documents.setdefault(collection, {})[doc_id] = copy.deepcopy(data)

    def all(self, collection: str) -> Dict[str, Dict[str, Any]]:
        """Return a copy of every document in ``collection``."""
        return copy.deepcopy(self._documents.get(collection, {}))
