"""Transactional document store abstraction.

Every writer in the service goes through ``Store.run_transaction``: the
callable receives a ``Transaction``, reads the documents it needs, checks
its preconditions and stages its writes. Either every staged write commits
or none does. Reads made through a transaction lock the document against
concurrent transactional writers until commit.

Documents are JSON-compatible dicts. Timestamps are stored with
``to_timestamp`` so that string comparison orders them chronologically.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

T = TypeVar('T')

# (field, operator, value)
Filter = Tuple[str, str, Any]

# (order_by value, document id) of the last document of the previous page
Cursor = Tuple[Any, str]

OPERATORS = ('==', 'in', '<=', '<', '>=', '>')

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'

def to_timestamp(value: datetime) -> str:
    """Format an aware datetime as a fixed-width UTC string."""
    if value.tzinfo is None:
        raise ValueError("Timestamps must be timezone-aware")
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)

def from_timestamp(value: str) -> datetime:
    """Parse a string written by ``to_timestamp``."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)

def utcnow() -> datetime:
    """Default clock."""
    return datetime.now(timezone.utc)

class Transaction(ABC):
    """Operations available inside ``Store.run_transaction``."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Read a document and hold it until the transaction ends."""

    @abstractmethod
    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Stage a new document.

        Raises:
            DocumentExistsError: If the document already exists
        """

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Stage a full overwrite, creating the document if needed."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Stage a shallow merge of ``fields`` into an existing document.

        Raises:
            DocumentNotFoundError: If the document does not exist
        """

class Store(ABC):
    """Backing store for orders, offers, listings and their records."""

    @abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``fn`` atomically and return its result.

        An exception raised by ``fn`` aborts the transaction and propagates.

        Raises:
            StoreUnavailableError: If the store cannot run or commit the transaction
        """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Read a document outside of any transaction."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        start_after: Optional[Cursor] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        """Return ``(doc_id, data)`` pairs matching every filter.

        Results are ordered by ``order_by`` then document id. ``start_after``
        resumes after the given ``(value, doc_id)`` position.
        """

    async def close(self) -> None:
        """Release any resources held by the store."""

def cursor_for(doc_id: str, data: Dict[str, Any], order_by: str) -> Cursor:
    """Build the pagination cursor for the last document of a page."""
    return (data.get(order_by), doc_id)
