"""Notification emitter boundary.

Delivery, retries and message formatting belong to the notification
subsystem. This package defines what the order core hands to it:
``emit(event_type, target_user_id, entity_ref, payload, dedupe_hash)``,
called once per logical event per recipient, with a dedupe hash that is
stable for a given (entity, event, recipient) so repeated sweeps or
redelivered webhooks never produce a second outbound message.

Emission is best-effort for every caller. ``non_fatal`` wraps a side
effect so a failure is logged with the entity and operation and never
fails the primary operation.
"""
import hashlib
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from database import collections
from database.exceptions import DocumentExistsError
from database.store import Store, Transaction, to_timestamp, utcnow

logger = logging.getLogger(__name__)

T = TypeVar('T')

def make_dedupe_hash(entity_ref: str, event_type: str, recipient_id: str) -> str:
    """Deterministic dedupe hash for one event about one entity to one recipient."""
    raw = f"{entity_ref}|{event_type}|{recipient_id}"
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()

class NotificationEmitter(ABC):
    """Interface consumed by the order core."""

    @abstractmethod
    async def emit(
        self,
        event_type: str,
        target_user_id: str,
        entity_ref: str,
        payload: Dict[str, Any],
        dedupe_hash: str
    ) -> bool:
        """Hand one event to the notification subsystem.

        Returns:
            bool: False when an event with the same dedupe hash was already handed over
        """

    async def notify(
        self,
        event_type: str,
        target_user_id: Optional[str],
        entity_ref: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Emit with the standard dedupe hash. Missing recipients are skipped."""
        if not target_user_id:
            return False
        return await self.emit(
            event_type,
            target_user_id,
            entity_ref,
            payload or {},
            make_dedupe_hash(entity_ref, event_type, target_user_id),
        )

class StoreNotificationEmitter(NotificationEmitter):
    """Writes events to the ``notification_events`` collection.

    The notification worker drains that collection. The dedupe hash is the
    document id, so a second emit of the same event is a no-op.
    """

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def emit(
        self,
        event_type: str,
        target_user_id: str,
        entity_ref: str,
        payload: Dict[str, Any],
        dedupe_hash: str
    ) -> bool:
        document = {
            'event_type': event_type,
            'target_user_id': target_user_id,
            'entity_ref': entity_ref,
            'payload': payload,
            'dedupe_hash': dedupe_hash,
            'status': 'queued',
            'created_at': to_timestamp(self.clock()),
        }

        async def _create(tx: Transaction) -> bool:
            try:
                await tx.create(collections.NOTIFICATION_EVENTS, dedupe_hash, document)
            except DocumentExistsError:
                return False
            return True

        created = await self.store.run_transaction(_create)
        if not created:
            logger.debug(f"Notification {event_type} for {entity_ref} already emitted")
        return created

async def non_fatal(
    operation: str,
    entity_id: str,
    action: Awaitable[T]
) -> Optional[T]:
    """Await a best-effort side effect, logging and swallowing any failure.

    Args:
        operation: Name of the side effect, for the log line
        entity_id: Order, offer or listing the side effect concerns
        action: The awaitable to run

    Returns:
        The awaitable's result, or None if it failed
    """
    try:
        return await action
    except Exception as e:
        logger.warning(
            f"Non-fatal side effect failed: operation={operation} "
            f"entity_id={entity_id} error={type(e).__name__}: {e}"
        )
        return None

__all__ = [
    'NotificationEmitter',
    'StoreNotificationEmitter',
    'make_dedupe_hash',
    'non_fatal',
]
