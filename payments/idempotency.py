"""Idempotency gate for inbound payment events.

Each gateway event id gets one record in ``payment_events``. The record is
created by the first delivery inside a store transaction, so two racing
redeliveries cannot both be admitted, and it is never deleted.

Record lifecycle::

    processing -> processed
    processing -> failed -> processing (a later redelivery retries)

A ``processing`` record whose handler never finished (the process died)
becomes re-admittable once older than ``event_processing_timeout_seconds``.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from database import collections
from database.exceptions import DatabaseError
from database.store import Store, Transaction, from_timestamp, to_timestamp, utcnow

logger = logging.getLogger(__name__)

PROCESSING = 'processing'
PROCESSED = 'processed'
FAILED = 'failed'

class EventAdmissionError(Exception):
    """Raised when an event could not be durably admitted.

    The webhook must answer with an error so the gateway redelivers.
    """

    def __init__(self, event_id: str, message: str):
        self.event_id = event_id
        super().__init__(message)

@dataclass(frozen=True)
class Admission:
    admitted: bool
    # new, retry, duplicate, in_progress
    reason: str
    attempts: int = 0

class IdempotencyGate:
    """Atomic check-and-record of payment event ids."""

    def __init__(
        self,
        store: Store,
        processing_timeout_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.processing_timeout = timedelta(seconds=processing_timeout_seconds)
        self.clock = clock

    async def admit_event(self, event_id: str, event_metadata: Dict[str, Any]) -> Admission:
        """Admit an event for processing at most once.

        Args:
            event_id: The gateway's unique event id
            event_metadata: Event type and related entity ids to store with the record

        Returns:
            Admission: ``admitted`` is True only for the caller that must process the event

        Raises:
            EventAdmissionError: If the store failed and no record exists
        """
        now = self.clock()

        async def _admit(tx: Transaction) -> Admission:
            record = await tx.get(collections.PAYMENT_EVENTS, event_id)

            if record is None:
                await tx.create(collections.PAYMENT_EVENTS, event_id, {
                    **event_metadata,
                    'event_id': event_id,
                    'status': PROCESSING,
                    'attempts': 1,
                    'created_at': to_timestamp(now),
                    'processing_started_at': to_timestamp(now),
                })
                return Admission(admitted=True, reason='new', attempts=1)

            attempts = record.get('attempts', 1)
            status = record.get('status', PROCESSED)

            if status == PROCESSED:
                return Admission(admitted=False, reason='duplicate', attempts=attempts)

            if status == PROCESSING:
                started = record.get('processing_started_at')
                if not started or now - from_timestamp(started) < self.processing_timeout:
                    return Admission(admitted=False, reason='in_progress', attempts=attempts)
                logger.warning(f"Reclaiming stale processing record for event {event_id}")

            await tx.update(collections.PAYMENT_EVENTS, event_id, {
                'status': PROCESSING,
                'attempts': attempts + 1,
                'processing_started_at': to_timestamp(now),
            })
            return Admission(admitted=True, reason='retry', attempts=attempts + 1)

        try:
            admission = await self.store.run_transaction(_admit)
        except DatabaseError as e:
            logger.error(f"Admission transaction failed for event {event_id}: {e}")
            return await self._fallback(event_id, e)

        if admission.admitted:
            logger.info(f"Admitted event {event_id} ({admission.reason}, attempt {admission.attempts})")
        else:
            logger.info(f"Skipping event {event_id}: {admission.reason}")
        return admission

    async def _fallback(self, event_id: str, cause: Exception) -> Admission:
        """Decide after a failed admission transaction.

        An existing record means another delivery owns or finished the event.
        No record, or no way to tell, means the event must not proceed.
        """
        try:
            record = await self.store.get(collections.PAYMENT_EVENTS, event_id)
        except DatabaseError as e:
            raise EventAdmissionError(
                event_id, f"Store unavailable while admitting event {event_id}: {e}"
            ) from cause

        if record is None:
            raise EventAdmissionError(
                event_id, f"Could not durably record event {event_id}: {cause}"
            ) from cause

        return Admission(
            admitted=False,
            reason='duplicate' if record.get('status') == PROCESSED else 'in_progress',
            attempts=record.get('attempts', 1),
        )

    async def mark_processed(self, event_id: str, affected: Optional[Dict[str, Any]] = None) -> None:
        await self._finish(event_id, {
            'status': PROCESSED,
            'processed_at': to_timestamp(self.clock()),
            'affected': affected or {},
        })

    async def mark_failed(self, event_id: str, error: str) -> None:
        await self._finish(event_id, {
            'status': FAILED,
            'failed_at': to_timestamp(self.clock()),
            'last_error': error[:500],
        })

    async def _finish(self, event_id: str, fields: Dict[str, Any]) -> None:
        async def _update(tx: Transaction) -> None:
            await tx.update(collections.PAYMENT_EVENTS, event_id, fields)

        await self.store.run_transaction(_update)
