"""Audit entries written inside the mutating transaction."""
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from database import collections
from database.store import Transaction
from .models import ActorRole, AuditEntry, AuditSource

async def record_audit(
    tx: Transaction,
    *,
    actor_id: str,
    actor_role: ActorRole,
    action_type: str,
    entity_type: str,
    entity_id: str,
    source: AuditSource,
    now: datetime,
    order_id: Optional[str] = None,
    listing_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Stage an audit entry in ``tx`` and return its id.

    The entry commits or rolls back with the mutation it describes.
    """
    entry = AuditEntry(
        audit_id=str(uuid.uuid4()),
        actor_id=actor_id,
        actor_role=actor_role,
        action_type=action_type,
        entity_type=entity_type,
        entity_id=entity_id,
        order_id=order_id,
        listing_id=listing_id,
        before_state=before_state,
        after_state=after_state,
        metadata=metadata or {},
        source=source,
        created_at=now,
    )
    await tx.create(collections.AUDIT_LOGS, entry.audit_id, entry.model_dump(mode='json'))
    return entry.audit_id
