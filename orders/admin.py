"""Administrative annotations: seller freeze, admin notes, review marks.

These are plain record updates and, unlike fulfillment transitions, are
allowed on terminal orders. Each one still writes an audit entry in the
same transaction.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from database import collections
from database.store import Store, Transaction, to_timestamp, utcnow
from .audit import record_audit
from .errors import ForbiddenActionError, OrderNotFoundError, OrderValidationError
from .models import Actor, AuditSource
from .status import get_effective_status, is_terminal

logger = logging.getLogger(__name__)

FROZEN_SELLER_FLAG = 'frozen_seller'
NEEDS_REVIEW_FLAG = 'needs_review'
FROZEN_SELLER_CANDIDATE_FLAG = 'frozen_seller_candidate'

class AdminManager:
    """Low-frequency administrator actions."""

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    @staticmethod
    def _require_admin(actor: Actor, target: str, action: str) -> None:
        if not actor.is_admin:
            raise ForbiddenActionError(target, actor.actor_id, action)

    async def freeze_seller(
        self,
        seller_id: str,
        actor: Actor,
        reason: str,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """Disable selling for a seller and flag their open orders.

        Returns:
            Dict with the seller profile and the number of orders flagged
        """
        self._require_admin(actor, seller_id, 'freeze seller')
        if not reason or not reason.strip():
            raise OrderValidationError(None, "Freeze reason is required")
        now = self.clock()

        async def _freeze(tx: Transaction) -> Dict[str, Any]:
            profile = await tx.get(collections.USERS, seller_id) or {'user_id': seller_id}
            was_frozen = bool(profile.get('selling_disabled'))
            profile.update({
                'selling_disabled': True,
                'selling_disabled_reason': reason,
                'selling_disabled_notes': notes,
                'selling_disabled_at': to_timestamp(now),
                'selling_disabled_by': actor.actor_id,
                'updated_at': to_timestamp(now),
            })
            await tx.set(collections.USERS, seller_id, profile)
            await record_audit(
                tx,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                action_type='seller_frozen',
                entity_type='user',
                entity_id=seller_id,
                before_state={'selling_disabled': was_frozen},
                after_state={'selling_disabled': True},
                metadata={'reason': reason, 'notes': notes},
                source=AuditSource.ADMIN_UI,
                now=now,
            )
            return profile

        profile = await self.store.run_transaction(_freeze)

        flagged = 0
        orders = await self.store.query(collections.ORDERS, [('seller_id', '==', seller_id)])
        for order_id, order in orders:
            if is_terminal(get_effective_status(order)):
                continue
            if await self._add_flag(order_id, FROZEN_SELLER_FLAG, now):
                flagged += 1

        logger.info(f"Seller {seller_id} frozen by {actor.actor_id}; {flagged} orders flagged")
        return {'seller': profile, 'orders_flagged': flagged}

    async def _add_flag(self, order_id: str, flag: str, now: datetime) -> bool:
        async def _flag(tx: Transaction) -> bool:
            order = await tx.get(collections.ORDERS, order_id)
            if order is None:
                return False
            flags = list(order.get('admin_flags') or [])
            if flag in flags:
                return False
            await tx.update(collections.ORDERS, order_id, {
                'admin_flags': flags + [flag],
                'updated_at': to_timestamp(now),
            })
            return True

        return await self.store.run_transaction(_flag)

    async def add_admin_note(self, order_id: str, actor: Actor, note: str) -> Dict[str, Any]:
        self._require_admin(actor, order_id, 'add admin note')
        if not note or not note.strip():
            raise OrderValidationError(order_id, "Note text is required")
        now = self.clock()

        async def _note(tx: Transaction) -> Dict[str, Any]:
            order = await tx.get(collections.ORDERS, order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            entry = {
                'note': note.strip(),
                'author_id': actor.actor_id,
                'created_at': to_timestamp(now),
            }
            fields = {
                'admin_notes': list(order.get('admin_notes') or []) + [entry],
                'updated_at': to_timestamp(now),
            }
            await tx.update(collections.ORDERS, order_id, fields)
            await record_audit(
                tx,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                action_type='admin_note_added',
                entity_type='order',
                entity_id=order_id,
                order_id=order_id,
                metadata={'note': entry['note']},
                source=AuditSource.ADMIN_UI,
                now=now,
            )
            return {**order, **fields}

        return await self.store.run_transaction(_note)

    async def mark_reviewed(self, order_id: str, actor: Actor, notes: Optional[str] = None) -> Dict[str, Any]:
        """Clear the ``needs_review`` flag. Orders without the flag are returned as-is."""
        self._require_admin(actor, order_id, 'mark reviewed')
        now = self.clock()

        async def _review(tx: Transaction) -> Dict[str, Any]:
            order = await tx.get(collections.ORDERS, order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            flags = list(order.get('admin_flags') or [])
            if NEEDS_REVIEW_FLAG not in flags:
                return order

            fields = {
                'admin_flags': [flag for flag in flags if flag != NEEDS_REVIEW_FLAG],
                'reviewed_at': to_timestamp(now),
                'reviewed_by': actor.actor_id,
                'updated_at': to_timestamp(now),
            }
            await tx.update(collections.ORDERS, order_id, fields)
            await record_audit(
                tx,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                action_type='order_reviewed',
                entity_type='order',
                entity_id=order_id,
                order_id=order_id,
                before_state={'admin_flags': flags},
                after_state={'admin_flags': fields['admin_flags']},
                metadata={'notes': notes},
                source=AuditSource.ADMIN_UI,
                now=now,
            )
            return {**order, **fields}

        return await self.store.run_transaction(_review)
