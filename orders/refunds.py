"""Guarded mutators: refunds and dispute resolution.

Money goes back to the buyer at most once per request, however many
administrators click at the same time:

1. In one transaction, check the order can be refunded and that no fresh
   refund-in-progress marker is set, then set the marker.
2. Outside the transaction, call the gateway with an idempotency key built
   from the order id and the refund parameters.
3. In a second transaction, record the refund and clear the marker. If the
   gateway call failed, only clear the marker.

A caller that finds a fresh marker gets ``ConcurrentMutationError``.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from database import collections
from database.store import Store, Transaction, to_timestamp, utcnow
from notifications import NotificationEmitter, non_fatal
from payments.gateway import PaymentGateway, RefundResult
from .audit import record_audit
from .errors import (
    ConcurrentMutationError,
    ForbiddenActionError,
    OrderNotFoundError,
    OrderValidationError,
    TransitionConflictError,
)
from .locks import cleared_marker, marker_age, refund_lock_active
from .models import Actor, AuditSource, DisputeResolution, RefundState
from .status import TransactionStatus, get_effective_status, is_terminal

logger = logging.getLogger(__name__)

S = TransactionStatus

FRAUD_RISK_INCREMENT = 20
MAX_RISK_SCORE = 100
# Buyers lose purchase protection at this many fraudulent claims
FRAUD_CLAIM_LIMIT = 2

REFUND_ACTIONS = ('refund_full', 'refund_partial')

@dataclass
class ReversalPlan:
    """What a guarded mutation will do once it holds the order."""
    action: str
    target: TransactionStatus
    amount: int = 0
    idempotency_key: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    mark_fraudulent: bool = False

def refundable_amount(order: Dict[str, Any]) -> int:
    return order.get('amount', 0) - order.get('refunded_amount', 0)

class RefundManager:
    """Refunds and dispute resolutions, each applied at most once."""

    def __init__(
        self,
        store: Store,
        gateway: PaymentGateway,
        emitter: NotificationEmitter,
        lock_timeout_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.gateway = gateway
        self.emitter = emitter
        self.lock_timeout = timedelta(seconds=lock_timeout_seconds)
        self.clock = clock

    async def refund(
        self,
        order_id: str,
        actor: Actor,
        amount: Optional[int] = None,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Refund part or all of what remains refundable on an order.

        Args:
            order_id: Order to refund
            actor: Administrator issuing the refund
            amount: Minor units to refund; defaults to everything still refundable
            reason: Free-text reason stored with the audit entry

        Returns:
            The updated order document

        Raises:
            ConcurrentMutationError: If another refund or resolution holds the order
            TransitionConflictError: If the order is unpaid, terminal or already refunded
            OrderValidationError: If the amount is out of range
            GatewayError: If the gateway call failed; the marker is cleared
        """
        def plan(order: Dict[str, Any], status: TransactionStatus) -> ReversalPlan:
            if status == S.PENDING_PAYMENT:
                raise TransitionConflictError(order_id, status.value, 'refund')
            remaining = refundable_amount(order)
            refund_amount = remaining if amount is None else amount
            if refund_amount <= 0:
                raise OrderValidationError(order_id, "Refund amount must be greater than zero")
            if refund_amount > remaining:
                raise OrderValidationError(
                    order_id, f"Refund amount {refund_amount} exceeds refundable amount {remaining}"
                )

            full = refund_amount == remaining
            already = order.get('refunded_amount', 0)
            return ReversalPlan(
                action='refund_full' if full else 'refund_partial',
                target=S.REFUNDED if full else status,
                amount=refund_amount,
                idempotency_key=f"refund:{order_id}:{already}:{refund_amount}",
                metadata={'reason': reason, 'amount': refund_amount, 'full': full},
            )

        return await self._guarded(order_id, actor, 'refund', plan)

    async def resolve_dispute(
        self,
        order_id: str,
        actor: Actor,
        resolution: DisputeResolution,
        amount: Optional[int] = None,
        notes: Optional[str] = None,
        mark_fraudulent: bool = False
    ) -> Dict[str, Any]:
        """Close an open dispute.

        ``release`` upholds the sale and completes the order. ``refund``
        reverses everything still refundable. ``partial_refund`` refunds
        exactly ``amount`` and completes the order.
        """
        resolution = DisputeResolution(resolution)

        def plan(order: Dict[str, Any], status: TransactionStatus) -> ReversalPlan:
            if status != S.DISPUTE_OPENED:
                raise TransitionConflictError(order_id, status.value, 'resolve dispute')

            now = self.clock()
            dispute = dict(order.get('dispute') or {})
            dispute.update({
                'is_open': False,
                'resolution': resolution.value,
                'resolved_by': actor.actor_id,
                'resolved_at': to_timestamp(now),
                'resolution_notes': notes,
            })
            fields: Dict[str, Any] = {'dispute': dispute}
            metadata = {'resolution': resolution.value, 'mark_fraudulent': mark_fraudulent}
            remaining = refundable_amount(order)

            if resolution == DisputeResolution.RELEASE:
                fields['completed_at'] = to_timestamp(now)
                return ReversalPlan(
                    'dispute_resolved',
                    S.COMPLETED,
                    fields=fields,
                    metadata=metadata,
                    mark_fraudulent=mark_fraudulent,
                )

            if resolution == DisputeResolution.REFUND:
                if remaining <= 0:
                    raise OrderValidationError(order_id, "Nothing left to refund")
                return ReversalPlan(
                    'dispute_resolved',
                    S.REFUNDED,
                    amount=remaining,
                    idempotency_key=f"dispute-resolve:refund:{order_id}",
                    fields=fields,
                    metadata={**metadata, 'amount': remaining},
                    mark_fraudulent=mark_fraudulent,
                )

            if amount is None or amount <= 0:
                raise OrderValidationError(order_id, "Partial refund requires a positive amount")
            if amount >= remaining:
                raise OrderValidationError(
                    order_id,
                    f"Partial refund {amount} must be less than refundable amount {remaining}"
                )
            fields['completed_at'] = to_timestamp(now)
            return ReversalPlan(
                'dispute_resolved',
                S.COMPLETED,
                amount=amount,
                idempotency_key=f"dispute-resolve:partial:{order_id}:{amount}",
                fields=fields,
                metadata={**metadata, 'amount': amount},
                mark_fraudulent=mark_fraudulent,
            )

        order = await self._guarded(order_id, actor, 'resolve_dispute', plan)

        ref = f"order:{order_id}:dispute:{resolution.value}"
        for recipient in (order.get('buyer_id'), order.get('seller_id')):
            await non_fatal('notify Dispute.Resolved', order_id, self.emitter.notify(
                'Dispute.Resolved', recipient, ref,
                {'order_id': order_id, 'resolution': resolution.value}
            ))
        return order

    async def _guarded(
        self,
        order_id: str,
        actor: Actor,
        operation: str,
        planner: Callable[[Dict[str, Any], TransactionStatus], ReversalPlan]
    ) -> Dict[str, Any]:
        if not actor.is_admin:
            raise ForbiddenActionError(order_id, actor.actor_id, operation)

        lock_id = str(uuid.uuid4())
        now = self.clock()

        async def _acquire(tx: Transaction) -> Tuple[Dict[str, Any], ReversalPlan, bool]:
            order = await tx.get(collections.ORDERS, order_id)
            if order is None:
                raise OrderNotFoundError(order_id)

            status = get_effective_status(order)
            if status == S.REFUNDED or order.get('refund_state') == RefundState.FULL.value:
                raise TransitionConflictError(order_id, S.REFUNDED.value, operation)
            if is_terminal(status):
                raise TransitionConflictError(order_id, status.value, operation)

            if order.get('refund_in_progress_at'):
                if refund_lock_active(order, now, self.lock_timeout):
                    raise ConcurrentMutationError(order_id, operation)
                logger.warning(
                    f"Reclaiming stale refund marker on order {order_id} "
                    f"(age {marker_age(order, now)}, lock {order.get('refund_lock_id')})"
                )

            plan = planner(order, status)
            if plan.amount and not order.get('payment_intent_id'):
                raise OrderValidationError(order_id, "Order has no captured payment to refund")

            if not plan.amount:
                # Nothing to send to the gateway; apply in this transaction
                updated = await self._apply_result(tx, order_id, order, plan, actor, None, now)
                return updated, plan, True

            await tx.update(collections.ORDERS, order_id, {
                'refund_in_progress_at': to_timestamp(now),
                'refund_lock_id': lock_id,
                'refund_lock_action': plan.action,
            })
            return order, plan, False

        order, plan, done = await self.store.run_transaction(_acquire)
        if done:
            logger.info(f"Order {order_id}: {plan.action} -> {order['transaction_status']}")
            return order

        try:
            result = await self.gateway.refund(
                order['payment_intent_id'],
                plan.amount,
                plan.idempotency_key,
                metadata={'order_id': order_id, 'action': plan.action},
            )
        except Exception as e:
            logger.error(f"Gateway refund failed for order {order_id} ({plan.idempotency_key}): {e}")
            await self._release_marker(order_id, lock_id)
            raise

        async def _complete(tx: Transaction) -> Dict[str, Any]:
            current = await tx.get(collections.ORDERS, order_id)
            if result.refund_id in (current.get('refund_ids') or []):
                logger.info(f"Refund {result.refund_id} already recorded on order {order_id}")
                if current.get('refund_lock_id') == lock_id:
                    await tx.update(collections.ORDERS, order_id, cleared_marker())
                    current.update(cleared_marker())
                return current
            if current.get('refund_lock_id') != lock_id:
                logger.warning(
                    f"Refund marker on order {order_id} was reclaimed while lock {lock_id} "
                    f"was at the gateway; recording refund {result.refund_id} anyway"
                )
            return await self._apply_result(tx, order_id, current, plan, actor, result, self.clock(), lock_id)

        order = await self.store.run_transaction(_complete)
        logger.info(f"Order {order_id}: {plan.action} of {plan.amount} -> {order.get('transaction_status')}")

        await non_fatal('notify Order.Refunded', order_id, self.emitter.notify(
            'Order.Refunded', order.get('buyer_id'), f"order:{order_id}:refund:{result.refund_id}",
            {'order_id': order_id, 'amount': result.amount}
        ))
        return order

    async def _apply_result(
        self,
        tx: Transaction,
        order_id: str,
        order: Dict[str, Any],
        plan: ReversalPlan,
        actor: Actor,
        result: Optional[RefundResult],
        now: datetime,
        lock_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Write the outcome of a plan against the order as it is now.

        The status is re-derived from ``order``: if the order went terminal
        while the gateway call was out, only the money movement is recorded.
        A plain refund's target follows the refunded total at this point.
        """
        status = get_effective_status(order)
        target = plan.target
        superseded = result is not None and is_terminal(status)
        refunded = order.get('refunded_amount', 0) + (result.amount if result else 0)

        if superseded:
            logger.warning(
                f"Order {order_id} became {status.value} while {plan.action} was at the gateway; "
                f"recording refund {result.refund_id} without changing status"
            )
            target = status
        elif plan.action in REFUND_ACTIONS:
            target = S.REFUNDED if refunded >= order.get('amount', 0) else status

        fields: Dict[str, Any] = {
            **({} if superseded else plan.fields),
            'transaction_status': target.value,
            'updated_at': to_timestamp(now),
        }

        if result is not None:
            fields.update({
                'refunded_amount': refunded,
                'refund_ids': list(order.get('refund_ids') or []) + [result.refund_id],
                'refund_state': (
                    RefundState.FULL.value if refunded >= order.get('amount', 0)
                    else RefundState.PARTIAL.value
                ),
                'refunded_at': to_timestamp(now),
            })
        if result is None or order.get('refund_lock_id') in (lock_id, None):
            fields.update(cleared_marker())

        await tx.update(collections.ORDERS, order_id, fields)
        await record_audit(
            tx,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            action_type=plan.action,
            entity_type='order',
            entity_id=order_id,
            order_id=order_id,
            listing_id=order.get('listing_id'),
            before_state={
                'transaction_status': status.value,
                'refunded_amount': order.get('refunded_amount', 0),
            },
            after_state={
                'transaction_status': target.value,
                'refunded_amount': fields.get('refunded_amount', order.get('refunded_amount', 0)),
            },
            metadata={
                **plan.metadata,
                'refund_id': result.refund_id if result else None,
                'idempotency_key': plan.idempotency_key,
                'superseded': superseded,
            },
            source=AuditSource.ADMIN_UI,
            now=now,
        )
        if plan.mark_fraudulent and not superseded:
            await self._flag_fraudulent_buyer(tx, order_id, order, actor, now)
        return {**order, **fields}

    async def _release_marker(self, order_id: str, lock_id: str) -> None:
        """Clear our marker after a failed gateway call; log if that fails too."""
        async def _clear(tx: Transaction) -> None:
            order = await tx.get(collections.ORDERS, order_id)
            if order is not None and order.get('refund_lock_id') == lock_id:
                await tx.update(collections.ORDERS, order_id, cleared_marker())

        try:
            await self.store.run_transaction(_clear)
        except Exception as e:
            logger.error(
                f"Could not clear refund marker {lock_id} on order {order_id}; "
                f"it becomes reclaimable after {self.lock_timeout}: {e}"
            )

    @staticmethod
    async def _flag_fraudulent_buyer(
        tx: Transaction,
        order_id: str,
        order: Dict[str, Any],
        actor: Actor,
        now: datetime
    ) -> None:
        """Count a fraudulent claim against the buyer, in the resolution's transaction."""
        buyer_id = order.get('buyer_id')
        profile = await tx.get(collections.USERS, buyer_id) or {'user_id': buyer_id}
        count = profile.get('fraudulent_claims_count', 0) + 1
        profile.update({
            'fraudulent_claims_count': count,
            'risk_score': min(MAX_RISK_SCORE, profile.get('risk_score', 0) + FRAUD_RISK_INCREMENT),
            'buyer_protection_eligible': count < FRAUD_CLAIM_LIMIT,
            'updated_at': to_timestamp(now),
        })
        await tx.set(collections.USERS, buyer_id, profile)
        await record_audit(
            tx,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            action_type='buyer_marked_fraudulent',
            entity_type='user',
            entity_id=buyer_id,
            order_id=order_id,
            after_state={'fraudulent_claims_count': count},
            source=AuditSource.ADMIN_UI,
            now=now,
        )
