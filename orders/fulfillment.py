"""Fulfillment state machine.

Two branches, chosen by the order's transport mode at checkout:

    carrier_delivery: FULFILLMENT_REQUIRED -> DELIVERY_SCHEDULED
                      -> [OUT_FOR_DELIVERY] -> DELIVERED_PENDING_CONFIRMATION -> COMPLETED
    buyer_pickup:     FULFILLMENT_REQUIRED -> READY_FOR_PICKUP -> PICKUP_SCHEDULED
                      -> PICKED_UP -> COMPLETED

plus the dispute overlay (any non-terminal status -> DISPUTE_OPENED).

Every operation is one store transaction: read the order, check the actor,
the branch and the precondition status, then write the new fields and the
audit entry together. Repeating an operation that already took effect
returns the order unchanged. Notifications go out after commit and never
fail the operation.
"""
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from database import collections
from database.store import Store, Transaction, to_timestamp, utcnow
from notifications import NotificationEmitter, non_fatal
from .audit import record_audit
from .errors import (
    ConcurrentMutationError,
    ForbiddenActionError,
    OrderNotFoundError,
    OrderValidationError,
    TransitionConflictError,
)
from .locks import refund_lock_active
from .models import (
    Actor,
    AuditSource,
    DeliveryInfo,
    DisputeInfo,
    PickupInfo,
    PickupWindow,
)
from .status import (
    TransactionStatus,
    TransportMode,
    can_transition,
    get_effective_status,
    get_transport_mode,
    is_terminal,
    requires_buyer_action,
    requires_seller_action,
)

logger = logging.getLogger(__name__)

S = TransactionStatus

# Who may perform an operation
SELLER = 'seller'
BUYER = 'buyer'
PARTY = 'party'

# Statuses from which the seller can start fulfilling
STARTABLE = (S.PAID, S.FULFILLMENT_REQUIRED, S.SELLER_NONCOMPLIANT)

@dataclass
class TransitionPlan:
    """Fields to write for one transition and who to tell about it."""
    target: TransactionStatus
    fields: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    # (event_type, recipient_id, entity_ref)
    notifications: List[Tuple[str, Optional[str], str]] = field(default_factory=list)

Planner = Callable[[Dict[str, Any], TransactionStatus, datetime], Optional[TransitionPlan]]

def generate_pickup_code() -> str:
    """Six-digit confirmation code."""
    return f"{secrets.randbelow(10 ** 6):06d}"

class FulfillmentManager:
    """Applies buyer and seller fulfillment actions to orders."""

    def __init__(
        self,
        store: Store,
        emitter: NotificationEmitter,
        lock_timeout_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.emitter = emitter
        self.lock_timeout = timedelta(seconds=lock_timeout_seconds)
        self.clock = clock

    async def _transition(
        self,
        order_id: str,
        actor: Actor,
        action: str,
        party: str,
        mode: Optional[TransportMode],
        planner: Planner
    ) -> Dict[str, Any]:
        """Run one guarded transition and return the resulting order document.

        Raises:
            OrderNotFoundError: If the order does not exist
            ForbiddenActionError: If the actor is not the required party
            TransitionConflictError: If the order is terminal or in the wrong status
            ConcurrentMutationError: If a refund is in progress on the order
            OrderValidationError: If the branch or the payload does not fit
        """
        now = self.clock()

        async def _apply(tx: Transaction) -> Tuple[Dict[str, Any], Optional[TransitionPlan]]:
            order = await tx.get(collections.ORDERS, order_id)
            if order is None:
                raise OrderNotFoundError(order_id)

            self._check_party(order_id, order, actor, action, party)

            status = get_effective_status(order)
            if is_terminal(status):
                raise TransitionConflictError(order_id, status.value, action)
            if refund_lock_active(order, now, self.lock_timeout):
                raise ConcurrentMutationError(order_id, action)

            transport = get_transport_mode(order)
            if mode is not None and transport != mode:
                raise OrderValidationError(
                    order_id,
                    f"Cannot {action}: order uses {transport.value if transport else 'no'} transport"
                )

            plan = planner(order, status, now)
            if plan is None:
                logger.debug(f"{action} already applied to order {order_id}")
                return order, None

            if plan.target != status and not can_transition(status, plan.target, transport):
                raise TransitionConflictError(order_id, status.value, action)

            updates = {
                **plan.fields,
                'transaction_status': plan.target.value,
                'updated_at': to_timestamp(now),
            }
            await tx.update(collections.ORDERS, order_id, updates)
            await record_audit(
                tx,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                action_type=action,
                entity_type='order',
                entity_id=order_id,
                order_id=order_id,
                listing_id=order.get('listing_id'),
                before_state={'transaction_status': status.value},
                after_state={'transaction_status': plan.target.value},
                metadata=plan.metadata,
                source=AuditSource.ADMIN_UI if actor.is_admin else AuditSource.API,
                now=now,
            )
            return {**order, **updates}, plan

        order, plan = await self.store.run_transaction(_apply)

        if plan is not None:
            logger.info(f"Order {order_id}: {action} -> {plan.target.value}")
            for event_type, recipient, entity_ref in plan.notifications:
                await non_fatal(f"notify {event_type}", order_id, self.emitter.notify(
                    event_type, recipient, entity_ref, {'order_id': order_id}
                ))

        return order

    @staticmethod
    def _check_party(order_id: str, order: Dict[str, Any], actor: Actor, action: str, party: str) -> None:
        if actor.is_admin:
            return
        allowed = {
            SELLER: (order.get('seller_id'),),
            BUYER: (order.get('buyer_id'),),
            PARTY: (order.get('seller_id'), order.get('buyer_id')),
        }[party]
        if actor.actor_id not in allowed:
            raise ForbiddenActionError(order_id, actor.actor_id, action)

    @staticmethod
    def _expect(order_id: str, status: TransactionStatus, action: str, *expected: TransactionStatus) -> None:
        if status not in expected:
            raise TransitionConflictError(order_id, status.value, action)

    async def get_order(self, order_id: str, actor: Actor) -> Dict[str, Any]:
        """Read an order for one of its parties, with its effective status.

        Raises:
            OrderNotFoundError: If the order does not exist
            ForbiddenActionError: If the actor is neither party nor admin
        """
        order = await self.store.get(collections.ORDERS, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        self._check_party(order_id, order, actor, 'view', PARTY)

        status = get_effective_status(order)
        return {
            **order,
            'order_id': order.get('order_id') or order_id,
            'effective_status': status.value,
            'awaiting_seller': requires_seller_action(status),
            'awaiting_buyer': requires_buyer_action(status),
        }

    # Carrier-delivery branch

    async def schedule_delivery(
        self,
        order_id: str,
        actor: Actor,
        eta: datetime,
        carrier: str,
        tracking_number: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """Seller sets the ETA and carrier. Repeating with new details reschedules."""
        if not carrier or not carrier.strip():
            raise OrderValidationError(order_id, "Carrier is required")
        if eta.tzinfo is None:
            raise OrderValidationError(order_id, "ETA must include a timezone")

        def plan(order, status, now):
            self._expect(order_id, status, 'schedule delivery', *STARTABLE, S.DELIVERY_SCHEDULED)
            delivery = DeliveryInfo.model_validate(order.get('delivery') or {})
            if (status == S.DELIVERY_SCHEDULED and delivery.eta == eta
                    and delivery.carrier == carrier and delivery.tracking_number == tracking_number):
                return None

            delivery.eta = eta
            delivery.carrier = carrier.strip()
            delivery.tracking_number = tracking_number
            delivery.notes = notes
            delivery.scheduled_at = now
            return TransitionPlan(
                target=S.DELIVERY_SCHEDULED,
                fields={'delivery': delivery.model_dump(mode='json')},
                metadata={'eta': to_timestamp(eta), 'carrier': carrier,
                          'rescheduled': status == S.DELIVERY_SCHEDULED},
                notifications=[('Order.DeliveryScheduled', order.get('buyer_id'),
                                f"order:{order_id}:eta:{to_timestamp(eta)}")],
            )

        return await self._transition(
            order_id, actor, 'schedule_delivery', SELLER, TransportMode.CARRIER_DELIVERY, plan
        )

    async def mark_out_for_delivery(self, order_id: str, actor: Actor) -> Dict[str, Any]:
        def plan(order, status, now):
            if status == S.OUT_FOR_DELIVERY:
                return None
            self._expect(order_id, status, 'mark out for delivery', S.DELIVERY_SCHEDULED)
            delivery = DeliveryInfo.model_validate(order.get('delivery') or {})
            delivery.out_for_delivery_at = now
            return TransitionPlan(
                target=S.OUT_FOR_DELIVERY,
                fields={'delivery': delivery.model_dump(mode='json')},
                notifications=[('Order.OutForDelivery', order.get('buyer_id'), f"order:{order_id}")],
            )

        return await self._transition(
            order_id, actor, 'mark_out_for_delivery', SELLER, TransportMode.CARRIER_DELIVERY, plan
        )

    async def mark_delivered(
        self,
        order_id: str,
        actor: Actor,
        proof_refs: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Seller marks the item delivered, optionally with proof references."""
        def plan(order, status, now):
            if status == S.DELIVERED_PENDING_CONFIRMATION:
                return None
            self._expect(order_id, status, 'mark delivered', S.DELIVERY_SCHEDULED, S.OUT_FOR_DELIVERY)
            delivery = DeliveryInfo.model_validate(order.get('delivery') or {})
            delivery.delivered_at = now
            delivery.proof_refs = list(proof_refs or [])
            return TransitionPlan(
                target=S.DELIVERED_PENDING_CONFIRMATION,
                fields={
                    'delivery': delivery.model_dump(mode='json'),
                    'delivered_at': to_timestamp(now),
                },
                metadata={'proof_count': len(delivery.proof_refs)},
                notifications=[('Order.Delivered', order.get('buyer_id'), f"order:{order_id}")],
            )

        return await self._transition(
            order_id, actor, 'mark_delivered', SELLER, TransportMode.CARRIER_DELIVERY, plan
        )

    async def confirm_receipt(self, order_id: str, actor: Actor) -> Dict[str, Any]:
        """Buyer confirms the delivery arrived; completes the order."""
        def plan(order, status, now):
            self._expect(order_id, status, 'confirm receipt', S.DELIVERED_PENDING_CONFIRMATION)
            delivery = DeliveryInfo.model_validate(order.get('delivery') or {})
            delivery.buyer_confirmed_at = now
            return TransitionPlan(
                target=S.COMPLETED,
                fields={
                    'delivery': delivery.model_dump(mode='json'),
                    'completed_at': to_timestamp(now),
                },
                notifications=[('Order.ReceiptConfirmed', order.get('seller_id'), f"order:{order_id}")],
            )

        return await self._transition(
            order_id, actor, 'confirm_receipt', BUYER, TransportMode.CARRIER_DELIVERY, plan
        )

    # Buyer-pickup branch

    async def set_pickup_info(
        self,
        order_id: str,
        actor: Actor,
        location: str,
        windows: List[PickupWindow]
    ) -> Dict[str, Any]:
        """Seller publishes the pickup location and windows.

        A confirmation code is generated the first time and kept on updates.
        The returned document carries the code; the API only shows it to the seller.
        """
        if not location or not location.strip():
            raise OrderValidationError(order_id, "Pickup location is required")
        if not windows:
            raise OrderValidationError(order_id, "At least one pickup window is required")

        def plan(order, status, now):
            self._expect(order_id, status, 'set pickup info', *STARTABLE, S.READY_FOR_PICKUP)
            existing = order.get('pickup')
            current = PickupInfo.model_validate(existing) if existing else None
            if (status == S.READY_FOR_PICKUP and current is not None
                    and current.location == location.strip() and current.windows == list(windows)):
                return None

            pickup = PickupInfo(
                location=location.strip(),
                windows=list(windows),
                code=current.code if current else generate_pickup_code(),
                updated_at=now,
            )
            return TransitionPlan(
                target=S.READY_FOR_PICKUP,
                fields={'pickup': pickup.model_dump(mode='json')},
                metadata={'window_count': len(windows)},
                notifications=[('Order.PickupReady', order.get('buyer_id'),
                                f"order:{order_id}:pickup:{to_timestamp(now)}")],
            )

        return await self._transition(
            order_id, actor, 'set_pickup_info', SELLER, TransportMode.BUYER_PICKUP, plan
        )

    async def select_pickup_window(self, order_id: str, actor: Actor, window_index: int) -> Dict[str, Any]:
        def plan(order, status, now):
            pickup = PickupInfo.model_validate(order.get('pickup')) if order.get('pickup') else None
            if status == S.PICKUP_SCHEDULED and pickup and pickup.selected_window_index == window_index:
                return None
            self._expect(order_id, status, 'select pickup window', S.READY_FOR_PICKUP)
            if pickup is None:
                raise OrderValidationError(order_id, "Seller has not set pickup information")
            if not 0 <= window_index < len(pickup.windows):
                raise OrderValidationError(order_id, f"Invalid pickup window index {window_index}")

            pickup.selected_window_index = window_index
            pickup.selected_at = now
            return TransitionPlan(
                target=S.PICKUP_SCHEDULED,
                fields={'pickup': pickup.model_dump(mode='json')},
                metadata={'window_index': window_index},
                notifications=[('Order.PickupWindowSelected', order.get('seller_id'), f"order:{order_id}")],
            )

        return await self._transition(
            order_id, actor, 'select_pickup_window', BUYER, TransportMode.BUYER_PICKUP, plan
        )

    async def confirm_pickup(self, order_id: str, actor: Actor, code: str) -> Dict[str, Any]:
        """Buyer enters the seller's code at handover; completes the order."""
        def plan(order, status, now):
            self._expect(order_id, status, 'confirm pickup', S.PICKUP_SCHEDULED, S.PICKED_UP)
            pickup = PickupInfo.model_validate(order.get('pickup') or {})
            if not hmac.compare_digest(str(code or '').encode(), pickup.code.encode()):
                raise OrderValidationError(order_id, "Invalid pickup code")

            pickup.picked_up_at = pickup.picked_up_at or now
            pickup.confirmed_at = now
            return TransitionPlan(
                target=S.COMPLETED,
                fields={
                    'pickup': pickup.model_dump(mode='json'),
                    'completed_at': to_timestamp(now),
                },
                notifications=[('Order.PickupConfirmed', order.get('seller_id'), f"order:{order_id}")],
            )

        return await self._transition(
            order_id, actor, 'confirm_pickup', BUYER, TransportMode.BUYER_PICKUP, plan
        )

    # Dispute overlay

    async def open_dispute(
        self,
        order_id: str,
        actor: Actor,
        reason: str,
        notes: Optional[str] = None,
        evidence: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Buyer or seller disputes the order from any non-terminal paid status."""
        if not reason or not reason.strip():
            raise OrderValidationError(order_id, "Dispute reason is required")

        def plan(order, status, now):
            if status == S.DISPUTE_OPENED:
                dispute = order.get('dispute') or {}
                if dispute.get('opened_by') == actor.actor_id and dispute.get('reason') == reason:
                    return None
                raise TransitionConflictError(order_id, status.value, 'open dispute')
            if status == S.PENDING_PAYMENT:
                raise TransitionConflictError(order_id, status.value, 'open dispute')

            dispute = DisputeInfo(
                reason=reason,
                notes=notes,
                evidence=list(evidence or []),
                opened_by=actor.actor_id,
                opened_by_role=actor.role,
                opened_at=now,
                previous_status=status,
            )
            other = order.get('seller_id') if actor.actor_id == order.get('buyer_id') else order.get('buyer_id')
            return TransitionPlan(
                target=S.DISPUTE_OPENED,
                fields={'dispute': dispute.model_dump(mode='json')},
                metadata={'reason': reason, 'evidence_count': len(dispute.evidence)},
                notifications=[('Dispute.Opened', other, f"order:{order_id}")],
            )

        return await self._transition(order_id, actor, 'open_dispute', PARTY, None, plan)
