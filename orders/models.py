"""Pydantic models for orders, offers, listings and their sub-objects.

Models serialize to the JSON documents kept in the store with
``model_dump(mode='json')``; timestamps use the store's fixed-width format.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, model_validator

from database.store import to_timestamp
from .status import TransactionStatus, TransportMode

Timestamp = Annotated[datetime, PlainSerializer(to_timestamp, return_type=str, when_used='json')]

class ActorRole(str, Enum):
    BUYER = 'buyer'
    SELLER = 'seller'
    ADMIN = 'admin'
    SYSTEM = 'system'
    WEBHOOK = 'webhook'

class AuditSource(str, Enum):
    API = 'api'
    ADMIN_UI = 'admin_ui'
    CRON = 'cron'
    WEBHOOK = 'webhook'

class OfferStatus(str, Enum):
    OPEN = 'open'
    COUNTERED = 'countered'
    ACCEPTED = 'accepted'
    DECLINED = 'declined'
    EXPIRED = 'expired'

class RefundState(str, Enum):
    NONE = 'none'
    PARTIAL = 'partial'
    FULL = 'full'

class DisputeResolution(str, Enum):
    RELEASE = 'release'
    REFUND = 'refund'
    PARTIAL_REFUND = 'partial_refund'

class PickupWindow(BaseModel):
    start: Timestamp
    end: Timestamp

    @model_validator(mode='after')
    def check_order(self) -> 'PickupWindow':
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Pickup window times must include a timezone")
        if self.end <= self.start:
            raise ValueError("Pickup window end must be after start")
        return self

class PickupInfo(BaseModel):
    """Buyer-pickup branch data."""
    location: str
    windows: List[PickupWindow] = Field(min_length=1)
    code: str
    selected_window_index: Optional[int] = None
    selected_at: Optional[Timestamp] = None
    picked_up_at: Optional[Timestamp] = None
    confirmed_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

class DeliveryInfo(BaseModel):
    """Carrier-delivery branch data."""
    eta: Optional[Timestamp] = None
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    scheduled_at: Optional[Timestamp] = None
    out_for_delivery_at: Optional[Timestamp] = None
    delivered_at: Optional[Timestamp] = None
    proof_refs: List[str] = Field(default_factory=list)
    buyer_confirmed_at: Optional[Timestamp] = None

class DisputeInfo(BaseModel):
    is_open: bool = True
    reason: str
    notes: Optional[str] = None
    evidence: List[str] = Field(default_factory=list)
    opened_by: str
    opened_by_role: ActorRole
    opened_at: Timestamp
    previous_status: Optional[TransactionStatus] = None
    resolution: Optional[DisputeResolution] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[Timestamp] = None
    resolution_notes: Optional[str] = None

class Order(BaseModel):
    """Stored order document.

    Unknown fields written by older versions are kept as extras.
    """
    model_config = ConfigDict(extra='allow', use_enum_values=True)

    order_id: str
    buyer_id: str
    seller_id: str
    listing_id: str
    offer_id: Optional[str] = None
    currency: str = 'usd'
    amount: int
    platform_fee: int = 0
    seller_amount: int = 0
    transaction_status: Optional[TransactionStatus] = None
    transport_mode: Optional[TransportMode] = None
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None
    paid_at: Optional[Timestamp] = None
    completed_at: Optional[Timestamp] = None
    cancelled_at: Optional[Timestamp] = None
    fulfillment_sla_started_at: Optional[Timestamp] = None
    fulfillment_start_deadline_at: Optional[Timestamp] = None
    fulfillment_sla_deadline_at: Optional[Timestamp] = None
    pickup: Optional[PickupInfo] = None
    delivery: Optional[DeliveryInfo] = None
    dispute: Optional[DisputeInfo] = None
    refund_state: RefundState = RefundState.NONE
    refunded_amount: int = 0
    refund_ids: List[str] = Field(default_factory=list)
    refunded_at: Optional[Timestamp] = None
    refund_in_progress_at: Optional[Timestamp] = None
    refund_lock_id: Optional[str] = None
    admin_flags: List[str] = Field(default_factory=list)
    admin_hold: bool = False
    admin_notes: List[Dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode='after')
    def check_branch_data(self) -> 'Order':
        if self.pickup is not None and self.delivery is not None:
            raise ValueError("An order carries pickup data or delivery data, never both")
        mode = self.transport_mode
        if self.pickup is not None and mode == TransportMode.CARRIER_DELIVERY.value:
            raise ValueError("Pickup data on a carrier-delivery order")
        if self.delivery is not None and mode == TransportMode.BUYER_PICKUP.value:
            raise ValueError("Delivery data on a buyer-pickup order")
        return self

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')

class OfferHistoryEntry(BaseModel):
    type: str
    actor_id: str
    actor_role: ActorRole
    created_at: Timestamp
    amount: Optional[int] = None

class Offer(BaseModel):
    model_config = ConfigDict(extra='allow', use_enum_values=True)

    offer_id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    amount: int
    status: OfferStatus
    expires_at: Timestamp
    accepted_at: Optional[Timestamp] = None
    accepted_until: Optional[Timestamp] = None
    order_id: Optional[str] = None
    last_actor_role: Optional[ActorRole] = None
    history: List[OfferHistoryEntry] = Field(default_factory=list)
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

class Listing(BaseModel):
    model_config = ConfigDict(extra='allow')

    listing_id: str
    seller_id: str
    status: str = 'active'
    price: Optional[int] = None
    offer_reserved_by_offer_id: Optional[str] = None
    offer_reserved_at: Optional[Timestamp] = None
    offer_reserved_until: Optional[Timestamp] = None
    purchase_reserved_by_order_id: Optional[str] = None
    purchase_reserved_at: Optional[Timestamp] = None
    purchase_reserved_until: Optional[Timestamp] = None
    sold_at: Optional[Timestamp] = None
    sold_to_order_id: Optional[str] = None

class AuditEntry(BaseModel):
    """Append-only record of one state-changing action."""
    model_config = ConfigDict(use_enum_values=True)

    audit_id: str
    actor_id: str
    actor_role: ActorRole
    action_type: str
    entity_type: str
    entity_id: str
    order_id: Optional[str] = None
    listing_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    source: AuditSource
    created_at: Timestamp

class Actor(BaseModel):
    """Authenticated caller, as supplied by the auth layer."""
    model_config = ConfigDict(frozen=True)

    actor_id: str
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

SYSTEM_ACTOR = Actor(actor_id='system', role=ActorRole.SYSTEM)
