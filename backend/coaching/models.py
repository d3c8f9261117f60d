"""
Coaching Pipeline Data Models

Pydantic models for the records kept in the ledger store and for the
request/response bodies of the coaching API. Timestamps are stored as UTC
ISO strings and parsed back into aware datetimes here.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

EntitlementStatus = Literal["active", "completed", "expired"]
SenderRole = Literal["player", "provider", "system"]
MessageType = Literal["text", "video"]
TransferStatus = Literal["pending", "paid", "failed"]
TransferSource = Literal["ledger", "processor"]
RoutingMode = Literal["destination", "separate_transfer"]


# ==================== CATALOG ====================

class Package(BaseModel):
    """Catalog-defined package. Immutable."""
    model_config = {"frozen": True}

    sport: str
    tier: str  # "1", "2", "3" or "subscription"
    price: int
    clip_allowance: int
    validity_days: int


class FeeSplit(BaseModel):
    model_config = {"frozen": True}

    gross: int
    platform_fee: int
    net_amount: int


# ==================== ENTITLEMENT ====================

class Entitlement(BaseModel):
    """A coaching session: time-boxed, clip-bounded access bought by one payment."""
    id: str
    payment_reference: str
    provider_id: str
    provider_name: Optional[str] = None
    player_id: Optional[str] = None
    sport: str
    tier: str
    gross_amount: int
    currency: str
    clip_allowance: int
    clips_consumed: int = 0
    routing_mode: RoutingMode = "separate_transfer"
    created_at: datetime
    expires_at: datetime
    status: EntitlementStatus = "active"

    @property
    def clips_remaining(self) -> int:
        return max(self.clip_allowance - self.clips_consumed, 0)

    def effective_status(self, now: datetime) -> str:
        """Expiry is computed at check time; nothing polls for it."""
        if self.status == "active" and now > self.expires_at:
            return "expired"
        return self.status


# ==================== CONVERSATIONS ====================

class Conversation(BaseModel):
    id: str
    player_id: str
    player_name: Optional[str] = None
    provider_id: str
    provider_name: Optional[str] = None
    sport: Optional[str] = None
    linked_entitlement_id: Optional[str] = None
    linked_at: Optional[datetime] = None
    last_message: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    unread_counts: Dict[str, int] = Field(default_factory=lambda: {"player": 0, "provider": 0})
    status: Literal["active", "archived"] = "active"
    created_at: Optional[datetime] = None


class Message(BaseModel):
    """Append-only chat message."""
    id: str
    conversation_id: str
    sender_id: Optional[str] = None
    sender_role: SenderRole
    type: MessageType = "text"
    content: str
    video_uri: Optional[str] = None
    created_at: datetime


# ==================== TRANSFERS / ACCOUNTS ====================

class TransferRecord(BaseModel):
    id: str
    payment_reference: Optional[str] = None
    transfer_ref: Optional[str] = None  # processor transfer or charge id
    provider_id: Optional[str] = None
    provider_account_ref: Optional[str] = None
    gross_amount: int
    platform_fee: int = 0
    net_amount: int
    currency: Optional[str] = None
    status: TransferStatus
    source: TransferSource
    routing_mode: Optional[RoutingMode] = None
    payer_id: Optional[str] = None
    failure_reason: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime


class CoachAccount(BaseModel):
    provider_id: str
    processor_account_ref: Optional[str] = None
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    deauthorized: bool = False
    updated_at: Optional[datetime] = None

    @property
    def is_usable(self) -> bool:
        return bool(self.processor_account_ref) and not self.deauthorized


# ==================== PAYMENT EVENTS ====================

class PaymentEvent(BaseModel):
    """A verified successful payment, from the confirmation call or the webhook."""
    payment_reference: str
    provider_id: str
    provider_name: Optional[str] = None
    sport: str
    tier: Optional[str] = None
    gross_amount: int
    currency: str
    clip_allowance_hint: Optional[int] = None
    validity_days_hint: Optional[int] = None
    player_id: Optional[str] = None
    player_name: Optional[str] = None
    routing_mode: RoutingMode = "separate_transfer"
    destination_account_ref: Optional[str] = None
    charge_ref: Optional[str] = None  # settled charge, source of a separate transfer
    platform_fee: Optional[int] = None  # fee fixed at checkout, when the payment carries one
    customer_id: Optional[str] = None

    @classmethod
    def from_payment_intent(cls, intent: Dict) -> "PaymentEvent":
        from .events import parse_payment_intent

        return parse_payment_intent(intent)


# ==================== PROCESSOR RESULTS ====================

class ChargeResult(BaseModel):
    id: str
    client_secret: Optional[str] = None
    amount: int
    currency: str
    status: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    destination_account_ref: Optional[str] = None
    application_fee_amount: Optional[int] = None
    customer_id: Optional[str] = None
    raw: Dict = Field(default_factory=dict, exclude=True)


class TransferResult(BaseModel):
    id: str
    amount: int
    currency: str
    destination: str
    status: TransferStatus
    created_at: Optional[datetime] = None


class AccountStatus(BaseModel):
    processor_account_ref: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    provider_id: Optional[str] = None


class ChargeRecord(BaseModel):
    """A processor-side payment or transfer associated with a connected account."""
    id: str
    kind: Literal["charge", "transfer"] = "charge"
    payment_reference: Optional[str] = None
    amount: int
    application_fee_amount: Optional[int] = None
    currency: Optional[str] = None
    status: str
    customer_id: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime


class RefundResult(BaseModel):
    id: str
    amount: int
    status: str
    reason: Optional[str] = None


class AccountLink(BaseModel):
    """Hosted onboarding URL for a connected account. Single use, short lived."""
    url: str
    expires_at: Optional[datetime] = None


# ==================== SERVICE RESULTS ====================

class IssueResult(BaseModel):
    created: bool
    entitlement: Entitlement
    conversation_id: Optional[str] = None
    conversation_created: bool = False
    conversation_error: Optional[str] = None
    transfer: Optional[TransferRecord] = None
    routing_error: Optional[Dict] = None


class TransferSummary(BaseModel):
    total_earnings: int = 0
    pending_earnings: int = 0
    total_customers: int = 0
    total_transfers: int = 0
    degraded: bool = False


class TransferListing(BaseModel):
    records: List[TransferRecord]
    summary: TransferSummary


class QuotaResponse(BaseModel):
    conversation_id: str
    entitlement_id: Optional[str] = None
    status: str
    clips_remaining: int
    clips_total: int
    clips_used: int
    daily_messages_remaining: int
    daily_message_limit: int
    expires_at: Optional[datetime] = None


# ==================== REQUEST BODIES ====================

class CreateCheckoutRequest(BaseModel):
    coach_id: str
    coach_name: str
    sport: str
    tier: str = Field(..., description="1, 2, 3 or subscription")
    player_id: Optional[str] = None
    player_name: Optional[str] = None
    customer_email: Optional[str] = None
    routing_mode: RoutingMode = "separate_transfer"


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str


class RefundRequest(BaseModel):
    payment_intent_id: str
    amount: Optional[int] = Field(None, gt=0)
    reason: Optional[str] = None


class SendMessageRequest(BaseModel):
    sender_id: Optional[str] = None
    sender_role: SenderRole
    type: MessageType = "text"
    content: str = Field(..., min_length=1)
    video_uri: Optional[str] = None


class MarkReadRequest(BaseModel):
    role: Literal["player", "provider"]


class CreateAccountRequest(BaseModel):
    coach_id: str
    coach_name: str
    email: str
    sport: str
    country: Optional[str] = None
    business_type: Literal["individual", "company"] = "individual"


class OnboardingLinkRequest(BaseModel):
    refresh_url: Optional[str] = None
    return_url: Optional[str] = None
