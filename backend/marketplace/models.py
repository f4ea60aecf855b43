from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["client", "provider", "inspector", "admin"]

ProviderType = Literal["provider", "inspector"]

JobStatus = Literal[
    "open",
    "quoted",
    "negotiating",
    "accepted",
    "in_progress",
    "completed",
    "delivered",
    "closed",
    "cancelled",
    "rejected",
    "disputed",
    "on_hold",
]

QuotationStatus = Literal["pending", "accepted", "rejected", "negotiating"]

PaymentStatus = Literal["pending", "succeeded", "failed", "cancelled"]

WithdrawalMethod = Literal["bank_transfer", "paypal", "stripe", "crypto"]

WithdrawalStatus = Literal["pending", "processing", "completed", "rejected", "cancelled"]


class Principal(BaseModel):
    id: str
    role: Role


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


# Fee settings


class MethodFee(BaseModel):
    model_config = ConfigDict(frozen=True)

    percentage: Decimal = Decimal("0")
    fixed: Decimal = Decimal("0")


def _default_withdrawal_fees() -> Dict[str, MethodFee]:
    return {
        "bank_transfer": MethodFee(percentage=Decimal("0"), fixed=Decimal("0")),
        "paypal": MethodFee(percentage=Decimal("1"), fixed=Decimal("0")),
        "stripe": MethodFee(percentage=Decimal("0.5"), fixed=Decimal("0")),
        "crypto": MethodFee(percentage=Decimal("2"), fixed=Decimal("0")),
    }


class FeeSettings(BaseModel):
    """Immutable snapshot of the fee configuration; ``version`` grows on every write."""

    model_config = ConfigDict(frozen=True)

    version: int = 0
    platform_fee_percentage: Decimal = Decimal("5")
    processing_fee_percentage: Decimal = Decimal("2.9")
    fixed_processing_fee: Decimal = Decimal("0.3")
    provider_commission_percentage: Decimal = Decimal("85")
    inspector_commission_percentage: Decimal = Decimal("80")
    minimum_withdrawal_amount: Decimal = Decimal("10")
    withdrawal_processing_days: int = 7
    withdrawal_fees: Dict[str, MethodFee] = Field(default_factory=_default_withdrawal_fees)
    updated_by: Optional[str] = None
    created_at: Optional[str] = None


class MethodFeeUpdate(BaseModel):
    percentage: Optional[Decimal] = None
    fixed: Optional[Decimal] = None


class FeeSettingsUpdateRequest(BaseModel):
    platform_fee_percentage: Optional[Decimal] = None
    processing_fee_percentage: Optional[Decimal] = None
    fixed_processing_fee: Optional[Decimal] = None
    provider_commission_percentage: Optional[Decimal] = None
    inspector_commission_percentage: Optional[Decimal] = None
    minimum_withdrawal_amount: Optional[Decimal] = None
    withdrawal_processing_days: Optional[int] = None
    withdrawal_fees: Optional[Dict[str, MethodFeeUpdate]] = None


class PublicFeeSettings(BaseModel):
    platform_fee_percentage: Decimal
    processing_fee_percentage: Decimal
    fixed_processing_fee: Decimal


class PaymentBreakdown(BaseModel):
    base_amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    total_fees: Decimal
    total_amount: Decimal


class EarningsBreakdown(BaseModel):
    payment_amount: Decimal
    commission_percentage: Decimal
    earnings: Decimal
    platform_share: Decimal


class WithdrawalBreakdown(BaseModel):
    method: str
    fee: Decimal
    net_amount: Decimal


class FeePreviewRequest(BaseModel):
    amount: Decimal
    user_type: ProviderType = "provider"
    withdrawal_method: Optional[str] = None


class FeePreview(BaseModel):
    input_amount: Decimal
    user_type: ProviderType
    settings_version: int
    payment_breakdown: PaymentBreakdown
    earnings_breakdown: EarningsBreakdown
    withdrawal_breakdown: Optional[WithdrawalBreakdown] = None


# Job requests


class Negotiation(BaseModel):
    id: str
    quotation_id: str
    sequence: int
    message: str
    proposed_amount: Optional[Decimal] = None
    counter_offer: Optional[str] = None
    from_client: bool
    created_by: str
    created_at: str


class ClientResponse(BaseModel):
    message: str = ""
    responded_at: str
    responded_by: str


class Quotation(BaseModel):
    id: str
    job_id: str
    provider_id: str
    quoted_amount: Decimal
    currency: str = "USD"
    quotation_details: str = ""
    valid_until: Optional[str] = None
    status: QuotationStatus
    client_response: Optional[ClientResponse] = None
    negotiations: list[Negotiation] = Field(default_factory=list)
    created_at: str


class InternalNote(BaseModel):
    id: str
    job_id: str
    note: str
    note_type: Literal["general", "technical", "commercial", "logistics"] = "general"
    added_by: str
    added_at: str


AttachmentCategory = Literal["drawing", "specification", "report", "certificate", "photo", "other"]


class Attachment(BaseModel):
    id: str
    job_id: str
    file_name: str
    original_file_name: str
    file_url: str
    file_type: str
    file_size: int
    category: AttachmentCategory = "other"
    uploaded_by: str
    uploaded_at: str


class ClientRating(BaseModel):
    rating: int = Field(ge=1, le=5)
    review: str = ""
    submitted_at: str


class JobRequest(BaseModel):
    id: str
    client_id: str
    assigned_provider_id: str
    provider_type: ProviderType = "provider"
    title: str
    description: str
    location: str
    region: str
    required_services: list[str] = Field(default_factory=list)
    estimated_total: Decimal
    urgency_level: Literal["low", "medium", "high", "urgent"] = "medium"
    status: JobStatus
    payment_status: Literal["unpaid", "paid"] = "unpaid"
    payment_amount: Optional[Decimal] = None
    paid_at: Optional[str] = None
    final_quotation_id: Optional[str] = None
    preferred_start_date: Optional[str] = None
    actual_start_date: Optional[str] = None
    expected_completion_date: Optional[str] = None
    actual_completion_date: Optional[str] = None
    client_rating: Optional[ClientRating] = None
    created_at: str
    updated_at: str


class JobRequestDetails(BaseModel):
    job: JobRequest
    quotations: list[Quotation] = Field(default_factory=list)
    notes: list[InternalNote] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)


class JobRequestPage(BaseModel):
    items: list[JobRequest]
    pagination: Pagination


class JobStats(BaseModel):
    total_jobs: int
    status_breakdown: Dict[str, int] = Field(default_factory=dict)
    total_value: Decimal = Decimal("0")
    average_value: Decimal = Decimal("0")


class JobRequestCreate(BaseModel):
    title: str
    description: str
    location: str
    region: str
    assigned_provider_id: str
    provider_type: ProviderType = "provider"
    required_services: list[str] = Field(default_factory=list)
    estimated_total: Decimal
    urgency_level: Literal["low", "medium", "high", "urgent"] = "medium"
    preferred_start_date: Optional[str] = None
    expected_completion_date: Optional[str] = None
    client_id: Optional[str] = None


class JobRequestUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    region: Optional[str] = None
    required_services: Optional[list[str]] = None
    estimated_total: Optional[Decimal] = None
    urgency_level: Optional[Literal["low", "medium", "high", "urgent"]] = None
    preferred_start_date: Optional[str] = None
    expected_completion_date: Optional[str] = None


class JobStatusUpdateRequest(BaseModel):
    status: JobStatus
    reason: Optional[str] = None
    final_quotation_id: Optional[str] = None


class QuotationCreateRequest(BaseModel):
    quoted_amount: Optional[Decimal] = None
    quotation_details: str = ""
    valid_until: Optional[str] = None
    currency: str = "USD"


class QuotationStatusUpdateRequest(BaseModel):
    status: Literal["accepted", "rejected", "negotiating"]
    client_message: str = ""


class NegotiationCreateRequest(BaseModel):
    message: str
    proposed_amount: Optional[Decimal] = None
    counter_offer: Optional[str] = None


class NoteCreateRequest(BaseModel):
    note: str
    note_type: Literal["general", "technical", "commercial", "logistics"] = "general"


class AttachmentCreateRequest(BaseModel):
    file_name: str
    original_file_name: str
    file_url: str
    file_type: str
    file_size: int = Field(ge=0)
    category: AttachmentCategory = "other"


class RatingRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    review: str = Field(default="", max_length=1000)


# Payments


class Payment(BaseModel):
    id: str
    job_id: str
    client_id: str
    gateway_intent_id: str
    currency: str
    amount_minor_units: int
    base_amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    total_amount: Decimal
    status: PaymentStatus
    refund_required: bool = False
    created_at: str
    updated_at: str


class PaymentIntentRequest(BaseModel):
    job_id: str
    currency: Optional[str] = None
    description: Optional[str] = None


class PaymentIntentResponse(BaseModel):
    client_secret: str
    payment_intent_id: str
    payment_id: str
    amount: Decimal
    amount_minor_units: int
    breakdown: PaymentBreakdown


class ConfirmPaymentRequest(BaseModel):
    job_id: str
    payment_intent_id: str


class ConfirmPaymentResponse(BaseModel):
    payment: Payment
    job: JobRequest


class WebhookResult(BaseModel):
    received: bool = True
    event_type: str
    action: Literal["settled", "failed", "duplicate", "ignored"]


class PaymentPage(BaseModel):
    items: list[Payment]
    pagination: Pagination


# Ledger and withdrawals


class ProviderBalance(BaseModel):
    owner_id: str
    total_earnings: Decimal = Decimal("0")
    available_balance: Decimal = Decimal("0")
    pending_balance: Decimal = Decimal("0")
    total_withdrawn: Decimal = Decimal("0")
    last_updated: str


class BalanceEvent(BaseModel):
    id: int
    owner_id: str
    event_type: Literal[
        "recomputed",
        "job_settled",
        "withdrawal_requested",
        "withdrawal_processing",
        "withdrawal_completed",
        "withdrawal_reversed",
    ]
    reference_id: Optional[str] = None
    amount: Decimal
    total_earnings: Decimal
    available_balance: Decimal
    pending_balance: Decimal
    total_withdrawn: Decimal
    created_at: str


class EarningRecord(BaseModel):
    job_id: str
    job_title: str
    client_id: str
    payment_amount: Decimal
    commission_percentage: Decimal
    earnings: Decimal
    paid_at: Optional[str] = None


class EarningsPage(BaseModel):
    items: list[EarningRecord]
    pagination: Pagination


class BankDetails(BaseModel):
    account_number: str = ""
    routing_number: str = ""
    bank_name: str = ""
    account_holder_name: str = ""
    swift_code: str = ""


class PaypalDetails(BaseModel):
    email: str = ""


class CryptoDetails(BaseModel):
    wallet_address: str = ""
    currency: str = ""


class WithdrawalCreateRequest(BaseModel):
    amount: Decimal
    withdrawal_method: str
    bank_details: Optional[BankDetails] = None
    paypal_details: Optional[PaypalDetails] = None
    crypto_details: Optional[CryptoDetails] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AdminNote(BaseModel):
    note: str
    added_by: str
    added_at: str


class Withdrawal(BaseModel):
    id: str
    owner_id: str
    amount: Decimal
    withdrawal_method: WithdrawalMethod
    bank_details: Optional[BankDetails] = None
    paypal_details: Optional[PaypalDetails] = None
    crypto_details: Optional[CryptoDetails] = None
    status: WithdrawalStatus
    processing_fee: Decimal
    net_amount: Decimal
    currency: str = "USD"
    transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    requested_at: str
    processed_at: Optional[str] = None
    completed_at: Optional[str] = None
    rejected_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    admin_notes: list[AdminNote] = Field(default_factory=list)


class WithdrawalStatusUpdateRequest(BaseModel):
    status: WithdrawalStatus
    admin_note: str = ""
    transaction_id: Optional[str] = None


class WithdrawalPage(BaseModel):
    items: list[Withdrawal]
    pagination: Pagination


# Status change feed

StatusEventType = Literal[
    "job.created",
    "job.status_changed",
    "quotation.created",
    "quotation.status_changed",
    "quotation.negotiation",
    "payment.succeeded",
    "payment.failed",
    "payment.refund_required",
    "withdrawal.requested",
    "withdrawal.status_changed",
]


class StatusEvent(BaseModel):
    id: int
    event_type: StatusEventType
    subject_type: Literal["job", "quotation", "payment", "withdrawal"]
    subject_id: str
    job_id: Optional[str] = None
    status: Optional[str] = None
    recipient_ids: list[str] = Field(default_factory=list)
    actor_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: str


class StatusEventPage(BaseModel):
    items: list[StatusEvent]
    next_after_id: int


class ExpiringQuotation(BaseModel):
    quotation_id: str
    job_id: str
    job_title: str
    client_id: str
    provider_id: str
    quoted_amount: Decimal
    currency: str
    status: QuotationStatus
    valid_until: str
