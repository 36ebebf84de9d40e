from datetime import date, datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class EventKind(str, Enum):
    DEPOSIT = "Deposit"
    ALLOCATE = "Allocate"
    LOCK = "Lock"
    RELEASE = "Release"
    REFUND = "Refund"
    WITHDRAW = "Withdraw"


class MilestoneStatus(str, Enum):
    PENDING = "Pending"
    SUBMITTED = "Submitted"
    APPROVED = "Approved"
    RELEASED = "Released"
    DISPUTED = "Disputed"


class OnboardingStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    LINK_GENERATED = "LinkGenerated"
    IN_PROGRESS = "InProgress"
    PENDING_APPROVAL = "PendingApproval"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class ProviderStatus(str, Enum):
    """Closed set of onboarding statuses the payout provider can report."""
    STARTED = "started"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


class PayoutStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"


class PayoutProviderStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class SubjectType(str, Enum):
    ONBOARDING = "Onboarding"
    PAYOUT = "Payout"


class TaskStatus(str, Enum):
    SCHEDULED = "Scheduled"
    STALLED = "StalledNeedsOperator"


class LiquidityState(str, Enum):
    HEALTHY = "healthy"
    WATCH = "watch"
    RISK = "risk"


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class LedgerEvent(BaseModel):
    """Immutable balance-affecting fact. Amounts are integer minor units."""

    id: UUID
    wallet_id: str
    campaign_id: Optional[str] = None
    milestone_id: Optional[str] = None
    kind: EventKind
    amount: int = Field(..., gt=0)
    currency: str
    created_at: datetime
    causation_id: str
    sequence: int = Field(..., ge=1, description="Per-wallet order assigned at append time")
    position: int = Field(..., ge=1, description="Global append order")

    model_config = ConfigDict(frozen=True, from_attributes=True)

    def same_command(self, other: "LedgerEvent") -> bool:
        return (
            self.wallet_id == other.wallet_id
            and self.kind == other.kind
            and self.amount == other.amount
            and self.campaign_id == other.campaign_id
            and self.milestone_id == other.milestone_id
        )


class WalletBalance(BaseModel):
    wallet_id: str
    currency: Optional[str] = None
    deposited: int = 0
    allocated: int = 0
    locked: int = 0
    released: int = 0
    refunded: int = 0
    withdrawn: int = 0
    last_sequence: int = 0

    model_config = ConfigDict(from_attributes=True)

    @property
    def available(self) -> int:
        return self.deposited - self.locked - self.released - self.withdrawn

    @property
    def unallocated(self) -> int:
        return self.deposited - self.allocated - self.withdrawn


class Milestone(BaseModel):
    id: str
    campaign_id: str
    creator_id: str
    amount: int = Field(..., gt=0)
    due_date: Optional[date] = None
    status: MilestoneStatus = MilestoneStatus.PENDING
    locked_amount: int = 0
    payout_pending: bool = False
    submission_ref: Optional[str] = None
    submitted_by: Optional[str] = None
    approved_by: Optional[str] = None
    disputed_by: Optional[str] = None
    dispute_reason: Optional[str] = None
    payout_id: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CampaignEscrow(BaseModel):
    campaign_id: str
    wallet_id: str
    currency: str
    target_budget: int
    allocation_allowance: int
    funded_amount: int = 0
    locked_amount: int = 0
    released_amount: int = 0
    refunded_amount: int = 0
    milestones: list[Milestone] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @property
    def escrow_balance(self) -> int:
        return self.funded_amount - self.released_amount

    @property
    def lock_headroom(self) -> int:
        return self.funded_amount - self.locked_amount - self.released_amount


# ---------------------------------------------------------------------------
# Onboarding and payouts
# ---------------------------------------------------------------------------


class BankDetails(BaseModel):
    bank_name: Optional[str] = None
    last_four: Optional[str] = None
    country: Optional[str] = None
    currency: Optional[str] = None
    connected_at: Optional[datetime] = None


class OnboardingRecord(BaseModel):
    creator_id: str
    status: OnboardingStatus = OnboardingStatus.NOT_STARTED
    external_entity_id: Optional[str] = None
    external_beneficiary_id: Optional[str] = None
    onboarding_link: Optional[str] = None
    link_expires_at: Optional[datetime] = None
    last_provider_status: Optional[ProviderStatus] = None
    bank_details: Optional[BankDetails] = None
    attempt: int = 0
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def link_expired(self, now: datetime) -> bool:
        return (
            self.status == OnboardingStatus.LINK_GENERATED
            and self.link_expires_at is not None
            and self.link_expires_at <= now
        )

    def effective_status(self, now: datetime) -> OnboardingStatus:
        if self.link_expired(now):
            return OnboardingStatus.NOT_STARTED
        return self.status


class PayoutRecord(BaseModel):
    payout_id: UUID
    creator_id: str
    campaign_id: str
    milestone_id: str
    amount: int = Field(..., gt=0)
    currency: str
    status: PayoutStatus = PayoutStatus.PENDING
    external_payout_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def reference_id(self) -> str:
        return f"payout_{self.payout_id}"


class ReconciliationTask(BaseModel):
    id: UUID
    subject_type: SubjectType
    subject_id: str
    next_poll_at: datetime
    attempt: int = 0
    status: TaskStatus = TaskStatus.SCHEDULED
    last_error: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Gateway boundary
# ---------------------------------------------------------------------------


class OnboardingSession(BaseModel):
    entity_id: str
    link: str
    expires_at: datetime


class OnboardingLink(BaseModel):
    link: str
    expires_at: datetime


class WebhookEvent(BaseModel):
    event_type: str
    subject_type: SubjectType
    entity_id: Optional[str] = None
    reference_id: Optional[str] = None
    provider_status: Optional[ProviderStatus] = None
    payout_status: Optional[PayoutProviderStatus] = None
    external_payout_id: Optional[str] = None
    beneficiary_id: Optional[str] = None
    bank_details: Optional[BankDetails] = None
    failure_reason: Optional[str] = None


class WebhookResult(BaseModel):
    received: bool = True
    subject_type: SubjectType
    subject_id: Optional[str] = None
    applied: bool
    message: str


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class DepositRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1, description="Unique key to prevent duplicates")
    amount: int = Field(..., gt=0, description="Minor units")
    currency: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"idempotency_key": "deposit-brand-42-2025-01", "amount": 500000, "currency": "USD"}
    })


class WithdrawRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)


class CreateCampaignRequest(BaseModel):
    campaign_id: str
    wallet_id: str
    target_budget: int = Field(..., gt=0)
    currency: Optional[str] = None


class AllocateRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1)
    wallet_id: str
    amount: int = Field(..., gt=0)


class CreateMilestoneRequest(BaseModel):
    milestone_id: str
    creator_id: str
    amount: int = Field(..., gt=0)
    due_date: Optional[date] = None


class LockMilestoneRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1)
    amount: Optional[int] = Field(default=None, gt=0)


class SubmitMilestoneRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1)
    submitted_by: str
    submission_ref: Optional[str] = None


class ApproveMilestoneRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1)
    approver_id: str


class DisputeMilestoneRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1)
    actor_id: str
    reason: str = Field(..., description="Reason for dispute")


class ResolveDisputeRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1)
    target: MilestoneStatus


class RefundMilestoneRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1)


class OnboardingCommand(BaseModel):
    idempotency_key: str = Field(..., min_length=1)
    name: Optional[str] = None
    email: Optional[str] = None


# ---------------------------------------------------------------------------
# Responses and read models
# ---------------------------------------------------------------------------


class MilestoneResponse(BaseModel):
    milestone: Milestone
    ledger_events: list[LedgerEvent] = Field(default_factory=list)
    message: str


class LedgerHistoryResponse(BaseModel):
    wallet_id: str
    entries: list[LedgerEvent]
    total_count: int
    balance: WalletBalance


class AllocationBreakdown(BaseModel):
    target_budget: int
    platform_fee_bps: int
    processing_fee_bps: int
    platform_fee: int
    processing_fee: int
    total_required: int


class OnboardingStatusView(BaseModel):
    creator_id: str
    onboarding_status: OnboardingStatus
    provider_status: Optional[ProviderStatus] = None
    is_complete: bool
    is_active: bool
    onboarding_link: Optional[str] = None
    link_expired: bool
    expires_at: Optional[datetime] = None
    entity_id: Optional[str] = None
    beneficiary_id: Optional[str] = None
    bank_details: Optional[BankDetails] = None


class WalletSummary(BaseModel):
    wallet_id: str
    currency: Optional[str] = None
    available_balance: int
    unallocated: int
    escrow_amount: int
    pending_payouts: int
    liquidity_ratio: float
    liquidity_state: LiquidityState
    liquidity_explanation: str
    deposited: int
    locked: int
    released: int
    withdrawn: int
    notes: list[str] = Field(default_factory=list)


class CreatorEarnings(BaseModel):
    creator_id: str
    awaiting_payout_setup: int = 0
    in_payout: int = 0
    paid_out: int = 0
    failed: int = 0
    payouts: list[PayoutRecord] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
