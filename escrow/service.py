"""
Escrow Service

Wires the ledger, accounting engine, milestone workflow, onboarding state
machine, payout dispatch and reconciliation into one facade used by the API.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from .accounting import EscrowAccountingEngine
from .config import Settings
from .gateway import PayoutGateway, build_gateway
from .milestones import MilestoneWorkflow
from .models import (
    AllocateRequest,
    AllocationBreakdown,
    ApproveMilestoneRequest,
    CampaignEscrow,
    CreateCampaignRequest,
    CreateMilestoneRequest,
    CreatorEarnings,
    DepositRequest,
    DisputeMilestoneRequest,
    EventKind,
    LedgerEvent,
    LedgerHistoryResponse,
    LiquidityState,
    LockMilestoneRequest,
    Milestone,
    MilestoneResponse,
    OnboardingCommand,
    OnboardingRecord,
    OnboardingStatus,
    OnboardingStatusView,
    PayoutRecord,
    PayoutStatus,
    ReconciliationTask,
    RefundMilestoneRequest,
    ResolveDisputeRequest,
    SubjectType,
    SubmitMilestoneRequest,
    WalletBalance,
    WalletSummary,
    WebhookResult,
    WithdrawRequest,
)
from .notifications import LoggingNotifier, Notifier
from .onboarding import TERMINAL as ONBOARDING_TERMINAL, OnboardingStateMachine
from .payouts import TERMINAL as PAYOUT_TERMINAL, PayoutDispatcher
from .reconciliation import ReconciliationScheduler
from .store import Clock, InMemoryStorage, LedgerStore, utc_now

logger = logging.getLogger(__name__)

# Ratio of available funds to funds committed in escrow.
LIQUIDITY_WATCH = 2.0
LIQUIDITY_RISK = 1.0
UNCOMMITTED_RATIO = 99.0

IN_FLIGHT = (PayoutStatus.PENDING, PayoutStatus.PROCESSING)


class EscrowService:
    """
    Facade over the escrow core.

    Onboarding approval automatically releases every milestone that was
    waiting on the creator's payout setup; non-terminal onboarding and payout
    records are kept under reconciliation until the provider reports a
    terminal state.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        gateway: Optional[PayoutGateway] = None,
        settings: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
        clock: Clock = utc_now,
    ):
        self.settings = settings or Settings.from_env()
        self.clock = clock
        self.notifier = notifier or LoggingNotifier()
        self.ledger = LedgerStore(storage, clock)
        self.storage = self.ledger.storage
        self.gateway = gateway or build_gateway(self.settings, clock)

        self.onboarding = OnboardingStateMachine(self.ledger, self.gateway, self.settings, self.notifier, clock)
        self.payouts = PayoutDispatcher(
            self.ledger, self.gateway, self.onboarding.beneficiary_for, self.notifier, clock
        )
        self.engine = EscrowAccountingEngine(self.ledger, self.settings, self.onboarding.is_payout_ready, self.payouts)
        self.milestones = MilestoneWorkflow(self.engine, self.payouts, self.notifier)
        self.scheduler = ReconciliationScheduler(self.storage, self.settings, self.notifier, clock)

        self.scheduler.register(SubjectType.ONBOARDING, self.onboarding.reconcile)
        self.scheduler.register(SubjectType.PAYOUT, self.payouts.reconcile)
        self.onboarding.subscribe(self._on_onboarding_change)
        self.payouts.subscribe(self._on_payout_change)

    # -- wallets -----------------------------------------------------------

    def deposit(self, wallet_id: str, request: DepositRequest) -> LedgerEvent:
        return self.engine.deposit(wallet_id, request.amount, request.idempotency_key, request.currency)

    def withdraw(self, wallet_id: str, request: WithdrawRequest) -> LedgerEvent:
        return self.engine.withdraw(wallet_id, request.amount, request.idempotency_key)

    def get_balance(self, wallet_id: str) -> WalletBalance:
        return self.ledger.balance(wallet_id)

    def get_ledger_history(
        self, wallet_id: str, limit: int = 50, offset: int = 0, kind: Optional[EventKind] = None
    ) -> LedgerHistoryResponse:
        entries, total = self.ledger.history(wallet_id, limit, offset, kind)
        return LedgerHistoryResponse(
            wallet_id=wallet_id, entries=entries, total_count=total, balance=self.ledger.balance(wallet_id),
        )

    def wallet_summary(self, wallet_id: str) -> WalletSummary:
        balance = self.ledger.balance(wallet_id)
        campaigns = self.engine.campaigns_for_wallet(wallet_id)
        milestones = [m for c in campaigns for m in c.milestones]
        payouts = [p for c in campaigns for p in self.payouts.for_campaign(c.campaign_id)]

        awaiting_setup = [m for m in milestones if m.payout_pending]
        awaiting_amount = sum(m.locked_amount for m in awaiting_setup)
        in_flight = sum(p.amount for p in payouts if p.status in IN_FLIGHT)
        unlocked = sum(c.lock_headroom for c in campaigns)

        available, escrow = balance.available, balance.locked
        if escrow == 0:
            ratio = UNCOMMITTED_RATIO if available > 0 else 0.0
        else:
            ratio = round(available / escrow, 2)

        if available <= 0 and escrow == 0:
            state = LiquidityState.RISK
            explanation = "No funds available. Deposit funds to start a campaign."
        elif ratio < LIQUIDITY_RISK:
            state = LiquidityState.RISK
            explanation = "Available funds do not cover what is committed in escrow."
        elif ratio < LIQUIDITY_WATCH:
            state = LiquidityState.WATCH
            explanation = "Available funds cover escrow commitments with little margin."
        else:
            state = LiquidityState.HEALTHY
            explanation = "Available funds comfortably cover escrow commitments."

        notes = []
        if escrow:
            locked_count = sum(1 for m in milestones if m.locked_amount > 0)
            notes.append(f"{escrow} locked in escrow across {locked_count} milestone(s)")
        if awaiting_amount:
            notes.append(f"{awaiting_amount} approved, pending creator payout setup")
        if in_flight:
            notes.append(f"{in_flight} released, payout in progress")
        if unlocked:
            notes.append(f"{unlocked} allocated to campaigns but not yet locked for milestones")
        if balance.withdrawn:
            notes.append(f"{balance.withdrawn} withdrawn")

        return WalletSummary(
            wallet_id=wallet_id,
            currency=balance.currency,
            available_balance=available,
            unallocated=balance.unallocated,
            escrow_amount=escrow,
            pending_payouts=awaiting_amount + in_flight,
            liquidity_ratio=ratio,
            liquidity_state=state,
            liquidity_explanation=explanation,
            deposited=balance.deposited,
            locked=balance.locked,
            released=balance.released,
            withdrawn=balance.withdrawn,
            notes=notes,
        )

    # -- campaigns and milestones -------------------------------------------

    def create_campaign(self, request: CreateCampaignRequest) -> CampaignEscrow:
        return self.engine.create_campaign(
            request.campaign_id, request.wallet_id, request.target_budget, request.currency
        )

    def get_campaign(self, campaign_id: str) -> CampaignEscrow:
        return self.engine.campaign(campaign_id)

    def allocation_breakdown(self, target_budget: int) -> AllocationBreakdown:
        return self.engine.allocation_breakdown(target_budget)

    def allocate(self, campaign_id: str, request: AllocateRequest) -> LedgerEvent:
        return self.engine.allocate_to_campaign(
            request.wallet_id, campaign_id, request.amount, request.idempotency_key
        )

    def add_milestone(self, campaign_id: str, request: CreateMilestoneRequest) -> Milestone:
        return self.engine.add_milestone(
            campaign_id, request.milestone_id, request.creator_id, request.amount, request.due_date
        )

    def lock_milestone(self, campaign_id: str, milestone_id: str, request: LockMilestoneRequest) -> MilestoneResponse:
        return self.milestones.lock(campaign_id, milestone_id, request.idempotency_key, request.amount)

    def submit_milestone(
        self, campaign_id: str, milestone_id: str, request: SubmitMilestoneRequest
    ) -> MilestoneResponse:
        return self.milestones.submit(
            campaign_id, milestone_id, request.submitted_by, request.submission_ref, request.idempotency_key
        )

    def approve_milestone(
        self, campaign_id: str, milestone_id: str, request: ApproveMilestoneRequest
    ) -> MilestoneResponse:
        return self.milestones.approve(campaign_id, milestone_id, request.approver_id, request.idempotency_key)

    def dispute_milestone(
        self, campaign_id: str, milestone_id: str, request: DisputeMilestoneRequest
    ) -> MilestoneResponse:
        return self.milestones.dispute(
            campaign_id, milestone_id, request.actor_id, request.reason, request.idempotency_key
        )

    def resolve_dispute(
        self, campaign_id: str, milestone_id: str, request: ResolveDisputeRequest
    ) -> MilestoneResponse:
        return self.milestones.resolve_dispute(campaign_id, milestone_id, request.target, request.idempotency_key)

    def refund_milestone(
        self, campaign_id: str, milestone_id: str, request: RefundMilestoneRequest
    ) -> MilestoneResponse:
        return self.milestones.refund(campaign_id, milestone_id, request.idempotency_key)

    # -- creators ----------------------------------------------------------

    def initiate_onboarding(self, creator_id: str, request: OnboardingCommand) -> OnboardingStatusView:
        self.onboarding.initiate(creator_id, request.idempotency_key, name=request.name, email=request.email)
        return self.onboarding.status_view(creator_id)

    def regenerate_onboarding_link(self, creator_id: str, request: OnboardingCommand) -> OnboardingStatusView:
        self.onboarding.regenerate_link(creator_id, request.idempotency_key)
        return self.onboarding.status_view(creator_id)

    def onboarding_status(self, creator_id: str) -> OnboardingStatusView:
        return self.onboarding.status_view(creator_id)

    def creator_earnings(self, creator_id: str) -> CreatorEarnings:
        payouts = self.payouts.for_creator(creator_id)
        awaiting = [
            self.engine.milestone(row["id"]) for row in list(self.storage.milestones.values())
            if row["creator_id"] == creator_id and row["payout_pending"]
        ]
        earnings = CreatorEarnings(
            creator_id=creator_id,
            awaiting_payout_setup=sum(m.locked_amount for m in awaiting),
            in_payout=sum(p.amount for p in payouts if p.status in IN_FLIGHT),
            paid_out=sum(p.amount for p in payouts if p.status == PayoutStatus.COMPLETED),
            failed=sum(p.amount for p in payouts if p.status == PayoutStatus.FAILED),
            payouts=payouts,
        )
        if earnings.awaiting_payout_setup:
            earnings.notes.append(
                f"{earnings.awaiting_payout_setup} approved, pending payout setup. "
                "Complete payout onboarding to receive these funds."
            )
        if earnings.in_payout:
            earnings.notes.append(f"{earnings.in_payout} released, payout in progress")
        if earnings.failed:
            earnings.notes.append(f"{earnings.failed} in failed payouts, contact support")
        return earnings

    # -- provider callbacks and reconciliation --------------------------------

    def handle_webhook(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookResult:
        event = self.gateway.parse_webhook(raw_payload, signature_header)
        logger.info("Webhook %s received", event.event_type)
        if event.subject_type == SubjectType.PAYOUT:
            return self.payouts.apply_webhook(event)
        return self.onboarding.apply_webhook(event)

    def run_reconciliation(self, now: Optional[datetime] = None) -> list[dict]:
        return self.scheduler.run_due(now)

    def start_reconciliation(self, interval: Optional[float] = None) -> None:
        self.scheduler.start(interval or self.settings.reconcile_interval)

    def stop_reconciliation(self) -> None:
        self.scheduler.stop()

    def stalled_tasks(self) -> list[ReconciliationTask]:
        return self.scheduler.stalled()

    def requeue_task(self, task_id: UUID) -> ReconciliationTask:
        return self.scheduler.requeue(task_id)

    def _on_onboarding_change(self, record: OnboardingRecord, previous: OnboardingStatus) -> None:
        if record.status in ONBOARDING_TERMINAL:
            self.scheduler.untrack(SubjectType.ONBOARDING, record.creator_id)
        else:
            self.scheduler.track(SubjectType.ONBOARDING, record.creator_id)
        if record.status == OnboardingStatus.APPROVED and previous != OnboardingStatus.APPROVED:
            released = self.milestones.retry_payout_pending(record.creator_id)
            if released:
                logger.info("Released %d milestone(s) for creator %s after onboarding approval",
                            len(released), record.creator_id)

    def _on_payout_change(self, record: PayoutRecord, previous: PayoutStatus) -> None:
        if record.status in PAYOUT_TERMINAL:
            self.scheduler.untrack(SubjectType.PAYOUT, str(record.payout_id))
        else:
            self.scheduler.track(SubjectType.PAYOUT, str(record.payout_id))
