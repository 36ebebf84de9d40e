from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, configure_logging
from .errors import EscrowError
from .gateway import SIGNATURE_HEADER
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
    LockMilestoneRequest,
    Milestone,
    MilestoneResponse,
    OnboardingCommand,
    OnboardingStatusView,
    ReconciliationTask,
    RefundMilestoneRequest,
    ResolveDisputeRequest,
    SubmitMilestoneRequest,
    WalletBalance,
    WalletSummary,
    WebhookResult,
    WithdrawRequest,
)
from .service import EscrowService

settings = Settings.from_env()
configure_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.reconcile_in_background:
        escrow_service.start_reconciliation(settings.reconcile_interval)
    yield
    escrow_service.stop_reconciliation()


app = FastAPI(
    title="Creator Escrow API",
    description="Milestone escrow for creator campaigns with an append-only ledger and gated payouts",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

escrow_service = EscrowService(settings=settings)

STATUS_BY_CODE = {
    "NotFound": status.HTTP_404_NOT_FOUND,
    "ValidationError": status.HTTP_400_BAD_REQUEST,
    "UnparseablePayload": status.HTTP_400_BAD_REQUEST,
    "InvalidSignature": status.HTTP_401_UNAUTHORIZED,
    "ForbiddenTransition": status.HTTP_409_CONFLICT,
    "InsufficientFunds": status.HTTP_409_CONFLICT,
    "DuplicateCausation": status.HTTP_409_CONFLICT,
    "PayoutNotReady": status.HTTP_409_CONFLICT,
    "GatewayUnavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _http_error(e: EscrowError) -> HTTPException:
    return HTTPException(
        status_code=STATUS_BY_CODE.get(e.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={"code": e.code, "message": str(e)},
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "creator-escrow"}


# -- wallets ------------------------------------------------------------------


@app.post("/wallets/{wallet_id}/deposits", response_model=LedgerEvent,
          status_code=status.HTTP_201_CREATED, tags=["Wallets"])
def deposit(wallet_id: str, request: DepositRequest) -> LedgerEvent:
    try:
        return escrow_service.deposit(wallet_id, request)
    except EscrowError as e:
        raise _http_error(e)


@app.post("/wallets/{wallet_id}/withdrawals", response_model=LedgerEvent,
          status_code=status.HTTP_201_CREATED, tags=["Wallets"])
def withdraw(wallet_id: str, request: WithdrawRequest) -> LedgerEvent:
    try:
        return escrow_service.withdraw(wallet_id, request)
    except EscrowError as e:
        raise _http_error(e)


@app.get("/wallets/{wallet_id}/balance", response_model=WalletBalance, tags=["Wallets"])
def get_wallet_balance(wallet_id: str) -> WalletBalance:
    return escrow_service.get_balance(wallet_id)


@app.get("/wallets/{wallet_id}/summary", response_model=WalletSummary, tags=["Wallets"])
def get_wallet_summary(wallet_id: str) -> WalletSummary:
    return escrow_service.wallet_summary(wallet_id)


@app.get("/wallets/{wallet_id}/ledger", response_model=LedgerHistoryResponse, tags=["Wallets"])
def get_wallet_ledger(
    wallet_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    kind: Optional[EventKind] = None,
) -> LedgerHistoryResponse:
    return escrow_service.get_ledger_history(wallet_id, limit, offset, kind)


# -- campaigns ----------------------------------------------------------------


@app.get("/allocation-breakdown", response_model=AllocationBreakdown, tags=["Campaigns"])
def get_allocation_breakdown(target_budget: int = Query(..., gt=0)) -> AllocationBreakdown:
    return escrow_service.allocation_breakdown(target_budget)


@app.post("/campaigns", response_model=CampaignEscrow, status_code=status.HTTP_201_CREATED, tags=["Campaigns"])
def create_campaign(request: CreateCampaignRequest) -> CampaignEscrow:
    try:
        return escrow_service.create_campaign(request)
    except EscrowError as e:
        raise _http_error(e)


@app.get("/campaigns/{campaign_id}", response_model=CampaignEscrow, tags=["Campaigns"])
def get_campaign(campaign_id: str) -> CampaignEscrow:
    try:
        return escrow_service.get_campaign(campaign_id)
    except EscrowError as e:
        raise _http_error(e)


@app.post("/campaigns/{campaign_id}/allocations", response_model=LedgerEvent,
          status_code=status.HTTP_201_CREATED, tags=["Campaigns"])
def allocate(campaign_id: str, request: AllocateRequest) -> LedgerEvent:
    try:
        return escrow_service.allocate(campaign_id, request)
    except EscrowError as e:
        raise _http_error(e)


# -- milestones ---------------------------------------------------------------


@app.post("/campaigns/{campaign_id}/milestones", response_model=Milestone,
          status_code=status.HTTP_201_CREATED, tags=["Milestones"])
def create_milestone(campaign_id: str, request: CreateMilestoneRequest) -> Milestone:
    try:
        return escrow_service.add_milestone(campaign_id, request)
    except EscrowError as e:
        raise _http_error(e)


@app.post("/campaigns/{campaign_id}/milestones/{milestone_id}/lock",
          response_model=MilestoneResponse, tags=["Milestones"])
def lock_milestone(campaign_id: str, milestone_id: str, request: LockMilestoneRequest) -> MilestoneResponse:
    try:
        return escrow_service.lock_milestone(campaign_id, milestone_id, request)
    except EscrowError as e:
        raise _http_error(e)


@app.post("/campaigns/{campaign_id}/milestones/{milestone_id}/submit",
          response_model=MilestoneResponse, tags=["Milestones"])
def submit_milestone(campaign_id: str, milestone_id: str, request: SubmitMilestoneRequest) -> MilestoneResponse:
    try:
        return escrow_service.submit_milestone(campaign_id, milestone_id, request)
    except EscrowError as e:
        raise _http_error(e)


@app.post("/campaigns/{campaign_id}/milestones/{milestone_id}/approve",
          response_model=MilestoneResponse, tags=["Milestones"])
def approve_milestone(campaign_id: str, milestone_id: str, request: ApproveMilestoneRequest) -> MilestoneResponse:
    try:
        return escrow_service.approve_milestone(campaign_id, milestone_id, request)
    except EscrowError as e:
        raise _http_error(e)


@app.post("/campaigns/{campaign_id}/milestones/{milestone_id}/dispute",
          response_model=MilestoneResponse, tags=["Milestones"])
def dispute_milestone(campaign_id: str, milestone_id: str, request: DisputeMilestoneRequest) -> MilestoneResponse:
    try:
        return escrow_service.dispute_milestone(campaign_id, milestone_id, request)
    except EscrowError as e:
        raise _http_error(e)


@app.post("/campaigns/{campaign_id}/milestones/{milestone_id}/resolve",
          response_model=MilestoneResponse, tags=["Milestones"])
def resolve_dispute(campaign_id: str, milestone_id: str, request: ResolveDisputeRequest) -> MilestoneResponse:
    try:
        return escrow_service.resolve_dispute(campaign_id, milestone_id, request)
    except EscrowError as e:
        raise _http_error(e)


@app.post("/campaigns/{campaign_id}/milestones/{milestone_id}/refund",
          response_model=MilestoneResponse, tags=["Milestones"])
def refund_milestone(campaign_id: str, milestone_id: str, request: RefundMilestoneRequest) -> MilestoneResponse:
    try:
        return escrow_service.refund_milestone(campaign_id, milestone_id, request)
    except EscrowError as e:
        raise _http_error(e)


# -- creators -----------------------------------------------------------------


@app.post("/creators/{creator_id}/onboarding", response_model=OnboardingStatusView, tags=["Creators"])
def initiate_onboarding(creator_id: str, request: OnboardingCommand) -> OnboardingStatusView:
    try:
        return escrow_service.initiate_onboarding(creator_id, request)
    except EscrowError as e:
        raise _http_error(e)


@app.post("/creators/{creator_id}/onboarding/regenerate-link",
          response_model=OnboardingStatusView, tags=["Creators"])
def regenerate_onboarding_link(creator_id: str, request: OnboardingCommand) -> OnboardingStatusView:
    try:
        return escrow_service.regenerate_onboarding_link(creator_id, request)
    except EscrowError as e:
        raise _http_error(e)


@app.get("/creators/{creator_id}/onboarding", response_model=OnboardingStatusView, tags=["Creators"])
def get_onboarding_status(creator_id: str) -> OnboardingStatusView:
    return escrow_service.onboarding_status(creator_id)


@app.get("/creators/{creator_id}/earnings", response_model=CreatorEarnings, tags=["Creators"])
def get_creator_earnings(creator_id: str) -> CreatorEarnings:
    return escrow_service.creator_earnings(creator_id)


# -- provider webhooks --------------------------------------------------------


@app.post("/webhooks/payout-provider", response_model=WebhookResult, tags=["Webhooks"])
async def payout_provider_webhook(request: Request) -> WebhookResult:
    """Apply a signed provider callback.

    Any verified, well-formed event answers 200, including no-ops, so the
    provider only retries deliveries that failed verification or parsing.
    """
    raw_payload = await request.body()
    try:
        return await run_in_threadpool(
            escrow_service.handle_webhook, raw_payload, request.headers.get(SIGNATURE_HEADER)
        )
    except EscrowError as e:
        raise _http_error(e)


# -- operator -----------------------------------------------------------------


@app.post("/operator/reconciliation/run", tags=["Operator"])
def run_reconciliation():
    return {"results": escrow_service.run_reconciliation()}


@app.get("/operator/reconciliation/stalled", response_model=list[ReconciliationTask], tags=["Operator"])
def list_stalled_tasks() -> list[ReconciliationTask]:
    return escrow_service.stalled_tasks()


@app.post("/operator/reconciliation/{task_id}/requeue", response_model=ReconciliationTask, tags=["Operator"])
def requeue_task(task_id: UUID) -> ReconciliationTask:
    try:
        return escrow_service.requeue_task(task_id)
    except EscrowError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
