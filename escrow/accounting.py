"""
Escrow Accounting Engine

Turns commands into ledger events for a funding wallet and its campaigns.
Every check and every write for one wallet happens under that wallet's lock,
and a campaign always lives under the lock of the wallet that funds it.
"""

import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

from .config import Settings
from .errors import (
    CommandValidationError,
    DuplicateCausationError,
    ForbiddenTransitionError,
    NotFoundError,
    PayoutNotReadyError,
)
from .models import (
    AllocationBreakdown,
    CampaignEscrow,
    EventKind,
    LedgerEvent,
    Milestone,
    MilestoneStatus,
    PayoutRecord,
)
from .payouts import PayoutDispatcher
from .store import LedgerStore

logger = logging.getLogger(__name__)

TRANSITIONS = {
    (MilestoneStatus.PENDING, "submit"): {MilestoneStatus.SUBMITTED},
    (MilestoneStatus.SUBMITTED, "approve"): {MilestoneStatus.APPROVED},
    (MilestoneStatus.APPROVED, "release"): {MilestoneStatus.RELEASED},
    (MilestoneStatus.SUBMITTED, "dispute"): {MilestoneStatus.DISPUTED},
    (MilestoneStatus.APPROVED, "dispute"): {MilestoneStatus.DISPUTED},
    (MilestoneStatus.DISPUTED, "resolve"): {MilestoneStatus.SUBMITTED, MilestoneStatus.PENDING},
}

LOCKABLE = (MilestoneStatus.PENDING, MilestoneStatus.SUBMITTED, MilestoneStatus.APPROVED)
REFUNDABLE = (MilestoneStatus.PENDING, MilestoneStatus.DISPUTED)


def fee(amount: int, bps: int) -> int:
    return int((Decimal(amount) * Decimal(bps) / Decimal(10000)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def check_transition(milestone: Milestone, action: str, target: MilestoneStatus) -> None:
    allowed = TRANSITIONS.get((milestone.status, action), set())
    if target not in allowed:
        raise ForbiddenTransitionError(
            f"Cannot {action} milestone {milestone.id} from {milestone.status.value} to {target.value}"
        )


class EscrowAccountingEngine:
    def __init__(
        self,
        ledger: LedgerStore,
        settings: Settings,
        payout_gate: Callable[[str], bool],
        payouts: PayoutDispatcher,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.settings = settings
        self.payout_gate = payout_gate
        self.payouts = payouts

    # -- campaigns ---------------------------------------------------------

    def allocation_breakdown(self, target_budget: int) -> AllocationBreakdown:
        platform_fee = fee(target_budget, self.settings.platform_fee_bps)
        processing_fee = fee(target_budget, self.settings.processing_fee_bps)
        return AllocationBreakdown(
            target_budget=target_budget,
            platform_fee_bps=self.settings.platform_fee_bps,
            processing_fee_bps=self.settings.processing_fee_bps,
            platform_fee=platform_fee,
            processing_fee=processing_fee,
            total_required=target_budget + platform_fee + processing_fee,
        )

    def create_campaign(
        self, campaign_id: str, wallet_id: str, target_budget: int, currency: Optional[str] = None
    ) -> CampaignEscrow:
        if target_budget <= 0:
            raise CommandValidationError("Target budget must be a positive number of minor units")
        with self.ledger.lock(wallet_id):
            wallet_currency = self.ledger.balance(wallet_id).currency
            currency = currency or wallet_currency or self.settings.default_currency
            if wallet_currency and wallet_currency != currency:
                raise CommandValidationError(f"Wallet {wallet_id} holds {wallet_currency}, not {currency}")

            existing = self.storage.campaigns.get(campaign_id)
            if existing is not None:
                if (existing["wallet_id"], existing["target_budget"], existing["currency"]) != \
                        (wallet_id, target_budget, currency):
                    raise CommandValidationError(f"Campaign {campaign_id} already exists")
                return self.campaign(campaign_id)

            self.storage.campaigns[campaign_id] = {
                "campaign_id": campaign_id,
                "wallet_id": wallet_id,
                "currency": currency,
                "target_budget": target_budget,
                "allocation_allowance": self.allocation_breakdown(target_budget).total_required,
            }
            logger.info("Campaign %s created for wallet %s (target %s %s)",
                        campaign_id, wallet_id, target_budget, currency)
            return self.campaign(campaign_id)

    def add_milestone(
        self, campaign_id: str, milestone_id: str, creator_id: str, amount: int,
        due_date: Optional[date] = None,
    ) -> Milestone:
        campaign = self._campaign_row(campaign_id)
        with self.ledger.lock(campaign["wallet_id"]):
            existing = self.storage.milestones.get(milestone_id)
            if existing is not None:
                if (existing["campaign_id"], existing["creator_id"], existing["amount"]) != \
                        (campaign_id, creator_id, amount):
                    raise CommandValidationError(f"Milestone {milestone_id} already exists")
                return self.milestone(milestone_id)
            now = self.ledger.clock()
            self.storage.milestones[milestone_id] = Milestone(
                id=milestone_id, campaign_id=campaign_id, creator_id=creator_id,
                amount=amount, due_date=due_date, created_at=now, updated_at=now,
            ).model_dump()
            return self.milestone(milestone_id)

    def campaign(self, campaign_id: str) -> CampaignEscrow:
        row = self._campaign_row(campaign_id)
        totals = self.ledger.campaign_totals(campaign_id)
        milestones = [
            self.milestone(m["id"]) for m in self.storage.milestones.values()
            if m["campaign_id"] == campaign_id
        ]
        return CampaignEscrow(**row, **vars(totals), milestones=milestones)

    def campaigns_for_wallet(self, wallet_id: str) -> list[CampaignEscrow]:
        return [
            self.campaign(cid) for cid, row in self.storage.campaigns.items()
            if row["wallet_id"] == wallet_id
        ]

    def milestone(self, milestone_id: str) -> Milestone:
        row = self.storage.milestones.get(milestone_id)
        if row is None:
            raise NotFoundError(f"Milestone {milestone_id} not found")
        return Milestone(**{**row, "locked_amount": self.ledger.milestone_locked(milestone_id)})

    def wallet_for(self, campaign_id: str) -> str:
        return self._campaign_row(campaign_id)["wallet_id"]

    # -- money movement ----------------------------------------------------

    def deposit(self, wallet_id: str, amount: int, causation_id: str, currency: Optional[str] = None) -> LedgerEvent:
        with self.ledger.lock(wallet_id):
            currency = currency or self.ledger.balance(wallet_id).currency or self.settings.default_currency
            return self.ledger.append(wallet_id, EventKind.DEPOSIT, amount, currency, causation_id)

    def withdraw(self, wallet_id: str, amount: int, causation_id: str) -> LedgerEvent:
        with self.ledger.lock(wallet_id):
            balance = self.ledger.balance(wallet_id)
            currency = balance.currency or self.settings.default_currency
            return self.ledger.append(wallet_id, EventKind.WITHDRAW, amount, currency, causation_id)

    def allocate_to_campaign(self, wallet_id: str, campaign_id: str, amount: int, causation_id: str) -> LedgerEvent:
        campaign = self._campaign_row(campaign_id)
        if campaign["wallet_id"] != wallet_id:
            raise CommandValidationError(f"Campaign {campaign_id} is funded from wallet {campaign['wallet_id']}")
        with self.ledger.lock(wallet_id):
            replayed = self.ledger.get_by_causation(causation_id)
            if replayed is None:
                funded = self.ledger.campaign_totals(campaign_id).funded_amount
                if funded + amount > campaign["allocation_allowance"]:
                    raise CommandValidationError(
                        f"Allocation would exceed campaign allowance of {campaign['allocation_allowance']} "
                        f"(funded {funded}, requested {amount})"
                    )
            return self.ledger.append(
                wallet_id, EventKind.ALLOCATE, amount, campaign["currency"], causation_id,
                campaign_id=campaign_id,
            )

    def lock_for_milestone(
        self, campaign_id: str, milestone_id: str, causation_id: str, amount: Optional[int] = None
    ) -> LedgerEvent:
        wallet_id = self.wallet_for(campaign_id)
        with self.ledger.lock(wallet_id):
            replayed = self._replayed(causation_id, EventKind.LOCK, milestone_id)
            if replayed is not None:
                return replayed
            drafts = self.lock_drafts(campaign_id, milestone_id, causation_id, amount)
            if not drafts:
                raise CommandValidationError(f"Milestone {milestone_id} is already fully locked")
            return self.ledger.append_all(drafts)[0]

    def lock_drafts(
        self, campaign_id: str, milestone_id: str, causation_id: str, amount: Optional[int] = None
    ) -> list[dict]:
        """Ledger drafts locking a milestone's remaining amount; empty when fully locked."""
        milestone = self._milestone_in(campaign_id, milestone_id)
        if milestone.status not in LOCKABLE:
            raise ForbiddenTransitionError(f"Cannot lock funds for a {milestone.status.value} milestone")
        remaining = milestone.amount - milestone.locked_amount
        amount = remaining if amount is None else amount
        if amount > remaining:
            raise CommandValidationError(
                f"Milestone {milestone_id} needs {remaining} more, cannot lock {amount}"
            )
        if amount <= 0:
            return []
        campaign = self._campaign_row(campaign_id)
        return [dict(
            wallet_id=campaign["wallet_id"], kind=EventKind.LOCK, amount=amount,
            currency=campaign["currency"], causation_id=causation_id,
            campaign_id=campaign_id, milestone_id=milestone_id,
        )]

    def release(self, campaign_id: str, milestone_id: str, causation_id: str) -> tuple[LedgerEvent, PayoutRecord]:
        """Release a milestone's locked funds to its creator.

        Raises PayoutNotReadyError, with nothing written, until the creator's
        payout onboarding is approved.
        """
        wallet_id = self.wallet_for(campaign_id)
        with self.ledger.lock(wallet_id):
            milestone = self._milestone_in(campaign_id, milestone_id)
            if milestone.status == MilestoneStatus.RELEASED:
                release = self.ledger.get_by_causation(causation_id)
                if release is not None and milestone.payout_id:
                    return release, self.payouts.get(milestone.payout_id)
                raise ForbiddenTransitionError(f"Milestone {milestone_id} was already released")
            check_transition(milestone, "release", MilestoneStatus.RELEASED)
            if milestone.locked_amount <= 0:
                raise CommandValidationError(f"Milestone {milestone_id} has no locked funds")
            if not self.payout_gate(milestone.creator_id):
                raise PayoutNotReadyError(
                    f"Creator {milestone.creator_id} has not completed payout onboarding"
                )

            campaign = self._campaign_row(campaign_id)
            release = self.ledger.append(
                wallet_id, EventKind.RELEASE, milestone.locked_amount, campaign["currency"],
                causation_id, campaign_id=campaign_id, milestone_id=milestone_id,
            )
            payout = self.payouts.record_release(milestone.creator_id, release)
            self.update_milestone(
                milestone_id, status=MilestoneStatus.RELEASED, payout_pending=False,
                payout_id=payout.payout_id,
            )
            logger.info("Released %s from campaign %s milestone %s to creator %s",
                        release.amount, campaign_id, milestone_id, milestone.creator_id)
            return release, payout

    def refund(self, campaign_id: str, milestone_id: str, causation_id: str) -> LedgerEvent:
        wallet_id = self.wallet_for(campaign_id)
        with self.ledger.lock(wallet_id):
            replayed = self._replayed(causation_id, EventKind.REFUND, milestone_id)
            if replayed is not None:
                return replayed
            milestone = self._milestone_in(campaign_id, milestone_id)
            if milestone.status not in REFUNDABLE:
                raise ForbiddenTransitionError(f"Cannot refund a {milestone.status.value} milestone")
            if milestone.locked_amount <= 0:
                raise CommandValidationError(f"Milestone {milestone_id} has no locked funds to refund")
            campaign = self._campaign_row(campaign_id)
            return self.ledger.append(
                wallet_id, EventKind.REFUND, milestone.locked_amount, campaign["currency"],
                causation_id, campaign_id=campaign_id, milestone_id=milestone_id,
            )

    def update_milestone(self, milestone_id: str, **changes) -> Milestone:
        row = self.storage.milestones[milestone_id]
        row.update(changes)
        row["updated_at"] = self.ledger.clock()
        return self.milestone(milestone_id)

    def _campaign_row(self, campaign_id: str) -> dict:
        row = self.storage.campaigns.get(campaign_id)
        if row is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        return row

    def _milestone_in(self, campaign_id: str, milestone_id: str) -> Milestone:
        milestone = self.milestone(milestone_id)
        if milestone.campaign_id != campaign_id:
            raise NotFoundError(f"Milestone {milestone_id} not found in campaign {campaign_id}")
        return milestone

    def _replayed(self, causation_id: str, kind: EventKind, milestone_id: str) -> Optional[LedgerEvent]:
        event = self.ledger.get_by_causation(causation_id)
        if event is not None and (event.kind != kind or event.milestone_id != milestone_id):
            raise DuplicateCausationError(f"Causation id {causation_id} already used for another command")
        return event
