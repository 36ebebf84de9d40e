"""
Milestone Release Workflow

    Pending -> Submitted -> Approved -> Released
    Submitted | Approved -> Disputed -> (manual resolution) Submitted | Pending

Approval locks any unfunded remainder and releases in the same step. A release
blocked on the creator's payout onboarding leaves the milestone Approved with
``payout_pending`` set; it is retried when the onboarding gate clears.
"""

import logging
from typing import Optional
from uuid import UUID

from .accounting import EscrowAccountingEngine, check_transition
from .errors import CommandValidationError, ForbiddenTransitionError, PayoutNotReadyError
from .models import LedgerEvent, Milestone, MilestoneResponse, MilestoneStatus
from .notifications import Notifier
from .payouts import PayoutDispatcher

logger = logging.getLogger(__name__)


class MilestoneWorkflow:
    def __init__(self, engine: EscrowAccountingEngine, payouts: PayoutDispatcher, notifier: Notifier):
        self.engine = engine
        self.ledger = engine.ledger
        self.payouts = payouts
        self.notifier = notifier

    def submit(
        self, campaign_id: str, milestone_id: str, submitted_by: str,
        submission_ref: Optional[str], idempotency_key: str,
    ) -> MilestoneResponse:
        if not submission_ref or not submission_ref.strip():
            raise CommandValidationError("A content submission reference is required")
        with self.ledger.lock(self.engine.wallet_for(campaign_id)):
            recorded = self.ledger.recall_command(idempotency_key, "submit", milestone_id)
            if recorded is not None:
                return MilestoneResponse(**recorded)
            milestone = self.engine._milestone_in(campaign_id, milestone_id)
            check_transition(milestone, "submit", MilestoneStatus.SUBMITTED)
            milestone = self.engine.update_milestone(
                milestone_id, status=MilestoneStatus.SUBMITTED,
                submission_ref=submission_ref.strip(), submitted_by=submitted_by,
            )
            return self._record(idempotency_key, "submit", milestone, [], "Milestone submitted for review")

    def approve(
        self, campaign_id: str, milestone_id: str, approver_id: str, idempotency_key: str,
    ) -> MilestoneResponse:
        with self.ledger.lock(self.engine.wallet_for(campaign_id)):
            recorded = self.ledger.recall_command(idempotency_key, "approve", milestone_id)
            if recorded is not None:
                return MilestoneResponse(**recorded)
            milestone = self.engine._milestone_in(campaign_id, milestone_id)
            check_transition(milestone, "approve", MilestoneStatus.APPROVED)
            if approver_id == milestone.submitted_by:
                raise ForbiddenTransitionError("A milestone cannot be approved by its submitter")

            events = self.ledger.append_all(
                self.engine.lock_drafts(campaign_id, milestone_id, f"{idempotency_key}:lock")
            )
            self.engine.update_milestone(milestone_id, status=MilestoneStatus.APPROVED, approved_by=approver_id)
            milestone, release, payout_id = self._try_release(campaign_id, milestone_id)
            if release is not None:
                events.append(release)
                message = "Milestone approved and released"
            else:
                message = "Milestone approved; release pending creator payout setup"
            response = self._record(idempotency_key, "approve", milestone, events, message)

        if payout_id is not None:
            self._hand_off(payout_id)
        return response

    def dispute(
        self, campaign_id: str, milestone_id: str, actor_id: str, reason: str, idempotency_key: str,
    ) -> MilestoneResponse:
        with self.ledger.lock(self.engine.wallet_for(campaign_id)):
            recorded = self.ledger.recall_command(idempotency_key, "dispute", milestone_id)
            if recorded is not None:
                return MilestoneResponse(**recorded)
            milestone = self.engine._milestone_in(campaign_id, milestone_id)
            check_transition(milestone, "dispute", MilestoneStatus.DISPUTED)
            milestone = self.engine.update_milestone(
                milestone_id, status=MilestoneStatus.DISPUTED, payout_pending=False,
                disputed_by=actor_id, dispute_reason=reason,
            )
            logger.info("Milestone %s disputed by %s: %s", milestone_id, actor_id, reason)
            return self._record(idempotency_key, "dispute", milestone, [], "Milestone disputed")

    def resolve_dispute(
        self, campaign_id: str, milestone_id: str, target: MilestoneStatus, idempotency_key: str,
    ) -> MilestoneResponse:
        with self.ledger.lock(self.engine.wallet_for(campaign_id)):
            recorded = self.ledger.recall_command(idempotency_key, "resolve", milestone_id)
            if recorded is not None:
                return MilestoneResponse(**recorded)
            milestone = self.engine._milestone_in(campaign_id, milestone_id)
            check_transition(milestone, "resolve", target)
            changes = {"status": target, "disputed_by": None, "dispute_reason": None, "approved_by": None}
            if target == MilestoneStatus.PENDING:
                changes.update(submission_ref=None, submitted_by=None)
            milestone = self.engine.update_milestone(milestone_id, **changes)
            return self._record(idempotency_key, "resolve", milestone, [], f"Dispute resolved to {target.value}")

    def refund(self, campaign_id: str, milestone_id: str, idempotency_key: str) -> MilestoneResponse:
        with self.ledger.lock(self.engine.wallet_for(campaign_id)):
            recorded = self.ledger.recall_command(idempotency_key, "refund", milestone_id)
            if recorded is not None:
                return MilestoneResponse(**recorded)
            event = self.engine.refund(campaign_id, milestone_id, idempotency_key)
            milestone = self.engine.milestone(milestone_id)
            return self._record(idempotency_key, "refund", milestone, [event], "Locked funds refunded")

    def lock(
        self, campaign_id: str, milestone_id: str, idempotency_key: str, amount: Optional[int] = None,
    ) -> MilestoneResponse:
        event = self.engine.lock_for_milestone(campaign_id, milestone_id, idempotency_key, amount)
        return MilestoneResponse(
            milestone=self.engine.milestone(milestone_id), ledger_events=[event], message="Funds locked",
        )

    def retry_payout_pending(self, creator_id: str) -> list[MilestoneResponse]:
        """Release every Approved milestone of a creator that was waiting on the payout gate."""
        waiting = [
            (row["campaign_id"], row["id"]) for row in list(self.engine.storage.milestones.values())
            if row["creator_id"] == creator_id and row["payout_pending"]
        ]
        responses = []
        for campaign_id, milestone_id in waiting:
            with self.ledger.lock(self.engine.wallet_for(campaign_id)):
                milestone = self.engine.milestone(milestone_id)
                if milestone.status != MilestoneStatus.APPROVED or not milestone.payout_pending:
                    continue
                milestone, release, payout_id = self._try_release(campaign_id, milestone_id)
            if release is None:
                continue
            self._hand_off(payout_id)
            responses.append(MilestoneResponse(
                milestone=milestone, ledger_events=[release],
                message="Milestone released after payout setup completed",
            ))
        return responses

    def _try_release(self, campaign_id: str, milestone_id: str) -> tuple[Milestone, Optional[LedgerEvent], Optional[UUID]]:
        causation_id = f"release:{milestone_id}"
        try:
            release, payout = self.engine.release(campaign_id, milestone_id, causation_id)
        except PayoutNotReadyError as e:
            milestone = self.engine.update_milestone(milestone_id, payout_pending=True)
            # An onboarding approval that committed before the flag was set has
            # already run its retry scan, so read the gate again.
            if not self.engine.payout_gate(milestone.creator_id):
                logger.info("Milestone %s release deferred: %s", milestone_id, e)
                self.notifier.notify("milestone.payout_pending", {
                    "milestone_id": milestone_id, "campaign_id": campaign_id,
                    "creator_id": milestone.creator_id, "amount": milestone.locked_amount,
                })
                return milestone, None, None
            logger.info("Payout gate for milestone %s cleared during approval", milestone_id)
            release, payout = self.engine.release(campaign_id, milestone_id, causation_id)
        milestone = self.engine.milestone(milestone_id)
        self.notifier.notify("milestone.released", {
            "milestone_id": milestone_id, "campaign_id": campaign_id,
            "creator_id": milestone.creator_id, "amount": release.amount,
        })
        return milestone, release, payout.payout_id

    def _hand_off(self, payout_id: UUID) -> None:
        self.payouts.announce(payout_id)
        self.payouts.dispatch(payout_id)

    def _record(
        self, key: str, action: str, milestone: Milestone, events: list[LedgerEvent], message: str,
    ) -> MilestoneResponse:
        response = MilestoneResponse(milestone=milestone, ledger_events=events, message=message)
        self.ledger.record_command(key, action, milestone.id, response.model_dump())
        return response
