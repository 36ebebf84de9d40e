import logging
from typing import Callable, Optional
from uuid import UUID, uuid4

from .errors import GatewayUnavailableError, NotFoundError, PayoutNotReadyError
from .gateway import PayoutGateway
from .models import (
    LedgerEvent,
    PayoutProviderStatus,
    PayoutRecord,
    PayoutStatus,
    SubjectType,
    WebhookEvent,
    WebhookResult,
)
from .notifications import Notifier
from .store import Clock, LedgerStore, utc_now

logger = logging.getLogger(__name__)

Listener = Callable[[PayoutRecord, PayoutStatus], None]

TERMINAL = (PayoutStatus.COMPLETED, PayoutStatus.FAILED)

RANK = {
    PayoutStatus.PENDING: 0,
    PayoutStatus.PROCESSING: 1,
    PayoutStatus.COMPLETED: 2,
    PayoutStatus.FAILED: 2,
}

PROVIDER_TARGETS = {
    PayoutProviderStatus.PROCESSING: PayoutStatus.PROCESSING,
    PayoutProviderStatus.COMPLETED: PayoutStatus.COMPLETED,
    PayoutProviderStatus.FAILED: PayoutStatus.FAILED,
}


class PayoutDispatcher:
    """Moves released milestone funds out to the creator's bank account.

    Records are written atomically with the Release ledger event; the
    external transfer happens afterwards and is retried by reconciliation.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: PayoutGateway,
        beneficiary_for: Callable[[str], Optional[str]],
        notifier: Notifier,
        clock: Clock = utc_now,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.gateway = gateway
        self.beneficiary_for = beneficiary_for
        self.notifier = notifier
        self.clock = clock
        self.listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def get(self, payout_id: UUID) -> PayoutRecord:
        row = self.storage.payouts.get(payout_id)
        if row is None:
            raise NotFoundError(f"Payout {payout_id} not found")
        return PayoutRecord(**row)

    def for_creator(self, creator_id: str) -> list[PayoutRecord]:
        return [PayoutRecord(**row) for row in self.storage.payouts.values() if row["creator_id"] == creator_id]

    def for_campaign(self, campaign_id: str) -> list[PayoutRecord]:
        return [PayoutRecord(**row) for row in self.storage.payouts.values() if row["campaign_id"] == campaign_id]

    def record_release(self, creator_id: str, release: LedgerEvent) -> PayoutRecord:
        now = self.clock()
        row = {
            "payout_id": uuid4(),
            "creator_id": creator_id,
            "campaign_id": release.campaign_id,
            "milestone_id": release.milestone_id,
            "amount": release.amount,
            "currency": release.currency,
            "status": PayoutStatus.PENDING,
            "external_payout_id": None,
            "failure_reason": None,
            "created_at": now,
            "updated_at": now,
        }
        self.storage.payouts[row["payout_id"]] = row
        return PayoutRecord(**row)

    def announce(self, payout_id: UUID) -> None:
        record = self.get(payout_id)
        for listener in self.listeners:
            listener(record, record.status)

    def dispatch(self, payout_id: UUID) -> PayoutRecord:
        """Start the external transfer; provider outages leave the payout Pending."""
        try:
            return self.initiate(payout_id)
        except (GatewayUnavailableError, PayoutNotReadyError) as e:
            logger.warning("Payout %s not dispatched yet: %s", payout_id, e)
            return self.get(payout_id)

    def initiate(self, payout_id: UUID) -> PayoutRecord:
        with self.ledger.lock(f"payout:{payout_id}"):
            record = self.get(payout_id)
            if record.status != PayoutStatus.PENDING or record.external_payout_id:
                return record
            beneficiary = self.beneficiary_for(record.creator_id)
            if beneficiary is None:
                raise PayoutNotReadyError(f"Creator {record.creator_id} has no approved payout account")
            external_id = self.gateway.create_payout(
                beneficiary, record.amount, record.currency, record.reference_id
            )
            result = self._commit(record, PayoutStatus.PROCESSING, external_payout_id=external_id)
            logger.info("Payout %s dispatched as %s (%s %s)",
                        payout_id, external_id, record.amount, record.currency)
        self._emit(result, record.status)
        return result

    def apply_provider_status(
        self,
        payout_id: UUID,
        status: PayoutProviderStatus,
        source: str = "webhook",
        external_payout_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        settled = self.get(payout_id)
        if settled.status in TERMINAL:
            logger.info("Ignoring %s for settled payout %s (source=%s)", status.value, payout_id, source)
            return False
        with self.ledger.lock(f"payout:{payout_id}"):
            record = self.get(payout_id)
            target = PROVIDER_TARGETS.get(status)
            if target is None:
                logger.warning("Unknown payout status for %s via %s; left for review", payout_id, source)
                return False
            if record.status in TERMINAL or RANK[target] <= RANK[record.status]:
                logger.warning("Dropping %s for payout %s in %s (source=%s)",
                               status.value, payout_id, record.status.value, source)
                return False
            changes = {"external_payout_id": record.external_payout_id or external_payout_id}
            if target == PayoutStatus.FAILED:
                changes["failure_reason"] = failure_reason or "Payout failed"
            result = self._commit(record, target, **changes)
            logger.info("Payout %s %s -> %s (source=%s)", payout_id, record.status.value, target.value, source)
        if result.status in TERMINAL:
            self.ledger.discard_lock(f"payout:{payout_id}")
        self._emit(result, record.status)
        return True

    def apply_webhook(self, event: WebhookEvent) -> WebhookResult:
        payout_id = self._payout_for(event)
        if payout_id is None:
            logger.warning("Webhook %s for unknown payout (reference %s, id %s)",
                           event.event_type, event.reference_id, event.external_payout_id)
            return WebhookResult(subject_type=SubjectType.PAYOUT, applied=False, message="No matching payout")
        applied = self.apply_provider_status(
            payout_id, event.payout_status or PayoutProviderStatus.UNKNOWN, source="webhook",
            external_payout_id=event.external_payout_id, failure_reason=event.failure_reason,
        )
        return WebhookResult(
            subject_type=SubjectType.PAYOUT, subject_id=str(payout_id), applied=applied,
            message="Transition applied" if applied else "No transition",
        )

    def reconcile(self, subject_id: str) -> bool:
        payout_id = UUID(subject_id)
        record = self.get(payout_id)
        if record.status in TERMINAL:
            return True
        if not record.external_payout_id:
            self.initiate(payout_id)
            return False
        status = self.gateway.pull_payout_status(record.external_payout_id)
        self.apply_provider_status(payout_id, status, source="poll")
        return self.get(payout_id).status in TERMINAL

    def _payout_for(self, event: WebhookEvent) -> Optional[UUID]:
        reference = event.reference_id or ""
        if reference.startswith("payout_"):
            try:
                payout_id = UUID(reference[len("payout_"):])
            except ValueError:
                payout_id = None
            if payout_id in self.storage.payouts:
                return payout_id
        if event.external_payout_id:
            for payout_id, row in self.storage.payouts.items():
                if row["external_payout_id"] == event.external_payout_id:
                    return payout_id
        return None

    def _commit(self, record: PayoutRecord, status: PayoutStatus, **changes) -> PayoutRecord:
        row = self.storage.payouts[record.payout_id]
        row.update(changes)
        row["status"] = status
        row["updated_at"] = self.clock()
        return PayoutRecord(**row)

    def _emit(self, record: PayoutRecord, previous: PayoutStatus) -> None:
        if record.status == previous:
            return
        if record.status == PayoutStatus.COMPLETED:
            self.notifier.notify("payout.completed", {
                "payout_id": str(record.payout_id), "creator_id": record.creator_id, "amount": record.amount,
            })
        elif record.status == PayoutStatus.FAILED:
            self.notifier.notify("payout.failed", {
                "payout_id": str(record.payout_id), "creator_id": record.creator_id,
                "reason": record.failure_reason,
            })
        for listener in self.listeners:
            listener(record, previous)
