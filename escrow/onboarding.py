"""
Payout Onboarding State Machine

Tracks a creator's hosted KYC / bank-linking flow with the payout provider.

    NotStarted --initiate--> LinkGenerated
    LinkGenerated --started--> InProgress
    LinkGenerated --link expired--> NotStarted   (reported lazily, never stored)
    InProgress --submitted--> PendingApproval
    PendingApproval --approved--> Approved
    PendingApproval --rejected--> Rejected
    Rejected --initiate--> LinkGenerated

Provider facts arrive from webhooks and from reconciliation polls; both go
through ``apply_provider_status`` so arrival order never changes the outcome.
"""

import logging
from typing import Callable, Optional

from .config import Settings
from .errors import CommandValidationError, ForbiddenTransitionError, NotFoundError
from .gateway import PayoutGateway
from .models import (
    BankDetails,
    OnboardingRecord,
    OnboardingStatus,
    OnboardingStatusView,
    ProviderStatus,
    SubjectType,
    WebhookEvent,
    WebhookResult,
)
from .notifications import Notifier
from .store import Clock, LedgerStore, utc_now

logger = logging.getLogger(__name__)

Listener = Callable[[OnboardingRecord, OnboardingStatus], None]

TERMINAL = (OnboardingStatus.APPROVED, OnboardingStatus.REJECTED)

RANK = {
    OnboardingStatus.NOT_STARTED: 0,
    OnboardingStatus.LINK_GENERATED: 1,
    OnboardingStatus.IN_PROGRESS: 2,
    OnboardingStatus.PENDING_APPROVAL: 3,
    OnboardingStatus.APPROVED: 4,
    OnboardingStatus.REJECTED: 4,
}

PROVIDER_TARGETS = {
    ProviderStatus.STARTED: OnboardingStatus.IN_PROGRESS,
    ProviderStatus.SUBMITTED: OnboardingStatus.PENDING_APPROVAL,
    ProviderStatus.APPROVED: OnboardingStatus.APPROVED,
    ProviderStatus.REJECTED: OnboardingStatus.REJECTED,
}

INITIATE_FROM = (
    OnboardingStatus.NOT_STARTED,
    OnboardingStatus.LINK_GENERATED,
    OnboardingStatus.REJECTED,
)


class OnboardingStateMachine:
    def __init__(
        self,
        ledger: LedgerStore,
        gateway: PayoutGateway,
        settings: Settings,
        notifier: Notifier,
        clock: Clock = utc_now,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.gateway = gateway
        self.settings = settings
        self.notifier = notifier
        self.clock = clock
        self.listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def get(self, creator_id: str) -> OnboardingRecord:
        row = self.storage.onboarding.get(creator_id)
        if row is None:
            return OnboardingRecord(creator_id=creator_id, updated_at=self.clock())
        return OnboardingRecord(**row)

    def is_payout_ready(self, creator_id: str) -> bool:
        return self.get(creator_id).status == OnboardingStatus.APPROVED

    def beneficiary_for(self, creator_id: str) -> Optional[str]:
        record = self.get(creator_id)
        if record.status != OnboardingStatus.APPROVED:
            return None
        return record.external_beneficiary_id or record.external_entity_id

    def initiate(
        self, creator_id: str, idempotency_key: str,
        name: Optional[str] = None, email: Optional[str] = None,
    ) -> OnboardingRecord:
        with self.ledger.lock(f"creator:{creator_id}"):
            if self.ledger.recall_command(idempotency_key, "initiate", creator_id) is not None:
                return self.get(creator_id)

            record = self.get(creator_id)
            now = self.clock()
            if record.status not in INITIATE_FROM:
                raise ForbiddenTransitionError(
                    f"Cannot initiate onboarding from {record.status.value}"
                )

            if record.status == OnboardingStatus.LINK_GENERATED and not record.link_expired(now):
                logger.info("Creator %s already holds a valid onboarding link", creator_id)
                result = record
            elif record.status == OnboardingStatus.LINK_GENERATED:
                link = self.gateway.regenerate_link(record.external_entity_id)
                result = self._commit(
                    record, OnboardingStatus.LINK_GENERATED,
                    onboarding_link=link.link, link_expires_at=link.expires_at,
                )
            else:
                session = self.gateway.create_onboarding_session(creator_id, name=name, email=email)
                if record.external_entity_id:
                    self.storage.entity_index.pop(record.external_entity_id, None)
                self.storage.entity_index[session.entity_id] = creator_id
                result = self._commit(
                    record, OnboardingStatus.LINK_GENERATED,
                    external_entity_id=session.entity_id,
                    external_beneficiary_id=None,
                    onboarding_link=session.link,
                    link_expires_at=session.expires_at,
                    last_provider_status=None,
                    bank_details=None,
                    attempt=record.attempt + 1,
                )
            self.ledger.record_command(idempotency_key, "initiate", creator_id, {"status": result.status.value})

        self._emit(result, record.status)
        return result

    def regenerate_link(self, creator_id: str, idempotency_key: str) -> OnboardingRecord:
        with self.ledger.lock(f"creator:{creator_id}"):
            if self.ledger.recall_command(idempotency_key, "regenerate", creator_id) is not None:
                return self.get(creator_id)

            record = self.get(creator_id)
            if not record.external_entity_id:
                raise CommandValidationError("No onboarding in progress. Please initiate onboarding first.")
            if record.status in TERMINAL:
                raise ForbiddenTransitionError(f"Onboarding already {record.status.value.lower()}")
            if record.status != OnboardingStatus.LINK_GENERATED:
                raise ForbiddenTransitionError(
                    f"Cannot regenerate link while onboarding is {record.status.value}"
                )

            link = self.gateway.regenerate_link(record.external_entity_id)
            result = self._commit(
                record, OnboardingStatus.LINK_GENERATED,
                onboarding_link=link.link, link_expires_at=link.expires_at,
            )
            self.ledger.record_command(idempotency_key, "regenerate", creator_id, {"status": result.status.value})

        self._emit(result, record.status)
        return result

    def apply_provider_status(
        self,
        creator_id: str,
        status: ProviderStatus,
        source: str = "webhook",
        beneficiary_id: Optional[str] = None,
        bank_details: Optional[BankDetails] = None,
    ) -> bool:
        """Apply one provider fact. Returns True when the stored state changed.

        Stale or repeated facts, and facts that would move the record backward,
        are dropped.
        """
        with self.ledger.lock(f"creator:{creator_id}"):
            if creator_id not in self.storage.onboarding:
                raise NotFoundError(f"No onboarding record for creator {creator_id}")
            record = self.get(creator_id)

            target = PROVIDER_TARGETS.get(status)
            if target is None:
                logger.warning("Unknown provider status for creator %s via %s; left for review",
                               creator_id, source)
                return False

            if record.status == OnboardingStatus.APPROVED and target == OnboardingStatus.APPROVED:
                if beneficiary_id and not record.external_beneficiary_id:
                    self._commit(record, record.status, external_beneficiary_id=beneficiary_id,
                                 bank_details=bank_details or record.bank_details)
                    logger.info("Beneficiary %s linked to creator %s", beneficiary_id, creator_id)
                return False

            if record.status in TERMINAL or record.status == OnboardingStatus.NOT_STARTED \
                    or RANK[target] <= RANK[record.status]:
                logger.warning("Dropping %s for creator %s in %s (source=%s)",
                               status.value, creator_id, record.status.value, source)
                return False

            changes = {"last_provider_status": status}
            if target == OnboardingStatus.APPROVED:
                changes.update(
                    external_beneficiary_id=beneficiary_id or record.external_beneficiary_id,
                    bank_details=bank_details or record.bank_details,
                    onboarding_link=None,
                )
            result = self._commit(record, target, **changes)
            logger.info("Creator %s onboarding %s -> %s (source=%s)",
                        creator_id, record.status.value, target.value, source)

        self._emit(result, record.status)
        return True

    def apply_webhook(self, event: WebhookEvent) -> WebhookResult:
        creator_id = self._creator_for(event)
        if creator_id is None:
            logger.warning("Webhook %s for unknown entity %s (reference %s)",
                           event.event_type, event.entity_id, event.reference_id)
            return WebhookResult(subject_type=SubjectType.ONBOARDING, applied=False,
                                 message="No matching creator")
        applied = self.apply_provider_status(
            creator_id, event.provider_status or ProviderStatus.UNKNOWN, source="webhook",
            beneficiary_id=event.beneficiary_id, bank_details=event.bank_details,
        )
        return WebhookResult(
            subject_type=SubjectType.ONBOARDING, subject_id=creator_id, applied=applied,
            message="Transition applied" if applied else "No transition",
        )

    def reconcile(self, creator_id: str) -> bool:
        record = self.get(creator_id)
        if record.status in TERMINAL or not record.external_entity_id:
            return True
        if record.link_expired(self.clock()):
            logger.info("Onboarding link for creator %s expired unused; polling stopped", creator_id)
            return True
        status = self.gateway.pull_status(record.external_entity_id)
        self.apply_provider_status(creator_id, status, source="poll")
        return self.get(creator_id).status in TERMINAL

    def status_view(self, creator_id: str) -> OnboardingStatusView:
        record = self.get(creator_id)
        now = self.clock()
        expired = record.link_expired(now)
        approved = record.status == OnboardingStatus.APPROVED
        return OnboardingStatusView(
            creator_id=creator_id,
            onboarding_status=record.effective_status(now),
            provider_status=record.last_provider_status,
            is_complete=approved and bool(record.external_beneficiary_id or record.external_entity_id),
            is_active=approved,
            onboarding_link=None if expired else record.onboarding_link,
            link_expired=expired,
            expires_at=record.link_expires_at,
            entity_id=record.external_entity_id,
            beneficiary_id=record.external_beneficiary_id,
            bank_details=record.bank_details if approved else None,
        )

    def _creator_for(self, event: WebhookEvent) -> Optional[str]:
        if event.entity_id and event.entity_id in self.storage.entity_index:
            return self.storage.entity_index[event.entity_id]
        reference = event.reference_id or ""
        if reference.startswith("creator_"):
            creator_id = reference[len("creator_"):]
            row = self.storage.onboarding.get(creator_id)
            if row and (event.entity_id is None or row["external_entity_id"] == event.entity_id):
                return creator_id
        return None

    def _commit(self, record: OnboardingRecord, status: OnboardingStatus, **changes) -> OnboardingRecord:
        row = record.model_dump()
        row.update(changes)
        row["status"] = status
        row["updated_at"] = self.clock()
        self.storage.onboarding[record.creator_id] = row
        return OnboardingRecord(**row)

    def _emit(self, record: OnboardingRecord, previous: OnboardingStatus) -> None:
        if record.status == previous and record.status != OnboardingStatus.LINK_GENERATED:
            return
        if record.status == OnboardingStatus.APPROVED:
            self.notifier.notify("onboarding.approved", {"creator_id": record.creator_id})
        elif record.status == OnboardingStatus.REJECTED:
            self.notifier.notify("onboarding.rejected", {"creator_id": record.creator_id})
        for listener in self.listeners:
            listener(record, previous)
