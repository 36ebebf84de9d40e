"""
Ledger Store

Append-only record of balance-affecting events plus the tables the rest of the
engine owns. Balance projections are caches folded from the event history and
can always be rebuilt from zero with ``replay``.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

from .errors import (
    CommandValidationError,
    DuplicateCausationError,
    InsufficientFundsError,
)
from .models import EventKind, LedgerEvent, SubjectType, WalletBalance

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

CAMPAIGN_KINDS = (EventKind.ALLOCATE, EventKind.LOCK, EventKind.RELEASE, EventKind.REFUND)
MILESTONE_KINDS = (EventKind.LOCK, EventKind.RELEASE, EventKind.REFUND)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CampaignTotals:
    funded_amount: int = 0
    locked_amount: int = 0
    released_amount: int = 0
    refunded_amount: int = 0


@dataclass
class LedgerTotals:
    wallets: dict[str, WalletBalance] = field(default_factory=dict)
    campaigns: dict[str, CampaignTotals] = field(default_factory=dict)
    milestone_locks: dict[str, int] = field(default_factory=dict)

    def wallet(self, wallet_id: str) -> WalletBalance:
        if wallet_id not in self.wallets:
            self.wallets[wallet_id] = WalletBalance(wallet_id=wallet_id)
        return self.wallets[wallet_id]

    def campaign(self, campaign_id: str) -> CampaignTotals:
        if campaign_id not in self.campaigns:
            self.campaigns[campaign_id] = CampaignTotals()
        return self.campaigns[campaign_id]

    def scratch(self, events: Iterable[LedgerEvent]) -> "LedgerTotals":
        """Copy of only the entries the given events touch."""
        copy = LedgerTotals()
        for event in events:
            if event.wallet_id in self.wallets:
                copy.wallets[event.wallet_id] = self.wallets[event.wallet_id].model_copy()
            if event.campaign_id and event.campaign_id in self.campaigns:
                src = self.campaigns[event.campaign_id]
                copy.campaigns[event.campaign_id] = CampaignTotals(**vars(src))
            if event.milestone_id and event.milestone_id in self.milestone_locks:
                copy.milestone_locks[event.milestone_id] = self.milestone_locks[event.milestone_id]
        return copy

    def check(self, event: LedgerEvent) -> None:
        wallet = self.wallet(event.wallet_id)
        if wallet.currency and wallet.currency != event.currency:
            raise CommandValidationError(
                f"Wallet {event.wallet_id} holds {wallet.currency}, not {event.currency}"
            )
        if event.kind in CAMPAIGN_KINDS and not event.campaign_id:
            raise CommandValidationError(f"{event.kind.value} requires a campaign")
        if event.kind in MILESTONE_KINDS and not event.milestone_id:
            raise CommandValidationError(f"{event.kind.value} requires a milestone")

        if event.kind in (EventKind.ALLOCATE, EventKind.WITHDRAW):
            if wallet.unallocated < event.amount:
                raise InsufficientFundsError(
                    f"Insufficient funds in wallet {event.wallet_id}. "
                    f"Unallocated: {wallet.unallocated}, requested: {event.amount}"
                )
        elif event.kind == EventKind.LOCK:
            totals = self.campaign(event.campaign_id)
            headroom = totals.funded_amount - totals.locked_amount - totals.released_amount
            if headroom < event.amount:
                raise InsufficientFundsError(
                    f"Insufficient escrow in campaign {event.campaign_id}. "
                    f"Unlocked: {headroom}, requested: {event.amount}"
                )
        elif event.kind in (EventKind.RELEASE, EventKind.REFUND):
            locked = self.milestone_locks.get(event.milestone_id, 0)
            if locked < event.amount:
                raise InsufficientFundsError(
                    f"Milestone {event.milestone_id} has {locked} locked, "
                    f"cannot {event.kind.value.lower()} {event.amount}"
                )

    def apply(self, event: LedgerEvent) -> None:
        wallet = self.wallet(event.wallet_id)
        wallet.currency = wallet.currency or event.currency
        wallet.last_sequence = event.sequence
        amount = event.amount

        if event.kind == EventKind.DEPOSIT:
            wallet.deposited += amount
        elif event.kind == EventKind.WITHDRAW:
            wallet.withdrawn += amount
        elif event.kind == EventKind.ALLOCATE:
            wallet.allocated += amount
            self.campaign(event.campaign_id).funded_amount += amount
        elif event.kind == EventKind.LOCK:
            wallet.locked += amount
            self.campaign(event.campaign_id).locked_amount += amount
            self.milestone_locks[event.milestone_id] = self.milestone_locks.get(event.milestone_id, 0) + amount
        elif event.kind in (EventKind.RELEASE, EventKind.REFUND):
            campaign = self.campaign(event.campaign_id)
            wallet.locked -= amount
            campaign.locked_amount -= amount
            self.milestone_locks[event.milestone_id] -= amount
            if event.kind == EventKind.RELEASE:
                wallet.released += amount
                campaign.released_amount += amount
            else:
                wallet.refunded += amount
                campaign.refunded_amount += amount

    def merge(self, other: "LedgerTotals") -> None:
        self.wallets.update(other.wallets)
        self.campaigns.update(other.campaigns)
        self.milestone_locks.update(other.milestone_locks)


def replay(events: Iterable[LedgerEvent]) -> LedgerTotals:
    totals = LedgerTotals()
    for event in events:
        totals.apply(event)
    return totals


class InMemoryStorage:
    def __init__(self):
        self.ledger_entries: list[dict] = []
        self.causation_index: dict[str, int] = {}
        self.wallet_index: dict[str, list[int]] = {}
        self.campaign_index: dict[str, list[int]] = {}
        self.projections = LedgerTotals()

        self.campaigns: dict[str, dict] = {}
        self.milestones: dict[str, dict] = {}
        self.onboarding: dict[str, dict] = {}
        self.entity_index: dict[str, str] = {}
        self.payouts: dict[UUID, dict] = {}
        self.reconciliation_tasks: dict[UUID, dict] = {}
        self.task_index: dict[tuple[SubjectType, str], UUID] = {}
        self.command_log: dict[str, dict] = {}


class LedgerStore:
    def __init__(self, storage: Optional[InMemoryStorage] = None, clock: Clock = utc_now):
        self.storage = storage or InMemoryStorage()
        self.clock = clock
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._index_guard = threading.Lock()

    def lock(self, aggregate_id: str) -> threading.RLock:
        with self._locks_guard:
            if aggregate_id not in self._locks:
                self._locks[aggregate_id] = threading.RLock()
            return self._locks[aggregate_id]

    def discard_lock(self, aggregate_id: str) -> None:
        """Forget the lock of an aggregate that is never written again."""
        with self._locks_guard:
            self._locks.pop(aggregate_id, None)

    def append(
        self,
        wallet_id: str,
        kind: EventKind,
        amount: int,
        currency: str,
        causation_id: str,
        campaign_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
        strict: bool = False,
    ) -> LedgerEvent:
        draft = dict(
            wallet_id=wallet_id, kind=kind, amount=amount, currency=currency,
            causation_id=causation_id, campaign_id=campaign_id, milestone_id=milestone_id,
        )
        return self.append_all([draft], strict=strict)[0]

    def append_all(self, drafts: list[dict], strict: bool = False) -> list[LedgerEvent]:
        """Append several events for one wallet atomically.

        Drafts whose causation id was already recorded for the same command
        resolve to the original event. Either every new event is admitted or
        none is.
        """
        if not drafts:
            return []
        wallet_ids = {d["wallet_id"] for d in drafts}
        if len(wallet_ids) != 1:
            raise CommandValidationError("An atomic append must target a single wallet")
        wallet_id = wallet_ids.pop()

        with self.lock(wallet_id), self._index_guard:
            entries = self.storage.ledger_entries
            totals = self.storage.projections
            sequence = totals.wallets[wallet_id].last_sequence if wallet_id in totals.wallets else 0
            position = len(entries)
            now = self.clock()

            results: list[LedgerEvent] = []
            fresh: list[LedgerEvent] = []
            seen: dict[str, LedgerEvent] = {}
            for draft in drafts:
                if draft["amount"] <= 0:
                    raise CommandValidationError("Amount must be a positive number of minor units")
                sequence += 1
                position += 1
                candidate = LedgerEvent(
                    id=uuid4(), created_at=now, sequence=sequence, position=position, **draft
                )
                existing = self._existing(candidate.causation_id) or seen.get(candidate.causation_id)
                if existing is not None:
                    if strict or not existing.same_command(candidate):
                        raise DuplicateCausationError(
                            f"Causation id {candidate.causation_id} already recorded as event {existing.id}"
                        )
                    sequence -= 1
                    position -= 1
                    results.append(existing)
                    continue
                seen[candidate.causation_id] = candidate
                fresh.append(candidate)
                results.append(candidate)

            scratch = totals.scratch(fresh)
            for event in fresh:
                scratch.check(event)
                scratch.apply(event)

            for event in fresh:
                row = event.model_dump()
                entries.append(row)
                self.storage.causation_index[event.causation_id] = event.position
                self.storage.wallet_index.setdefault(event.wallet_id, []).append(event.position)
                if event.campaign_id:
                    self.storage.campaign_index.setdefault(event.campaign_id, []).append(event.position)
                logger.info(
                    "Ledger append %s %s amount=%s wallet=%s campaign=%s milestone=%s seq=%s",
                    event.kind.value, event.id, event.amount, event.wallet_id,
                    event.campaign_id, event.milestone_id, event.sequence,
                )
            totals.merge(scratch)
            return results

    def get_by_causation(self, causation_id: str) -> Optional[LedgerEvent]:
        return self._existing(causation_id)

    def list_by_wallet(self, wallet_id: str) -> list[LedgerEvent]:
        positions = self.storage.wallet_index.get(wallet_id, [])
        return [self._at(p) for p in positions]

    def list_by_campaign(self, campaign_id: str) -> list[LedgerEvent]:
        positions = self.storage.campaign_index.get(campaign_id, [])
        return [self._at(p) for p in positions]

    def all_events(self) -> list[LedgerEvent]:
        return [LedgerEvent(**row) for row in self.storage.ledger_entries]

    def history(
        self, wallet_id: str, limit: int = 50, offset: int = 0, kind: Optional[EventKind] = None
    ) -> tuple[list[LedgerEvent], int]:
        events = self.list_by_wallet(wallet_id)
        if kind:
            events = [e for e in events if e.kind == kind]
        events.reverse()
        return events[offset:offset + limit], len(events)

    def balance(self, wallet_id: str) -> WalletBalance:
        totals = self.storage.projections
        if wallet_id in totals.wallets:
            return totals.wallets[wallet_id].model_copy()
        return WalletBalance(wallet_id=wallet_id)

    def campaign_totals(self, campaign_id: str) -> CampaignTotals:
        src = self.storage.projections.campaigns.get(campaign_id)
        return CampaignTotals(**vars(src)) if src else CampaignTotals()

    def milestone_locked(self, milestone_id: str) -> int:
        return self.storage.projections.milestone_locks.get(milestone_id, 0)

    def rebuild_projections(self) -> LedgerTotals:
        with self._index_guard:
            self.storage.projections = replay(self.all_events())
            return self.storage.projections

    def verify_projections(self) -> bool:
        rebuilt = replay(self.all_events())
        cached = self.storage.projections
        return (
            rebuilt.wallets == cached.wallets
            and rebuilt.campaigns == cached.campaigns
            and {k: v for k, v in rebuilt.milestone_locks.items() if v}
            == {k: v for k, v in cached.milestone_locks.items() if v}
        )

    def recall_command(self, key: str, action: str, subject: str) -> Optional[dict]:
        entry = self.storage.command_log.get(key)
        if entry is None:
            return None
        if entry["action"] != action or entry["subject"] != subject:
            raise DuplicateCausationError(
                f"Idempotency key {key} already used for {entry['action']} on {entry['subject']}"
            )
        return entry["result"]

    def record_command(self, key: str, action: str, subject: str, result: dict) -> None:
        self.storage.command_log[key] = {
            "action": action, "subject": subject, "result": result, "recorded_at": self.clock(),
        }

    def _existing(self, causation_id: str) -> Optional[LedgerEvent]:
        position = self.storage.causation_index.get(causation_id)
        return self._at(position) if position else None

    def _at(self, position: int) -> LedgerEvent:
        return LedgerEvent(**self.storage.ledger_entries[position - 1])
