"""
Unit Tests for the Ledger Store

Tests cover:
1. Append ordering (per-wallet sequence, global position)
2. Causation-id idempotency
3. Atomic multi-event appends
4. Paginated history
5. Projection rebuild and verification
6. Command log for non-ledger commands
"""

import pytest

from escrow.errors import (
    CommandValidationError,
    DuplicateCausationError,
    InsufficientFundsError,
)
from escrow.models import EventKind
from escrow.store import LedgerStore, replay


WALLET = "brand-wallet-1"
OTHER_WALLET = "brand-wallet-2"


class TestAppendOrdering:
    """Tests for sequence and position assignment."""

    def test_sequence_is_per_wallet(self, clock):
        """Test each wallet numbers its own events from 1."""
        ledger = LedgerStore(clock=clock)

        first = ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")
        other = ledger.append(OTHER_WALLET, EventKind.DEPOSIT, 500, "USD", "dep-2")
        second = ledger.append(WALLET, EventKind.DEPOSIT, 250, "USD", "dep-3")

        assert (first.sequence, second.sequence) == (1, 2)
        assert other.sequence == 1
        # Global position follows append order across wallets
        assert (first.position, other.position, second.position) == (1, 2, 3)
        assert ledger.balance(WALLET).last_sequence == 2

    def test_non_positive_amount_rejected(self, clock):
        """Test that zero amounts never reach the ledger."""
        ledger = LedgerStore(clock=clock)

        with pytest.raises(CommandValidationError):
            ledger.append(WALLET, EventKind.DEPOSIT, 0, "USD", "dep-zero")

        assert ledger.all_events() == []

    def test_currency_is_fixed_by_first_deposit(self, clock):
        """Test that a wallet never mixes currencies."""
        ledger = LedgerStore(clock=clock)
        ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")

        with pytest.raises(CommandValidationError):
            ledger.append(WALLET, EventKind.DEPOSIT, 1000, "EUR", "dep-2")

        assert ledger.balance(WALLET).currency == "USD"


class TestCausationIdempotency:
    """Tests for duplicate causation ids."""

    def test_same_command_returns_original(self, clock):
        """Test that replaying a command yields one event and one balance change."""
        ledger = LedgerStore(clock=clock)

        first = ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")
        again = ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")

        assert again.id == first.id
        assert len(ledger.list_by_wallet(WALLET)) == 1
        assert ledger.balance(WALLET).deposited == 1000

    def test_reused_causation_with_different_content(self, clock):
        """Test that a causation id cannot be reused for another command."""
        ledger = LedgerStore(clock=clock)
        ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")

        with pytest.raises(DuplicateCausationError):
            ledger.append(WALLET, EventKind.DEPOSIT, 2000, "USD", "dep-1")

        assert ledger.balance(WALLET).deposited == 1000

    def test_strict_mode_rejects_any_reuse(self, clock):
        """Test strict appends refuse even identical replays."""
        ledger = LedgerStore(clock=clock)
        ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")

        with pytest.raises(DuplicateCausationError):
            ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1", strict=True)

    def test_lookup_by_causation(self, clock):
        """Test events can be found by their causation id."""
        ledger = LedgerStore(clock=clock)
        event = ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")

        assert ledger.get_by_causation("dep-1") == event
        assert ledger.get_by_causation("missing") is None


class TestAtomicAppend:
    """Tests for append_all."""

    def test_all_or_nothing(self, clock):
        """Test a failing draft leaves no partial writes behind."""
        ledger = LedgerStore(clock=clock)
        ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")

        drafts = [
            dict(wallet_id=WALLET, kind=EventKind.ALLOCATE, amount=600, currency="USD",
                 causation_id="alloc-1", campaign_id="camp-1"),
            dict(wallet_id=WALLET, kind=EventKind.LOCK, amount=700, currency="USD",
                 causation_id="lock-1", campaign_id="camp-1", milestone_id="ms-1"),
        ]
        with pytest.raises(InsufficientFundsError):
            ledger.append_all(drafts)

        balance = ledger.balance(WALLET)
        assert balance.allocated == 0
        assert balance.locked == 0
        assert len(ledger.all_events()) == 1
        assert ledger.get_by_causation("alloc-1") is None

    def test_later_draft_sees_earlier_draft(self, clock):
        """Test drafts in one batch are checked against each other's effects."""
        ledger = LedgerStore(clock=clock)
        ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")

        events = ledger.append_all([
            dict(wallet_id=WALLET, kind=EventKind.ALLOCATE, amount=600, currency="USD",
                 causation_id="alloc-1", campaign_id="camp-1"),
            dict(wallet_id=WALLET, kind=EventKind.LOCK, amount=400, currency="USD",
                 causation_id="lock-1", campaign_id="camp-1", milestone_id="ms-1"),
        ])

        assert [e.sequence for e in events] == [2, 3]
        assert ledger.campaign_totals("camp-1").locked_amount == 400
        assert ledger.milestone_locked("ms-1") == 400

    def test_single_wallet_only(self, clock):
        """Test that one atomic append never spans two wallets."""
        ledger = LedgerStore(clock=clock)

        with pytest.raises(CommandValidationError):
            ledger.append_all([
                dict(wallet_id=WALLET, kind=EventKind.DEPOSIT, amount=10, currency="USD", causation_id="a"),
                dict(wallet_id=OTHER_WALLET, kind=EventKind.DEPOSIT, amount=10, currency="USD", causation_id="b"),
            ])

    def test_lock_requires_milestone(self, clock):
        """Test campaign and milestone references are enforced per kind."""
        ledger = LedgerStore(clock=clock)
        ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")
        ledger.append(WALLET, EventKind.ALLOCATE, 1000, "USD", "alloc-1", campaign_id="camp-1")

        with pytest.raises(CommandValidationError):
            ledger.append(WALLET, EventKind.LOCK, 100, "USD", "lock-1", campaign_id="camp-1")


class TestHistory:
    """Tests for paginated ledger history."""

    def test_newest_first_with_pagination(self, clock):
        """Test history ordering, limit and offset."""
        ledger = LedgerStore(clock=clock)
        for i in range(5):
            ledger.append(WALLET, EventKind.DEPOSIT, 100 * (i + 1), "USD", f"dep-{i}")

        page, total = ledger.history(WALLET, limit=2, offset=1)

        assert total == 5
        assert [e.amount for e in page] == [400, 300]

    def test_filter_by_kind(self, clock):
        """Test history can be narrowed to one event kind."""
        ledger = LedgerStore(clock=clock)
        ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")
        ledger.append(WALLET, EventKind.WITHDRAW, 200, "USD", "wd-1")

        page, total = ledger.history(WALLET, kind=EventKind.WITHDRAW)

        assert total == 1
        assert page[0].kind == EventKind.WITHDRAW


class TestProjections:
    """Tests for rebuilding balances from history."""

    def test_replay_matches_cached_projection(self, clock):
        """Test that folding history from empty reproduces the cache."""
        ledger = LedgerStore(clock=clock)
        ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")
        ledger.append(WALLET, EventKind.ALLOCATE, 800, "USD", "alloc-1", campaign_id="camp-1")
        ledger.append(WALLET, EventKind.LOCK, 500, "USD", "lock-1", campaign_id="camp-1", milestone_id="ms-1")
        ledger.append(WALLET, EventKind.RELEASE, 500, "USD", "rel-1", campaign_id="camp-1", milestone_id="ms-1")

        rebuilt = replay(ledger.all_events())

        assert rebuilt.wallets[WALLET] == ledger.balance(WALLET)
        assert ledger.verify_projections()

    def test_detects_and_repairs_drift(self, clock):
        """Test a tampered cache is detected and rebuilt from events."""
        ledger = LedgerStore(clock=clock)
        ledger.append(WALLET, EventKind.DEPOSIT, 1000, "USD", "dep-1")

        ledger.storage.projections.wallets[WALLET].deposited = 999_999
        assert not ledger.verify_projections()

        ledger.rebuild_projections()
        assert ledger.verify_projections()
        assert ledger.balance(WALLET).deposited == 1000


class TestCommandLog:
    """Tests for idempotency of commands that write no ledger events."""

    def test_recall_recorded_result(self, clock):
        """Test a recorded command result is returned for the same key."""
        ledger = LedgerStore(clock=clock)
        ledger.record_command("key-1", "submit", "ms-1", {"ok": True})

        assert ledger.recall_command("key-1", "submit", "ms-1") == {"ok": True}
        assert ledger.recall_command("key-2", "submit", "ms-1") is None

    def test_key_reused_for_other_command(self, clock):
        """Test an idempotency key is bound to one action and subject."""
        ledger = LedgerStore(clock=clock)
        ledger.record_command("key-1", "submit", "ms-1", {"ok": True})

        with pytest.raises(DuplicateCausationError):
            ledger.recall_command("key-1", "approve", "ms-1")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
