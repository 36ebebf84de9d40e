"""
Milestone Escrow for Creator Campaigns

This module provides:
- An append-only ledger with idempotent, causation-keyed events
- Wallet and campaign balances folded from ledger history
- Milestone lifecycle: pending → submitted → approved → released / disputed
- Payout onboarding with the payout provider, gating every release
- Webhook verification and reconciliation polling with bounded backoff
"""

from .models import (
    EventKind,
    MilestoneStatus,
    OnboardingStatus,
    LedgerEvent,
    WalletBalance,
    CampaignEscrow,
    Milestone,
    OnboardingRecord,
    PayoutRecord,
)
from .service import EscrowService

__all__ = [
    "EventKind",
    "MilestoneStatus",
    "OnboardingStatus",
    "LedgerEvent",
    "WalletBalance",
    "CampaignEscrow",
    "Milestone",
    "OnboardingRecord",
    "PayoutRecord",
    "EscrowService",
]
