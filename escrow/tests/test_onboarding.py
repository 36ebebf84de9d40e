"""
Unit Tests for the Payout Onboarding State Machine

Tests cover:
1. Initiation, link reuse and regeneration
2. Lazy link expiry
3. Provider facts applied in any order
4. Duplicate webhook deliveries
5. Gateway outages leaving state unchanged
"""

import pytest

from escrow.errors import (
    CommandValidationError,
    ForbiddenTransitionError,
    GatewayUnavailableError,
    NotFoundError,
)
from escrow.models import OnboardingCommand, OnboardingStatus, ProviderStatus, SubjectType
from escrow.service import EscrowService


CREATOR = "creator-7"


def initiate(service, key="onb-1", creator_id=CREATOR):
    return service.initiate_onboarding(creator_id, OnboardingCommand(idempotency_key=key))


class TestInitiation:
    """Tests for starting onboarding."""

    def test_initiate_generates_link(self, service, gateway):
        """Test NotStarted -> LinkGenerated with a provider entity."""
        view = initiate(service)

        assert view.onboarding_status == OnboardingStatus.LINK_GENERATED
        assert view.onboarding_link.startswith("https://sandbox.payouts.local/onboarding/")
        assert view.entity_id in gateway.entities
        assert view.is_complete is False
        assert gateway.calls == ["create_onboarding_session"]
        # Non-terminal onboarding is tracked for reconciliation
        assert service.scheduler.get(SubjectType.ONBOARDING, CREATOR) is not None

    def test_valid_link_is_reused(self, service, gateway):
        """Test initiating again while the link is valid calls nothing external."""
        first = initiate(service, key="onb-1")
        second = initiate(service, key="onb-2")

        assert second.onboarding_link == first.onboarding_link
        assert gateway.calls == ["create_onboarding_session"]

    def test_replayed_key(self, service, gateway):
        """Test the same idempotency key returns the current record."""
        initiate(service, key="onb-1")
        initiate(service, key="onb-1")

        assert gateway.calls == ["create_onboarding_session"]

    def test_initiate_while_in_progress_forbidden(self, service):
        """Test a creator mid-flow cannot restart onboarding."""
        initiate(service)
        service.onboarding.apply_provider_status(CREATOR, ProviderStatus.STARTED)

        with pytest.raises(ForbiddenTransitionError):
            initiate(service, key="onb-2")

    def test_reinitiate_after_rejection(self, service, gateway):
        """Test Rejected -> LinkGenerated with a fresh provider entity."""
        first = initiate(service)
        service.onboarding.apply_provider_status(CREATOR, ProviderStatus.SUBMITTED)
        service.onboarding.apply_provider_status(CREATOR, ProviderStatus.REJECTED)

        second = initiate(service, key="onb-2")

        assert second.onboarding_status == OnboardingStatus.LINK_GENERATED
        assert second.entity_id != first.entity_id
        assert service.onboarding.get(CREATOR).attempt == 2

    def test_regenerate_without_onboarding(self, service):
        """Test regenerating a link requires an initiated onboarding."""
        with pytest.raises(CommandValidationError):
            service.regenerate_onboarding_link(CREATOR, OnboardingCommand(idempotency_key="regen-1"))

    def test_regenerate_keeps_entity(self, service, gateway):
        """Test a regenerated link belongs to the same provider entity."""
        first = initiate(service)

        second = service.regenerate_onboarding_link(CREATOR, OnboardingCommand(idempotency_key="regen-1"))

        assert second.entity_id == first.entity_id
        assert second.onboarding_link != first.onboarding_link


class TestLinkExpiry:
    """Tests for lazily expired onboarding links."""

    def test_expired_link_reads_as_not_started(self, service, clock):
        """Test an unused link past its TTL reports NotStarted."""
        initiate(service)
        clock.advance(hours=169)

        view = service.onboarding_status(CREATOR)

        assert view.onboarding_status == OnboardingStatus.NOT_STARTED
        assert view.link_expired is True
        assert view.onboarding_link is None
        # Stored status is untouched until the next command
        assert service.onboarding.get(CREATOR).status == OnboardingStatus.LINK_GENERATED

    def test_initiate_after_expiry_regenerates(self, service, gateway, clock):
        """Test initiating after expiry issues a new link on the same entity."""
        first = initiate(service)
        clock.advance(hours=169)

        second = initiate(service, key="onb-2")

        assert second.entity_id == first.entity_id
        assert second.link_expired is False
        assert second.onboarding_link.endswith("?v=2")
        assert gateway.calls == ["create_onboarding_session", "regenerate_link"]


class TestProviderFacts:
    """Tests for webhook and poll facts."""

    def test_out_of_order_facts_converge(self, settings, clock):
        """Test [started, submitted] and [submitted, started] end in the same state."""
        results = []
        for order in ([ProviderStatus.STARTED, ProviderStatus.SUBMITTED],
                      [ProviderStatus.SUBMITTED, ProviderStatus.STARTED]):
            service = EscrowService(settings=settings, clock=clock)
            initiate(service)
            for status in order:
                service.onboarding.apply_provider_status(CREATOR, status)
            results.append(service.onboarding.get(CREATOR).status)

        assert results == [OnboardingStatus.PENDING_APPROVAL, OnboardingStatus.PENDING_APPROVAL]

    def test_late_submitted_after_approval(self, service):
        """Test a stale fact after approval changes nothing."""
        initiate(service)
        assert service.onboarding.apply_provider_status(CREATOR, ProviderStatus.APPROVED) is True

        assert service.onboarding.apply_provider_status(CREATOR, ProviderStatus.SUBMITTED) is False
        assert service.onboarding.get(CREATOR).status == OnboardingStatus.APPROVED

    def test_unknown_status_is_a_no_op(self, service):
        """Test unrecognised provider statuses are logged, not applied."""
        initiate(service)

        assert service.onboarding.apply_provider_status(CREATOR, ProviderStatus.UNKNOWN) is False
        assert service.onboarding.get(CREATOR).status == OnboardingStatus.LINK_GENERATED

    def test_fact_for_unknown_creator(self, service):
        """Test a fact for a creator with no onboarding record."""
        with pytest.raises(NotFoundError):
            service.onboarding.apply_provider_status("nobody", ProviderStatus.APPROVED)

    def test_duplicate_approved_webhook(self, service, gateway, notifier):
        """Test a redelivered approval has no second side effect."""
        view = initiate(service)
        raw, header = gateway.signed_webhook("entity.approval_succeeded", {"id": view.entity_id})

        first = service.handle_webhook(raw, header)
        second = service.handle_webhook(raw, header)

        assert (first.applied, second.applied) == (True, False)
        assert service.onboarding.get(CREATOR).status == OnboardingStatus.APPROVED
        assert notifier.names().count("onboarding.approved") == 1
        assert service.scheduler.get(SubjectType.ONBOARDING, CREATOR) is None

    def test_beneficiary_and_bank_details(self, service, gateway):
        """Test a later beneficiary event fills in payout details."""
        view = initiate(service)
        raw, header = gateway.signed_webhook("entity.approval_succeeded", {"id": view.entity_id})
        service.handle_webhook(raw, header)

        raw, header = gateway.signed_webhook("beneficiary.created", {
            "id": "ben_123",
            "entity_id": view.entity_id,
            "destination_details": {"bank": {"bank_name": "First Bank", "account_number": "000123456789",
                                             "country": "US", "currency": "USD"}},
        })
        service.handle_webhook(raw, header)

        status = service.onboarding_status(CREATOR)
        assert status.beneficiary_id == "ben_123"
        assert status.bank_details.last_four == "6789"
        assert status.is_complete is True
        assert service.onboarding.beneficiary_for(CREATOR) == "ben_123"

    def test_reference_fallback(self, service, gateway):
        """Test a webhook without entity id is matched by creator reference."""
        initiate(service)
        raw, header = gateway.signed_webhook("entity.approval_succeeded", {"reference_id": f"creator_{CREATOR}"})

        result = service.handle_webhook(raw, header)

        assert result.applied is True
        assert result.subject_id == CREATOR

    def test_webhook_for_unknown_entity(self, service, gateway):
        """Test an unmatched webhook is acknowledged without changes."""
        raw, header = gateway.signed_webhook("entity.approval_succeeded", {"id": "ent_unknown"})

        result = service.handle_webhook(raw, header)

        assert result.received is True
        assert result.applied is False


class TestGatewayOutage:
    """Tests for provider failures during commands."""

    def test_outage_leaves_state_unchanged(self, service, gateway):
        """Test a failed initiation is not a transition and can be retried."""
        gateway.outage = True

        with pytest.raises(GatewayUnavailableError):
            initiate(service)

        assert service.onboarding.get(CREATOR).status == OnboardingStatus.NOT_STARTED
        assert CREATOR not in service.storage.onboarding

        gateway.outage = False
        view = initiate(service)
        assert view.onboarding_status == OnboardingStatus.LINK_GENERATED


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
