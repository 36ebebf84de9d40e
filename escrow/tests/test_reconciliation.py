"""
Unit Tests for the Reconciliation Scheduler

Tests cover:
1. Exponential backoff with a cap
2. Polls feeding the same transitions as webhooks
3. Stalling after bounded attempts and operator requeue
4. Payout initiation retried after a provider outage
5. The background polling loop
"""

import json
import threading
import time
from datetime import timedelta

import httpx
import pytest

from escrow.gateway import TazapayGateway, sign_payload
from escrow.models import (
    AllocateRequest,
    ApproveMilestoneRequest,
    CreateCampaignRequest,
    CreateMilestoneRequest,
    DepositRequest,
    OnboardingCommand,
    OnboardingStatus,
    PayoutStatus,
    SubjectType,
    SubmitMilestoneRequest,
    TaskStatus,
)
from escrow.notifications import RecordingNotifier
from escrow.reconciliation import ReconciliationScheduler
from escrow.service import EscrowService
from escrow.store import InMemoryStorage


CREATOR = "creator-7"


def start_onboarding(service, gateway):
    view = service.initiate_onboarding(CREATOR, OnboardingCommand(idempotency_key="onb-1"))
    return view.entity_id


def fund_and_submit(service):
    service.deposit("brand-42", DepositRequest(idempotency_key="dep-1", amount=100000))
    service.create_campaign(CreateCampaignRequest(campaign_id="camp-1", wallet_id="brand-42", target_budget=100000))
    service.allocate("camp-1", AllocateRequest(idempotency_key="alloc-1", wallet_id="brand-42", amount=100000))
    service.add_milestone("camp-1", CreateMilestoneRequest(milestone_id="ms-1", creator_id=CREATOR, amount=50000))
    service.submit_milestone("camp-1", "ms-1", SubmitMilestoneRequest(
        idempotency_key="sub-1", submitted_by=CREATOR, submission_ref="https://cdn.example/post",
    ))


class LossyProvider:
    """Provider stand-in that accepts the first payout request but drops its response."""

    def __init__(self):
        self.payout_requests = []
        self.transfers = {}

    def __call__(self, request):
        if request.url.path == "/v3/entity":
            return httpx.Response(200, json={"data": {
                "id": "ent_1", "link_to_onboarding_package_for_the_entity": "https://onboard.test/ent_1",
            }})
        if request.method == "POST" and request.url.path == "/v3/payout":
            key = request.headers.get("Idempotency-Key")
            self.payout_requests.append(key)
            if key not in self.transfers:
                self.transfers[key] = f"pot_{len(self.transfers) + 1}"
                raise httpx.ReadTimeout("response lost", request=request)
            return httpx.Response(200, json={"data": {"id": self.transfers[key], "status": "processing"}})
        return httpx.Response(200, json={"data": {"status": "processing"}})


class TestBackoff:
    """Tests for poll scheduling."""

    def test_exponential_with_cap(self, settings, clock):
        """Test delays double per attempt up to the configured maximum."""
        scheduler = ReconciliationScheduler(InMemoryStorage(), settings, RecordingNotifier(), clock)

        assert scheduler.backoff(1) == timedelta(seconds=30)
        assert scheduler.backoff(2) == timedelta(seconds=60)
        assert scheduler.backoff(3) == timedelta(seconds=120)
        assert scheduler.backoff(20) == timedelta(seconds=3600)

    def test_first_poll_after_one_backoff(self, service, gateway, clock):
        """Test nothing is due before the first backoff elapses."""
        start_onboarding(service, gateway)

        assert service.scheduler.due() == []
        clock.advance(seconds=30)
        assert len(service.scheduler.due()) == 1

    def test_handler_crash_is_rescheduled(self, settings, clock):
        """Test an unexpected handler error does not drop the task."""
        scheduler = ReconciliationScheduler(InMemoryStorage(), settings, RecordingNotifier(), clock)

        def broken(subject_id):
            raise RuntimeError("boom")

        scheduler.register(SubjectType.PAYOUT, broken)
        scheduler.track(SubjectType.PAYOUT, "p-1")
        clock.advance(seconds=30)

        results = scheduler.run_due()

        assert results[0]["outcome"] == "rescheduled"
        assert results[0]["error"] == "boom"
        task = scheduler.get(SubjectType.PAYOUT, "p-1")
        assert task.attempt == 1
        assert task.next_poll_at == clock() + timedelta(seconds=60)


class TestPolling:
    """Tests for polls driving transitions."""

    def test_poll_applies_approval(self, service, gateway, clock, notifier):
        """Test a missed approval webhook is recovered by polling."""
        entity_id = start_onboarding(service, gateway)
        gateway.set_entity_status(entity_id, "approved")
        clock.advance(seconds=30)

        results = service.run_reconciliation()

        assert [r["outcome"] for r in results] == ["completed"]
        assert service.onboarding.get(CREATOR).status == OnboardingStatus.APPROVED
        assert "onboarding.approved" in notifier.names()
        assert service.scheduler.get(SubjectType.ONBOARDING, CREATOR) is None

    def test_poll_never_moves_backward(self, service, gateway, clock):
        """Test a lagging poll after a webhook keeps the newer state."""
        entity_id = start_onboarding(service, gateway)
        raw, header = gateway.signed_webhook("entity.onboarding.submitted", {"id": entity_id})
        service.handle_webhook(raw, header)
        gateway.set_entity_status(entity_id, "in_progress")
        clock.advance(minutes=5)

        service.run_reconciliation()

        assert service.onboarding.get(CREATOR).status == OnboardingStatus.PENDING_APPROVAL

    def test_expired_link_stops_polling(self, service, gateway, clock):
        """Test an abandoned link is no longer polled."""
        start_onboarding(service, gateway)
        clock.advance(hours=169)

        results = service.run_reconciliation()

        assert results[0]["outcome"] == "completed"
        assert "pull_status" not in gateway.calls


class TestStalling:
    """Tests for bounded retries."""

    def test_stalls_after_max_attempts(self, service, gateway, clock, notifier):
        """Test repeated outages surface StalledNeedsOperator."""
        start_onboarding(service, gateway)
        gateway.outage = True

        outcomes = []
        for _ in range(3):
            clock.advance(hours=1)
            outcomes.extend(r["outcome"] for r in service.run_reconciliation())

        assert outcomes == ["rescheduled", "rescheduled", "stalled"]
        stalled = service.stalled_tasks()
        assert len(stalled) == 1
        assert stalled[0].status == TaskStatus.STALLED
        assert "reconciliation.stalled" in notifier.names()

        # Stalled tasks are not polled again on their own
        clock.advance(hours=1)
        assert service.run_reconciliation() == []

    def test_operator_requeue(self, service, gateway, clock):
        """Test a requeued task is polled again immediately."""
        entity_id = start_onboarding(service, gateway)
        gateway.outage = True
        for _ in range(3):
            clock.advance(hours=1)
            service.run_reconciliation()
        task = service.stalled_tasks()[0]

        gateway.outage = False
        gateway.set_entity_status(entity_id, "approved")
        requeued = service.requeue_task(task.id)

        assert requeued.status == TaskStatus.SCHEDULED
        assert requeued.attempt == 0
        assert [r["outcome"] for r in service.run_reconciliation()] == ["completed"]
        assert service.onboarding.get(CREATOR).status == OnboardingStatus.APPROVED


class TestBackgroundLoop:
    """Tests for polling without an outside trigger."""

    def test_loop_polls_due_tasks(self, settings, clock):
        """Test the loop picks up a due task within one interval and stops cleanly."""
        scheduler = ReconciliationScheduler(InMemoryStorage(), settings, RecordingNotifier(), clock)
        polled = threading.Event()

        def handler(subject_id):
            polled.set()
            return True

        scheduler.register(SubjectType.PAYOUT, handler)
        scheduler.track(SubjectType.PAYOUT, "p-1")
        clock.advance(seconds=30)

        scheduler.start(interval=0.01)
        try:
            assert polled.wait(timeout=5)
        finally:
            scheduler.stop()

        assert scheduler.running is False
        assert scheduler.get(SubjectType.PAYOUT, "p-1") is None

    def test_loop_survives_failed_pass(self, settings, clock):
        """Test an error outside the handlers does not end the loop."""
        scheduler = ReconciliationScheduler(InMemoryStorage(), settings, RecordingNotifier(), clock)
        passes = []
        second_pass = threading.Event()

        def flaky_run_due(now=None):
            passes.append(now)
            if len(passes) == 1:
                raise RuntimeError("storage hiccup")
            second_pass.set()
            return []

        scheduler.run_due = flaky_run_due
        scheduler.start(interval=0.01)
        try:
            assert second_pass.wait(timeout=5)
        finally:
            scheduler.stop()

    def test_service_start_and_stop(self, service, gateway, clock):
        """Test the service runs reconciliation on its own until stopped."""
        entity_id = start_onboarding(service, gateway)
        gateway.set_entity_status(entity_id, "approved")
        clock.advance(seconds=30)

        service.start_reconciliation(interval=0.01)
        try:
            for _ in range(500):
                if service.onboarding.get(CREATOR).status == OnboardingStatus.APPROVED:
                    break
                time.sleep(0.01)
        finally:
            service.stop_reconciliation()

        assert service.onboarding.get(CREATOR).status == OnboardingStatus.APPROVED
        assert service.scheduler.running is False


class TestPayoutReconciliation:
    """Tests for payouts the provider did not accept at release time."""

    def test_payout_retried_after_outage(self, service, gateway, clock, notifier):
        """Test a payout left Pending by an outage is initiated and then completed by polling."""
        entity_id = start_onboarding(service, gateway)
        gateway.set_entity_status(entity_id, "approved")
        raw, header = gateway.signed_webhook("entity.approval_succeeded", {"id": entity_id})
        service.handle_webhook(raw, header)

        fund_and_submit(service)

        gateway.outage = True
        response = service.approve_milestone("camp-1", "ms-1", ApproveMilestoneRequest(
            idempotency_key="appr-1", approver_id="brand-manager",
        ))
        payout_id = response.milestone.payout_id

        # Release committed even though the provider was down
        assert service.payouts.get(payout_id).status == PayoutStatus.PENDING
        assert service.get_campaign("camp-1").released_amount == 50000

        gateway.outage = False
        clock.advance(seconds=30)
        service.run_reconciliation()
        payout = service.payouts.get(payout_id)
        assert payout.status == PayoutStatus.PROCESSING

        gateway.set_payout_status(payout.external_payout_id, "completed")
        clock.advance(minutes=5)
        service.run_reconciliation()

        assert service.payouts.get(payout_id).status == PayoutStatus.COMPLETED
        assert service.scheduler.get(SubjectType.PAYOUT, str(payout_id)) is None
        assert "payout.completed" in notifier.names()

    def test_lost_payout_response_is_not_paid_twice(self, settings, clock, notifier):
        """Test a payout whose creation response timed out resolves to the accepted transfer."""
        provider = LossyProvider()
        client = httpx.Client(transport=httpx.MockTransport(provider), base_url="https://provider.test")
        service = EscrowService(
            gateway=TazapayGateway(settings, clock, client=client),
            settings=settings, notifier=notifier, clock=clock,
        )
        service.initiate_onboarding(CREATOR, OnboardingCommand(idempotency_key="onb-1"))
        raw = json.dumps({"event": "entity.approval_succeeded", "data": {"id": "ent_1", "beneficiary_id": "ben_1"}})
        header = sign_payload(settings.webhook_secret, raw.encode(), int(clock().timestamp()))
        service.handle_webhook(raw.encode(), header)
        fund_and_submit(service)

        response = service.approve_milestone("camp-1", "ms-1", ApproveMilestoneRequest(
            idempotency_key="appr-1", approver_id="brand-manager",
        ))
        payout_id = response.milestone.payout_id
        assert service.payouts.get(payout_id).status == PayoutStatus.PENDING

        clock.advance(seconds=30)
        service.run_reconciliation()

        payout = service.payouts.get(payout_id)
        reference = f"payout_{payout_id}"
        assert provider.payout_requests == [reference, reference]
        assert provider.transfers == {reference: "pot_1"}
        assert payout.status == PayoutStatus.PROCESSING
        assert payout.external_payout_id == "pot_1"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
