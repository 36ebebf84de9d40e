"""
External Payout Gateway Adapter

Boundary to the payout provider (Tazapay). Provider payloads are parsed into the
closed ``ProviderStatus`` / ``PayoutProviderStatus`` sets here; nothing past this
module sees raw provider strings.
"""

import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import httpx
from pydantic import ValidationError

from .config import Settings
from .errors import GatewayUnavailableError, InvalidSignatureError, UnparseablePayloadError
from .models import (
    BankDetails,
    OnboardingLink,
    OnboardingSession,
    PayoutProviderStatus,
    ProviderStatus,
    SubjectType,
    WebhookEvent,
)
from .store import Clock, utc_now

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "webhook-signature"
IDEMPOTENCY_HEADER = "Idempotency-Key"

ENTITY_EVENTS = {
    "entity.onboarding.started": ProviderStatus.STARTED,
    "entity.onboarding.submitted": ProviderStatus.SUBMITTED,
    "entity.approval_pending": ProviderStatus.SUBMITTED,
    "entity.approval_succeeded": ProviderStatus.APPROVED,
    "entity.onboarding.succeeded": ProviderStatus.APPROVED,
    "entity.approval_rejected": ProviderStatus.REJECTED,
    "entity.onboarding.failed": ProviderStatus.REJECTED,
    "beneficiary.succeeded": ProviderStatus.APPROVED,
    "beneficiary.created": ProviderStatus.APPROVED,
}

PAYOUT_EVENTS = {
    "payout.processing": PayoutProviderStatus.PROCESSING,
    "payout.completed": PayoutProviderStatus.COMPLETED,
    "payout.success": PayoutProviderStatus.COMPLETED,
    "payout.failed": PayoutProviderStatus.FAILED,
}

ENTITY_STATUSES = {
    "started": ProviderStatus.STARTED,
    "in_progress": ProviderStatus.STARTED,
    "action_required": ProviderStatus.STARTED,
    "submitted": ProviderStatus.SUBMITTED,
    "pending": ProviderStatus.SUBMITTED,
    "under_review": ProviderStatus.SUBMITTED,
    "approved": ProviderStatus.APPROVED,
    "rejected": ProviderStatus.REJECTED,
    "declined": ProviderStatus.REJECTED,
}

PAYOUT_STATUSES = {
    "initiated": PayoutProviderStatus.PROCESSING,
    "pending": PayoutProviderStatus.PROCESSING,
    "processing": PayoutProviderStatus.PROCESSING,
    "in_transit": PayoutProviderStatus.PROCESSING,
    "succeeded": PayoutProviderStatus.COMPLETED,
    "success": PayoutProviderStatus.COMPLETED,
    "completed": PayoutProviderStatus.COMPLETED,
    "paid": PayoutProviderStatus.COMPLETED,
    "failed": PayoutProviderStatus.FAILED,
    "rejected": PayoutProviderStatus.FAILED,
    "reversed": PayoutProviderStatus.FAILED,
    "cancelled": PayoutProviderStatus.FAILED,
}

ONBOARDING_LINK_KEYS = (
    "link_to_onboarding_package_for_the_entity",
    "onboarding_package_url",
    "onboarding_link",
    "hosted_onboarding_url",
    "url",
)


def map_entity_status(raw: Optional[str]) -> ProviderStatus:
    status = ENTITY_STATUSES.get((raw or "").lower(), ProviderStatus.UNKNOWN)
    if status == ProviderStatus.UNKNOWN:
        logger.warning("Unrecognised provider entity status %r", raw)
    return status


def map_payout_status(raw: Optional[str]) -> PayoutProviderStatus:
    status = PAYOUT_STATUSES.get((raw or "").lower(), PayoutProviderStatus.UNKNOWN)
    if status == PayoutProviderStatus.UNKNOWN:
        logger.warning("Unrecognised provider payout status %r", raw)
    return status


def sign_payload(secret: str, raw_payload: bytes, timestamp: Optional[int] = None) -> str:
    """Build a ``t=<unix>,v1=<hex>`` signature header for a payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + raw_payload, hashlib.sha256)
    return f"t={timestamp},v1={digest.hexdigest()}"


def verify_signature(
    secret: str, raw_payload: bytes, signature_header: Optional[str], now: datetime, tolerance: int
) -> None:
    if not signature_header:
        raise InvalidSignatureError("Missing webhook signature")
    parts = dict(
        item.strip().split("=", 1) for item in signature_header.split(",") if "=" in item
    )
    try:
        timestamp = int(parts["t"])
        signature = parts["v1"]
    except (KeyError, ValueError):
        raise InvalidSignatureError("Malformed webhook signature")

    if tolerance and abs(now.timestamp() - timestamp) > tolerance:
        raise InvalidSignatureError("Webhook signature timestamp outside tolerance")

    expected = hmac.new(secret.encode(), f"{timestamp}.".encode() + raw_payload, hashlib.sha256)
    if not hmac.compare_digest(expected.hexdigest(), signature):
        raise InvalidSignatureError("Webhook signature mismatch")


def _bank_details(data: dict, now: datetime) -> Optional[BankDetails]:
    bank = (data.get("destination_details") or {}).get("bank") or {}
    if not bank and not data.get("beneficiary_id"):
        return None
    account = bank.get("account_number") or bank.get("iban") or ""
    return BankDetails(
        bank_name=bank.get("bank_name"),
        last_four=account[-4:] or None,
        country=bank.get("country") or data.get("country"),
        currency=bank.get("currency") or data.get("currency"),
        connected_at=now,
    )


class PayoutGateway(ABC):
    def __init__(self, settings: Settings, clock: Clock = utc_now):
        self.settings = settings
        self.clock = clock

    @abstractmethod
    def create_onboarding_session(
        self, creator_id: str, name: Optional[str] = None, email: Optional[str] = None
    ) -> OnboardingSession: ...

    @abstractmethod
    def regenerate_link(self, entity_id: str) -> OnboardingLink: ...

    @abstractmethod
    def pull_status(self, entity_id: str) -> ProviderStatus: ...

    @abstractmethod
    def create_payout(self, beneficiary_id: str, amount: int, currency: str, reference_id: str) -> str:
        """Start a bank transfer; repeated calls with one reference_id return the same transfer."""

    @abstractmethod
    def pull_payout_status(self, external_payout_id: str) -> PayoutProviderStatus: ...

    def close(self) -> None:
        pass

    def parse_webhook(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookEvent:
        now = self.clock()
        verify_signature(
            self.settings.webhook_secret, raw_payload, signature_header, now,
            self.settings.webhook_tolerance,
        )
        try:
            body = json.loads(raw_payload)
        except (ValueError, UnicodeDecodeError):
            raise UnparseablePayloadError("Webhook body is not valid JSON")
        if not isinstance(body, dict) or not isinstance(body.get("event"), str) \
                or not isinstance(body.get("data"), dict):
            raise UnparseablePayloadError("Webhook body must carry 'event' and 'data'")

        try:
            return self._event_from(body["event"], body["data"], now)
        except (ValidationError, AttributeError, TypeError) as e:
            raise UnparseablePayloadError(f"Webhook {body['event']} has malformed data") from e

    def _event_from(self, event_type: str, data: dict, now: datetime) -> WebhookEvent:
        if event_type.startswith("payout."):
            return WebhookEvent(
                event_type=event_type,
                subject_type=SubjectType.PAYOUT,
                reference_id=data.get("reference_id"),
                external_payout_id=data.get("id"),
                payout_status=PAYOUT_EVENTS.get(event_type, PayoutProviderStatus.UNKNOWN),
                failure_reason=data.get("failure_reason"),
            )

        if event_type.startswith("beneficiary."):
            entity_id = data.get("entity_id")
            beneficiary_id = data.get("id")
        else:
            entity_id = data.get("id")
            beneficiary_id = data.get("beneficiary_id")
        status = ENTITY_EVENTS.get(event_type, ProviderStatus.UNKNOWN)
        return WebhookEvent(
            event_type=event_type,
            subject_type=SubjectType.ONBOARDING,
            entity_id=entity_id,
            reference_id=data.get("reference_id"),
            provider_status=status,
            beneficiary_id=beneficiary_id,
            bank_details=_bank_details(data, now) if status == ProviderStatus.APPROVED else None,
        )


class TazapayGateway(PayoutGateway):
    def __init__(self, settings: Settings, clock: Clock = utc_now, client: Optional[httpx.Client] = None):
        super().__init__(settings, clock)
        self.client = client or httpx.Client(
            base_url=settings.gateway_base_url.rstrip("/"),
            auth=(settings.gateway_api_key or "", settings.gateway_api_secret or ""),
            timeout=settings.gateway_timeout,
            headers={"Content-Type": "application/json"},
        )

    def close(self) -> None:
        self.client.close()

    def create_onboarding_session(
        self, creator_id: str, name: Optional[str] = None, email: Optional[str] = None
    ) -> OnboardingSession:
        data = self._request("POST", "/v3/entity", json={
            "type": "individual",
            "name": name or creator_id,
            "email": email,
            "reference_id": f"creator_{creator_id}",
            "purpose_of_use": ["payout"],
            "relationship": "vendor",
        })
        entity_id = data.get("id")
        link = self._link_from(data)
        if not entity_id or not link:
            raise GatewayUnavailableError("Onboarding URL not returned from provider")
        logger.info("Provider entity %s created for creator %s", entity_id, creator_id)
        return OnboardingSession(entity_id=entity_id, link=link, expires_at=self._expiry())

    def regenerate_link(self, entity_id: str) -> OnboardingLink:
        link = self._link_from(self._request("GET", f"/v3/entity/{entity_id}"))
        if not link:
            logger.info("No onboarding URL on entity %s, requesting a fresh package", entity_id)
            data = self._request("PUT", f"/v3/entity/{entity_id}", json={"purpose_of_use": ["payout"]})
            link = self._link_from(data)
        if not link:
            raise GatewayUnavailableError("Failed to generate new onboarding link")
        return OnboardingLink(link=link, expires_at=self._expiry())

    def pull_status(self, entity_id: str) -> ProviderStatus:
        data = self._request("GET", f"/v3/entity/{entity_id}")
        return map_entity_status(data.get("approval_status") or data.get("status"))

    def create_payout(self, beneficiary_id: str, amount: int, currency: str, reference_id: str) -> str:
        # Retries after a lost response resolve to the transfer the provider already accepted
        data = self._request("POST", "/v3/payout", headers={IDEMPOTENCY_HEADER: reference_id}, json={
            "beneficiary": beneficiary_id,
            "amount": amount,
            "currency": currency,
            "holding_currency": currency,
            "type": "local",
            "reference_id": reference_id,
            "purpose": "PYR003",
        })
        payout_id = data.get("id")
        if not payout_id:
            raise GatewayUnavailableError("Payout id not returned from provider")
        return payout_id

    def pull_payout_status(self, external_payout_id: str) -> PayoutProviderStatus:
        data = self._request("GET", f"/v3/payout/{external_payout_id}")
        return map_payout_status(data.get("status"))

    def _request(
        self, method: str, path: str, json: Optional[dict] = None, headers: Optional[dict] = None
    ) -> dict[str, Any]:
        try:
            response = self.client.request(method, path, json=json, headers=headers)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise GatewayUnavailableError(f"Provider timed out on {method} {path}") from e
        except httpx.HTTPStatusError as e:
            raise GatewayUnavailableError(
                f"Provider returned {e.response.status_code} on {method} {path}"
            ) from e
        except httpx.HTTPError as e:
            raise GatewayUnavailableError(f"Provider unreachable: {e}") from e
        except ValueError as e:
            raise GatewayUnavailableError(f"Provider sent invalid JSON on {method} {path}") from e
        if not isinstance(body, dict):
            raise GatewayUnavailableError(f"Unexpected provider response on {method} {path}")
        data = body.get("data", body)
        return data if isinstance(data, dict) else {}

    def _link_from(self, data: dict) -> Optional[str]:
        for key in ONBOARDING_LINK_KEYS:
            if data.get(key):
                return data[key]
        return None

    def _expiry(self) -> datetime:
        return self.clock() + self.settings.onboarding_link_ttl


class SandboxGateway(PayoutGateway):
    """In-process provider used for local development when no credentials are set."""

    def __init__(self, settings: Settings, clock: Clock = utc_now):
        super().__init__(settings, clock)
        self.entities: dict[str, dict] = {}
        self.payouts: dict[str, dict] = {}
        self.outage = False
        self.calls: list[str] = []

    def create_onboarding_session(
        self, creator_id: str, name: Optional[str] = None, email: Optional[str] = None
    ) -> OnboardingSession:
        self._call("create_onboarding_session")
        entity_id = f"ent_{uuid4().hex[:12]}"
        self.entities[entity_id] = {"creator_id": creator_id, "status": "created", "links": 1}
        return OnboardingSession(entity_id=entity_id, link=self._link(entity_id), expires_at=self._expiry())

    def regenerate_link(self, entity_id: str) -> OnboardingLink:
        self._call("regenerate_link")
        entity = self.entities.get(entity_id)
        if entity is None:
            raise GatewayUnavailableError(f"Unknown entity {entity_id}")
        entity["links"] += 1
        return OnboardingLink(link=self._link(entity_id), expires_at=self._expiry())

    def pull_status(self, entity_id: str) -> ProviderStatus:
        self._call("pull_status")
        entity = self.entities.get(entity_id)
        return map_entity_status(entity["status"] if entity else None)

    def create_payout(self, beneficiary_id: str, amount: int, currency: str, reference_id: str) -> str:
        self._call("create_payout")
        for payout_id, payout in self.payouts.items():
            if payout["reference_id"] == reference_id:
                return payout_id
        payout_id = f"pot_{uuid4().hex[:12]}"
        self.payouts[payout_id] = {
            "beneficiary": beneficiary_id, "amount": amount, "currency": currency,
            "reference_id": reference_id, "status": "processing",
        }
        return payout_id

    def pull_payout_status(self, external_payout_id: str) -> PayoutProviderStatus:
        self._call("pull_payout_status")
        payout = self.payouts.get(external_payout_id)
        return map_payout_status(payout["status"] if payout else None)

    def set_entity_status(self, entity_id: str, status: str) -> None:
        self.entities[entity_id]["status"] = status

    def set_payout_status(self, external_payout_id: str, status: str) -> None:
        self.payouts[external_payout_id]["status"] = status

    def signed_webhook(self, event: str, data: dict) -> tuple[bytes, str]:
        raw = json.dumps({"event": event, "data": data}).encode()
        timestamp = int(self.clock().timestamp())
        return raw, sign_payload(self.settings.webhook_secret, raw, timestamp)

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.outage:
            raise GatewayUnavailableError(f"Sandbox provider unavailable ({name})")

    def _link(self, entity_id: str) -> str:
        return f"https://sandbox.payouts.local/onboarding/{entity_id}?v={self.entities[entity_id]['links']}"

    def _expiry(self) -> datetime:
        return self.clock() + self.settings.onboarding_link_ttl


def build_gateway(settings: Settings, clock: Clock = utc_now) -> PayoutGateway:
    if settings.has_gateway_credentials:
        return TazapayGateway(settings, clock)
    logger.warning("No payout provider credentials configured - using sandbox gateway")
    return SandboxGateway(settings, clock)
