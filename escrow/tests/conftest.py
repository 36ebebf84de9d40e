from datetime import datetime, timedelta, timezone

import pytest

from escrow.config import Settings
from escrow.gateway import SandboxGateway
from escrow.notifications import RecordingNotifier
from escrow.service import EscrowService

START = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(reconcile_max_attempts=3)


@pytest.fixture
def gateway(settings, clock):
    return SandboxGateway(settings, clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(settings, gateway, notifier, clock):
    return EscrowService(gateway=gateway, settings=settings, notifier=notifier, clock=clock)
