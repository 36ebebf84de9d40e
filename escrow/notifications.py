import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, event: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Default collaborator; delivery channels live outside this service."""

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("notify %s %s", event, payload)


class RecordingNotifier:
    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]
