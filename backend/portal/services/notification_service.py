import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, template: str, recipients: list[str], context: dict) -> None: ...


class LoggingNotifier:
    """Default notifier: logs the notice instead of sending mail."""

    def notify(self, template: str, recipients: list[str], context: dict) -> None:
        logger.info("notice template=%s recipients=%d", template, len(recipients))
