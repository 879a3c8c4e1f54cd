import logging
from typing import Any, Mapping

from ..domain.events import NotificationKind

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Default notification sink; delivery channels plug in behind the Notifier protocol."""

    def notify(self, user_id: int, kind: NotificationKind, payload: Mapping[str, Any]) -> None:
        logger.info("notify user=%s kind=%s payload=%s", user_id, kind, dict(payload))
