from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Literal, Optional

from ..domain.events import Initiator, StatusChanged
from .request_id import get_request_id

AuditAction = Literal[
    "reservation.created",
    "reservation.pending",
    "reservation.active",
    "reservation.cancelled",
    "reservation.completed",
    "reservation.rejected",
]

_audit_logger = logging.getLogger("audit")
_audit_logger.setLevel(logging.INFO)
if not _audit_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger.addHandler(handler)
_audit_logger.propagate = False


def _enum_to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def emit_audit_log(
    *,
    action: AuditAction,
    initiator: Initiator,
    reservation_id: int,
    table_id: Optional[int],
    user_id: Optional[int],
    status_from: Optional[str],
    status_to: Optional[str],
    at: datetime,
    message: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """Emit structured JSON audit log. Raises RuntimeError if logging fails."""
    payload: dict[str, Any] = {
        "at": at.isoformat(),
        "level": "info",
        "action": action,
        "initiator": initiator,
        "request_id": get_request_id(),
        "reservation_id": reservation_id,
        "table_id": table_id,
        "user_id": user_id,
        "status_from": _enum_to_str(status_from),
        "status_to": _enum_to_str(status_to),
    }
    if message is not None:
        payload["message"] = message
    if extra:
        payload.update(extra)

    compact_payload = {k: v for k, v in payload.items() if v is not None}
    try:
        _audit_logger.info(json.dumps(compact_payload, ensure_ascii=True))
    except Exception as exc:
        raise RuntimeError("failed to emit audit log") from exc


class AuditLogPublisher:
    """EventPublisher writing every status transition to the audit log."""

    def publish(self, event: StatusChanged) -> None:
        action = "reservation.created" if event.from_status is None else f"reservation.{event.to_status}"
        emit_audit_log(
            action=action,  # type: ignore[arg-type]
            initiator=event.initiator,
            reservation_id=event.reservation_id,
            table_id=event.table_id,
            user_id=event.user_id,
            status_from=event.from_status,
            status_to=event.to_status,
            at=event.at,
        )
