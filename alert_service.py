"""Alert persistence and realtime fan-out"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from alert_rules import AlertDraft
from config import settings
from models import Alert
from realtime import RealtimeBroker, device_topic, publish

logger = logging.getLogger(__name__)


def _value(field) -> str:
    return getattr(field, "value", field)


def create_alert(
    db: Session,
    device_id: str,
    draft: AlertDraft,
    reading_id: Optional[int] = None,
) -> int:
    """Insert an alerts row for ``draft`` and return its id."""
    alert = Alert(
        device_id=device_id,
        kind=_value(draft.kind),
        severity=_value(draft.severity),
        message=draft.message,
        reading_id=reading_id,
    )
    db.add(alert)
    db.commit()
    db.refresh(alert)
    return alert.id


async def publish_alert(broker: RealtimeBroker, device_id: str, alert_id: int) -> None:
    """Notify the device's realtime topic that ``alert_id`` exists."""
    await publish(
        broker,
        device_topic(device_id),
        {"type": "alert", "payload": {"id": alert_id}},
        join_timeout_ms=settings.REALTIME_JOIN_TIMEOUT_MS,
    )


async def raise_alerts(
    db: Session,
    broker: RealtimeBroker,
    device_id: str,
    drafts: list[AlertDraft],
    reading_id: Optional[int] = None,
) -> list[int]:
    """Persist and publish each draft; one failing alert does not stop the rest.

    Returns the ids of the alerts that were stored.
    """
    alert_ids = []
    for draft in drafts:
        try:
            alert_id = create_alert(db, device_id, draft, reading_id)
        except Exception as e:
            logger.error(f"Alert insert failed for {device_id} ({_value(draft.kind)}): {e}")
            db.rollback()
            continue
        alert_ids.append(alert_id)

        try:
            await publish_alert(broker, device_id, alert_id)
        except Exception as e:
            logger.error(f"Realtime publish failed for alert {alert_id} on {device_id}: {e}")
    return alert_ids
