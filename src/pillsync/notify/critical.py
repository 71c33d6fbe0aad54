"""Push delivery for critical event records."""

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlmodel import Session, select

from pillsync.documents.models import CriticalEvent
from pillsync.documents.store import get_push_tokens
from pillsync.notify.notifications import prune_invalid_tokens
from pillsync.notify.push import PushDeliveryError
from pillsync.triggers.bus import Change

if TYPE_CHECKING:
    from pillsync.triggers.context import HandlerContext

logger = logging.getLogger(__name__)

_TITLES = {
    "missed_dose": "Missed dose",
    "dose_missed": "Missed dose",
    "low_battery": "Dispenser battery low",
    "device_offline": "Dispenser offline",
    "dispense_error": "Dispense failed",
}


def create_critical_event(
    session: Session,
    event_type: str,
    caregiver_id: str | None,
    patient_id: str | None = None,
    medication_name: str | None = None,
) -> CriticalEvent:
    event = CriticalEvent(
        event_type=event_type,
        caregiver_id=caregiver_id,
        patient_id=patient_id,
        medication_name=medication_name,
    )
    session.add(event)
    session.commit()
    session.refresh(event)
    return event


def list_critical_events(
    session: Session, caregiver_id: str | None = None, limit: int = 100
) -> list[CriticalEvent]:
    stmt = select(CriticalEvent)
    if caregiver_id is not None:
        stmt = stmt.where(CriticalEvent.caregiver_id == caregiver_id)
    stmt = stmt.order_by(CriticalEvent.created_at.desc()).limit(limit)  # type: ignore[attr-defined]
    return list(session.exec(stmt).all())


def build_message(event: CriticalEvent) -> tuple[str, str, dict[str, str]]:
    title = _TITLES.get(event.event_type.lower(), "Critical event")
    who = event.patient_id or "Your patient"
    if event.medication_name:
        body = f"{who}: {event.medication_name} ({event.event_type})"
    else:
        body = f"{who}: {event.event_type}"
    data = {
        "eventId": event.id,
        "eventType": event.event_type,
        "patientId": event.patient_id or "",
        "medicationName": event.medication_name or "",
    }
    return title, body, data


def _mark(session: Session, event: CriticalEvent, sent: bool, results: dict[str, Any]) -> None:
    event.notification_sent = sent
    event.notification_results = results
    event.notified_at = datetime.now(UTC)
    session.add(event)
    session.commit()
    session.refresh(event)


def deliver_critical_event(ctx: "HandlerContext", event_id: str) -> CriticalEvent | None:
    """Push one critical event to its caregiver and record the outcome once."""
    with ctx.session() as session:
        event = session.get(CriticalEvent, event_id)
        if event is None:
            logger.warning("Critical event %s vanished before delivery", event_id)
            return None
        if not event.caregiver_id:
            logger.warning("Critical event %s has no caregiver; skipping", event_id)
            return event
        if event.notification_sent is not None:
            logger.debug("Critical event %s already processed", event_id)
            return event

        tokens = get_push_tokens(session, [event.caregiver_id])
        if not tokens:
            logger.info(
                "Caregiver %s has no push tokens; event %s marked sent",
                event.caregiver_id,
                event_id,
            )
            _mark(session, event, True, {"successCount": 0, "failureCount": 0})
            return event

        title, body, data = build_message(event)
        try:
            result = ctx.push.send_multicast(tokens, title, body, data)
        except PushDeliveryError as e:
            logger.error("Push for critical event %s failed: %s", event_id, e)
            _mark(session, event, False, {"error": str(e)})
            return event

        prune_invalid_tokens(session, result)
        _mark(
            session,
            event,
            True,
            {"successCount": result.success_count, "failureCount": result.failure_count},
        )
        logger.info(
            "Critical event %s delivered: %d ok, %d failed",
            event_id,
            result.success_count,
            result.failure_count,
        )
        return event


def on_critical_event_created(ctx: "HandlerContext", change: Change) -> None:
    """``criticalEvents/{event_id}`` created."""
    if not (change.after or {}).get("caregiver_id"):
        logger.warning("Critical event %s has no caregiver; skipping", change.path)
        return
    deliver_critical_event(ctx, change.params["event_id"])
