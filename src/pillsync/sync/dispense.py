"""Turn raw hardware dispense events into intake records."""

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlmodel import Session

from pillsync.documents.models import IntakeRecord, IntakeStatus, Medication
from pillsync.sync.owner import resolve_owner
from pillsync.triggers.bus import Change

if TYPE_CHECKING:
    from pillsync.triggers.context import HandlerContext

logger = logging.getLogger(__name__)

# Epoch values above this are milliseconds (year 2286 in seconds)
_MS_THRESHOLD = 10_000_000_000


def intake_record_id(device_id: str, event_id: str) -> str:
    return f"{device_id}_{event_id}"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse epoch milliseconds, epoch seconds or an ISO-8601 string as UTC."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def _lookup_medication(session: Session, medication_id: str | None) -> tuple[str, str]:
    if not medication_id:
        return "", ""
    medication = session.get(Medication, medication_id)
    if medication is None:
        logger.info("Medication %s not found for dispense event", medication_id)
        return "", ""
    return medication.name or "", medication.dosage or ""


def record_dispense_event(
    ctx: "HandlerContext", device_id: str, event_id: str, event: dict[str, Any]
) -> IntakeRecord | None:
    """Write the intake record for one dispense event.

    Returns None when the event is dropped (no owner). A record that already
    exists is returned unchanged.
    """
    patient_id = resolve_owner(ctx, device_id)
    if not patient_id:
        logger.warning("Dropping dispense event %s of %s: no owner", event_id, device_id)
        return None

    record_id = intake_record_id(device_id, event_id)
    now = datetime.now(UTC)
    with ctx.session() as session:
        existing = session.get(IntakeRecord, record_id)
        if existing is not None:
            logger.debug("Intake record %s already written", record_id)
            return existing

        medication_id = event.get("medicationId") or None
        name = event.get("medicationName")
        dosage = event.get("dosage")
        if not name or not dosage:
            looked_up_name, looked_up_dosage = _lookup_medication(session, medication_id)
            name = name or looked_up_name
            dosage = dosage or looked_up_dosage

        event_time = parse_timestamp(event.get("timestamp")) or now
        scheduled = parse_timestamp(event.get("scheduledTime")) or event_time
        failed = event.get("ok") is False

        record = IntakeRecord(
            id=record_id,
            device_id=device_id,
            patient_id=patient_id,
            medication_id=medication_id,
            medication_name=str(name or ""),
            dosage=str(dosage or ""),
            scheduled_time=scheduled,
            status=IntakeStatus.missed if failed else IntakeStatus.taken,
            taken_at=None if failed else event_time,
        )
        session.add(record)
        session.commit()
        session.refresh(record)

    logger.info(
        "Recorded intake %s for patient %s: %s", record_id, patient_id, record.status
    )
    return record


def on_dispense_event_created(ctx: "HandlerContext", change: Change) -> None:
    """``devices/{device_id}/dispense_events/{event_id}`` created."""
    device_id = change.params["device_id"]
    event_id = change.params["event_id"]
    if not isinstance(change.after, dict):
        logger.warning("Malformed dispense event at %s: %r", change.path, change.after)
        return
    record_dispense_event(ctx, device_id, event_id, change.after)
