"""Read projections over intake records and the adherence log."""

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlmodel import Session, col, select

from pillsync.documents.models import IntakeRecord, IntakeStatus

if TYPE_CHECKING:
    from pillsync.realtime.tree import RealtimeTree

ADHERENCE_WINDOW = timedelta(hours=24)


def get_patient_intake_records(
    session: Session, patient_id: str, limit: int = 200
) -> list[IntakeRecord]:
    """Intake records of a patient, newest scheduled time first."""
    stmt = (
        select(IntakeRecord)
        .where(IntakeRecord.patient_id == patient_id)
        .order_by(col(IntakeRecord.scheduled_time).desc())
        .limit(limit)
    )
    return list(session.exec(stmt).all())


def get_patient_adherence(
    session: Session, patient_id: str, now: datetime | None = None
) -> dict[str, Any]:
    """Adherence over the last 24 hours.

    No records counts as full adherence. Each non-empty status contributes
    a segment with its share of the total.
    """
    now = now or datetime.now(UTC)
    cutoff = now.astimezone(UTC) - ADHERENCE_WINDOW
    stmt = select(IntakeRecord).where(
        IntakeRecord.patient_id == patient_id,
        col(IntakeRecord.scheduled_time) >= cutoff,
    )
    records = list(session.exec(stmt).all())
    if not records:
        return {"adherence": 100.0, "total": 0, "segments": []}

    total = len(records)
    counts = {status: 0 for status in IntakeStatus}
    for record in records:
        counts[IntakeStatus(record.status)] += 1

    segments = [
        {"status": str(status), "count": count, "percentage": count / total * 100}
        for status, count in counts.items()
        if count
    ]
    return {
        "adherence": counts[IntakeStatus.taken] / total * 100,
        "total": total,
        "segments": segments,
    }


def get_adherence_log(tree: "RealtimeTree", patient_id: str, day: str | None = None) -> dict[str, Any]:
    """Adherence-log entries of a patient, optionally for one ``YYYY-MM-DD`` day."""
    path = f"adherence_logs/{patient_id}"
    if day:
        path = f"{path}/{day}"
    value = tree.get(path)
    return value if isinstance(value, dict) else {}
