"""Delayed missed-dose verification.

Runs when the scheduled task fires. If the device has not reported the dose
as taken by then, a missed entry is written to the patient's adherence log
and the patient's caregivers get a push.

Duplicate deliveries are tolerated: once the device reports the dose taken
the check short-circuits. The log entry is bucketed by the minute the check
runs, not by the minute it was scheduled, so a redelivery in a later minute
writes a second entry.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pillsync.documents.models import User
from pillsync.documents.store import get_active_caregiver_links
from pillsync.notify.notifications import push_to_users

if TYPE_CHECKING:
    from pillsync.triggers.context import HandlerContext

logger = logging.getLogger(__name__)

DOSE_TAKEN = "DOSE_TAKEN"


class VerificationOutcome(enum.StrEnum):
    already_taken = "already_taken"
    missed_logged = "missed_logged"


@dataclass
class VerificationResult:
    outcome: VerificationOutcome
    log_path: str | None = None
    caregivers: list[str] | None = None
    tokens_attempted: int = 0


def status_path(device_id: str) -> str:
    return f"devices/{device_id}/state/current_status"


def adherence_log_path(patient_id: str, at: datetime) -> str:
    at = at.astimezone(UTC)
    return f"adherence_logs/{patient_id}/{at:%Y-%m-%d}/{at:%H:%M}"


def get_patient_caregivers(ctx: "HandlerContext", patient_id: str) -> list[str]:
    """Caregivers from the realtime roster plus active caregiver device links."""
    roster = ctx.tree.get(f"users/{patient_id}/caregivers")
    caregivers: set[str] = set()
    if isinstance(roster, dict):
        caregivers.update(uid for uid, flag in roster.items() if flag)

    with ctx.session() as session:
        caregivers.update(link.user_id for link in get_active_caregiver_links(session, patient_id))
    return sorted(caregivers)


def _patient_label(ctx: "HandlerContext", patient_id: str) -> str:
    with ctx.session() as session:
        user = session.get(User, patient_id)
    return user.display_name if user and user.display_name else patient_id


def check_missed_dose(
    ctx: "HandlerContext",
    device_id: str,
    patient_id: str,
    now: datetime | None = None,
) -> VerificationResult:
    """Verify one scheduled dose. Store errors propagate to the caller."""
    status = ctx.tree.get(status_path(device_id))
    if status == DOSE_TAKEN:
        logger.info("Dose on %s already taken; nothing to log", device_id)
        return VerificationResult(VerificationOutcome.already_taken)

    now = now or datetime.now(UTC)
    path = adherence_log_path(patient_id, now)
    entry: dict[str, Any] = {
        "status": "missed",
        "source": "device",
        "ts": int(now.timestamp() * 1000),
        "deviceId": device_id,
    }
    ctx.tree.set(path, entry)
    logger.info("Missed dose logged at %s (device status %r)", path, status)

    caregivers = get_patient_caregivers(ctx, patient_id)
    result = VerificationResult(VerificationOutcome.missed_logged, log_path=path, caregivers=caregivers)
    if not caregivers:
        logger.info("Patient %s has no caregivers to notify", patient_id)
        return result

    label = _patient_label(ctx, patient_id)
    multicast = push_to_users(
        ctx,
        caregivers,
        "Missed dose",
        f"{label} has missed a scheduled dose.",
        data={"deviceId": device_id, "userID": patient_id, "type": "MISSED_DOSE"},
    )
    if multicast is not None:
        result.tokens_attempted = len(multicast.responses)
    return result
