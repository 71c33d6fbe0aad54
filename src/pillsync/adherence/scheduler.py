"""Schedule the delayed missed-dose check when a device starts alarming."""

import logging
import time
from datetime import timedelta
from typing import TYPE_CHECKING

from pillsync.sync.owner import resolve_owner
from pillsync.tasks.models import ScheduledTask
from pillsync.triggers.bus import Change

if TYPE_CHECKING:
    from pillsync.triggers.context import HandlerContext

logger = logging.getLogger(__name__)

ALARM_SOUNDING = "ALARM_SOUNDING"
MISSED_DOSE_DELAY = timedelta(minutes=30)
TASK_SECRET_HEADER = "X-Task-Secret"


def schedule_missed_dose_check(ctx: "HandlerContext", device_id: str) -> ScheduledTask | None:
    """Enqueue one verification task for the device's owner.

    Returns None, after logging, when the owner or the callback URL is
    unknown or the queue rejects the task.
    """
    patient_id = resolve_owner(ctx, device_id)
    if not patient_id:
        logger.error("Unable to resolve owner for device %s; no check scheduled", device_id)
        return None

    url = ctx.settings.check_missed_dose_url
    if not url:
        logger.error("check_missed_dose_url is not set; cannot schedule task for %s", device_id)
        return None

    payload = {
        "deviceId": device_id,
        "userID": patient_id,
        "scheduledAt": int(time.time() * 1000),
    }
    headers = {}
    if ctx.settings.task_secret:
        headers[TASK_SECRET_HEADER] = ctx.settings.task_secret

    try:
        task = ctx.tasks.enqueue(url, payload, MISSED_DOSE_DELAY, headers=headers)
    except Exception as e:
        logger.error("Failed to enqueue missed-dose check for %s: %s", device_id, e)
        return None

    logger.info("Scheduled missed-dose check for %s (patient %s)", device_id, patient_id)
    return task


def on_device_status_changed(ctx: "HandlerContext", change: Change) -> None:
    """``devices/{device_id}/state/current_status`` written."""
    if change.after != ALARM_SOUNDING or change.before == ALARM_SOUNDING:
        return
    schedule_missed_dose_check(ctx, change.params["device_id"])
