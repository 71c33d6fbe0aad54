"""Resolve the patient who currently owns a device."""

import logging
from typing import TYPE_CHECKING

from pillsync.documents.store import get_device

if TYPE_CHECKING:
    from pillsync.triggers.context import HandlerContext

logger = logging.getLogger(__name__)


def owner_path(device_id: str) -> str:
    return f"devices/{device_id}/ownerUserId"


def resolve_owner(ctx: "HandlerContext", device_id: str) -> str | None:
    """Return the owning patient id, or None when it cannot be determined.

    Checks the device document's primary patient first, then the realtime
    ``ownerUserId``. Users are never scanned. Never raises.
    """
    try:
        with ctx.session() as session:
            device = get_device(session, device_id)
            if device is not None and device.primary_patient_id:
                return device.primary_patient_id
    except Exception:
        logger.exception("Device lookup failed while resolving owner of %s", device_id)

    try:
        owner = ctx.tree.get(owner_path(device_id))
    except Exception:
        logger.exception("Realtime lookup failed while resolving owner of %s", device_id)
        return None
    if isinstance(owner, str) and owner:
        return owner

    logger.info("No owner found for device %s", device_id)
    return None
