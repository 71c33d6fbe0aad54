"""Mirror user-device links between the realtime tree and the document store.

Either store may be written first. Each side mirrors into the other and both
converge on the same state:

- realtime ``users/{uid}/devices/{device_id} = true`` presence flag
- document ``deviceLinks/{device_id}_{uid}`` with status active/inactive
- ``devices/{device_id}.linked_users`` and ``primary_patient_id``
- realtime ``devices/{device_id}/ownerUserId`` following the primary patient

Every step is a merge that no-ops when already applied, so replays and the
echo of a handler's own mirror write are harmless.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import NAMESPACE_URL, uuid5

from pillsync.database import as_utc
from pillsync.documents.models import LinkStatus, Notification, User, UserRole
from pillsync.documents.store import (
    activate_device_link,
    add_linked_user,
    deactivate_device_link,
    get_device_link,
    get_user_role,
    remove_linked_user,
)
from pillsync.notify.notifications import create_notification, push_to_users
from pillsync.sync.owner import owner_path, resolve_owner
from pillsync.triggers.bus import Change

if TYPE_CHECKING:
    from pillsync.triggers.context import HandlerContext

logger = logging.getLogger(__name__)

CAREGIVER_CONNECTED = "caregiver_connected"


def presence_path(user_id: str, device_id: str) -> str:
    return f"users/{user_id}/devices/{device_id}"


# --- Shared link/unlink steps ---


def link_user(
    ctx: "HandlerContext",
    device_id: str,
    user_id: str,
    role: UserRole,
    linked_by: str | None = None,
) -> None:
    """Document side of a link, then move the realtime owner to the primary patient."""
    with ctx.session() as session:
        primary = add_linked_user(session, device_id, user_id, role).primary_patient_id
        activate_device_link(session, device_id, user_id, role, linked_by=linked_by)

    path = owner_path(device_id)
    if primary and ctx.tree.get(path) != primary:
        ctx.tree.set(path, primary)
        logger.info("Realtime owner of %s set to %s", device_id, primary)


def unlink_user(ctx: "HandlerContext", device_id: str, user_id: str) -> None:
    """Document side of an unlink plus realtime owner reassignment."""
    with ctx.session() as session:
        device = remove_linked_user(session, device_id, user_id)
        deactivate_device_link(session, device_id, user_id)
        # remove_linked_user re-reads after its own write
        primary = device.primary_patient_id if device is not None else None

    path = owner_path(device_id)
    if ctx.tree.get(path) != user_id:
        return
    if primary:
        ctx.tree.set(path, primary)
        logger.info("Realtime owner of %s reassigned: %s -> %s", device_id, user_id, primary)
    else:
        ctx.tree.delete(path)
        logger.info("Realtime owner of %s cleared (was %s)", device_id, user_id)


# --- Realtime triggers ---


def on_realtime_link_created(ctx: "HandlerContext", change: Change) -> None:
    """``users/{uid}/devices/{device_id}`` created."""
    uid = change.params["uid"]
    device_id = change.params["device_id"]
    if change.after is not True:
        logger.warning("Ignoring non-true link flag %r at %s", change.after, change.path)
        return

    with ctx.session() as session:
        # An active link already carries the role this device was linked with
        existing = get_device_link(session, device_id, uid)
        if existing is not None and existing.status == LinkStatus.active and existing.role:
            role = UserRole(existing.role)
        else:
            role = get_user_role(session, uid)
    link_user(ctx, device_id, uid, role, linked_by=uid)
    logger.info("Mirrored realtime link to documents: %s -> %s (%s)", uid, device_id, role)


def on_realtime_link_deleted(ctx: "HandlerContext", change: Change) -> None:
    """``users/{uid}/devices/{device_id}`` removed."""
    uid = change.params["uid"]
    device_id = change.params["device_id"]
    unlink_user(ctx, device_id, uid)
    logger.info("Mirrored realtime unlink to documents: %s -x- %s", uid, device_id)


# --- Document triggers ---


def _link_ids(link: dict[str, Any] | None) -> tuple[str, str] | None:
    if not link:
        return None
    device_id = link.get("device_id")
    user_id = link.get("user_id")
    if not device_id or not user_id:
        return None
    return device_id, user_id


def _status(link: dict[str, Any] | None) -> str:
    return str((link or {}).get("status") or LinkStatus.active)


def _mirror_active_link(ctx: "HandlerContext", link_id: str, link: dict[str, Any]) -> None:
    device_id, user_id = link["device_id"], link["user_id"]
    if link.get("role"):
        role = UserRole(link["role"])
    else:
        with ctx.session() as session:
            role = get_user_role(session, user_id)

    link_user(ctx, device_id, user_id, role, linked_by=link.get("linked_by") or user_id)
    ctx.tree.set(presence_path(user_id, device_id), True)
    logger.info("Mirrored document link %s to realtime (%s)", link_id, role)

    if role == UserRole.caregiver:
        notify_caregiver_connected(ctx, link_id, device_id, user_id, link.get("linked_at"))


def on_document_link_created(ctx: "HandlerContext", change: Change) -> None:
    """``deviceLinks/{link_id}`` created."""
    link = change.after
    ids = _link_ids(link)
    if ids is None:
        logger.warning("Device link %s missing device/user id; skipping", change.path)
        return
    if _status(link) != LinkStatus.active:
        return
    _mirror_active_link(ctx, change.params["link_id"], link)


def on_document_link_updated(ctx: "HandlerContext", change: Change) -> None:
    """``deviceLinks/{link_id}`` updated; acts only on status transitions."""
    before_status = _status(change.before)
    after_status = _status(change.after)
    if before_status == after_status:
        return
    ids = _link_ids(change.after)
    if ids is None:
        logger.warning("Device link %s missing device/user id; skipping", change.path)
        return
    device_id, user_id = ids

    if after_status == LinkStatus.inactive:
        ctx.tree.delete(presence_path(user_id, device_id))
        unlink_user(ctx, device_id, user_id)
        logger.info("Mirrored document unlink %s to realtime", change.params["link_id"])
    elif after_status == LinkStatus.active:
        _mirror_active_link(ctx, change.params["link_id"], change.after)


# --- Caregiver connected ---


def notify_caregiver_connected(
    ctx: "HandlerContext",
    link_id: str,
    device_id: str,
    caregiver_id: str,
    linked_at: datetime | str | None,
) -> Notification | None:
    """Tell the device's patient that a caregiver linked.

    The notification id is derived from the link and its ``linked_at`` so a
    replayed trigger does not notify twice, while a later relink does.
    """
    patient_id = resolve_owner(ctx, device_id)
    if not patient_id:
        logger.info("Caregiver %s linked to %s but no patient to notify", caregiver_id, device_id)
        return None

    if isinstance(linked_at, datetime):
        stamp = as_utc(linked_at).isoformat()
    else:
        stamp = str(linked_at)
    notification_id = uuid5(NAMESPACE_URL, f"{CAREGIVER_CONNECTED}/{link_id}/{stamp}").hex
    data = {"caregiverId": caregiver_id, "deviceId": device_id}

    with ctx.session() as session:
        if session.get(Notification, notification_id) is not None:
            logger.debug("Caregiver-connected notification %s already sent", notification_id)
            return None
        caregiver = session.get(User, caregiver_id)
        name = caregiver.display_name if caregiver and caregiver.display_name else caregiver_id
        title = "Caregiver connected"
        body = f"{name} is now connected to your pill dispenser."
        notification = create_notification(
            session,
            patient_id,
            CAREGIVER_CONNECTED,
            title,
            body,
            data=data,
            notification_id=notification_id,
        )

    push_to_users(ctx, [patient_id], title, body, data={"type": "CAREGIVER_CONNECTED", **data})
    logger.info("Notified patient %s: caregiver %s connected", patient_id, caregiver_id)
    return notification
