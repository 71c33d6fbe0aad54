"""Field-level merge helpers for users, devices, links and push tokens.

Every writer touches only the fields it owns and commits immediately, so
handlers writing disjoint fields of the same device never clobber each other.
Decisions that depend on a shared field (``linked_users``) are taken from a
fresh read made after the caller's own write.
"""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from sqlmodel import Session, col, select

from pillsync.database import as_utc
from pillsync.documents.models import (
    Device,
    DeviceLink,
    LinkStatus,
    PushToken,
    User,
    UserRole,
    device_link_id,
)

logger = logging.getLogger(__name__)


def _assign(obj: Any, fields: dict[str, Any]) -> bool:
    changed = False
    for key, value in fields.items():
        if getattr(obj, key) != value:
            setattr(obj, key, value)
            changed = True
    return changed


# --- Users ---


def get_user_role(session: Session, user_id: str) -> UserRole:
    """Role from the user profile; unknown users are treated as patients."""
    user = session.get(User, user_id)
    if user is None:
        return UserRole.patient
    return UserRole(user.role)


def upsert_user(
    session: Session, user_id: str, role: UserRole, display_name: str | None = None
) -> User:
    user = session.get(User, user_id)
    if user is None:
        user = User(id=user_id, role=role, display_name=display_name)
        session.add(user)
    elif not _assign(user, {"role": role, "display_name": display_name}):
        return user
    session.commit()
    session.refresh(user)
    return user


# --- Devices ---


def get_device(session: Session, device_id: str) -> Device | None:
    return session.get(Device, device_id)


def merge_device(session: Session, device_id: str, **fields: Any) -> Device:
    """Upsert only the given fields of a device document."""
    device = session.get(Device, device_id)
    if device is None:
        device = Device(id=device_id, **fields)
        session.add(device)
    elif _assign(device, fields):
        device.updated_at = datetime.now(UTC)
    else:
        return device
    session.commit()
    session.refresh(device)
    return device


def choose_primary_patient(
    session: Session, device_id: str, exclude: Iterable[str] = ()
) -> str | None:
    """Pick the replacement primary patient from the stored linked users.

    Candidates are patient-role entries of ``linked_users``. The earliest
    ``linked_at`` of an active link wins; entries without an active link come
    last; ties are broken by user id.
    """
    device = session.get(Device, device_id)
    if device is None:
        return None
    excluded = set(exclude)
    candidates = [
        uid
        for uid, role in (device.linked_users or {}).items()
        if role == UserRole.patient and uid not in excluded
    ]
    if not candidates:
        return None

    links = session.exec(
        select(DeviceLink).where(
            DeviceLink.device_id == device_id,
            col(DeviceLink.user_id).in_(candidates),
            DeviceLink.status == LinkStatus.active,
        )
    ).all()
    linked_at = {link.user_id: as_utc(link.linked_at) for link in links}

    def _order(uid: str) -> tuple[bool, datetime, str]:
        stamp = linked_at.get(uid)
        return (stamp is None, stamp or datetime.min.replace(tzinfo=UTC), uid)

    return min(candidates, key=_order)


def add_linked_user(session: Session, device_id: str, user_id: str, role: UserRole) -> Device:
    """Record the user in ``linked_users``; a patient becomes the primary patient."""
    device = session.get(Device, device_id)
    linked = dict(device.linked_users or {}) if device else {}
    linked[user_id] = str(role)
    fields: dict[str, Any] = {"linked_users": linked}
    if role == UserRole.patient:
        fields["primary_patient_id"] = user_id
    return merge_device(session, device_id, **fields)


def remove_linked_user(session: Session, device_id: str, user_id: str) -> Device | None:
    """Drop the user from ``linked_users`` and reassign the primary patient.

    Returns the re-read device, or None when the device does not exist.
    """
    device = session.get(Device, device_id)
    if device is None:
        return None
    linked = dict(device.linked_users or {})
    linked.pop(user_id, None)
    device = merge_device(session, device_id, linked_users=linked)

    if device.primary_patient_id == user_id:
        # Read-after-write: choose from what is stored now, not from ``linked``
        session.expire_all()
        replacement = choose_primary_patient(session, device_id, exclude=[user_id])
        device = merge_device(session, device_id, primary_patient_id=replacement)
        logger.info(
            "Primary patient of %s reassigned: %s -> %s", device_id, user_id, replacement
        )
    return device


# --- Device links ---


def get_device_link(session: Session, device_id: str, user_id: str) -> DeviceLink | None:
    return session.get(DeviceLink, device_link_id(device_id, user_id))


def activate_device_link(
    session: Session,
    device_id: str,
    user_id: str,
    role: UserRole,
    linked_by: str | None = None,
) -> DeviceLink:
    """Create or reactivate a link.

    An already-active link keeps its ``linked_at`` and its role; only a
    missing role is filled in, so a mirror echo cannot flip it.
    """
    link = session.get(DeviceLink, device_link_id(device_id, user_id))
    now = datetime.now(UTC)
    if link is None:
        link = DeviceLink(
            id=device_link_id(device_id, user_id),
            device_id=device_id,
            user_id=user_id,
            role=role,
            status=LinkStatus.active,
            linked_at=now,
            linked_by=linked_by,
            updated_at=now,
        )
        session.add(link)
    elif link.status != LinkStatus.active:
        link.status = LinkStatus.active
        link.role = role
        link.linked_at = now
        link.linked_by = linked_by
        link.updated_at = now
    elif link.role is None:
        link.role = role
        link.updated_at = now
    else:
        return link
    session.commit()
    session.refresh(link)
    return link


def deactivate_device_link(session: Session, device_id: str, user_id: str) -> DeviceLink | None:
    link = session.get(DeviceLink, device_link_id(device_id, user_id))
    if link is None or link.status == LinkStatus.inactive:
        return link
    link.status = LinkStatus.inactive
    link.updated_at = datetime.now(UTC)
    session.commit()
    session.refresh(link)
    return link


def get_active_caregiver_links(session: Session, patient_id: str) -> list[DeviceLink]:
    """Active caregiver links on devices whose primary patient is ``patient_id``."""
    device_ids = select(Device.id).where(Device.primary_patient_id == patient_id)
    stmt = select(DeviceLink).where(
        col(DeviceLink.device_id).in_(device_ids),
        DeviceLink.role == UserRole.caregiver,
        DeviceLink.status == LinkStatus.active,
    )
    return list(session.exec(stmt).all())


# --- Push tokens ---


def register_push_token(
    session: Session, user_id: str, token: str, platform: str | None = None
) -> PushToken:
    existing = session.get(PushToken, (user_id, token))
    if existing is not None:
        return existing
    push_token = PushToken(user_id=user_id, token=token, platform=platform)
    session.add(push_token)
    session.commit()
    session.refresh(push_token)
    return push_token


def get_push_tokens(session: Session, user_ids: Iterable[str]) -> list[str]:
    """Distinct tokens of the given users, in a stable order."""
    ids = list(dict.fromkeys(user_ids))
    if not ids:
        return []
    stmt = (
        select(PushToken.token)
        .where(col(PushToken.user_id).in_(ids))
        .order_by(PushToken.user_id, PushToken.token)
    )
    return list(dict.fromkeys(session.exec(stmt).all()))


def delete_push_tokens(session: Session, tokens: Iterable[str]) -> int:
    """Remove tokens from every user that holds them. Returns rows deleted."""
    doomed = list(tokens)
    if not doomed:
        return 0
    rows = session.exec(select(PushToken).where(col(PushToken.token).in_(doomed))).all()
    for row in rows:
        session.delete(row)
    session.commit()
    return len(rows)
