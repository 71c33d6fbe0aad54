"""Notification records and best-effort push to users."""

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from sqlmodel import Session, select

from pillsync.documents.models import Notification
from pillsync.documents.store import delete_push_tokens, get_push_tokens
from pillsync.notify.push import MulticastResult, PushDeliveryError

if TYPE_CHECKING:
    from pillsync.triggers.context import HandlerContext

logger = logging.getLogger(__name__)


def create_notification(
    session: Session,
    user_id: str,
    notification_type: str,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
    notification_id: str | None = None,
) -> Notification:
    """Write a notification record. An existing ``notification_id`` is kept as is."""
    if notification_id is not None:
        existing = session.get(Notification, notification_id)
        if existing is not None:
            logger.debug("Notification %s already exists", notification_id)
            return existing
    notification = Notification(
        user_id=user_id, type=notification_type, title=title, body=body, data=data or {}
    )
    if notification_id is not None:
        notification.id = notification_id
    session.add(notification)
    session.commit()
    session.refresh(notification)
    return notification


def list_notifications(session: Session, user_id: str, limit: int = 100) -> list[Notification]:
    stmt = (
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc())  # type: ignore[attr-defined]
        .limit(limit)
    )
    return list(session.exec(stmt).all())


def prune_invalid_tokens(session: Session, result: MulticastResult) -> int:
    invalid = result.invalid_tokens
    if not invalid:
        return 0
    removed = delete_push_tokens(session, invalid)
    logger.info("Pruned %d invalid push token(s)", removed)
    return removed


def push_to_users(
    ctx: "HandlerContext",
    user_ids: Iterable[str],
    title: str,
    body: str,
    data: dict[str, str] | None = None,
) -> MulticastResult | None:
    """Send one multicast to every token of the users.

    Best effort: no tokens returns None, gateway failures are logged and
    return None. Tokens reported invalid are pruned.
    """
    recipients = list(user_ids)
    with ctx.session() as session:
        tokens = get_push_tokens(session, recipients)
        if not tokens:
            logger.info("No push tokens for %s; skipping push", recipients)
            return None
        try:
            result = ctx.push.send_multicast(tokens, title, body, data)
        except PushDeliveryError as e:
            logger.error("Push delivery failed: %s", e)
            return None
        prune_invalid_tokens(session, result)
        return result
