"""Change capture for watched document tables.

A session opened with ``info={BUS_KEY: bus}`` publishes a created/updated
change for every watched row it writes, with before/after snapshots, once
its transaction commits. Sessions without a bus (seeding, reads) publish
nothing.
"""

import copy
import logging
from typing import Any

from sqlalchemy import event, inspect
from sqlmodel import Session, SQLModel

from pillsync.documents.models import CriticalEvent, Device, DeviceLink

logger = logging.getLogger(__name__)

BUS_KEY = "trigger_bus"

WATCHED: dict[type[SQLModel], str] = {
    Device: "devices",
    DeviceLink: "deviceLinks",
    CriticalEvent: "criticalEvents",
}

_STAGED = "pillsync_staged_changes"
_FLUSHED = "pillsync_flushed_changes"


def snapshot(obj: SQLModel) -> dict[str, Any]:
    return copy.deepcopy(obj.model_dump())


def _snapshot_before(obj: SQLModel) -> dict[str, Any]:
    """Rebuild the last committed values from attribute history."""
    before = snapshot(obj)
    for attr in inspect(obj).attrs:
        history = attr.history
        if history.has_changes() and history.deleted:
            before[attr.key] = copy.deepcopy(history.deleted[0])
    return before


@event.listens_for(Session, "before_flush")
def _stage_changes(session: Session, flush_context: Any, instances: Any) -> None:
    if session.info.get(BUS_KEY) is None:
        return
    staged = session.info.setdefault(_STAGED, [])
    for obj in session.new:
        collection = WATCHED.get(type(obj))
        if collection:
            staged.append((obj, collection, None))
    for obj in session.dirty:
        collection = WATCHED.get(type(obj))
        if collection and session.is_modified(obj):
            staged.append((obj, collection, _snapshot_before(obj)))


@event.listens_for(Session, "after_flush_postexec")
def _record_flushed(session: Session, flush_context: Any) -> None:
    staged = session.info.pop(_STAGED, None)
    if not staged:
        return
    flushed = session.info.setdefault(_FLUSHED, [])
    for obj, collection, before in staged:
        after = snapshot(obj)
        if before == after:
            continue
        flushed.append((collection, str(after["id"]), before, after))


@event.listens_for(Session, "after_commit")
def _publish_committed(session: Session) -> None:
    changes = session.info.pop(_FLUSHED, None)
    bus = session.info.get(BUS_KEY)
    if not changes or bus is None:
        return
    for collection, key, before, after in changes:
        bus.publish_document(collection, key, before, after)


@event.listens_for(Session, "after_soft_rollback")
def _discard_rolled_back(session: Session, previous_transaction: Any) -> None:
    dropped = session.info.pop(_FLUSHED, None)
    session.info.pop(_STAGED, None)
    if dropped:
        logger.debug("Discarded %d uncommitted document change(s)", len(dropped))
