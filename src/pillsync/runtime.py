"""Assemble the stores, trigger bus and handlers into one runtime context."""

import logging

from sqlalchemy.engine import Engine

import pillsync.documents.changes  # noqa: F401  (registers session listeners)
from pillsync.adherence.scheduler import on_device_status_changed
from pillsync.config import Settings
from pillsync.notify.critical import on_critical_event_created
from pillsync.notify.push import BasePushGateway, FcmPushGateway
from pillsync.realtime.tree import RealtimeTree
from pillsync.sync.config_mirror import on_desired_config_updated, on_device_state_updated
from pillsync.sync.dispense import on_dispense_event_created
from pillsync.sync.links import (
    on_document_link_created,
    on_document_link_updated,
    on_realtime_link_created,
    on_realtime_link_deleted,
)
from pillsync.tasks.queue import TaskQueue
from pillsync.triggers.bus import TriggerBus
from pillsync.triggers.context import HandlerContext

logger = logging.getLogger(__name__)

MISSED_DOSE_QUEUE = "missed-dose-queue"


def register_handlers(bus: TriggerBus) -> None:
    # Link synchronization
    bus.on_value_created("users/{uid}/devices/{device_id}", on_realtime_link_created)
    bus.on_value_deleted("users/{uid}/devices/{device_id}", on_realtime_link_deleted)
    bus.on_document_created("deviceLinks/{link_id}", on_document_link_created)
    bus.on_document_updated("deviceLinks/{link_id}", on_document_link_updated)

    # Config and telemetry mirroring
    bus.on_document_updated("devices/{device_id}", on_desired_config_updated)
    bus.on_value_written("devices/{device_id}/state", on_device_state_updated)

    # Intake records and missed doses
    bus.on_value_created("devices/{device_id}/dispense_events/{event_id}", on_dispense_event_created)
    bus.on_value_written("devices/{device_id}/state/current_status", on_device_status_changed)

    # Critical events
    bus.on_document_created("criticalEvents/{event_id}", on_critical_event_created)


def build_context(
    engine: Engine,
    settings: Settings,
    push: BasePushGateway | None = None,
) -> HandlerContext:
    """Create a fully wired context: tree writes and document commits fire handlers."""
    bus = TriggerBus()
    tree = RealtimeTree(engine, listener=bus.publish_tree_write)
    if push is None:
        push = FcmPushGateway(
            settings.push_gateway_url, settings.push_server_key, timeout=settings.push_timeout
        )
    ctx = HandlerContext(
        engine=engine,
        bus=bus,
        tree=tree,
        tasks=TaskQueue(engine, name=MISSED_DOSE_QUEUE),
        push=push,
        settings=settings,
    )
    bus.bind(ctx)
    register_handlers(bus)
    logger.debug("Registered %d triggers", len(bus.triggers))
    return ctx
