"""Collaborators handed to every trigger handler."""

from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlmodel import Session

from pillsync.config import Settings
from pillsync.documents.changes import BUS_KEY
from pillsync.notify.push import BasePushGateway
from pillsync.realtime.tree import RealtimeTree
from pillsync.tasks.queue import TaskQueue
from pillsync.triggers.bus import TriggerBus


@dataclass
class HandlerContext:
    engine: Engine
    bus: TriggerBus
    tree: RealtimeTree
    tasks: TaskQueue
    push: BasePushGateway
    settings: Settings

    def session(self) -> Session:
        """Open a document-store session whose commits fire document triggers."""
        return Session(self.engine, info={BUS_KEY: self.bus})
