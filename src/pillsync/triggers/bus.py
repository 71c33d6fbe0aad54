"""Trigger registry and delivery of store changes to handlers.

Handlers subscribe to a path pattern such as ``users/{uid}/devices/{device_id}``
and to one or more change kinds. A realtime write at any depth is resolved
into one change per matching concrete path: a write below the pattern reports
the ancestor's whole before/after value, a write above it reports every
matching descendant that differs.

Changes are queued per thread and drained in order. Handler failures are
logged and never reach the writer or other handlers.
"""

import copy
import enum
import logging
import threading
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pillsync.realtime.tree import RealtimeTree, split_path

if TYPE_CHECKING:
    from pillsync.triggers.context import HandlerContext

logger = logging.getLogger(__name__)


class ChangeKind(enum.StrEnum):
    created = "created"
    updated = "updated"
    deleted = "deleted"


class Source(enum.StrEnum):
    realtime = "realtime"
    document = "document"


@dataclass(frozen=True)
class Change:
    """One observed change at a concrete path."""

    source: Source
    path: str
    params: dict[str, str]
    before: Any
    after: Any

    @property
    def kind(self) -> ChangeKind:
        if self.before is None:
            return ChangeKind.created
        if self.after is None:
            return ChangeKind.deleted
        return ChangeKind.updated


Handler = Callable[["HandlerContext", Change], None]

_ALL_KINDS = frozenset(ChangeKind)


@dataclass
class Trigger:
    source: Source
    pattern: list[str]
    kinds: frozenset[ChangeKind]
    handler: Handler
    name: str = field(default="")


def _is_wildcard(segment: str) -> bool:
    return segment.startswith("{") and segment.endswith("}")


def match_segments(pattern: list[str], segments: list[str]) -> dict[str, str] | None:
    """Match concrete segments against a pattern; return captured params."""
    if len(pattern) != len(segments):
        return None
    params: dict[str, str] = {}
    for expected, actual in zip(pattern, segments):
        if _is_wildcard(expected):
            params[expected[1:-1]] = actual
        elif expected != actual:
            return None
    return params


def splice(value: Any, relative: list[str], replacement: Any) -> Any:
    """Return a copy of ``value`` with ``replacement`` placed at ``relative``."""
    root = copy.deepcopy(value) if isinstance(value, dict) else {}
    node = root
    trail = []
    for segment in relative[:-1]:
        child = node.get(segment)
        if not isinstance(child, dict):
            child = {}
            node[segment] = child
        trail.append((node, segment))
        node = child
    if replacement is None:
        node.pop(relative[-1], None)
    else:
        node[relative[-1]] = copy.deepcopy(replacement)
    # Prune interior nodes left empty by the removal
    for parent, segment in reversed(trail):
        if parent[segment]:
            break
        del parent[segment]
    return root or None


def dig(value: Any, relative: list[str]) -> Any:
    for segment in relative:
        if not isinstance(value, dict):
            return None
        value = value.get(segment)
    return value


def _descendants(
    pattern: list[str], before: Any, after: Any
) -> Iterator[tuple[list[str], dict[str, str]]]:
    if not pattern:
        yield [], {}
        return
    head, rest = pattern[0], pattern[1:]
    b = before if isinstance(before, dict) else {}
    a = after if isinstance(after, dict) else {}
    keys = sorted(set(b) | set(a)) if _is_wildcard(head) else [head]
    for key in keys:
        for relative, params in _descendants(rest, b.get(key), a.get(key)):
            if _is_wildcard(head):
                params = {head[1:-1]: key, **params}
            yield [key, *relative], params


class TriggerBus:
    """Routes realtime and document changes to registered handlers."""

    def __init__(self) -> None:
        self._triggers: list[Trigger] = []
        self._local = threading.local()
        self.context: "HandlerContext | None" = None

    def bind(self, context: "HandlerContext") -> None:
        self.context = context

    @property
    def triggers(self) -> list[Trigger]:
        return list(self._triggers)

    # --- Registration ---

    def _register(
        self, source: Source, pattern: str, kinds: frozenset[ChangeKind], handler: Handler
    ) -> None:
        name = getattr(handler, "__name__", repr(handler))
        self._triggers.append(Trigger(source, split_path(pattern), kinds, handler, name))

    def on_value_created(self, pattern: str, handler: Handler) -> None:
        self._register(Source.realtime, pattern, frozenset({ChangeKind.created}), handler)

    def on_value_deleted(self, pattern: str, handler: Handler) -> None:
        self._register(Source.realtime, pattern, frozenset({ChangeKind.deleted}), handler)

    def on_value_written(self, pattern: str, handler: Handler) -> None:
        self._register(Source.realtime, pattern, _ALL_KINDS, handler)

    def on_document_created(self, pattern: str, handler: Handler) -> None:
        self._register(Source.document, pattern, frozenset({ChangeKind.created}), handler)

    def on_document_updated(self, pattern: str, handler: Handler) -> None:
        self._register(Source.document, pattern, frozenset({ChangeKind.updated}), handler)

    # --- Publishing ---

    def publish_tree_write(self, tree: RealtimeTree, path: str, before: Any, after: Any) -> None:
        """Resolve a raw tree write into per-trigger changes and deliver them."""
        segments = split_path(path)
        for trigger in self._triggers:
            if trigger.source != Source.realtime:
                continue
            for change in self._expand(trigger, tree, segments, before, after):
                self._enqueue(trigger, change)
        self.drain()

    def publish_document(self, collection: str, key: str, before: Any, after: Any) -> None:
        segments = [collection, key]
        for trigger in self._triggers:
            if trigger.source != Source.document:
                continue
            params = match_segments(trigger.pattern, segments)
            if params is None:
                continue
            change = Change(Source.document, f"{collection}/{key}", params, before, after)
            if change.kind in trigger.kinds:
                self._enqueue(trigger, change)
        self.drain()

    def _expand(
        self,
        trigger: Trigger,
        tree: RealtimeTree,
        segments: list[str],
        before: Any,
        after: Any,
    ) -> Iterator[Change]:
        pattern = trigger.pattern
        depth = len(pattern)
        candidates: list[tuple[list[str], dict[str, str], Any, Any]] = []

        if depth <= len(segments):
            params = match_segments(pattern, segments[:depth])
            if params is None:
                return
            if depth == len(segments):
                candidates.append((segments, params, before, after))
            else:
                # Write below the watched node: rebuild its before/after value
                anchor = segments[:depth]
                anchor_after = tree.get("/".join(anchor))
                anchor_before = splice(anchor_after, segments[depth:], before)
                candidates.append((anchor, params, anchor_before, anchor_after))
        else:
            params = match_segments(pattern[: len(segments)], segments)
            if params is None:
                return
            for relative, extra in _descendants(pattern[len(segments) :], before, after):
                candidates.append(
                    (
                        segments + relative,
                        {**params, **extra},
                        dig(before, relative),
                        dig(after, relative),
                    )
                )

        for concrete, params, old, new in candidates:
            if old == new:
                continue
            change = Change(Source.realtime, "/".join(concrete), params, old, new)
            if change.kind in trigger.kinds:
                yield change

    # --- Delivery ---

    def _queue(self) -> deque[tuple[Trigger, Change]]:
        queue = getattr(self._local, "queue", None)
        if queue is None:
            queue = self._local.queue = deque()
        return queue

    def _enqueue(self, trigger: Trigger, change: Change) -> None:
        self._queue().append((trigger, change))

    def drain(self) -> None:
        """Run queued handlers; cascaded changes join the same queue."""
        if getattr(self._local, "draining", False):
            return
        queue = self._queue()
        self._local.draining = True
        try:
            while queue:
                trigger, change = queue.popleft()
                self._invoke(trigger, change)
        finally:
            self._local.draining = False

    def _invoke(self, trigger: Trigger, change: Change) -> None:
        if self.context is None:
            logger.warning("No handler context bound; dropping %s %s", change.kind, change.path)
            return
        logger.debug("Trigger %s: %s %s", trigger.name, change.kind, change.path)
        try:
            trigger.handler(self.context, change)
        except Exception:
            logger.exception("Handler %s failed for %s %s", trigger.name, change.kind, change.path)
