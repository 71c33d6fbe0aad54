"""Path-addressed JSON tree used by the dispenser hardware.

Values are stored flattened, one row per primitive leaf. Reading a path
reassembles the subtree; writing ``None`` or an empty mapping removes it.
Every write reports ``(path, before, after)`` to the registered listener so
store triggers can fire.
"""

import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from pillsync.realtime.models import TreeNode

logger = logging.getLogger(__name__)

WriteListener = Callable[["RealtimeTree", str, Any, Any], None]


def split_path(path: str) -> list[str]:
    """Split a path into segments, ignoring leading/trailing/double slashes."""
    return [segment for segment in path.strip().split("/") if segment]


def normalize_path(path: str) -> str:
    segments = split_path(path)
    if not segments:
        raise ValueError("Tree path must not be empty")
    return "/".join(segments)


def flatten(path: str, value: Any) -> list[tuple[str, Any]]:
    """Turn a JSON-like value into ``(leaf_path, primitive)`` pairs."""
    if value is None:
        return []
    if isinstance(value, Mapping):
        leaves: list[tuple[str, Any]] = []
        for key, child in value.items():
            child_path = normalize_path(f"{path}/{key}")
            leaves.extend(flatten(child_path, child))
        return leaves
    if isinstance(value, (list, tuple)):
        # Arrays are stored as index-keyed maps
        return flatten(path, {str(i): v for i, v in enumerate(value)})
    if isinstance(value, (str, int, float, bool)):
        return [(path, value)]
    raise TypeError(f"Unsupported tree value at {path}: {type(value).__name__}")


def unflatten(base: str, rows: list[tuple[str, Any]]) -> Any:
    """Rebuild the value at ``base`` from its leaf rows."""
    result: dict[str, Any] = {}
    for path, value in rows:
        if path == base:
            return value
        node = result
        *parents, leaf = path[len(base) + 1 :].split("/")
        for segment in parents:
            node = node.setdefault(segment, {})
        node[leaf] = value
    return result or None


class RealtimeTree:
    """SQLite-backed realtime tree with get/set/update/delete semantics."""

    def __init__(self, engine: Engine, listener: WriteListener | None = None) -> None:
        self.engine = engine
        self._listener = listener

    def set_listener(self, listener: WriteListener | None) -> None:
        self._listener = listener

    def get(self, path: str) -> Any:
        path = normalize_path(path)
        with Session(self.engine) as session:
            return self._read(session, path)

    def exists(self, path: str) -> bool:
        return self.get(path) is not None

    def set(self, path: str, value: Any) -> None:
        """Replace the value at ``path`` (``None`` deletes it)."""
        path = normalize_path(path)
        with Session(self.engine) as session:
            before = self._read(session, path)
            self._write(session, path, value)
            session.commit()
            after = self._read(session, path)
        logger.debug("Tree set %s", path)
        self._notify(path, before, after)

    def update(self, path: str, values: Mapping[str, Any]) -> None:
        """Write each child key of ``path``, leaving other children untouched.

        Keys may be relative multi-segment paths (``"state/current_status"``).
        """
        path = normalize_path(path)
        with Session(self.engine) as session:
            before = self._read(session, path)
            for key, value in values.items():
                self._write(session, normalize_path(f"{path}/{key}"), value)
            session.commit()
            after = self._read(session, path)
        logger.debug("Tree update %s (%d keys)", path, len(values))
        self._notify(path, before, after)

    def delete(self, path: str) -> None:
        self.set(path, None)

    def _read(self, session: Session, path: str) -> Any:
        stmt = select(TreeNode.path, TreeNode.value_json).where(
            (col(TreeNode.path) == path)
            | col(TreeNode.path).startswith(f"{path}/", autoescape=True)
        )
        rows = [(leaf_path, json.loads(raw)) for leaf_path, raw in session.exec(stmt)]
        if not rows:
            return None
        rows.sort(key=lambda row: row[0])
        return unflatten(path, rows)

    def _write(self, session: Session, path: str, value: Any) -> None:
        leaves = flatten(path, value)

        session.execute(
            delete(TreeNode)
            .where(
                (col(TreeNode.path) == path)
                | col(TreeNode.path).startswith(f"{path}/", autoescape=True)
            )
            .execution_options(synchronize_session=False)
        )
        if not leaves:
            return

        # A primitive stored at an ancestor becomes an interior node
        segments = path.split("/")
        ancestors = ["/".join(segments[:i]) for i in range(1, len(segments))]
        if ancestors:
            session.execute(
                delete(TreeNode)
                .where(col(TreeNode.path).in_(ancestors))
                .execution_options(synchronize_session=False)
            )

        for leaf_path, leaf_value in leaves:
            session.add(TreeNode(path=leaf_path, value_json=json.dumps(leaf_value)))
        session.flush()

    def _notify(self, path: str, before: Any, after: Any) -> None:
        if self._listener is None or before == after:
            return
        self._listener(self, path, before, after)
