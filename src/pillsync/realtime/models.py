"""Leaf rows backing the realtime tree."""

from sqlmodel import Field, SQLModel


class TreeNode(SQLModel, table=True):
    """One primitive value at a slash-separated path.

    Interior nodes are implicit: ``devices/D1/state`` exists when any row
    lives under ``devices/D1/state/``.
    """

    __tablename__ = "tree_nodes"

    path: str = Field(primary_key=True)
    value_json: str  # JSON-encoded str, int, float or bool
