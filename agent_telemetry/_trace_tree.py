# Copyright (c) Microsoft. All rights reserved.

import time
import uuid
from collections.abc import Iterator, Mapping
from typing import Any

__all__ = ["TraceNode", "format_trace_tree"]


class TraceNode:
    """A node in the in-process execution trace of an agent run.

    Nodes form a tree: every node has at most one parent, and a node can never
    become its own ancestor.
    """

    def __init__(
        self,
        name: str,
        *,
        parent_id: str | None = None,
        start_time: float | None = None,
        raw_name: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        message: Any = None,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.name = name
        self.raw_name = raw_name
        self.parent_id = parent_id
        self.start_time = start_time if start_time is not None else time.time()
        self.end_time: float | None = None
        self.children: list[TraceNode] = []
        self.metadata: dict[str, Any] = dict(metadata or {})
        self.message = message
        self._parent: TraceNode | None = None

    @property
    def is_ended(self) -> bool:
        return self.end_time is not None

    @property
    def display_name(self) -> str:
        return self.raw_name or self.name

    def end(self, end_time: float | None = None) -> None:
        """Close the node. Closing an already closed node keeps the first end time."""
        if self.end_time is None:
            self.end_time = end_time if end_time is not None else time.time()

    def duration(self) -> float | None:
        """Seconds between start and end, or None while the node is open."""
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def add_message(self, message: Any) -> None:
        self.message = message

    def add_child(self, child: "TraceNode") -> None:
        """Attach ``child`` under this node.

        Raises:
            ValueError: The child already has a different parent, or attaching it would create a cycle.
        """
        if child._parent is self:
            return
        if child._parent is not None:
            raise ValueError(f"Trace node '{child.display_name}' already has a parent.")
        ancestor: TraceNode | None = self
        while ancestor is not None:
            if ancestor is child:
                raise ValueError(f"Adding '{child.display_name}' under '{self.display_name}' would create a cycle.")
            ancestor = ancestor._parent
        child._parent = self
        child.parent_id = self.id
        self.children.append(child)

    def walk(self) -> Iterator["TraceNode"]:
        """Iterate over this node and its descendants depth-first."""
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> dict[str, Any]:
        """Nested dict representation of the subtree rooted here."""
        return {
            "id": self.id,
            "name": self.name,
            "raw_name": self.raw_name,
            "parent_id": self.parent_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration(),
            "children": [child.to_dict() for child in self.children],
            "metadata": dict(self.metadata),
            "message": self.message,
        }

    def to_lines(self, indent: int = 0) -> list[str]:
        """Tree-drawn text lines for the subtree rooted here."""
        return _node_lines(self.to_dict(), indent)

    def __repr__(self) -> str:
        return f"TraceNode(name={self.display_name!r}, children={len(self.children)}, ended={self.is_ended})"


def _node_lines(node: Mapping[str, Any], indent: int) -> list[str]:
    duration = node.get("duration")
    duration_text = f"{duration:.4f}s" if duration is not None else "N/A"
    name = node.get("raw_name") or node.get("name")
    lines = [f"{'   ' * indent}└─ {name} - Duration: {duration_text}"]
    for child in node.get("children", ()):
        lines.extend(_node_lines(child, indent + 1))
    return lines


def format_trace_tree(node: "TraceNode | Mapping[str, Any]", indent: int = 0) -> str:
    """Render a node, or its ``to_dict()`` form, as an indented tree."""
    data = node.to_dict() if isinstance(node, TraceNode) else node
    return "\n".join(_node_lines(data, indent))
