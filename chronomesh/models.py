"""Records stored in the causal event graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ParentRef:
    """Reference to a parent event by graph UID."""

    uid: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialise, leaving out an empty UID."""
        return {"uid": self.uid} if self.uid else {}


@dataclass
class Event:
    """A causal event in the event graph."""

    uid: str = ""
    id: str = ""
    name: str = ""
    clock: str = ""
    depth: int = 0
    parent: list[ParentRef] = field(default_factory=list)
    value: str = ""
    key: str = ""
    node: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialise in field order, leaving out empty fields."""
        fields: list[tuple[str, Any]] = [
            ("uid", self.uid),
            ("id", self.id),
            ("name", self.name),
            ("clock", self.clock),
            ("depth", self.depth),
            ("parent", [ref.to_dict() for ref in self.parent]),
            ("value", self.value),
            ("key", self.key),
            ("node", self.node),
        ]
        return {name: value for name, value in fields if value}


@dataclass
class EventInfo:
    """Information about an event used when rebuilding a graph."""

    key: str
    value: str
    event_name: str
    key_num: int
    node_id: int