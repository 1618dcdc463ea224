"""Vector logical clocks with partial-order comparison."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Optional

_UINT64_LIMIT = 1 << 64
_DIGITS = re.compile(r"[0-9]+")


class Ordering(IntEnum):
    """Result of comparing one clock with another."""

    LESS = -1
    EQUAL = 0
    GREATER = 1
    INCOMPARABLE = -2


@dataclass
class Clock:
    """A vector clock mapping node identifiers to counters."""

    values: dict[int, int] = field(default_factory=dict)

    def inc(self, node_id: int) -> None:
        """Advance the counter of ``node_id`` by one."""
        self.values[node_id] = self.values.get(node_id, 0) + 1

    def clear(self) -> None:
        """Drop every entry."""
        self.values = {}

    def merge(self, *args: Optional[Clock]) -> None:
        """Take the entry-wise maximum with every given clock; ``None`` is skipped."""
        for other in args:
            if other is None:
                continue
            for node_id, value in other.values.items():
                if node_id not in self.values or self.values[node_id] < value:
                    self.values[node_id] = value

    def compare(self, other: Optional[Clock]) -> Ordering:
        """Compare this clock with ``other`` in the happened-before order."""
        other_empty = other is None or not other.values
        if not self.values:
            return Ordering.EQUAL if other_empty else Ordering.LESS
        if other_empty:
            return Ordering.GREATER
        assert other is not None

        less = greater = False
        for node_id, value in self.values.items():
            if node_id not in other.values:
                greater = True
            elif value < other.values[node_id]:
                less = True
            elif value > other.values[node_id]:
                greater = True
        if any(node_id not in self.values for node_id in other.values):
            less = True

        if less and greater:
            return Ordering.INCOMPARABLE
        if less:
            return Ordering.LESS
        if greater:
            return Ordering.GREATER
        return Ordering.EQUAL

    def copy(self) -> Clock:
        """Return an independent copy."""
        return Clock(dict(self.values))

    def is_plus_one_increment(self, other: Optional[Clock], sender_id: int) -> bool:
        """True if ``other`` is exactly one step ahead for ``sender_id`` and not ahead elsewhere."""
        if other is None or sender_id not in other.values:
            return False
        if other.values[sender_id] != self.values.get(sender_id, 0) + 1:
            return False
        return all(
            value <= self.values.get(node_id, 0)
            for node_id, value in other.values.items()
            if node_id != sender_id
        )

    def to_json(self) -> str:
        """Serialise as a compact JSON object whose keys are sorted as strings."""
        ordered = sorted(((str(k), v) for k, v in self.values.items()), key=lambda kv: kv[0])
        return json.dumps(dict(ordered), separators=(",", ":"))

    @classmethod
    def from_json(cls, data: Any) -> Clock:
        """Build a clock from JSON text, bytes, or an already decoded JSON value."""
        parsed = json.loads(data) if isinstance(data, (str, bytes, bytearray)) else data
        if parsed is None:
            return cls()
        if not isinstance(parsed, dict):
            raise ValueError("clock must be a JSON object")
        values: dict[int, int] = {}
        for key, value in parsed.items():
            if not isinstance(key, str) or not _DIGITS.fullmatch(key):
                raise ValueError(f"invalid clock node id: {key!r}")
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"invalid clock value for node {key}: {value!r}")
            node_id = int(key)
            if node_id >= _UINT64_LIMIT or not 0 <= value < _UINT64_LIMIT:
                raise ValueError(f"clock entry out of range: {key}={value}")
            values[node_id] = value
        return cls(values)