"""Recording of writes and milestones as causally linked events in the event graph."""

from __future__ import annotations

import logging
import re
import threading
from typing import Callable, Iterable, Mapping, Optional

from chronomesh.eventgraph import EventGraph
from chronomesh.message import Message

log = logging.getLogger(__name__)

_INT = re.compile(r"[+-]?[0-9]+")
_MILESTONE_NUMBER = re.compile(r"M:([+-]?[0-9]+)")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_BOOKKEEPING_PREFIXES = ("M", "timestamp_", "clock_", "latest_from_node_")


def _parse_int(text: str) -> Optional[int]:
    if not _INT.fullmatch(text):
        return None
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        return None
    return value


def format_clock(clock: Mapping[int, int]) -> str:
    """Render a clock as ``map[k:v k:v]`` with keys in ascending order."""
    return "map[" + " ".join(f"{k}:{v}" for k, v in sorted(clock.items())) + "]"


def parse_clock_string(text: str) -> dict[int, int]:
    """Parse the ``map[k:v ...]`` form; malformed pairs are skipped."""
    if text.startswith("map["):
        text = text[len("map["):]
    if text.endswith("]"):
        text = text[:-1]
    clock: dict[int, int] = {}
    if not text:
        return clock
    for pair in text.split(" "):
        parts = pair.split(":")
        if len(parts) != 2:
            continue
        key, value = _parse_int(parts[0]), _parse_int(parts[1])
        if key is not None and value is not None:
            clock[key] = value
    return clock


def is_immediate_causal_predecessor(
    stored_clock: Mapping[int, int], current_clock: Mapping[int, int]
) -> bool:
    """True if ``stored_clock`` is behind ``current_clock`` in one or two entries by at most three steps."""
    differences = 0
    total = 0
    for node_id in set(stored_clock) | set(current_clock):
        stored = stored_clock.get(node_id, 0)
        current = current_clock.get(node_id, 0)
        if stored > current:
            return False
        if current > stored:
            differences += 1
            total += current - stored
    return 0 < differences <= 2 and total <= 3


def _is_bookkeeping(name: str) -> bool:
    return name.startswith(_BOOKKEEPING_PREFIXES)


def _msg_clock(msg: Message) -> dict[int, int]:
    return dict(msg.msg_clock.values) if msg.msg_clock is not None else {}


class EventRecorder:
    """Links each applied write or milestone of a node to its causal predecessors."""

    def __init__(
        self,
        graph: EventGraph,
        node_id: int,
        eth_address: str,
        peer_ids: Optional[Mapping[str, int]] = None,
        on_epoch_event: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.graph = graph
        self.node_id = node_id
        self.eth_address = eth_address
        self.peer_ids: Mapping[str, int] = peer_ids if peer_ids is not None else {}
        self.on_epoch_event = on_epoch_event
        self.last_message_events: dict[str, str] = {}
        self.last_milestone = ""
        self.milestone_created = False
        self._lock = threading.RLock()

    def _first_with_prefix(self, *prefixes: str) -> Optional[str]:
        return next(
            (event_id for name, event_id in self.last_message_events.items() if name.startswith(prefixes)),
            None,
        )

    def _stored_clock(self, event_id: str) -> Optional[dict[int, int]]:
        text = self.last_message_events.get(f"clock_{event_id}")
        return None if text is None else parse_clock_string(text)

    def record_genesis(self) -> str:
        """Create the genesis milestone ``M0`` with no parents and return its id."""
        with self._lock:
            key, value = "M0", str(self.node_id)
            event_name = f"{key}:{value}"
            event_id = self.graph.add_event(event_name, key, value, {}, [])
            self.last_milestone = event_id
            self.milestone_created = True
            self.last_message_events[event_name] = event_id
            self.last_message_events[f"latest_from_node_{self.node_id}"] = event_id
            log.info("Node %d: Created genesis milestone %s with ID %s", self.node_id, event_name, event_id)
            return event_id

    def _latest_milestone(self) -> Optional[str]:
        best: Optional[str] = None
        best_clock: dict[int, int] = {}
        for name, event_id in self.last_message_events.items():
            if not name.startswith("M:"):
                continue
            clock = self._stored_clock(event_id)
            if clock is None:
                continue
            if best is None:
                best, best_clock = event_id, clock
                continue
            nodes = set(clock) | set(best_clock)
            is_later = all(clock.get(n, 0) >= best_clock.get(n, 0) for n in nodes)
            is_earlier = all(clock.get(n, 0) <= best_clock.get(n, 0) for n in nodes)
            if is_later and not is_earlier:
                best, best_clock = event_id, clock
        return best

    def record_message_event(self, msg: Optional[Message]) -> Optional[str]:
        """Record the write carried by ``msg``; returns the event id, or None if there is no write."""
        if msg is None or msg.request is None or msg.request.write is None:
            return None
        with self._lock:
            key = msg.request.write.key
            value = msg.request.write.value
            if not key:
                return None
            event_name = f"{key}:{value}"
            existing = self.last_message_events.get(event_name)
            if existing is not None:
                return existing

            sender_id = self.node_id
            if msg.sender != self.eth_address and msg.sender in self.peer_ids:
                sender_id = self.peer_ids[msg.sender]

            clock = _msg_clock(msg)
            parent_ids: list[str] = []

            if key.startswith("M") and key != "M0":
                fallback = self._first_with_prefix("M:", "M0:") or self._first_with_prefix("M0:")
                if fallback is not None:
                    parent_ids.append(fallback)
            else:
                predecessors = []
                for name, event_id in self.last_message_events.items():
                    if _is_bookkeeping(name):
                        continue
                    stored = self._stored_clock(event_id)
                    if stored is not None and is_immediate_causal_predecessor(stored, clock):
                        predecessors.append(event_id)
                if predecessors:
                    parent_ids.extend(predecessors)
                else:
                    milestone = self._latest_milestone() or self._first_with_prefix("M0:")
                    if milestone is not None:
                        parent_ids.append(milestone)

            if not parent_ids and key != "M0":
                genesis = self._first_with_prefix("M0:")
                if genesis is not None:
                    parent_ids.append(genesis)

            log.debug("Node %d: Creating event %s with parents: %s", self.node_id, event_name, parent_ids)
            event_id = self.graph.add_event(event_name, key, value, clock, parent_ids)
            self.last_message_events[event_name] = event_id
            self.last_message_events[f"latest_from_node_{sender_id}"] = event_id
            self.last_message_events[f"clock_{event_id}"] = format_clock(clock)

            if key.startswith("M"):
                self.last_milestone = event_id
                self.milestone_created = True
            elif self.on_epoch_event is not None:
                self.on_epoch_event(event_id)
            return event_id

    def record_milestone_event(
        self, msg: Optional[Message], epoch_events: Optional[Iterable[str]]
    ) -> Optional[str]:
        """Record a milestone linked to the events of its epoch; returns the event id or None."""
        if msg is None or msg.request is None or msg.request.write is None:
            return None
        with self._lock:
            key = msg.request.write.key
            value = msg.request.write.value
            if not key:
                return None
            event_name = f"{key}:{value}"
            existing = self.last_message_events.get(event_name)
            if existing is not None:
                return existing

            milestone_clock = _msg_clock(msg)
            epoch_list = list(epoch_events or ())
            parent_ids: list[str] = []

            if epoch_list:
                parent_ids.extend(epoch_list)
            else:
                match = _MILESTONE_NUMBER.match(key)
                number = int(match.group(1)) if match else 0
                prev_prefix = f"M:{number - 1}:" if number > 1 else "M0:"
                previous = self._first_with_prefix(prev_prefix)

                if previous is not None:
                    prev_clock = self._stored_clock(previous)
                    for name, event_id in self.last_message_events.items():
                        if _is_bookkeeping(name):
                            continue
                        event_clock = self._stored_clock(event_id)
                        if event_clock is None:
                            continue
                        after_prev = prev_clock is None or all(
                            event_clock[n] >= t for n, t in prev_clock.items() if n in event_clock
                        )
                        before_current = all(
                            t <= milestone_clock[n] for n, t in event_clock.items() if n in milestone_clock
                        )
                        if after_prev and before_current:
                            parent_ids.append(event_id)
                else:
                    fallback = self._first_with_prefix("M:", "M0:")
                    if fallback is not None:
                        parent_ids.append(fallback)

            log.debug("Node %d: Creating milestone %s with parents: %s", self.node_id, event_name, parent_ids)
            event_id = self.graph.add_event(event_name, key, value, milestone_clock, parent_ids)
            self.last_message_events[event_name] = event_id
            self.last_message_events[f"clock_{event_id}"] = format_clock(milestone_clock)
            self.last_milestone = event_id
            self.milestone_created = True
            return event_id