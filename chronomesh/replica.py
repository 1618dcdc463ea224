"""Key-value replica state: store, vector clock and the log of applied writes."""

from __future__ import annotations

import logging
import threading
from enum import IntEnum
from functools import cmp_to_key
from typing import Iterable, Optional

from chronomesh.events import EventRecorder
from chronomesh.message import Message, ReadReply, RequestMessage, WriteRequest
from chronomesh.vlc import Clock, Ordering

log = logging.getLogger(__name__)


class ApplyAction(IntEnum):
    """What to do with a write arriving directly from a peer."""

    IGNORE = 0
    APPLY_AS_FIRST = 1
    APPLY_AS_PLUS_ONE = 2


def _clock_of(msg: Message) -> Clock:
    return msg.msg_clock if msg.msg_clock is not None else Clock()


def _causal_cmp(a: Message, b: Message) -> int:
    if _clock_of(a).compare(_clock_of(b)) is Ordering.LESS:
        return -1
    if _clock_of(b).compare(_clock_of(a)) is Ordering.LESS:
        return 1
    return 0


def _sorted_causally(messages: Iterable[Message]) -> list[Message]:
    return sorted(messages, key=cmp_to_key(_causal_cmp))


def _is_valid_write(msg: Optional[Message]) -> bool:
    return (
        msg is not None
        and msg.msg_clock is not None
        and msg.request is not None
        and msg.request.write is not None
    )


class Replica:
    """The replicated store of one node together with its clock and write log.

    ``lock`` is re-entrant; callers that combine several steps (apply, sign,
    log) may hold it across them.
    """

    def __init__(
        self, node_id: int, eth_address: str, recorder: Optional[EventRecorder] = None
    ) -> None:
        self.node_id = node_id
        self.eth_address = eth_address
        self.recorder = recorder
        self.clock = Clock()
        self.store: dict[str, str] = {}
        self.message_log: list[Message] = []
        self.lock = threading.RLock()

    def _log_once(self, msg: Message) -> bool:
        if any(m.req_id == msg.req_id and m.sender == msg.sender for m in self.message_log):
            return False
        self.message_log.append(msg)
        return True

    def _record(self, msg: Message) -> None:
        if self.recorder is not None:
            self.recorder.record_message_event(msg)

    def check_causal_consistency(self, request_clock: Optional[Clock]) -> tuple[Ordering, bool]:
        """Compare the local clock with ``request_clock``; ready when local is equal or ahead."""
        if request_clock is None or not request_clock.values:
            return Ordering.EQUAL, True
        with self.lock:
            local = self.clock.copy()
        comparison = local.compare(request_clock)
        ready = comparison in (Ordering.EQUAL, Ordering.GREATER)
        log.debug(
            "Node %d: causal check local %s vs request %s -> %s, ready=%s",
            self.node_id, local.values, request_clock.values, comparison.name, ready,
        )
        return comparison, ready

    def check_can_apply_direct_write(
        self, msg: Optional[Message], sender_id: Optional[int]
    ) -> tuple[ApplyAction, bool]:
        """Decide how to treat a direct write; returns the action and whether a sync is needed.

        ``sender_id`` is the sender's clock id, or None when the sender is unknown.
        """
        if not _is_valid_write(msg):
            return ApplyAction.IGNORE, False
        assert msg is not None and msg.msg_clock is not None
        if sender_id is None:
            log.warning("Node %d: unknown sender %r; sync needed", self.node_id, msg.sender)
            return ApplyAction.IGNORE, True

        remote = msg.msg_clock
        with self.lock:
            local = self.clock.copy()

        if local.values.get(sender_id, 0) == 0 and remote.values.get(sender_id, 0) > 0:
            log.debug("Node %d: first message from sender %d", self.node_id, sender_id)
            return ApplyAction.APPLY_AS_FIRST, False
        if local.is_plus_one_increment(remote, sender_id):
            log.debug("Node %d: plus-one increment from sender %d", self.node_id, sender_id)
            return ApplyAction.APPLY_AS_PLUS_ONE, False
        comparison = local.compare(remote)
        if comparison is Ordering.LESS:
            log.debug("Node %d: gap detected against sender %d", self.node_id, sender_id)
        else:
            log.debug(
                "Node %d: no action (local %s vs remote %s, %s)",
                self.node_id, local.values, remote.values, comparison.name,
            )
        return ApplyAction.IGNORE, False

    def apply_local_write(self, key: str, value: str) -> Optional[Clock]:
        """Store a new key and advance the own clock; returns the new clock, or None if the key exists."""
        with self.lock:
            if key in self.store:
                log.info("Node %d: key %r already exists locally; write aborted", self.node_id, key)
                return None
            self.store[key] = value
            self.clock.inc(self.node_id)
            new_clock = self.clock.copy()
            log.debug("Node %d: applied %r locally, clock %s", self.node_id, key, new_clock.values)
            return new_clock

    def apply_milestone(self, key: str, value: str, remote_clock: Optional[Clock]) -> bool:
        """Apply a milestone received from a peer; False if it is already known."""
        with self.lock:
            if key in self.store:
                log.debug("Node %d: milestone %r already exists, skipping", self.node_id, key)
                return False
            self.store[key] = value
            self.clock.merge(remote_clock)
            self.clock.inc(self.node_id)
            log.info("Node %d: applying milestone %r=%r, clock %s", self.node_id, key, value, self.clock.values)
            if self.recorder is not None:
                marker = Message(
                    request=RequestMessage(write=WriteRequest(key=key, value=value)),
                    msg_clock=self.clock.copy(),
                )
                self.recorder.record_milestone_event(marker, [])
            return True

    def apply_remote_write(
        self, msg: Message, sender_id: Optional[int]
    ) -> tuple[ApplyAction, bool]:
        """Apply, ignore or defer a regular write from a peer.

        Returns the action taken and whether a sync request must be sent. When
        ignored without a sync, the remote clock is still merged in.
        """
        if not _is_valid_write(msg):
            raise ValueError("message carries no write request or clock")
        assert msg.request is not None and msg.request.write is not None
        key = msg.request.write.key
        value = msg.request.write.value

        with self.lock:
            action, requires_sync = self.check_can_apply_direct_write(msg, sender_id)
            if action is not ApplyAction.IGNORE:
                self.clock.merge(msg.msg_clock)
                self.clock.inc(self.node_id)
                self.store[key] = value
                log.info(
                    "Node %d: applying write %r=%r (%s), clock %s",
                    self.node_id, key, value, action.name, self.clock.values,
                )
                self._record(msg)
                self._log_once(msg)
            elif requires_sync:
                log.info("Node %d: write %s needs sync", self.node_id, msg.req_id)
            else:
                self.clock.merge(msg.msg_clock)
                self.clock.inc(self.node_id)
        return action, requires_sync

    def read(self, key: str, request_clock: Optional[Clock]) -> tuple[ReadReply, Clock]:
        """Answer a read; returns the reply body and the clock to send with it."""
        _, ready = self.check_causal_consistency(request_clock)
        with self.lock:
            found = key in self.store
            value = self.store.get(key, "")
            self.clock.merge(request_clock)
            self.clock.inc(self.node_id)
            reply_clock = self.clock.copy()
        if not ready:
            log.info("Node %d: not causally ready for read of %r", self.node_id, key)
        return ReadReply(key=key, value=value, found=found, causally_ready=ready), reply_clock

    def missing_messages(self, requester_clock: Clock) -> tuple[list[Message], Clock]:
        """Logged writes the requester has not seen, in causal order, and the clock to reply with."""
        with self.lock:
            self.clock.merge(requester_clock)
            self.clock.inc(self.node_id)
            reply_clock = self.clock.copy()
            snapshot = list(self.message_log)

        missing: list[Message] = []
        if reply_clock.compare(requester_clock) in (Ordering.GREATER, Ordering.INCOMPARABLE):
            missing = [
                m
                for m in snapshot
                if m.msg_clock is not None
                and m.msg_clock.compare(requester_clock) not in (Ordering.LESS, Ordering.EQUAL)
            ]
        return _sorted_causally(missing), reply_clock

    def apply_sync_messages(
        self, remote_clock: Optional[Clock], messages: Iterable[Optional[Message]]
    ) -> int:
        """Apply writes from a sync response; returns how many were newly logged."""
        processed = 0
        with self.lock:
            self.clock.merge(remote_clock)
            self.clock.inc(self.node_id)
            valid = [m for m in messages if _is_valid_write(m)]
            for msg in _sorted_causally(valid):
                assert msg.request is not None and msg.request.write is not None
                key = msg.request.write.key
                comparison = self.clock.compare(msg.msg_clock)
                applied = False
                if key not in self.store and comparison is not Ordering.GREATER:
                    self.store[key] = msg.request.write.value
                    self.clock.merge(msg.msg_clock)
                    self.clock.inc(self.node_id)
                    applied = True
                    log.info("Node %d: applying synced write for new key %r", self.node_id, key)
                    self._record(msg)
                elif comparison in (Ordering.LESS, Ordering.INCOMPARABLE):
                    self.clock.merge(msg.msg_clock)
                    self.clock.inc(self.node_id)
                    applied = True
                if applied and self._log_once(msg):
                    processed += 1
            if len(self.message_log) > 1:
                self.message_log = _sorted_causally(self.message_log)
        log.info("Node %d: finished sync response, processed %d updates", self.node_id, processed)
        return processed

    def snapshot(self) -> dict[str, str]:
        """A copy of the key-value store."""
        with self.lock:
            return dict(self.store)