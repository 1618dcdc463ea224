"""Epoch bookkeeping: counting writes, finalising epochs and collecting votes."""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

from chronomesh.message import Message, MessageType

log = logging.getLogger(__name__)

_INT = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_CONSENSUS_MARKERS = ("epoch_finalize", "epoch_vote")
_VOTE_VALUE_ENDS = (" ", ",", "}", "]", "map")


def _atoi(text: str) -> int:
    """Parse a decimal integer, giving 0 for anything malformed or out of range."""
    if not _INT.fullmatch(text):
        return 0
    value = int(text)
    return value if _INT64_MIN <= value <= _INT64_MAX else 0


@dataclass
class EpochFinalization:
    """An epoch closed by some node: its number, hash and contents."""

    epoch_number: int
    epoch_hash: str
    sender: str = ""
    message_count: int = 0
    event_ids: list[str] = field(default_factory=list)

    @property
    def milestone_key(self) -> str:
        """Store key of the milestone that closes this epoch."""
        return f"M:{self.epoch_number}"


@dataclass
class EpochVote:
    """A peer's signed approval of an epoch."""

    epoch_number: int
    signature: str
    voter: str


def _value_after(content: str, name: str, terminators: Iterable[str]) -> Optional[str]:
    idx = content.find(name)
    if idx <= 0:
        return None
    rest = content[idx + len(name):]
    for terminator in terminators:
        end = rest.find(terminator)
        if end > 0:
            return rest[:end]
    return None


def parse_epoch_finalization(content: str) -> EpochFinalization:
    """Read an epoch finalisation notice; raises ValueError if number or hash is missing."""
    number_text = _value_after(content, "epoch_number:", (" ",))
    epoch_number = _atoi(number_text) if number_text is not None else 0
    epoch_hash = _value_after(content, "epoch_hash:", (" ",)) or ""
    sender = _value_after(content, "sender:", (" ",)) or ""
    count_text = _value_after(content, "message_count:", (" ", "]"))
    message_count = _atoi(count_text) if count_text is not None else 0

    if epoch_number == 0 or not epoch_hash:
        raise ValueError(f"malformed epoch finalization: {content!r}")
    return EpochFinalization(
        epoch_number=epoch_number,
        epoch_hash=epoch_hash,
        sender=sender,
        message_count=message_count,
    )


def _extract_vote_field(name: str, content: str) -> str:
    patterns = (
        f"{name}:",
        f"{name} ",
        f'["{name}"]:',
        f"[{name}]:",
        f"map[{name}:",
        f'map["{name}":',
    )
    for pattern in patterns:
        idx = content.find(pattern)
        if idx < 0:
            continue
        after = content[idx + len(pattern):]
        ends = [end for end in (after.find(t) for t in _VOTE_VALUE_ENDS) if end > 0]
        if ends:
            return after[: min(ends)].strip().strip("\"'")
        return after.strip()
    return ""


def parse_epoch_vote(content: str) -> EpochVote:
    """Read an epoch vote; raises ValueError if the number, signature or voter is missing."""
    epoch_text = _extract_vote_field("epoch_number", content)
    signature = _extract_vote_field("signature", content)
    voter = _extract_vote_field("voter", content)
    epoch_number = _atoi(epoch_text) if epoch_text else 0
    if epoch_number == 0 or not signature or not voter:
        raise ValueError(f"malformed epoch vote: {content!r}")
    return EpochVote(epoch_number=epoch_number, signature=signature, voter=voter)


def format_epoch_vote(epoch_number: int, signature: str, voter: str) -> str:
    """Render a vote in the wire form read by :func:`parse_epoch_vote`."""
    return (
        f"map[epoch_number:{epoch_number} signature:{signature} "
        f"type:epoch_vote voter:{voter}]"
    )


def _type_text(msg_type: object) -> str:
    return msg_type.value if isinstance(msg_type, MessageType) else str(msg_type)


class EpochTracker:
    """Tracks the messages of the current epoch and the epochs and votes seen from peers."""

    def __init__(self, address: str = "", threshold: int = 10) -> None:
        self.address = address
        self.threshold = threshold
        self.epoch_number = 0
        self.message_count = 0
        self.message_ids: list[str] = []
        self.message_digests: list[str] = []
        self.event_ids: list[str] = []
        self.last_epoch_hash = ""
        self.received_epochs: dict[int, str] = {}
        self.sent_epochs: dict[int, bool] = {}
        self.received_votes: dict[int, dict[str, str]] = {}
        self._lock = threading.RLock()

    def _reset_current(self) -> None:
        self.message_count = 0
        self.message_ids = []
        self.message_digests = []
        self.event_ids = []

    def set_threshold(self, threshold: int) -> None:
        """Set how many writes close an epoch; values below one are ignored."""
        if threshold <= 0:
            return
        with self._lock:
            self.threshold = threshold
        log.info("Set epoch threshold to %d messages", threshold)

    def track(self, msg: Optional[Message]) -> bool:
        """Count ``msg`` towards the current epoch; True when the epoch should now be finalised."""
        if msg is None or not msg.req_id:
            return False
        if (
            msg.type == MessageType.P2P
            and msg.p2p is not None
            and any(marker in msg.p2p.data for marker in _CONSENSUS_MARKERS)
        ):
            return False

        is_write = (
            msg.type == MessageType.REQUEST
            and msg.request is not None
            and msg.request.write is not None
        )
        with self._lock:
            self.message_ids.append(msg.req_id)
            self.message_digests.append(f"{msg.req_id}:{msg.sender}:{_type_text(msg.type)}")
            if not is_write:
                return False
            self.message_count += 1
            log.debug("Epoch message count now %d/%d", self.message_count, self.threshold)
            return self.message_count >= self.threshold

    def add_event(self, event_id: str) -> None:
        """Remember an event recorded during the current epoch."""
        with self._lock:
            self.event_ids.append(event_id)

    def finalize(self) -> EpochFinalization:
        """Close the current epoch, chain its hash and start the next one."""
        with self._lock:
            hasher = hashlib.sha256()
            if self.last_epoch_hash:
                hasher.update(self.last_epoch_hash.encode("utf-8"))
            for digest in sorted(self.message_digests):
                hasher.update(digest.encode("utf-8"))
            epoch_hash = hasher.hexdigest()

            result = EpochFinalization(
                epoch_number=self.epoch_number + 1,
                epoch_hash=epoch_hash,
                sender=self.address,
                message_count=self.message_count,
                event_ids=list(self.event_ids),
            )
            log.info(
                "Finalizing epoch %d with %d messages, milestone %s",
                result.epoch_number, result.message_count, result.milestone_key,
            )
            self.epoch_number = result.epoch_number
            self.last_epoch_hash = epoch_hash
            self._reset_current()
            return result

    def reset_to(self, epoch_number: int) -> bool:
        """Jump to a later epoch announced by a peer; False if it is not ahead."""
        with self._lock:
            if epoch_number <= self.epoch_number:
                return False
            self.epoch_number = epoch_number
            self._reset_current()
            log.info("Reset epoch tracking to %d", epoch_number)
            return True

    def record_received(self, epoch_number: int, epoch_hash: str) -> bool:
        """Remember a peer's finalised epoch; False if it was already known."""
        with self._lock:
            if epoch_number in self.received_epochs:
                return False
            self.received_epochs[epoch_number] = epoch_hash
            if epoch_number > self.epoch_number:
                self.epoch_number = epoch_number
            return True

    def record_vote(
        self, epoch_number: int, voter: str, signature: str, peers: Iterable[str]
    ) -> bool:
        """Store a vote for an epoch this node sent; True once every other peer has voted."""
        with self._lock:
            if not self.sent_epochs.get(epoch_number, False):
                return False
            votes = self.received_votes.setdefault(epoch_number, {})
            votes[voter] = signature
            return all(peer in votes for peer in peers if peer != self.address)