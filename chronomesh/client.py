"""A replica node: replicated key-value writes, causal reads, sync and epoch milestones."""

from __future__ import annotations

import logging
import queue
import re
import threading
import time
import uuid
from datetime import timedelta
from typing import Optional, Union

from chronomesh.epoch import (
    EpochTracker,
    format_epoch_vote,
    parse_epoch_finalization,
    parse_epoch_vote,
)
from chronomesh.eventgraph import DgraphClient, EventGraph
from chronomesh.events import EventRecorder
from chronomesh.message import (
    Message,
    MessageType,
    ReadRequest,
    RequestMessage,
    WriteRequest,
    new_p2p_message,
    new_reply_message,
    new_request_message,
    new_sync_request_message,
    new_sync_response_message,
    new_terminate_message,
)
from chronomesh.network import Network, NetworkError, PeerInfo
from chronomesh.replica import ApplyAction, Replica
from chronomesh.signing import (
    SigningError,
    decode_hex,
    encode_hex,
    keccak256,
    private_key_from_hex,
    recover_address,
    sign_hash,
)
from chronomesh.vlc import Clock

log = logging.getLogger(__name__)

_READ_TIMEOUT = 2.0
_REPLY_QUEUE_SIZE = 10
_REPLIES_CLOSED = object()
_MILESTONE_NUMBER = re.compile(r"M:([+-]?[0-9]+)")


class ClientError(Exception):
    """Raised when a client operation cannot be completed."""


class Client:
    """A peer-to-peer node holding a replicated key-value store."""

    def __init__(
        self,
        node_id: int,
        address: str,
        private_key_hex: str,
        *,
        dgraph_client: Optional[DgraphClient] = None,
        auto_commit_interval: Optional[Union[float, timedelta]] = 300.0,
    ) -> None:
        try:
            self.private_key = private_key_from_hex(private_key_hex)
        except SigningError as exc:
            raise ClientError(f"parse private key: {exc}") from exc
        self.id = node_id
        self.address = address
        self.eth_address = self.private_key.address()
        try:
            self.network = Network(address)
        except NetworkError as exc:
            raise ClientError(f"create network: {exc}") from exc

        self.peers: dict[str, PeerInfo] = {}
        self.peer_eth_to_id: dict[str, int] = {}
        self.peer_id_to_eth: dict[int, str] = {}
        self._replies: queue.Queue[object] = queue.Queue(maxsize=_REPLY_QUEUE_SIZE)

        self.event_graph = EventGraph(node_id, self.eth_address, client=dgraph_client)
        self.epoch = EpochTracker(self.eth_address)
        self.recorder = EventRecorder(
            self.event_graph,
            node_id,
            self.eth_address,
            peer_ids=self.peer_eth_to_id,
            on_epoch_event=self.epoch.add_event,
        )
        self.replica = Replica(node_id, self.eth_address, self.recorder)

        threading.Thread(
            target=self._handle_incoming_messages, name=f"client-{node_id}-incoming", daemon=True
        ).start()
        threading.Thread(
            target=self._handle_discovered_peers, name=f"client-{node_id}-discovery", daemon=True
        ).start()

        self._auto_commit: Optional[threading.Event] = None
        if auto_commit_interval is not None:
            self._auto_commit = self.event_graph.start_auto_commit(auto_commit_interval)

        with self.replica.lock:
            self.replica.store["M0"] = str(node_id)
        self.recorder.record_genesis()

    # -- identity -----------------------------------------------------------

    @property
    def peer_id(self) -> str:
        """Network identity of this node."""
        return self.network.peer_id

    @property
    def multiaddr(self) -> str:
        """Address at which peers reach this node, including its peer id."""
        return f"{self.network.addrs[0]}/p2p/{self.network.peer_id}"

    @property
    def clock(self) -> Clock:
        """A copy of the current vector clock."""
        with self.replica.lock:
            return self.replica.clock.copy()

    def add_peer_mapping(self, eth_addr: str, vlc_id: int) -> None:
        """Associate a peer's account address with its clock id."""
        self.peer_eth_to_id[eth_addr] = vlc_id
        self.peer_id_to_eth[vlc_id] = eth_addr
        log.info("Node %d: added peer mapping %s <-> %d", self.id, eth_addr, vlc_id)

    def add_peer(self, eth_addr: str, address: str) -> None:
        """Register where the peer with account ``eth_addr`` listens; ``address`` ends in ``/p2p/<id>``."""
        _, sep, peer_id = address.partition("/p2p/")
        if not sep or not peer_id:
            raise ClientError(f"peer address lacks a /p2p/ component: {address}")
        self.peers[eth_addr] = PeerInfo(id=peer_id, addrs=[address])

    # -- signing ------------------------------------------------------------

    def _sign(self, msg: Message) -> None:
        msg.sender = self.eth_address
        signature = sign_hash(msg.hash(), self.private_key)
        msg.signature = encode_hex(signature)

    @staticmethod
    def _verify_signature(msg: Message) -> None:
        if not msg.signature:
            raise SigningError("no signature")
        signature = decode_hex(msg.signature)
        if len(signature) != 65:
            raise SigningError(f"invalid sig length: {len(signature)}, expected 65")
        recovered = recover_address(msg.hash(), signature)
        if recovered.lower() != msg.sender.lower():
            raise SigningError(f"sig mismatch: got {recovered} want {msg.sender}")

    def _is_authentic(self, msg: Message) -> bool:
        try:
            self._verify_signature(msg)
        except ValueError as exc:
            log.warning("Node %d: invalid signature on %s: %s", self.id, msg.type, exc)
            return False
        return True

    # -- sending ------------------------------------------------------------

    def _send_message(self, msg: Message, receiver_addr: str = "") -> None:
        if msg.sender != self.eth_address:
            raise ClientError("mismatched sender")
        if not msg.signature:
            self._sign(msg)
        dest = receiver_addr
        if not dest:
            if not msg.receiver:
                raise ClientError("receiver missing")
            peer = self.peers.get(msg.receiver)
            if peer is None:
                raise ClientError(f"unknown peer: {msg.receiver}")
            if not peer.addrs:
                raise ClientError(f"no addresses for peer: {msg.receiver}")
            base = peer.addrs[0]
            dest = base if "/p2p/" in base else f"{base}/p2p/{peer.id}"
        log.debug("Node %d sending %s to %s at %s (%s)", self.id, msg.type, msg.receiver, dest, msg.req_id)
        try:
            self.network.send_message(dest, msg)
        except NetworkError as exc:
            raise ClientError(f"failed send {msg.type} to {msg.receiver}: {exc}") from exc

    # -- public operations --------------------------------------------------

    def read(self, key: str, peer_eth_addr: str) -> tuple[bool, str]:
        """Read ``key`` from a peer; returns whether it was found and its value."""
        req_id = str(uuid.uuid4())
        msg = new_request_message(
            self.eth_address, peer_eth_addr, req_id,
            RequestMessage(read=ReadRequest(key=key)), self.clock, "",
        )
        return self._send_request(peer_eth_addr, req_id, msg)

    def _send_request(self, peer_eth_addr: str, req_id: str, msg: Message) -> tuple[bool, str]:
        if peer_eth_addr == self.eth_address:
            self._sign(msg)
            reply = self.handle_message(msg)
            if reply is None:
                raise ClientError(f"self-read {req_id} no reply generated")
            if reply.type != MessageType.REPLY or reply.reply is None or reply.reply.read_reply is None:
                raise ClientError(f"self-read {req_id} unexpected reply type {reply.type}")
            read_reply = reply.reply.read_reply
            if not read_reply.causally_ready:
                raise ClientError(f"self-read {req_id} not causally ready")
            return read_reply.found, read_reply.value

        self._send_message(msg)
        deadline = time.monotonic() + _READ_TIMEOUT
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ClientError(f"timeout waiting read reply for {req_id}")
            try:
                item = self._replies.get(timeout=remaining)
            except queue.Empty:
                raise ClientError(f"timeout waiting read reply for {req_id}") from None
            if item is _REPLIES_CLOSED:
                self._replies.put_nowait(_REPLIES_CLOSED)
                raise ClientError(f"reply channel closed {req_id}")
            assert isinstance(item, Message)
            if item.type != MessageType.REPLY or item.sender != peer_eth_addr or item.req_id != req_id:
                continue
            if item.reply is None or item.reply.read_reply is None:
                raise ClientError(f"read reply {req_id} nil body")
            with self.replica.lock:
                self.replica.clock.merge(item.msg_clock)
                self.replica.clock.inc(self.id)
            read_reply = item.reply.read_reply
            if not read_reply.causally_ready:
                raise ClientError(f"read {req_id} failed: server not ready")
            return read_reply.found, read_reply.value

    def write(self, key: str, value: str, peer_eth_addr: str) -> None:
        """Store a new key locally and send the write to a peer; an existing key is left alone."""
        with self.replica.lock:
            new_clock = self.replica.apply_local_write(key, value)
            if new_clock is None:
                return
            msg = new_request_message(
                self.eth_address, peer_eth_addr, str(uuid.uuid4()),
                RequestMessage(write=WriteRequest(key=key, value=value)), new_clock, "",
            )
            try:
                self._sign(msg)
            except ValueError as exc:
                raise ClientError(f"failed sign local write msg {key}: {exc}") from exc
            self.replica.message_log.append(msg)
            self.recorder.record_message_event(msg)

        if not key.startswith("M"):
            self._track_for_epoch(msg)
        self._send_message(msg)

    def terminate(self, peer_eth_addr: str) -> None:
        """Tell a peer that this node is terminating."""
        msg = new_terminate_message(self.eth_address, peer_eth_addr, str(uuid.uuid4()), "")
        self._send_message(msg)

    def set_epoch_threshold(self, threshold: int) -> None:
        """Set how many writes close an epoch; values below one are ignored."""
        self.epoch.set_threshold(threshold)

    def get_store(self) -> dict[str, str]:
        """A copy of the key-value store."""
        return self.replica.snapshot()

    # -- message handling ---------------------------------------------------

    def handle_message(self, msg: Optional[Message]) -> Optional[Message]:
        """Process one incoming message; returns the signed response to send back, if any."""
        if msg is None:
            return None
        if msg.type == MessageType.P2P:
            if msg.p2p is not None and msg.msg_clock is not None and self._is_authentic(msg):
                data = msg.p2p.data
                if "epoch_finalize" in data:
                    self._handle_epoch_finalization(data)
                elif "epoch_vote" in data:
                    self._handle_epoch_vote(data)
                else:
                    with self.replica.lock:
                        self.replica.clock.merge(msg.msg_clock)
                        self.replica.clock.inc(self.id)
                    log.info("Node %d: unhandled P2P message: %s", self.id, data)
            return None
        if msg.type == MessageType.REQUEST:
            return self._handle_request(msg)
        if msg.type == MessageType.SYNC_REQUEST:
            return self._handle_sync_request(msg)
        if msg.type == MessageType.SYNC_RESPONSE:
            self._handle_sync_response(msg)
            return None
        if msg.type == MessageType.REPLY:
            if self._is_authentic(msg):
                try:
                    self._replies.put_nowait(msg)
                except queue.Full:
                    log.warning("Reply queue full for %s", msg.req_id)
            return None
        if msg.type == MessageType.TERMINATE:
            log.info("Node %d: received terminate from %s", self.id, msg.sender)
            return None
        log.warning("Node %d: unknown message type %r", self.id, msg.type)
        return None

    def _handle_request(self, msg: Message) -> Optional[Message]:
        if msg.request is None or msg.msg_clock is None:
            log.warning("Node %d: invalid request (no body or clock)", self.id)
            return None
        if not self._is_authentic(msg):
            return None

        response: Optional[Message] = None
        if msg.request.read is not None:
            reply, reply_clock = self.replica.read(msg.request.read.key, msg.msg_clock)
            response = new_reply_message(self.eth_address, msg.sender, msg.req_id, reply, reply_clock, "")
        elif msg.request.write is not None:
            key = msg.request.write.key
            value = msg.request.write.value
            if key.startswith("M"):
                applied = self.replica.apply_milestone(key, value, msg.msg_clock)
                if applied and msg.sender != self.eth_address and key != "M0":
                    match = _MILESTONE_NUMBER.match(key)
                    if match:
                        self.epoch.reset_to(int(match.group(1)))
            else:
                sender_id = self.peer_eth_to_id.get(msg.sender)
                action, requires_sync = self.replica.apply_remote_write(msg, sender_id)
                if action is not ApplyAction.IGNORE:
                    self._track_for_epoch(msg)
                elif requires_sync:
                    response = new_sync_request_message(
                        self.eth_address, msg.sender, msg.req_id, self.clock, ""
                    )

        if response is not None:
            try:
                self._sign(response)
            except ValueError as exc:
                log.error("Failed sign response %s: %s", msg.req_id, exc)
                return None
        return response

    def _handle_sync_request(self, msg: Message) -> Optional[Message]:
        if msg.sync_request is None or msg.sync_request.requester_clock is None:
            log.warning("Node %d: invalid sync request", self.id)
            return None
        if not self._is_authentic(msg):
            return None
        missing, reply_clock = self.replica.missing_messages(msg.sync_request.requester_clock)
        if not missing:
            return None
        response = new_sync_response_message(
            self.eth_address, msg.sender, msg.req_id, missing, reply_clock, ""
        )
        try:
            self._sign(response)
        except ValueError as exc:
            log.error("Node %d: failed to sign sync response: %s", self.id, exc)
            return None
        return response

    def _handle_sync_response(self, msg: Message) -> None:
        if msg.sync_response is None or msg.msg_clock is None:
            log.warning("Node %d: invalid sync response", self.id)
            return
        if not self._is_authentic(msg):
            return
        self.replica.apply_sync_messages(msg.msg_clock, msg.sync_response.missing_messages or [])

    # -- epochs -------------------------------------------------------------

    def _track_for_epoch(self, msg: Message) -> None:
        if self.epoch.track(msg):
            self._finalize_epoch()

    def _finalize_epoch(self) -> None:
        finalization = self.epoch.finalize()
        key = finalization.milestone_key
        value = str(self.id)
        self._create_local_milestone(key, value, finalization.event_ids)
        self._broadcast_milestone(key, value)

    def _create_local_milestone(
        self, key: str, value: str, epoch_events: Optional[list[str]]
    ) -> None:
        with self.replica.lock:
            if key in self.replica.store:
                return
            self.replica.store[key] = value
            self.replica.clock.inc(self.id)
            marker = Message(
                request=RequestMessage(write=WriteRequest(key=key, value=value)),
                msg_clock=self.replica.clock.copy(),
                sender=self.eth_address,
            )
            if epoch_events is None:
                self.recorder.record_message_event(marker)
            else:
                self.recorder.record_milestone_event(marker, epoch_events)
        log.info("Node %d: created local milestone %s:%s", self.id, key, value)

    def _broadcast_milestone(self, key: str, value: str) -> None:
        for peer_eth_addr in list(self.peers):
            if peer_eth_addr == self.eth_address:
                continue
            msg = new_request_message(
                self.eth_address, peer_eth_addr, str(uuid.uuid4()),
                RequestMessage(write=WriteRequest(key=key, value=value)), self.clock, "",
            )
            try:
                self._sign(msg)
                self._send_message(msg)
            except (ClientError, ValueError) as exc:
                log.warning("Node %d: failed to send milestone to %s: %s", self.id, peer_eth_addr, exc)
            else:
                log.info("Node %d: broadcast milestone %s to %s", self.id, key, peer_eth_addr)

    def _handle_epoch_finalization(self, content: str) -> None:
        try:
            finalization = parse_epoch_finalization(content)
        except ValueError:
            log.warning("Node %d: received malformed epoch finalization: %s", self.id, content)
            return
        if not self.epoch.record_received(finalization.epoch_number, finalization.epoch_hash):
            return
        log.info(
            "Node %d: received epoch %d from %s with %d messages, hash %s",
            self.id, finalization.epoch_number, finalization.sender,
            finalization.message_count, finalization.epoch_hash,
        )
        if finalization.sender and finalization.sender != self.eth_address:
            threading.Thread(
                target=self._send_epoch_vote,
                args=(finalization.epoch_number, finalization.epoch_hash, finalization.sender),
                daemon=True,
            ).start()

    def _send_epoch_vote(self, epoch_number: int, epoch_hash: str, recipient: str) -> None:
        signature = encode_hex(sign_hash(keccak256(epoch_hash.encode("utf-8")), self.private_key))
        content = format_epoch_vote(epoch_number, signature, self.eth_address)
        msg = new_p2p_message(self.eth_address, recipient, str(uuid.uuid4()), content, "", Clock())
        try:
            self._sign(msg)
            self._send_message(msg)
        except (ClientError, ValueError) as exc:
            log.warning("Node %d: failed to send vote for epoch %d to %s: %s", self.id, epoch_number, recipient, exc)
        else:
            log.info("Node %d: sent vote for epoch %d to %s", self.id, epoch_number, recipient)

    def _handle_epoch_vote(self, content: str) -> None:
        try:
            vote = parse_epoch_vote(content)
        except ValueError:
            log.warning("Node %d: received malformed epoch vote", self.id)
            return
        epoch_hash = self.epoch.received_epochs.get(vote.epoch_number)
        if epoch_hash is None:
            log.warning("Node %d: vote for unknown epoch %d from %s", self.id, vote.epoch_number, vote.voter)
            return
        try:
            recovered = recover_address(keccak256(epoch_hash.encode("utf-8")), decode_hex(vote.signature))
        except ValueError as exc:
            log.warning("Node %d: invalid vote signature: %s", self.id, exc)
            return
        if recovered.lower() != vote.voter.lower():
            log.warning("Node %d: vote signature verification failed", self.id)
            return
        log.info("Node %d: valid vote for epoch %d from %s", self.id, vote.epoch_number, vote.voter)

        if self.epoch.record_vote(vote.epoch_number, vote.voter, vote.signature, list(self.peers)):
            key = f"M:{vote.epoch_number}"
            value = str(self.id)
            self._create_local_milestone(key, value, None)
            self._broadcast_milestone(key, value)

    # -- background loops ---------------------------------------------------

    def _handle_incoming_messages(self) -> None:
        for msg in self.network.incoming_messages():
            try:
                response = self.handle_message(msg)
            except Exception:  # keep serving other peers
                log.exception("Node %d: failed to handle %s", self.id, msg.type)
                continue
            if response is None:
                continue
            response.receiver = msg.sender
            try:
                self._send_message(response)
            except ClientError as exc:
                log.warning("Node %d: failed send %s back to %s: %s", self.id, response.type, response.receiver, exc)
        log.debug("Node %d: incoming message loop stopped", self.id)

    def _handle_discovered_peers(self) -> None:
        for peer in self.network.discovered_peers():
            log.info("Node %d: discovered peer %s with addrs %s", self.id, peer.id, peer.addrs)
        log.debug("Node %d: peer discovery loop stopped", self.id)

    # -- lifecycle ----------------------------------------------------------

    def close(self) -> None:
        """Stop the node and its network."""
        log.info("Node %d: closing client", self.id)
        if self._auto_commit is not None:
            self._auto_commit.set()
        try:
            self._replies.put_nowait(_REPLIES_CLOSED)
        except queue.Full:
            pass
        try:
            self.network.close()
        except NetworkError as exc:
            raise ClientError(str(exc)) from exc

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()