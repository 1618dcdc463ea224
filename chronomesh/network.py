"""Peer-to-peer message transport over TCP, addressed with multiaddr strings."""

from __future__ import annotations

import ipaddress
import logging
import queue
import re
import secrets
import socket
import socketserver
import threading
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Iterator, Optional

from chronomesh.message import Message

log = logging.getLogger(__name__)

PROTOCOL_ID = "/p2p-framework/1.0.0"
DISCOVERY_SERVICE_TAG = "p2p-framework-mdns"

_CONNECT_TIMEOUT = 5.0
_MAX_LINE = 64 * 1024 * 1024
_CLOSED = object()
_PEER_ID = re.compile(r"[A-Za-z0-9]+")
_HOST_PROTOCOLS = ("ip4", "ip6", "dns", "dns4", "dns6")


class NetworkError(Exception):
    """Raised when a message cannot be sent or the host cannot start."""


@dataclass
class PeerInfo:
    """A peer identity together with the addresses it listens on."""

    id: str
    addrs: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Endpoint:
    proto: str
    host: str
    port: int
    peer_id: Optional[str]

    @property
    def family(self) -> socket.AddressFamily:
        return socket.AF_INET6 if self.proto in ("ip6", "dns6") else socket.AF_INET


def _parse_multiaddr(text: str) -> _Endpoint:
    if not text.startswith("/"):
        raise ValueError(f"multiaddr must begin with '/': {text!r}")
    parts = text.split("/")[1:]
    if len(parts) % 2:
        raise ValueError(f"incomplete multiaddr: {text!r}")
    proto: Optional[str] = None
    host = ""
    port: Optional[int] = None
    peer_id: Optional[str] = None
    for name, value in zip(parts[::2], parts[1::2]):
        if not value:
            raise ValueError(f"empty value for /{name} in {text!r}")
        if name in _HOST_PROTOCOLS:
            if proto is not None:
                raise ValueError(f"more than one host in {text!r}")
            if name == "ip4":
                ipaddress.IPv4Address(value)
            elif name == "ip6":
                ipaddress.IPv6Address(value)
            proto, host = name, value
        elif name == "tcp":
            if not value.isdigit() or int(value) > 65535:
                raise ValueError(f"invalid tcp port {value!r}")
            port = int(value)
        elif name == "p2p":
            if not _PEER_ID.fullmatch(value):
                raise ValueError(f"invalid peer id {value!r}")
            peer_id = value
        else:
            raise ValueError(f"unsupported protocol /{name}")
    if proto is None or port is None:
        raise ValueError(f"multiaddr needs a host and a tcp port: {text!r}")
    return _Endpoint(proto, host, port, peer_id)


class _StreamHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        network: Network = self.server.network  # type: ignore[attr-defined]
        try:
            network._serve_stream(self.rfile, self.wfile)
        except OSError as exc:
            log.debug("stream error: %s", exc)


class _Server4(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True
    network: Any = None


class _Server6(_Server4):
    address_family = socket.AF_INET6


class Network:
    """Listens for messages from peers and delivers messages to them."""

    def __init__(self, listen_addr: str) -> None:
        try:
            endpoint = _parse_multiaddr(listen_addr)
        except ValueError as exc:
            raise NetworkError(f"failed to create host: {exc}") from exc

        self.peer_id = secrets.token_hex(16)
        self.peers: dict[str, str] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._messages: queue.Queue[Any] = queue.Queue()
        self._discovered: queue.Queue[Any] = queue.Queue()

        server_cls = _Server6 if endpoint.family == socket.AF_INET6 else _Server4
        try:
            self._server = server_cls((endpoint.host, endpoint.port), _StreamHandler)
        except OSError as exc:
            raise NetworkError(f"failed to create host: {exc}") from exc
        self._server.network = self
        bound_port = self._server.server_address[1]
        self.addrs = [f"/{endpoint.proto}/{endpoint.host}/tcp/{bound_port}"]

        self._thread = threading.Thread(
            target=self._server.serve_forever, name=f"network-{self.peer_id}", daemon=True
        )
        self._thread.start()
        log.info("Started host %s with addrs: %s", self.peer_id, self.addrs)

    def _serve_stream(self, rfile: BinaryIO, wfile: BinaryIO) -> None:
        header = rfile.readline(_MAX_LINE).decode("utf-8", "replace").split()
        if len(header) != 2 or header[0] != PROTOCOL_ID:
            log.warning("Rejected stream with unknown protocol header %r", header)
            return
        remote_peer = header[1]
        wfile.write(f"{PROTOCOL_ID} {self.peer_id}\n".encode("utf-8"))
        wfile.flush()

        line = rfile.readline(_MAX_LINE)
        try:
            msg = Message.from_json(line)
        except ValueError as exc:
            log.warning("Failed to decode message: %s", exc)
            return

        with self._lock:
            if self._closed:
                return
            self._messages.put(msg)
            self.peers[remote_peer] = msg.sender
        wfile.write(b"ok\n")
        wfile.flush()

    def send_message(self, peer_addr: str, msg: Message) -> None:
        """Deliver ``msg`` to the peer at ``peer_addr``, which must end in ``/p2p/<id>``."""
        with self._lock:
            if self._closed:
                raise NetworkError("network is closed")
        try:
            endpoint = _parse_multiaddr(peer_addr)
        except ValueError as exc:
            raise NetworkError(f"invalid peer address: {exc}") from exc
        target = endpoint.peer_id
        if target is None:
            raise NetworkError("failed to parse peer address: missing /p2p/ component")

        try:
            sock = socket.create_connection((endpoint.host, endpoint.port), timeout=_CONNECT_TIMEOUT)
        except OSError as exc:
            raise NetworkError(f"failed to connect to peer {target}: {exc}") from exc

        with sock, sock.makefile("rwb") as stream:
            try:
                stream.write(f"{PROTOCOL_ID} {self.peer_id}\n".encode("utf-8"))
                stream.flush()
                reply = stream.readline(_MAX_LINE).decode("utf-8", "replace").split()
            except OSError as exc:
                raise NetworkError(f"failed to open stream to peer {target}: {exc}") from exc
            if reply != [PROTOCOL_ID, target]:
                raise NetworkError(f"failed to connect to peer {target}: peer identity mismatch")
            try:
                stream.write(msg.to_json().encode("utf-8") + b"\n")
                stream.flush()
                stream.readline(_MAX_LINE)
            except OSError as exc:
                raise NetworkError(f"failed to send message to peer {target}: {exc}") from exc

        with self._lock:
            self.peers[target] = msg.receiver

    @staticmethod
    def _drain(source: queue.Queue[Any]) -> Iterator[Any]:
        while True:
            item = source.get()
            if item is _CLOSED:
                source.put(_CLOSED)
                return
            yield item

    def incoming_messages(self) -> Iterator[Message]:
        """Yield received messages until the network is closed."""
        return self._drain(self._messages)

    def discovered_peers(self) -> Iterator[PeerInfo]:
        """Yield announced peers until the network is closed."""
        return self._drain(self._discovered)

    def announce_peer(self, peer: PeerInfo) -> None:
        """Report a found peer to readers of :meth:`discovered_peers`."""
        with self._lock:
            if not self._closed:
                self._discovered.put(peer)

    def close(self) -> None:
        """Stop listening and end the message and peer streams; safe to repeat."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._messages.put(_CLOSED)
            self._discovered.put(_CLOSED)
        self._server.shutdown()
        self._thread.join()
        try:
            self._server.server_close()
        except OSError as exc:
            raise NetworkError(f"failed to close host: {exc}") from exc

    def __enter__(self) -> Network:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()