import socket

import pytest

from chronomesh.message import RequestMessage, WriteRequest, new_request_message
from chronomesh.network import PROTOCOL_ID, Network, NetworkError, PeerInfo
from chronomesh.vlc import Clock


def _dial(net):
    return f"{net.addrs[0]}/p2p/{net.peer_id}"


def _write_msg(sender="alice", receiver="bob"):
    request = RequestMessage(write=WriteRequest(key="k", value="v"))
    return new_request_message(sender, receiver, "req-1", request, Clock({1: 2}), "")


@pytest.fixture
def pair():
    a = Network("/ip4/127.0.0.1/tcp/0")
    b = Network("/ip4/127.0.0.1/tcp/0")
    yield a, b
    a.close()
    b.close()


def test_listen_address_gets_real_port(pair):
    a, _ = pair
    prefix = "/ip4/127.0.0.1/tcp/"
    assert a.addrs[0].startswith(prefix)
    assert int(a.addrs[0][len(prefix):]) > 0


def test_send_and_receive(pair):
    a, b = pair
    msg = _write_msg()
    a.send_message(_dial(b), msg)
    b.close()
    assert list(b.incoming_messages()) == [msg]


def test_peers_are_recorded_on_both_sides(pair):
    a, b = pair
    a.send_message(_dial(b), _write_msg())
    assert a.peers == {b.peer_id: "bob"}
    assert b.peers == {a.peer_id: "alice"}


def test_send_to_self(pair):
    a, _ = pair
    msg = _write_msg(receiver="alice")
    a.send_message(_dial(a), msg)
    a.close()
    assert list(a.incoming_messages()) == [msg]


def test_missing_p2p_component_rejected(pair):
    a, b = pair
    with pytest.raises(NetworkError, match="p2p"):
        a.send_message(b.addrs[0], _write_msg())


@pytest.mark.parametrize("addr", ["nonsense", "/ip4/999.0.0.1/tcp/1/p2p/abc", "/udp/1/p2p/abc"])
def test_invalid_peer_address(pair, addr):
    a, _ = pair
    with pytest.raises(NetworkError, match="invalid peer address"):
        a.send_message(addr, _write_msg())


def test_wrong_peer_identity_rejected_and_nothing_delivered(pair):
    a, b = pair
    with pytest.raises(NetworkError):
        a.send_message(f"{b.addrs[0]}/p2p/deadbeef", _write_msg())
    b.close()
    assert list(b.incoming_messages()) == []


def test_unreachable_peer():
    gone = Network("/ip4/127.0.0.1/tcp/0")
    target = _dial(gone)
    gone.close()
    with Network("/ip4/127.0.0.1/tcp/0") as a:
        with pytest.raises(NetworkError, match="failed to connect"):
            a.send_message(target, _write_msg())


def test_send_after_close_fails(pair):
    a, b = pair
    a.close()
    with pytest.raises(NetworkError, match="closed"):
        a.send_message(_dial(b), _write_msg())


def test_unknown_protocol_stream_dropped(pair):
    _, b = pair
    port = int(b.addrs[0].rsplit("/", 1)[1])
    with socket.create_connection(("127.0.0.1", port), timeout=5) as sock:
        sock.sendall(b"/other/1.0 somebody\n")
        assert sock.recv(100) == b""


def test_protocol_header_answered_with_identity(pair):
    _, b = pair
    port = int(b.addrs[0].rsplit("/", 1)[1])
    with socket.create_connection(("127.0.0.1", port), timeout=5) as sock:
        sock.sendall(f"{PROTOCOL_ID} someone\n".encode())
        with sock.makefile("rb") as stream:
            assert stream.readline().decode().split() == [PROTOCOL_ID, b.peer_id]


def test_discovered_peers_until_close(pair):
    a, _ = pair
    found = PeerInfo(id="abc", addrs=["/ip4/127.0.0.1/tcp/9"])
    a.announce_peer(found)
    a.close()
    assert list(a.discovered_peers()) == [found]


def test_close_is_idempotent_and_ends_streams(pair):
    a, _ = pair
    a.close()
    a.close()
    assert list(a.incoming_messages()) == []
    assert list(a.discovered_peers()) == []


@pytest.mark.parametrize("addr", ["not-an-addr", "/ip4/999.1.1.1/tcp/0", "/ip4/127.0.0.1"])
def test_bad_listen_address(addr):
    with pytest.raises(NetworkError, match="failed to create host"):
        Network(addr)