import json

import pytest

from chronomesh.message import (
    Message,
    MessageType,
    ReadReply,
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
from chronomesh.vlc import Clock


def _write(key="k", value="v", clock=None):
    request = RequestMessage(write=WriteRequest(key=key, value=value))
    return new_request_message("0xA", "0xB", "req-1", request, clock or Clock({1: 1}), "")


def test_terminate_wire_form():
    msg = new_terminate_message("a", "b", "", "")
    assert msg.to_json() == '{"type":"terminate","terminate":true,"sender":"a","receiver":"b","signature":""}'


def test_p2p_message_uses_msg_id_as_req_id():
    msg = new_p2p_message("0xA", "0xB", "m-1", "payload", "", Clock())
    assert msg.type is MessageType.P2P
    assert msg.req_id == "m-1"
    assert msg.p2p.msg_id == "m-1"
    assert msg.p2p.data == "payload"


def test_sync_request_shares_clock():
    clock = Clock({2: 3})
    msg = new_sync_request_message("0xA", "0xB", "r", clock, "")
    assert msg.type is MessageType.SYNC_REQUEST
    assert msg.sync_request.requester_clock is msg.msg_clock


def test_to_dict_field_order_and_omissions():
    data = _write().to_dict()
    assert list(data) == ["type", "request", "sender", "receiver", "req_id", "msg_clock", "signature"]
    assert data["request"] == {"write": {"key": "k", "value": "v"}}
    assert data["msg_clock"] == {"1": 1}


@pytest.mark.parametrize(
    "msg",
    [
        new_p2p_message("0xA", "0xB", "m", "d", "0xsig", Clock({1: 2})),
        _write(),
        new_request_message("0xA", "0xB", "r", RequestMessage(read=ReadRequest(key="x")), Clock(), ""),
        new_reply_message("0xA", "0xB", "r", ReadReply("x", "y", True, False), Clock({3: 1}), "s"),
        new_sync_request_message("0xA", "0xB", "r", Clock({1: 4}), ""),
        new_sync_response_message("0xA", "0xB", "r", [_write("a"), _write("b")], Clock({1: 9}), ""),
        new_sync_response_message("0xA", "0xB", "r", None, Clock(), ""),
        new_terminate_message("0xA", "0xB", "r", ""),
    ],
)
def test_json_round_trip(msg):
    assert Message.from_json(msg.to_json()) == msg


def test_unknown_type_is_preserved():
    msg = Message.from_json('{"type":"gossip","sender":"a","receiver":"b","signature":""}')
    assert msg.type == "gossip"
    assert json.loads(msg.to_json())["type"] == "gossip"


def test_html_characters_are_escaped():
    msg = new_p2p_message("a", "b", "m", "<a&b>", "", None)
    text = msg.to_json()
    assert "\\u003ca\\u0026b\\u003e" in text
    assert Message.from_json(text).p2p.data == "<a&b>"


def test_from_json_rejects_bad_clock():
    with pytest.raises(ValueError):
        Message.from_json('{"type":"request","msg_clock":{"x":1},"sender":"","receiver":"","signature":""}')


def test_from_json_rejects_non_object():
    with pytest.raises(ValueError):
        Message.from_json("[1]")


def test_hash_is_32_bytes_and_ignores_signature():
    msg = _write()
    digest = msg.hash()
    msg.signature = "0xdeadbeef"
    assert len(digest) == 32
    assert msg.hash() == digest


def test_hash_depends_on_content():
    base = _write()
    other_receiver = _write()
    other_receiver.receiver = "0xC"
    other_clock = _write(clock=Clock({1: 2}))
    assert len({base.hash(), other_receiver.hash(), other_clock.hash()}) == 3


def test_hash_is_stable_across_round_trip():
    msg = new_sync_response_message("0xA", "0xB", "r", [_write()], Clock({5: 1, 12: 2}), "")
    assert Message.from_json(msg.to_json()).hash() == msg.hash()