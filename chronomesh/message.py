"""Messages exchanged between nodes and their canonical JSON form."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from chronomesh.signing import keccak256
from chronomesh.vlc import Clock


class MessageType(str, Enum):
    """Kinds of message on the wire."""

    P2P = "p2p"
    REQUEST = "request"
    REPLY = "reply"
    SYNC_REQUEST = "sync_request"
    SYNC_RESPONSE = "sync_response"
    TERMINATE = "terminate"


@dataclass
class P2PMessage:
    msg_id: str = ""
    data: str = ""


@dataclass
class ReadRequest:
    key: str = ""


@dataclass
class WriteRequest:
    key: str = ""
    value: str = ""


@dataclass
class RequestMessage:
    read: Optional[ReadRequest] = None
    write: Optional[WriteRequest] = None


@dataclass
class ReadReply:
    key: str = ""
    value: str = ""
    found: bool = False
    causally_ready: bool = False


@dataclass
class WriteReply:
    key: str = ""
    added: bool = False
    causally_ready: bool = False


@dataclass
class ReplyMessage:
    read_reply: Optional[ReadReply] = None
    write_reply: Optional[WriteReply] = None


@dataclass
class SyncRequestMessage:
    requester_clock: Optional[Clock] = None


@dataclass
class SyncResponseMessage:
    missing_messages: Optional[list[Optional[Message]]] = field(default_factory=list)


@dataclass
class Message:
    """Top-level message envelope."""

    type: Union[MessageType, str] = ""
    p2p: Optional[P2PMessage] = None
    request: Optional[RequestMessage] = None
    reply: Optional[ReplyMessage] = None
    sync_request: Optional[SyncRequestMessage] = None
    sync_response: Optional[SyncResponseMessage] = None
    terminate: bool = False
    sender: str = ""
    receiver: str = ""
    req_id: str = ""
    msg_clock: Optional[Clock] = None
    signature: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object for this message, in wire field order."""
        data: dict[str, Any] = {
            "type": self.type.value if isinstance(self.type, MessageType) else self.type
        }
        if self.p2p is not None:
            data["p2p"] = {"msg_id": self.p2p.msg_id, "data": self.p2p.data}
        if self.request is not None:
            data["request"] = _request_to_dict(self.request)
        if self.reply is not None:
            data["reply"] = _reply_to_dict(self.reply)
        if self.sync_request is not None:
            data["sync_request"] = {"requester_clock": _clock_to_obj(self.sync_request.requester_clock)}
        if self.sync_response is not None:
            missing = self.sync_response.missing_messages
            data["sync_response"] = {
                "missing_messages": None
                if missing is None
                else [None if m is None else m.to_dict() for m in missing]
            }
        if self.terminate:
            data["terminate"] = True
        data["sender"] = self.sender
        data["receiver"] = self.receiver
        if self.req_id:
            data["req_id"] = self.req_id
        if self.msg_clock is not None:
            data["msg_clock"] = _clock_to_obj(self.msg_clock)
        data["signature"] = self.signature
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Message:
        """Build a message from its decoded JSON object."""
        obj = _mapping(data, "message")
        raw_type = obj.get("type", "")
        if not isinstance(raw_type, str):
            raise ValueError("message type must be a string")
        try:
            msg_type: Union[MessageType, str] = MessageType(raw_type)
        except ValueError:
            msg_type = raw_type

        p2p = None
        if obj.get("p2p") is not None:
            raw = _mapping(obj["p2p"], "p2p")
            p2p = P2PMessage(msg_id=_text(raw, "msg_id"), data=_text(raw, "data"))

        sync_request = None
        if obj.get("sync_request") is not None:
            raw = _mapping(obj["sync_request"], "sync_request")
            sync_request = SyncRequestMessage(requester_clock=_clock_from_obj(raw.get("requester_clock")))

        sync_response = None
        if obj.get("sync_response") is not None:
            raw = _mapping(obj["sync_response"], "sync_response")
            missing = raw.get("missing_messages")
            if missing is not None and not isinstance(missing, list):
                raise ValueError("missing_messages must be a list")
            sync_response = SyncResponseMessage(
                missing_messages=None
                if missing is None
                else [None if m is None else cls.from_dict(m) for m in missing]
            )

        terminate = obj.get("terminate", False)
        if not isinstance(terminate, bool):
            raise ValueError("terminate must be a boolean")

        return cls(
            type=msg_type,
            p2p=p2p,
            request=None if obj.get("request") is None else _request_from_dict(obj["request"]),
            reply=None if obj.get("reply") is None else _reply_from_dict(obj["reply"]),
            sync_request=sync_request,
            sync_response=sync_response,
            terminate=terminate,
            sender=_text(obj, "sender"),
            receiver=_text(obj, "receiver"),
            req_id=_text(obj, "req_id"),
            msg_clock=_clock_from_obj(obj.get("msg_clock")),
            signature=_text(obj, "signature"),
        )

    def to_json(self) -> str:
        """Serialise to compact canonical JSON."""
        return _marshal(self.to_dict())

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> Message:
        """Parse a message from JSON text."""
        return cls.from_dict(json.loads(text))

    def hash(self) -> bytes:
        """Keccak-256 of the signed-message envelope over every field but the signature."""
        data = self.to_dict()
        del data["signature"]
        payload = _marshal(data).encode("utf-8")
        prefix = f"\x19Ethereum Signed Message:\n{len(payload)}".encode("utf-8")
        return keccak256(prefix + payload)


def new_p2p_message(
    sender: str, receiver: str, msg_id: str, data: str, signature: str, clock: Optional[Clock]
) -> Message:
    return Message(
        type=MessageType.P2P,
        p2p=P2PMessage(msg_id=msg_id, data=data),
        sender=sender,
        receiver=receiver,
        req_id=msg_id,
        msg_clock=clock,
        signature=signature,
    )


def new_request_message(
    sender: str,
    receiver: str,
    req_id: str,
    request: Optional[RequestMessage],
    clock: Optional[Clock],
    signature: str,
) -> Message:
    return Message(
        type=MessageType.REQUEST,
        request=request,
        sender=sender,
        receiver=receiver,
        req_id=req_id,
        msg_clock=clock,
        signature=signature,
    )


def new_reply_message(
    sender: str,
    receiver: str,
    req_id: str,
    read_reply: Optional[ReadReply],
    clock: Optional[Clock],
    signature: str,
) -> Message:
    """Build a reply to a read request."""
    return Message(
        type=MessageType.REPLY,
        reply=ReplyMessage(read_reply=read_reply),
        sender=sender,
        receiver=receiver,
        req_id=req_id,
        msg_clock=clock,
        signature=signature,
    )


def new_sync_request_message(
    sender: str, receiver: str, req_id: str, local_clock: Optional[Clock], signature: str
) -> Message:
    return Message(
        type=MessageType.SYNC_REQUEST,
        sync_request=SyncRequestMessage(requester_clock=local_clock),
        sender=sender,
        receiver=receiver,
        req_id=req_id,
        msg_clock=local_clock,
        signature=signature,
    )


def new_sync_response_message(
    sender: str,
    receiver: str,
    req_id: str,
    missing_messages: Optional[list[Optional[Message]]],
    clock: Optional[Clock],
    signature: str,
) -> Message:
    return Message(
        type=MessageType.SYNC_RESPONSE,
        sync_response=SyncResponseMessage(missing_messages=missing_messages),
        sender=sender,
        receiver=receiver,
        req_id=req_id,
        msg_clock=clock,
        signature=signature,
    )


def new_terminate_message(sender: str, receiver: str, req_id: str, signature: str) -> Message:
    return Message(
        type=MessageType.TERMINATE,
        terminate=True,
        sender=sender,
        receiver=receiver,
        req_id=req_id,
        signature=signature,
    )


def _marshal(obj: Any) -> str:
    text = json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
    for raw, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(raw, escaped)
    return text


def _clock_to_obj(clock: Optional[Clock]) -> Any:
    return None if clock is None else json.loads(clock.to_json())


def _clock_from_obj(value: Any) -> Optional[Clock]:
    return None if value is None else Clock.from_json(value)


def _mapping(value: Any, name: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be a JSON object")
    return value


def _text(obj: dict[str, Any], name: str) -> str:
    value = obj.get(name, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    return value


def _flag(obj: dict[str, Any], name: str) -> bool:
    value = obj.get(name, False)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValueError(f"{name} must be a boolean")
    return value


def _request_to_dict(request: RequestMessage) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if request.read is not None:
        data["read"] = {"key": request.read.key}
    if request.write is not None:
        data["write"] = {"key": request.write.key, "value": request.write.value}
    return data


def _request_from_dict(value: Any) -> RequestMessage:
    obj = _mapping(value, "request")
    read = write = None
    if obj.get("read") is not None:
        read = ReadRequest(key=_text(_mapping(obj["read"], "read"), "key"))
    if obj.get("write") is not None:
        raw = _mapping(obj["write"], "write")
        write = WriteRequest(key=_text(raw, "key"), value=_text(raw, "value"))
    return RequestMessage(read=read, write=write)


def _reply_to_dict(reply: ReplyMessage) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if reply.read_reply is not None:
        rr = reply.read_reply
        data["read_reply"] = {
            "key": rr.key,
            "value": rr.value,
            "found": rr.found,
            "causally_ready": rr.causally_ready,
        }
    if reply.write_reply is not None:
        wr = reply.write_reply
        data["write_reply"] = {"key": wr.key, "added": wr.added, "causally_ready": wr.causally_ready}
    return data


def _reply_from_dict(value: Any) -> ReplyMessage:
    obj = _mapping(value, "reply")
    read_reply = write_reply = None
    if obj.get("read_reply") is not None:
        raw = _mapping(obj["read_reply"], "read_reply")
        read_reply = ReadReply(
            key=_text(raw, "key"),
            value=_text(raw, "value"),
            found=_flag(raw, "found"),
            causally_ready=_flag(raw, "causally_ready"),
        )
    if obj.get("write_reply") is not None:
        raw = _mapping(obj["write_reply"], "write_reply")
        write_reply = WriteReply(
            key=_text(raw, "key"),
            added=_flag(raw, "added"),
            causally_ready=_flag(raw, "causally_ready"),
        )
    return ReplyMessage(read_reply=read_reply, write_reply=write_reply)