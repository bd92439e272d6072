"""
Wire messages exchanged between coordination nodes.

Every message travels as a JSON object POSTed to the endpoint of its kind:

    order    ->  POST /order     {"from": 0, "value": "ATTACK"}
    forward  ->  POST /forward   {"from": 1, "value": "RETREAT"}
    request  ->  POST /request   {"from": 2, "timestamp": 7, "resource": "A"}
    reply    ->  POST /reply     {"from": 3, "resource": "A"}
    release  ->  POST /release   {"from": 2, "timestamp": 9, "resource": "A"}

The sender is called ``from`` on the wire and ``sender`` in Python, since
``from`` is a keyword.
"""

from typing import Any, ClassVar, Dict, Literal, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

ATTACK = "ATTACK"
RETREAT = "RETREAT"

Command = Literal["ATTACK", "RETREAT"]


class MessageDecodeError(ValueError):
    """An inbound payload could not be decoded into the message kind it was sent as."""


# ========================
# Message Models
# ========================

class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    kind: ClassVar[str] = ""

    sender: int = Field(alias="from", ge=0)

    def describe(self) -> str:
        """Key fields as ``name=value`` pairs, for log lines."""
        fields = self.model_dump(by_alias=True)
        return " ".join(f"{name}={value}" for name, value in fields.items())


class OrderMessage(Message):
    """Commander -> lieutenant initial command."""
    kind: ClassVar[str] = "order"

    value: Command


class ForwardMessage(Message):
    """Lieutenant -> lieutenant relay of the command it received."""
    kind: ClassVar[str] = "forward"

    value: Command


class RequestMessage(Message):
    """Request for a named resource, stamped with the requester's Lamport clock."""
    kind: ClassVar[str] = "request"

    timestamp: int = Field(ge=0)
    resource: str = Field(min_length=1)


class ReplyMessage(Message):
    """Acknowledgment of a request for a named resource."""
    kind: ClassVar[str] = "reply"

    resource: str = Field(min_length=1)


class ReleaseMessage(Message):
    """Sent on critical-section exit when release broadcasting is enabled."""
    kind: ClassVar[str] = "release"

    timestamp: int = Field(ge=0)
    resource: str = Field(min_length=1)


MESSAGE_TYPES: Dict[str, Type[Message]] = {
    cls.kind: cls
    for cls in (OrderMessage, ForwardMessage, RequestMessage, ReplyMessage, ReleaseMessage)
}

# kind -> HTTP path of the receiving endpoint
ENDPOINTS: Dict[str, str] = {kind: f"/{kind}" for kind in MESSAGE_TYPES}


# ========================
# Encoding
# ========================

def encode(message: Message) -> Dict[str, Any]:
    """Serialize a message to its JSON-ready wire form."""
    return message.model_dump(by_alias=True)


def decode(kind: str, payload: Union[bytes, str, Dict[str, Any]]) -> Message:
    """
    Decode a payload received on the endpoint for ``kind``.

    Accepts the raw request body (bytes or str) or an already-parsed dict.
    Raises MessageDecodeError for unknown kinds, invalid JSON and payloads
    that do not match the message schema.
    """
    message_type = MESSAGE_TYPES.get(kind)
    if message_type is None:
        raise MessageDecodeError(f"unknown message kind {kind!r}")

    try:
        if isinstance(payload, (bytes, bytearray, str)):
            return message_type.model_validate_json(payload)
        return message_type.model_validate(payload)
    except ValidationError as e:
        raise MessageDecodeError(f"invalid {kind} payload ({e.error_count()} error(s))") from e
