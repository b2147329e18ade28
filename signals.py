"""
Wire envelopes exchanged between clients and the relay.

Every message is a JSON object whose ``type`` field names its kind. The kind
is resolved once, in :func:`decode`, and travels as ``Envelope.kind`` from
then on; nothing downstream inspects payload shape to guess what a message
is.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mesh_errors import ProtocolError

# client -> relay
JOIN = "join"
LEAVE = "leave"

# relay -> client
PEER_ID = "peer-id"
JOINED = "joined"
PEER_JOINED = "peer-joined"
PEER_LEFT = "peer-left"
ERROR = "error"

# client -> relay -> client, addressed by participant id
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"

# client -> relay -> room
CHAT_MESSAGE = "chat-message"

NEGOTIATION_KINDS = frozenset({OFFER, ANSWER, ICE_CANDIDATE})
KINDS = frozenset({
    JOIN, LEAVE, PEER_ID, JOINED, PEER_JOINED, PEER_LEFT, ERROR,
    OFFER, ANSWER, ICE_CANDIDATE, CHAT_MESSAGE,
})

# Envelope attribute -> wire field
_FIELDS = {
    "sender": "from",
    "to": "to",
    "room_id": "roomId",
    "participant_id": "participantId",
    "display_name": "displayName",
    "signal": "signal",
    "candidate": "candidate",
    "members": "members",
    "text": "text",
    "reason": "reason",
}

# ids and labels; anything else in these fields is rejected at decode time
_STRING_FIELDS = ("sender", "to", "room_id", "participant_id", "display_name", "text", "reason")


@dataclass(frozen=True)
class Member:
    participant_id: str
    display_name: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return {"participantId": self.participant_id, "displayName": self.display_name}

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "Member":
        if not isinstance(data, dict) or not data.get("participantId"):
            raise ProtocolError(f"malformed member entry: {data!r}")
        return cls(str(data["participantId"]), data.get("displayName"))


@dataclass(frozen=True)
class Envelope:
    kind: str
    sender: Optional[str] = None
    to: Optional[str] = None
    room_id: Optional[str] = None
    participant_id: Optional[str] = None
    display_name: Optional[str] = None
    signal: Optional[Dict[str, Any]] = None
    candidate: Optional[Dict[str, Any]] = None
    members: List[Member] = field(default_factory=list)
    text: Optional[str] = None
    reason: Optional[str] = None

    @property
    def payload(self) -> Optional[Dict[str, Any]]:
        """The opaque negotiation blob, whichever field carries it."""
        return self.candidate if self.kind == ICE_CANDIDATE else self.signal


def offer(to: str, signal: Dict[str, Any]) -> Envelope:
    return Envelope(OFFER, to=to, signal=signal)


def answer(to: str, signal: Dict[str, Any]) -> Envelope:
    return Envelope(ANSWER, to=to, signal=signal)


def ice_candidate(to: str, candidate: Dict[str, Any]) -> Envelope:
    return Envelope(ICE_CANDIDATE, to=to, candidate=candidate)


def negotiation(kind: str, to: str, payload: Dict[str, Any], sender: Optional[str] = None) -> Envelope:
    """Build an offer/answer/ice-candidate envelope from its kind."""
    if kind not in NEGOTIATION_KINDS:
        raise ProtocolError(f"{kind!r} is not a negotiation kind")
    if kind == ICE_CANDIDATE:
        return Envelope(kind, sender=sender, to=to, candidate=payload)
    return Envelope(kind, sender=sender, to=to, signal=payload)


def encode(envelope: Envelope) -> str:
    msg: Dict[str, Any] = {"type": envelope.kind}
    for attr, key in _FIELDS.items():
        value = getattr(envelope, attr)
        if attr == "members":
            if envelope.kind == JOINED:
                msg[key] = [m.to_wire() for m in value]
        elif value is not None:
            msg[key] = value
    return json.dumps(msg)


def decode(raw) -> Envelope:
    """Parse one wire message. Raises ProtocolError on anything unusable."""
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"not JSON: {e}") from e
    if not isinstance(msg, dict):
        raise ProtocolError("envelope must be a JSON object")

    kind = msg.get("type")
    if kind not in KINDS:
        raise ProtocolError(f"unknown envelope type {kind!r}")

    values = {attr: msg.get(key) for attr, key in _FIELDS.items() if attr != "members"}
    for attr in _STRING_FIELDS:
        if values[attr] is not None and not isinstance(values[attr], str):
            raise ProtocolError(f"{_FIELDS[attr]} must be a string")
    for attr in ("signal", "candidate"):
        if values[attr] is not None and not isinstance(values[attr], dict):
            raise ProtocolError(f"{_FIELDS[attr]} must be an object")
    if kind in NEGOTIATION_KINDS:
        if kind == ICE_CANDIDATE and values["candidate"] is None:
            raise ProtocolError("ice-candidate without candidate")
        if kind != ICE_CANDIDATE and values["signal"] is None:
            raise ProtocolError(f"{kind} without signal")

    raw_members = msg.get("members")
    if raw_members is None:
        raw_members = []
    elif not isinstance(raw_members, list):
        raise ProtocolError("members must be a list")
    members = [Member.from_wire(m) for m in raw_members]
    return Envelope(kind, members=members, **values)
