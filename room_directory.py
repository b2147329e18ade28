"""
Room membership and addressed message delivery for the relay.

The directory only knows participant ids, display names and which socket to
write to. Negotiation payloads pass through untouched; the only field it
ever sets on a relayed envelope is ``from``.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from websockets.exceptions import ConnectionClosed

import signals
from mesh_errors import PeerUnreachable
from signals import Envelope, Member

logger = logging.getLogger(__name__)


@dataclass
class Participant:
    participant_id: str
    websocket: object
    display_name: Optional[str] = None
    room_id: Optional[str] = None

    def member(self) -> Member:
        return Member(self.participant_id, self.display_name)


class RoomDirectory:
    """Maps room ids to participant ids and routes envelopes between them.

    A room exists only while it has members. A participant is in at most
    one room at a time.
    """

    def __init__(self):
        self.participants: Dict[str, Participant] = {}
        self.rooms: Dict[str, Set[str]] = {}

    # ---------------------------------------------------------- membership
    def connect(self, websocket, participant_id: Optional[str] = None) -> Participant:
        participant_id = participant_id or str(uuid.uuid4())
        participant = Participant(participant_id, websocket)
        self.participants[participant_id] = participant
        logger.info(f"Participant {participant_id} connected")
        return participant

    def members(self, room_id: str) -> List[Member]:
        return [self.participants[pid].member() for pid in sorted(self.rooms.get(room_id, ()))]

    def room_of(self, participant_id: str) -> Optional[str]:
        participant = self.participants.get(participant_id)
        return participant.room_id if participant else None

    async def join(self, participant_id: str, room_id, display_name: Optional[str] = None) -> Optional[List[Member]]:
        """Add a participant to a room.

        Returns the other members as they were before the join, or None when
        the room id is unusable or the participant is unknown (no-op).
        """
        if not isinstance(room_id, str) or not room_id.strip():
            logger.warning(f"Ignoring join with invalid room id {room_id!r} from {participant_id}")
            return None
        participant = self.participants.get(participant_id)
        if participant is None:
            logger.warning(f"Ignoring join from unknown participant {participant_id}")
            return None

        if display_name is not None:
            participant.display_name = display_name

        if participant.room_id == room_id:
            return [m for m in self.members(room_id) if m.participant_id != participant_id]
        if participant.room_id is not None:
            await self.leave(participant_id)

        existing = self.members(room_id)
        if room_id not in self.rooms:
            logger.info(f"Room '{room_id}' created")
        self.rooms.setdefault(room_id, set()).add(participant_id)
        participant.room_id = room_id
        logger.info(f"Participant {participant_id} joined room '{room_id}'. "
                    f"Room has {len(self.rooms[room_id])} participants")

        await self.broadcast(
            room_id,
            Envelope(signals.PEER_JOINED, participant_id=participant_id,
                     display_name=participant.display_name),
            exclude={participant_id},
        )
        return existing

    async def leave(self, participant_id: str) -> Optional[str]:
        """Remove a participant from its room and tell the room-mates.

        Returns the room it left, or None if it was not in one.
        """
        participant = self.participants.get(participant_id)
        if participant is None or participant.room_id is None:
            return None

        room_id = participant.room_id
        participant.room_id = None
        room = self.rooms.get(room_id, set())
        room.discard(participant_id)
        if not room:
            self.rooms.pop(room_id, None)
            logger.info(f"Room '{room_id}' deleted (empty)")
        else:
            logger.info(f"Participant {participant_id} left room '{room_id}'. "
                        f"Room has {len(room)} participants")
            await self.broadcast(room_id, Envelope(signals.PEER_LEFT, participant_id=participant_id))
        return room_id

    async def disconnect(self, participant_id: str) -> None:
        await self.leave(participant_id)
        if self.participants.pop(participant_id, None) is not None:
            logger.info(f"Participant {participant_id} disconnected")

    # ------------------------------------------------------------- routing
    async def relay(self, kind: str, from_id: str, to_id: str, payload) -> bool:
        """Forward an addressed negotiation message. Fire-and-forget.

        Returns whether the message was handed to the destination socket.
        """
        envelope = signals.negotiation(kind, to_id, payload, sender=from_id)
        try:
            target = self._reachable(from_id, to_id)
        except PeerUnreachable as e:
            logger.debug(f"Dropping {kind} from {from_id}: {e}")
            return False
        return await self._deliver(target, envelope)

    async def broadcast(self, room_id: str, envelope: Envelope, exclude=()) -> int:
        delivered = 0
        for pid in sorted(self.rooms.get(room_id, ())):
            # membership can change while an earlier send is awaited
            if pid in exclude or pid not in self.rooms.get(room_id, ()):
                continue
            if await self._deliver(self.participants[pid], envelope):
                delivered += 1
        return delivered

    async def send_to(self, participant_id: str, envelope: Envelope) -> bool:
        participant = self.participants.get(participant_id)
        if participant is None:
            return False
        return await self._deliver(participant, envelope)

    def _reachable(self, from_id: str, to_id: str) -> Participant:
        sender = self.participants.get(from_id)
        target = self.participants.get(to_id)
        if (
            sender is None
            or target is None
            or target.room_id is None
            or target.room_id != sender.room_id
        ):
            raise PeerUnreachable(to_id)
        return target

    async def _deliver(self, participant: Participant, envelope: Envelope) -> bool:
        try:
            await participant.websocket.send(signals.encode(envelope))
            return True
        except ConnectionClosed as e:
            logger.debug(f"Delivery of {envelope.kind} to {participant.participant_id} failed: {e}")
            return False
