# rtc_link.py
# --------------------------------------------------------------------
# aiortc-backed transport for one PeerLink: offer/answer, candidates,
# outgoing track replacement and connection state notifications
# --------------------------------------------------------------------
import logging

from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from negotiation import Role

logger = logging.getLogger(__name__)


class RtcLink:
    """Wraps one RTCPeerConnection. Created and destroyed by the coordinator.

    aiortc finishes ICE gathering inside setLocalDescription, so the
    generated offer/answer already carries this side's candidates. Remote
    candidates trickled by other implementations are still accepted through
    `apply_signal`.
    """

    def __init__(self, role, configuration, tracks=(), on_state_change=None):
        self.role = role
        self.pc = RTCPeerConnection(configuration)
        self.remote_tracks = []
        self.channel = None
        self._on_state_change = on_state_change
        self._closed = False

        for track in tracks:
            self.pc.addTrack(track)
        if role == Role.INITIATOR:
            # keeps an m-line in the offer even with no outgoing media
            self.channel = self.pc.createDataChannel("mesh")

        @self.pc.on("connectionstatechange")
        async def _state():
            state = self.pc.connectionState
            logger.debug(f"Connection state {state} ({self.role.value})")
            if self._on_state_change and not self._closed:
                self._on_state_change(state)

        @self.pc.on("track")
        def _track(track):
            logger.info(f"Remote {track.kind} track received")
            self.remote_tracks.append(track)

    @property
    def has_remote_description(self) -> bool:
        return self.pc.remoteDescription is not None

    async def generate_signal(self):
        remote = self.pc.remoteDescription
        if remote is not None and remote.type == "offer":
            description = await self.pc.createAnswer()
        else:
            description = await self.pc.createOffer()
        await self.pc.setLocalDescription(description)
        return {
            "sdp": self.pc.localDescription.sdp,
            "type": self.pc.localDescription.type,
        }

    async def apply_signal(self, signal):
        if "sdp" in signal:
            await self.pc.setRemoteDescription(RTCSessionDescription(**signal))
            return
        line = signal.get("candidate")
        if not line:
            return  # end-of-candidates marker
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        candidate = candidate_from_sdp(line)
        candidate.sdpMid = signal.get("sdpMid")
        candidate.sdpMLineIndex = signal.get("sdpMLineIndex")
        await self.pc.addIceCandidate(candidate)

    def replace_outgoing_track(self, track) -> bool:
        for sender in self.pc.getSenders():
            if sender.kind == track.kind:
                sender.replaceTrack(track)
                return True
        logger.debug(f"No {track.kind} sender to replace")
        return False

    async def destroy(self):
        if self._closed:
            return
        self._closed = True
        if self.channel is not None and self.channel.readyState == "open":
            self.channel.close()
        # outgoing tracks are this link's own relay subscriptions
        for sender in self.pc.getSenders():
            if sender.track is not None:
                sender.track.stop()
        await self.pc.close()


def link_factory(configuration):
    """Build the `link_factory` a NegotiationCoordinator expects."""

    def create(remote_id, role, tracks, on_state_change, on_candidate):
        # on_candidate is unused: candidates travel inside the sdp
        logger.debug(f"Creating {role.value} link to {remote_id}")
        return RtcLink(role, configuration, tracks, on_state_change)

    return create
