import pytest

import signals
from negotiation import NegotiationCoordinator
from room_directory import RoomDirectory
from signal_server import SignalServer


class LoopbackSocket:
    """Relay-side socket that just collects what the relay writes."""

    def __init__(self):
        self.inbox = []

    async def send(self, raw):
        self.inbox.append(raw)

    def envelopes(self):
        return [signals.decode(raw) for raw in self.inbox]


class FakeLink:
    """Scripted transport: reports "connected" once both descriptions exist."""

    def __init__(self, remote_id, role, tracks, on_state_change, on_candidate,
                 auto_connect=True, emit_candidates=(), hang=None):
        self.remote_id = remote_id
        self.role = role
        self.tracks = list(tracks)
        self.on_state_change = on_state_change
        self.on_candidate = on_candidate
        self.auto_connect = auto_connect
        self.emit_candidates = list(emit_candidates)
        self.hang = hang
        self.local = None
        self.remote = None
        self.applied = []
        self.replaced = []
        self.connected = False
        self.destroyed = False

    async def generate_signal(self):
        if self.hang is not None:
            await self.hang.wait()
        kind = "answer" if self.remote and self.remote["type"] == "offer" else "offer"
        self.local = {"type": kind, "sdp": f"{kind} for {self.remote_id}"}
        for candidate in self.emit_candidates:
            self.on_candidate(candidate)
        self._maybe_connect()
        return self.local

    async def apply_signal(self, signal):
        assert not self.destroyed, "signal applied to a destroyed link"
        self.applied.append(signal)
        if "sdp" in signal:
            self.remote = signal
            self._maybe_connect()

    def replace_outgoing_track(self, track):
        self.replaced.append(track)

    async def destroy(self):
        self.destroyed = True

    def emit(self, state):
        self.on_state_change(state)

    def _maybe_connect(self):
        if self.auto_connect and self.local and self.remote and not self.connected:
            self.connected = True
            self.on_state_change("connected")


class LinkFactory:
    def __init__(self, **link_options):
        self.link_options = link_options
        self.created = []
        self.violations = []
        self.coordinator = None
        self.states_at_creation = []

    def __call__(self, remote_id, role, tracks, on_state_change, on_candidate):
        live = [l for l in self.created if l.remote_id == remote_id and not l.destroyed]
        if live:
            self.violations.append((remote_id, live))
        if self.coordinator is not None:
            self.states_at_creation.append(self.coordinator.state_of(remote_id))
        link = FakeLink(remote_id, role, tracks, on_state_change, on_candidate, **self.link_options)
        self.created.append(link)
        return link

    def for_peer(self, remote_id):
        return [l for l in self.created if l.remote_id == remote_id]


class FakeMedia:
    def __init__(self):
        self.video = "camera-video"
        self.audio = "mic-audio"
        self.fail_with = None
        self.released = []

    def tracks(self):
        return [self.audio, self.video]

    def subscribe(self, track):
        return track

    async def switch(self, kind):
        if self.fail_with is not None:
            raise self.fail_with
        previous, self.video = self.video, f"{kind}-video"
        return self.video, previous

    def release(self, track):
        self.released.append(track)


class MeshPeer:
    def __init__(self, server, participant_id, **link_options):
        self.server = server
        self.socket = LoopbackSocket()
        self.participant = server.directory.connect(self.socket, participant_id)
        self.id = participant_id
        self.factory = LinkFactory(**link_options)
        self.media = FakeMedia()
        self.statuses = []
        self.coordinator = NegotiationCoordinator(
            participant_id, self.send, self.factory, self.media,
            retry_budget=2, negotiation_timeout=5.0,
            on_status=lambda rid, status: self.statuses.append((rid, status)),
        )
        self.factory.coordinator = self.coordinator

    async def send(self, envelope):
        await self.server.on_message(self.id, signals.encode(envelope))

    async def join(self, room_id, display_name=None):
        await self.send(signals.Envelope(signals.JOIN, room_id=room_id, display_name=display_name))


class Mesh:
    """Several coordinators wired together through a real SignalServer."""

    def __init__(self):
        self.server = SignalServer(RoomDirectory())
        self.peers = {}

    def add(self, participant_id, **link_options):
        peer = MeshPeer(self.server, participant_id, **link_options)
        self.peers[participant_id] = peer
        return peer

    async def settle(self, rounds=50):
        """Deliver relayed envelopes until nothing moves any more."""
        for _ in range(rounds):
            moved = False
            for peer in self.peers.values():
                await peer.coordinator.drain()
                while peer.socket.inbox:
                    moved = True
                    await peer.coordinator.handle(signals.decode(peer.socket.inbox.pop(0)))
                await peer.coordinator.drain()
            if not moved:
                return
        raise AssertionError("mesh did not settle")


@pytest.fixture
def mesh():
    return Mesh()


@pytest.fixture
def loopback_socket():
    return LoopbackSocket


@pytest.fixture
def link_factory():
    return LinkFactory


@pytest.fixture
def fake_media():
    return FakeMedia
