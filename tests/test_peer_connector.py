import json

import pytest
from websockets.exceptions import ConnectionClosedOK

import signals
from media_capture import LocalTrack, StreamHandle
from mesh_errors import MediaUnavailable, RelayUnreachable
from peer_connector import PeerConnector, backoff_delay
from signals import Envelope, Member


class FakeWs:
    def __init__(self, closed=False):
        self.sent = []
        self.closed = closed

    async def send(self, raw):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(raw))

    async def close(self):
        self.closed = True


class Source:
    def __init__(self, kind):
        self.kind = kind

    def stop(self):
        pass


class FakeCapture:
    def __init__(self, fail=None):
        self.fail = fail
        self.acquired = []

    async def acquire(self, kind, audio=True):
        if self.fail:
            raise self.fail
        self.acquired.append(kind)
        return StreamHandle(kind, video=LocalTrack(Source("video")),
                            audio=LocalTrack(Source("audio")) if audio else None)


def drain_events(connector):
    events = []
    while not connector.events.empty():
        events.append(connector.events.get_nowait())
    return events


@pytest.fixture
def connector(link_factory):
    c = PeerConnector(capture=FakeCapture(), link_factory_=link_factory(), start=False)
    c.ws = FakeWs()
    yield c
    c.loop.close()


@pytest.mark.parametrize("attempt, rand, expected", [
    (0, 0.0, 0.5),
    (0, 1.0, 1.5),
    (1, 0.5, 2.0),
    (10, 0.5, 5.0),
    (10, 1.0, 7.5),
])
def test_backoff_delay(attempt, rand, expected):
    assert backoff_delay(attempt, base=1.0, maximum=5.0, jitter=0.5, rand=lambda: rand) == expected


async def test_peer_id_announces_pending_join(connector):
    assert await connector._join("r1", "Alice") is True
    assert connector.ws.sent == []

    await connector._on_raw(signals.encode(Envelope(signals.PEER_ID, participant_id="p1")))

    assert connector.participant_id == "p1"
    assert connector.coordinator.local_id == "p1"
    assert connector.ws.sent == [
        {"type": "join", "roomId": "r1", "participantId": "p1", "displayName": "Alice"}]


async def test_join_aborts_when_camera_is_unavailable(link_factory):
    c = PeerConnector(capture=FakeCapture(fail=MediaUnavailable("camera", "denied")),
                      link_factory_=link_factory(), start=False)
    c.ws, c.participant_id = FakeWs(), "p1"
    try:
        assert await c._join("r1") is False
        assert c.room is None
        assert c.ws.sent == []
        errors = [e for e in drain_events(c) if e["kind"] == "error"]
        assert errors[0]["data"]["error"] == "MediaUnavailable"
    finally:
        c.loop.close()


async def test_join_rejects_blank_room(connector):
    with pytest.raises(ValueError):
        await connector._join("  ")


async def test_peer_joined_negotiates_and_reports_status(connector):
    await connector._on_raw(signals.encode(Envelope(signals.PEER_ID, participant_id="p1")))
    await connector._join("r1")
    connector.ws.sent.clear()

    await connector._on_raw(signals.encode(Envelope(signals.PEER_JOINED, participant_id="p2")))
    await connector.coordinator.drain()

    [offer] = connector.ws.sent
    assert (offer["type"], offer["to"]) == ("offer", "p2")
    peers = [e["data"] for e in drain_events(connector) if e["kind"] == "peer"]
    assert peers == [{"peer": "p2", "status": "connecting"}]
    assert connector.snapshot()["peers"]["p2"]["role"] == "initiator"


async def test_chat_and_relay_errors(connector, caplog):
    await connector._on_raw(signals.encode(Envelope(signals.CHAT_MESSAGE, sender="p2", text="hi")))
    await connector._on_raw(signals.encode(Envelope(signals.ERROR, reason="bad envelope")))
    await connector._on_raw("{garbage")
    await connector._on_raw(json.dumps({"type": "joined", "roomId": "r1", "members": 5}))
    await connector._on_raw(json.dumps({"type": "peer-joined", "participantId": ["p3"]}))

    assert {"kind": "chat", "data": {"from": "p2", "text": "hi"}} in drain_events(connector)
    assert "bad envelope" in caplog.text
    assert connector.coordinator.links == {}


async def test_rejoin_after_reconnect_reoffers_known_peers(connector):
    await connector._on_raw(signals.encode(Envelope(signals.PEER_ID, participant_id="p1")))
    await connector._join("r1")
    await connector._on_raw(signals.encode(Envelope(signals.PEER_JOINED, participant_id="p2")))
    await connector.coordinator.drain()

    connector.ws = FakeWs()
    await connector._on_raw(signals.encode(Envelope(signals.PEER_ID, participant_id="p9")))
    await connector._on_raw(signals.encode(
        Envelope(signals.JOINED, room_id="r1", members=[Member("p2")])))
    await connector.coordinator.drain()

    assert [m["type"] for m in connector.ws.sent] == ["join", "offer"]
    assert connector.coordinator.local_id == "p9"


async def test_send_without_relay_raises(connector):
    connector.ws = None
    with pytest.raises(RelayUnreachable):
        await connector._send(Envelope(signals.LEAVE))
    connector.ws = FakeWs(closed=True)
    with pytest.raises(RelayUnreachable):
        await connector._send(Envelope(signals.LEAVE))


async def test_leave_tears_down_links_and_media(connector):
    await connector._on_raw(signals.encode(Envelope(signals.PEER_ID, participant_id="p1")))
    await connector._join("r1")
    await connector._on_raw(signals.encode(Envelope(signals.PEER_JOINED, participant_id="p2")))
    await connector.coordinator.drain()

    await connector._leave()

    assert connector.ws.sent[-1] == {"type": "leave"}
    assert connector.coordinator.links == {}
    assert not connector.media.started
    assert connector.room is None


async def test_toggle_screen_share_switches_source(connector):
    await connector._join("r1")
    assert await connector._toggle_screen_share() is True
    assert connector.media.screen_sharing
    assert await connector._toggle_screen_share() is True
    assert not connector.media.screen_sharing
    assert connector.media.capture.acquired == ["camera", "screen", "camera"]
