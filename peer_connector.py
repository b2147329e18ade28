# peer_connector.py
# --------------------------------------------------------------------
# Client runtime: relay socket with reconnect, local media, and one
# NegotiationCoordinator driving a PeerLink per remote participant
# --------------------------------------------------------------------

import asyncio, logging, queue, random, threading
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

import signals
from media_capture import CAMERA, SCREEN, LocalMedia, MediaCapture
from mesh_config import ice_config, negotiation_config, relay_config
from mesh_errors import MediaUnavailable, ProtocolError, RelayUnreachable
from negotiation import NegotiationCoordinator
from rtc_link import link_factory
from signals import Envelope

logger = logging.getLogger(__name__)


def backoff_delay(attempt, base=relay_config.RECONNECT_DELAY,
                  maximum=relay_config.RECONNECT_DELAY_MAX,
                  jitter=relay_config.RECONNECT_JITTER, rand=random.random):
    """Exponential delay capped at `maximum`, randomized by ±jitter."""
    delay = min(maximum, base * (2 ** attempt))
    spread = delay * jitter
    return max(0.0, delay - spread + 2 * spread * rand())


class PeerConnector:
    """One participant's connection to a mesh room.

    Runs its own asyncio loop on a daemon thread; the public methods are
    safe to call from any thread. Progress is published to `events` as
    ``{"kind": ..., "data": ...}`` dictionaries:

    - ``status``: free-form progress text
    - ``peer``: ``{"peer": remote_id, "status": connecting|connected|failed|disconnected}``
    - ``chat``: ``{"from": remote_id, "text": ...}``
    - ``error``: ``{"error": class name, "message": ...}``
    """

    def __init__(self, events: queue.Queue = None, signal_url=relay_config.SIGNAL_URL,
                 capture=None, link_factory_=None, start=True):
        self.events = events if events is not None else queue.Queue()
        self.signal_url = signal_url
        self.media = LocalMedia(capture or MediaCapture())
        self._link_factory = link_factory_ or link_factory(ice_config.rtc_configuration())
        self.participant_id = None
        self.room = None
        self.display_name = None
        self.ws = None
        self.closed = False
        self.coordinator = NegotiationCoordinator(
            None, self._send, self._link_factory, self.media,
            retry_budget=negotiation_config.RETRY_BUDGET,
            negotiation_timeout=negotiation_config.TIMEOUT,
            on_status=self._peer_status,
        )

        self.loop = asyncio.new_event_loop()
        if start:
            threading.Thread(target=self.loop.run_forever, daemon=True).start()
            asyncio.run_coroutine_threadsafe(self._run(), self.loop)

    # ───────────────────────── thread-safe API ─────────────────────────
    def join(self, room: str, display_name: str = None):
        return self._call(self._join(room, display_name))

    def leave(self):
        return self._call(self._leave())

    def toggle_screen_share(self):
        return self._call(self._toggle_screen_share())

    def set_audio_enabled(self, enabled: bool):
        return self.loop.call_soon_threadsafe(self.media.set_enabled, "audio", enabled)

    def set_video_enabled(self, enabled: bool):
        return self.loop.call_soon_threadsafe(self.media.set_enabled, "video", enabled)

    def send_chat(self, text: str):
        if not text: return
        return self._call(self._send(Envelope(signals.CHAT_MESSAGE, text=text)))

    def snapshot(self):
        if self.loop.is_running():
            # coordinator state belongs to the loop thread
            async def _snap():
                return self._snapshot()
            return self._call(_snap()).result(timeout=5)
        return self._snapshot()

    def _snapshot(self):
        peers = self.coordinator.snapshot()
        return {
            "participantId": self.participant_id,
            "room": self.room,
            "relayConnected": self.ws is not None,
            "screenSharing": self.media.screen_sharing,
            "audioEnabled": bool(self.media.audio and self.media.audio.enabled),
            "videoEnabled": bool(self.media.video and self.media.video.enabled),
            "peers": peers,
        }

    def disconnect(self):
        async def _disc():
            if self.closed: return
            self.closed = True
            await self._leave()
            if self.ws: await self.ws.close()
            self.ws = None
            self._post("status", "Disconnected")
        return self._call(_disc())

    def _call(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def _post(self, kind, data=""):
        self.events.put({"kind": kind, "data": data})

    # ───────────────────────────── actions ─────────────────────────────
    async def _join(self, room, display_name=None):
        if not isinstance(room, str) or not room.strip():
            raise ValueError("room id must be a non-empty string")
        if self.room is not None and self.room != room:
            await self._leave()
        if not self.media.started:
            try:
                await self.media.start(CAMERA)
            except MediaUnavailable as e:
                self._post("error", {"error": type(e).__name__, "message": str(e)})
                self._post("status", "Join aborted – camera/microphone unavailable")
                return False
        self.room, self.display_name = room, display_name
        self._post("status", f"Joining room '{room}'…")
        await self._announce()
        return True

    async def _leave(self):
        if self.room is None: return
        room, self.room = self.room, None
        if self.ws:
            try:
                await self._send(Envelope(signals.LEAVE))
            except RelayUnreachable as e:
                logger.debug(f"Leave not delivered: {e}")
        await self.coordinator.close_all()
        self.media.stop()
        self._post("status", f"Left room '{room}'")

    async def _toggle_screen_share(self):
        target = CAMERA if self.media.screen_sharing else SCREEN
        try:
            await self.coordinator.switch_source(target)
        except MediaUnavailable as e:
            self._post("error", {"error": type(e).__name__, "message": str(e)})
            return False
        self._post("status", "Screen sharing" if target == SCREEN else "Camera")
        return True

    async def _announce(self):
        if self.room is None or self.ws is None or self.participant_id is None:
            return  # re-announced once the relay hands out an id
        await self._send(Envelope(signals.JOIN, room_id=self.room,
                                  participant_id=self.participant_id,
                                  display_name=self.display_name))

    async def _send(self, envelope):
        if self.ws is None:
            raise RelayUnreachable("signalling socket is not connected")
        try:
            await self.ws.send(signals.encode(envelope))
        except ConnectionClosed as e:
            raise RelayUnreachable(str(e)) from e

    def _peer_status(self, remote_id, status):
        self._post("peer", {"peer": remote_id, "status": status})

    # ──────────────────────────── relay loop ───────────────────────────
    async def _run(self):
        attempt = 0
        while not self.closed:
            self._post("status", f"Connecting to signalling server {self.signal_url}…")
            try:
                async with connect(self.signal_url) as ws:
                    self.ws = ws
                    attempt = 0
                    async for raw in ws:
                        await self._on_raw(raw)
            except (OSError, asyncio.TimeoutError, ConnectionClosed, InvalidHandshake, InvalidURI) as e:
                logger.warning(f"Signalling connection lost: {e}")
                self._post("status", f"Signalling error: {e}")
            finally:
                self.ws = None
            if self.closed: break
            delay = backoff_delay(attempt)
            attempt += 1
            self._post("status", f"Reconnecting in {delay:.1f}s…")
            await asyncio.sleep(delay)
        self._post("status", "Signalling connection closed")

    async def _on_raw(self, raw):
        try:
            msg = signals.decode(raw)
        except ProtocolError as e:
            logger.warning(f"Ignoring malformed relay message: {e}")
            return

        t = msg.kind
        if t == signals.PEER_ID:
            # new relay session: links made under the old id are stale
            self.participant_id = msg.participant_id
            await self.coordinator.rebind(msg.participant_id)
            self._post("status", f"Connected as {self.participant_id}")
            await self._announce()
        elif t == signals.JOINED:
            self._post("status", f"In room '{msg.room_id}' with {len(msg.members)} other(s)")
            await self.coordinator.handle(msg)
        elif t == signals.CHAT_MESSAGE:
            self._post("chat", {"from": msg.sender, "text": msg.text})
        elif t == signals.ERROR:
            logger.warning(f"Relay rejected a message: {msg.reason}")
        else:
            await self.coordinator.handle(msg)
