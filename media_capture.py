"""
Local media for a participant.

`MediaCapture` opens camera, screen and microphone sources through aiortc's
`MediaPlayer`. `LocalMedia` is the outgoing track set shared by every peer
link of one participant; its `switch()` is the only place a track in that
set gets replaced.

Muting never touches the peer connections: a `LocalTrack` keeps delivering
frames of the same shape, blanked while it is disabled.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from mesh_config import media_config
from mesh_errors import MediaUnavailable

logger = logging.getLogger(__name__)

CAMERA = "camera"
SCREEN = "screen"
MICROPHONE = "microphone"


def blank_frame(frame):
    """Silent/blank copy of `frame` with the same shape and timing."""
    if isinstance(frame, AudioFrame):
        muted = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        muted.sample_rate = frame.sample_rate
    elif isinstance(frame, VideoFrame):
        muted = VideoFrame(width=frame.width, height=frame.height, format=frame.format.name)
    else:
        return frame
    for p in muted.planes:
        p.update(bytes(p.buffer_size))
    muted.pts = frame.pts
    muted.time_base = frame.time_base
    return muted


class LocalTrack(MediaStreamTrack):
    """Outgoing track with an `enabled` flag.

    Attributes:
        source: the capture track frames are pulled from
        enabled: when False, frames are replaced by blank_frame()
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return blank_frame(frame)

    def stop(self):
        super().stop()
        self.source.stop()


@dataclass
class StreamHandle:
    kind: str
    video: Optional[LocalTrack] = None
    audio: Optional[LocalTrack] = None
    players: List[MediaPlayer] = field(default_factory=list)

    def tracks(self) -> List[LocalTrack]:
        return [t for t in (self.audio, self.video) if t is not None]


class MediaCapture:
    def __init__(self, config=media_config, player_factory=MediaPlayer):
        self.config = config
        self._player_factory = player_factory

    async def acquire(self, kind: str, audio: bool = True) -> StreamHandle:
        """Open a camera (plus microphone) or a screen source.

        Raises MediaUnavailable when a device is missing or access is denied.
        """
        cfg = self.config
        if kind == CAMERA:
            player = await self._open(kind, cfg.CAMERA_SOURCE, cfg.CAMERA_FORMAT)
        elif kind == SCREEN:
            player = await self._open(kind, cfg.SCREEN_SOURCE, cfg.SCREEN_FORMAT)
        else:
            raise ValueError(f"unknown media kind {kind!r}")

        if player.video is None:
            raise MediaUnavailable(kind, "source has no video")
        handle = StreamHandle(kind, video=LocalTrack(player.video), players=[player])

        if audio and kind == CAMERA:
            if player.audio is not None:
                handle.audio = LocalTrack(player.audio)
            elif cfg.MICROPHONE_SOURCE:
                try:
                    mic = await self._open(MICROPHONE, cfg.MICROPHONE_SOURCE, cfg.MICROPHONE_FORMAT)
                except MediaUnavailable:
                    self.release(handle)
                    raise
                if mic.audio is None:
                    self.release(handle)
                    raise MediaUnavailable(MICROPHONE, "source has no audio")
                handle.audio = LocalTrack(mic.audio)
                handle.players.append(mic)

        logger.info(f"Acquired {kind}: " + ", ".join(t.kind for t in handle.tracks()))
        return handle

    def release(self, handle: StreamHandle) -> None:
        for track in handle.tracks():
            track.stop()
        handle.audio = handle.video = None

    async def _open(self, kind, source, fmt):
        options = dict(self.config.VIDEO_OPTIONS) if fmt and kind != MICROPHONE else {}
        loop = asyncio.get_running_loop()
        try:
            # opening a device blocks until the driver answers
            return await loop.run_in_executor(
                None, lambda: self._player_factory(source, format=fmt, options=options))
        except (OSError, FFmpegError) as e:
            logger.warning(f"Could not open {kind} source {source!r}: {e}")
            raise MediaUnavailable(kind, str(e)) from e


class LocalMedia:
    """The outgoing track set shared read-only by every peer link.

    Links never read a `LocalTrack` directly. Each one gets its own
    `MediaRelay` subscription, so every link sees every captured frame.
    """

    def __init__(self, capture: MediaCapture):
        self.capture = capture
        self.relay = MediaRelay()
        self.audio: Optional[LocalTrack] = None
        self.video: Optional[LocalTrack] = None
        self.source: Optional[str] = None

    @property
    def started(self) -> bool:
        return self.source is not None

    @property
    def screen_sharing(self) -> bool:
        return self.source == SCREEN

    def local_tracks(self) -> List[LocalTrack]:
        return [t for t in (self.audio, self.video) if t is not None]

    def subscribe(self, track: LocalTrack) -> MediaStreamTrack:
        return self.relay.subscribe(track)

    def tracks(self) -> List[MediaStreamTrack]:
        """Fresh subscriptions to the outgoing tracks, for one new link."""
        return [self.subscribe(t) for t in self.local_tracks()]

    async def start(self, kind: str = CAMERA) -> None:
        handle = await self.capture.acquire(kind)
        self.audio, self.video, self.source = handle.audio, handle.video, kind

    async def switch(self, kind: str) -> Tuple[LocalTrack, Optional[LocalTrack]]:
        """Replace the video source, keeping the microphone.

        Returns ``(new_track, previous_track)``. The previous track keeps
        running until `release()`, so links still reading it are not cut off
        before their sender has been moved to the new one.
        """
        if kind == self.source and self.video is not None:
            return self.video, None
        handle = await self.capture.acquire(kind, audio=False)
        old, self.video, self.source = self.video, handle.video, kind
        if old is not None:
            self.video.enabled = old.enabled
        logger.info(f"Outgoing video switched to {kind}")
        return self.video, old

    def release(self, track: Optional[LocalTrack]) -> None:
        if track is not None:
            track.stop()

    def set_enabled(self, kind: str, enabled: bool) -> bool:
        track = self.audio if kind == "audio" else self.video if kind == "video" else None
        if track is None:
            return False
        track.enabled = enabled
        logger.info(f"{kind} track {'enabled' if enabled else 'disabled'}")
        return True

    def stop(self) -> None:
        for track in self.local_tracks():
            track.stop()
        self.audio = self.video = self.source = None
