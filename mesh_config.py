"""
Environment driven settings for the relay, the client runtime and media.

Every value has a default so the relay and the client start without a
`.env` file. Variables are read once at import time.
"""
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Optional, Tuple

from aiortc import RTCConfiguration, RTCIceServer
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


@dataclass(frozen=True)
class RelayConfig:
    """Where the relay listens and where clients find it."""

    HOST: str = os.getenv("MESH_RELAY_HOST", "0.0.0.0")
    PORT: int = _env_int("MESH_RELAY_PORT", 8080)
    SIGNAL_URL: str = os.getenv("MESH_SIGNAL_URL", "ws://localhost:8080")

    # reconnect-with-backoff for the client side of the relay socket
    RECONNECT_DELAY: float = _env_float("MESH_RECONNECT_DELAY", 1.0)
    RECONNECT_DELAY_MAX: float = _env_float("MESH_RECONNECT_DELAY_MAX", 5.0)
    RECONNECT_JITTER: float = _env_float("MESH_RECONNECT_JITTER", 0.5)


@dataclass(frozen=True)
class IceConfig:
    """STUN/TURN servers handed to every RTCPeerConnection."""

    STUN_SERVERS: Tuple[str, ...] = tuple(
        url.strip()
        for url in os.getenv(
            "MESH_STUN_SERVERS",
            "stun:stun.l.google.com:19302,"
            "stun:stun1.l.google.com:19302,"
            "stun:stun2.l.google.com:19302",
        ).split(",")
        if url.strip()
    )
    TURN_SERVER_URL: Optional[str] = os.getenv("MESH_TURN_URL")
    TURN_USERNAME: Optional[str] = os.getenv("MESH_TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("MESH_TURN_CREDENTIAL")

    @property
    def has_turn_server(self) -> bool:
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    def rtc_configuration(self) -> RTCConfiguration:
        servers = [RTCIceServer(url) for url in self.STUN_SERVERS]
        if self.has_turn_server:
            servers.append(RTCIceServer(
                self.TURN_SERVER_URL,
                username=self.TURN_USERNAME,
                credential=self.TURN_CREDENTIAL,
            ))
        return RTCConfiguration(servers)


@dataclass(frozen=True)
class NegotiationConfig:
    TIMEOUT: float = _env_float("MESH_NEGOTIATION_TIMEOUT", 15.0)
    RETRY_BUDGET: int = _env_int("MESH_RETRY_BUDGET", 3)


def _default_sources():
    # (camera, camera format, screen, screen format, microphone, microphone format)
    if sys.platform == "darwin":
        return ("default:none", "avfoundation", "Capture screen 0", "avfoundation",
                "none:default", "avfoundation")
    if sys.platform.startswith("win"):
        return ("video=Integrated Camera", "dshow", "desktop", "gdigrab",
                "audio=Microphone", "dshow")
    return ("/dev/video0", "v4l2", ":0.0", "x11grab", "default", "pulse")


_SOURCES = _default_sources()


@dataclass(frozen=True)
class MediaConfig:
    """Capture sources. A plain file path works for any of them."""

    CAMERA_SOURCE: str = os.getenv("MESH_CAMERA_SOURCE", _SOURCES[0])
    CAMERA_FORMAT: Optional[str] = os.getenv("MESH_CAMERA_FORMAT", _SOURCES[1]) or None
    SCREEN_SOURCE: str = os.getenv("MESH_SCREEN_SOURCE", _SOURCES[2])
    SCREEN_FORMAT: Optional[str] = os.getenv("MESH_SCREEN_FORMAT", _SOURCES[3]) or None
    MICROPHONE_SOURCE: Optional[str] = os.getenv("MESH_MICROPHONE_SOURCE", _SOURCES[4]) or None
    MICROPHONE_FORMAT: Optional[str] = os.getenv("MESH_MICROPHONE_FORMAT", _SOURCES[5]) or None
    VIDEO_OPTIONS: dict = field(default_factory=lambda: {
        "framerate": os.getenv("MESH_VIDEO_FRAMERATE", "30"),
        "video_size": os.getenv("MESH_VIDEO_SIZE", "640x480"),
    })


LOG_LEVEL = os.getenv("MESH_LOG_LEVEL", "INFO").upper()

relay_config = RelayConfig()
ice_config = IceConfig()
negotiation_config = NegotiationConfig()
media_config = MediaConfig()


def configure_logging(level: Optional[str] = None) -> None:
    """Entry points call this once; library modules only create loggers."""
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
