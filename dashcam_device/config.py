"""Device configuration, read from DASHCAM_* environment variables."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from .rtc.audio import AudioDevice
from .rtc.media import MediaConfig
from .rtc.webrtc_peer import IceServerConfig


logger = logging.getLogger(__name__)


DEFAULT_ICE_SERVERS = (
    IceServerConfig(urls="stun:stun.l.google.com:19302"),
    IceServerConfig(urls="stun:stun1.l.google.com:19302"),
    IceServerConfig(urls="stun:stun2.l.google.com:19302"),
    IceServerConfig(urls="turn:openrelay.metered.ca:80", username="openrelay", credential="openrelay"),
)


def _env_truthy(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.strip().casefold() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        logger.warning("ignoring %s=%r, not an integer", name, v)
        return default


def _env_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        logger.warning("ignoring %s=%r, not a number", name, v)
        return default


def parse_ice_servers(raw: str) -> List[IceServerConfig]:
    """Parse a JSON list of `{urls, username?, credential?}` objects."""
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("ICE server config must be a JSON list")
    servers = []
    for item in data:
        if not isinstance(item, dict):
            raise ValueError(f"ICE server entry must be an object, got {item!r}")
        servers.append(IceServerConfig.from_dict(item))
    return servers


@dataclass
class DeviceConfig:
    device_id: str = "dashcam-001"
    server_url: str = "ws://127.0.0.1:8765/ws"
    ice_servers: List[IceServerConfig] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    reconnect_attempts: int = 10
    reconnect_delay_sec: float = 1.0
    end_grace_sec: float = 3.0
    media: MediaConfig = field(default_factory=MediaConfig)
    audio_output: Optional[AudioDevice] = None
    exclusive_media: bool = True
    probe_microphone: bool = True

    @classmethod
    def from_env(cls) -> "DeviceConfig":
        cfg = cls()
        cfg.device_id = os.environ.get("DASHCAM_DEVICE_ID", "").strip() or cfg.device_id
        cfg.server_url = os.environ.get("DASHCAM_SERVER_URL", "").strip() or cfg.server_url

        raw_ice = os.environ.get("DASHCAM_ICE_SERVERS")
        if raw_ice:
            try:
                cfg.ice_servers = parse_ice_servers(raw_ice)
            except ValueError as e:
                logger.warning("ignoring DASHCAM_ICE_SERVERS: %s", e)

        cfg.reconnect_attempts = _env_int("DASHCAM_RECONNECT_ATTEMPTS", cfg.reconnect_attempts)
        cfg.reconnect_delay_sec = _env_float("DASHCAM_RECONNECT_DELAY_SEC", cfg.reconnect_delay_sec)
        cfg.end_grace_sec = _env_float("DASHCAM_END_GRACE_SEC", cfg.end_grace_sec)

        cfg.media.video_device = os.environ.get("DASHCAM_VIDEO_DEVICE", cfg.media.video_device)
        cfg.media.video_format = os.environ.get("DASHCAM_VIDEO_FORMAT", cfg.media.video_format)
        backend = os.environ.get("DASHCAM_AUDIO_BACKEND")
        if backend:
            cfg.media.audio_input = AudioDevice(backend=backend, device=os.environ.get("DASHCAM_AUDIO_DEVICE", "default"))
        out_backend = os.environ.get("DASHCAM_AUDIO_OUTPUT_BACKEND")
        if out_backend:
            cfg.audio_output = AudioDevice(backend=out_backend, device=os.environ.get("DASHCAM_AUDIO_OUTPUT_DEVICE", "default"))

        cfg.exclusive_media = _env_truthy("DASHCAM_EXCLUSIVE_MEDIA", cfg.exclusive_media)
        cfg.probe_microphone = _env_truthy("DASHCAM_PROBE_MIC", cfg.probe_microphone)
        return cfg
