"""Local capture for calls.

One MediaHandle owns the capture tracks of one call attempt. The manager keeps
the live handle in an owned slot, so a new acquisition always stops the old
capture before opening the device again.
"""

from __future__ import annotations

import asyncio
import errno
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from ..errors import MediaAcquisitionError, MediaErrorReason
from ..net.protocol import CallType
from .audio import (
    PA_DEVICE_UNAVAILABLE,
    PA_INVALID_DEVICE,
    AudioDevice,
    SoundDeviceAudioTrack,
    is_windows,
    portaudio_error_code,
    sounddevice_available,
)
from .slots import EvictedCallback, OwnedSlot


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioConstraints:
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True


@dataclass(frozen=True)
class VideoConstraints:
    width: int = 640
    height: int = 480
    frame_rate: int = 15

    def ffmpeg_options(self) -> dict[str, str]:
        return {"video_size": f"{self.width}x{self.height}", "framerate": str(self.frame_rate)}


@dataclass(frozen=True)
class MediaConstraints:
    audio: AudioConstraints = AudioConstraints()
    video: Optional[VideoConstraints] = None

    @classmethod
    def for_call(cls, call_type: CallType) -> "MediaConstraints":
        if call_type is CallType.VIDEO:
            return cls(audio=AudioConstraints(), video=VideoConstraints())
        return cls(audio=AudioConstraints())


@dataclass
class MediaConfig:
    audio_input: Optional[AudioDevice] = None
    video_device: str = "/dev/video0"
    video_format: str = "v4l2"


@dataclass(eq=False)
class MediaHandle:
    """Capture tracks for one call attempt."""

    call_type: CallType
    constraints: MediaConstraints
    audio: Optional[MediaStreamTrack] = None
    video: Optional[MediaStreamTrack] = None
    backend: Optional[str] = None
    players: List[Any] = field(default_factory=list)
    released: bool = False

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        if self.released:
            return []
        return [t for t in (self.audio, self.video) if t is not None]

    @property
    def live(self) -> bool:
        return not self.released

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        for track in (self.audio, self.video):
            if track is None:
                continue
            try:
                # Stopping the last track of a MediaPlayer also closes its container.
                track.stop()
            except Exception:
                logger.debug("media track stop failed kind=%s", getattr(track, "kind", None), exc_info=True)
            logger.info("media stopped %s track call=%s", getattr(track, "kind", "?"), self.call_type.value)
        self.audio = None
        self.video = None
        self.players.clear()


def classify_capture_error(exc: BaseException) -> MediaErrorReason:
    if isinstance(exc, MediaAcquisitionError):
        return exc.reason
    if isinstance(exc, PermissionError):
        return MediaErrorReason.PERMISSION_DENIED
    if isinstance(exc, FileNotFoundError):
        return MediaErrorReason.DEVICE_NOT_FOUND
    if isinstance(exc, OSError) and exc.errno == errno.EBUSY:
        return MediaErrorReason.DEVICE_BUSY
    pa_code = portaudio_error_code(exc)
    if pa_code == PA_DEVICE_UNAVAILABLE:
        return MediaErrorReason.DEVICE_BUSY
    if pa_code == PA_INVALID_DEVICE:
        return MediaErrorReason.DEVICE_NOT_FOUND
    return MediaErrorReason.OTHER


PlayerFactory = Callable[..., Any]


class MediaAcquisitionManager:
    def __init__(
        self,
        config: Optional[MediaConfig] = None,
        *,
        player_factory: PlayerFactory = MediaPlayer,
        use_sounddevice: Optional[bool] = None,
    ):
        self.config = config or MediaConfig()
        self._player_factory = player_factory
        if use_sounddevice is None:
            use_sounddevice = is_windows() and sounddevice_available()
        self._use_sounddevice = use_sounddevice
        self._slot: OwnedSlot[MediaHandle] = OwnedSlot("media", release=self._release_handle)

    @property
    def current(self) -> Optional[MediaHandle]:
        return self._slot.current

    async def acquire(self, call_type: CallType, on_evicted: Optional[EvictedCallback] = None) -> MediaHandle:
        """Open capture for `call_type`, releasing any handle held before.

        Raises MediaAcquisitionError.
        """
        constraints = MediaConstraints.for_call(call_type)
        logger.info("media acquire call=%s constraints=%s", call_type.value, constraints)

        async def _open() -> MediaHandle:
            # ffmpeg and PortAudio open devices synchronously.
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._open, call_type, constraints)

        return await self._slot.replace(_open, on_evicted=on_evicted)

    async def release(self, handle: MediaHandle) -> None:
        await self._slot.release(handle)

    async def release_all(self) -> None:
        await self._slot.clear()

    async def probe(self) -> None:
        """Open and immediately close the microphone to surface permission problems early."""
        handle = await self.acquire(CallType.AUDIO)
        await self.release(handle)

    async def _release_handle(self, handle: MediaHandle) -> None:
        # Stopping a MediaPlayer track joins its decode thread.
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, handle.release)

    def _open(self, call_type: CallType, constraints: MediaConstraints) -> MediaHandle:
        handle = MediaHandle(call_type=call_type, constraints=constraints)
        try:
            self._open_audio(handle)
            if constraints.video is not None:
                self._open_video(handle, constraints.video)
        except Exception as e:
            # Never leave half a capture session running.
            handle.release()
            reason = classify_capture_error(e)
            logger.warning("media acquire failed call=%s reason=%s error=%s", call_type.value, reason.value, e)
            if isinstance(e, MediaAcquisitionError):
                raise
            raise MediaAcquisitionError(reason, str(e) or type(e).__name__) from e

        logger.info(
            "media acquired call=%s audio=%s video=%s backend=%s",
            call_type.value,
            handle.audio is not None,
            handle.video is not None,
            handle.backend,
        )
        return handle

    def _open_audio(self, handle: MediaHandle) -> None:
        preferred = self.config.audio_input
        if self._use_sounddevice:
            device = None
            if preferred is not None and preferred.backend == "sounddevice" and preferred.device != "default":
                device = preferred.device
            handle.audio = SoundDeviceAudioTrack(device=device)
            handle.backend = "sounddevice"
            return

        first_error: Optional[BaseException] = None
        for backend, device in self._audio_candidates():
            try:
                player = self._player_factory(device, format=backend)
            except Exception as e:
                logger.debug("media audio backend=%s device=%s failed: %s", backend, device, e)
                if first_error is None:
                    first_error = e
                continue
            if player.audio is None:
                continue
            handle.players.append(player)
            handle.audio = player.audio
            handle.backend = backend
            return

        if first_error is not None:
            raise first_error
        raise MediaAcquisitionError(MediaErrorReason.DEVICE_NOT_FOUND, "no microphone found")

    def _audio_candidates(self) -> List[tuple[str, Any]]:
        preferred = self.config.audio_input
        out: List[tuple[str, Any]] = []
        if preferred is not None and preferred.backend != "sounddevice":
            out.append((preferred.backend, preferred.device))
        # PulseAudio is typical on desktop Linux, ALSA on bare devices.
        for backend in ("pulse", "alsa"):
            if (backend, "default") not in out:
                out.append((backend, "default"))
        return out

    def _open_video(self, handle: MediaHandle, video: VideoConstraints) -> None:
        options = video.ffmpeg_options()
        logger.info("media opening camera %s format=%s options=%s", self.config.video_device, self.config.video_format, options)
        player = self._player_factory(self.config.video_device, format=self.config.video_format, options=options)
        handle.players.append(player)
        if player.video is None:
            if player.audio is not None:
                player.audio.stop()
            raise MediaAcquisitionError(MediaErrorReason.DEVICE_NOT_FOUND, f"no video stream on {self.config.video_device}")
        handle.video = player.video

