"""Audio helpers for aiortc.

- Microphone capture through PortAudio on Windows (ffmpeg has no usable
  capture input there).
- Playback of the admin's audio during audio calls, with a blackhole fallback
  when no output device can be opened.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import sys
from fractions import Fraction
from queue import Empty, Queue
from dataclasses import dataclass
from typing import Any, Optional, cast

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaRecorder

try:
	import numpy as np  # type: ignore
except Exception:  # pragma: no cover
	np = None  # type: ignore

try:
	import sounddevice as sd  # type: ignore
except Exception:  # pragma: no cover
	sd = None  # type: ignore


logger = logging.getLogger(__name__)


# PortAudio error codes we map to capture failure reasons.
PA_INVALID_DEVICE = -9996
PA_DEVICE_UNAVAILABLE = -9985


@dataclass(frozen=True)
class AudioDevice:
	"""A capture or playback device.

	`backend` matches the ffmpeg/aiortc format string (e.g. "pulse", "alsa"),
	or "sounddevice" for PortAudio. `device` is the name or index handed to
	that backend.
	"""

	backend: str
	device: Any


def is_windows() -> bool:
	return sys.platform.startswith("win")


def sounddevice_available() -> bool:
	return sd is not None and np is not None


def portaudio_error_code(exc: BaseException) -> Optional[int]:
	"""Return the PortAudio host error code of a sounddevice error, if any."""
	if sd is None or not isinstance(exc, sd.PortAudioError):
		return None
	if len(exc.args) > 1 and isinstance(exc.args[1], int):
		return exc.args[1]
	return None


class SoundDeviceAudioTrack(MediaStreamTrack):
	kind = "audio"

	def __init__(
		self,
		*,
		device: Any = None,
		samplerate: int = 48000,
		channels: int = 1,
		blocksize: int = 960,
	):
		super().__init__()
		self._samplerate = int(samplerate)
		self._channels = int(channels)
		self._blocksize = int(blocksize)
		self._queue: Queue[bytes] = Queue(maxsize=50)
		self._timestamp = 0
		self._time_base = Fraction(1, self._samplerate)
		self._stream = None

		if sd is None or np is None:
			raise RuntimeError("sounddevice/numpy not available")

		def _callback(indata, frames, time, status) -> None:  # noqa: ANN001
			try:
				self._queue.put_nowait(bytes(indata))
			except Exception:
				# Drop if consumer is too slow.
				pass

		self._stream = sd.RawInputStream(
			samplerate=self._samplerate,
			channels=self._channels,
			dtype="int16",
			blocksize=self._blocksize,
			device=device,
			callback=_callback,
		)
		self._stream.start()
		logger.info(
			"local audio using sounddevice os=%s device=%s rate=%s ch=%s",
			platform.system(),
			device,
			self._samplerate,
			self._channels,
		)

	async def recv(self):  # type: ignore[override]
		if self.readyState != "live":
			raise asyncio.CancelledError
		assert np is not None

		loop = asyncio.get_running_loop()
		while True:
			try:
				data = await loop.run_in_executor(None, self._queue.get, True, 0.5)
			except Empty:
				if self.readyState != "live":
					raise asyncio.CancelledError
				continue

			sample_width = 2
			samples = int(len(data) / (self._channels * sample_width))
			arr = np.frombuffer(data, dtype=np.int16)
			try:
				arr = arr.reshape((1, samples * self._channels))
			except ValueError:
				# Odd-sized block, drop it.
				continue
			break

		layout = "mono" if self._channels == 1 else "stereo"
		frame = av.AudioFrame.from_ndarray(arr, format="s16", layout=layout)
		frame.sample_rate = self._samplerate
		frame.pts = self._timestamp
		frame.time_base = self._time_base
		self._timestamp += samples
		return frame

	def stop(self) -> None:  # type: ignore[override]
		try:
			if self._stream is not None:
				self._stream.stop()
				self._stream.close()
		except Exception:
			logger.debug("sounddevice stream close failed", exc_info=True)
		finally:
			self._stream = None
			super().stop()


@dataclass
class RemoteAudioSink:
	"""Plays the admin's audio track.

	If playback to an output device isn't possible, the track is still
	consumed (blackhole) so the transport keeps flowing.
	"""

	output: Optional[AudioDevice] = None
	_recorder: Optional[Any] = None
	_task: Optional[asyncio.Task[None]] = None
	_started: bool = False

	async def start(self, track: MediaStreamTrack) -> None:
		if self._started:
			return

		if is_windows() and sounddevice_available():
			self._task = asyncio.create_task(self._pump_sounddevice(track), name="remote-audio-pump")
			self._started = True
			return

		recorder, sink = self._open_recorder()
		logger.info("remote audio sink=%s track_kind=%s", sink, getattr(track, "kind", None))
		recorder.addTrack(track)
		await recorder.start()
		self._recorder = recorder
		self._started = True

	def _open_recorder(self) -> tuple[Any, str]:
		if self.output is not None and self.output.backend != "sounddevice":
			try:
				return MediaRecorder(self.output.device, format=self.output.backend), f"{self.output.backend}:{self.output.device}"
			except Exception:
				logger.warning("remote audio output %s:%s unavailable", self.output.backend, self.output.device)
		for backend in ("pulse", "alsa"):
			try:
				return MediaRecorder("default", format=backend), f"{backend}:default"
			except Exception:
				continue
		return MediaBlackhole(), "blackhole"

	async def _pump_sounddevice(self, track: MediaStreamTrack) -> None:
		assert sd is not None and np is not None
		device = None
		if self.output is not None and self.output.backend == "sounddevice" and self.output.device != "default":
			device = self.output.device

		stream = sd.RawOutputStream(samplerate=48000, channels=1, dtype="int16", blocksize=960, device=device)
		stream.start()
		logger.info("remote audio sink=sounddevice:%s", device if device is not None else "default")
		try:
			while True:
				frame = await track.recv()
				if not isinstance(frame, av.AudioFrame):
					continue
				arr = cast(av.AudioFrame, frame).to_ndarray()
				# Shape can be (channels, samples) for planar.
				if arr.ndim == 2 and arr.shape[0] in (1, 2) and arr.shape[0] < arr.shape[1]:
					arr = arr.T
				if arr.ndim == 2 and arr.shape[1] > 1:
					arr = arr.mean(axis=1, keepdims=True)
				if arr.dtype != np.int16:
					arr = np.clip(arr, -32768, 32767).astype(np.int16, copy=False)
				stream.write(arr.tobytes(order="C"))
		except asyncio.CancelledError:
			pass
		except Exception as e:
			logger.info("remote audio pump stopped: %s", e)
		finally:
			try:
				stream.stop()
				stream.close()
			except Exception:
				logger.debug("sounddevice output close failed", exc_info=True)

	async def stop(self) -> None:
		if self._task is not None:
			self._task.cancel()
			try:
				await self._task
			except asyncio.CancelledError:
				pass
			self._task = None
		recorder, self._recorder = self._recorder, None
		self._started = False
		if recorder is not None:
			await recorder.stop()
