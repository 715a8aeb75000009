"""Shared fakes for the call path.

aiortc, ffmpeg and the WebSocket are replaced with small in-memory doubles so
the state machine can be driven event by event.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from dashcam_device.errors import TransportDisconnected
from dashcam_device.net.protocol import CallType
from dashcam_device.rtc.call_session import CallSession, CallSessionCallbacks
from dashcam_device.rtc.media import MediaAcquisitionManager, MediaConfig
from dashcam_device.rtc.slots import OwnedSlot
from dashcam_device.rtc.webrtc_peer import PeerCallbacks


# ── media doubles ────────────────────────────────────────────────────────────

class FakeTrack:
    def __init__(self, kind: str):
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakePlayer:
    def __init__(self, device: str, format: Optional[str] = None, options: Optional[dict] = None):
        self.device = device
        self.format = format
        self.options = options
        if format == "v4l2":
            self.audio = None
            self.video = FakeTrack("video")
        else:
            self.audio = FakeTrack("audio")
            self.video = None


class FakePlayerFactory:
    """Stands in for aiortc's MediaPlayer; `failures` maps ffmpeg format -> exception."""

    def __init__(self, failures: Optional[Dict[str, BaseException]] = None):
        self.failures = failures or {}
        self.players: List[FakePlayer] = []
        self.calls: List[tuple] = []

    def __call__(self, device, format=None, options=None):
        self.calls.append((device, format, options))
        exc = self.failures.get(format)
        if exc is not None:
            raise exc
        player = FakePlayer(device, format, options)
        self.players.append(player)
        return player

    def live_tracks(self) -> List[FakeTrack]:
        out = []
        for p in self.players:
            for t in (p.audio, p.video):
                if t is not None and not t.stopped:
                    out.append(t)
        return out


# ── peer double ──────────────────────────────────────────────────────────────

class FakePeerSession:
    def __init__(self, call_type: CallType, callbacks: PeerCallbacks):
        self.call_type = call_type
        self.callbacks = callbacks
        self.tracks: List[Any] = []
        self.offers: List[str] = []
        self.candidates: List[dict] = []
        self.remote_description: Optional[str] = None
        self.closed = False
        self.offer_error: Optional[Exception] = None

    @property
    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    def attach_local_tracks(self, media) -> None:
        self.tracks.extend(media.tracks)

    async def set_remote_offer(self, sdp: str) -> str:
        if self.offer_error is not None:
            raise self.offer_error
        self.offers.append(sdp)
        self.remote_description = sdp
        return f"answer-{len(self.offers)}"

    async def add_remote_candidate(self, candidate) -> bool:
        if self.remote_description is None:
            return False
        self.candidates.append(dict(candidate))
        return True

    async def close(self) -> None:
        self.closed = True

    async def fire_state(self, state: str) -> None:
        if self.callbacks.on_connection_state:
            await self.callbacks.on_connection_state(state)

    async def fire_ice_state(self, state: str) -> None:
        if self.callbacks.on_ice_connection_state:
            await self.callbacks.on_ice_connection_state(state)

    async def fire_local_candidate(self, candidate: dict) -> None:
        if self.callbacks.on_local_candidate:
            await self.callbacks.on_local_candidate(candidate)


class PeerRecorder:
    """Peer factory that keeps every PeerSession it built."""

    def __init__(self):
        self.peers: List[FakePeerSession] = []
        self.offer_error: Optional[Exception] = None

    def __call__(self, call_type: CallType, callbacks: PeerCallbacks) -> FakePeerSession:
        peer = FakePeerSession(call_type, callbacks)
        peer.offer_error = self.offer_error
        self.peers.append(peer)
        return peer

    @property
    def last(self) -> FakePeerSession:
        return self.peers[-1]

    def open_peers(self) -> List[FakePeerSession]:
        return [p for p in self.peers if not p.closed]


# ── signaling double ─────────────────────────────────────────────────────────

class FakeSignaling:
    def __init__(self):
        self.sent: List[tuple] = []
        self.down = False
        self.callbacks = None

    async def send_join(self, call_type: CallType, device_id: str) -> None:
        self._check()
        self.sent.append(("join", call_type, device_id))

    async def send_signal(self, call_type: CallType, to_peer: str, data: Dict[str, Any]) -> None:
        self._check()
        self.sent.append(("signal", call_type, to_peer, data))

    async def send_call_ended(self, call_type: CallType, to_peer: str) -> None:
        self._check()
        self.sent.append(("call-ended", call_type, to_peer))

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    def _check(self) -> None:
        if self.down:
            raise TransportDisconnected("signaling down")

    def signals(self, call_type: Optional[CallType] = None) -> List[dict]:
        return [m[3] for m in self.sent if m[0] == "signal" and (call_type is None or m[1] is call_type)]

    def signal_kinds(self, call_type: Optional[CallType] = None) -> List[str]:
        return [d.get("type", "candidate") for d in self.signals(call_type)]

    def call_ended(self, call_type: Optional[CallType] = None) -> List[tuple]:
        return [m for m in self.sent if m[0] == "call-ended" and (call_type is None or m[1] is call_type)]


class FakeWebSocket:
    """Async-iterable socket: `feed()` queues inbound frames, `drop()` ends the stream."""

    def __init__(self):
        self.sent: List[str] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def feed(self, obj: Any) -> None:
        self._incoming.put_nowait(obj if isinstance(obj, str) else json.dumps(obj))

    def drop(self) -> None:
        self._incoming.put_nowait(None)

    def sent_json(self) -> List[dict]:
        return [json.loads(raw) for raw in self.sent]

    async def send(self, raw: str) -> None:
        self.sent.append(raw)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


# ── fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def players():
    return FakePlayerFactory()


@pytest.fixture
def media(players):
    return MediaAcquisitionManager(MediaConfig(), player_factory=players, use_sounddevice=False)


@pytest.fixture
def peers():
    return PeerRecorder()


@pytest.fixture
def signaling():
    return FakeSignaling()


@pytest.fixture
def status_log():
    return []


@pytest.fixture
def make_session(signaling, media, peers, status_log):
    """Build a CallSession wired to the fakes. Call `.start()` inside the test."""

    async def _close(peer):
        await peer.close()

    def _make(call_type: CallType, *, peer_slot=None, media_manager=None, end_grace_sec: float = 0.01):
        async def on_status(ct, text):
            status_log.append((ct, text))

        return CallSession(
            call_type,
            signaling=signaling,
            media=media_manager or media,
            peer_slot=peer_slot or OwnedSlot(f"peer-{call_type.value}", release=_close),
            peer_factory=peers,
            callbacks=CallSessionCallbacks(on_status=on_status),
            end_grace_sec=end_grace_sec,
        )

    return _make


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait

