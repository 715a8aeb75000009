"""Tests for PeerSession, with a stand-in RTCPeerConnection."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiortc import RTCIceCandidate
from aiortc.rtcconfiguration import RTCConfiguration

from conftest import FakeTrack
from dashcam_device.errors import NegotiationError
from dashcam_device.net.protocol import CallType
from dashcam_device.rtc.media import MediaConstraints, MediaHandle
from dashcam_device.rtc.webrtc_peer import (
    IceServerConfig,
    PeerCallbacks,
    PeerSession,
    build_rtc_configuration,
)


HOST_LINE = "candidate:842163049 1 udp 1677729535 192.168.1.20 54400 typ host"


class FakePC:
    """Just enough of RTCPeerConnection for PeerSession."""

    def __init__(self, configuration=None):
        self.configuration = configuration
        self.handlers = {}
        self.tracks = []
        self.candidates = []
        self.signalingState = "stable"
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.remoteDescription = None
        self.localDescription = None
        self.closed = False
        self.listeners_removed = False

    def on(self, event):
        def _register(fn):
            self.handlers[event] = fn
            return fn

        return _register

    async def emit(self, event, *args):
        await self.handlers[event](*args)

    def addTrack(self, track):
        self.tracks.append(track)

    async def setRemoteDescription(self, desc):
        if "bad" in desc.sdp:
            raise ValueError("malformed offer")
        self.remoteDescription = desc
        self.signalingState = "have-remote-offer"

    async def createAnswer(self):
        return MagicMock(sdp="v=0 answer", type="answer")

    async def setLocalDescription(self, desc):
        self.localDescription = desc
        self.signalingState = "stable"

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"

    def remove_all_listeners(self):
        self.listeners_removed = True


@pytest.fixture
def callbacks():
    return PeerCallbacks(
        on_local_candidate=AsyncMock(),
        on_connection_state=AsyncMock(),
        on_ice_connection_state=AsyncMock(),
    )


def _session(call_type, callbacks):
    return PeerSession(call_type, callbacks=callbacks, pc_factory=FakePC)


class TestConfiguration:
    def test_ice_servers(self):
        config = build_rtc_configuration(
            [
                IceServerConfig(urls="stun:stun.l.google.com:19302"),
                IceServerConfig(urls="turn:relay:80", username="u", credential="p"),
            ]
        )
        assert isinstance(config, RTCConfiguration)
        assert [s.urls for s in config.iceServers] == ["stun:stun.l.google.com:19302", "turn:relay:80"]
        assert config.iceServers[1].username == "u"
        assert config.iceServers[1].credential == "p"

    def test_from_dict_requires_urls(self):
        with pytest.raises(ValueError):
            IceServerConfig.from_dict({"username": "u"})


class TestNegotiation:
    """Offer in, answer out."""

    @pytest.mark.asyncio
    async def test_answer(self, callbacks):
        session = _session(CallType.VIDEO, callbacks)
        assert await session.set_remote_offer("v=0 offer") == "v=0 answer"
        assert session.has_remote_description

    @pytest.mark.asyncio
    async def test_offer_mid_exchange_rejected(self, callbacks):
        session = _session(CallType.VIDEO, callbacks)
        session._pc.signalingState = "have-local-offer"
        with pytest.raises(NegotiationError, match="signalingState=have-local-offer"):
            await session.set_remote_offer("v=0 offer")

    @pytest.mark.asyncio
    async def test_malformed_offer(self, callbacks):
        session = _session(CallType.AUDIO, callbacks)
        with pytest.raises(NegotiationError, match="malformed offer"):
            await session.set_remote_offer("bad sdp")

    @pytest.mark.asyncio
    async def test_offer_after_close(self, callbacks):
        session = _session(CallType.AUDIO, callbacks)
        await session.close()
        with pytest.raises(NegotiationError):
            await session.set_remote_offer("v=0 offer")

    def test_local_tracks_attached(self, callbacks):
        session = _session(CallType.VIDEO, callbacks)
        handle = MediaHandle(
            call_type=CallType.VIDEO,
            constraints=MediaConstraints.for_call(CallType.VIDEO),
            audio=FakeTrack("audio"),
            video=FakeTrack("video"),
        )
        session.attach_local_tracks(handle)
        assert [t.kind for t in session._pc.tracks] == ["audio", "video"]


class TestCandidates:
    @pytest.mark.asyncio
    async def test_dropped_before_remote_description(self, callbacks):
        session = _session(CallType.AUDIO, callbacks)
        assert not await session.add_remote_candidate({"candidate": HOST_LINE, "sdpMid": "0", "sdpMLineIndex": 0})
        assert session._pc.candidates == []

    @pytest.mark.asyncio
    async def test_applied_after_offer(self, callbacks):
        session = _session(CallType.AUDIO, callbacks)
        await session.set_remote_offer("v=0 offer")
        assert await session.add_remote_candidate({"candidate": HOST_LINE, "sdpMid": "0", "sdpMLineIndex": 0})
        (cand,) = session._pc.candidates
        assert isinstance(cand, RTCIceCandidate)
        assert cand.ip == "192.168.1.20"

    @pytest.mark.asyncio
    async def test_unparseable_rejected(self, callbacks):
        session = _session(CallType.AUDIO, callbacks)
        await session.set_remote_offer("v=0 offer")
        assert not await session.add_remote_candidate({"candidate": "candidate:1 1 udp"})

    @pytest.mark.asyncio
    async def test_local_candidate_forwarded(self, callbacks):
        session = _session(CallType.AUDIO, callbacks)
        cand = RTCIceCandidate(
            component=1, foundation="1", ip="10.0.0.2", port=9, priority=1, protocol="udp", type="host", sdpMid="0", sdpMLineIndex=0
        )
        await session._pc.emit("icecandidate", cand)
        await session._pc.emit("icecandidate", None)
        callbacks.on_local_candidate.assert_awaited_once()
        sent = callbacks.on_local_candidate.await_args.args[0]
        assert sent["candidate"].startswith("candidate:1 1 udp 1 10.0.0.2 9 typ host")


class TestStateAndClose:
    @pytest.mark.asyncio
    async def test_state_changes_forwarded(self, callbacks):
        session = _session(CallType.AUDIO, callbacks)
        session._pc.connectionState = "connected"
        await session._pc.emit("connectionstatechange")
        session._pc.iceConnectionState = "failed"
        await session._pc.emit("iceconnectionstatechange")
        callbacks.on_connection_state.assert_awaited_once_with("connected")
        callbacks.on_ice_connection_state.assert_awaited_once_with("failed")

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_silences_callbacks(self, callbacks):
        session = _session(CallType.AUDIO, callbacks)
        pc = session._pc
        await session.close()
        await session.close()
        assert session.closed
        assert pc.closed
        assert pc.listeners_removed

        pc.connectionState = "failed"
        await pc.emit("connectionstatechange")
        callbacks.on_connection_state.assert_not_awaited()
        assert not await session.add_remote_candidate({"candidate": HOST_LINE})


class TestRemoteAudio:
    """Admin audio is played on audio calls only."""

    @pytest.mark.asyncio
    async def test_audio_call_plays_admin_audio(self, callbacks):
        sink = MagicMock()
        sink.start = AsyncMock()
        sink.stop = AsyncMock()
        with patch("dashcam_device.rtc.webrtc_peer.RemoteAudioSink", return_value=sink) as sink_cls:
            session = _session(CallType.AUDIO, callbacks)
            track = FakeTrack("audio")
            await session._pc.emit("track", track)
            await session._pc.emit("track", FakeTrack("audio"))
            await session.close()

        sink_cls.assert_called_once()
        sink.start.assert_awaited_once_with(track)
        sink.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_video_call_ignores_admin_audio(self, callbacks):
        with patch("dashcam_device.rtc.webrtc_peer.RemoteAudioSink") as sink_cls:
            session = _session(CallType.VIDEO, callbacks)
            track = FakeTrack("audio")
            await session._pc.emit("track", track)

        sink_cls.assert_not_called()
        assert track.stopped
