"""Tests for the signaling event protocol."""

import pytest

from dashcam_device.net import protocol
from dashcam_device.net.protocol import CallType, ProtocolError


class TestRouting:
    @pytest.mark.parametrize(
        "event,expected",
        [
            ("incoming-call", (CallType.AUDIO, protocol.INCOMING_CALL)),
            ("webrtc-signal", (CallType.AUDIO, protocol.SIGNAL)),
            ("call-ended", (CallType.AUDIO, protocol.CALL_ENDED)),
            ("incoming-video-call", (CallType.VIDEO, protocol.INCOMING_CALL)),
            ("webrtc-video-signal", (CallType.VIDEO, protocol.SIGNAL)),
            ("video-call-ended", (CallType.VIDEO, protocol.CALL_ENDED)),
        ],
    )
    def test_inbound_events(self, event, expected):
        assert protocol.route_event(event) == expected

    def test_join_events_are_not_inbound(self):
        assert protocol.route_event("dashcam-join") is None
        assert protocol.route_event("video-dashcam-join") is None


class TestOutbound:
    def test_join(self):
        assert protocol.make_join(CallType.VIDEO, "cam-7") == {"event": "video-dashcam-join", "data": "cam-7"}

    def test_signal(self):
        msg = protocol.make_signal(CallType.AUDIO, "admin-1", protocol.make_ready())
        assert msg == {"event": "webrtc-signal", "data": {"to": "admin-1", "data": {"type": "ready"}}}

    def test_answer(self):
        assert protocol.make_answer("v=0") == {"type": "answer", "sdp": "v=0"}

    def test_call_ended(self):
        assert protocol.make_call_ended(CallType.VIDEO, "admin-1") == {
            "event": "video-call-ended",
            "data": {"to": "admin-1"},
        }


class TestInbound:
    def test_decode(self):
        assert protocol.decode({"event": "call-ended", "data": None}) == ("call-ended", None)

    @pytest.mark.parametrize("msg", [[], "x", {"data": {}}, {"event": ""}])
    def test_decode_rejects(self, msg):
        with pytest.raises(ProtocolError):
            protocol.decode(msg)

    def test_incoming_call(self):
        assert protocol.parse_incoming_call({"adminSocketId": "admin-1"}) == "admin-1"

    @pytest.mark.parametrize("data", [None, {}, {"adminSocketId": ""}, {"adminSocketId": 5}])
    def test_incoming_call_without_admin(self, data):
        with pytest.raises(ProtocolError):
            protocol.parse_incoming_call(data)

    def test_signal_envelope(self):
        assert protocol.parse_signal_envelope({"from": "admin-1", "data": {"type": "ready"}}) == (
            "admin-1",
            {"type": "ready"},
        )

    def test_offer(self):
        p = protocol.parse_signal({"type": "offer", "sdp": "v=0"})
        assert p.kind == protocol.OFFER
        assert p.sdp == "v=0"

    def test_candidate(self):
        p = protocol.parse_signal({"candidate": "candidate:1 1 udp 1 1.1.1.1 1 typ host"})
        assert p.kind == protocol.CANDIDATE

    @pytest.mark.parametrize("body", [None, "offer", {}, {"type": "offer"}, {"candidate": None}, {"type": "bye"}])
    def test_unknown_shapes(self, body):
        assert protocol.parse_signal(body) is None
