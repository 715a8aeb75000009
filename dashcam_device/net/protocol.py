"""Signaling protocol helpers.

Every WebSocket frame is a JSON object `{"event": <name>, "data": <payload>}`.
Audio and video calls use separate event names, so the event name alone tells
which call type a message belongs to.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, TypedDict, Union


class CallType(str, Enum):
	AUDIO = "audio"
	VIDEO = "video"

	@property
	def display_name(self) -> str:
		return self.value.capitalize()


@dataclass(frozen=True)
class ChannelEvents:
	join: str
	incoming_call: str
	signal: str
	call_ended: str


CHANNELS: Dict[CallType, ChannelEvents] = {
	CallType.AUDIO: ChannelEvents(
		join="dashcam-join",
		incoming_call="incoming-call",
		signal="webrtc-signal",
		call_ended="call-ended",
	),
	CallType.VIDEO: ChannelEvents(
		join="video-dashcam-join",
		incoming_call="incoming-video-call",
		signal="webrtc-video-signal",
		call_ended="video-call-ended",
	),
}

# Inbound message kinds
INCOMING_CALL = "incoming-call"
SIGNAL = "signal"
CALL_ENDED = "call-ended"

# Signal payload kinds
OFFER = "offer"
ANSWER = "answer"
READY = "ready"
CANDIDATE = "candidate"


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]
	usernameFragment: str


RawCandidate = Union[IceCandidateDict, Dict[str, Any], str]


@dataclass(frozen=True)
class SignalPayload:
	kind: str
	sdp: Optional[str] = None
	candidate: Optional[RawCandidate] = None


@dataclass(frozen=True)
class ProtocolError(Exception):
	message: str


def _build_inbound_index() -> Dict[str, Tuple[CallType, str]]:
	index: Dict[str, Tuple[CallType, str]] = {}
	for call_type, events in CHANNELS.items():
		index[events.incoming_call] = (call_type, INCOMING_CALL)
		index[events.signal] = (call_type, SIGNAL)
		index[events.call_ended] = (call_type, CALL_ENDED)
	return index


_INBOUND = _build_inbound_index()


def route_event(event: str) -> Optional[Tuple[CallType, str]]:
	"""Map an inbound event name to (call type, message kind), or None."""
	return _INBOUND.get(event)


def encode(event: str, data: Any) -> Dict[str, Any]:
	return {"event": event, "data": data}


def decode(msg: Any) -> Tuple[str, Any]:
	if not isinstance(msg, dict):
		raise ProtocolError("frame is not an object")
	event = msg.get("event")
	if not isinstance(event, str) or not event:
		raise ProtocolError("missing event name")
	return event, msg.get("data")


def make_join(call_type: CallType, device_id: str) -> Dict[str, Any]:
	return encode(CHANNELS[call_type].join, device_id)


def make_signal(call_type: CallType, to_peer: str, data: Dict[str, Any]) -> Dict[str, Any]:
	return encode(CHANNELS[call_type].signal, {"to": to_peer, "data": data})


def make_ready() -> Dict[str, Any]:
	return {"type": READY}


def make_answer(sdp: str) -> Dict[str, Any]:
	return {"type": ANSWER, "sdp": sdp}


def make_candidate(candidate: IceCandidateDict) -> Dict[str, Any]:
	return {"candidate": candidate}


def make_call_ended(call_type: CallType, to_peer: str) -> Dict[str, Any]:
	return encode(CHANNELS[call_type].call_ended, {"to": to_peer})


def parse_incoming_call(data: Any) -> str:
	if isinstance(data, dict):
		admin_id = data.get("adminSocketId")
		if isinstance(admin_id, str) and admin_id:
			return admin_id
	raise ProtocolError("incoming call without adminSocketId")


def parse_signal_envelope(data: Any) -> Tuple[str, Any]:
	"""Return (sender id, signal body) from an inbound signal event."""
	if not isinstance(data, dict):
		raise ProtocolError("signal is not an object")
	return str(data.get("from", "")), data.get("data")


def parse_signal(body: Any) -> Optional[SignalPayload]:
	"""Classify a signal body. Unknown shapes yield None."""
	if not isinstance(body, dict):
		return None
	kind = body.get("type")
	if kind in (OFFER, ANSWER):
		sdp = body.get("sdp")
		if not isinstance(sdp, str):
			return None
		return SignalPayload(kind=kind, sdp=sdp)
	if kind == READY:
		return SignalPayload(kind=READY)
	candidate = body.get("candidate")
	if candidate:
		return SignalPayload(kind=CANDIDATE, candidate=candidate)
	return None
