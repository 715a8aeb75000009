"""One WebRTC connection to the calling admin."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.rtcconfiguration import RTCConfiguration, RTCIceServer

from ..errors import CandidateParseError, NegotiationError
from ..net.protocol import CallType
from .audio import AudioDevice, RemoteAudioSink
from .candidates import from_rtc_candidate, to_rtc_candidate
from .media import MediaHandle


logger = logging.getLogger(__name__)


AsyncPeerCallback = Callable[..., Awaitable[None]]


@dataclass(frozen=True)
class IceServerConfig:
    urls: str
    username: Optional[str] = None
    credential: Optional[str] = None

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "IceServerConfig":
        urls = obj.get("urls")
        if not isinstance(urls, str) or not urls:
            raise ValueError("ICE server entry needs urls")
        return cls(urls=urls, username=obj.get("username"), credential=obj.get("credential"))


def build_rtc_configuration(ice_servers: Iterable[IceServerConfig]) -> RTCConfiguration:
    servers = [RTCIceServer(urls=s.urls, username=s.username, credential=s.credential) for s in ice_servers]
    return RTCConfiguration(iceServers=servers or None)


@dataclass
class PeerCallbacks:
    on_local_candidate: Optional[AsyncPeerCallback] = None  # (candidate: dict)
    on_connection_state: Optional[AsyncPeerCallback] = None  # (state: str)
    on_ice_connection_state: Optional[AsyncPeerCallback] = None  # (state: str)


class PeerSession:
    def __init__(
        self,
        call_type: CallType,
        *,
        rtc_config: Optional[RTCConfiguration] = None,
        callbacks: Optional[PeerCallbacks] = None,
        preferred_output: Optional[AudioDevice] = None,
        pc_factory: Callable[..., Any] = RTCPeerConnection,
    ):
        self.call_type = call_type
        self._callbacks = callbacks or PeerCallbacks()
        self._pc = pc_factory(configuration=rtc_config)
        self._remote_sink: Optional[RemoteAudioSink] = None
        self._preferred_output = preferred_output
        self._closed = False

        @self._pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            candidate = getattr(event, "candidate", event)
            if candidate is None or self._closed:
                return
            if self._callbacks.on_local_candidate:
                await self._callbacks.on_local_candidate(from_rtc_candidate(candidate))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = self._pc.connectionState
            logger.info("pc[%s] connectionState=%s", self.call_type.value, state)
            if self._closed:
                return
            if self._callbacks.on_connection_state:
                await self._callbacks.on_connection_state(state)

        @self._pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange() -> None:
            state = self._pc.iceConnectionState
            logger.debug("pc[%s] iceConnectionState=%s", self.call_type.value, state)
            if self._closed:
                return
            if self._callbacks.on_ice_connection_state:
                await self._callbacks.on_ice_connection_state(state)

        @self._pc.on("track")
        async def on_track(track) -> None:
            await self._handle_remote_track(track)

    @classmethod
    def create(
        cls,
        call_type: CallType,
        ice_servers: Iterable[IceServerConfig],
        callbacks: Optional[PeerCallbacks] = None,
        **kwargs: Any,
    ) -> "PeerSession":
        return cls(call_type, rtc_config=build_rtc_configuration(ice_servers), callbacks=callbacks, **kwargs)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    def attach_local_tracks(self, media: MediaHandle) -> None:
        for track in media.tracks:
            logger.info("pc[%s] adding local %s track", self.call_type.value, track.kind)
            self._pc.addTrack(track)

    async def set_remote_offer(self, sdp: str) -> str:
        """Apply the admin's offer and return our answer SDP.

        Raises NegotiationError on a malformed offer, or one that arrives while
        a previous exchange is still half done.
        """
        if self._closed:
            raise NegotiationError("peer session is closed")
        state = self._pc.signalingState
        if state != "stable":
            raise NegotiationError(f"stale offer: signalingState={state}")
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except (InvalidStateError, InvalidAccessError, ValueError) as e:
            raise NegotiationError(str(e) or type(e).__name__) from e
        assert self._pc.localDescription is not None
        return self._pc.localDescription.sdp

    async def add_remote_candidate(self, candidate: Mapping[str, Any]) -> bool:
        """Apply one remote candidate. Returns False if it was dropped."""
        if self._closed:
            return False
        if self._pc.remoteDescription is None:
            logger.warning("pc[%s] candidate before remote description, dropped", self.call_type.value)
            return False
        try:
            cand = to_rtc_candidate(candidate)
            await self._pc.addIceCandidate(cand)
        except (CandidateParseError, ValueError) as e:
            logger.warning("pc[%s] candidate rejected: %s", self.call_type.value, e)
            return False
        logger.debug("pc[%s] added remote candidate %s", self.call_type.value, candidate.get("candidate"))
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._callbacks = PeerCallbacks()
        try:
            if self._remote_sink:
                await self._remote_sink.stop()
        finally:
            self._remote_sink = None
            await self._pc.close()
            self._pc.remove_all_listeners()
        logger.info("pc[%s] closed", self.call_type.value)

    async def _handle_remote_track(self, track) -> None:
        logger.info("pc[%s] remote track kind=%s", self.call_type.value, track.kind)
        if self._closed or track.kind != "audio":
            return
        if self.call_type is CallType.AUDIO:
            if self._remote_sink is None:
                self._remote_sink = RemoteAudioSink(output=self._preferred_output)
                await self._remote_sink.start(track)
            return
        # Admin audio is only ever rendered by audio calls.
        logger.info("pc[%s] ignoring admin audio track during video call", self.call_type.value)
        track.stop()
