"""Call session state machine (one instance per call type).

Every input, whether a signaling message, a finished media acquisition, or a
peer connection callback, is posted to an internal queue and handled by one
consumer task, in order. Handlers own the session's MediaHandle and
PeerSession; every path out of a call goes through `_end()`, which releases
both.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set

from ..errors import (
    MediaAcquisitionError,
    MediaErrorReason,
    NegotiationError,
    PeerConnectionFailure,
    TransportDisconnected,
)
from ..net import protocol
from ..net.protocol import CallType
from .candidates import normalize
from .media import MediaAcquisitionManager, MediaHandle
from .slots import OwnedSlot
from .webrtc_peer import PeerCallbacks, PeerSession


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]

WAITING_STATUS = "Waiting for call..."


class CallState(str, Enum):
    IDLE = "idle"
    AWAITING_MEDIA = "awaiting_media"
    SESSION_READY = "session_ready"  # waiting for the admin's offer
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    ENDING = "ending"


# States in which a PeerSession exists and can take candidates and offers.
PEER_STATES = frozenset({CallState.SESSION_READY, CallState.NEGOTIATING, CallState.CONNECTED})

_TERMINAL_PEER_STATUS = {
    "failed": "Connection failed",
    "disconnected": "Disconnected",
    "closed": "Connection closed",
}


class SignalSender(Protocol):
    async def send_signal(self, call_type: CallType, to_peer: str, data: Dict[str, Any]) -> None: ...

    async def send_call_ended(self, call_type: CallType, to_peer: str) -> None: ...


PeerFactory = Callable[[CallType, PeerCallbacks], PeerSession]


@dataclass
class CallSessionCallbacks:
    on_status: Optional[AsyncCallback] = None  # (call_type: CallType, text: str)
    on_state: Optional[AsyncCallback] = None  # (call_type: CallType, state: CallState)
    on_active: Optional[AsyncCallback] = None  # (call_type: CallType, active: bool)


# ----------------------
# Events
# ----------------------
@dataclass(frozen=True)
class IncomingCall:
    peer_id: str


@dataclass(frozen=True)
class RemoteSignal:
    sender_id: str
    data: Any


@dataclass(frozen=True)
class RemoteCallEnded:
    pass


@dataclass(frozen=True)
class MediaReady:
    attempt: int
    handle: MediaHandle = field(compare=False)


@dataclass(frozen=True)
class MediaFailed:
    attempt: int
    error: MediaAcquisitionError = field(compare=False)


@dataclass(frozen=True)
class PeerStateChanged:
    attempt: int
    state: str
    ice: bool = False


@dataclass(frozen=True)
class LocalCandidate:
    attempt: int
    candidate: Dict[str, Any]


@dataclass(frozen=True)
class ResourceEvicted:
    attempt: int
    resource: str


@dataclass(frozen=True)
class GraceElapsed:
    attempt: int


class CallSession:
    def __init__(
        self,
        call_type: CallType,
        *,
        signaling: SignalSender,
        media: MediaAcquisitionManager,
        peer_slot: OwnedSlot[PeerSession],
        peer_factory: PeerFactory,
        callbacks: Optional[CallSessionCallbacks] = None,
        end_grace_sec: float = 3.0,
    ):
        self.call_type = call_type
        self._signaling = signaling
        self._media = media
        self._peer_slot = peer_slot
        self._peer_factory = peer_factory
        self._callbacks = callbacks or CallSessionCallbacks()
        self._end_grace_sec = end_grace_sec

        self.state = CallState.IDLE
        self.peer_id: Optional[str] = None
        self.status_text = WAITING_STATUS
        self.active = False

        self._attempt = 0
        self._media_handle: Optional[MediaHandle] = None
        self._peer: Optional[PeerSession] = None

        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._acquire_tasks: Set[asyncio.Task[None]] = set()
        self._grace_task: Optional[asyncio.Task[None]] = None

    @property
    def kind(self) -> str:
        return self.call_type.value

    @property
    def media_handle(self) -> Optional[MediaHandle]:
        return self._media_handle

    @property
    def peer(self) -> Optional[PeerSession]:
        return self._peer

    # ----------------------
    # Lifecycle
    # ----------------------
    def start(self) -> None:
        if self._loop_task and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._run(), name=f"call-session-{self.kind}")

    async def stop(self) -> None:
        """Stop the consumer loop and release everything this session holds.

        The admin is not notified; this is the process shutdown path.
        """
        for task in (self._loop_task, self._grace_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._grace_task = None

        if self._acquire_tasks:
            await asyncio.wait(set(self._acquire_tasks))

        # Acquisitions that finished but were never consumed still own a handle.
        while not self._queue.empty():
            event = self._queue.get_nowait()
            self._queue.task_done()
            if isinstance(event, MediaReady):
                await self._media.release(event.handle)

        if self.state is not CallState.IDLE:
            await self._set_state(CallState.ENDING)
            await self._teardown()
            await self._set_state(CallState.IDLE)
            await self._set_active(False)
        logger.info("call %s session stopped", self.kind)

    async def drain(self) -> None:
        """Wait until every posted event, including pending acquisitions, has been handled."""
        while True:
            await self._queue.join()
            pending = {t for t in self._acquire_tasks if not t.done()}
            if pending:
                await asyncio.wait(pending)
                continue
            if self._queue.empty():
                return

    # ----------------------
    # Inputs
    # ----------------------
    def post(self, event: Any) -> None:
        self._queue.put_nowait(event)

    def handle_incoming_call(self, peer_id: str) -> None:
        self.post(IncomingCall(peer_id))

    def handle_signal(self, sender_id: str, data: Any) -> None:
        self.post(RemoteSignal(sender_id, data))

    def handle_call_ended(self) -> None:
        self.post(RemoteCallEnded())

    # ----------------------
    # Consumer loop
    # ----------------------
    async def _run(self) -> None:
        logger.debug("call %s loop started", self.kind)
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("call %s handler crashed event=%s", self.kind, type(event).__name__)
                if self.state not in (CallState.IDLE, CallState.ENDING):
                    await self._end(f"WebRTC error: {e}", notify=True)
                elif self.state is CallState.ENDING:
                    await self._teardown()
                    await self._set_state(CallState.IDLE)
                    await self._set_active(False)
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: Any) -> None:
        if isinstance(event, IncomingCall):
            await self._on_incoming_call(event)
        elif isinstance(event, RemoteSignal):
            await self._on_remote_signal(event)
        elif isinstance(event, RemoteCallEnded):
            await self._on_remote_call_ended()
        elif isinstance(event, MediaReady):
            await self._on_media_ready(event)
        elif isinstance(event, MediaFailed):
            await self._on_media_failed(event)
        elif isinstance(event, PeerStateChanged):
            await self._on_peer_state(event)
        elif isinstance(event, LocalCandidate):
            await self._on_local_candidate(event)
        elif isinstance(event, ResourceEvicted):
            await self._on_resource_evicted(event)
        elif isinstance(event, GraceElapsed):
            if event.attempt == self._attempt and self.state is CallState.IDLE:
                await self._set_status(WAITING_STATUS)
        else:
            logger.warning("call %s unknown event %r", self.kind, event)

    # ----------------------
    # Handlers
    # ----------------------
    async def _on_incoming_call(self, event: IncomingCall) -> None:
        self._cancel_grace()
        if self.state is not CallState.IDLE:
            # Last invitation wins: the previous call is dropped without telling its admin.
            logger.info("call %s superseded peer=%s by peer=%s", self.kind, self.peer_id, event.peer_id)
            await self._set_state(CallState.ENDING)
            await self._teardown()
            await self._set_state(CallState.IDLE)

        self._attempt += 1
        attempt = self._attempt
        self.peer_id = event.peer_id
        logger.info("call %s incoming peer=%s attempt=%s", self.kind, event.peer_id, attempt)
        await self._set_state(CallState.AWAITING_MEDIA)
        await self._set_active(True)
        await self._set_status(f"Incoming {self.kind} call - Setting up connection...")
        task = asyncio.create_task(self._acquire(attempt), name=f"media-acquire-{self.kind}")
        self._acquire_tasks.add(task)
        task.add_done_callback(self._acquire_tasks.discard)

    async def _acquire(self, attempt: int) -> None:
        on_evicted = functools.partial(self.post, ResourceEvicted(attempt, "media"))
        try:
            handle = await self._media.acquire(self.call_type, on_evicted=on_evicted)
        except MediaAcquisitionError as e:
            self.post(MediaFailed(attempt, e))
            return
        except Exception as e:
            logger.exception("call %s media acquire crashed", self.kind)
            self.post(MediaFailed(attempt, MediaAcquisitionError(MediaErrorReason.OTHER, str(e))))
            return
        self.post(MediaReady(attempt, handle))

    async def _on_media_ready(self, event: MediaReady) -> None:
        if event.attempt != self._attempt or self.state is not CallState.AWAITING_MEDIA:
            logger.info("call %s stale media for attempt=%s, releasing", self.kind, event.attempt)
            await self._media.release(event.handle)
            return

        if not event.handle.live:
            # Another call took the device before this one got to use it.
            await self._end(f"{self.call_type.display_name} call ended - device in use by another call", notify=True)
            return

        self._media_handle = event.handle
        granted = "Camera and microphone" if self.call_type is CallType.VIDEO else "Microphone"
        await self._set_status(f"{granted} access granted")

        attempt = event.attempt
        callbacks = PeerCallbacks(
            on_local_candidate=functools.partial(self._peer_candidate, attempt),
            on_connection_state=functools.partial(self._peer_state, attempt, False),
            on_ice_connection_state=functools.partial(self._peer_state, attempt, True),
        )

        async def _create() -> PeerSession:
            return self._peer_factory(self.call_type, callbacks)

        peer = await self._peer_slot.replace(
            _create,
            on_evicted=functools.partial(self.post, ResourceEvicted(attempt, "peer")),
        )
        self._peer = peer
        peer.attach_local_tracks(event.handle)

        await self._set_state(CallState.SESSION_READY)
        assert self.peer_id is not None
        await self._send_signal(self.peer_id, protocol.make_ready())
        await self._set_status(f"Ready - Waiting for {self.kind} offer...")

    async def _on_media_failed(self, event: MediaFailed) -> None:
        if event.attempt != self._attempt or self.state is not CallState.AWAITING_MEDIA:
            logger.info("call %s stale media failure for attempt=%s", self.kind, event.attempt)
            return
        err = event.error
        logger.warning("call %s media failed reason=%s", self.kind, err.reason.value)
        await self._end(f"Media error: {err.reason.value} - {err.message}", notify=True)

    async def _on_remote_signal(self, event: RemoteSignal) -> None:
        payload = protocol.parse_signal(event.data)
        if payload is None:
            logger.warning("call %s unrecognized signal from=%s", self.kind, event.sender_id)
            return

        if payload.kind == protocol.OFFER:
            await self._on_offer(event.sender_id, payload.sdp or "")
        elif payload.kind == protocol.CANDIDATE:
            await self._on_remote_candidate(payload.candidate)
        else:
            logger.debug("call %s ignoring %s signal from=%s", self.kind, payload.kind, event.sender_id)

    async def _on_offer(self, sender_id: str, sdp: str) -> None:
        if self.state not in PEER_STATES or self._peer is None:
            logger.warning("call %s offer in state=%s dropped", self.kind, self.state.value)
            return
        if sender_id and sender_id != self.peer_id:
            logger.warning("call %s offer from=%s but call is with peer=%s", self.kind, sender_id, self.peer_id)

        logger.info("call %s offer received from=%s sdp_len=%s", self.kind, sender_id, len(sdp))
        try:
            answer = await self._peer.set_remote_offer(sdp)
        except NegotiationError as e:
            logger.warning("call %s negotiation failed: %s", self.kind, e)
            await self._end(f"WebRTC error: {e}", notify=True)
            return

        await self._send_signal(sender_id or self.peer_id or "", protocol.make_answer(answer))
        if self.state is CallState.SESSION_READY:
            await self._set_state(CallState.NEGOTIATING)
            await self._set_status(f"Answer sent - Establishing {self.kind} connection...")

    async def _on_remote_candidate(self, raw: Any) -> None:
        if self.state not in PEER_STATES or self._peer is None:
            logger.info("call %s candidate in state=%s dropped", self.kind, self.state.value)
            return
        candidate = normalize(raw)
        if candidate is None:
            logger.warning("call %s invalid candidate dropped: %r", self.kind, raw)
            return
        await self._peer.add_remote_candidate(candidate)

    async def _on_peer_state(self, event: PeerStateChanged) -> None:
        if event.attempt != self._attempt or self.state not in PEER_STATES:
            return
        state = event.state

        if event.ice:
            if state in ("failed", "disconnected"):
                await self._peer_failed(PeerConnectionFailure(state, "ice"), "ICE connection failed")
            return

        if state == "connected":
            if self.state is CallState.SESSION_READY:
                return
            if self.state is CallState.NEGOTIATING:
                await self._set_state(CallState.CONNECTED)
            active = "Video and audio" if self.call_type is CallType.VIDEO else "Audio"
            await self._set_status(f"{active} active")
        elif state in _TERMINAL_PEER_STATUS:
            await self._peer_failed(PeerConnectionFailure(state), _TERMINAL_PEER_STATUS[state])
        else:
            await self._set_status(f"Connecting... ({state})")

    async def _peer_failed(self, failure: PeerConnectionFailure, status: str) -> None:
        logger.warning("call %s %s peer=%s", self.kind, failure, self.peer_id)
        await self._end(status, notify=True)

    async def _on_local_candidate(self, event: LocalCandidate) -> None:
        if event.attempt != self._attempt or self.state not in PEER_STATES or not self.peer_id:
            return
        await self._send_signal(self.peer_id, protocol.make_candidate(event.candidate))  # type: ignore[arg-type]

    async def _on_remote_call_ended(self) -> None:
        if self.state is CallState.IDLE:
            logger.info("call %s ended by admin while idle", self.kind)
            return
        logger.info("call %s ended by admin peer=%s", self.kind, self.peer_id)
        # No call-ended back to the sender.
        await self._end(f"{self.call_type.display_name} call ended", notify=False)

    async def _on_resource_evicted(self, event: ResourceEvicted) -> None:
        if event.attempt != self._attempt or self.state in (CallState.IDLE, CallState.ENDING):
            return
        logger.info("call %s lost %s to another call", self.kind, event.resource)
        # The slot already released it.
        if event.resource == "media":
            self._media_handle = None
        else:
            self._peer = None
        await self._end(f"{self.call_type.display_name} call ended - device in use by another call", notify=True)

    # ----------------------
    # Peer callbacks (posted, never handled inline)
    # ----------------------
    async def _peer_candidate(self, attempt: int, candidate: Dict[str, Any]) -> None:
        self.post(LocalCandidate(attempt, candidate))

    async def _peer_state(self, attempt: int, ice: bool, state: str) -> None:
        self.post(PeerStateChanged(attempt, state, ice=ice))

    # ----------------------
    # Teardown
    # ----------------------
    async def _end(self, status: str, *, notify: bool) -> None:
        peer_id = self.peer_id
        await self._set_state(CallState.ENDING)
        await self._teardown()
        if notify and peer_id:
            try:
                await self._signaling.send_call_ended(self.call_type, peer_id)
            except TransportDisconnected:
                logger.warning("call %s could not notify peer=%s, signaling down", self.kind, peer_id)
        await self._set_state(CallState.IDLE)
        await self._set_active(False)
        await self._set_status(status)
        self._schedule_grace()

    async def _teardown(self) -> None:
        peer, self._peer = self._peer, None
        handle, self._media_handle = self._media_handle, None
        self.peer_id = None
        try:
            if peer is not None:
                await self._peer_slot.release(peer)
        finally:
            if handle is not None:
                await self._media.release(handle)

    def _schedule_grace(self) -> None:
        self._cancel_grace()
        attempt = self._attempt

        async def _grace() -> None:
            await asyncio.sleep(self._end_grace_sec)
            self.post(GraceElapsed(attempt))

        self._grace_task = asyncio.create_task(_grace(), name=f"call-grace-{self.kind}")

    def _cancel_grace(self) -> None:
        if self._grace_task is not None and not self._grace_task.done():
            self._grace_task.cancel()
        self._grace_task = None

    # ----------------------
    # Outputs
    # ----------------------
    async def _send_signal(self, to_peer: str, data: Dict[str, Any]) -> None:
        try:
            await self._signaling.send_signal(self.call_type, to_peer, data)
        except TransportDisconnected:
            logger.warning("call %s signal %s to=%s not sent, signaling down", self.kind, data.get("type", "candidate"), to_peer)

    async def _set_state(self, state: CallState) -> None:
        if state is self.state:
            return
        logger.info("call %s state from=%s to=%s", self.kind, self.state.value, state.value)
        self.state = state
        if self._callbacks.on_state:
            await self._callbacks.on_state(self.call_type, state)

    async def _set_active(self, active: bool) -> None:
        if active == self.active:
            return
        self.active = active
        if self._callbacks.on_active:
            await self._callbacks.on_active(self.call_type, active)

    async def _set_status(self, text: str) -> None:
        self.status_text = text
        logger.debug("call %s status=%s", self.kind, text)
        if self._callbacks.on_status:
            await self._callbacks.on_status(self.call_type, text)
