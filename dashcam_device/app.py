"""Device application: signaling transport, router and the two call sessions.

Everything here runs on one asyncio loop. The UI (or the headless runner)
only reads the status observables exposed through `DeviceCallbacks`.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import DeviceConfig
from .errors import MediaAcquisitionError
from .net.protocol import CallType
from .net.signaling_client import SignalingCallbacks, SignalingClient
from .rtc.call_session import WAITING_STATUS, CallSession, CallSessionCallbacks, CallState, PeerFactory
from .rtc.media import MediaAcquisitionManager
from .rtc.router import DeviceRegistration, SignalingRouter
from .rtc.slots import OwnedSlot
from .rtc.webrtc_peer import PeerCallbacks, PeerSession


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class DeviceCallbacks:
    on_status: Optional[AsyncCallback] = None  # (text: str)
    on_call_status: Optional[AsyncCallback] = None  # (text: str)
    on_call_active: Optional[AsyncCallback] = None  # (active: bool, call_type: Optional[CallType])


async def _close_peer(peer: PeerSession) -> None:
    await peer.close()


class DeviceApp:
    def __init__(
        self,
        config: DeviceConfig,
        callbacks: Optional[DeviceCallbacks] = None,
        *,
        signaling: Optional[Any] = None,
        media_factory: Optional[Callable[[], MediaAcquisitionManager]] = None,
        peer_factory: Optional[PeerFactory] = None,
    ):
        self.config = config
        self.callbacks = callbacks or DeviceCallbacks()

        self.status = "Initializing..."
        self.call_status = WAITING_STATUS
        self.call_active = False
        self.active_call_type: Optional[CallType] = None

        self.signaling = signaling or SignalingClient(
            config.server_url,
            reconnect_attempts=config.reconnect_attempts,
            reconnect_delay=config.reconnect_delay_sec,
        )
        self.signaling.callbacks = SignalingCallbacks(
            on_connected=self._on_connected,
            on_disconnected=self._on_disconnected,
            on_connect_error=self._on_connect_error,
            on_incoming_call=self._on_incoming_call,
            on_signal=self._on_signal,
            on_call_ended=self._on_call_ended,
            on_error=self._on_signaling_error,
        )

        media_factory = media_factory or (lambda: MediaAcquisitionManager(config.media))
        peer_factory = peer_factory or self._default_peer_factory

        # Exclusive mode: one capture device and one peer connection for the
        # whole process, so a new call of either type evicts the other.
        shared_media = media_factory() if config.exclusive_media else None
        shared_peer_slot: Optional[OwnedSlot[PeerSession]] = (
            OwnedSlot("peer", release=_close_peer) if config.exclusive_media else None
        )
        self.media_managers: Dict[CallType, MediaAcquisitionManager] = {}
        self.peer_slots: Dict[CallType, OwnedSlot[PeerSession]] = {}

        sessions: Dict[CallType, CallSession] = {}
        session_callbacks = CallSessionCallbacks(
            on_status=self._on_call_status,
            on_state=self._on_call_state,
            on_active=self._on_call_active,
        )
        for call_type in CallType:
            media = shared_media or media_factory()
            self.media_managers[call_type] = media
            peer_slot = shared_peer_slot or OwnedSlot(f"peer-{call_type.value}", release=_close_peer)
            self.peer_slots[call_type] = peer_slot
            sessions[call_type] = CallSession(
                call_type,
                signaling=self.signaling,
                media=media,
                peer_slot=peer_slot,
                peer_factory=peer_factory,
                callbacks=session_callbacks,
                end_grace_sec=config.end_grace_sec,
            )

        self.registration = DeviceRegistration(config.device_id, self.signaling, sessions.keys())
        self.router = SignalingRouter(sessions, self.registration)

    @property
    def sessions(self) -> Dict[CallType, CallSession]:
        return dict(self.router.sessions)

    def _default_peer_factory(self, call_type: CallType, callbacks: PeerCallbacks) -> PeerSession:
        return PeerSession.create(
            call_type,
            self.config.ice_servers,
            callbacks,
            preferred_output=self.config.audio_output,
        )

    async def start(self) -> None:
        logger.info("device %s starting server=%s", self.config.device_id, self.config.server_url)
        if self.config.probe_microphone:
            await self._probe_microphone()
        for session in self.router.sessions.values():
            session.start()
        await self.signaling.connect()

    async def stop(self) -> None:
        logger.info("device %s stopping", self.config.device_id)
        try:
            await self.signaling.disconnect()
        finally:
            for session in self.router.sessions.values():
                await session.stop()
            # A session cancelled mid-setup can leave a peer in its slot.
            for slot in set(self.peer_slots.values()):
                await slot.clear()
            for media in set(self.media_managers.values()):
                await media.release_all()

    async def _probe_microphone(self) -> None:
        media = self.media_managers[CallType.AUDIO]
        try:
            await media.probe()
        except MediaAcquisitionError as e:
            logger.warning("microphone probe failed reason=%s", e.reason.value)
            await self._set_status(f"Microphone error: {e.reason.value} - {e.message}")
            return
        await self._set_status("Microphone access granted")

    # ----------------------
    # Signaling callbacks
    # ----------------------
    async def _on_connected(self, connection_id: int, reconnected: bool) -> None:
        if reconnected:
            await self._set_status("Reconnected to server")
        else:
            await self._set_status(f"Connected as {self.config.device_id}")
        await self.router.handle_connected(connection_id, reconnected)

    async def _on_disconnected(self) -> None:
        # Calls keep running on their own peer connections.
        await self._set_status("Disconnected from server")

    async def _on_connect_error(self, error: str) -> None:
        await self._set_status(f"Socket connection failed: {error}")

    async def _on_incoming_call(self, call_type: CallType, admin_id: str) -> None:
        await self.router.handle_incoming_call(call_type, admin_id)

    async def _on_signal(self, call_type: CallType, from_peer: str, data: Any) -> None:
        await self.router.handle_signal(call_type, from_peer, data)

    async def _on_call_ended(self, call_type: CallType) -> None:
        await self.router.handle_call_ended(call_type)

    async def _on_signaling_error(self, error: str, payload: Any) -> None:
        logger.warning("signaling error=%s payload=%r", error, payload)

    # ----------------------
    # Call session callbacks
    # ----------------------
    async def _on_call_status(self, call_type: CallType, text: str) -> None:
        self.call_status = text
        if self.callbacks.on_call_status:
            await self.callbacks.on_call_status(text)

    async def _on_call_state(self, call_type: CallType, state: CallState) -> None:
        logger.debug("device call %s state=%s", call_type.value, state.value)

    async def _on_call_active(self, call_type: CallType, active: bool) -> None:
        if active:
            self.active_call_type = call_type
        elif self.active_call_type is call_type:
            others = [ct for ct, s in self.router.sessions.items() if s.active and ct is not call_type]
            self.active_call_type = others[0] if others else None
        self.call_active = self.active_call_type is not None
        if self.callbacks.on_call_active:
            await self.callbacks.on_call_active(self.call_active, self.active_call_type)

    async def _set_status(self, text: str) -> None:
        self.status = text
        logger.info("device status=%s", text)
        if self.callbacks.on_status:
            await self.callbacks.on_status(text)


async def run_headless(config: DeviceConfig) -> None:
    """Run until SIGINT/SIGTERM, then tear every call down."""
    app = DeviceApp(config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises.
            pass

    await app.start()
    try:
        await stop.wait()
    finally:
        await app.stop()
