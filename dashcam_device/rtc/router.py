"""Signaling router and device registration."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional, Protocol

from ..errors import TransportDisconnected
from ..net.protocol import CallType
from .call_session import CallSession


logger = logging.getLogger(__name__)


class JoinSender(Protocol):
    async def send_join(self, call_type: CallType, device_id: str) -> None: ...


class DeviceRegistration:
    """Announces the device on every call-type channel once per connection."""

    def __init__(self, device_id: str, signaling: JoinSender, channels: Iterable[CallType]):
        self.device_id = device_id
        self._signaling = signaling
        self._channels = tuple(channels)
        self._announced_for: Optional[int] = None

    async def announce(self, connection_id: int) -> bool:
        """Send one join per channel for this connection. Returns False if already done."""
        if self._announced_for == connection_id:
            logger.debug("device %s already announced on connection=%s", self.device_id, connection_id)
            return False
        for call_type in self._channels:
            await self._signaling.send_join(call_type, self.device_id)
        self._announced_for = connection_id
        logger.info(
            "device %s announced channels=%s connection=%s",
            self.device_id,
            ",".join(c.value for c in self._channels),
            connection_id,
        )
        return True


class SignalingRouter:
    """Hands each inbound message to the call session of its own channel only."""

    def __init__(self, sessions: Mapping[CallType, CallSession], registration: DeviceRegistration):
        self._sessions = dict(sessions)
        self.registration = registration

    def session(self, call_type: CallType) -> CallSession:
        return self._sessions[call_type]

    @property
    def sessions(self) -> Mapping[CallType, CallSession]:
        return self._sessions

    async def handle_connected(self, connection_id: int, reconnected: bool) -> None:
        # In-progress calls are left alone; their media no longer depends on signaling.
        logger.info("signaling %s connection=%s", "reconnected" if reconnected else "connected", connection_id)
        try:
            await self.registration.announce(connection_id)
        except TransportDisconnected:
            logger.warning("signaling dropped while announcing device %s", self.registration.device_id)

    async def handle_incoming_call(self, call_type: CallType, admin_id: str) -> None:
        logger.info("router incoming %s call from=%s", call_type.value, admin_id)
        self._target(call_type).handle_incoming_call(admin_id)

    async def handle_signal(self, call_type: CallType, from_peer: str, data: Any) -> None:
        self._target(call_type).handle_signal(from_peer, data)

    async def handle_call_ended(self, call_type: CallType) -> None:
        logger.info("router %s call ended by admin", call_type.value)
        self._target(call_type).handle_call_ended()

    def _target(self, call_type: CallType) -> CallSession:
        session = self._sessions.get(call_type)
        if session is None:
            raise KeyError(f"no call session registered for {call_type.value}")
        return session
