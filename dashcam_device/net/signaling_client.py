"""WebSocket signaling client.

This is intentionally unaware of aiortc. It only speaks the JSON event
protocol in `protocol.py`, and keeps the socket up: a dropped connection is
retried with `reconnect_attempts` tries before giving up.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..errors import TransportDisconnected
from . import protocol
from .protocol import CallType


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class SignalingCallbacks:
	on_connected: Optional[AsyncCallback] = None  # (connection_id: int, reconnected: bool)
	on_disconnected: Optional[AsyncCallback] = None  # ()
	on_connect_error: Optional[AsyncCallback] = None  # (error: str)
	on_incoming_call: Optional[AsyncCallback] = None  # (call_type: CallType, admin_id: str)
	on_signal: Optional[AsyncCallback] = None  # (call_type: CallType, from_peer: str, data: Any)
	on_call_ended: Optional[AsyncCallback] = None  # (call_type: CallType)
	on_error: Optional[AsyncCallback] = None  # (error: str, payload: Any)


class SignalingClient:
	def __init__(
		self,
		url: str,
		callbacks: Optional[SignalingCallbacks] = None,
		*,
		reconnect_attempts: int = 10,
		reconnect_delay: float = 1.0,
		connect: Callable[[str], Awaitable[Any]] = websockets.connect,
	):
		self.url = url
		self.callbacks = callbacks or SignalingCallbacks()
		self.reconnect_attempts = reconnect_attempts
		self.reconnect_delay = reconnect_delay
		self._connect = connect

		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._run_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._closing = False
		self.connection_count = 0

	@property
	def is_connected(self) -> bool:
		return self._ws is not None

	async def connect(self) -> None:
		if self._run_task and not self._run_task.done():
			return
		self._closing = False
		logger.info("signaling connect url=%s", self.url)
		self._run_task = asyncio.create_task(self._run(), name="signaling-run")

	async def disconnect(self) -> None:
		logger.info("signaling disconnect")
		self._closing = True
		ws, self._ws = self._ws, None
		if ws is not None:
			try:
				await ws.close()
			except Exception:
				logger.debug("signaling close failed", exc_info=True)
		if self._run_task:
			self._run_task.cancel()
			try:
				await self._run_task
			except asyncio.CancelledError:
				pass
			self._run_task = None

	async def send_join(self, call_type: CallType, device_id: str) -> None:
		await self._send(protocol.make_join(call_type, device_id))

	async def send_signal(self, call_type: CallType, to_peer: str, data: Dict[str, Any]) -> None:
		await self._send(protocol.make_signal(call_type, to_peer, data))

	async def send_call_ended(self, call_type: CallType, to_peer: str) -> None:
		await self._send(protocol.make_call_ended(call_type, to_peer))

	async def _send(self, payload: Dict[str, Any]) -> None:
		ws = self._ws
		if ws is None:
			raise TransportDisconnected(f"cannot send {payload.get('event')}: signaling not connected")
		event = payload.get("event")
		data = payload.get("data")
		if isinstance(data, dict) and isinstance(data.get("data"), dict):
			body = data["data"]
			if "sdp" in body:
				logger.info("signaling send event=%s to=%s type=%s sdp_len=%s", event, data.get("to"), body.get("type"), len(str(body["sdp"])))
			else:
				logger.debug("signaling send event=%s to=%s keys=%s", event, data.get("to"), sorted(body))
		else:
			logger.debug("signaling send event=%s", event)
		raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
		async with self._send_lock:
			try:
				await ws.send(raw)
			except ConnectionClosed as e:
				raise TransportDisconnected(str(e)) from e

	async def _run(self) -> None:
		failures = 0
		while not self._closing:
			try:
				ws = await self._connect(self.url)
			except asyncio.CancelledError:
				raise
			except Exception as e:
				failures += 1
				logger.warning("signaling connect failed url=%s attempt=%s error=%s", self.url, failures, e)
				await self._emit(self.callbacks.on_connect_error, str(e) or type(e).__name__)
				if failures > self.reconnect_attempts:
					logger.error("signaling giving up after %s attempts", failures)
					return
				await asyncio.sleep(self._backoff(failures))
				continue

			failures = 0
			self._ws = ws
			self.connection_count += 1
			reconnected = self.connection_count > 1
			logger.info("signaling %s url=%s", "reconnected" if reconnected else "connected", self.url)
			await self._emit(self.callbacks.on_connected, self.connection_count, reconnected)

			await self._recv_loop(ws)

			if self._ws is ws:
				self._ws = None
			if self._closing:
				return
			await self._emit(self.callbacks.on_disconnected)
			await asyncio.sleep(self.reconnect_delay)

	def _backoff(self, failures: int) -> float:
		return min(self.reconnect_delay * failures, self.reconnect_delay * 5)

	async def _recv_loop(self, ws: Any) -> None:
		logger.debug("signaling recv loop started")
		try:
			async for raw in ws:
				try:
					msg = json.loads(raw)
				except json.JSONDecodeError:
					await self._emit_error("invalid-json", {"raw": raw})
					continue

				try:
					await self._dispatch(msg)
				except protocol.ProtocolError as e:
					await self._emit_error(e.message, msg)
		except ConnectionClosed as e:
			logger.info("signaling connection closed code=%s", getattr(e, "code", None))
		except asyncio.CancelledError:
			raise
		except Exception as e:
			logger.exception("signaling recv loop crashed")
			await self._emit_error(f"recv-loop-exception: {e}", {})
		finally:
			logger.debug("signaling recv loop stopped")
			try:
				await ws.close()
			except Exception:
				logger.debug("signaling close failed", exc_info=True)

	async def _dispatch(self, msg: Any) -> None:
		event, data = protocol.decode(msg)
		route = protocol.route_event(event)
		if route is None:
			await self._emit_error("unknown-event", msg)
			return
		call_type, kind = route

		if kind == protocol.INCOMING_CALL:
			admin_id = protocol.parse_incoming_call(data)
			logger.info("signaling %s from=%s", event, admin_id)
			await self._emit(self.callbacks.on_incoming_call, call_type, admin_id)
		elif kind == protocol.SIGNAL:
			from_peer, body = protocol.parse_signal_envelope(data)
			logger.debug("signaling %s from=%s", event, from_peer)
			await self._emit(self.callbacks.on_signal, call_type, from_peer, body)
		elif kind == protocol.CALL_ENDED:
			logger.info("signaling %s", event)
			await self._emit(self.callbacks.on_call_ended, call_type)

	async def _emit(self, callback: Optional[AsyncCallback], *args: Any) -> None:
		if callback is not None:
			await callback(*args)

	async def _emit_error(self, error: str, payload: Any) -> None:
		logger.warning("signaling error: %s", error)
		await self._emit(self.callbacks.on_error, error, payload)
