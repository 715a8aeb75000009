from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Optional

from PySide6 import QtCore, QtWidgets

from ..app import DeviceApp, DeviceCallbacks
from ..config import DeviceConfig
from ..net.protocol import CallType
from .windows import MainWindow


logger = logging.getLogger(__name__)


class AsyncioThread:
    """Runs an asyncio loop in a background thread and schedules coroutines."""

    def __init__(self):
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if not self._loop:
            raise RuntimeError("AsyncioThread not started")
        return self._loop

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        def _run() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._ready.set()
            self._loop.run_forever()

        self._thread = threading.Thread(target=_run, name="asyncio-thread", daemon=True)
        self._thread.start()
        self._ready.wait(timeout=5)

    def stop(self) -> None:
        if not self._loop:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)

    def submit(self, coro) -> Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)


class UiBridge(QtCore.QObject):
    log = QtCore.Signal(str)
    status = QtCore.Signal(str)
    call_status = QtCore.Signal(str)
    call_type = QtCore.Signal(str)  # "" when no call is active


class DeviceWindowApp(QtCore.QObject):
    def __init__(self, cfg: DeviceConfig):
        super().__init__()
        self.cfg = cfg

        self.window = MainWindow(cfg.device_id)
        self.bridge = UiBridge()
        self.asyncio_thread = AsyncioThread()

        self.device = DeviceApp(
            cfg,
            callbacks=DeviceCallbacks(
                on_status=self._on_status,
                on_call_status=self._on_call_status,
                on_call_active=self._on_call_active,
            ),
        )

        self._wire_bridge()

    def start(self) -> None:
        self.asyncio_thread.start()
        self.window.show()
        self.asyncio_thread.submit(self.device.start())
        logger.info("ui started")

    def shutdown(self) -> None:
        logger.info("ui shutdown")
        fut = self.asyncio_thread.submit(self.device.stop())
        try:
            # Media and peer connections must be released before the loop goes away.
            fut.result(timeout=5)
        except Exception:
            logger.exception("device shutdown did not complete")
        self.asyncio_thread.stop()

    def _wire_bridge(self) -> None:
        self.bridge.log.connect(self.window.log_panel.append_log)
        self.bridge.status.connect(self.window.set_status)
        self.bridge.status.connect(self.window.status_card.set_status)
        self.bridge.call_status.connect(self.window.status_card.set_call_status)
        self.bridge.call_type.connect(self.window.status_card.set_call_type)

    # ----------------------
    # Async callbacks (run in asyncio thread)
    # ----------------------
    async def _on_status(self, text: str) -> None:
        self.bridge.status.emit(text)
        self.bridge.log.emit(text)

    async def _on_call_status(self, text: str) -> None:
        self.bridge.call_status.emit(text)
        self.bridge.log.emit(text)

    async def _on_call_active(self, active: bool, call_type: Optional[CallType]) -> None:
        self.bridge.call_type.emit(call_type.value if active and call_type else "")


def create_qt_app() -> QtWidgets.QApplication:
    app = QtWidgets.QApplication.instance()
    if app is None:
        app = QtWidgets.QApplication([])
    return app  # type: ignore
