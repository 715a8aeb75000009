from __future__ import annotations

from PySide6 import QtWidgets

from .widgets import LogPanel, StatusCard


class MainWindow(QtWidgets.QMainWindow):
	"""Read-only view of the device; nothing here drives the calls."""

	def __init__(self, device_id: str):
		super().__init__()
		self.setWindowTitle(f"dashcam device - {device_id}")

		central = QtWidgets.QWidget()
		self.setCentralWidget(central)

		self.status_card = StatusCard(device_id)
		self.log_panel = LogPanel()

		main = QtWidgets.QVBoxLayout(central)
		main.addWidget(self.status_card, 0)
		main.addWidget(QtWidgets.QLabel("Log"))
		main.addWidget(self.log_panel, 1)

		self.status = QtWidgets.QStatusBar()
		self.setStatusBar(self.status)
		self.set_status("Initializing...")

	def set_status(self, text: str) -> None:
		self.status.showMessage(text)
