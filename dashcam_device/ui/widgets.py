from __future__ import annotations

from PySide6 import QtCore, QtWidgets


class LogPanel(QtWidgets.QPlainTextEdit):
	def __init__(self, parent=None):
		super().__init__(parent)
		self.setReadOnly(True)
		self.setMaximumBlockCount(2000)

	@QtCore.Slot(str)
	def append_log(self, message: str) -> None:
		self.appendPlainText(message)


class StatusCard(QtWidgets.QFrame):
	def __init__(self, device_id: str, parent=None):
		super().__init__(parent)
		self.setFrameShape(QtWidgets.QFrame.Shape.StyledPanel)
		self.setFrameShadow(QtWidgets.QFrame.Shadow.Raised)

		self._status = QtWidgets.QLabel("Initializing...")
		self._call_status = QtWidgets.QLabel("Waiting for call...")
		self._call_type = QtWidgets.QLabel("Standby")
		self._device = QtWidgets.QLabel(device_id)

		layout = QtWidgets.QVBoxLayout(self)
		layout.setContentsMargins(10, 10, 10, 10)
		layout.setSpacing(6)

		header = QtWidgets.QLabel("Dashcam Device")
		font = header.font()
		font.setBold(True)
		header.setFont(font)
		layout.addWidget(header)

		form = QtWidgets.QFormLayout()
		form.setContentsMargins(0, 0, 0, 0)
		form.setHorizontalSpacing(12)
		form.setVerticalSpacing(4)
		form.addRow("Status", self._status)
		form.addRow("Call Status", self._call_status)
		form.addRow("Call Type", self._call_type)
		form.addRow("Device ID", self._device)
		layout.addLayout(form)

		self._status.setWordWrap(False)
		self._call_status.setWordWrap(False)

	@QtCore.Slot(str)
	def set_status(self, text: str) -> None:
		self._status.setText(text.strip() or "—")

	@QtCore.Slot(str)
	def set_call_status(self, text: str) -> None:
		self._call_status.setText(text.strip() or "—")

	@QtCore.Slot(str)
	def set_call_type(self, call_type: str) -> None:
		if call_type:
			self._call_type.setText(f"{call_type.capitalize()} Call Active")
		else:
			self._call_type.setText("Standby")
