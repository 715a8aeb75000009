from __future__ import annotations

import argparse
import asyncio
import sys

from .app import run_headless
from .config import DeviceConfig
from .logging_config import setup_logging


def main(argv: list[str] | None = None) -> int:
	cfg = DeviceConfig.from_env()

	parser = argparse.ArgumentParser(description="dashcam device call endpoint")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use DASHCAM_LOG_LEVEL.",
	)
	parser.add_argument(
		"--server-url",
		default=cfg.server_url,
		help="WebSocket signaling URL (DASHCAM_SERVER_URL)",
	)
	parser.add_argument(
		"--device-id",
		default=cfg.device_id,
		help="Device id announced to the server (DASHCAM_DEVICE_ID)",
	)
	parser.add_argument(
		"--headless",
		action="store_true",
		help="Run without the status window",
	)
	args = parser.parse_args(argv)

	setup_logging(args.log_level)
	cfg.server_url = args.server_url
	cfg.device_id = args.device_id

	if args.headless:
		try:
			asyncio.run(run_headless(cfg))
		except KeyboardInterrupt:
			pass
		return 0

	try:
		from .ui.app import DeviceWindowApp, create_qt_app
	except Exception as e:
		print(f"Failed to import UI dependencies: {e}")
		print("Install the UI extra, or run with --headless")
		return 2

	qt_app = create_qt_app()
	controller = DeviceWindowApp(cfg)
	controller.start()
	qt_app.aboutToQuit.connect(controller.shutdown)

	return qt_app.exec()


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
