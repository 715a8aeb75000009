from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging for the device.

    The status window shows call status only; console logs carry the
    state-machine and signaling detail.
    """

    effective_level = (level or os.environ.get("DASHCAM_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

    # aiortc/aioice are chatty at DEBUG; keep them one step quieter than us.
    if logging.getLevelName(effective_level) == logging.DEBUG:
        for name in ("aioice", "aiortc"):
            logging.getLogger(name).setLevel(logging.INFO)
