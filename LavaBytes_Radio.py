"""
Lava Bytes Radio: desktop internet-radio player.

Playback pipeline:
- Decode: ffmpeg -> float32 PCM (stereo) at a fixed sample rate, RGBA frames for video
- DSP: 3-band biquad EQ (scipy) and a spectrum analyser feeding the visualizer
- Output: sounddevice (PortAudio) callback pulling from a thread-safe ring buffer

Requirements:
  pip install PySide6 numpy scipy sounddevice
  ffmpeg installed and on PATH

Env vars:
- LAVA_RADIO_API_URL = station API base URL (default http://localhost:5000)
- LAVA_RADIO_CACHE_DIR = offline cache and log directory
- LAVA_RADIO_LOG_LEVEL = console log level (default INFO)
"""

from __future__ import annotations

import logging
import os
import sys

from PySide6 import QtWidgets

from config import APP_NAME, CACHE_DIR, LOG_FILE, LOG_LEVEL
from ui.main_window import MainWindow

logger = logging.getLogger(__name__)


def setup_logging(level: str = LOG_LEVEL, log_file: str = LOG_FILE) -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, level, logging.INFO))
    console_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
    root.addHandler(console_handler)

    try:
        os.makedirs(os.path.dirname(log_file) or CACHE_DIR, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as exc:
        logger.warning("File logging disabled: %s", exc)
    else:
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)s | %(name)s | %(module)s:%(lineno)d | "
                "%(funcName)s | %(message)s"
            )
        )
        root.addHandler(file_handler)

    logging.captureWarnings(True)
    return root


def main():
    setup_logging()
    logger.info("Starting %s", APP_NAME)
    app = QtWidgets.QApplication(sys.argv)
    app.setApplicationName(APP_NAME)
    w = MainWindow()
    w.show()
    sys.exit(app.exec())


if __name__ == "__main__":
    main()
