from __future__ import annotations

import os

from models import BufferPreset
from utils import env_flag, safe_float

APP_NAME = "Lava Bytes Radio"
SETTINGS_ORG = "LavaBytes"
SETTINGS_APP = "LavaBytesRadio"

API_BASE_URL = os.environ.get("LAVA_RADIO_API_URL", "http://localhost:5000").rstrip("/")
USER_AGENT = "LavaBytes-Radio/1.0 (desktop)"
REQUEST_TIMEOUT_SEC = 7
HISTORY_LIMIT = 20

CACHE_DIR = os.environ.get("LAVA_RADIO_CACHE_DIR") or os.path.join(
    os.path.expanduser("~"), ".cache", "lava-bytes-radio"
)
AUDIO_CACHE_DIR = os.path.join(CACHE_DIR, "audio")
LOG_FILE = os.path.join(CACHE_DIR, "player.log")
LOG_LEVEL = os.environ.get("LAVA_RADIO_LOG_LEVEL", "INFO").strip().upper() or "INFO"
DEBUG_METRICS = env_flag("LAVA_RADIO_DEBUG_METRICS")
STATION_REFRESH_SEC = max(0.0, safe_float(os.environ.get("LAVA_RADIO_STATION_REFRESH_SEC", "60"), 60.0))

SAMPLE_RATE = 44100
CHANNELS = 2

# Live streams keep the ring short so the listener stays near the live edge.
BUFFER_PRESETS = {
    "live": BufferPreset(
        blocksize_frames=1024,
        latency="high",
        target_sec=1.0,
        high_sec=1.5,
        low_sec=0.5,
        ring_max_seconds=3.0,
        prebuffer_sec=0.5,
    ),
    "on_demand": BufferPreset(
        blocksize_frames=1024,
        latency="high",
        target_sec=2.0,
        high_sec=3.0,
        low_sec=1.0,
        ring_max_seconds=6.0,
        prebuffer_sec=0.3,
    ),
}
DEFAULT_BUFFER_PRESET = "on_demand"

# name, filter type, frequency (Hz), Q
EQ_BANDS = (
    ("bass", "lowshelf", 200.0, 1.0),
    ("mid", "peaking", 1000.0, 0.5),
    ("treble", "highshelf", 3000.0, 1.0),
)
EQ_GAIN_SCALE = 2.0

ANALYSER_FFT_SIZE = 256
ANALYSER_SMOOTHING = 0.8
ANALYSER_MIN_DB = -100.0
ANALYSER_MAX_DB = -30.0

VISUALIZER_BAR_COUNT = 32
VISUALIZER_BAR_GAP = 2
VISUALIZER_FRAME_MS = 16
VISUALIZER_HEIGHT_SCALE = 0.9
VISUALIZER_IDLE_BAR_HEIGHT = 3
VISUALIZER_CAP_HEIGHT = 2
# (hue, saturation %, lightness %) bottom to top
VISUALIZER_GRADIENT = ((22, 95, 52), (28, 90, 55), (35, 85, 65))

VIDEO_WIDTH = 640
VIDEO_HEIGHT = 360
VIDEO_FPS = 30.0

HLS_MAX_LOAD_FAILURES = 3
HLS_DEFAULT_TARGET_DURATION = 6.0
HLS_LIVE_START_INDEX = -3

DEFAULT_TITLE = APP_NAME
DEFAULT_ARTIST = "Unknown Artist"
ARTWORK_SIZES = (96, 128, 192, 256, 384, 512)
PRESET_SLOTS = 5
