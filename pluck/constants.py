"""
Defines application-wide constants, paths, and tool argument fragments.

This module centralizes configuration for paths, subprocess behavior and the
fixed flags passed to yt-dlp and ffmpeg, adapting to whether the application
is running from source or as a frozen executable.
"""

import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # If the application is run as a bundle, the PyInstaller bootloader
    # sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'pluck').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.pluck'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
DEFAULT_OUTPUT_DIR: Path = Path.home() / 'Downloads' / 'Pluck'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# Searched after the bundled bin/ directory and before PATH.
SYSTEM_BINARY_DIRS = ('/opt/homebrew/bin', '/usr/local/bin', '/usr/bin')

# --- Pipeline Constants ---
PROGRESS_THROTTLE_SECONDS = 0.15
STDERR_TAIL_LIMIT = 500
READ_CHUNK_SIZE = 4096
DEFAULT_MAX_CONCURRENT = 4
MAX_CONCURRENT_LIMIT = 8

# yt-dlp prints this for fields that do not apply (e.g. playlist_title on a single video).
NOT_AVAILABLE = 'NA'
PLAYLIST_PROBE_TIMEOUT = 120
DURATION_PROBE_TIMEOUT = 30
FALLBACK_VIDEO_URL = 'https://www.youtube.com/watch?v={id}'

VIDEO_EXTENSIONS = frozenset({'mp4', 'mkv', 'webm', 'mov'})
AUDIO_EXTENSIONS = frozenset({'mp3', 'm4a', 'wav', 'flac', 'opus', 'ogg'})

# --- yt-dlp Arguments ---
OUTPUT_TEMPLATE = '%(title)s.%(ext)s'
PROGRESS_TEMPLATE = 'download:%(progress._percent_str)s %(progress._speed_str)s %(progress._eta_str)s'
PLAYLIST_PRINT_TEMPLATE = '%(playlist_title)s\t%(id)s\t%(title)s\t%(url)s'
YT_DLP_NETWORK_ARGS = (
    '--retries', '10',
    '--fragment-retries', '10',
    '--socket-timeout', '15',
    '--concurrent-fragments', '4',
    '--buffer-size', '16K',
    '--http-chunk-size', '10M',
)
POSTPROCESSOR_STATUS = {
    'merger': 'Merging...',
    'extractaudio': 'Extracting Audio...',
    'embedthumbnail': 'Embedding...',
    'fixupm4a': 'Fixing M4a...',
    'metadata': 'Writing Metadata...',
    'videoconvertor': 'Converting Video...',
}

# --- ffmpeg Arguments ---
PRORES_PIXEL_FORMAT = 'yuv422p10le'
