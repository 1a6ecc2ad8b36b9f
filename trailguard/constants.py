from __future__ import annotations

from typing import Dict

DEFAULT_BROWSERS = ["chromium", "firefox", "webkit"]
DEFAULT_TEST_SIZE = "1920x1080"

VIEWPORT_PRESETS: Dict[str, Dict[str, int]] = {
    "xs": {"width": 320, "height": 568},
    "sm": {"width": 640, "height": 960},
    "md": {"width": 768, "height": 1024},
    "lg": {"width": 1024, "height": 768},
    "xl": {"width": 1280, "height": 800},
}

DEFAULT_PAGE_TIMEOUT_MS = 30000

ENV_SESSION_ID = "TRAILGUARD_SESSION_ID"
ENV_TRACK_URL = "TRAILGUARD_TRACK_URL"
ENV_TRACK_FILE = "TRAILGUARD_TRACK_FILE"

ENV_APPWRITE_API_KEY = "TRAILGUARD_APPWRITE_API_KEY"
ENV_POSTGRES_URL = "TRAILGUARD_POSTGRES_URL"
ENV_MYSQL_URL = "TRAILGUARD_MYSQL_URL"

DEFAULT_TRACK_DIR = ".trailguard/track"
FAILED_CLEANUP_DIR = ".trailguard/cleanup/failed"

ROOT_HANDLER_FILE = "trailguard_cleanup.py"
HANDLER_REGISTRATION_HOOK = "register_cleanup_handlers"
DEFAULT_DISCOVERY_PATHS = ["tests/cleanup"]
DEFAULT_DISCOVERY_PATTERN = "**/*.py"

BOOKKEEPING_PREFIX = "_trailguard"

SERVER_POLL_INTERVAL_SECONDS = 0.5
SERVER_START_TIMEOUT_SECONDS = 30.0
SERVER_IDLE_TIMEOUT_SECONDS = 20.0
SERVER_STOP_GRACE_SECONDS = 5.0
SERVER_PORT_SETTLE_SECONDS = 0.2
SERVER_STOP_WAIT_INTERVAL_SECONDS = 0.1
SERVER_OUTPUT_TAIL_LINES = 200

BUILD_OUTPUT_DIRS = [".next", ".output", ".svelte-kit", "dist", "build", "out"]
