from __future__ import annotations

import http.client
import json
import logging
import os
import socket
import threading
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import uvicorn

from trailguard.constants import DEFAULT_TRACK_DIR, ENV_SESSION_ID, ENV_TRACK_FILE, ENV_TRACK_URL
from trailguard.services.ledger import ResourceLedger, utcnow

LOGGER = logging.getLogger("trailguard.tracking")


class TrackingStore:
    """In-memory resources keyed by session id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, List[Dict[str, Any]]] = {}

    def add(self, session_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        resource = {key: value for key, value in payload.items() if key != "sessionId"}
        resource["createdAt"] = utcnow()
        with self._lock:
            self._sessions.setdefault(session_id, []).append(resource)
        return resource

    def get_resources(self, session_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(item) for item in self._sessions.get(session_id, [])]

    def clear_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)


class TrackingServer:
    """Serve the tracking API with uvicorn on an ephemeral loopback port."""

    def __init__(self, store: Optional[TrackingStore] = None, host: str = "127.0.0.1") -> None:
        self.store = store or TrackingStore()
        self.host = host
        self.port: Optional[int] = None
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._socket: Optional[socket.socket] = None

    @property
    def url(self) -> str:
        if self.port is None:
            raise RuntimeError("Tracking server is not running")
        return f"http://{self.host}:{self.port}"

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, timeout: float = 10.0) -> str:
        from trailguard.main import create_app

        if self.running:
            return self.url
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.host, 0))
        self._socket = sock
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            app=create_app(self.store),
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={"sockets": [sock]},
            name="trailguard-tracking",
            daemon=True,
        )
        self._thread.start()

        deadline = time.monotonic() + timeout
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                self.stop()
                raise RuntimeError("Tracking server failed to start")
            time.sleep(0.05)
        LOGGER.info("Tracking server listening on %s", self.url)
        return self.url

    def get_resources(self, session_id: str) -> List[Dict[str, Any]]:
        return self.store.get_resources(session_id)

    def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5)
        if self._socket is not None:
            self._socket.close()
        self._server = None
        self._thread = None
        self._socket = None
        self.port = None


class FileTracking:
    """Append-only JSONL file the system-under-test writes tracked resources to."""

    def __init__(self, session_id: str, track_dir: Optional[Path] = None) -> None:
        self.session_id = session_id
        self.track_dir = Path(track_dir or DEFAULT_TRACK_DIR)
        self.path = self.track_dir / f"{session_id}.jsonl"

    def start(self) -> Path:
        self.track_dir.mkdir(parents=True, exist_ok=True)
        self.path.touch()
        return self.path

    def read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        resources: List[Dict[str, Any]] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    LOGGER.warning("Skipping malformed line %d in %s", line_number, self.path)
                    continue
                if isinstance(payload, dict):
                    resources.append(payload)
        return resources

    def stop(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            LOGGER.warning("Could not remove tracking file %s: %s", self.path, exc)


class TrackingSession:
    """Channels the system-under-test uses to report resources for one session."""

    def __init__(
        self,
        session_id: str,
        *,
        http: bool = True,
        file: bool = True,
        track_dir: Optional[Path] = None,
    ) -> None:
        self.session_id = session_id
        self.server: Optional[TrackingServer] = TrackingServer() if http else None
        self.file: Optional[FileTracking] = FileTracking(session_id, track_dir) if file else None
        self._started = False

    @property
    def mode(self) -> str:
        http_active = self.server is not None and self.server.running
        file_active = self.file is not None and self._started
        if http_active and file_active:
            return "both"
        if http_active:
            return "http"
        if file_active:
            return "file"
        return "none"

    def start(self) -> "TrackingSession":
        if self.server is not None:
            try:
                self.server.start()
            except (OSError, RuntimeError) as exc:
                LOGGER.warning("HTTP tracking unavailable: %s", exc)
                self.server = None
        if self.file is not None:
            try:
                self.file.start()
            except OSError as exc:
                LOGGER.warning("File tracking unavailable: %s", exc)
                self.file = None
        self._started = True
        LOGGER.info("Tracking session %s started (mode: %s)", self.session_id, self.mode)
        return self

    def environment(self) -> Dict[str, str]:
        env = {ENV_SESSION_ID: self.session_id}
        if self.server is not None and self.server.running:
            env[ENV_TRACK_URL] = self.server.url
        if self.file is not None and self._started:
            env[ENV_TRACK_FILE] = str(self.file.path.resolve())
        return env

    def collect(self) -> List[Dict[str, Any]]:
        resources: List[Dict[str, Any]] = []
        if self.server is not None and self.server.running:
            resources.extend(self.server.get_resources(self.session_id))
        if self.file is not None:
            resources.extend(self.file.read())
        return resources

    def merge_into(self, ledger: ResourceLedger) -> int:
        added = ledger.merge(self.collect())
        if added:
            LOGGER.info("Merged %d resource(s) reported by the application", added)
        return added

    def stop(self) -> None:
        if self.server is not None:
            self.server.store.clear_session(self.session_id)
            self.server.stop()
        if self.file is not None:
            self.file.stop()
        self._started = False


def report_resource(payload: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> None:
    """Send one resource to every active channel; channel failures are swallowed."""
    env = os.environ if env is None else env
    session_id = env.get(ENV_SESSION_ID)
    track_url = env.get(ENV_TRACK_URL)
    track_file = env.get(ENV_TRACK_FILE)
    if not session_id or not (track_url or track_file):
        return

    try:
        body = dict(payload)
    except (TypeError, ValueError) as exc:
        LOGGER.debug("Ignoring malformed tracking payload: %s", exc)
        return
    body["sessionId"] = session_id

    if track_url:
        try:
            request = urllib.request.Request(
                track_url.rstrip("/") + "/track",
                data=json.dumps(body, default=str).encode("utf-8"),
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            with urllib.request.urlopen(request, timeout=5):
                pass
        except (urllib.error.URLError, http.client.HTTPException, OSError, TypeError, ValueError) as exc:
            LOGGER.debug("Tracking request failed: %s", exc)

    if track_file:
        path = Path(track_file)
        if path.exists():
            record = dict(body)
            record["createdAt"] = utcnow()
            try:
                line = json.dumps(record, default=str)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except (OSError, TypeError, ValueError) as exc:
                LOGGER.debug("Tracking file write failed: %s", exc)
