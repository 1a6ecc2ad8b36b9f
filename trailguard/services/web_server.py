from __future__ import annotations

import contextlib
import http.client
import json
import logging
import os
import shlex
import signal
import subprocess
import sys
import threading
import time
import urllib.error
import urllib.request
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

from trailguard.constants import (
    BUILD_OUTPUT_DIRS,
    SERVER_OUTPUT_TAIL_LINES,
    SERVER_POLL_INTERVAL_SECONDS,
    SERVER_PORT_SETTLE_SECONDS,
    SERVER_STOP_GRACE_SECONDS,
    SERVER_STOP_WAIT_INTERVAL_SECONDS,
)
from trailguard.errors import ServerCommandError, ServerExitedEarly, ServerStalled, ServerStartTimeout
from trailguard.schemas import WebServerConfig

LOGGER = logging.getLogger("trailguard.web_server")


class ServerState(str, Enum):
    not_started = "not_started"
    starting = "starting"
    running = "running"
    stopping = "stopping"


@dataclass
class WebServerHandle:
    url: str
    pid: Optional[int] = None
    external: bool = False
    owned: bool = True


def is_server_running(url: str, timeout: float = 2.0) -> bool:
    request = urllib.request.Request(url, method="HEAD")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.status < 500
    except urllib.error.HTTPError as exc:
        return exc.code < 500
    except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError):
        return False


# Command detection ---------------------------------------------------------------------
_FRAMEWORKS = [
    ("next", "next", "npx -y next start"),
    ("nuxt", "nuxt", "node .output/server/index.mjs"),
    ("astro", "astro", "npx -y astro preview"),
    ("sveltekit", "@sveltejs/kit", "npx -y vite preview"),
    ("remix", "@remix-run/serve", "npx -y remix-serve build/server/index.js"),
    ("remix", "@remix-run/dev", "npx -y remix-serve build/server/index.js"),
    ("vite", "vite", "npx -y vite preview"),
    ("cra", "react-scripts", "npx -y serve -s build"),
]

_LOCK_FILES = [
    ("deno.lock", "deno"),
    ("bun.lockb", "bun"),
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
]


def read_package_json(cwd: Path) -> Optional[Dict[str, Any]]:
    package_path = cwd / "package.json"
    if not package_path.exists():
        return None
    try:
        with package_path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        LOGGER.warning("Could not read %s: %s", package_path, exc)
        return None
    return data if isinstance(data, dict) else None


def detect_framework(package: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    if not package:
        return None
    dependencies: Dict[str, Any] = {}
    dependencies.update(package.get("dependencies") or {})
    dependencies.update(package.get("devDependencies") or {})
    for name, marker, serve_command in _FRAMEWORKS:
        if marker in dependencies:
            return {"name": name, "serve_command": serve_command}
    return None


def detect_package_manager(cwd: Path) -> str:
    for lock_file, manager in _LOCK_FILES:
        if (cwd / lock_file).exists():
            return manager
    return "npm"


def script_command(manager: str, script: str) -> str:
    if manager == "deno":
        return f"deno task {script}"
    if manager == "bun":
        return f"bun run {script}"
    if manager in {"pnpm", "yarn"}:
        return f"{manager} {script}"
    return f"npm run {script}"


def detect_build_directory(cwd: Path) -> Optional[str]:
    for name in BUILD_OUTPUT_DIRS:
        if (cwd / name).is_dir():
            return name
    return None


def static_server_command(directory: str, port: int) -> str:
    return f"{shlex.quote(sys.executable)} -m http.server {port} --directory {shlex.quote(directory)}"


def _url_port(url: str) -> int:
    parsed = urlparse(url)
    if parsed.port:
        return parsed.port
    return 443 if parsed.scheme == "https" else 3000


def detect_server_command(cwd: Path, port: int) -> str:
    package = read_package_json(cwd)
    framework = detect_framework(package)
    build_dir = detect_build_directory(cwd)

    if build_dir:
        if framework:
            LOGGER.info("Detected %s project with build at %s", framework["name"], build_dir)
            return framework["serve_command"]
        LOGGER.info("Detected build directory at %s, using static server", build_dir)
        return static_server_command(build_dir, port)

    scripts = (package or {}).get("scripts") or {}
    manager = detect_package_manager(cwd)
    if scripts.get("dev"):
        if framework:
            LOGGER.info("Detected %s project, running dev server", framework["name"])
        return script_command(manager, "dev")
    if scripts.get("start"):
        return script_command(manager, "start")

    raise ServerCommandError("Could not auto-detect server command. Please specify command explicitly.")


def resolve_server_command(config: WebServerConfig, cwd: Path) -> str:
    if config.command:
        return config.command
    port = config.port or _url_port(config.url)
    if config.static:
        return static_server_command(config.static, port)
    if config.auto:
        return detect_server_command(cwd, port)
    raise ServerCommandError("Web server config requires command, auto: true, or a static directory")


# Lifecycle -----------------------------------------------------------------------------
class WebServerManager:
    """Start, reuse and stop the application server for test runs.

    A stop in progress blocks any new start until the old process has really exited,
    so a dying server is never mistaken for a healthy one.
    """

    def __init__(
        self,
        *,
        poll_interval: float = SERVER_POLL_INTERVAL_SECONDS,
        stop_grace: float = SERVER_STOP_GRACE_SECONDS,
        settle_delay: float = SERVER_PORT_SETTLE_SECONDS,
    ) -> None:
        self._poll_interval = poll_interval
        self._stop_grace = stop_grace
        self._settle_delay = settle_delay
        self._lock = threading.Lock()
        self._start_lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._url: Optional[str] = None
        self._cwd: Optional[Path] = None
        self._external = False
        self._stopping = False
        self._state = ServerState.not_started
        self._output: "deque[str]" = deque(maxlen=SERVER_OUTPUT_TAIL_LINES)
        self._last_output = 0.0
        self._reader: Optional[threading.Thread] = None

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def external(self) -> bool:
        return self._external

    def is_running(self) -> bool:
        process = self._process
        return process is not None and process.poll() is None

    def recent_output(self, limit: int = 20) -> str:
        lines = list(self._output)[-limit:]
        return "\n".join(lines)

    def start(
        self,
        config: WebServerConfig,
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> WebServerHandle:
        """Return a handle for a healthy server at ``config.url``.

        Only a handle for a process spawned by this call is ``owned``; a reused
        managed process or an adopted external server belongs to whoever started it.
        """
        url = config.url
        reuse = True if config.reuse_existing_server is None else config.reuse_existing_server
        workdir = Path(cwd or config.workdir or Path.cwd()).resolve()

        with self._start_lock:
            while True:
                self._wait_for_stop()
                with self._lock:
                    process = self._process
                    managed_url = self._url
                alive = process is not None and process.poll() is None
                if process is not None and not alive:
                    with self._lock:
                        if self._process is process and not self._stopping:
                            self._reset()

                if alive and reuse and managed_url == url and is_server_running(url):
                    with self._lock:
                        if self._stopping or self._process is not process:
                            LOGGER.info("Server began stopping during health check; waiting before restart")
                            continue
                        LOGGER.info("Server already running at %s", url)
                        return WebServerHandle(url=url, pid=process.pid, owned=False)
                if alive:
                    self.stop()
                    continue

                if reuse and is_server_running(url):
                    with self._lock:
                        if self._stopping or self._process is not None:
                            continue
                        LOGGER.info("Server already running at %s; reusing external server", url)
                        self._url = url
                        self._cwd = workdir
                        self._external = True
                        self._state = ServerState.running
                    return WebServerHandle(url=url, external=True, owned=False)
                break

            command = resolve_server_command(config, workdir)
            process = self._spawn(command, workdir, env)
            self._wait_until_ready(process, config)
            return WebServerHandle(url=url, pid=process.pid)

    def _spawn(self, command: str, workdir: Path, env: Optional[Mapping[str, str]]) -> subprocess.Popen:
        merged_env = dict(os.environ)
        merged_env.update(env or {})
        LOGGER.info("Starting server: %s", command)
        self._output.clear()
        process = subprocess.Popen(
            command,
            shell=True,
            cwd=str(workdir),
            env=merged_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
            start_new_session=os.name == "posix",
        )
        with self._lock:
            self._process = process
            self._url = None
            self._cwd = workdir
            self._external = False
            self._state = ServerState.starting
            self._last_output = time.monotonic()
        self._reader = threading.Thread(
            target=self._stream_output,
            args=(process,),
            name=f"trailguard-server-{process.pid}",
            daemon=True,
        )
        self._reader.start()
        return process

    def _stream_output(self, process: subprocess.Popen) -> None:
        if process.stdout is None:
            return
        try:
            for line in iter(process.stdout.readline, ""):
                self._last_output = time.monotonic()
                text = line.rstrip()
                self._output.append(text)
                LOGGER.debug("[server] %s", text)
        except (OSError, ValueError) as exc:
            LOGGER.debug("Server output stream interrupted: %s", exc)

    def _wait_until_ready(self, process: subprocess.Popen, config: WebServerConfig) -> None:
        url = config.url
        started = time.monotonic()
        while True:
            if is_server_running(url):
                with self._lock:
                    self._url = url
                    self._state = ServerState.running
                LOGGER.info("Server ready at %s", url)
                return

            exit_code = process.poll()
            if exit_code is not None and exit_code != 0:
                self._join_reader()
                output = self.recent_output()
                with self._lock:
                    self._reset()
                raise ServerExitedEarly(exit_code, output)

            now = time.monotonic()
            if now - started > config.timeout:
                output = self.recent_output()
                self.stop()
                raise ServerStartTimeout(f"Server at {url} not ready after {config.timeout}s", output)
            if now - self._last_output > config.idle_timeout:
                output = self.recent_output()
                self.stop()
                raise ServerStalled(f"Server stalled - no output for {config.idle_timeout}s. Last output:", output)
            time.sleep(self._poll_interval)

    def _wait_for_stop(self) -> None:
        while self._stopping:
            time.sleep(SERVER_STOP_WAIT_INTERVAL_SECONDS)

    def stop(self) -> None:
        """Terminate the managed process and wait until it has exited."""
        with self._lock:
            already_stopping = self._stopping
            process = self._process
            if not already_stopping:
                if process is None or process.poll() is not None:
                    self._reset()
                    return
                self._stopping = True
                self._state = ServerState.stopping
        if already_stopping:
            self._wait_for_stop()
            return

        try:
            LOGGER.info("Stopping server...")
            _send_signal(process, graceful=True)
            try:
                process.wait(timeout=self._stop_grace)
            except subprocess.TimeoutExpired:
                LOGGER.warning("Server did not stop gracefully, sending SIGKILL...")
                _send_signal(process, graceful=False)
                process.wait()
            time.sleep(self._settle_delay)
        finally:
            self._join_reader()
            with self._lock:
                self._reset()
                self._stopping = False

    def kill(self) -> None:
        """Signal the managed process without waiting; used on interrupt."""
        with self._lock:
            process = self._process
            if process is not None and process.poll() is None:
                LOGGER.info("Stopping server...")
                _send_signal(process, graceful=True)
            self._reset()

    def _join_reader(self) -> None:
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=1)
        self._reader = None

    def _reset(self) -> None:
        self._process = None
        self._url = None
        self._cwd = None
        self._external = False
        self._state = ServerState.not_started


def _send_signal(process: subprocess.Popen, *, graceful: bool) -> None:
    if os.name == "posix":
        sig = signal.SIGTERM if graceful else signal.SIGKILL
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, sig)
        return
    if graceful:
        process.terminate()
    else:
        process.kill()


_manager: Optional[WebServerManager] = None
_manager_lock = threading.Lock()


def get_web_server_manager() -> WebServerManager:
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = WebServerManager()
        return _manager
