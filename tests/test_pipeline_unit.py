from __future__ import annotations

import json
import re
import socket
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from trailguard.errors import DependencyCycleError
from trailguard.schemas import (
    AppwriteSettings,
    CleanupConfig,
    OnFailure,
    PipelineConfig,
    PipelineDefinition,
    TrackingConfig,
    WebServerConfig,
    WorkflowReference,
    WorkflowStatus,
)
from trailguard.services.browser import BrowserSession
from trailguard.services.ledger import ExecutionContext
from trailguard.services.persistence import FailedCleanupStore
from trailguard.services.pipeline import (
    PipelineExecutor,
    PipelineOptions,
    WorkflowOutcome,
    WorkflowRunOptions,
    infer_cleanup_config,
)
from trailguard.services.scheduler import WorkflowNode
from trailguard.services.web_server import WebServerHandle, WebServerManager, is_server_running

ROOT_HANDLERS = """
def register_cleanup_handlers(registry):
    registry.register("row", lambda resource: None)
    registry.register("user", lambda resource: None)
"""


class FakePage:
    def __init__(self) -> None:
        self.listeners: Dict[str, List[Callable[[Any], None]]] = {}

    def on(self, event: str, callback: Callable[[Any], None]) -> None:
        self.listeners.setdefault(event, []).append(callback)


class FakeClosable:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class StubSessionFactory:
    def __init__(self) -> None:
        self.sessions: List[BrowserSession] = []
        self.shutdown_called = False

    def open(self, viewport: Dict[str, int]) -> BrowserSession:
        session = BrowserSession(browser=FakeClosable(), context=FakeClosable(), page=FakePage(), viewport=viewport)
        self.sessions.append(session)
        return session

    def shutdown(self) -> None:
        self.shutdown_called = True


class StubServerManager:
    def __init__(self) -> None:
        self.starts: List[Dict[str, Any]] = []
        self.stopped = 0
        self.killed = 0

    def start(self, config: WebServerConfig, *, env=None, cwd=None) -> WebServerHandle:
        self.starts.append({"config": config, "env": dict(env or {}), "cwd": cwd})
        return WebServerHandle(url=config.url, pid=4242)

    def stop(self) -> None:
        self.stopped += 1

    def kill(self) -> None:
        self.killed += 1


class StubRunner:
    def __init__(
        self,
        failures: Optional[Dict[str, WorkflowStatus]] = None,
        action: Optional[Callable[[WorkflowNode, ExecutionContext, WorkflowRunOptions], None]] = None,
    ) -> None:
        self.failures = failures or {}
        self.action = action
        self.calls: List[Dict[str, Any]] = []

    def run_workflow(self, node: WorkflowNode, context: ExecutionContext, options: WorkflowRunOptions) -> WorkflowOutcome:
        self.calls.append({"id": node.id, "viewport": options.viewport, "base_url": options.base_url})
        if self.action is not None:
            self.action(node, context, options)
        status = self.failures.get(node.id, WorkflowStatus.passed)
        return WorkflowOutcome(status=status, error="assertion failed" if status == WorkflowStatus.failed else None)


def _pipeline(**overrides: Any) -> PipelineDefinition:
    data: Dict[str, Any] = {
        "name": "checkout",
        "workflows": [
            WorkflowReference(id="signup", file="signup.yaml", variables={"email": "qa-{{uuid}}@example.com"}),
            WorkflowReference(id="purchase", file="purchase.yaml", depends_on=["signup"]),
        ],
        "config": PipelineConfig(tracking=TrackingConfig(http=False, file=True, track_dir="track")),
    }
    data.update(overrides)
    return PipelineDefinition(**data)


def _executor(tmp_path: Path, runner: StubRunner, factory=None, manager=None) -> PipelineExecutor:
    return PipelineExecutor(
        runner,
        session_factory=factory or StubSessionFactory(),
        server_manager=manager or StubServerManager(),
        failed_store=FailedCleanupStore(tmp_path),
        cwd=tmp_path,
    )


@pytest.mark.unit
def test_each_viewport_runs_a_full_pass_on_fresh_session(tmp_path: Path) -> None:
    (tmp_path / "trailguard_cleanup.py").write_text(ROOT_HANDLERS, encoding="utf-8")

    def create_row(node: WorkflowNode, context: ExecutionContext, options: WorkflowRunOptions) -> None:
        context.ledger.record("row", f"{node.id}-{options.viewport['width']}", tableId="orders")

    runner = StubRunner(action=create_row)
    factory = StubSessionFactory()
    pipeline = _pipeline(
        config=PipelineConfig(
            tracking=TrackingConfig(http=False, file=True, track_dir="track"),
            cleanup=CleanupConfig(),
        )
    )

    result = _executor(tmp_path, runner, factory=factory).run(pipeline, options=PipelineOptions(test_sizes=["xs", "md"]))

    assert result.status == WorkflowStatus.passed
    assert [session.viewport for session in factory.sessions] == [
        {"width": 320, "height": 568},
        {"width": 768, "height": 1024},
    ]
    assert all(session.context.closed and session.browser.closed for session in factory.sessions)
    assert factory.shutdown_called is False
    assert [item.label for item in result.workflows] == [
        "[xs] signup.yaml",
        "[xs] purchase.yaml",
        "[md] signup.yaml",
        "[md] purchase.yaml",
    ]
    assert [call["id"] for call in runner.calls] == ["signup", "purchase", "signup", "purchase"]
    assert result.cleanup_result is not None
    assert sorted(result.cleanup_result.deleted) == [
        "row:purchase-320",
        "row:purchase-768",
        "row:signup-320",
        "row:signup-768",
    ]
    assert not (tmp_path / "track" / f"{result.session_id}.jsonl").exists()


@pytest.mark.unit
def test_single_size_has_no_label_prefix(tmp_path: Path) -> None:
    result = _executor(tmp_path, StubRunner()).run(_pipeline())
    assert [item.label for item in result.workflows] == ["signup.yaml", "purchase.yaml"]
    assert result.cleanup_result is None


@pytest.mark.unit
def test_variables_are_interpolated_into_shared_context(tmp_path: Path) -> None:
    seen: List[str] = []

    def capture(node: WorkflowNode, context: ExecutionContext, options: WorkflowRunOptions) -> None:
        seen.append(context.variables.get("email", ""))

    _executor(tmp_path, StubRunner(action=capture)).run(_pipeline())

    assert re.fullmatch(r"qa-[0-9a-f]{8}@example\.com", seen[0])
    assert seen[1] == seen[0]


@pytest.mark.unit
def test_failed_run_can_skip_cleanup(tmp_path: Path) -> None:
    def create_row(node: WorkflowNode, context: ExecutionContext, options: WorkflowRunOptions) -> None:
        context.ledger.record("row", "R1")

    runner = StubRunner(failures={"signup": WorkflowStatus.failed}, action=create_row)
    pipeline = _pipeline(
        cleanup_on_failure=False,
        config=PipelineConfig(tracking=TrackingConfig(http=False, file=False), cleanup=CleanupConfig()),
    )

    result = _executor(tmp_path, runner).run(pipeline)

    assert result.status == WorkflowStatus.failed
    assert result.cleanup_result is None
    statuses = {item.id: item.status for item in result.workflows}
    assert statuses == {"signup": WorkflowStatus.failed, "purchase": WorkflowStatus.skipped}


@pytest.mark.unit
def test_failed_cleanup_is_persisted(tmp_path: Path) -> None:
    def create_team(node: WorkflowNode, context: ExecutionContext, options: WorkflowRunOptions) -> None:
        context.ledger.record("team", "T1")

    pipeline = _pipeline(
        workflows=[WorkflowReference(id="a", file="a.yaml")],
        config=PipelineConfig(tracking=TrackingConfig(http=False, file=False), cleanup=CleanupConfig()),
    )

    result = _executor(tmp_path, StubRunner(action=create_team)).run(pipeline, options=PipelineOptions(session_id="sess"))

    assert result.cleanup_result is not None
    assert result.cleanup_result.failed == ["team:T1"]
    saved = json.loads((tmp_path / ".trailguard" / "cleanup" / "failed" / "sess.json").read_text(encoding="utf-8"))
    assert saved["resources"][0]["id"] == "T1"


@pytest.mark.unit
def test_invalid_viewport_fails_before_any_session(tmp_path: Path) -> None:
    factory = StubSessionFactory()
    runner = StubRunner()
    with pytest.raises(ValueError):
        _executor(tmp_path, runner, factory=factory).run(_pipeline(), options=PipelineOptions(test_sizes=["md", "huge"]))
    assert factory.sessions == []
    assert runner.calls == []


@pytest.mark.unit
def test_cycle_fails_before_any_workflow(tmp_path: Path) -> None:
    runner = StubRunner()
    pipeline = _pipeline(
        workflows=[
            WorkflowReference(id="a", file="a.yaml", depends_on=["b"]),
            WorkflowReference(id="b", file="b.yaml", depends_on=["a"]),
        ]
    )
    with pytest.raises(DependencyCycleError):
        _executor(tmp_path, runner).run(pipeline)
    assert runner.calls == []


@pytest.mark.unit
def test_owned_server_receives_tracking_env_and_is_stopped(tmp_path: Path) -> None:
    manager = StubServerManager()
    runner = StubRunner()
    pipeline = _pipeline(
        config=PipelineConfig(
            tracking=TrackingConfig(http=False, file=True, track_dir="track"),
            web_server=WebServerConfig(url="http://127.0.0.1:5173", command="npm run dev"),
        )
    )

    result = _executor(tmp_path, runner, manager=manager).run(pipeline, options=PipelineOptions(session_id="s-env"))

    assert result.status == WorkflowStatus.passed
    start = manager.starts[0]
    assert start["config"].reuse_existing_server is False
    assert start["env"]["TRAILGUARD_SESSION_ID"] == "s-env"
    assert start["env"]["TRAILGUARD_TRACK_FILE"].endswith("s-env.jsonl")
    assert runner.calls[0]["base_url"] == "http://127.0.0.1:5173"
    assert manager.stopped == 1


@pytest.mark.unit
def test_explicit_reuse_setting_is_respected(tmp_path: Path) -> None:
    manager = StubServerManager()
    pipeline = _pipeline(
        config=PipelineConfig(
            tracking=TrackingConfig(http=False, file=True, track_dir="track"),
            web_server=WebServerConfig(url="http://127.0.0.1:5173", command="npm run dev", reuse_existing_server=True),
        )
    )
    _executor(tmp_path, StubRunner(), manager=manager).run(pipeline)
    assert manager.starts[0]["config"].reuse_existing_server is True


@pytest.mark.unit
def test_caller_owned_server_is_left_running(tmp_path: Path) -> None:
    manager = StubServerManager()
    pipeline = _pipeline(
        config=PipelineConfig(
            tracking=TrackingConfig(http=False, file=False),
            web_server=WebServerConfig(url="http://127.0.0.1:5173", command="npm run dev"),
        )
    )
    handle = WebServerHandle(url="http://127.0.0.1:5173", pid=99, owned=False)

    _executor(tmp_path, StubRunner(), manager=manager).run(pipeline, options=PipelineOptions(web_server=handle))

    assert manager.starts == []
    assert manager.stopped == 0


@pytest.mark.unit
def test_interrupt_releases_owned_resources_and_reraises(tmp_path: Path) -> None:
    manager = StubServerManager()

    def interrupt(node: WorkflowNode, context: ExecutionContext, options: WorkflowRunOptions) -> None:
        raise KeyboardInterrupt

    pipeline = _pipeline(
        config=PipelineConfig(
            tracking=TrackingConfig(http=False, file=True, track_dir="track"),
            web_server=WebServerConfig(url="http://127.0.0.1:5173", command="npm run dev"),
        )
    )
    factory = StubSessionFactory()

    with pytest.raises(KeyboardInterrupt):
        _executor(tmp_path, StubRunner(action=interrupt), factory=factory, manager=manager).run(
            pipeline, options=PipelineOptions(session_id="s-int")
        )

    assert manager.killed == 1
    assert manager.stopped == 0
    assert factory.sessions[0].browser.closed is True
    assert not (tmp_path / "track" / "s-int.jsonl").exists()


@pytest.mark.unit
def test_legacy_appwrite_block_enables_cleanup_and_observer(tmp_path: Path) -> None:
    legacy = AppwriteSettings(endpoint="https://aw.example/v1", project_id="proj", api_key="k", cleanup=True)
    inferred = infer_cleanup_config(PipelineConfig(appwrite=legacy))
    assert inferred is not None
    assert inferred.provider.type == "appwrite"
    assert inferred.provider.api_key == "k"
    assert inferred.scan_untracked is True
    assert infer_cleanup_config(PipelineConfig()) is None

    observed: List[Optional[str]] = []

    def sign_up(node: WorkflowNode, context: ExecutionContext, options: WorkflowRunOptions) -> None:
        response = type(
            "Response",
            (),
            {
                "request": type("Request", (), {"method": "POST"})(),
                "url": "https://aw.example/v1/account",
                "status": 201,
                "text": lambda self: json.dumps({"$id": "U7", "email": "qa@example.com"}),
            },
        )()
        for callback in options.page.listeners.get("response", []):
            callback(response)
        observed.append(context.user_id)

    pipeline = _pipeline(
        workflows=[WorkflowReference(id="signup", file="signup.yaml", on_failure=OnFailure.fail)],
        config=PipelineConfig(
            tracking=TrackingConfig(http=False, file=False),
            appwrite=AppwriteSettings(endpoint="https://aw.example/v1", project_id="proj"),
        ),
    )
    result = _executor(tmp_path, StubRunner(action=sign_up)).run(pipeline)

    assert observed == ["U7"]
    assert result.cleanup_result is None


class SharedServerManager(StubServerManager):
    def start(self, config: WebServerConfig, *, env=None, cwd=None) -> WebServerHandle:
        self.starts.append({"config": config, "env": dict(env or {}), "cwd": cwd})
        return WebServerHandle(url=config.url, pid=4242, owned=False)


@pytest.mark.unit
def test_reused_server_is_neither_stopped_nor_killed(tmp_path: Path) -> None:
    pipeline = _pipeline(
        config=PipelineConfig(
            tracking=TrackingConfig(http=False, file=False),
            web_server=WebServerConfig(url="http://127.0.0.1:5173", command="npm run dev"),
        )
    )

    manager = SharedServerManager()
    _executor(tmp_path, StubRunner(), manager=manager).run(pipeline)
    assert len(manager.starts) == 1
    assert manager.stopped == 0

    def interrupt(node: WorkflowNode, context: ExecutionContext, options: WorkflowRunOptions) -> None:
        raise KeyboardInterrupt

    manager = SharedServerManager()
    with pytest.raises(KeyboardInterrupt):
        _executor(tmp_path, StubRunner(action=interrupt), manager=manager).run(pipeline)
    assert manager.killed == 0
    assert manager.stopped == 0


@pytest.mark.unit
def test_broken_handler_file_still_yields_cleanup_result(tmp_path: Path) -> None:
    (tmp_path / "trailguard_cleanup.py").write_text(
        "def register_cleanup_handlers(registry):\n"
        "    raise KeyError('missing setting')\n",
        encoding="utf-8",
    )

    def create_row(node: WorkflowNode, context: ExecutionContext, options: WorkflowRunOptions) -> None:
        context.ledger.record("row", "R1")

    pipeline = _pipeline(
        workflows=[WorkflowReference(id="a", file="a.yaml")],
        config=PipelineConfig(tracking=TrackingConfig(http=False, file=False), cleanup=CleanupConfig()),
    )

    result = _executor(tmp_path, StubRunner(action=create_row)).run(pipeline, options=PipelineOptions(session_id="broken"))

    assert result.cleanup_result is not None
    assert result.cleanup_result.failed == ["row:R1"]
    assert FailedCleanupStore(tmp_path).load("broken") is not None


@pytest.mark.integration
def test_run_leaves_running_server_it_did_not_start(tmp_path: Path) -> None:
    site = tmp_path / "site"
    site.mkdir()
    (site / "index.html").write_text("<h1>shared</h1>", encoding="utf-8")
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    url = f"http://127.0.0.1:{port}/"
    manager = WebServerManager(poll_interval=0.1)
    first = manager.start(
        WebServerConfig(url=url, static=str(site), reuse_existing_server=False, timeout=20),
        cwd=tmp_path,
    )
    try:
        pipeline = _pipeline(
            config=PipelineConfig(
                tracking=TrackingConfig(http=False, file=False),
                web_server=WebServerConfig(url=url, static=str(site), reuse_existing_server=True),
            )
        )
        result = _executor(tmp_path, StubRunner(), manager=manager).run(pipeline)

        assert first.owned is True
        assert result.status == WorkflowStatus.passed
        assert manager.is_running() is True
        assert is_server_running(url)
    finally:
        manager.stop()
