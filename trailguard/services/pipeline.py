from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from trailguard.constants import ENV_APPWRITE_API_KEY
from trailguard.errors import TrailguardError
from trailguard.schemas import (
    AppwriteProviderConfig,
    CleanupConfig,
    CleanupResult,
    FailedCleanupRecord,
    PipelineConfig,
    PipelineDefinition,
    PipelineResult,
    WorkflowNodeResult,
    WorkflowStatus,
)
from trailguard.services.browser import BrowserSession, PlaywrightSessionFactory, parse_viewport_size, resolve_test_sizes
from trailguard.services.cleanup import execute_cleanup
from trailguard.services.handlers import load_cleanup_handlers
from trailguard.services.ledger import ExecutionContext, utcnow
from trailguard.services.network_observer import NetworkObserver
from trailguard.services.persistence import FailedCleanupStore
from trailguard.services.scheduler import DependencyScheduler, NodeOutcome, WorkflowNode, build_execution_order
from trailguard.services.tracking import TrackingSession
from trailguard.services.web_server import WebServerHandle, WebServerManager, get_web_server_manager

LOGGER = logging.getLogger("trailguard.pipeline")


@dataclass
class WorkflowOutcome:
    status: WorkflowStatus
    results: List[Any] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class WorkflowRunOptions:
    page: Any
    base_url: Optional[str]
    pipeline_dir: Path
    viewport: Dict[str, int]
    session_id: str


class WorkflowRunner(Protocol):
    def run_workflow(
        self,
        node: WorkflowNode,
        context: ExecutionContext,
        options: WorkflowRunOptions,
    ) -> WorkflowOutcome:
        ...


class SessionFactory(Protocol):
    def open(self, viewport: Dict[str, int]) -> BrowserSession:
        ...

    def shutdown(self) -> None:
        ...


@dataclass
class PipelineOptions:
    headed: bool = False
    browser: Optional[str] = None
    session_id: Optional[str] = None
    track_dir: Optional[Path] = None
    test_sizes: Optional[List[str]] = None
    # Caller-provided resources are used but never released by the run.
    tracking: Optional[TrackingSession] = None
    web_server: Optional[WebServerHandle] = None


def infer_cleanup_config(config: PipelineConfig) -> Optional[CleanupConfig]:
    """Cleanup settings for a pipeline; the legacy ``appwrite`` block still enables cleanup."""
    if config.cleanup is not None:
        return config.cleanup
    appwrite = config.appwrite
    if appwrite is not None and appwrite.cleanup:
        return CleanupConfig(
            provider=AppwriteProviderConfig(
                endpoint=appwrite.endpoint,
                project_id=appwrite.project_id,
                api_key=appwrite.api_key or os.environ.get(ENV_APPWRITE_API_KEY, ""),
            ),
            scan_untracked=True,
        )
    return None


def _observes_network(config: PipelineConfig) -> bool:
    if config.appwrite is not None:
        return True
    provider = config.cleanup.provider if config.cleanup is not None else None
    return provider is not None and provider.type == "appwrite"


class PipelineExecutor:
    """Run a pipeline's workflows on one shared browser session per viewport.

    Resources the application creates are collected across every workflow and
    viewport, then removed in a single cleanup pass when the run ends.
    """

    def __init__(
        self,
        runner: WorkflowRunner,
        *,
        session_factory: Optional[SessionFactory] = None,
        server_manager: Optional[WebServerManager] = None,
        failed_store: Optional[FailedCleanupStore] = None,
        cwd: Optional[Path] = None,
    ) -> None:
        self.runner = runner
        self.cwd = Path(cwd or Path.cwd())
        self._session_factory = session_factory
        self._server_manager = server_manager or get_web_server_manager()
        self._failed_store = failed_store or FailedCleanupStore(self.cwd)

    def run(
        self,
        pipeline: PipelineDefinition,
        pipeline_path: Optional[Path] = None,
        options: Optional[PipelineOptions] = None,
    ) -> PipelineResult:
        options = options or PipelineOptions()
        config = pipeline.config
        pipeline_dir = Path(pipeline_path).resolve().parent if pipeline_path else self.cwd

        order = build_execution_order(pipeline.workflows)
        LOGGER.info("Pipeline %s execution order: %s", pipeline.name, " -> ".join(node.id for node in order))
        viewports = [(size, parse_viewport_size(size)) for size in resolve_test_sizes(options.test_sizes)]

        if options.session_id:
            session_id = options.session_id
        elif options.tracking is not None:
            session_id = options.tracking.session_id
        else:
            session_id = uuid.uuid4().hex
        cleanup_config = infer_cleanup_config(config)
        test_start_time = utcnow()

        owns_tracking = options.tracking is None
        owns_factory = self._session_factory is None
        tracking = options.tracking
        server_handle = options.web_server
        owns_server = False
        factory = self._session_factory or PlaywrightSessionFactory(
            browser_name=options.browser or config.web.browser,
            headless=False if options.headed else config.web.headless,
        )
        context = ExecutionContext()
        session: Optional[BrowserSession] = None

        try:
            if owns_tracking:
                track_dir = options.track_dir or config.tracking.track_dir
                tracking = TrackingSession(
                    session_id,
                    http=config.tracking.http,
                    file=config.tracking.file,
                    track_dir=self.cwd / track_dir if track_dir else None,
                ).start()

            if server_handle is None and config.web_server is not None:
                server_handle = self._start_server(pipeline, pipeline_dir, tracking, owns_tracking)
                owns_server = server_handle.owned

            base_url = config.web.base_url or (server_handle.url if server_handle else None)
            observe = _observes_network(config)
            scheduler = DependencyScheduler(order, pipeline.on_failure)
            results: List[WorkflowNodeResult] = []
            any_failed = False

            for size, viewport in viewports:
                if session is not None:
                    session.close()
                    session = None
                session = factory.open(viewport)
                if observe:
                    NetworkObserver(context).install(session.page)
                LOGGER.info("Testing pipeline at viewport: %s (%dx%d)", size, viewport["width"], viewport["height"])

                run_options = WorkflowRunOptions(
                    page=session.page,
                    base_url=base_url,
                    pipeline_dir=pipeline_dir,
                    viewport=viewport,
                    session_id=session_id,
                )
                prefix = f"[{size}] " if len(viewports) > 1 else ""
                outcome = scheduler.run(lambda node: self._execute(node, context, run_options), label_prefix=prefix)
                results.extend(outcome.results)
                any_failed = any_failed or outcome.failed

            if tracking is not None:
                tracking.merge_into(context.ledger)

            cleanup_result = None
            if cleanup_config is not None:
                if any_failed and not self._cleanup_on_failure(pipeline):
                    LOGGER.info("Skipping cleanup (cleanup_on_failure is false)")
                else:
                    cleanup_result = self._cleanup(cleanup_config, context, session_id, test_start_time)

            return PipelineResult(
                status=WorkflowStatus.failed if any_failed else WorkflowStatus.passed,
                session_id=session_id,
                workflows=results,
                cleanup_result=cleanup_result,
            )
        except KeyboardInterrupt:
            LOGGER.warning("Interrupted; releasing resources owned by this run")
            if owns_server:
                self._server_manager.kill()
                owns_server = False
            raise
        finally:
            if session is not None:
                session.close()
            if owns_factory:
                factory.shutdown()
            if owns_server:
                self._server_manager.stop()
            if owns_tracking and tracking is not None:
                tracking.stop()

    def _start_server(
        self,
        pipeline: PipelineDefinition,
        pipeline_dir: Path,
        tracking: Optional[TrackingSession],
        owns_tracking: bool,
    ) -> WebServerHandle:
        server_config = pipeline.config.web_server
        if owns_tracking and tracking is not None and server_config.reuse_existing_server is None:
            if tracking.mode != "none":
                LOGGER.info("Restarting web server to inject tracking environment")
                server_config = server_config.model_copy(update={"reuse_existing_server": False})
        workdir = pipeline_dir / server_config.workdir if server_config.workdir else pipeline_dir
        env = tracking.environment() if tracking is not None else None
        return self._server_manager.start(server_config, env=env, cwd=workdir)

    def _execute(self, node: WorkflowNode, context: ExecutionContext, options: WorkflowRunOptions) -> NodeOutcome:
        context.apply_variables(node.reference.variables)
        LOGGER.info('Running workflow "%s" (%s)', node.id, node.file)
        outcome = self.runner.run_workflow(node, context, options)
        details = {"results": outcome.results} if outcome.results else None
        return NodeOutcome(status=outcome.status, error=outcome.error, details=details)

    @staticmethod
    def _cleanup_on_failure(pipeline: PipelineDefinition) -> bool:
        legacy = pipeline.config.appwrite
        if pipeline.config.cleanup is None and legacy is not None:
            return pipeline.cleanup_on_failure and legacy.cleanup_on_failure
        return pipeline.cleanup_on_failure

    def _cleanup(
        self,
        cleanup_config: CleanupConfig,
        context: ExecutionContext,
        session_id: str,
        test_start_time: str,
    ) -> CleanupResult:
        resources = context.ledger.snapshot()
        identity = cleanup_config.provider.identity() if cleanup_config.provider is not None else {}
        try:
            loaded = load_cleanup_handlers(cleanup_config, self.cwd)
        except (TrailguardError, ValueError) as exc:
            LOGGER.error("Cleanup failed: %s", exc)
            pending = [resource for resource in resources if not resource.deleted]
            result = CleanupResult(
                success=False,
                failed=[resource.label for resource in pending],
                errors=[str(exc)],
            )
            if pending:
                self._failed_store.save(
                    FailedCleanupRecord(
                        session_id=session_id,
                        timestamp=utcnow(),
                        resources=[resource.to_dict() for resource in pending],
                        provider_config=identity,
                        errors=result.errors,
                    )
                )
            return result

        try:
            return execute_cleanup(
                resources,
                loaded.registry,
                loaded.type_mappings,
                session_id=session_id,
                parallel=cleanup_config.parallel,
                retries=cleanup_config.retries,
                provider=loaded.provider,
                provider_identity=identity,
                scan_untracked=cleanup_config.scan_untracked,
                test_start_time=test_start_time,
                user_id=context.user_id,
                failed_store=self._failed_store,
            )
        finally:
            if loaded.provider is not None:
                loaded.provider.close()
