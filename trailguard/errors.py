from __future__ import annotations

from typing import List, Sequence


class TrailguardError(RuntimeError):
    """Base class for errors raised by trailguard services."""


class DependencyCycleError(TrailguardError):
    def __init__(self, nodes: Sequence[str]) -> None:
        self.nodes: List[str] = list(nodes)
        super().__init__(
            "Circular dependency detected in pipeline. Workflows involved: " + ", ".join(self.nodes)
        )


class UnknownDependencyError(TrailguardError):
    def __init__(self, workflow_id: str, dependency_id: str) -> None:
        self.workflow_id = workflow_id
        self.dependency_id = dependency_id
        super().__init__(
            f'Workflow "{workflow_id}" depends on "{dependency_id}" which does not exist in the pipeline'
        )


class WebServerError(TrailguardError):
    def __init__(self, message: str, output: str = "") -> None:
        self.output = output
        if output:
            message = f"{message}\n{output}"
        super().__init__(message)


class ServerStartTimeout(WebServerError):
    pass


class ServerStalled(WebServerError):
    pass


class ServerExitedEarly(WebServerError):
    def __init__(self, exit_code: int, output: str = "") -> None:
        self.exit_code = exit_code
        super().__init__(f"Server exited with code {exit_code}", output)


class ServerCommandError(WebServerError):
    pass


class ProviderError(TrailguardError):
    pass
