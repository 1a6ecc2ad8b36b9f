from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set

from trailguard.errors import DependencyCycleError, UnknownDependencyError
from trailguard.schemas import OnFailure, WorkflowNodeResult, WorkflowReference, WorkflowStatus

LOGGER = logging.getLogger("trailguard.scheduler")

STOPPED_REASON = "Stopped by previous failure"


@dataclass(frozen=True)
class WorkflowNode:
    id: str
    index: int
    reference: WorkflowReference

    @property
    def file(self) -> str:
        return self.reference.file

    @property
    def depends_on(self) -> List[str]:
        return list(self.reference.depends_on)

    def effective_on_failure(self, default: OnFailure) -> OnFailure:
        return self.reference.on_failure or default


@dataclass
class NodeOutcome:
    status: WorkflowStatus
    error: Optional[str] = None
    details: Optional[Dict[str, object]] = None


@dataclass
class SchedulerPass:
    results: List[WorkflowNodeResult] = field(default_factory=list)
    failed: bool = False
    stopped: bool = False


def build_execution_order(workflows: Sequence[WorkflowReference]) -> List[WorkflowNode]:
    """Order workflows so every node follows its dependencies (Kahn's algorithm).

    Nodes without an explicit id are named ``workflow_<index>``. When several nodes
    are eligible at once, the one declared first runs first.
    """
    nodes: Dict[str, WorkflowNode] = {}
    ids: List[str] = []
    for index, reference in enumerate(workflows):
        node_id = reference.id or f"workflow_{index}"
        ids.append(node_id)
        nodes[node_id] = WorkflowNode(id=node_id, index=index, reference=reference)

    adjacency: Dict[str, List[str]] = {node_id: [] for node_id in ids}
    in_degree: Dict[str, int] = {node_id: 0 for node_id in ids}
    for node_id in ids:
        for dependency in nodes[node_id].depends_on:
            if dependency not in nodes:
                raise UnknownDependencyError(node_id, dependency)
            adjacency[dependency].append(node_id)
            in_degree[node_id] += 1

    ready = [(nodes[node_id].index, node_id) for node_id in ids if in_degree[node_id] == 0]
    heapq.heapify(ready)
    ordered: List[WorkflowNode] = []
    while ready:
        _, current = heapq.heappop(ready)
        ordered.append(nodes[current])
        for dependent in adjacency[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (nodes[dependent].index, dependent))

    if len(ordered) != len(ids):
        placed = {node.id for node in ordered}
        raise DependencyCycleError([node_id for node_id in ids if node_id not in placed])
    return ordered


class DependencyScheduler:
    """Run an ordered node list, applying each node's failure policy."""

    def __init__(self, order: Sequence[WorkflowNode], default_on_failure: OnFailure = OnFailure.skip) -> None:
        self._order = list(order)
        self._default = default_on_failure

    @property
    def order(self) -> List[WorkflowNode]:
        return list(self._order)

    def run(
        self,
        execute: Callable[[WorkflowNode], NodeOutcome],
        *,
        label_prefix: str = "",
    ) -> SchedulerPass:
        completed: Set[str] = set()
        failed: Set[str] = set()
        skipped: Set[str] = set()
        outcome = SchedulerPass()

        def _record(node: WorkflowNode, status: WorkflowStatus, error: Optional[str] = None, details=None) -> None:
            outcome.results.append(
                WorkflowNodeResult(
                    id=node.id,
                    file=node.file,
                    label=f"{label_prefix}{node.file}",
                    status=status,
                    error=error,
                    details=details,
                )
            )
            if status == WorkflowStatus.passed:
                completed.add(node.id)
            elif status == WorkflowStatus.failed:
                failed.add(node.id)
                outcome.failed = True
            else:
                skipped.add(node.id)

        for node in self._order:
            if outcome.stopped:
                _record(node, WorkflowStatus.skipped, STOPPED_REASON)
                continue

            policy = node.effective_on_failure(self._default)
            blocked = [dep for dep in node.depends_on if dep in failed or dep in skipped]
            unmet = [dep for dep in node.depends_on if dep not in completed and dep not in blocked]
            if blocked or unmet:
                if policy == OnFailure.skip:
                    LOGGER.info('Skipping workflow "%s" - dependencies not met', node.id)
                    _record(node, WorkflowStatus.skipped, "Dependencies not met: " + ", ".join(blocked or unmet))
                    continue
                if policy == OnFailure.fail:
                    LOGGER.info('Pipeline stopped - workflow "%s" dependencies failed', node.id)
                    _record(node, WorkflowStatus.failed, "Dependencies failed: " + ", ".join(blocked or unmet))
                    outcome.stopped = True
                    continue
                LOGGER.info('Running workflow "%s" despite dependency failure (on_failure: ignore)', node.id)

            try:
                result = execute(node)
            except Exception as exc:
                LOGGER.error('Failed to run workflow "%s": %s', node.id, exc)
                result = NodeOutcome(status=WorkflowStatus.failed, error=str(exc))

            _record(node, result.status, result.error, result.details)
            if result.status == WorkflowStatus.failed and policy == OnFailure.fail:
                LOGGER.info('Pipeline stopped due to workflow "%s" failure', node.id)
                outcome.stopped = True

        return outcome
