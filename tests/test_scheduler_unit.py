from __future__ import annotations

from typing import Dict, List

import pytest

from trailguard.errors import DependencyCycleError, UnknownDependencyError
from trailguard.schemas import OnFailure, WorkflowReference, WorkflowStatus
from trailguard.services.scheduler import (
    STOPPED_REASON,
    DependencyScheduler,
    NodeOutcome,
    WorkflowNode,
    build_execution_order,
)


def _ref(node_id: str, depends_on: List[str] | None = None, on_failure: OnFailure | None = None) -> WorkflowReference:
    return WorkflowReference(id=node_id, file=f"{node_id}.yaml", depends_on=depends_on or [], on_failure=on_failure)


class ScriptedRunner:
    def __init__(self, outcomes: Dict[str, WorkflowStatus] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.calls: List[str] = []

    def __call__(self, node: WorkflowNode) -> NodeOutcome:
        self.calls.append(node.id)
        status = self.outcomes.get(node.id, WorkflowStatus.passed)
        error = "boom" if status == WorkflowStatus.failed else None
        return NodeOutcome(status=status, error=error)


def _statuses(results) -> Dict[str, WorkflowStatus]:
    return {item.id: item.status for item in results}


@pytest.mark.unit
def test_order_places_dependencies_first() -> None:
    order = build_execution_order([_ref("checkout", ["login"]), _ref("login"), _ref("profile", ["login"])])
    ids = [node.id for node in order]
    assert ids == ["login", "checkout", "profile"]


@pytest.mark.unit
def test_order_uses_declaration_order_for_ties() -> None:
    order = build_execution_order([_ref("c"), _ref("a"), _ref("b")])
    assert [node.id for node in order] == ["c", "a", "b"]


@pytest.mark.unit
def test_missing_ids_are_derived_from_position() -> None:
    order = build_execution_order(
        [WorkflowReference(file="one.yaml"), WorkflowReference(file="two.yaml", depends_on=["workflow_0"])]
    )
    assert [node.id for node in order] == ["workflow_0", "workflow_1"]


@pytest.mark.unit
def test_cycle_names_every_unordered_node() -> None:
    with pytest.raises(DependencyCycleError) as excinfo:
        build_execution_order([_ref("a", ["c"]), _ref("b", ["a"]), _ref("c", ["b"]), _ref("free")])
    assert excinfo.value.nodes == ["a", "b", "c"]
    assert "Circular dependency" in str(excinfo.value)


@pytest.mark.unit
def test_unknown_dependency_is_rejected() -> None:
    with pytest.raises(UnknownDependencyError) as excinfo:
        build_execution_order([_ref("a", ["ghost"])])
    assert excinfo.value.dependency_id == "ghost"


@pytest.mark.unit
def test_failed_dependency_skips_dependents_transitively() -> None:
    order = build_execution_order([_ref("a"), _ref("b", ["a"]), _ref("c", ["b"]), _ref("d")])
    runner = ScriptedRunner({"a": WorkflowStatus.failed})

    outcome = DependencyScheduler(order).run(runner)

    assert runner.calls == ["a", "d"]
    statuses = _statuses(outcome.results)
    assert statuses == {
        "a": WorkflowStatus.failed,
        "b": WorkflowStatus.skipped,
        "c": WorkflowStatus.skipped,
        "d": WorkflowStatus.passed,
    }
    skipped_b = next(item for item in outcome.results if item.id == "b")
    assert skipped_b.error == "Dependencies not met: a"
    assert outcome.failed is True
    assert outcome.stopped is False


@pytest.mark.unit
def test_fail_policy_on_dependent_stops_the_pipeline() -> None:
    order = build_execution_order([_ref("a"), _ref("b", ["a"], OnFailure.fail), _ref("c")])
    runner = ScriptedRunner({"a": WorkflowStatus.failed})

    outcome = DependencyScheduler(order).run(runner)

    assert runner.calls == ["a"]
    by_id = {item.id: item for item in outcome.results}
    assert by_id["b"].status == WorkflowStatus.failed
    assert by_id["b"].error == "Dependencies failed: a"
    assert by_id["c"].status == WorkflowStatus.skipped
    assert by_id["c"].error == STOPPED_REASON
    assert outcome.stopped is True


@pytest.mark.unit
def test_own_fail_policy_stops_after_failure() -> None:
    order = build_execution_order([_ref("a", on_failure=OnFailure.fail), _ref("b")])
    runner = ScriptedRunner({"a": WorkflowStatus.failed})

    outcome = DependencyScheduler(order).run(runner)

    assert runner.calls == ["a"]
    assert _statuses(outcome.results)["b"] == WorkflowStatus.skipped


@pytest.mark.unit
def test_pipeline_default_policy_applies_when_node_has_none() -> None:
    order = build_execution_order([_ref("a"), _ref("b")])
    runner = ScriptedRunner({"a": WorkflowStatus.failed})

    outcome = DependencyScheduler(order, default_on_failure=OnFailure.fail).run(runner)

    assert runner.calls == ["a"]
    assert outcome.stopped is True


@pytest.mark.unit
def test_ignore_policy_runs_despite_failed_dependency() -> None:
    order = build_execution_order([_ref("a"), _ref("b", ["a"], OnFailure.ignore)])
    runner = ScriptedRunner({"a": WorkflowStatus.failed})

    outcome = DependencyScheduler(order).run(runner)

    assert runner.calls == ["a", "b"]
    assert _statuses(outcome.results)["b"] == WorkflowStatus.passed


@pytest.mark.unit
def test_runner_exception_counts_as_failure() -> None:
    order = build_execution_order([_ref("a")])

    def explode(node: WorkflowNode) -> NodeOutcome:
        raise RuntimeError("browser crashed")

    outcome = DependencyScheduler(order).run(explode)

    assert outcome.results[0].status == WorkflowStatus.failed
    assert outcome.results[0].error == "browser crashed"


@pytest.mark.unit
def test_labels_carry_prefix() -> None:
    order = build_execution_order([_ref("a")])
    outcome = DependencyScheduler(order).run(ScriptedRunner(), label_prefix="[md] ")
    assert outcome.results[0].label == "[md] a.yaml"
