"""Routing tables that stand in for an in-memory execution graph.

A workflow is a set of nodes, each with a pure routing function of the baton
returning the next node name or `END`. Task types are `<workflow>.<node>`, so
any worker can re-derive "what runs next" from a persisted task alone.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from taskrelay.errors import UnknownTaskTypeError

END: None = None

State = dict[str, Any]
NodeHandler = Callable[[State], Mapping[str, Any] | None]
RouteFn = Callable[[State], str | None]


def split_task_type(task_type: str) -> tuple[str, str]:
    """Split `<workflow>.<node>` into its parts."""

    workflow, sep, node = task_type.partition(".")
    if not sep or not workflow or not node:
        raise UnknownTaskTypeError(task_type)
    return workflow, node


def goto(node: str | None) -> RouteFn:
    """Unconditional edge."""

    def _route(_: State) -> str | None:
        return node

    return _route


@dataclass(frozen=True, slots=True)
class Workflow:
    """Routing table for one workflow family."""

    name: str
    entry_node: str
    routes: Mapping[str, RouteFn]
    step_labels: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.entry_node not in self.routes:
            raise ValueError(f"Entry node {self.entry_node!r} has no route in {self.name!r}")

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(self.routes)

    def task_type(self, node: str) -> str:
        if node not in self.routes:
            raise UnknownTaskTypeError(f"{self.name}.{node}")
        return f"{self.name}.{node}"

    def next_node(self, node: str, state: State) -> str | None:
        """Evaluate the node's routing function against the merged baton."""

        route = self.routes.get(node)
        if route is None:
            raise UnknownTaskTypeError(f"{self.name}.{node}")
        target = route(state)
        if target is not END and target not in self.routes:
            raise UnknownTaskTypeError(f"{self.name}.{target}")
        return target

    def label(self, node: str) -> str:
        return self.step_labels.get(node, node)


@dataclass(frozen=True, slots=True)
class ResolvedNode:
    """Handler and routing for one task type."""

    workflow: Workflow
    node: str
    handler: NodeHandler

    @property
    def task_type(self) -> str:
        return self.workflow.task_type(self.node)

    def next_task_type(self, state: State) -> str | None:
        target = self.workflow.next_node(self.node, state)
        return self.workflow.task_type(target) if target is not END else None


class WorkflowRegistry:
    """Maps task types to handlers via their workflow prefix."""

    def __init__(
        self,
        workflows: Iterable[Workflow],
        handlers: Mapping[str, NodeHandler],
    ) -> None:
        self._workflows: dict[str, Workflow] = {}
        for workflow in workflows:
            if workflow.name in self._workflows:
                raise ValueError(f"Duplicate workflow: {workflow.name!r}")
            self._workflows[workflow.name] = workflow

        missing = [
            workflow.task_type(node)
            for workflow in self._workflows.values()
            for node in workflow.nodes
            if workflow.task_type(node) not in handlers
        ]
        if missing:
            raise ValueError(f"Missing node handlers: {', '.join(sorted(missing))}")
        self._handlers = dict(handlers)

    def workflow(self, name: str) -> Workflow:
        try:
            return self._workflows[name]
        except KeyError:
            raise UnknownTaskTypeError(f"{name}.*") from None

    def entry_task_type(self, workflow_name: str) -> str:
        workflow = self.workflow(workflow_name)
        return workflow.task_type(workflow.entry_node)

    def resolve(self, task_type: str) -> ResolvedNode:
        workflow_name, node = split_task_type(task_type)
        workflow = self._workflows.get(workflow_name)
        if workflow is None or node not in workflow.routes:
            raise UnknownTaskTypeError(task_type)
        return ResolvedNode(workflow=workflow, node=node, handler=self._handlers[task_type])

    def step_label(self, task_type: str) -> str:
        try:
            resolved = self.resolve(task_type)
        except UnknownTaskTypeError:
            return task_type
        return resolved.workflow.label(resolved.node)
