"""Workflow definition registry: validation and immutable storage.

Definitions are validated once at registration (ids, names, dependency
references, acyclicity) so the scheduler can treat an unschedulable graph as
an invariant violation rather than a business error.
"""

from __future__ import annotations

import logging

from contentflow.workflow.events import EventPublisher, EventType
from contentflow.workflow.exceptions import WorkflowNotFoundError, WorkflowValidationError
from contentflow.workflow.models import WorkflowDefinition

logger = logging.getLogger("contentflow.workflow.definitions")

# DFS colouring
_WHITE, _GREY, _BLACK = 0, 1, 2


class WorkflowDefinitionRegistry:
    """Read-mostly store of validated workflow definitions.

    A registered definition is deep-copied on the way in and on the way out,
    so callers can never mutate the stored graph.
    """

    def __init__(self, publisher: EventPublisher | None = None):
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._publisher = publisher

    def register(self, definition: WorkflowDefinition) -> None:
        """Validate and store a definition. Raises WorkflowValidationError."""
        errors = self.validate(definition)
        if definition.id and definition.id in self._definitions:
            errors.insert(0, f"Workflow '{definition.id}' is already registered")
        if errors:
            raise WorkflowValidationError(
                f"Invalid workflow definition '{definition.id}': {errors[0]}",
                errors,
            )

        self._definitions[definition.id] = definition.model_copy(deep=True)
        logger.info(
            "Registered workflow '%s' (%s) with %d stages",
            definition.id,
            definition.name,
            len(definition.stages),
        )
        if self._publisher:
            self._publisher.publish(
                EventType.WORKFLOW_REGISTERED,
                workflow_id=definition.id,
                data={"name": definition.name},
            )

    def get(self, workflow_id: str) -> WorkflowDefinition:
        definition = self._definitions.get(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)
        return definition.model_copy(deep=True)

    def find(self, workflow_id: str) -> WorkflowDefinition | None:
        definition = self._definitions.get(workflow_id)
        return definition.model_copy(deep=True) if definition else None

    def has(self, workflow_id: str) -> bool:
        return workflow_id in self._definitions

    def list(self) -> list[WorkflowDefinition]:
        return [d.model_copy(deep=True) for d in self._definitions.values()]

    def __len__(self) -> int:
        return len(self._definitions)

    @staticmethod
    def validate(definition: WorkflowDefinition) -> list[str]:
        """Return a list of validation errors (empty = valid)."""
        errors: list[str] = []
        if not definition.id:
            errors.append("Workflow id is required")
        if not definition.name or not definition.name.strip():
            errors.append("Workflow name is required")
        if not definition.stages:
            errors.append("Workflow must define at least one stage")
            return errors

        ids = [s.id for s in definition.stages]
        dupes = sorted({sid for sid in ids if ids.count(sid) > 1})
        if dupes:
            errors.append(f"Duplicate stage IDs: {dupes}")

        valid_ids = set(ids)
        for stage in definition.stages:
            for dep in stage.dependencies:
                if dep not in valid_ids:
                    errors.append(f"Stage '{stage.id}' depends on unknown stage '{dep}'")

        cycle = find_cycle({s.id: list(s.dependencies) for s in definition.stages})
        if cycle:
            errors.append(f"Circular dependency detected: {' -> '.join(cycle)}")
        return errors


def find_cycle(graph: dict[str, list[str]]) -> list[str] | None:
    """Find a dependency cycle with an iterative depth-first search.

    ``graph`` maps a stage id to the ids it depends on. Unknown dependency ids
    are ignored (reported separately). Returns the cycle as a path whose first
    and last element are the same id, or None if the graph is acyclic.
    """
    colour = dict.fromkeys(graph, _WHITE)

    for root in graph:
        if colour[root] != _WHITE:
            continue
        # Stack of (node, iterator over its dependencies); path mirrors the grey nodes
        colour[root] = _GREY
        stack = [(root, iter(graph[root]))]
        path = [root]
        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                if dep not in colour:
                    continue
                if colour[dep] == _GREY:
                    return path[path.index(dep):] + [dep]
                if colour[dep] == _WHITE:
                    colour[dep] = _GREY
                    stack.append((dep, iter(graph[dep])))
                    path.append(dep)
                    advanced = True
                    break
            if not advanced:
                colour[node] = _BLACK
                stack.pop()
                path.pop()
    return None
