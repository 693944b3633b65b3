"""Execution ordering of workflow steps."""

from collections import deque
from typing import Dict, List, Sequence

from ..models.core import Connection, WorkflowStep
from .exceptions import WorkflowCycleError


def topological_order(steps: Sequence[WorkflowStep], connections: Sequence[Connection]) -> List[WorkflowStep]:
    """
    Order steps so every step follows all steps with an edge into it.

    Kahn's algorithm; simultaneously ready steps keep their list order.

    Args:
        steps: Steps in document order
        connections: Directed edges between the steps

    Returns:
        Steps in execution order

    Raises:
        WorkflowCycleError: If some steps never become ready, naming them
    """
    by_id: Dict[str, WorkflowStep] = {step.id: step for step in steps}
    position = {step.id: index for index, step in enumerate(steps)}
    in_degree: Dict[str, int] = {step.id: 0 for step in steps}
    successors: Dict[str, List[str]] = {step.id: [] for step in steps}

    for connection in connections:
        if connection.from_step not in by_id or connection.to_step not in by_id:
            continue
        successors[connection.from_step].append(connection.to_step)
        in_degree[connection.to_step] += 1

    for step_id in successors:
        successors[step_id].sort(key=position.__getitem__)

    queue = deque(step.id for step in steps if in_degree[step.id] == 0)
    ordered: List[WorkflowStep] = []

    while queue:
        step_id = queue.popleft()
        ordered.append(by_id[step_id])
        for successor in successors[step_id]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                queue.append(successor)

    if len(ordered) != len(steps):
        stuck = [step.id for step in steps if in_degree[step.id] > 0]
        raise WorkflowCycleError(
            f"Workflow contains a cycle through steps: {', '.join(stuck)}",
            step_ids=stuck,
        )

    return ordered


def find_cycle_steps(steps: Sequence[WorkflowStep], connections: Sequence[Connection]) -> List[str]:
    """Return the ids of steps that can never run because of a cycle (empty when acyclic)."""
    try:
        topological_order(steps, connections)
    except WorkflowCycleError as e:
        return e.step_ids
    return []
