"""Step catalog: display metadata and connection ports for every step type."""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .core import StepType, Workflow


@dataclass(frozen=True)
class StepSpec:
    """Static description of a step type.

    Ports only govern which connections may be drawn; no typed data travels
    along them.
    """
    type: StepType
    name: str
    description: str
    inputs: Tuple[str, ...]
    outputs: Tuple[str, ...]


STEP_CATALOG: Dict[StepType, StepSpec] = {
    spec.type: spec for spec in (
        StepSpec(StepType.TRIGGER_TIMER, "Timer Trigger", "Schedule automatic workflow execution", (), ("trigger",)),
        StepSpec(StepType.CLONE, "Clone Repository", "Clone the remote repository into a temporary directory", ("trigger",), ("repo",)),
        StepSpec(StepType.PULL, "Pull Updates", "Fetch and hard-reset the checkout to the remote branch", ("repo",), ("repo",)),
        StepSpec(StepType.SYNC_PUSH, "Sync & Push", "Pull with rebase, then push local commits", ("repo",), ("repo",)),
        StepSpec(StepType.PUSH, "Push", "Push local commits to the remote", ("repo",), ("repo",)),
        StepSpec(StepType.CHECKOUT, "Checkout Branch", "Switch to a branch, tracking the remote if needed", ("repo",), ("repo",)),
        StepSpec(StepType.BUILD, "Build Project", "Run the build locally, in a container or cross-compiled", ("repo",), ("artifacts",)),
        StepSpec(StepType.TEST, "Run Tests", "Execute the test suite", ("repo",), ("results",)),
        StepSpec(StepType.RUN_ACTION, "Run Action", "Execute a reusable action script", ("repo",), ("result",)),
        StepSpec(StepType.RUN_COMMAND, "Run Command", "Execute a custom command, offering to install it if missing", ("repo",), ("result",)),
        StepSpec(StepType.COMMIT, "Commit Changes", "Stage and commit all changes", ("repo",), ("repo",)),
        StepSpec(StepType.CREATE_RELEASE, "Create Release", "Tag, create a remote release and upload artifacts", ("artifacts",), ()),
        StepSpec(StepType.EMIT_LINK, "Link / URL", "Send a URL to connected steps", (), ("url",)),
        StepSpec(StepType.DOWNLOAD, "Download File", "Download a file from a URL to a local path", ("url",), ("filePath",)),
    )
}


def get_step_spec(step_type: StepType) -> StepSpec:
    return STEP_CATALOG[StepType(step_type)]


def check_connection(workflow: Workflow, from_step: str, to_step: str) -> Optional[str]:
    """Return the reason a new connection is invalid, or None when it may be added."""
    source = workflow.get_step(from_step)
    target = workflow.get_step(to_step)
    if source is None:
        return f"Unknown source step: {from_step}"
    if target is None:
        return f"Unknown target step: {to_step}"
    if from_step == to_step:
        return "A step cannot connect to itself"
    if not get_step_spec(source.type).outputs:
        return f"Step type '{source.type.value}' has no output ports"
    if not get_step_spec(target.type).inputs:
        return f"Step type '{target.type.value}' has no input ports"
    if any(c.key == (from_step, to_step) for c in workflow.connections):
        return f"Connection {from_step} -> {to_step} already exists"
    return None
