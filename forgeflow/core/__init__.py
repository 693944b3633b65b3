"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    WorkflowValidationError,
    WorkflowCycleError,
    StepExecutionError,
    RunAlreadyActiveError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .launcher import CommandLauncher, CommandResult, FailureReason, classify_failure
from .run_state import RunContext, RunHistory
from .executor import StepExecutor
from .execution_engine import ExecutionEngine
from .trigger_scheduler import TriggerScheduler
from .workflow_manager import WorkflowManager, validate_workflow
from .action_registry import ActionRegistry
from .repositories import RepositoryStore

__all__ = [
    "WorkflowEngineError",
    "WorkflowValidationError",
    "WorkflowCycleError",
    "StepExecutionError",
    "RunAlreadyActiveError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "CommandLauncher",
    "CommandResult",
    "FailureReason",
    "classify_failure",
    "RunContext",
    "RunHistory",
    "StepExecutor",
    "ExecutionEngine",
    "TriggerScheduler",
    "WorkflowManager",
    "validate_workflow",
    "ActionRegistry",
    "RepositoryStore",
]
