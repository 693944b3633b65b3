"""Data models for the workflow engine."""

from .core import (
    StepType,
    RunStatus,
    LogSeverity,
    BuildSystem,
    TimerMode,
    ValidationResult,
    Position,
    WorkflowStep,
    Connection,
    Workflow,
    RunLogEntry,
    Run,
    RepositoryBinding,
    TimerConfig,
    ActionInput,
    ReusableAction,
    WorkflowSummary,
)
from .catalog import STEP_CATALOG, StepSpec, get_step_spec, check_connection

__all__ = [
    "StepType",
    "RunStatus",
    "LogSeverity",
    "BuildSystem",
    "TimerMode",
    "ValidationResult",
    "Position",
    "WorkflowStep",
    "Connection",
    "Workflow",
    "RunLogEntry",
    "Run",
    "RepositoryBinding",
    "TimerConfig",
    "ActionInput",
    "ReusableAction",
    "WorkflowSummary",
    "STEP_CATALOG",
    "StepSpec",
    "get_step_spec",
    "check_connection",
]
