"""Core Pydantic models for the workflow engine."""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


_STEP_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.:-]+$')
_CLOCK_PATTERN = re.compile(r'^([01]?\d|2[0-3]):([0-5]\d)$')

WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


class StepType(str, Enum):
    """Closed catalog of workflow step types."""
    TRIGGER_TIMER = "timer"
    CLONE = "clone"
    PULL = "pull"
    SYNC_PUSH = "sync_push"
    PUSH = "push"
    CHECKOUT = "checkout"
    BUILD = "build"
    TEST = "test"
    RUN_ACTION = "action"
    RUN_COMMAND = "command"
    COMMIT = "commit"
    CREATE_RELEASE = "release"
    EMIT_LINK = "link"
    DOWNLOAD = "download"


class RunStatus(str, Enum):
    """Enumeration of run statuses. Everything but RUNNING is terminal."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class LogSeverity(str, Enum):
    """Severity of a run log entry."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"
    COMMAND = "command"


class BuildSystem(str, Enum):
    """Build ecosystems recognised by the build-system detector."""
    WAILS = "wails"
    TAURI = "tauri"
    ELECTRON = "electron"
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"
    CARGO = "cargo"
    GO = "go"
    GRADLE = "gradle"
    MAVEN = "maven"
    CMAKE = "cmake"
    MAKE = "make"
    PYTHON = "python"
    DOTNET = "dotnet"
    UNKNOWN = "unknown"


class TimerMode(str, Enum):
    """Recurring trigger modes."""
    INTERVAL = "interval"
    DAILY = "daily"
    WEEKLY = "weekly"
    COMBINED = "combined"


class ValidationResult(BaseModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class Position(BaseModel):
    """Canvas position of a step. Presentation-only."""
    x: float = 0.0
    y: float = 0.0


class WorkflowStep(BaseModel):
    """A node of the workflow graph."""
    id: str = Field(..., description="Unique identifier for the step")
    type: StepType = Field(..., description="Step type tag from the closed catalog")
    position: Position = Field(default_factory=Position, description="Canvas position")
    config: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure step ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Step ID cannot be empty")
        if not _STEP_ID_PATTERN.match(id_value.strip()):
            raise ValueError("Step ID must contain only alphanumeric characters, '.', ':', '_' and '-'")
        return id_value.strip()


class Connection(BaseModel):
    """Directed edge between two steps."""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(None, description="Connection identifier")
    from_step: str = Field(..., alias="from", description="Source step ID")
    to_step: str = Field(..., alias="to", description="Target step ID")

    @field_validator('from_step', 'to_step')
    @classmethod
    def validate_step_ids(cls, step_id):
        if not step_id or not step_id.strip():
            raise ValueError("Step ID cannot be empty")
        return step_id.strip()

    @model_validator(mode='after')
    def validate_edge(self):
        if self.from_step == self.to_step:
            raise ValueError("Self-referencing connections are not allowed")
        return self

    @property
    def key(self):
        return (self.from_step, self.to_step)


class Workflow(BaseModel):
    """Persisted workflow document: steps, connections, version counter and variables."""
    id: str = Field(..., description="Workflow identifier")
    name: str = Field(..., description="Display name")
    repo_id: Optional[str] = Field(None, description="Bound repository reference")
    steps: List[WorkflowStep] = Field(default_factory=list, description="Ordered step list")
    connections: List[Connection] = Field(default_factory=list, description="Connection list")
    next_version: str = Field("1.0.0", description="Version the next release will carry")
    variables: Dict[str, str] = Field(default_factory=dict, description="Named workflow variables")

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @field_validator('steps')
    @classmethod
    def validate_unique_step_ids(cls, steps):
        step_ids = [step.id for step in steps]
        if len(step_ids) != len(set(step_ids)):
            raise ValueError("All step IDs must be unique")
        return steps

    @model_validator(mode='after')
    def validate_connections(self):
        """Both endpoints must exist and no ordered pair may repeat."""
        step_ids = {step.id for step in self.steps}
        seen = set()
        for connection in self.connections:
            if connection.from_step not in step_ids:
                raise ValueError(f"Connection references non-existent source step: {connection.from_step}")
            if connection.to_step not in step_ids:
                raise ValueError(f"Connection references non-existent target step: {connection.to_step}")
            if connection.key in seen:
                raise ValueError(
                    f"Duplicate connection: {connection.from_step} -> {connection.to_step}"
                )
            seen.add(connection.key)
        return self

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def steps_of_type(self, step_type: StepType) -> List[WorkflowStep]:
        return [step for step in self.steps if step.type == step_type]

    def predecessors(self, step_id: str) -> List[str]:
        return [c.from_step for c in self.connections if c.to_step == step_id]


class RunLogEntry(BaseModel):
    """Append-only run log entry."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Time of the entry")
    level: LogSeverity = Field(..., description="Severity")
    message: str = Field(..., description="Log message")
    step_id: Optional[str] = Field(None, description="Owning step, if any")


class Run(BaseModel):
    """Live state of a workflow run, observed by the presentation layer."""
    id: str = Field(..., description="Run identifier")
    workflow_id: str = Field(..., description="Owning workflow")
    status: RunStatus = Field(RunStatus.RUNNING, description="Run status")
    progress: int = Field(0, ge=0, le=100, description="Progress percentage")
    current_step_id: Optional[str] = Field(None, description="Currently executing step")
    logs: List[RunLogEntry] = Field(default_factory=list, description="Append-only log")
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = Field(None)
    error_message: Optional[str] = Field(None)
    trigger: str = Field("manual", description="What started the run (manual, timer)")
    released_version: Optional[str] = Field(None, description="Version published by a release step")


class RepositoryBinding(BaseModel):
    """Local checkout bound to a workflow. Read-only input to the engine."""
    id: str = Field(..., description="Binding identifier")
    path: str = Field(..., description="Local filesystem path of the checkout")
    name: Optional[str] = Field(None, description="Display name")
    owner: Optional[str] = Field(None, description="Remote owner")
    repo: Optional[str] = Field(None, description="Remote repository name")
    build_system: BuildSystem = Field(BuildSystem.UNKNOWN, description="Detected build system")
    default_branch: str = Field("main", description="Default branch")
    latest_version: Optional[str] = Field(None, description="Cached latest release version")

    @property
    def full_name(self) -> Optional[str]:
        if self.owner and self.repo:
            return f"{self.owner}/{self.repo}"
        return None


class TimerConfig(BaseModel):
    """Recurring trigger configuration carried by a trigger-timer step."""
    mode: TimerMode = Field(TimerMode.INTERVAL, description="Trigger mode")
    interval_hours: Optional[float] = Field(None, description="Period for interval mode")
    time: Optional[str] = Field(None, description="Clock time HH:MM for daily/combined mode")
    day_of_week: Optional[str] = Field(None, description="Weekday name for weekly/combined mode")
    enabled: bool = Field(False, description="Whether the trigger is active")

    @field_validator('time')
    @classmethod
    def validate_time(cls, value):
        if value is None or value == "":
            return None
        if not _CLOCK_PATTERN.match(value.strip()):
            raise ValueError(f"Invalid clock time '{value}', expected HH:MM")
        return value.strip()

    @field_validator('day_of_week')
    @classmethod
    def validate_day(cls, value):
        if value is None or value == "":
            return None
        normalized = value.strip().capitalize()
        if normalized not in WEEKDAY_NAMES:
            raise ValueError(f"Invalid weekday '{value}'")
        return normalized

    @property
    def clock(self) -> Optional[tuple]:
        """The configured (hour, minute), if any."""
        if not self.time:
            return None
        hour, minute = self.time.split(":")
        return int(hour), int(minute)

    @classmethod
    def from_step_config(cls, config: Dict[str, Any]) -> "TimerConfig":
        """Build a timer config from a trigger-timer step's configuration map."""
        return cls(
            mode=config.get("mode") or TimerMode.INTERVAL,
            interval_hours=config.get("interval_hours"),
            time=config.get("time"),
            day_of_week=config.get("day_of_week"),
            enabled=bool(config.get("enabled", False)),
        )


class ActionInput(BaseModel):
    """Declared input of a reusable action."""
    name: str = Field(..., description="Environment variable name")
    description: str = Field("", description="Input description")
    required: bool = Field(False, description="Whether a value must be supplied")
    default: Optional[str] = Field(None, description="Default value")

    @field_validator('name')
    @classmethod
    def validate_env_name(cls, name):
        if not re.match(r'^[A-Za-z_][A-Za-z0-9_]*$', name or ""):
            raise ValueError(f"Input name '{name}' is not a valid environment variable name")
        return name


class ReusableAction(BaseModel):
    """Named shell script with typed input declarations."""
    name: str = Field(..., description="Unique action name")
    description: str = Field("", description="Action description")
    script: str = Field(..., description="Shell script body")
    inputs: List[ActionInput] = Field(default_factory=list, description="Declared inputs")

    @field_validator('name')
    @classmethod
    def validate_name(cls, name):
        if not name or not name.strip():
            raise ValueError("Action name cannot be empty")
        return name.strip()


class WorkflowSummary(BaseModel):
    """Summary information about a stored workflow."""
    id: str
    name: str
    step_count: int
    next_version: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
