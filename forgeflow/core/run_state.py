"""Run context, run log recording and run-history persistence."""

import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..models.core import (
    LogSeverity, RepositoryBinding, Run, RunLogEntry, RunStatus, StepType, Workflow, WorkflowStep,
)
from ..storage.database import get_db
from ..storage.models import WorkflowRunModel
from .error_recovery import RetryConfig, with_retry
from .exceptions import StorageError
from .logging import get_logger

logger = get_logger(__name__)

_MIRROR_LEVELS = {
    LogSeverity.INFO: logging.INFO,
    LogSeverity.COMMAND: logging.INFO,
    LogSeverity.SUCCESS: logging.INFO,
    LogSeverity.WARN: logging.WARNING,
    LogSeverity.ERROR: logging.ERROR,
}


class RunContext:
    """Explicit state of one run, passed to the scheduler and every step handler.

    Holds the observable Run, the step-output map keyed by step id and the
    per-run flags used by collaborators (such as container dependency
    installation happening only once per run). The run log is append-only and
    every entry is mirrored to the process logger.
    """

    def __init__(self, workflow: Workflow, repository: RepositoryBinding,
                 run: Optional[Run] = None, trigger: str = "manual"):
        self.workflow = workflow
        self.repository = repository
        self.run = run or Run(id=str(uuid.uuid4()), workflow_id=workflow.id, trigger=trigger)
        self.outputs: Dict[str, Dict[str, Any]] = {}
        self._executed: List[Tuple[str, StepType]] = []
        self._flags: set = set()
        self._lock = threading.RLock()
        self._process_logger = get_logger("forgeflow.run")

    @property
    def run_id(self) -> str:
        return self.run.id

    @property
    def is_cancelled(self) -> bool:
        return self.run.status == RunStatus.CANCELLED

    # Run log ---------------------------------------------------------------

    def log(self, level: LogSeverity, message: str, step_id: Optional[str] = None) -> RunLogEntry:
        """Append a log entry to the run and mirror it to the process log."""
        with self._lock:
            entry = RunLogEntry(
                level=level,
                message=message,
                step_id=step_id if step_id is not None else self.run.current_step_id,
            )
            self.run.logs.append(entry)
        self._process_logger.log(
            _MIRROR_LEVELS[LogSeverity(level)], message,
            extra={"run_id": self.run.id, "step_id": entry.step_id, "severity": entry.level.value},
        )
        return entry

    def info(self, message: str) -> RunLogEntry:
        return self.log(LogSeverity.INFO, message)

    def warn(self, message: str) -> RunLogEntry:
        return self.log(LogSeverity.WARN, message)

    def error(self, message: str) -> RunLogEntry:
        return self.log(LogSeverity.ERROR, message)

    def success(self, message: str) -> RunLogEntry:
        return self.log(LogSeverity.SUCCESS, message)

    def command(self, message: str) -> RunLogEntry:
        return self.log(LogSeverity.COMMAND, message)

    # Step bookkeeping ------------------------------------------------------

    def begin_step(self, step: WorkflowStep, index: int, total: int):
        """Mark a step current and report progress against the sequential step count."""
        with self._lock:
            self.run.current_step_id = step.id
            self.run.progress = round((index + 1) / total * 100) if total else 100
            self._executed.append((step.id, step.type))
            self.outputs.setdefault(step.id, {})

    def set_output(self, step_id: str, key: str, value: Any):
        with self._lock:
            self.outputs.setdefault(step_id, {})[key] = value

    def get_output(self, step_id: str, key: str, default: Any = None) -> Any:
        return self.outputs.get(step_id, {}).get(key, default)

    def find_output(self, step_type: StepType, key: str, latest: bool = False) -> Any:
        """Return ``key`` from an already-executed step of the given type.

        The earliest producing step wins unless ``latest`` is set.
        """
        executed = reversed(self._executed) if latest else iter(self._executed)
        for step_id, executed_type in executed:
            if executed_type == step_type and key in self.outputs.get(step_id, {}):
                return self.outputs[step_id][key]
        return None

    def collect_outputs(self, step_type: StepType, key: str) -> List[Any]:
        """Every value of ``key`` recorded by executed steps of the given type, in execution order."""
        return [
            self.outputs[step_id][key]
            for step_id, executed_type in self._executed
            if executed_type == step_type and key in self.outputs.get(step_id, {})
        ]

    def upstream_output(self, step_id: str, key: str) -> Any:
        """Return ``key`` from the nearest direct predecessor that recorded it."""
        for predecessor in self.workflow.predecessors(step_id):
            value = self.get_output(predecessor, key)
            if value is not None:
                return value
        return None

    def first_use(self, flag: str) -> bool:
        """True exactly once per run for each flag."""
        with self._lock:
            if flag in self._flags:
                return False
            self._flags.add(flag)
            return True

    # Status transitions ----------------------------------------------------

    def cancel(self) -> bool:
        """Flip the run to cancelled. In-flight external commands are not interrupted."""
        with self._lock:
            if self.run.status.is_terminal:
                return False
            self.run.status = RunStatus.CANCELLED
            self.run.finished_at = datetime.utcnow()
        self.warn("Run cancelled by user")
        return True

    def finish(self, status: RunStatus, error_message: Optional[str] = None) -> bool:
        """Move a running run into a terminal status. A cancelled run stays cancelled."""
        with self._lock:
            if self.run.status.is_terminal:
                return False
            self.run.status = status
            self.run.error_message = error_message
            self.run.finished_at = datetime.utcnow()
            if status == RunStatus.SUCCESS:
                self.run.progress = 100
            self.run.current_step_id = None
            return True

    def snapshot(self) -> Run:
        with self._lock:
            return self.run.model_copy(deep=True)


class RunHistory:
    """Persists run snapshots to the workflow_runs table."""

    @with_retry(RetryConfig(max_attempts=3, base_delay=0.2, retryable_exceptions=[StorageError]))
    def save(self, run: Run) -> None:
        db = next(get_db())
        try:
            model = db.get(WorkflowRunModel, run.id)
            if model is None:
                model = WorkflowRunModel(id=run.id, workflow_id=run.workflow_id)
                db.add(model)
            model.status = run.status.value
            model.progress = run.progress
            model.current_step_id = run.current_step_id
            model.trigger = run.trigger
            model.logs = [entry.model_dump(mode="json") for entry in run.logs]
            model.error_message = run.error_message
            model.released_version = run.released_version
            model.started_at = run.started_at
            model.finished_at = run.finished_at
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to persist run {run.id}: {str(e)}", operation="save_run", table="workflow_runs")
        finally:
            db.close()

    def get(self, run_id: str) -> Optional[Run]:
        db = next(get_db())
        try:
            model = db.get(WorkflowRunModel, run_id)
            return self._to_run(model) if model else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load run {run_id}: {str(e)}", operation="get_run", table="workflow_runs")
        finally:
            db.close()

    def list(self, workflow_id: Optional[str] = None, limit: int = 50) -> List[Run]:
        """Most recent runs first."""
        db = next(get_db())
        try:
            query = db.query(WorkflowRunModel)
            if workflow_id:
                query = query.filter(WorkflowRunModel.workflow_id == workflow_id)
            models = query.order_by(WorkflowRunModel.started_at.desc()).limit(limit).all()
            return [self._to_run(model) for model in models]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list runs: {str(e)}", operation="list_runs", table="workflow_runs")
        finally:
            db.close()

    @staticmethod
    def _to_run(model: WorkflowRunModel) -> Run:
        return Run(
            id=model.id,
            workflow_id=model.workflow_id,
            status=RunStatus(model.status),
            progress=model.progress or 0,
            current_step_id=model.current_step_id,
            logs=[RunLogEntry(**entry) for entry in (model.logs or [])],
            started_at=model.started_at,
            finished_at=model.finished_at,
            error_message=model.error_message,
            trigger=model.trigger or "manual",
            released_version=model.released_version,
        )
