"""Workflow document storage, validation and edit history."""

import uuid
from collections import deque
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.catalog import check_connection, get_step_spec
from ..models.core import Connection, StepType, TimerConfig, ValidationResult, Workflow, WorkflowSummary
from ..storage.database import get_db
from ..storage.models import WorkflowModel
from .dag import find_cycle_steps
from .exceptions import StorageError, TimerMisconfigured, WorkflowNotFoundError, WorkflowValidationError
from .logging import get_logger
from .release import next_patch_version
from .trigger_scheduler import validate_timer_config

logger = get_logger(__name__)

HISTORY_LIMIT = 50


class WorkflowHistory:
    """Bounded undo/redo stack of workflow snapshots."""

    def __init__(self, limit: int = HISTORY_LIMIT):
        self.limit = limit
        self._past: deque = deque(maxlen=limit)
        self._future: List[Workflow] = []

    def push(self, snapshot: Workflow):
        """Record the state before an edit. Clears the redo stack."""
        self._past.append(snapshot.model_copy(deep=True))
        self._future.clear()

    def undo(self, current: Workflow) -> Optional[Workflow]:
        if not self._past:
            return None
        self._future.append(current.model_copy(deep=True))
        return self._past.pop()

    def redo(self, current: Workflow) -> Optional[Workflow]:
        if not self._future:
            return None
        self._past.append(current.model_copy(deep=True))
        return self._future.pop()

    @property
    def can_undo(self) -> bool:
        return bool(self._past)

    @property
    def can_redo(self) -> bool:
        return bool(self._future)

    def __len__(self):
        return len(self._past)


def validate_workflow(workflow: Workflow) -> ValidationResult:
    """
    Validate a workflow beyond what the document model enforces.

    Checks connection ports against the step catalog, cycles and trigger
    configuration. Structural rules (unique ids, existing endpoints, no
    duplicate edges) are enforced when the Workflow model is built.
    """
    errors: List[str] = []
    warnings: List[str] = []

    for connection in workflow.connections:
        source = workflow.get_step(connection.from_step)
        target = workflow.get_step(connection.to_step)
        if not get_step_spec(source.type).outputs:
            errors.append(f"Step '{source.id}' ({source.type.value}) has no output ports")
        if not get_step_spec(target.type).inputs:
            errors.append(f"Step '{target.id}' ({target.type.value}) has no input ports")

    cycle = find_cycle_steps(workflow.steps, workflow.connections)
    if cycle:
        errors.append(f"Workflow contains a cycle through steps: {', '.join(cycle)}")

    for step in workflow.steps_of_type(StepType.TRIGGER_TIMER):
        try:
            config = TimerConfig.from_step_config(step.config)
            if config.enabled:
                validate_timer_config(config, step.id)
        except TimerMisconfigured as e:
            errors.append(f"Trigger '{step.id}': {e.message}")
        except ValueError as e:
            errors.append(f"Trigger '{step.id}': invalid configuration ({e})")

    if not workflow.steps:
        warnings.append("Workflow has no steps")
    for step in workflow.steps_of_type(StepType.RUN_ACTION):
        if not step.config.get("action"):
            warnings.append(f"Action step '{step.id}' has no action selected")
    for step in workflow.steps_of_type(StepType.RUN_COMMAND):
        if not step.config.get("command"):
            warnings.append(f"Command step '{step.id}' has no command")
    if workflow.steps_of_type(StepType.CREATE_RELEASE) and not workflow.steps_of_type(StepType.BUILD):
        warnings.append("Release step without a build step will search for artifacts itself")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


class WorkflowManager:
    """Manages workflow documents, validation and storage."""

    def __init__(self, db_session: Optional[Session] = None, history_limit: int = HISTORY_LIMIT):
        """Initialize WorkflowManager with optional database session."""
        self._db_session = db_session
        self._history_limit = history_limit
        self._histories: Dict[str, WorkflowHistory] = {}

    def _get_db_session(self) -> Session:
        if self._db_session:
            return self._db_session
        return next(get_db())

    def _release(self, db: Session):
        if not self._db_session:
            db.close()

    def history(self, workflow_id: str) -> WorkflowHistory:
        if workflow_id not in self._histories:
            self._histories[workflow_id] = WorkflowHistory(self._history_limit)
        return self._histories[workflow_id]

    def _ensure_valid(self, workflow: Workflow):
        result = validate_workflow(workflow)
        if not result.is_valid:
            error_msg = f"Workflow validation failed: {'; '.join(result.errors)}"
            logger.error(error_msg)
            raise WorkflowValidationError(error_msg, validation_errors=result.errors, workflow_id=workflow.id)
        if result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(result.warnings)}")

    def create_workflow(self, workflow: Workflow) -> Workflow:
        """
        Store a new workflow.

        Raises:
            WorkflowValidationError: If validation fails or the id is taken
            StorageError: If storage operation fails
        """
        logger.info(f"Creating workflow: {workflow.name}")
        self._ensure_valid(workflow)

        db = self._get_db_session()
        try:
            if db.get(WorkflowModel, workflow.id) is not None:
                raise WorkflowValidationError(f"Workflow '{workflow.id}' already exists", workflow_id=workflow.id)
            db.add(WorkflowModel(
                id=workflow.id,
                name=workflow.name,
                document=workflow.model_dump(mode="json", by_alias=True),
                created_at=datetime.utcnow(),
            ))
            db.commit()
            logger.info(f"Created workflow '{workflow.name}' with ID: {workflow.id}")
            return workflow
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="create", table="workflows")
        finally:
            self._release(db)

    def get_workflow(self, workflow_id: str) -> Workflow:
        db = self._get_db_session()
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found", workflow_id=workflow_id)
            return Workflow.model_validate(model.document)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load workflow: {str(e)}", operation="get", table="workflows")
        finally:
            self._release(db)

    def list_workflows(self) -> List[WorkflowSummary]:
        db = self._get_db_session()
        try:
            models = db.query(WorkflowModel).order_by(WorkflowModel.created_at).all()
            return [
                WorkflowSummary(
                    id=model.id,
                    name=model.name,
                    step_count=len(model.document.get("steps", [])),
                    next_version=model.document.get("next_version", "1.0.0"),
                    created_at=model.created_at,
                    updated_at=model.updated_at,
                )
                for model in models
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list", table="workflows")
        finally:
            self._release(db)

    def list_all(self) -> List[Workflow]:
        db = self._get_db_session()
        try:
            return [Workflow.model_validate(model.document) for model in db.query(WorkflowModel).all()]
        finally:
            self._release(db)

    def update_workflow(self, workflow: Workflow, record_history: bool = True) -> Workflow:
        """Replace a stored workflow document, pushing the previous version on its undo history."""
        self._ensure_valid(workflow)
        previous = self.get_workflow(workflow.id)

        db = self._get_db_session()
        try:
            model = db.get(WorkflowModel, workflow.id)
            model.name = workflow.name
            model.document = workflow.model_dump(mode="json", by_alias=True)
            model.updated_at = datetime.utcnow()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to update workflow: {str(e)}", operation="update", table="workflows")
        finally:
            self._release(db)

        if record_history:
            self.history(workflow.id).push(previous)
        logger.info(f"Updated workflow {workflow.id}")
        return workflow

    def delete_workflow(self, workflow_id: str) -> None:
        db = self._get_db_session()
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found", workflow_id=workflow_id)
            db.delete(model)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Failed to delete workflow: {str(e)}", operation="delete", table="workflows")
        finally:
            self._release(db)
        self._histories.pop(workflow_id, None)
        logger.info(f"Deleted workflow {workflow_id}")

    def add_connection(self, workflow_id: str, from_step: str, to_step: str) -> Workflow:
        """Connect two steps when the catalog ports allow it."""
        workflow = self.get_workflow(workflow_id)
        reason = check_connection(workflow, from_step, to_step)
        if reason:
            raise WorkflowValidationError(reason, validation_errors=[reason], workflow_id=workflow_id)
        updated = workflow.model_copy(deep=True)
        updated.connections.append(Connection(id=str(uuid.uuid4()), from_step=from_step, to_step=to_step))
        return self.update_workflow(updated)

    def undo(self, workflow_id: str) -> Optional[Workflow]:
        current = self.get_workflow(workflow_id)
        previous = self.history(workflow_id).undo(current)
        if previous is None:
            return None
        return self.update_workflow(previous, record_history=False)

    def redo(self, workflow_id: str) -> Optional[Workflow]:
        current = self.get_workflow(workflow_id)
        following = self.history(workflow_id).redo(current)
        if following is None:
            return None
        return self.update_workflow(following, record_history=False)

    def record_release(self, workflow_id: str, released_version: str) -> Optional[Workflow]:
        """Advance a stored workflow's next_version past a published release."""
        try:
            workflow = self.get_workflow(workflow_id)
        except WorkflowNotFoundError:
            logger.debug(f"Released workflow {workflow_id} is not stored; version not persisted")
            return None
        workflow.next_version = next_patch_version(released_version)
        logger.info(f"Workflow {workflow_id} next version is now {workflow.next_version}")
        return self.update_workflow(workflow, record_history=False)
