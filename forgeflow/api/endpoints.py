"""FastAPI REST endpoints for ForgeFlow."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, ConfigDict, Field

from ..core.action_registry import ActionRegistry
from ..core.exceptions import (
    ActionNotFound,
    ActionRegistryError,
    ConfigurationError,
    RepositoryNotFoundError,
    RunAlreadyActiveError,
    TimerMisconfigured,
    WorkflowEngineError,
    WorkflowNotFoundError,
    WorkflowValidationError,
    create_error_response,
)
from ..core.execution_engine import ExecutionEngine
from ..core.logging import get_logger
from ..core.repositories import RepositoryStore
from ..core.run_state import RunHistory
from ..core.trigger_scheduler import TriggerScheduler
from ..core.workflow_manager import WorkflowManager, validate_workflow
from ..models.core import (
    RepositoryBinding,
    ReusableAction,
    Run,
    ValidationResult,
    Workflow,
    WorkflowSummary,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["forgeflow"])

# Seconds between polls of the current run on the log stream
STREAM_POLL_INTERVAL = 0.25

# Global instances (initialized by the application lifespan)
_workflow_manager: Optional[WorkflowManager] = None
_execution_engine: Optional[ExecutionEngine] = None
_scheduler: Optional[TriggerScheduler] = None
_action_registry: Optional[ActionRegistry] = None
_repositories: Optional[RepositoryStore] = None
_run_history: Optional[RunHistory] = None


def init_dependencies(
    workflow_manager: WorkflowManager,
    execution_engine: ExecutionEngine,
    scheduler: TriggerScheduler,
    action_registry: ActionRegistry,
    repositories: RepositoryStore,
    run_history: RunHistory,
):
    """Initialize the global dependencies."""
    global _workflow_manager, _execution_engine, _scheduler, _action_registry, _repositories, _run_history
    _workflow_manager = workflow_manager
    _execution_engine = execution_engine
    _scheduler = scheduler
    _action_registry = action_registry
    _repositories = repositories
    _run_history = run_history


def _require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not initialized"
        )
    return component


def get_workflow_manager() -> WorkflowManager:
    return _require(_workflow_manager, "Workflow manager")


def get_execution_engine() -> ExecutionEngine:
    return _require(_execution_engine, "Execution engine")


def get_scheduler() -> TriggerScheduler:
    return _require(_scheduler, "Trigger scheduler")


def get_action_registry() -> ActionRegistry:
    return _require(_action_registry, "Action registry")


def get_repositories() -> RepositoryStore:
    return _require(_repositories, "Repository store")


def get_run_history() -> RunHistory:
    return _require(_run_history, "Run history")


def _http_error(error: WorkflowEngineError) -> HTTPException:
    """Map an engine error onto an HTTP error carrying the standard error body."""
    if isinstance(error, (WorkflowNotFoundError, RepositoryNotFoundError, ActionNotFound)):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, RunAlreadyActiveError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(error, (WorkflowValidationError, ActionRegistryError, TimerMisconfigured, ConfigurationError)):
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    if status_code >= 500:
        logger.error(f"Request failed: {error.message}")
    else:
        logger.warning(f"Request rejected: {error.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(error))


def _internal_error(action: str, error: Exception) -> HTTPException:
    logger.error(f"Unexpected error while {action}: {str(error)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(error)},
            "timestamp": datetime.utcnow().isoformat()
        }
    )


# Request/Response models
class WorkflowResponse(BaseModel):
    """Response model for workflow writes."""
    workflow: Workflow = Field(..., description="Stored workflow document")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")
    schedule_errors: List[str] = Field(default_factory=list, description="Trigger steps that could not be scheduled")


class ConnectionRequest(BaseModel):
    """Request model for connecting two steps."""
    model_config = ConfigDict(populate_by_name=True)

    from_step: str = Field(..., alias="from", description="Source step ID")
    to_step: str = Field(..., alias="to", description="Target step ID")


class StartRunResponse(BaseModel):
    """Response model for workflow execution."""
    run_id: str = Field(..., description="Identifier of the started run")
    message: str = Field(..., description="Success message")
    status: str = Field(..., description="Initial run status")


class BindRepositoryRequest(BaseModel):
    """Request model for binding a local checkout."""
    path: str = Field(..., description="Local path of the checkout")
    owner: Optional[str] = Field(None, description="Remote owner")
    repo: Optional[str] = Field(None, description="Remote repository name")
    default_branch: str = Field("main", description="Default branch")
    name: Optional[str] = Field(None, description="Display name")


def _write_response(workflow: Workflow, message: str, scheduler: TriggerScheduler) -> WorkflowResponse:
    warnings = validate_workflow(workflow).warnings
    schedule_errors = scheduler.sync_workflow(workflow)
    return WorkflowResponse(
        workflow=workflow,
        message=message,
        validation_warnings=warnings,
        schedule_errors=schedule_errors,
    )


# Workflows

@router.get("/workflows", response_model=List[WorkflowSummary], summary="List stored workflows")
async def list_workflows(manager: WorkflowManager = Depends(get_workflow_manager)) -> List[WorkflowSummary]:
    try:
        return manager.list_workflows()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/workflows",
    response_model=WorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
    description="Validate and store a workflow document, then schedule its timer triggers"
)
async def create_workflow(
    workflow: Workflow,
    manager: WorkflowManager = Depends(get_workflow_manager),
    scheduler: TriggerScheduler = Depends(get_scheduler)
) -> WorkflowResponse:
    """
    Create a new workflow.

    Raises:
        HTTPException: 400 when validation fails, 500 on storage errors
    """
    try:
        created = manager.create_workflow(workflow)
        return _write_response(created, f"Workflow '{created.name}' created successfully", scheduler)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("creating the workflow", e)


@router.post("/workflows/validate", response_model=ValidationResult, summary="Validate a workflow without storing it")
async def validate_workflow_document(workflow: Workflow) -> ValidationResult:
    return validate_workflow(workflow)


@router.get("/workflows/{workflow_id}", response_model=Workflow, summary="Get a workflow")
async def get_workflow(workflow_id: str, manager: WorkflowManager = Depends(get_workflow_manager)) -> Workflow:
    try:
        return manager.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.put("/workflows/{workflow_id}", response_model=WorkflowResponse, summary="Replace a workflow")
async def update_workflow(
    workflow_id: str,
    workflow: Workflow,
    manager: WorkflowManager = Depends(get_workflow_manager),
    scheduler: TriggerScheduler = Depends(get_scheduler)
) -> WorkflowResponse:
    if workflow.id != workflow_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "IdMismatch", "message": f"Body id '{workflow.id}' does not match '{workflow_id}'"}
        )
    try:
        updated = manager.update_workflow(workflow)
        return _write_response(updated, f"Workflow '{updated.name}' updated", scheduler)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("updating the workflow", e)


@router.delete("/workflows/{workflow_id}", summary="Delete a workflow and its schedules")
async def delete_workflow(
    workflow_id: str,
    manager: WorkflowManager = Depends(get_workflow_manager),
    scheduler: TriggerScheduler = Depends(get_scheduler)
) -> Dict[str, Any]:
    try:
        manager.delete_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    removed = scheduler.remove_workflow(workflow_id)
    return {"message": f"Workflow '{workflow_id}' deleted", "schedules_removed": removed}


@router.post("/workflows/{workflow_id}/connections", response_model=WorkflowResponse, summary="Connect two steps")
async def add_connection(
    workflow_id: str,
    request: ConnectionRequest,
    manager: WorkflowManager = Depends(get_workflow_manager),
    scheduler: TriggerScheduler = Depends(get_scheduler)
) -> WorkflowResponse:
    try:
        updated = manager.add_connection(workflow_id, request.from_step, request.to_step)
        return _write_response(updated, f"Connected {request.from_step} -> {request.to_step}", scheduler)
    except WorkflowEngineError as e:
        raise _http_error(e)


async def _step_history(workflow_id: str, manager: WorkflowManager, scheduler: TriggerScheduler, redo: bool):
    try:
        restored = manager.redo(workflow_id) if redo else manager.undo(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    if restored is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "NoHistory", "message": f"Nothing to {'redo' if redo else 'undo'}"}
        )
    return _write_response(restored, "Redo applied" if redo else "Undo applied", scheduler)


@router.post("/workflows/{workflow_id}/undo", response_model=WorkflowResponse, summary="Undo the last edit")
async def undo_workflow(
    workflow_id: str,
    manager: WorkflowManager = Depends(get_workflow_manager),
    scheduler: TriggerScheduler = Depends(get_scheduler)
) -> WorkflowResponse:
    return await _step_history(workflow_id, manager, scheduler, redo=False)


@router.post("/workflows/{workflow_id}/redo", response_model=WorkflowResponse, summary="Redo the last undone edit")
async def redo_workflow(
    workflow_id: str,
    manager: WorkflowManager = Depends(get_workflow_manager),
    scheduler: TriggerScheduler = Depends(get_scheduler)
) -> WorkflowResponse:
    return await _step_history(workflow_id, manager, scheduler, redo=True)


# Runs

@router.post(
    "/workflows/{workflow_id}/runs",
    response_model=StartRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run a workflow",
    description="Start a run of a stored workflow against its bound repository"
)
async def start_run(
    workflow_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> StartRunResponse:
    try:
        run = engine.start_workflow(workflow_id)
        return StartRunResponse(run_id=run.id, message="Workflow run started", status=run.status.value)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("starting the run", e)


@router.get("/runs/current", response_model=Run, summary="Get the current run")
async def get_current_run(engine: ExecutionEngine = Depends(get_execution_engine)) -> Run:
    run = engine.current_run
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "NoCurrentRun", "message": "No run has been started"}
        )
    return run


@router.post("/runs/current/cancel", summary="Cancel the current run")
async def cancel_current_run(engine: ExecutionEngine = Depends(get_execution_engine)) -> Dict[str, Any]:
    cancelled = engine.cancel_current()
    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "NotRunning", "message": "No run is in progress"}
        )
    return {"message": "Run cancelled", "run_id": engine.current_run.id}


@router.get("/runs", response_model=List[Run], summary="List past runs, newest first")
async def list_runs(
    workflow_id: Optional[str] = Query(None, description="Only runs of this workflow"),
    limit: int = Query(50, ge=1, le=500),
    history: RunHistory = Depends(get_run_history)
) -> List[Run]:
    try:
        return history.list(workflow_id=workflow_id, limit=limit)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/runs/{run_id}", response_model=Run, summary="Get a past run")
async def get_run(run_id: str, history: RunHistory = Depends(get_run_history)) -> Run:
    try:
        run = history.get(run_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "RunNotFound", "message": f"Run '{run_id}' not found"}
        )
    return run


# Reusable actions

@router.get("/actions", response_model=List[ReusableAction], summary="List reusable actions")
async def list_actions(registry: ActionRegistry = Depends(get_action_registry)) -> List[ReusableAction]:
    try:
        return registry.list_actions()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/actions", response_model=ReusableAction, status_code=status.HTTP_201_CREATED,
             summary="Register a reusable action")
async def register_action(
    action: ReusableAction,
    replace: bool = Query(False, description="Overwrite an existing action of the same name"),
    registry: ActionRegistry = Depends(get_action_registry)
) -> ReusableAction:
    try:
        return registry.register_action(action, replace=replace)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.delete("/actions/{name}", summary="Delete a reusable action")
async def delete_action(name: str, registry: ActionRegistry = Depends(get_action_registry)) -> Dict[str, str]:
    try:
        registry.delete_action(name)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return {"message": f"Action '{name}' deleted"}


# Repositories

@router.get("/repositories", response_model=List[RepositoryBinding], summary="List repository bindings")
async def list_repositories(store: RepositoryStore = Depends(get_repositories)) -> List[RepositoryBinding]:
    return store.list()


@router.post("/repositories", response_model=RepositoryBinding, status_code=status.HTTP_201_CREATED,
             summary="Bind a local checkout")
async def bind_repository(
    request: BindRepositoryRequest,
    store: RepositoryStore = Depends(get_repositories)
) -> RepositoryBinding:
    try:
        return store.bind(
            request.path,
            owner=request.owner,
            repo=request.repo,
            default_branch=request.default_branch,
            name=request.name,
        )
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/repositories/{repository_id}", response_model=RepositoryBinding, summary="Get a repository binding")
async def get_repository(repository_id: str, store: RepositoryStore = Depends(get_repositories)) -> RepositoryBinding:
    try:
        return store.get(repository_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/repositories/{repository_id}/refresh", response_model=RepositoryBinding,
             summary="Re-detect the build system of a binding")
async def refresh_repository(repository_id: str, store: RepositoryStore = Depends(get_repositories)) -> RepositoryBinding:
    try:
        return store.refresh(repository_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.delete("/repositories/{repository_id}", summary="Remove a repository binding")
async def delete_repository(repository_id: str, store: RepositoryStore = Depends(get_repositories)) -> Dict[str, str]:
    try:
        store.delete(repository_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return {"message": f"Repository '{repository_id}' removed"}


# Schedules

@router.get("/schedules", summary="List active timer triggers")
async def list_schedules(scheduler: TriggerScheduler = Depends(get_scheduler)) -> List[Dict[str, Any]]:
    return [schedule.to_dict() for schedule in scheduler.get_schedules()]


# Live run log

@router.websocket("/ws/runs/current")
async def stream_current_run(websocket: WebSocket):
    """
    Stream the current run's log entries until the run is terminal.

    Messages are ``{"type": "log", "entry": ...}`` for each new entry, one
    ``{"type": "status", ...}`` per progress change and a final
    ``{"type": "finished", "run": ...}``. With no current run an ``idle``
    message is sent and the socket is closed.
    """
    await websocket.accept()
    engine = _execution_engine
    if engine is None or engine.current_context is None:
        await websocket.send_json({"type": "idle"})
        await websocket.close()
        return

    ctx = engine.current_context
    sent = 0
    last_status = None
    try:
        while True:
            run = ctx.snapshot()
            for entry in run.logs[sent:]:
                await websocket.send_json({"type": "log", "entry": entry.model_dump(mode="json")})
            sent = len(run.logs)

            current_status = (run.status.value, run.progress, run.current_step_id)
            if current_status != last_status:
                await websocket.send_json({
                    "type": "status",
                    "status": run.status.value,
                    "progress": run.progress,
                    "current_step_id": run.current_step_id,
                })
                last_status = current_status

            if run.status.is_terminal:
                await websocket.send_json({"type": "finished", "run": run.model_dump(mode="json")})
                await websocket.close()
                return
            await asyncio.sleep(STREAM_POLL_INTERVAL)
    except WebSocketDisconnect:
        logger.info(f"Log stream client for run {ctx.run_id} disconnected")
