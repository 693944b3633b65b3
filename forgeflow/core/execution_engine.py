"""Execution engine: drives the single current run of the process."""

import os
import shutil
import threading
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from ..models.catalog import get_step_spec
from ..models.core import RepositoryBinding, Run, RunStatus, StepType, Workflow
from .dag import topological_order
from .exceptions import ConfigurationError, RunAlreadyActiveError, StorageError, WorkflowEngineError
from .executor import StepExecutor
from .logging import clear_logging_context, get_logger, set_logging_context
from .repositories import RepositoryStore
from .run_state import RunContext, RunHistory
from .workflow_manager import WorkflowManager

logger = get_logger(__name__)

OVERLAP_DROP = "drop"
OVERLAP_QUEUE = "queue"


class ExecutionEngine:
    """
    Runs workflows one at a time.

    A run is driven on a single background worker: steps execute strictly in
    topological order, the first fatal error fails the run, and cancellation
    only takes effect between steps. Triggers that arrive while a run is
    active are dropped or queued according to ``overlap_policy``.
    """

    def __init__(
        self,
        executor: StepExecutor,
        workflow_manager: Optional[WorkflowManager] = None,
        repositories: Optional[RepositoryStore] = None,
        history: Optional[RunHistory] = None,
        overlap_policy: str = OVERLAP_DROP,
    ):
        """Initialize the execution engine.

        Args:
            executor: Step executor used for every step of a run
            workflow_manager: Resolves workflow ids and records released versions
            repositories: Resolves the repository binding of a workflow
            history: Persists finished runs; runs are kept in memory only when omitted
            overlap_policy: ``drop`` or ``queue`` for triggers that arrive during a run
        """
        if overlap_policy not in (OVERLAP_DROP, OVERLAP_QUEUE):
            raise ConfigurationError(f"Unknown overlap policy: {overlap_policy}", config_key="trigger_overlap_policy")
        self.executor = executor
        self.workflow_manager = workflow_manager
        self.repositories = repositories
        self.history = history
        self.overlap_policy = overlap_policy

        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="forgeflow-run")
        self._lock = threading.RLock()
        self._current: Optional[RunContext] = None
        self._future: Optional[Future] = None
        self._pending: "OrderedDict[str, str]" = OrderedDict()

        logger.info(f"ExecutionEngine initialized with overlap_policy={overlap_policy}")

    # Observation -----------------------------------------------------------

    @property
    def current_context(self) -> Optional[RunContext]:
        return self._current

    @property
    def current_run(self) -> Optional[Run]:
        """Snapshot of the current (or most recently finished) run."""
        ctx = self._current
        return ctx.snapshot() if ctx else None

    @property
    def is_busy(self) -> bool:
        ctx = self._current
        return ctx is not None and not ctx.run.status.is_terminal

    @property
    def pending_triggers(self):
        with self._lock:
            return list(self._pending.items())

    # Starting runs ---------------------------------------------------------

    def _claim(self, workflow: Workflow, repository: RepositoryBinding, trigger: str) -> RunContext:
        with self._lock:
            if self.is_busy:
                active = self._current.run_id
                raise RunAlreadyActiveError(f"Run {active} is still in progress", run_id=active)
            ctx = RunContext(workflow, repository, trigger=trigger)
            self._current = ctx
            return ctx

    def start_run(self, workflow: Workflow, repository: RepositoryBinding, trigger: str = "manual") -> Run:
        """
        Start a run in the background and return its initial snapshot.

        Raises:
            RunAlreadyActiveError: If another run is still running
        """
        ctx = self._claim(workflow, repository, trigger)
        logger.info(f"Starting run {ctx.run_id} for workflow {workflow.id} ({trigger})")
        self._future = self._pool.submit(self._drive, ctx)
        return ctx.snapshot()

    def run_sync(self, workflow: Workflow, repository: RepositoryBinding, trigger: str = "manual") -> Run:
        """Drive a run to completion on the calling thread."""
        ctx = self._claim(workflow, repository, trigger)
        self._drive(ctx)
        return ctx.snapshot()

    def start_workflow(self, workflow_id: str, trigger: str = "manual") -> Run:
        """Start a stored workflow against its bound repository."""
        workflow = self._require_manager().get_workflow(workflow_id)
        return self.start_run(workflow, self.resolve_repository(workflow), trigger=trigger)

    def request_run(self, workflow_id: str, step_id: Optional[str] = None) -> Optional[Run]:
        """
        Trigger callback for the recurring scheduler.

        Applies the overlap policy when a run is active. Failures to start are
        logged rather than raised since timers have no caller to report to.
        """
        with self._lock:
            if self.is_busy:
                active = self._current.run_id
                if self.overlap_policy == OVERLAP_QUEUE:
                    if workflow_id in self._pending:
                        logger.info(f"Trigger for workflow {workflow_id} already queued")
                    else:
                        self._pending[workflow_id] = step_id
                        logger.info(f"Queued trigger {workflow_id}/{step_id} behind run {active}")
                else:
                    logger.warning(f"Dropped trigger {workflow_id}/{step_id}: run {active} is in progress")
                return None

        try:
            return self.start_workflow(workflow_id, trigger="timer")
        except WorkflowEngineError as e:
            logger.error(f"Trigger {workflow_id}/{step_id} could not start a run: {e.message}")
            return None

    def resolve_repository(self, workflow: Workflow) -> RepositoryBinding:
        if not workflow.repo_id:
            raise ConfigurationError(f"Workflow '{workflow.id}' has no repository binding", config_key="repo_id")
        if self.repositories is None:
            raise ConfigurationError("No repository store configured", config_key="repositories")
        return self.repositories.get(workflow.repo_id)

    def _require_manager(self) -> WorkflowManager:
        if self.workflow_manager is None:
            raise ConfigurationError("No workflow manager configured", config_key="workflow_manager")
        return self.workflow_manager

    # Control ---------------------------------------------------------------

    def cancel_current(self) -> bool:
        """Mark the current run cancelled. A step already in flight runs to completion."""
        ctx = self._current
        if ctx is None:
            return False
        cancelled = ctx.cancel()
        if cancelled:
            logger.info(f"Run {ctx.run_id} cancelled")
        return cancelled

    def wait(self, timeout: Optional[float] = None) -> Optional[Run]:
        """Block until the most recently started background run has finished."""
        future = self._future
        if future is not None:
            future.result(timeout=timeout)
        return self.current_run

    def shutdown(self, wait: bool = True):
        with self._lock:
            self._pending.clear()
        self._pool.shutdown(wait=wait)
        logger.info("ExecutionEngine shut down")

    # Run driver ------------------------------------------------------------

    def _drive(self, ctx: RunContext):
        workflow = ctx.workflow
        set_logging_context(run_id=ctx.run_id, workflow_id=workflow.id)
        try:
            ctx.info(f"Starting workflow: {workflow.name}")
            ctx.info(f"Repository: {ctx.repository.path}")
            order = topological_order(workflow.steps, workflow.connections)
            total = len(order)
            for index, step in enumerate(order):
                if ctx.is_cancelled:
                    break
                ctx.begin_step(step, index, total)
                ctx.info(f"Executing: {get_step_spec(step.type).name}")
                self.executor.execute(ctx, step)

            if not ctx.is_cancelled:
                ctx.success("Workflow completed successfully")
                ctx.finish(RunStatus.SUCCESS)
        except WorkflowEngineError as e:
            ctx.error(f"Workflow failed: {e.message}")
            ctx.finish(RunStatus.FAILED, e.message)
        except Exception as e:
            logger.error(f"Unexpected error in run {ctx.run_id}: {str(e)}", exc_info=True)
            ctx.error(f"Workflow failed: {str(e)}")
            ctx.finish(RunStatus.FAILED, str(e))
        finally:
            self._remove_clones(ctx)
            self._persist(ctx)
            self._record_release(ctx)
            clear_logging_context()
            logger.info(f"Run {ctx.run_id} finished with status {ctx.run.status.value}")
        self._start_pending()

    def _remove_clones(self, ctx: RunContext):
        """Best-effort removal of temporary clones the run left behind."""
        for directory in ctx.collect_outputs(StepType.CLONE, "build_dir"):
            if not directory or directory == ctx.repository.path or not os.path.isdir(directory):
                continue
            try:
                shutil.rmtree(directory)
                logger.info(f"Removed temporary clone {directory}")
            except OSError as e:
                logger.warning(f"Temporary clone {directory} could not be removed: {e}")

    def _persist(self, ctx: RunContext):
        if self.history is None:
            return
        try:
            self.history.save(ctx.snapshot())
        except StorageError as e:
            logger.error(f"Run {ctx.run_id} could not be saved: {e.message}")

    def _record_release(self, ctx: RunContext):
        released = ctx.run.released_version
        if not released or ctx.run.status != RunStatus.SUCCESS:
            return
        try:
            if self.workflow_manager is not None:
                self.workflow_manager.record_release(ctx.workflow.id, released)
            if self.repositories is not None:
                self.repositories.record_latest_version(ctx.repository.id, released)
        except WorkflowEngineError as e:
            logger.warning(f"Released version {released} could not be recorded: {e.message}")

    def _start_pending(self):
        with self._lock:
            if not self._pending or self.is_busy:
                return
            workflow_id, step_id = self._pending.popitem(last=False)
        logger.info(f"Starting queued trigger {workflow_id}/{step_id}")
        self.request_run(workflow_id, step_id)
