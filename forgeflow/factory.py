"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config
from .core.action_registry import ActionRegistry
from .core.artifacts import ArtifactLocator
from .core.backends import ExecutionBackendRouter
from .core.build_system import BuildSystemDetector
from .core.error_recovery import HealthChecker
from .core.exceptions import WorkflowEngineError
from .core.execution_engine import ExecutionEngine
from .core.executor import InstallPrompt, StepExecutor
from .core.filesystem import FileSystemProbe
from .core.git_ops import GitOperations
from .core.hosting_client import HostingClient
from .core.launcher import CommandLauncher
from .core.logging import get_logger, setup_logging
from .core.release import ReleasePublisher
from .core.repositories import RepositoryStore
from .core.run_state import RunHistory
from .core.trigger_scheduler import TimerRegistry, TriggerScheduler
from .core.workflow_manager import WorkflowManager
from .storage.database import create_tables, get_database_engine, get_db


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.launcher: Optional[CommandLauncher] = None
        self.workflow_manager: Optional[WorkflowManager] = None
        self.action_registry: Optional[ActionRegistry] = None
        self.repositories: Optional[RepositoryStore] = None
        self.run_history: Optional[RunHistory] = None
        self.executor: Optional[StepExecutor] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.scheduler: Optional[TriggerScheduler] = None
        self.health_checker: Optional[HealthChecker] = None


# Global application state
app_state = ApplicationState()


def config_install_prompt(config: AppConfig) -> InstallPrompt:
    """Answer install offers with the configured auto-install setting."""
    def prompt(executable: str) -> bool:
        return config.auto_install_missing_tools
    return prompt


def build_components(
    config: AppConfig,
    launcher: Optional[CommandLauncher] = None,
    hosting_client: Optional[HostingClient] = None,
    timer_registry: Optional[TimerRegistry] = None,
    install_prompt: Optional[InstallPrompt] = None,
    state: Optional[ApplicationState] = None,
) -> ApplicationState:
    """
    Wire the engine components from configuration.

    Collaborators that touch the outside world (command launcher, hosting
    client, timer registry) may be supplied to replace the defaults.
    """
    state = state or ApplicationState()
    launcher = launcher or CommandLauncher(timeout=config.command_timeout)
    filesystem = FileSystemProbe()
    detector = BuildSystemDetector(filesystem)
    locator = ArtifactLocator(filesystem)
    git = GitOperations(launcher)
    client = hosting_client or HostingClient(config.hosting_api_url, config.hosting_token, timeout=config.http_timeout)

    state.config = config
    state.launcher = launcher
    state.workflow_manager = WorkflowManager()
    state.action_registry = ActionRegistry()
    state.repositories = RepositoryStore(detector)
    state.run_history = RunHistory()
    state.executor = StepExecutor(
        launcher,
        git,
        ExecutionBackendRouter(launcher, config.container_name, config.container_workspace),
        ReleasePublisher(git, client, locator, filesystem, max_uploads=config.max_release_uploads),
        state.action_registry,
        detector=detector,
        locator=locator,
        install_prompt=install_prompt or config_install_prompt(config),
        clone_base_url=config.clone_base_url,
        work_dir=config.work_dir,
        all_platforms=config.all_platforms,
        http_timeout=config.http_timeout,
    )
    state.execution_engine = ExecutionEngine(
        state.executor,
        workflow_manager=state.workflow_manager,
        repositories=state.repositories,
        history=state.run_history,
        overlap_policy=config.trigger_overlap_policy.value,
    )
    state.scheduler = TriggerScheduler(registry=timer_registry, poll_seconds=config.trigger_poll_seconds)
    state.scheduler.set_trigger_callback(state.execution_engine.request_run)
    state.health_checker = HealthChecker()
    return state


def setup_health_checks(state: ApplicationState, logger) -> None:
    """Set up health check functions."""

    def check_database():
        db = next(get_db())
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        return {"message": "Database connection successful"}

    def check_execution_engine():
        engine = state.execution_engine
        run = engine.current_run
        return {
            "message": "Execution engine operational",
            "busy": engine.is_busy,
            "current_run": run.id if run else None,
            "pending_triggers": len(engine.pending_triggers),
        }

    def check_scheduler():
        return {"message": "Trigger scheduler operational", "schedules": len(state.scheduler.get_schedules())}

    state.health_checker.register_check("database", check_database, timeout=state.config.health_check_timeout)
    state.health_checker.register_check("execution_engine", check_execution_engine, timeout=2.0)
    state.health_checker.register_check("trigger_scheduler", check_scheduler, timeout=2.0)
    logger.info("Health checks registered")


def sync_stored_schedules(state: ApplicationState, logger) -> int:
    """Schedule the timer triggers of every stored workflow."""
    scheduled = 0
    for workflow in state.workflow_manager.list_all():
        errors = state.scheduler.sync_workflow(workflow)
        for error in errors:
            logger.warning(f"Workflow {workflow.id}: {error}")
        scheduled += len([key for key in state.scheduler.schedule_keys() if key[0] == workflow.id])
    logger.info(f"Restored {scheduled} trigger schedule(s)")
    return scheduled


def graceful_shutdown(state: ApplicationState, logger) -> None:
    """Handle graceful shutdown of application components."""
    logger.info(f"Shutting down {state.config.app_name}")

    if state.scheduler is not None:
        state.scheduler.clear_all()
        logger.info("Trigger schedules cleared")

    if state.execution_engine is not None:
        state.execution_engine.cancel_current()
        state.execution_engine.shutdown(wait=False)


def create_app(
    config: Optional[AppConfig] = None,
    launcher: Optional[CommandLauncher] = None,
    hosting_client: Optional[HostingClient] = None,
    timer_registry: Optional[TimerRegistry] = None,
    install_prompt: Optional[InstallPrompt] = None,
) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            get_database_engine(config.database_url, echo=config.database_echo,
                                connect_args=config.get_database_connect_args())
            create_tables()
            logger.info("Database tables created")

            build_components(config, launcher, hosting_client, timer_registry, install_prompt, state=app_state)
            init_dependencies(
                workflow_manager=app_state.workflow_manager,
                execution_engine=app_state.execution_engine,
                scheduler=app_state.scheduler,
                action_registry=app_state.action_registry,
                repositories=app_state.repositories,
                run_history=app_state.run_history,
            )
            setup_health_checks(app_state, logger)
            sync_stored_schedules(app_state, logger)
        except WorkflowEngineError as e:
            logger.error(f"Application startup failed: {e.message}")
            raise

        logger.info("Application startup completed successfully")
        yield
        graceful_shutdown(app_state, logger)

    app = FastAPI(
        title=config.app_name,
        description="Visual CI/CD workflow engine: build, test and release local repositories",
        version=config.app_version,
        debug=config.debug,
        lifespan=lifespan
    )
    app.include_router(router)
    add_health_endpoints(app, config)
    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        if app_state.health_checker is None:
            return JSONResponse(
                status_code=503,
                content={"overall_status": "starting", "timestamp": datetime.utcnow().isoformat()}
            )
        results = await app_state.health_checker.run_all_checks()
        status_code = 200 if results["overall_status"] == "healthy" else 503
        return JSONResponse(
            status_code=status_code,
            content={
                "service": config.app_name.lower().replace(" ", "-"),
                "version": config.app_version,
                **results
            }
        )


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
