"""Step executor: one handler per step type, dispatched through a lookup table."""

import os
import shlex
import tempfile
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

import requests

from ..models.core import BuildSystem, StepType, WorkflowStep
from .action_registry import ActionRegistry, render_action_script, resolve_action_inputs
from .artifacts import ArtifactLocator
from .backends import BuildTarget, ExecutionBackendRouter
from .build_system import BuildSystemDetector, default_build_command, default_test_command
from .exceptions import (
    BuildCommandUnresolved, ConfigurationError, StepExecutionError, ToolNotFound, WorkflowEngineError,
)
from .filesystem import FileSystemProbe
from .git_ops import GitOperations
from .launcher import CommandLauncher, FailureReason, PackageInstaller, raise_for_result
from .logging import get_logger, RecoveryLogger
from .release import ReleasePublisher, next_patch_version, sanitize_version
from .run_state import RunContext

logger = get_logger(__name__)

# Asked whether a missing executable may be installed; returns the user's choice.
InstallPrompt = Callable[[str], bool]
StepHandler = Callable[[RunContext, WorkflowStep], None]

DEFAULT_PLATFORMS = ["linux", "windows", "macos"]


def decline_install(executable: str) -> bool:
    return False


class StepExecutor:
    """
    Executes single workflow steps against the run context.

    Non-fatal taxonomy errors raised by a handler are absorbed here as warn
    log entries; every other error propagates to the run driver.
    """

    def __init__(
        self,
        launcher: CommandLauncher,
        git: GitOperations,
        router: ExecutionBackendRouter,
        publisher: ReleasePublisher,
        actions: ActionRegistry,
        detector: Optional[BuildSystemDetector] = None,
        locator: Optional[ArtifactLocator] = None,
        installer: Optional[PackageInstaller] = None,
        install_prompt: Optional[InstallPrompt] = None,
        clone_base_url: str = "https://github.com",
        work_dir: Optional[str] = None,
        all_platforms=None,
        http_timeout: float = 30.0,
        http_session: Optional[requests.Session] = None,
    ):
        self.launcher = launcher
        self.git = git
        self.router = router
        self.publisher = publisher
        self.actions = actions
        self.filesystem = FileSystemProbe()
        self.detector = detector or BuildSystemDetector(self.filesystem)
        self.locator = locator or ArtifactLocator(self.filesystem)
        self.installer = installer or PackageInstaller(launcher)
        self.install_prompt = install_prompt or decline_install
        self.clone_base_url = clone_base_url.rstrip("/")
        self.work_dir = work_dir
        self.all_platforms = list(all_platforms or DEFAULT_PLATFORMS)
        self.http_timeout = http_timeout
        self.http_session = http_session or requests.Session()
        self.recovery = RecoveryLogger("executor")

        self._handlers: Dict[StepType, StepHandler] = {
            StepType.TRIGGER_TIMER: self._run_trigger_timer,
            StepType.CLONE: self._run_clone,
            StepType.PULL: self._run_pull,
            StepType.SYNC_PUSH: self._run_sync_push,
            StepType.PUSH: self._run_push,
            StepType.CHECKOUT: self._run_checkout,
            StepType.BUILD: self._run_build,
            StepType.TEST: self._run_test,
            StepType.RUN_ACTION: self._run_action,
            StepType.RUN_COMMAND: self._run_command,
            StepType.COMMIT: self._run_commit,
            StepType.CREATE_RELEASE: self._run_release,
            StepType.EMIT_LINK: self._run_emit_link,
            StepType.DOWNLOAD: self._run_download,
        }
        missing = set(StepType) - set(self._handlers)
        if missing:
            raise ConfigurationError(f"No handler for step types: {sorted(t.value for t in missing)}")

    def execute(self, ctx: RunContext, step: WorkflowStep) -> None:
        """
        Execute one step.

        Raises:
            WorkflowEngineError: Any fatal failure of the step
        """
        handler = self._handlers[step.type]
        try:
            handler(ctx, step)
        except WorkflowEngineError as e:
            if e.fatal:
                raise
            ctx.warn(e.message)

    # Helpers ---------------------------------------------------------------

    def _build_dir(self, ctx: RunContext) -> str:
        return ctx.find_output(StepType.CLONE, "build_dir") or ctx.repository.path

    def _build_system(self, ctx: RunContext, directory: str) -> BuildSystem:
        if ctx.repository.build_system != BuildSystem.UNKNOWN:
            return ctx.repository.build_system
        return self.detector.detect(directory)

    @staticmethod
    def _split(command: str):
        parts = shlex.split(command)
        return parts[0], parts[1:]

    # Handlers --------------------------------------------------------------

    def _run_trigger_timer(self, ctx: RunContext, step: WorkflowStep):
        ctx.info("Timer trigger has no run-time action")

    def _run_clone(self, ctx: RunContext, step: WorkflowStep):
        repository = ctx.repository
        if not repository.owner or not repository.repo:
            raise ConfigurationError("Clone requires the repository's remote owner and name")
        url = f"{self.clone_base_url}/{repository.owner}/{repository.repo}.git"
        if self.work_dir:
            os.makedirs(self.work_dir, exist_ok=True)
        destination = tempfile.mkdtemp(prefix=f"forgeflow-{repository.repo}-", dir=self.work_dir)
        self.git.clone(ctx, url, destination, cwd=self.work_dir or tempfile.gettempdir())
        ctx.set_output(step.id, "build_dir", destination)

    def _run_pull(self, ctx: RunContext, step: WorkflowStep):
        self.git.fetch_and_reset(ctx, ctx.repository.path, ctx.repository.default_branch)

    def _run_sync_push(self, ctx: RunContext, step: WorkflowStep):
        self.git.sync_and_push(ctx, ctx.repository.path, ctx.repository.default_branch)

    def _run_push(self, ctx: RunContext, step: WorkflowStep):
        self.git.push(ctx, ctx.repository.path, ctx.repository.default_branch)

    def _run_checkout(self, ctx: RunContext, step: WorkflowStep):
        self.git.checkout(ctx, ctx.repository.path, step.config.get("branch") or "main")

    def _run_build(self, ctx: RunContext, step: WorkflowStep):
        build_dir = self._build_dir(ctx)
        system = self._build_system(ctx, build_dir)
        ctx.info(f"Detected build system: {system.value}")

        command = (step.config.get("command") or "").strip() or default_build_command(system)
        if not command:
            ctx.error("No build command could be determined. Specify a custom build command on the step.")
            raise BuildCommandUnresolved(
                "No build command detected. Make sure the repository has a valid build system.",
                build_system=system.value,
            )

        executable, args = self._split(command)
        target = step.config.get("target") or BuildTarget.LOCAL.value
        ctx.command(command)
        ctx.info(f"Working directory: {build_dir}")

        if target == BuildTarget.ALL.value:
            outcomes = self.router.execute_all(ctx, self.all_platforms, executable, args, build_dir)
            ctx.set_output(step.id, "platform_results", {name: outcome.success for name, outcome in outcomes.items()})
        else:
            result = self.router.execute(ctx, target, executable, args, build_dir)
            ctx.success(result.output or "(no output)")

        pattern = step.config.get("artifact_pattern")
        if pattern:
            ctx.info(f"Looking for artifacts matching: {pattern}")
        artifact_paths = self.locator.locate(build_dir, system, pattern)
        ctx.set_output(step.id, "build_system", system.value)
        ctx.set_output(step.id, "artifact_paths", artifact_paths)
        if artifact_paths:
            ctx.info(f"Artifact locations: {', '.join(artifact_paths)}")
        else:
            ctx.warn("No artifacts detected. Check build output.")

    def _run_test(self, ctx: RunContext, step: WorkflowStep):
        system = self._build_system(ctx, ctx.repository.path)
        command = (step.config.get("command") or "").strip() or default_test_command(system)
        if not command:
            raise BuildCommandUnresolved("No test command detected for this repository", build_system=system.value)
        executable, args = self._split(command)
        ctx.command(command)
        result = self.launcher.run(executable, args, cwd=ctx.repository.path)
        raise_for_result(result)
        ctx.success(result.output or "All tests passed")

    def _run_action(self, ctx: RunContext, step: WorkflowStep):
        action = self.actions.get_action(step.config.get("action") or "")
        ctx.command(f"Running action: {action.name}")

        values, missing = resolve_action_inputs(action, step.config.get("inputs") or {})
        for name, value in values.items():
            ctx.info(f'  {name}="{value}"')
        if missing:
            raise StepExecutionError(
                f"Action '{action.name}' is missing required input(s): {', '.join(missing)}",
                step_id=step.id, step_type=step.type.value,
            )

        result = self.launcher.shell(render_action_script(action, values), cwd=ctx.repository.path)
        if not result.ok:
            ctx.error(f"Action failed: {result.output}")
        raise_for_result(result)
        ctx.success(result.output or "Action completed successfully")

    def _run_command(self, ctx: RunContext, step: WorkflowStep):
        command = (step.config.get("command") or "").strip()
        if not command:
            raise StepExecutionError("No command specified. Configure the command step.",
                                     step_id=step.id, step_type=step.type.value)
        executable, args = self._split(command)
        ctx.info(f"Executing custom command: {command}")

        result = self.launcher.run(executable, args, cwd=ctx.repository.path)
        if result.reason == FailureReason.TOOL_NOT_FOUND:
            ctx.warn(f"Command '{executable}' not found")
            if not self.install_prompt(executable):
                raise ToolNotFound(f"Command '{executable}' not found and installation was declined",
                                   executable=executable)

            ctx.info(f"Installing '{executable}'...")
            self.recovery.retrying("run_command", result.reason.value)
            self.installer.install(executable)
            ctx.success(f"Successfully installed '{executable}'")
            ctx.info("Retrying command...")
            result = self.launcher.run(executable, args, cwd=ctx.repository.path)

        raise_for_result(result)
        ctx.success(result.output or "Command executed successfully")

    def _run_commit(self, ctx: RunContext, step: WorkflowStep):
        message = step.config.get("message") or f"Build {ctx.workflow.next_version}"
        ctx.info(f"Committing changes in {ctx.repository.path}")
        self.git.commit_all(ctx, ctx.repository.path, message)

    def _run_release(self, ctx: RunContext, step: WorkflowStep):
        version = str(step.config.get("version") or ctx.workflow.next_version)
        clone_dir = ctx.find_output(StepType.CLONE, "build_dir")
        build_dir = clone_dir or ctx.repository.path
        artifact_paths = ctx.find_output(StepType.BUILD, "artifact_paths")
        system_value = ctx.find_output(StepType.BUILD, "build_system")
        system = BuildSystem(system_value) if system_value else self._build_system(ctx, build_dir)

        outcome = self.publisher.publish(
            ctx,
            version,
            release_name=step.config.get("release_name"),
            build_dir=build_dir,
            artifact_paths=artifact_paths,
            build_system=system,
            cleanup_dir=clone_dir,
        )
        ctx.set_output(step.id, "tag", outcome.tag)
        ctx.set_output(step.id, "release_url", outcome.release_url)
        ctx.set_output(step.id, "uploaded", outcome.uploaded)
        ctx.set_output(step.id, "next_version", next_patch_version(version))
        ctx.run.released_version = sanitize_version(version)

    def _run_emit_link(self, ctx: RunContext, step: WorkflowStep):
        url = (step.config.get("url") or "").strip()
        if not url:
            raise StepExecutionError("Link step has no URL", step_id=step.id, step_type=step.type.value)
        ctx.set_output(step.id, "url", url)
        ctx.info(f"Link: {url}")

    def _run_download(self, ctx: RunContext, step: WorkflowStep):
        url = (step.config.get("url") or "").strip() or ctx.upstream_output(step.id, "url")
        if not url:
            raise StepExecutionError("Download step has no URL and no connected link",
                                     step_id=step.id, step_type=step.type.value)

        destination = step.config.get("destination") or self._build_dir(ctx)
        if self.filesystem.is_directory(destination):
            destination = os.path.join(destination, os.path.basename(urlparse(url).path) or "download")

        ctx.command(f"Downloading {url} -> {destination}")
        try:
            with self.http_session.get(url, stream=True, timeout=self.http_timeout) as response:
                response.raise_for_status()
                parent = os.path.dirname(destination)
                if parent:
                    os.makedirs(parent, exist_ok=True)
                with open(destination, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=65536):
                        if chunk:
                            handle.write(chunk)
        except (requests.RequestException, OSError) as e:
            raise StepExecutionError(f"Download of {url} failed: {e}", step_id=step.id, step_type=step.type.value)

        ctx.set_output(step.id, "file_path", destination)
        ctx.success(f"Downloaded to {destination}")
