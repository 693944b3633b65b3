"""Execution backend routing for build commands: local, container, cross-compile."""

import os
import shlex
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .exceptions import CrossCompileToolchainMissing, WorkflowEngineError
from .launcher import CommandLauncher, CommandResult, FailureReason, raise_for_result
from .logging import get_logger, RecoveryLogger
from .run_state import RunContext

logger = get_logger(__name__)

WINDOWS_GNU_TRIPLE = "x86_64-pc-windows-gnu"
MINGW_HINTS = [
    "macOS: brew install mingw-w64",
    "Linux: sudo apt install mingw-w64",
]

# Marker file in the workspace -> dependency install command run inside the container.
CONTAINER_DEPENDENCY_PROBES = [
    ("package.json", "npm install || yarn install || pnpm install"),
    ("Cargo.toml", '. "$HOME/.cargo/env" || true'),
    ("go.mod", "go mod download"),
    ("requirements.txt", "pip install -r requirements.txt || pip3 install -r requirements.txt"),
]


class BuildTarget(str, Enum):
    """Logical target platform of a build step."""
    LOCAL = "local"
    LINUX = "linux"
    WINDOWS = "windows"
    MACOS = "macos"
    ALL = "all"


@dataclass
class PlatformOutcome:
    """Result slot of one target in an all-platforms fan-out."""
    platform: str
    success: bool
    output: str = ""
    error: Optional[str] = None


class ExecutionBackendRouter:
    """
    Decides where a build command runs.

    ``local`` runs on the host. Any other platform tries, in order, the shared
    container, a cross-compilation toolchain (Windows target for Tauri-style
    builds) and finally plain local execution. A failed stage is logged and
    the next stage is tried.
    """

    def __init__(
        self,
        launcher: CommandLauncher,
        container_name: str = "forgeflow-builder",
        container_workspace: str = "/workspace",
    ):
        self.launcher = launcher
        self.container_name = container_name
        self.container_workspace = container_workspace.rstrip("/") or "/"
        self.recovery = RecoveryLogger("backend_router")

    def execute(self, ctx: RunContext, platform: str, executable: str, args: Sequence[str], cwd: str) -> CommandResult:
        """
        Run a build command for one platform.

        Returns:
            The successful CommandResult

        Raises:
            ToolNotFound / ToolExecutionFailed: If the final stage fails
            CrossCompileToolchainMissing: If the cross linker is not installed
        """
        args = list(args)
        target = BuildTarget(platform)
        if target == BuildTarget.ALL:
            raise ValueError("Use execute_all for the all-platforms target")

        if target != BuildTarget.LOCAL:
            result = self._try_container(ctx, target, executable, args, cwd)
            if result is not None:
                return result

            result = self._try_cross_compile(ctx, target, executable, args, cwd)
            if result is not None:
                return result

            ctx.info(f"Falling back to local execution for {target.value}")

        result = self.launcher.run(executable, args, cwd=cwd)
        raise_for_result(result)
        return result

    def execute_all(self, ctx: RunContext, platforms: List[str], executable: str, args: Sequence[str],
                    cwd: str) -> Dict[str, PlatformOutcome]:
        """Build every platform concurrently. Each platform writes only its own outcome slot."""
        ctx.info(f"Building for ALL platforms in parallel: {', '.join(platforms)}")
        outcomes: Dict[str, PlatformOutcome] = {}

        with ThreadPoolExecutor(max_workers=max(1, len(platforms))) as pool:
            futures = {
                pool.submit(self._execute_platform, ctx, platform, executable, list(args), cwd): platform
                for platform in platforms
            }
            for future in as_completed(futures):
                outcome = future.result()
                outcomes[outcome.platform] = outcome

        succeeded = sum(1 for outcome in outcomes.values() if outcome.success)
        ctx.info(f"Parallel builds complete: {succeeded}/{len(platforms)} succeeded")
        return outcomes

    def _execute_platform(self, ctx: RunContext, platform: str, executable: str, args: List[str],
                          cwd: str) -> PlatformOutcome:
        ctx.info(f"--- Starting {platform} build ---")
        try:
            result = self.execute(ctx, platform, executable, args, cwd)
        except WorkflowEngineError as e:
            ctx.warn(f"{platform} build failed: {e.message}")
            return PlatformOutcome(platform=platform, success=False, error=e.message)
        ctx.success(f"{platform} build completed!")
        return PlatformOutcome(platform=platform, success=True, output=result.output)

    # Container stage -------------------------------------------------------

    def _docker(self, args: List[str]) -> CommandResult:
        return self.launcher.run("docker", args, cwd="/")

    def container_status(self) -> Optional[str]:
        """Status text of the shared container, or None when it does not exist or docker is unavailable."""
        result = self._docker(["ps", "-a", "--filter", f"name={self.container_name}", "--format", "{{.Status}}"])
        if not result.ok or not result.stdout.strip():
            return None
        return result.stdout.strip()

    def _try_container(self, ctx: RunContext, target: BuildTarget, executable: str, args: List[str],
                       cwd: str) -> Optional[CommandResult]:
        ctx.info(f"Checking for container: {self.container_name}")
        status = self.container_status()
        if status is None:
            ctx.warn(f"No container available for {target.value}")
            return None
        ctx.info(f"Found container: {status}")

        if "up" not in status.lower():
            ctx.info("Starting container...")
            started = self._docker(["start", self.container_name])
            if not started.ok:
                ctx.warn(f"Could not start container: {started.output}")
                return None

        if not self._share_workspace(ctx, cwd):
            return None

        workspace = self.container_path(cwd)
        if ctx.first_use(f"container-deps:{self.container_name}"):
            self._install_dependencies(ctx, workspace)

        command_line = shlex.join([executable] + args)
        ctx.command(f"docker exec {self.container_name} {command_line}")
        result = self._docker([
            "exec", "-w", workspace, self.container_name, "sh", "-c",
            f'. "$HOME/.cargo/env" 2>/dev/null || true; {command_line}',
        ])
        if result.ok:
            ctx.success(f"Build complete! Artifacts available at: {cwd}")
            return result

        ctx.warn(f"Container build failed: {result.output or result.reason.value}")
        return None

    def container_path(self, cwd: str) -> str:
        return f"{self.container_workspace}/{os.path.basename(os.path.normpath(cwd))}"

    def _share_workspace(self, ctx: RunContext, cwd: str) -> bool:
        """Link the host directory into the container, copying only if linking fails."""
        ctx.info("Using shared volume (zero-copy build)...")
        linked = self._docker([
            "exec", self.container_name, "sh", "-c",
            f"mkdir -p {shlex.quote(os.path.dirname(cwd) or '/')} && ln -sfn {shlex.quote(self.container_workspace)} {shlex.quote(cwd)}",
        ])
        if linked.ok:
            return True

        ctx.warn("Volume mount failed, copying files...")
        self.recovery.retrying("share_workspace", linked.reason.value)
        copied = self._docker(["cp", cwd, f"{self.container_name}:{self.container_workspace}/"])
        if not copied.ok:
            ctx.warn(f"Copy into container failed: {copied.output}")
            return False
        return True

    def _install_dependencies(self, ctx: RunContext, workspace: str):
        ctx.info("Checking and installing dependencies...")
        for marker, install_command in CONTAINER_DEPENDENCY_PROBES:
            probe = self._docker(["exec", "-w", workspace, self.container_name, "test", "-f", marker])
            if not probe.ok:
                continue
            ctx.info(f"Installing: {install_command}")
            installed = self._docker(["exec", "-w", workspace, self.container_name, "sh", "-c", install_command])
            if not installed.ok:
                ctx.warn(f"Install command failed (may be normal): {installed.output}")

    # Cross-compile stage ---------------------------------------------------

    def _try_cross_compile(self, ctx: RunContext, target: BuildTarget, executable: str, args: List[str],
                           cwd: str) -> Optional[CommandResult]:
        if target != BuildTarget.WINDOWS:
            return None
        if not any("tauri" in part for part in [executable] + args):
            return None

        ctx.info("Detected Tauri project - configuring Windows target")
        ctx.command(f"rustup target add {WINDOWS_GNU_TRIPLE}")
        added = self.launcher.run("rustup", ["target", "add", WINDOWS_GNU_TRIPLE], cwd=cwd)
        if added.ok:
            ctx.success("Windows Rust target installed")
        else:
            ctx.warn("Could not add Rust target (may already be installed)")

        cross_args = args + ["--target", WINDOWS_GNU_TRIPLE]
        ctx.command(shlex.join([executable] + cross_args))
        result = self.launcher.run(executable, cross_args, cwd=cwd)
        if result.ok:
            ctx.success("Windows build completed via cross-compilation")
            return result

        if result.reason == FailureReason.LINKER_MISSING:
            ctx.error("mingw-w64 not found. Install it to cross-compile for Windows:")
            for hint in MINGW_HINTS:
                ctx.info(f"  {hint}")
            raise CrossCompileToolchainMissing(
                f"Cross-compilation toolchain for {WINDOWS_GNU_TRIPLE} is missing",
                target=WINDOWS_GNU_TRIPLE,
                hints=MINGW_HINTS,
            )

        ctx.warn(f"Cross-compilation failed: {result.output or result.reason.value}")
        return None
