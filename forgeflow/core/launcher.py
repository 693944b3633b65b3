"""External process boundary: command launcher, failure classification and package installer."""

import os
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .exceptions import ToolExecutionFailed, ToolNotFound
from .logging import get_logger

logger = get_logger(__name__)

TOOL_NOT_FOUND_EXIT_CODE = 127


class FailureReason(str, Enum):
    """Classified outcome of an external command."""
    NONE = "none"
    TOOL_NOT_FOUND = "tool_not_found"
    NON_FAST_FORWARD = "non_fast_forward"
    MERGE_CONFLICT = "merge_conflict"
    ALREADY_UP_TO_DATE = "already_up_to_date"
    NOTHING_TO_COMMIT = "nothing_to_commit"
    IDENTITY_NOT_CONFIGURED = "identity_not_configured"
    ALREADY_EXISTS = "already_exists"
    PATHSPEC_NOT_FOUND = "pathspec_not_found"
    LINKER_MISSING = "linker_missing"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# Ordered: the first matching rule wins. "already exists" must precede the
# generic push rejection because git reports existing tags as "[rejected]".
_CLASSIFICATION_RULES = [
    (FailureReason.ALREADY_EXISTS, ("already exists", "already_exists")),
    (FailureReason.IDENTITY_NOT_CONFIGURED, ("Please tell me who you are", "user.email", "user.name", "empty ident", "unable to auto-detect email")),
    (FailureReason.NOTHING_TO_COMMIT, ("nothing to commit", "no changes added to commit", "working tree clean")),
    (FailureReason.ALREADY_UP_TO_DATE, ("Already up to date", "Already up-to-date", "is up to date")),
    (FailureReason.MERGE_CONFLICT, ("CONFLICT", "Merge conflict", "could not apply", "Resolve all conflicts")),
    (FailureReason.NON_FAST_FORWARD, ("non-fast-forward", "[rejected]", "fetch first", "Updates were rejected", "stale info")),
    (FailureReason.PATHSPEC_NOT_FOUND, ("did not match any file(s) known to git", "pathspec", "invalid reference")),
    (FailureReason.LINKER_MISSING, ("mingw", "linker", "link.exe")),
]


def classify_failure(text: str) -> FailureReason:
    """Map raw tool output of a failed command to a FailureReason.

    This is the only place in the engine that inspects tool wording. It never
    yields TOOL_NOT_FOUND: a present executable may report a missing helper
    (``npm`` without ``vite``, ``bash -c missing``), which is a plain failure.
    """
    if not text:
        return FailureReason.UNKNOWN
    for reason, needles in _CLASSIFICATION_RULES:
        if any(needle in text for needle in needles):
            return reason
    return FailureReason.UNKNOWN


@dataclass
class CommandResult:
    """Structured outcome of one external command."""
    executable: str
    args: List[str] = field(default_factory=list)
    cwd: Optional[str] = None
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    reason: FailureReason = FailureReason.NONE

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined, stripped stdout and stderr."""
        parts = [p.strip() for p in (self.stdout, self.stderr) if p and p.strip()]
        return "\n".join(parts)

    def display(self) -> str:
        return " ".join([self.executable] + list(self.args))

    @classmethod
    def success(cls, executable: str, args: Optional[Sequence[str]] = None, stdout: str = "", cwd: Optional[str] = None) -> "CommandResult":
        return cls(executable=executable, args=list(args or []), cwd=cwd, stdout=stdout)

    @classmethod
    def failure(
        cls,
        executable: str,
        args: Optional[Sequence[str]] = None,
        stderr: str = "",
        exit_code: int = 1,
        reason: Optional[FailureReason] = None,
        cwd: Optional[str] = None,
    ) -> "CommandResult":
        return cls(
            executable=executable,
            args=list(args or []),
            cwd=cwd,
            exit_code=exit_code,
            stderr=stderr,
            reason=reason or classify_failure(stderr),
        )


class CommandLauncher:
    """Runs external commands and returns classified results.

    ``run`` never raises for an unsuccessful command; ``check`` converts an
    unsuccessful result into ToolNotFound / ToolExecutionFailed.
    """

    def __init__(self, timeout: Optional[float] = None, base_env: Optional[Dict[str, str]] = None):
        self.timeout = timeout
        self.base_env = base_env

    def which(self, executable: str) -> Optional[str]:
        return shutil.which(executable)

    def run(
        self,
        executable: str,
        args: Optional[Sequence[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """
        Execute a command and capture its output.

        Args:
            executable: Program to run, resolved through PATH
            args: Argument vector (without the executable)
            cwd: Working directory
            env: Extra environment assignments merged over the process environment

        Returns:
            CommandResult with exit code, output and classified failure reason
        """
        argv = list(args or [])
        merged_env = dict(self.base_env if self.base_env is not None else os.environ)
        if env:
            merged_env.update(env)

        logger.debug(f"Launching {executable} {argv} in {cwd}")
        try:
            completed = subprocess.run(
                [executable] + argv,
                cwd=cwd,
                env=merged_env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            if cwd and not os.path.isdir(cwd):
                return CommandResult.failure(
                    executable, argv, stderr=f"Working directory does not exist: {cwd}",
                    reason=FailureReason.UNKNOWN, cwd=cwd,
                )
            return CommandResult.failure(
                executable, argv, stderr=f"{executable}: command not found ({e})",
                exit_code=TOOL_NOT_FOUND_EXIT_CODE, reason=FailureReason.TOOL_NOT_FOUND, cwd=cwd,
            )
        except PermissionError as e:
            return CommandResult.failure(
                executable, argv, stderr=f"Permission denied: {e}",
                exit_code=126, reason=FailureReason.UNKNOWN, cwd=cwd,
            )
        except subprocess.TimeoutExpired:
            return CommandResult.failure(
                executable, argv, stderr=f"Timed out after {self.timeout} seconds",
                exit_code=-1, reason=FailureReason.TIMEOUT, cwd=cwd,
            )

        result = CommandResult(
            executable=executable,
            args=argv,
            cwd=cwd,
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if not result.ok:
            result.reason = classify_failure(result.output)
        return result

    def check(
        self,
        executable: str,
        args: Optional[Sequence[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> str:
        """Run a command and return its stdout, raising on failure."""
        result = self.run(executable, args, cwd=cwd, env=env)
        raise_for_result(result)
        return result.stdout

    def shell(self, script: str, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> CommandResult:
        """Run a script through bash."""
        return self.run("bash", ["-c", script], cwd=cwd, env=env)


def raise_for_result(result: CommandResult) -> None:
    """Raise the taxonomy error matching an unsuccessful result."""
    if result.ok:
        return
    if result.reason == FailureReason.TOOL_NOT_FOUND:
        raise ToolNotFound(f"Command '{result.executable}' not found", executable=result.executable)
    raise ToolExecutionFailed(
        f"{result.display()} failed ({result.exit_code}): {result.output or 'no output'}",
        result=result,
    )


class PackageInstaller:
    """Installs a missing tool through the host's package manager."""

    MANAGERS = [
        ("brew", ["install"]),
        ("apt-get", ["install", "-y"]),
        ("dnf", ["install", "-y"]),
        ("pacman", ["-S", "--noconfirm"]),
        ("zypper", ["install", "-y"]),
        ("winget", ["install", "-e", "--id"]),
    ]

    def __init__(self, launcher: CommandLauncher):
        self.launcher = launcher

    def detect_manager(self) -> Optional[tuple]:
        for name, install_args in self.MANAGERS:
            if self.launcher.which(name):
                return name, install_args
        return None

    def install(self, package: str) -> str:
        """
        Install a package.

        Returns:
            Installer output

        Raises:
            ToolNotFound: If no supported package manager is present
            ToolExecutionFailed: If installation fails
        """
        manager = self.detect_manager()
        if manager is None:
            raise ToolNotFound("No supported package manager found on this host", executable=package)
        name, install_args = manager
        logger.info(f"Installing '{package}' with {name}")
        return self.launcher.check(name, install_args + [package])
