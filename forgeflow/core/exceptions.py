"""Exception taxonomy for the workflow engine with detailed error information."""

from datetime import datetime
from typing import Optional, Dict, Any, List, TYPE_CHECKING
from enum import Enum

if TYPE_CHECKING:
    from .launcher import CommandResult


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    TOOLING = "tooling"
    VCS = "vcs"
    RELEASE = "release"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors.

    ``fatal`` tells the step executor whether the condition aborts the run.
    Non-fatal errors are absorbed by the step that raised them and logged as
    warnings.
    """

    fatal = True

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Flatten the error into JSON-safe fields."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "fatal": self.fatal,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "details": self.details,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


# --- Tooling -----------------------------------------------------------------


class ToolNotFound(WorkflowEngineError):
    """Raised when an executable cannot be found on the host."""

    def __init__(self, message: str, executable: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.TOOLING,
            **kwargs
        )
        self.executable = executable
        if executable:
            self.add_context(executable=executable)


class ToolExecutionFailed(WorkflowEngineError):
    """Raised when an external command exits unsuccessfully."""

    def __init__(self, message: str, result: Optional["CommandResult"] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.TOOLING,
            **kwargs
        )
        self.result = result
        if result is not None:
            self.add_details(
                command=result.display(),
                exit_code=result.exit_code,
                reason=result.reason.value,
            )

    @property
    def raw_text(self) -> str:
        return self.result.output if self.result is not None else self.message


class BuildCommandUnresolved(WorkflowEngineError):
    """Raised when neither an override nor a detected default build/test command exists."""

    def __init__(self, message: str, build_system: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if build_system:
            self.add_context(build_system=build_system)


class CrossCompileToolchainMissing(WorkflowEngineError):
    """Raised when a cross-compilation linker/toolchain is not installed."""

    def __init__(self, message: str, target: Optional[str] = None, hints: Optional[List[str]] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.TOOLING,
            **kwargs
        )
        self.hints = hints or []
        if target:
            self.add_context(target=target)
        if hints:
            self.add_details(hints=hints)


class ArtifactsNotFound(WorkflowEngineError):
    """Raised when a release has nothing to upload."""

    def __init__(self, message: str, build_dir: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.RELEASE,
            **kwargs
        )
        if build_dir:
            self.add_context(build_dir=build_dir)


# --- Version control ---------------------------------------------------------


class GitPushRejected(WorkflowEngineError):
    """Raised when a push is rejected and recovery did not succeed."""

    def __init__(self, message: str, branch: Optional[str] = None, result: Optional["CommandResult"] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.VCS,
            **kwargs
        )
        self.result = result
        if branch:
            self.add_context(branch=branch)


class GitMergeConflict(WorkflowEngineError):
    """Raised when a pull with rebase stops on a conflict."""

    def __init__(self, message: str, branch: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.VCS,
            **kwargs
        )
        if branch:
            self.add_context(branch=branch)


class GitNothingToCommit(WorkflowEngineError):
    """Raised when a commit finds a clean working tree. Non-fatal."""

    fatal = False

    def __init__(self, message: str = "No changes to commit", **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VCS,
            **kwargs
        )


class GitIdentityNotConfigured(WorkflowEngineError):
    """Raised when git refuses to commit because user.name/user.email are unset."""

    HINTS = [
        "git config user.name 'Your Name'",
        "git config user.email 'you@example.com'",
    ]

    def __init__(self, message: str = "Git user not configured", **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        self.add_details(hints=self.HINTS)


class GitCheckoutFailed(WorkflowEngineError):
    """Raised when a branch cannot be checked out locally or from the remote."""

    def __init__(self, message: str, branch: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.VCS,
            **kwargs
        )
        if branch:
            self.add_context(branch=branch)


# --- Release -----------------------------------------------------------------


class ReleaseTagAlreadyExists(WorkflowEngineError):
    """Raised when the release tag already exists locally or remotely. Non-fatal."""

    fatal = False

    def __init__(self, message: str, tag: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.RELEASE,
            **kwargs
        )
        if tag:
            self.add_context(tag=tag)


class ReleaseUploadFailed(WorkflowEngineError):
    """Raised for a failed asset upload, or for the aggregate when nothing uploaded."""

    def __init__(self, message: str, asset: Optional[str] = None, attempted: Optional[int] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.RELEASE,
            **kwargs
        )
        if asset:
            self.add_context(asset=asset)
        if attempted is not None:
            self.add_details(attempted=attempted)


class HostingApiError(WorkflowEngineError):
    """Raised when the code-hosting REST API answers with an error."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
        body: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.NETWORK,
            **kwargs
        )
        self.status_code = status_code
        self.body = body or ""
        if endpoint:
            self.add_context(endpoint=endpoint)
        if status_code is not None:
            self.add_details(status_code=status_code)


# --- Engine ------------------------------------------------------------------


class ActionRegistryError(WorkflowEngineError):
    """Raised when a reusable action cannot be stored."""

    def __init__(self, message: str, action_name: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if action_name:
            self.add_context(action_name=action_name)


class ActionNotFound(WorkflowEngineError):
    """Raised when a run-action step names an unknown reusable action."""

    def __init__(self, message: str, action_name: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if action_name:
            self.add_context(action_name=action_name)


class TimerMisconfigured(WorkflowEngineError):
    """Raised when a trigger-timer configuration cannot be scheduled."""

    def __init__(self, message: str, node_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)


class WorkflowValidationError(WorkflowEngineError):
    """Raised when a workflow document fails validation."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class WorkflowCycleError(WorkflowValidationError):
    """Raised when the connection graph contains a cycle."""

    def __init__(self, message: str, step_ids: Optional[List[str]] = None, **kwargs):
        super().__init__(message, validation_errors=[message], **kwargs)
        self.step_ids = step_ids or []
        self.add_details(step_ids=self.step_ids)


class StepExecutionError(WorkflowEngineError):
    """Raised when a step fails for a reason outside the specific taxonomy."""

    def __init__(self, message: str, step_id: Optional[str] = None, step_type: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if step_id:
            self.add_context(step_id=step_id)
        if step_type:
            self.add_context(step_type=step_type)


class RunAlreadyActiveError(WorkflowEngineError):
    """Raised when a run is requested while another run is current."""

    def __init__(self, message: str, run_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if run_id:
            self.add_context(run_id=run_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class TransientError(WorkflowEngineError):
    """Raised for transient errors that should be retried."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.NETWORK,
            recoverable=True,
            retry_after=5,
            **kwargs
        )


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


class WorkflowNotFoundError(WorkflowEngineError):
    """Raised when a workflow id is not stored."""

    def __init__(self, message: str, workflow_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class RepositoryNotFoundError(WorkflowEngineError):
    """Raised when a repository binding id is not stored."""

    def __init__(self, message: str, repository_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if repository_id:
            self.add_context(repository_id=repository_id)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create the standard API error body from a WorkflowEngineError."""
    data = error.to_dict()
    code, message, context = data.pop("error_code"), data.pop("message"), data.pop("context")
    details = data.pop("details")
    return {"error": code, "message": message, "details": {**details, **data}, "context": context}
