"""Git operations with bounded in-step recovery."""

from typing import List, Optional

from .exceptions import (
    GitCheckoutFailed, GitIdentityNotConfigured, GitMergeConflict, GitNothingToCommit,
    GitPushRejected, ReleaseTagAlreadyExists,
)
from .launcher import CommandLauncher, CommandResult, FailureReason, raise_for_result
from .logging import get_logger, RecoveryLogger
from .run_state import RunContext

logger = get_logger(__name__)


class GitOperations:
    """Wraps the git CLI for the repository-facing step types.

    Every decision is taken on ``CommandResult.reason``; raw git wording is
    only looked at by the launcher's classifier.
    """

    def __init__(self, launcher: CommandLauncher, remote: str = "origin"):
        self.launcher = launcher
        self.remote = remote
        self.recovery = RecoveryLogger("git")

    def _git(self, ctx: RunContext, args: List[str], cwd: str, announce: bool = True) -> CommandResult:
        if announce:
            ctx.command("git " + " ".join(args))
        return self.launcher.run("git", args, cwd=cwd)

    def clone(self, ctx: RunContext, url: str, destination: str, cwd: Optional[str] = None) -> str:
        result = self._git(ctx, ["clone", url, destination], cwd=cwd)
        raise_for_result(result)
        ctx.success(f"Cloned to {destination}")
        return destination

    def fetch_and_reset(self, ctx: RunContext, path: str, branch: str):
        """Destructive sync: the working tree ends up identical to the remote branch."""
        raise_for_result(self._git(ctx, ["fetch", self.remote, branch], cwd=path))
        raise_for_result(self._git(ctx, ["reset", "--hard", f"{self.remote}/{branch}"], cwd=path))
        ctx.success("Repository synced with remote")

    def pull_rebase(self, ctx: RunContext, path: str, branch: str) -> CommandResult:
        """
        Pull with rebase.

        Returns:
            The pull result; "already up to date" counts as success

        Raises:
            GitMergeConflict: If the rebase stops on a conflict
        """
        result = self._git(ctx, ["pull", "--rebase", self.remote, branch], cwd=path)
        if result.ok:
            ctx.success(result.output or "Synced with remote")
        elif result.reason == FailureReason.ALREADY_UP_TO_DATE:
            ctx.info("Already up to date")
        elif result.reason == FailureReason.MERGE_CONFLICT:
            ctx.error("Merge conflict detected. Resolve conflicts manually.")
            raise GitMergeConflict(f"Merge conflict while rebasing onto {self.remote}/{branch}", branch=branch)
        return result

    def push(self, ctx: RunContext, path: str, branch: str):
        """
        Push; on a non-fast-forward rejection pull with rebase once and retry once.

        Raises:
            GitPushRejected: If the retried push also fails (carries the retry's result)
            GitMergeConflict: If the recovery rebase conflicts
        """
        result = self._git(ctx, ["push", self.remote, branch], cwd=path)
        if result.ok:
            ctx.success(result.output or "Pushed to remote")
            return
        if result.reason != FailureReason.NON_FAST_FORWARD:
            raise_for_result(result)

        ctx.warn("Push rejected, pulling changes first...")
        self.recovery.retrying("push", result.reason.value)
        rebase = self.pull_rebase(ctx, path, branch)
        if not rebase.ok and rebase.reason != FailureReason.ALREADY_UP_TO_DATE:
            ctx.warn(f"Pull before retry failed: {rebase.output}")

        ctx.info("Retrying push...")
        retry = self._git(ctx, ["push", self.remote, branch], cwd=path)
        if not retry.ok:
            error = GitPushRejected(
                f"Push failed after pull: {retry.output or retry.reason.value}", branch=branch, result=retry
            )
            self.recovery.gave_up("push", error)
            ctx.error(error.message)
            raise error
        self.recovery.recovered("push")
        ctx.success("Pushed to remote after rebase")

    def sync_and_push(self, ctx: RunContext, path: str, branch: str):
        """Pull with rebase (tolerating failures other than conflicts), then push with a force-with-lease fallback."""
        ctx.info("Syncing with remote repository...")
        pull = self.pull_rebase(ctx, path, branch)
        if not pull.ok and pull.reason not in (FailureReason.ALREADY_UP_TO_DATE,):
            ctx.warn(f"Pull failed: {pull.output or pull.reason.value}")

        result = self._git(ctx, ["push", self.remote, branch], cwd=path)
        if result.ok:
            ctx.success("Pushed to remote")
            return
        if result.reason != FailureReason.NON_FAST_FORWARD:
            raise_for_result(result)

        ctx.warn("Push rejected, using force push with lease...")
        self.recovery.retrying("sync_push", result.reason.value)
        forced = self._git(ctx, ["push", "--force-with-lease", self.remote, branch], cwd=path)
        if not forced.ok:
            error = GitPushRejected(
                f"Force push failed: {forced.output or forced.reason.value}", branch=branch, result=forced
            )
            self.recovery.gave_up("sync_push", error)
            raise error
        self.recovery.recovered("sync_push")
        ctx.success("Pushed to remote (force with lease)")

    def checkout(self, ctx: RunContext, path: str, branch: str):
        """Checkout a branch, creating a local tracking branch from the remote when needed."""
        result = self._git(ctx, ["checkout", branch], cwd=path)
        if result.ok:
            ctx.success(f"Switched to branch: {branch}")
            return
        if result.reason != FailureReason.PATHSPEC_NOT_FOUND:
            raise GitCheckoutFailed(f"Checkout failed: {result.output}", branch=branch)

        ctx.info(f"Branch {branch} not found locally, fetching...")
        fetch = self._git(ctx, ["fetch", self.remote], cwd=path)
        if not fetch.ok:
            raise GitCheckoutFailed(f"Failed to fetch {self.remote}: {fetch.output}", branch=branch)
        tracking = self._git(ctx, ["checkout", "-b", branch, f"{self.remote}/{branch}"], cwd=path)
        if not tracking.ok:
            raise GitCheckoutFailed(f"Failed to checkout branch {branch}: {tracking.output}", branch=branch)
        ctx.success(f"Switched to branch: {branch}")

    def commit_all(self, ctx: RunContext, path: str, message: str):
        """
        Stage all changes and commit.

        Raises:
            GitNothingToCommit: Clean working tree (non-fatal)
            GitIdentityNotConfigured: Author identity missing
        """
        ctx.info("Staging all changes...")
        raise_for_result(self._git(ctx, ["add", "."], cwd=path))

        result = self._git(ctx, ["commit", "-m", message], cwd=path)
        if result.ok:
            ctx.success(result.output or "Changes committed")
            return
        if result.reason == FailureReason.NOTHING_TO_COMMIT:
            raise GitNothingToCommit("No changes to commit, continuing...")
        if result.reason == FailureReason.IDENTITY_NOT_CONFIGURED:
            error = GitIdentityNotConfigured()
            ctx.error("Git user not configured. Run in terminal:")
            for hint in error.HINTS:
                ctx.error(f"  {hint}")
            raise error
        raise_for_result(result)

    def create_tag(self, ctx: RunContext, path: str, tag: str, message: str):
        """Create an annotated tag. An existing tag raises the non-fatal ReleaseTagAlreadyExists."""
        result = self._git(ctx, ["tag", "-a", tag, "-m", message], cwd=path)
        if result.ok:
            ctx.success(f"Tag {tag} created")
            return
        if result.reason == FailureReason.ALREADY_EXISTS:
            raise ReleaseTagAlreadyExists(f"Tag {tag} already exists, using existing tag", tag=tag)
        raise_for_result(result)

    def head_sha(self, ctx: RunContext, path: str) -> str:
        result = self._git(ctx, ["rev-parse", "HEAD"], cwd=path, announce=False)
        raise_for_result(result)
        return result.stdout.strip()

    def push_tag(self, ctx: RunContext, path: str, tag: str):
        result = self._git(ctx, ["push", self.remote, tag], cwd=path)
        if result.ok:
            ctx.success("Tag pushed to remote")
            return
        if result.reason == FailureReason.ALREADY_EXISTS:
            raise ReleaseTagAlreadyExists("Tag already exists on remote", tag=tag)
        raise_for_result(result)
