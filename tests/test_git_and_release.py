"""Tests for git operations with recovery and release publishing."""

import os

import pytest

from forgeflow.core.exceptions import (
    ArtifactsNotFound, ConfigurationError, GitCheckoutFailed, GitIdentityNotConfigured, GitMergeConflict,
    GitNothingToCommit, GitPushRejected, HostingApiError, ReleaseTagAlreadyExists, ReleaseUploadFailed,
    ToolExecutionFailed,
)
from forgeflow.core.git_ops import GitOperations
from forgeflow.core.release import ReleasePublisher, next_patch_version, sanitize_tag, sanitize_version
from forgeflow.models.core import BuildSystem, LogSeverity, RepositoryBinding
from forgeflow.core.run_state import RunContext

from conftest import fail, make_workflow, ok

REJECTED = " ! [rejected]        main -> main (fetch first)\nerror: failed to push some refs"


def messages(ctx, level=None):
    return [entry.message for entry in ctx.run.logs if level is None or entry.level == level]


class TestGitPush:
    """Test cases for push with bounded recovery."""

    def test_push_succeeds_first_time(self, launcher, run_context, repo_dir):
        """Test a plain successful push."""
        GitOperations(launcher).push(run_context, repo_dir, "main")
        assert launcher.commands() == ["git push origin main"]

    def test_rejected_push_rebases_once_and_retries(self, launcher, run_context, repo_dir):
        """Test that a non-fast-forward push pulls with rebase and pushes again."""
        launcher.script("git push origin main", fail(REJECTED), ok("main -> main"))
        GitOperations(launcher).push(run_context, repo_dir, "main")

        assert launcher.commands() == [
            "git push origin main",
            "git pull --rebase origin main",
            "git push origin main",
        ]
        assert "Push rejected, pulling changes first..." in messages(run_context, LogSeverity.WARN)
        assert "Retrying push..." in messages(run_context, LogSeverity.INFO)

    def test_second_rejection_surfaces_retry_error(self, launcher, run_context, repo_dir):
        """Test that a failing retry raises with the retry's output and nothing more is attempted."""
        launcher.script("git push origin main", fail(REJECTED), fail("remote: hook declined"))
        with pytest.raises(GitPushRejected) as exc_info:
            GitOperations(launcher).push(run_context, repo_dir, "main")

        assert "remote: hook declined" in exc_info.value.message
        assert exc_info.value.result.stderr == "remote: hook declined"
        assert launcher.count("git pull --rebase") == 1
        assert launcher.count("git push origin main") == 2

    def test_other_push_failure_is_not_retried(self, launcher, run_context, repo_dir):
        """Test that failures other than non-fast-forward raise immediately."""
        launcher.script("git push", fail("fatal: Authentication failed"))
        with pytest.raises(ToolExecutionFailed):
            GitOperations(launcher).push(run_context, repo_dir, "main")
        assert launcher.count("git pull") == 0

    def test_rebase_conflict_during_recovery(self, launcher, run_context, repo_dir):
        """Test that a conflicting recovery rebase aborts the push."""
        launcher.script("git push origin main", fail(REJECTED))
        launcher.script("git pull --rebase", fail("CONFLICT (content): Merge conflict in app.js"))
        with pytest.raises(GitMergeConflict):
            GitOperations(launcher).push(run_context, repo_dir, "main")
        assert launcher.count("git push origin main") == 1


class TestGitOperations:
    """Test cases for the remaining git steps."""

    def test_sync_push_falls_back_to_force_with_lease(self, launcher, run_context, repo_dir):
        """Test that sync-and-push forces with lease after a rejection."""
        launcher.script("git pull --rebase", fail("Already up to date."))
        launcher.script("git push origin main", fail(REJECTED))
        GitOperations(launcher).sync_and_push(run_context, repo_dir, "main")
        assert launcher.commands()[-1] == "git push --force-with-lease origin main"

    def test_fetch_and_reset(self, launcher, run_context, repo_dir):
        """Test the destructive pull."""
        GitOperations(launcher).fetch_and_reset(run_context, repo_dir, "develop")
        assert launcher.commands() == ["git fetch origin develop", "git reset --hard origin/develop"]

    def test_checkout_creates_tracking_branch(self, launcher, run_context, repo_dir):
        """Test that an unknown local branch is fetched and tracked."""
        launcher.script("git checkout feature",
                        fail("error: pathspec 'feature' did not match any file(s) known to git"))
        GitOperations(launcher).checkout(run_context, repo_dir, "feature")
        assert launcher.commands()[-2:] == ["git fetch origin", "git checkout -b feature origin/feature"]

    def test_checkout_other_failure(self, launcher, run_context, repo_dir):
        """Test that other checkout failures are fatal."""
        launcher.script("git checkout", fail("error: Your local changes would be overwritten"))
        with pytest.raises(GitCheckoutFailed):
            GitOperations(launcher).checkout(run_context, repo_dir, "main")

    def test_commit_nothing_to_commit_is_non_fatal(self, launcher, run_context, repo_dir):
        """Test that a clean tree raises the non-fatal error."""
        launcher.script("git commit", fail("nothing to commit, working tree clean"))
        with pytest.raises(GitNothingToCommit) as exc_info:
            GitOperations(launcher).commit_all(run_context, repo_dir, "Build 1.0.0")
        assert exc_info.value.fatal is False
        assert launcher.commands() == ["git add .", "git commit -m Build 1.0.0"]

    def test_commit_identity_missing(self, launcher, run_context, repo_dir):
        """Test that a missing identity is fatal and logs the configuration hints."""
        launcher.script("git commit", fail("*** Please tell me who you are."))
        with pytest.raises(GitIdentityNotConfigured):
            GitOperations(launcher).commit_all(run_context, repo_dir, "Build 1.0.0")
        errors = messages(run_context, LogSeverity.ERROR)
        assert any("git config user.email" in message for message in errors)

    def test_existing_tag(self, launcher, run_context, repo_dir):
        """Test that an existing tag raises the non-fatal error."""
        launcher.script("git tag", fail("fatal: tag 'v1.0.0' already exists"))
        with pytest.raises(ReleaseTagAlreadyExists):
            GitOperations(launcher).create_tag(run_context, repo_dir, "v1.0.0", "Release v1.0.0")


class TestVersions:
    """Test cases for tag sanitizing and version bumping."""

    def test_sanitize_tag(self):
        """Test tag sanitizing."""
        assert sanitize_tag("1.0 beta!") == "v1.0-beta"
        assert sanitize_tag("v2.0.1") == "v2.0.1"
        assert sanitize_tag("1.2.3") == "v1.2.3"

    def test_sanitize_version(self):
        """Test version sanitizing keeps only tag-safe characters."""
        assert sanitize_version("  1.0   rc/1 ") == "1.0-rc1"

    def test_next_patch_version(self):
        """Test patch bumping and the fallback."""
        assert next_patch_version("v1.2.3") == "1.2.4"
        assert next_patch_version("1.0.9") == "1.0.10"
        assert next_patch_version("garbage") == "1.0.0"
        assert next_patch_version(None) == "1.0.0"


@pytest.fixture
def artifacts(tmp_path):
    paths = []
    for name in ("app.dmg", "app.exe", "app.deb"):
        path = tmp_path / name
        path.write_bytes(b"binary")
        paths.append(str(path))
    return paths


class TestReleasePublisher:
    """Test cases for release publishing."""

    def test_publish_uploads_all_artifacts(self, launcher, hosting_client, run_context, artifacts):
        """Test a full publish: tag, create release, upload."""
        publisher = ReleasePublisher(GitOperations(launcher), hosting_client)
        outcome = publisher.publish(run_context, "1.0.0", artifact_paths=artifacts)

        assert outcome.tag == "v1.0.0"
        assert outcome.uploaded == 3
        assert hosting_client.created == ["v1.0.0"]
        assert launcher.commands()[:2] == ["git tag -a v1.0.0 -m Release v1.0.0", "git push origin v1.0.0"]
        assert "Artifact upload complete! 3 file(s) uploaded." in messages(run_context, LogSeverity.SUCCESS)

    def test_partial_upload_failure_succeeds(self, launcher, hosting_client, run_context, artifacts):
        """Test that 2 of 3 uploads is still a successful release."""
        hosting_client.failing_uploads.add("app.exe")
        outcome = ReleasePublisher(GitOperations(launcher), hosting_client).publish(
            run_context, "1.0.0", artifact_paths=artifacts)

        assert outcome.uploaded == 2
        assert outcome.attempted == 3
        assert "Artifact upload complete! 2 file(s) uploaded." in messages(run_context, LogSeverity.SUCCESS)
        assert any("app.exe" in message for message in messages(run_context, LogSeverity.WARN))

    def test_all_uploads_failing_fails(self, launcher, hosting_client, run_context, artifacts):
        """Test that zero successful uploads fails the release."""
        hosting_client.failing_uploads.update({"app.dmg", "app.exe", "app.deb"})
        with pytest.raises(ReleaseUploadFailed):
            ReleasePublisher(GitOperations(launcher), hosting_client).publish(
                run_context, "1.0.0", artifact_paths=artifacts)

    def test_existing_tag_and_release_are_reused(self, launcher, hosting_client, run_context, artifacts):
        """Test that an existing tag and release only produce warnings."""
        launcher.script("git tag", fail("fatal: tag 'v1.0.0' already exists"))
        launcher.script("git push origin v1.0.0", fail(" ! [rejected] v1.0.0 -> v1.0.0 (already exists)"))
        hosting_client.releases["v1.0.0"] = {"id": 7, "html_url": "https://example.test/r/7",
                                             "upload_url": "https://uploads.example.test/7{?name,label}"}

        outcome = ReleasePublisher(GitOperations(launcher), hosting_client).publish(
            run_context, "1.0.0", artifact_paths=artifacts)

        assert hosting_client.created == []
        assert outcome.release_url == "https://example.test/r/7"
        warnings = messages(run_context, LogSeverity.WARN)
        assert "Release v1.0.0 already exists" in warnings

    def test_failed_tag_push_creates_ref_through_api(self, launcher, hosting_client, run_context, artifacts):
        """Test that a tag the remote refused over git is created as a REST ref on HEAD."""
        launcher.script("git push origin v1.0.0", fail("fatal: Authentication failed for 'https://example.test/'"))
        launcher.script("git rev-parse HEAD", ok("0123456789abcdef0123456789abcdef01234567\n"))

        outcome = ReleasePublisher(GitOperations(launcher), hosting_client).publish(
            run_context, "1.0.0", artifact_paths=artifacts)

        assert hosting_client.tag_refs == [("v1.0.0", "0123456789abcdef0123456789abcdef01234567")]
        assert hosting_client.created == ["v1.0.0"]
        assert outcome.uploaded == 3
        assert "Tag v1.0.0 created at 0123456" in messages(run_context, LogSeverity.SUCCESS)

    def test_failed_tag_push_and_ref_creation(self, launcher, hosting_client, run_context, artifacts):
        """Test that the push error surfaces when the REST ref cannot be created either."""
        launcher.script("git push origin v1.0.0", fail("fatal: Authentication failed for 'https://example.test/'"))
        launcher.script("git rev-parse HEAD", ok("0123456789abcdef0123456789abcdef01234567"))
        hosting_client.tag_ref_error = HostingApiError(
            "Hosting API error 422", status_code=422, body='{"message": "Object does not exist"}')

        with pytest.raises(ToolExecutionFailed) as exc_info:
            ReleasePublisher(GitOperations(launcher), hosting_client).publish(
                run_context, "1.0.0", artifact_paths=artifacts)
        assert "Authentication failed" in exc_info.value.raw_text
        assert hosting_client.created == []

    def test_tag_ref_already_on_remote(self, launcher, hosting_client, run_context, artifacts):
        """Test that an existing remote ref only warns."""
        launcher.script("git push origin v1.0.0", fail("fatal: unable to access remote"))
        hosting_client.tag_ref_error = HostingApiError(
            "Hosting API error 422", status_code=422, body='{"message": "Reference already exists"}')

        outcome = ReleasePublisher(GitOperations(launcher), hosting_client).publish(
            run_context, "1.0.0", artifact_paths=artifacts)
        assert outcome.uploaded == 3
        assert "Tag already exists on remote" in messages(run_context, LogSeverity.WARN)

    def test_sanitized_tag_warns(self, launcher, hosting_client, run_context, artifacts):
        """Test that sanitizing the version is reported."""
        outcome = ReleasePublisher(GitOperations(launcher), hosting_client).publish(
            run_context, "1.0 beta!", artifact_paths=artifacts)
        assert outcome.tag == "v1.0-beta"
        assert 'Tag name sanitized: "1.0 beta!" -> "1.0-beta"' in messages(run_context, LogSeverity.WARN)

    def test_directory_artifacts_are_expanded(self, launcher, hosting_client, run_context, tmp_path):
        """Test that an artifact directory uploads every file below it."""
        bundle = tmp_path / "bundle"
        (bundle / "dmg").mkdir(parents=True)
        (bundle / "dmg" / "app.dmg").write_bytes(b"x")
        (bundle / "app.zip").write_bytes(b"x")

        outcome = ReleasePublisher(GitOperations(launcher), hosting_client).publish(
            run_context, "1.0.0", artifact_paths=[str(bundle)])
        assert outcome.uploaded == 2
        assert sorted(hosting_client.uploads) == ["app.dmg", "app.zip"]

    def test_no_artifacts(self, launcher, hosting_client, run_context):
        """Test that a release without artifacts fails."""
        with pytest.raises(ArtifactsNotFound):
            ReleasePublisher(GitOperations(launcher), hosting_client).publish(
                run_context, "1.0.0", build_system=BuildSystem.UNKNOWN)

    def test_requires_remote_coordinates(self, launcher, hosting_client, repo_dir, artifacts):
        """Test that a binding without owner/repo cannot release."""
        ctx = RunContext(make_workflow([("rel", "release")]), RepositoryBinding(id="local", path=repo_dir))
        with pytest.raises(ConfigurationError):
            ReleasePublisher(GitOperations(launcher), hosting_client).publish(ctx, "1.0.0", artifact_paths=artifacts)

    def test_upload_limit(self, launcher, hosting_client, run_context, artifacts):
        """Test that uploads are capped."""
        outcome = ReleasePublisher(GitOperations(launcher), hosting_client, max_uploads=2).publish(
            run_context, "1.0.0", artifact_paths=artifacts)
        assert outcome.uploaded == 2
        assert len(hosting_client.uploads) == 2

    def test_cleanup_dir_removed(self, launcher, hosting_client, run_context, artifacts, tmp_path):
        """Test that the temporary clone is removed after a successful release."""
        clone = tmp_path / "clone"
        clone.mkdir()
        ReleasePublisher(GitOperations(launcher), hosting_client).publish(
            run_context, "1.0.0", artifact_paths=artifacts, cleanup_dir=str(clone))
        assert not os.path.exists(clone)
