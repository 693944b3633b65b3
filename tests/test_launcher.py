"""Tests for the command launcher, failure classification and package installer."""

import pytest

from forgeflow.core.exceptions import ToolExecutionFailed, ToolNotFound
from forgeflow.core.launcher import (
    CommandLauncher, CommandResult, FailureReason, PackageInstaller, classify_failure, raise_for_result,
)

from conftest import FakeLauncher, fail, ok


class TestClassifyFailure:
    """Test cases for mapping tool output to failure reasons."""

    @pytest.mark.parametrize("text, expected", [
        ("bash: cargo: command not found", FailureReason.UNKNOWN),
        ("'vite' is not recognized as an internal or external command", FailureReason.UNKNOWN),
        ("fatal: tag 'v1.0.0' already exists", FailureReason.ALREADY_EXISTS),
        ("*** Please tell me who you are.\n\nRun git config --global user.email", FailureReason.IDENTITY_NOT_CONFIGURED),
        ("On branch main\nnothing to commit, working tree clean", FailureReason.NOTHING_TO_COMMIT),
        ("Already up to date.", FailureReason.ALREADY_UP_TO_DATE),
        ("CONFLICT (content): Merge conflict in README.md", FailureReason.MERGE_CONFLICT),
        (" ! [rejected]        main -> main (non-fast-forward)", FailureReason.NON_FAST_FORWARD),
        ("error: pathspec 'feature' did not match any file(s) known to git", FailureReason.PATHSPEC_NOT_FOUND),
        ("error: linker `x86_64-w64-mingw32-gcc` not found", FailureReason.LINKER_MISSING),
        ("segmentation fault", FailureReason.UNKNOWN),
    ])
    def test_classification(self, text, expected):
        """Test each family of tool output."""
        assert classify_failure(text) == expected

    def test_empty_output_is_unknown(self):
        """Test that a failure without output is unknown."""
        assert classify_failure("") == FailureReason.UNKNOWN

    def test_existing_tag_wins_over_rejection(self):
        """Test that a rejected tag push is reported as an existing tag."""
        text = " ! [rejected]        v1.0.0 -> v1.0.0 (already exists)"
        assert classify_failure(text) == FailureReason.ALREADY_EXISTS


class TestCommandResult:
    """Test cases for CommandResult."""

    def test_output_combines_streams(self):
        """Test that output joins stripped stdout and stderr."""
        result = CommandResult("make", ["all"], stdout="built\n", stderr="  warning: x \n", exit_code=0)
        assert result.output == "built\nwarning: x"
        assert result.display() == "make all"
        assert result.ok

    def test_failure_classifies_stderr(self):
        """Test that failure() classifies its stderr unless a reason is given."""
        assert CommandResult.failure("git", stderr="Already up to date.").reason == FailureReason.ALREADY_UP_TO_DATE
        forced = CommandResult.failure("git", stderr="anything", reason=FailureReason.TIMEOUT)
        assert forced.reason == FailureReason.TIMEOUT


class TestCommandLauncher:
    """Test cases for the real subprocess launcher."""

    def test_missing_executable(self, tmp_path):
        """Test that an unknown program is reported as tool-not-found."""
        result = CommandLauncher().run("forgeflow-definitely-missing-tool", [], cwd=str(tmp_path))
        assert not result.ok
        assert result.reason == FailureReason.TOOL_NOT_FOUND

    def test_present_program_exiting_127(self, tmp_path):
        """Test that a shell reporting a missing inner command is not a missing tool."""
        result = CommandLauncher().run("bash", ["-c", "forgeflow_definitely_missing_tool"], cwd=str(tmp_path))
        assert result.exit_code == 127
        assert result.reason != FailureReason.TOOL_NOT_FOUND
        with pytest.raises(ToolExecutionFailed) as exc_info:
            raise_for_result(result)
        assert "forgeflow_definitely_missing_tool" in exc_info.value.raw_text

    def test_missing_working_directory(self, tmp_path):
        """Test that a missing cwd is not mistaken for a missing tool."""
        result = CommandLauncher().run("forgeflow-definitely-missing-tool", [], cwd=str(tmp_path / "gone"))
        assert not result.ok
        assert result.reason == FailureReason.UNKNOWN


class TestRaiseForResult:
    """Test cases for converting results into errors."""

    def test_success_does_not_raise(self):
        """Test that a successful result passes."""
        raise_for_result(CommandResult.success("true"))

    def test_tool_not_found(self):
        """Test that a missing tool raises ToolNotFound."""
        with pytest.raises(ToolNotFound):
            raise_for_result(CommandResult.failure("cargo", reason=FailureReason.TOOL_NOT_FOUND))

    def test_other_failure_carries_result(self):
        """Test that other failures raise ToolExecutionFailed with the raw output."""
        result = CommandResult.failure("make", ["all"], stderr="No rule to make target 'all'", exit_code=2)
        with pytest.raises(ToolExecutionFailed) as exc_info:
            raise_for_result(result)
        assert exc_info.value.result is result
        assert "No rule to make target" in exc_info.value.raw_text
        assert exc_info.value.details["exit_code"] == 2


class TestPackageInstaller:
    """Test cases for installing missing tools."""

    def test_uses_first_available_manager(self):
        """Test that brew is preferred and receives the package name."""
        launcher = FakeLauncher(available=("apt-get", "brew"))
        PackageInstaller(launcher).install("jq")
        assert launcher.commands() == ["brew install jq"]

    def test_falls_back_to_apt(self):
        """Test that apt-get is used when brew is absent."""
        launcher = FakeLauncher(available=("apt-get",))
        PackageInstaller(launcher).install("jq")
        assert launcher.commands() == ["apt-get install -y jq"]

    def test_no_manager(self):
        """Test that a host without a package manager raises ToolNotFound."""
        with pytest.raises(ToolNotFound):
            PackageInstaller(FakeLauncher(available=())).install("jq")

    def test_install_failure(self):
        """Test that a failing install raises ToolExecutionFailed."""
        launcher = FakeLauncher().script("brew install", fail("Error: No available formula with the name \"jq\""))
        with pytest.raises(ToolExecutionFailed):
            PackageInstaller(launcher).install("jq")

    def test_fake_launcher_repeats_last_outcome(self):
        """Test the scripted launcher consumes outcomes in order."""
        launcher = FakeLauncher().script("git push", fail("[rejected]"), ok("done"))
        assert not launcher.run("git", ["push"]).ok
        assert launcher.run("git", ["push"]).ok
        assert launcher.run("git", ["push"]).ok
