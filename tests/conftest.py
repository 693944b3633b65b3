"""Pytest configuration and fixtures."""

import dataclasses
import os
import shlex
import tempfile
import threading
from typing import List, Optional, Sequence, Tuple

import pytest

from forgeflow.core.exceptions import HostingApiError
from forgeflow.core.launcher import CommandLauncher, CommandResult, FailureReason
from forgeflow.core.run_state import RunContext
from forgeflow.models.core import RepositoryBinding, Workflow
from forgeflow.storage.database import create_tables, get_database_engine, reset_database_engine


def ok(stdout: str = "") -> CommandResult:
    """Scripted successful outcome."""
    return CommandResult.success("", stdout=stdout)


def fail(stderr: str = "", exit_code: int = 1, reason: Optional[FailureReason] = None) -> CommandResult:
    """Scripted failed outcome; classified from ``stderr`` unless a reason is given."""
    return CommandResult.failure("", stderr=stderr, exit_code=exit_code, reason=reason)


class FakeLauncher(CommandLauncher):
    """Scripted launcher.

    Outcomes are registered per command prefix; the longest matching prefix
    answers. Multiple outcomes are consumed in order and the last one repeats.
    Unscripted commands succeed. Every invocation is recorded.
    """

    def __init__(self, available: Sequence[str] = ("brew",)):
        super().__init__()
        self.rules: List[Tuple[Tuple[str, ...], List[CommandResult]]] = []
        self.calls: List[Tuple[str, ...]] = []
        self.cwds: List[Optional[str]] = []
        self.available = set(available)
        self._lock = threading.Lock()

    def script(self, prefix: str, *outcomes: CommandResult):
        self.rules.append((tuple(shlex.split(prefix)), list(outcomes)))
        return self

    def which(self, executable: str) -> Optional[str]:
        return f"/usr/bin/{executable}" if executable in self.available else None

    def run(self, executable, args=None, cwd=None, env=None) -> CommandResult:
        argv = (executable,) + tuple(args or [])
        with self._lock:
            self.calls.append(argv)
            self.cwds.append(cwd)
            best = None
            for prefix, outcomes in self.rules:
                if argv[:len(prefix)] == prefix and (best is None or len(prefix) > len(best[0])):
                    best = (prefix, outcomes)
            if best is None:
                outcome = ok()
            else:
                outcomes = best[1]
                outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        return dataclasses.replace(outcome, executable=executable, args=list(args or []), cwd=cwd)

    def commands(self) -> List[str]:
        return [" ".join(call) for call in self.calls]

    def count(self, prefix: str) -> int:
        expected = tuple(shlex.split(prefix))
        return sum(1 for call in self.calls if call[:len(expected)] == expected)


class FakeHostingClient:
    """In-memory stand-in for the hosting REST client."""

    def __init__(self):
        self.releases = {}
        self.created: List[str] = []
        self.uploads: List[str] = []
        self.failing_uploads = set()
        self.create_error: Optional[HostingApiError] = None
        self.tag_refs: List[Tuple[str, str]] = []
        self.tag_ref_error: Optional[HostingApiError] = None

    def get_release_by_tag(self, owner, repo, tag):
        return self.releases.get(tag)

    def create_release(self, owner, repo, tag, name, body="", draft=False, prerelease=False):
        if self.create_error is not None:
            raise self.create_error
        release = {
            "id": len(self.releases) + 1,
            "tag_name": tag,
            "name": name,
            "body": body,
            "html_url": f"https://example.test/{owner}/{repo}/releases/tag/{tag}",
            "upload_url": f"https://uploads.example.test/{owner}/{repo}/assets{{?name,label}}",
        }
        self.releases[tag] = release
        self.created.append(tag)
        return release

    def create_tag_ref(self, owner, repo, tag, sha):
        if self.tag_ref_error is not None:
            raise self.tag_ref_error
        self.tag_refs.append((tag, sha))
        return {"ref": f"refs/tags/{tag}", "object": {"sha": sha}}

    def upload_asset(self, release, file_path, name=None):
        name = name or os.path.basename(file_path)
        if name in self.failing_uploads:
            raise HostingApiError(f"Upload of {name} failed", status_code=500, body="server error")
        self.uploads.append(name)
        return {"name": name}


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    reset_database_engine()
    get_database_engine(f"sqlite:///{db_path}")
    create_tables()

    yield db_path

    reset_database_engine()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def hosting_client():
    return FakeHostingClient()


@pytest.fixture
def repo_dir(tmp_path):
    path = tmp_path / "demo-app"
    path.mkdir()
    return str(path)


@pytest.fixture
def repository(repo_dir):
    return RepositoryBinding(id="repo-1", path=repo_dir, name="demo-app", owner="acme", repo="demo-app")


def make_workflow(steps, connections=(), **kwargs) -> Workflow:
    """Build a workflow document from compact step/connection tuples."""
    document = {
        "id": kwargs.pop("id", "wf-1"),
        "name": kwargs.pop("name", "Demo workflow"),
        "steps": [
            {"id": step[0], "type": step[1], "config": step[2] if len(step) > 2 else {}}
            for step in steps
        ],
        "connections": [{"from": source, "to": target} for source, target in connections],
    }
    document.update(kwargs)
    return Workflow.model_validate(document)


@pytest.fixture
def run_context(repository):
    """Run context over a one-step workflow, for exercising collaborators directly."""
    return RunContext(make_workflow([("cmd", "command", {"command": "true"})]), repository)
