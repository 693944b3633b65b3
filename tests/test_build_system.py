"""Tests for build-system detection, artifact discovery and repository bindings."""

import json
import os

import pytest

from forgeflow.core.artifacts import ArtifactLocator
from forgeflow.core.build_system import BuildSystemDetector, default_build_command, default_test_command
from forgeflow.core.exceptions import RepositoryNotFoundError
from forgeflow.core.filesystem import FileSystemProbe
from forgeflow.core.repositories import RepositoryStore
from forgeflow.models.core import BuildSystem


def touch(root, relative, content=""):
    path = os.path.join(str(root), relative)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(content)
    return path


class TestBuildSystemDetector:
    """Test cases for BuildSystemDetector."""

    @pytest.mark.parametrize("marker, expected", [
        ("wails.json", BuildSystem.WAILS),
        ("src-tauri/Cargo.toml", BuildSystem.TAURI),
        ("yarn.lock", BuildSystem.YARN),
        ("pnpm-lock.yaml", BuildSystem.PNPM),
        ("package.json", BuildSystem.NPM),
        ("Cargo.toml", BuildSystem.CARGO),
        ("go.mod", BuildSystem.GO),
        ("build.gradle.kts", BuildSystem.GRADLE),
        ("pom.xml", BuildSystem.MAVEN),
        ("CMakeLists.txt", BuildSystem.CMAKE),
        ("Makefile", BuildSystem.MAKE),
        ("pyproject.toml", BuildSystem.PYTHON),
        ("App.csproj", BuildSystem.DOTNET),
    ])
    def test_single_marker(self, tmp_path, marker, expected):
        """Test classification by a single marker file."""
        touch(tmp_path, marker, "{}")
        assert BuildSystemDetector().detect(str(tmp_path)) == expected

    def test_electron_dependency(self, tmp_path):
        """Test that an electron dependency in package.json wins over plain npm."""
        touch(tmp_path, "package.json", json.dumps({"devDependencies": {"electron": "^30.0.0"}}))
        assert BuildSystemDetector().detect(str(tmp_path)) == BuildSystem.ELECTRON

    def test_priority_order(self, tmp_path):
        """Test that Tauri beats the package.json beside it and yarn beats npm."""
        touch(tmp_path, "package.json", "{}")
        touch(tmp_path, "yarn.lock")
        assert BuildSystemDetector().detect(str(tmp_path)) == BuildSystem.YARN
        touch(tmp_path, "src-tauri/Cargo.toml")
        assert BuildSystemDetector().detect(str(tmp_path)) == BuildSystem.TAURI

    def test_unreadable_package_json(self, tmp_path):
        """Test that a broken manifest falls back to npm."""
        touch(tmp_path, "package.json", "{not json")
        assert BuildSystemDetector().detect(str(tmp_path)) == BuildSystem.NPM

    def test_unknown(self, tmp_path):
        """Test an empty folder and a missing path."""
        assert BuildSystemDetector().detect(str(tmp_path)) == BuildSystem.UNKNOWN
        assert BuildSystemDetector().detect(str(tmp_path / "missing")) == BuildSystem.UNKNOWN

    def test_default_commands(self):
        """Test default build and test commands."""
        assert default_build_command(BuildSystem.CARGO) == "cargo build --release"
        assert default_test_command(BuildSystem.NPM) == "npm test"
        assert default_build_command(BuildSystem.UNKNOWN) is None


class TestArtifactLocator:
    """Test cases for ArtifactLocator."""

    def test_pattern_search(self, tmp_path):
        """Test that an explicit pattern matches file names anywhere below the build dir."""
        touch(tmp_path, "out/make/app-1.0.dmg")
        touch(tmp_path, "out/make/app-1.0.zip")
        touch(tmp_path, "node_modules/pkg/fake.dmg")
        found = ArtifactLocator().locate(str(tmp_path), BuildSystem.ELECTRON, "*.dmg")
        assert found == [os.path.join(str(tmp_path), "out", "make", "app-1.0.dmg")]

    def test_pattern_with_missing_root_uses_literal_path(self, tmp_path):
        """Test the literal-path fallback when the search itself fails."""
        missing = str(tmp_path / "gone")
        assert ArtifactLocator().locate(missing, BuildSystem.UNKNOWN, "app.exe") == [os.path.join(missing, "app.exe")]

    def test_first_non_empty_candidate_directory(self, tmp_path):
        """Test that the first populated candidate directory is returned."""
        os.makedirs(tmp_path / "target" / "release")
        touch(tmp_path, "target/debug/app")
        found = ArtifactLocator().locate(str(tmp_path), BuildSystem.CARGO)
        assert found == [os.path.join(str(tmp_path), "target", "debug")]

    def test_wildcard_candidates(self, tmp_path):
        """Test candidate directories containing wildcards."""
        touch(tmp_path, "src-tauri/target/x86_64-pc-windows-gnu/release/app.exe")
        found = ArtifactLocator().locate(str(tmp_path), BuildSystem.TAURI)
        assert found == [os.path.join(str(tmp_path), "src-tauri", "target", "x86_64-pc-windows-gnu", "release")]

    def test_suffix_scan(self, tmp_path):
        """Test the broad scan when no candidate directory exists."""
        installer = touch(tmp_path, "packaging/setup.msi")
        touch(tmp_path, "README.md")
        assert ArtifactLocator().locate(str(tmp_path), BuildSystem.CMAKE) == [installer]

    def test_nothing_found(self, tmp_path):
        """Test that an empty build dir yields an empty list."""
        assert ArtifactLocator().locate(str(tmp_path), BuildSystem.NPM) == []


class TestFileSystemProbe:
    """Test cases for FileSystemProbe."""

    def test_list_files_recursive_skips_excluded(self, tmp_path):
        """Test that node_modules and .git are skipped by default."""
        kept = touch(tmp_path, "src/main.go")
        touch(tmp_path, ".git/HEAD")
        touch(tmp_path, "node_modules/x/index.js")
        assert FileSystemProbe().list_files_recursive(str(tmp_path)) == [kept]

    def test_find_by_name_missing_root(self, tmp_path):
        """Test that searching a missing root raises."""
        with pytest.raises(FileNotFoundError):
            FileSystemProbe().find_by_name(str(tmp_path / "nope"), "*.exe")


class TestRepositoryStore:
    """Test cases for repository bindings."""

    def test_bind_detects_build_system(self, temp_db, tmp_path):
        """Test binding a folder classifies it and persists the binding."""
        touch(tmp_path, "go.mod")
        store = RepositoryStore()
        binding = store.bind(str(tmp_path), owner="acme", repo="tool", binding_id="repo-1")

        loaded = store.get("repo-1")
        assert loaded.build_system == BuildSystem.GO
        assert loaded.full_name == "acme/tool"
        assert loaded.path == binding.path
        assert [b.id for b in store.list()] == ["repo-1"]

    def test_refresh(self, temp_db, tmp_path):
        """Test that refresh re-runs detection."""
        store = RepositoryStore()
        store.bind(str(tmp_path), binding_id="repo-1")
        touch(tmp_path, "Cargo.toml")
        assert store.refresh("repo-1").build_system == BuildSystem.CARGO

    def test_record_latest_version(self, temp_db, tmp_path):
        """Test caching the latest release, ignoring unknown bindings."""
        store = RepositoryStore()
        store.bind(str(tmp_path), binding_id="repo-1")
        assert store.record_latest_version("repo-1", "1.2.0")
        assert store.get("repo-1").latest_version == "1.2.0"
        assert not store.record_latest_version("cli:adhoc", "1.2.0")

    def test_missing_binding(self, temp_db):
        """Test lookups and deletes of unknown bindings."""
        store = RepositoryStore()
        with pytest.raises(RepositoryNotFoundError):
            store.get("nope")
        with pytest.raises(RepositoryNotFoundError):
            store.delete("nope")
