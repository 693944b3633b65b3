"""Build-system detection and default build/test commands."""

import json
import os
from typing import Dict, List, Optional, Tuple

from ..models.core import BuildSystem
from .filesystem import FileSystemProbe
from .logging import get_logger

logger = get_logger(__name__)


# (build command, test command) per classification.
DEFAULT_COMMANDS: Dict[BuildSystem, Tuple[str, str]] = {
    BuildSystem.WAILS: ("wails build", "go test ./..."),
    BuildSystem.TAURI: ("npm run tauri build -- --debug", "cargo test"),
    BuildSystem.ELECTRON: ("npm run build", "npm test"),
    BuildSystem.NPM: ("npm run build", "npm test"),
    BuildSystem.YARN: ("yarn build", "yarn test"),
    BuildSystem.PNPM: ("pnpm build", "pnpm test"),
    BuildSystem.CARGO: ("cargo build --release", "cargo test"),
    BuildSystem.GO: ("go build ./...", "go test ./..."),
    BuildSystem.GRADLE: ("./gradlew build", "./gradlew test"),
    BuildSystem.MAVEN: ("mvn package", "mvn test"),
    BuildSystem.CMAKE: ("cmake --build .", "ctest"),
    BuildSystem.MAKE: ("make", "make test"),
    BuildSystem.PYTHON: ("pip install -e .", "pytest"),
    BuildSystem.DOTNET: ("dotnet build", "dotnet test"),
}

# Marker files probed in priority order. Electron is handled separately
# because it shares package.json with the plain node classifications.
MARKERS: List[Tuple[BuildSystem, List[str]]] = [
    (BuildSystem.WAILS, ["wails.json"]),
    (BuildSystem.TAURI, ["src-tauri/Cargo.toml"]),
    (BuildSystem.ELECTRON, []),
    (BuildSystem.YARN, ["yarn.lock"]),
    (BuildSystem.PNPM, ["pnpm-lock.yaml"]),
    (BuildSystem.NPM, ["package.json"]),
    (BuildSystem.CARGO, ["Cargo.toml"]),
    (BuildSystem.GO, ["go.mod"]),
    (BuildSystem.GRADLE, ["build.gradle", "build.gradle.kts"]),
    (BuildSystem.MAVEN, ["pom.xml"]),
    (BuildSystem.CMAKE, ["CMakeLists.txt"]),
    (BuildSystem.MAKE, ["Makefile"]),
    (BuildSystem.PYTHON, ["setup.py", "pyproject.toml"]),
    (BuildSystem.DOTNET, ["*.csproj", "*.fsproj"]),
]


class BuildSystemDetector:
    """Classifies a checkout into one build ecosystem by probing marker files."""

    def __init__(self, filesystem: Optional[FileSystemProbe] = None):
        self.filesystem = filesystem or FileSystemProbe()

    def detect(self, path: str) -> BuildSystem:
        """
        Classify the checkout at ``path``.

        Returns:
            The first matching BuildSystem in priority order, or UNKNOWN
        """
        if not self.filesystem.is_directory(path):
            logger.warning(f"Cannot detect build system, not a directory: {path}")
            return BuildSystem.UNKNOWN

        for system, markers in MARKERS:
            if system == BuildSystem.ELECTRON:
                if self._declares_electron(path):
                    return system
                continue
            if any(self._marker_present(path, marker) for marker in markers):
                logger.debug(f"Detected {system.value} build system in {path}")
                return system

        return BuildSystem.UNKNOWN

    def _marker_present(self, path: str, marker: str) -> bool:
        candidates = self.filesystem.expand(os.path.join(path, marker))
        return any(self.filesystem.is_file(candidate) for candidate in candidates)

    def _declares_electron(self, path: str) -> bool:
        package_json = os.path.join(path, "package.json")
        if not self.filesystem.is_file(package_json):
            return False
        try:
            manifest = json.loads(self.filesystem.read_text(package_json))
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable package.json in {path}: {e}")
            return False
        if not isinstance(manifest, dict):
            return False
        for section in ("dependencies", "devDependencies"):
            deps = manifest.get(section) or {}
            if isinstance(deps, dict) and "electron" in deps:
                return True
        return False


def default_build_command(system: BuildSystem) -> Optional[str]:
    commands = DEFAULT_COMMANDS.get(BuildSystem(system))
    return commands[0] if commands else None


def default_test_command(system: BuildSystem) -> Optional[str]:
    commands = DEFAULT_COMMANDS.get(BuildSystem(system))
    return commands[1] if commands else None
