"""Artifact discovery after a build."""

import os
from typing import Dict, List, Optional

from ..models.core import BuildSystem
from .filesystem import FileSystemProbe
from .logging import get_logger

logger = get_logger(__name__)


_NODE_OUTPUTS = ["dist", "build", "out", "output", ".next", "dist-electron"]

CANDIDATE_DIRECTORIES: Dict[BuildSystem, List[str]] = {
    BuildSystem.TAURI: [
        "src-tauri/target/release",
        "src-tauri/target/debug",
        "src-tauri/target/*/release",
        "src-tauri/target/*/debug",
        "src-tauri/target/release/bundle",
        "src-tauri/target/debug/bundle",
    ],
    BuildSystem.CARGO: ["target/release", "target/debug", "target/*/release", "target/*/debug"],
    BuildSystem.NPM: _NODE_OUTPUTS,
    BuildSystem.YARN: _NODE_OUTPUTS,
    BuildSystem.PNPM: _NODE_OUTPUTS,
    BuildSystem.ELECTRON: _NODE_OUTPUTS,
    BuildSystem.GO: ["bin", "build", "."],
    BuildSystem.WAILS: ["build/bin", "build", "bin"],
    BuildSystem.GRADLE: ["build/libs", "build/outputs", "app/build/outputs"],
    BuildSystem.MAVEN: ["target", "target/release"],
    BuildSystem.CMAKE: ["build", "bin", "out"],
    BuildSystem.MAKE: ["build", "bin", "out"],
    BuildSystem.DOTNET: ["bin/Release", "bin/Debug", "publish"],
    BuildSystem.PYTHON: ["dist", "build", ".eggs"],
}
FALLBACK_DIRECTORIES = ["dist", "build", "out", "bin", "target"]

ARTIFACT_SUFFIXES = (".exe", ".app", ".dmg", ".deb", ".rpm", ".msi", ".zip", ".tar.gz", ".AppImage")


def candidate_directories(build_system: BuildSystem) -> List[str]:
    return CANDIDATE_DIRECTORIES.get(BuildSystem(build_system), FALLBACK_DIRECTORIES)


class ArtifactLocator:
    """Finds build outputs below a build directory.

    Resolution order: an explicit name pattern, then the first non-empty
    classification-specific output directory, then a broad scan for
    installers, archives and executables. An empty list means nothing was
    found; callers decide whether that is fatal.
    """

    def __init__(self, filesystem: Optional[FileSystemProbe] = None):
        self.filesystem = filesystem or FileSystemProbe()

    def locate(self, build_dir: str, build_system: BuildSystem = BuildSystem.UNKNOWN,
               pattern: Optional[str] = None) -> List[str]:
        if pattern:
            return self._search_pattern(build_dir, pattern)

        for relative in candidate_directories(build_system):
            for candidate in self.filesystem.expand(os.path.normpath(os.path.join(build_dir, relative))):
                if self.filesystem.has_entries(candidate):
                    logger.info(f"Found artifacts at: {candidate}")
                    return [candidate]

        found = self._scan_for_artifacts(build_dir)
        if found:
            logger.info(f"Found {len(found)} artifact(s) by extension scan in {build_dir}")
        else:
            logger.warning(f"No artifacts found in {build_dir}")
        return found

    def _search_pattern(self, build_dir: str, pattern: str) -> List[str]:
        try:
            return self.filesystem.find_by_name(build_dir, pattern)
        except OSError as e:
            logger.warning(f"Artifact search for '{pattern}' failed ({e}), using literal path")
            return [os.path.join(build_dir, pattern)]

    def _scan_for_artifacts(self, build_dir: str) -> List[str]:
        return [
            path for path in self.filesystem.list_files_recursive(build_dir)
            if path.endswith(ARTIFACT_SUFFIXES) or self.filesystem.is_executable(path)
        ]
