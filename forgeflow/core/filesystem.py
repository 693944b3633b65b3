"""Filesystem probe used by the detector, artifact locator and release publisher."""

import fnmatch
import glob
import os
from typing import Iterable, List, Optional


DEFAULT_EXCLUDED_DIRS = frozenset({"node_modules", ".git"})


class FileSystemProbe:
    """Read-only view of the local filesystem."""

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def is_file(self, path: str) -> bool:
        return os.path.isfile(path)

    def is_directory(self, path: str) -> bool:
        return os.path.isdir(path)

    def is_executable(self, path: str) -> bool:
        return os.path.isfile(path) and os.access(path, os.X_OK)

    def expand(self, pattern: str) -> List[str]:
        """Expand shell wildcards in a path; a pattern without wildcards is returned as-is."""
        if glob.has_magic(pattern):
            return sorted(glob.glob(pattern))
        return [pattern]

    def list_files_recursive(self, path: str, excluded_dirs: Optional[Iterable[str]] = None) -> List[str]:
        """
        List every regular file below a directory.

        Args:
            path: Root directory
            excluded_dirs: Directory names that are not descended into

        Returns:
            Sorted list of file paths; empty if the path is not a directory
        """
        excluded = set(DEFAULT_EXCLUDED_DIRS if excluded_dirs is None else excluded_dirs)
        if not self.is_directory(path):
            return []

        files = []
        for root, dirs, names in os.walk(path):
            dirs[:] = sorted(d for d in dirs if d not in excluded)
            for name in sorted(names):
                files.append(os.path.join(root, name))
        return files

    def find_by_name(self, path: str, pattern: str) -> List[str]:
        """Find files whose base name matches a glob pattern.

        Raises:
            FileNotFoundError: If the search root does not exist
        """
        if not self.is_directory(path):
            raise FileNotFoundError(f"Search root does not exist: {path}")
        return [f for f in self.list_files_recursive(path) if fnmatch.fnmatch(os.path.basename(f), pattern)]

    def has_entries(self, path: str) -> bool:
        """True when the path is a non-empty directory or an existing file."""
        if self.is_directory(path):
            with os.scandir(path) as entries:
                return any(True for _ in entries)
        return self.is_file(path)

    def read_text(self, path: str) -> str:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read()
