"""Release publishing: tag, remote release, artifact upload."""

import re
import shutil
from dataclasses import dataclass
from typing import List, Optional

import requests

from ..models.core import BuildSystem
from .artifacts import ArtifactLocator
from .exceptions import (
    ArtifactsNotFound, ConfigurationError, HostingApiError, ReleaseTagAlreadyExists,
    ReleaseUploadFailed, ToolExecutionFailed, TransientError,
)
from .filesystem import FileSystemProbe
from .git_ops import GitOperations
from .hosting_client import HostingClient
from .logging import get_logger
from .run_state import RunContext

logger = get_logger(__name__)

DEFAULT_MAX_UPLOADS = 50
_VERSION_PATTERN = re.compile(r'^v?(\d+)\.(\d+)\.(\d+)')


def sanitize_version(version: str) -> str:
    """Collapse whitespace to '-' and drop characters outside [A-Za-z0-9.-]."""
    collapsed = re.sub(r'\s+', '-', version.strip())
    return re.sub(r'[^A-Za-z0-9.-]', '', collapsed)


def sanitize_tag(version: str) -> str:
    """Tag-safe token for a version: ``"1.0 beta!"`` becomes ``"v1.0-beta"``."""
    sanitized = sanitize_version(version)
    if len(sanitized) > 1 and sanitized[0] in "vV" and sanitized[1].isdigit():
        sanitized = sanitized[1:]
    return f"v{sanitized}"


def next_patch_version(version: Optional[str]) -> str:
    """Bump the patch component; anything unparsable restarts at 1.0.0."""
    match = _VERSION_PATTERN.match((version or "").strip())
    if not match:
        return "1.0.0"
    major, minor, patch = (int(part) for part in match.groups())
    return f"{major}.{minor}.{patch + 1}"


@dataclass
class ReleaseOutcome:
    tag: str
    release_url: Optional[str]
    uploaded: int
    attempted: int


class ReleasePublisher:
    """Creates or reuses a release for a sanitized tag and uploads artifacts to it."""

    def __init__(
        self,
        git: GitOperations,
        client: HostingClient,
        locator: Optional[ArtifactLocator] = None,
        filesystem: Optional[FileSystemProbe] = None,
        max_uploads: int = DEFAULT_MAX_UPLOADS,
    ):
        self.git = git
        self.client = client
        self.filesystem = filesystem or FileSystemProbe()
        self.locator = locator or ArtifactLocator(self.filesystem)
        self.max_uploads = max_uploads

    def publish(
        self,
        ctx: RunContext,
        version: str,
        release_name: Optional[str] = None,
        build_dir: Optional[str] = None,
        artifact_paths: Optional[List[str]] = None,
        build_system: BuildSystem = BuildSystem.UNKNOWN,
        cleanup_dir: Optional[str] = None,
    ) -> ReleaseOutcome:
        """
        Publish a release.

        Args:
            ctx: Run context (repository binding and run log)
            version: Version string, sanitized into the tag
            release_name: Display name, defaults to ``Release v<version>``
            build_dir: Directory to re-run artifact discovery in
            artifact_paths: Paths recorded by a preceding build step
            build_system: Classification used when discovery re-runs
            cleanup_dir: Temporary clone directory removed after success

        Returns:
            ReleaseOutcome with the tag and upload counts

        Raises:
            ArtifactsNotFound: Nothing to upload
            ReleaseUploadFailed: Every upload failed
            HostingApiError: The release could neither be created nor found
        """
        repository = ctx.repository
        if not repository.owner or not repository.repo:
            raise ConfigurationError("Repository remote coordinates (owner/repo) are required for releases")

        name = release_name or f"Release v{version}"
        sanitized = sanitize_version(version)
        tag = sanitize_tag(version)
        ctx.info(f"Preparing release {tag}...")
        if sanitized != version:
            ctx.warn(f'Tag name sanitized: "{version}" -> "{sanitized}"')

        self._tag(ctx, repository.path, repository.owner, repository.repo, tag, name)
        release = self._find_or_create_release(ctx, repository.owner, repository.repo, tag, name,
                                               repository.default_branch)
        ctx.info(f"URL: {release.get('html_url')}")

        files = self._collect_files(ctx, artifact_paths, build_dir or repository.path, build_system)
        uploaded, attempted = self._upload(ctx, release, files)

        if cleanup_dir:
            self._cleanup(ctx, cleanup_dir)

        return ReleaseOutcome(tag=tag, release_url=release.get("html_url"), uploaded=uploaded, attempted=attempted)

    def _tag(self, ctx: RunContext, path: str, owner: str, repo: str, tag: str, message: str):
        try:
            self.git.create_tag(ctx, path, tag, message)
        except ReleaseTagAlreadyExists as e:
            ctx.warn(e.message)
        try:
            self.git.push_tag(ctx, path, tag)
        except ReleaseTagAlreadyExists as e:
            ctx.warn(e.message)
        except ToolExecutionFailed as e:
            self._tag_through_api(ctx, path, owner, repo, tag, e)

    def _tag_through_api(self, ctx: RunContext, path: str, owner: str, repo: str, tag: str,
                         push_error: ToolExecutionFailed):
        """Create the tag as a remote ref when pushing it over git failed.

        The ref points at the local HEAD commit, so this only succeeds when
        that commit is already on the remote.
        """
        ctx.warn(f"Tag push failed, creating {tag} through the hosting API...")
        sha = self.git.head_sha(ctx, path)
        try:
            self.client.create_tag_ref(owner, repo, tag, sha)
        except HostingApiError as e:
            if "already exists" in e.body:
                ctx.warn("Tag already exists on remote")
                return
            logger.warning(f"Tag ref creation for {tag} failed: {e.message}")
            raise push_error from e
        ctx.success(f"Tag {tag} created at {sha[:7]}")

    def _find_or_create_release(self, ctx: RunContext, owner: str, repo: str, tag: str, name: str,
                                branch: str) -> dict:
        existing = self.client.get_release_by_tag(owner, repo, tag)
        if existing is not None:
            ctx.warn(f"Release {tag} already exists")
            return existing

        ctx.command(f"Creating release {tag}...")
        body = (
            f"## {name}\n\nAutomated release created by ForgeFlow\n\n"
            f"### Changes\n- Built from {branch} branch"
        )
        try:
            release = self.client.create_release(owner, repo, tag, name, body)
        except HostingApiError as e:
            if "already_exists" not in e.body:
                raise
            ctx.warn("Release already exists, fetching existing...")
            release = self.client.get_release_by_tag(owner, repo, tag)
            if release is None:
                raise HostingApiError(
                    f"Failed to create or fetch release {tag}: {e.body}", status_code=e.status_code, body=e.body
                )
            return release
        ctx.success(f"Release {tag} created!")
        return release

    def _collect_files(self, ctx: RunContext, artifact_paths: Optional[List[str]], build_dir: str,
                       build_system: BuildSystem) -> List[str]:
        paths = list(artifact_paths or [])
        if paths:
            ctx.info(f"Found {len(paths)} artifact(s) from build step")
        else:
            ctx.info("No artifacts from build step, searching...")
            paths = self.locator.locate(build_dir, build_system)
        if not paths:
            ctx.error("No artifacts found to upload")
            raise ArtifactsNotFound("No artifacts found - release deployment failed", build_dir=build_dir)

        files: List[str] = []
        for path in paths:
            if self.filesystem.is_directory(path):
                expanded = self.filesystem.list_files_recursive(path, excluded_dirs=())
                ctx.info(f"Expanding directory: {path} ({len(expanded)} files)")
                files.extend(expanded)
            else:
                files.append(path)
        return files

    def _upload(self, ctx: RunContext, release: dict, files: List[str]):
        batch = files[:self.max_uploads]
        if len(files) > self.max_uploads:
            ctx.warn(f"{len(files)} files found, uploading the first {self.max_uploads}")
        ctx.info(f"Uploading {len(batch)} file(s)...")

        uploaded = 0
        for path in batch:
            try:
                self.client.upload_asset(release, path)
            except (HostingApiError, TransientError, requests.RequestException, OSError) as e:
                message = e.message if isinstance(e, (HostingApiError, TransientError)) else str(e)
                ctx.warn(f"Failed to upload {path}: {message}")
                continue
            uploaded += 1
            ctx.success(f"Uploaded: {path}")

        if uploaded == 0:
            ctx.error("Failed to upload any artifacts!")
            raise ReleaseUploadFailed("No artifacts were uploaded to the release", attempted=len(batch))
        ctx.success(f"Artifact upload complete! {uploaded} file(s) uploaded.")
        return uploaded, len(batch)

    def _cleanup(self, ctx: RunContext, directory: str):
        ctx.info(f"Cleaning up temp directory: {directory}")
        try:
            shutil.rmtree(directory)
        except OSError as e:
            ctx.warn(f"Cleanup of {directory} failed: {e}")
