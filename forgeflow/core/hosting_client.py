"""REST client for the code-hosting API (releases, tags, branches, asset upload)."""

import os
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .error_recovery import RetryConfig, with_retry
from .exceptions import ConfigurationError, HostingApiError, TransientError
from .logging import get_logger

logger = get_logger(__name__)

ACCEPT_HEADER = "application/vnd.github.v3+json"


class HostingClient:
    """
    Bearer-token authenticated client for a GitHub-compatible REST API.

    Transport failures and 5xx answers are retried a bounded number of times;
    every other non-2xx answer raises HostingApiError carrying the body.
    """

    def __init__(
        self,
        api_url: str = "https://api.github.com",
        token: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        if not self.token:
            raise ConfigurationError("Hosting API token required for releases", config_key="hosting_token")
        headers = {"Authorization": f"Bearer {self.token}", "Accept": ACCEPT_HEADER}
        if extra:
            headers.update(extra)
        return headers

    @with_retry(RetryConfig(max_attempts=3, base_delay=0.5, retryable_exceptions=[TransientError]))
    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientError(f"{method} {url} failed: {e}")
        if response.status_code >= 500:
            raise TransientError(f"{method} {url} answered {response.status_code}")
        return response

    def _request(self, method: str, path_or_url: str, expected=(200, 201), **kwargs) -> requests.Response:
        url = path_or_url if path_or_url.startswith("http") else f"{self.api_url}{path_or_url}"
        headers = self._headers(kwargs.pop("headers", None))
        response = self._send(method, url, headers=headers, **kwargs)
        if response.status_code not in expected:
            raise HostingApiError(
                f"{method} {url} failed with {response.status_code}: {response.text}",
                status_code=response.status_code,
                endpoint=url,
                body=response.text,
            )
        return response

    def list_branches(self, owner: str, repo: str) -> List[str]:
        response = self._request("GET", f"/repos/{owner}/{repo}/branches")
        return [branch["name"] for branch in response.json()]

    def get_release_by_tag(self, owner: str, repo: str, tag: str) -> Optional[Dict[str, Any]]:
        """Return the release for ``tag``, or None when the API reports it missing."""
        try:
            response = self._request("GET", f"/repos/{owner}/{repo}/releases/tags/{quote(tag)}")
        except HostingApiError as e:
            if e.status_code == 404:
                return None
            raise
        return response.json()

    def create_release(self, owner: str, repo: str, tag: str, name: str, body: str = "",
                       draft: bool = False, prerelease: bool = False) -> Dict[str, Any]:
        payload = {
            "tag_name": tag,
            "name": name,
            "body": body,
            "draft": draft,
            "prerelease": prerelease,
        }
        response = self._request("POST", f"/repos/{owner}/{repo}/releases", json=payload)
        return response.json()

    def create_tag_ref(self, owner: str, repo: str, tag: str, sha: str) -> Dict[str, Any]:
        """Create a lightweight tag ref on an existing commit; used when pushing the tag over git fails."""
        response = self._request(
            "POST", f"/repos/{owner}/{repo}/git/refs", json={"ref": f"refs/tags/{tag}", "sha": sha}
        )
        return response.json()

    def upload_asset(self, release: Dict[str, Any], file_path: str, name: Optional[str] = None) -> Dict[str, Any]:
        """
        Upload one file as a release asset.

        Args:
            release: Release object as returned by the API (needs ``upload_url``)
            file_path: Local file to upload
            name: Asset name, defaults to the file's base name

        Returns:
            The created asset object
        """
        asset_name = name or os.path.basename(file_path) or "artifact"
        upload_url = release["upload_url"].replace("{?name,label}", f"?name={quote(asset_name)}")
        with open(file_path, "rb") as handle:
            data = handle.read()
        response = self._request(
            "POST", upload_url, headers={"Content-Type": "application/octet-stream"}, data=data
        )
        logger.debug(f"Uploaded asset {asset_name} ({len(data)} bytes)")
        return response.json()
