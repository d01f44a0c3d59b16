"""GitLab API v4 client.

Lists accessible projects and their branches and clones a project into a
local directory. Uses urllib for HTTP requests.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..exceptions import (
    AuthError,
    DestinationNotEmpty,
    GitOperationError,
    GitTimeout,
    NetworkError,
    NotFoundError,
    RemoteClientError,
)
from ..git.commands import run_git

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v4"
PER_PAGE = 100
MAX_PAGES = 20
REDACTED = "***"

# git clone stderr fragments, checked in this order
_CLONE_AUTH_MARKERS = (
    "HTTP Basic: Access denied",
    "Authentication failed",
    "could not read Username",
    "returned error: 401",
    "returned error: 403",
)
_CLONE_NOT_FOUND_MARKERS = (
    "returned error: 404",
    "Repository not found",
    "could not be found",
)
_CLONE_NETWORK_MARKERS = (
    "Could not resolve host",
    "unable to access",
    "Failed to connect",
    "Connection refused",
    "Connection timed out",
    "Operation timed out",
)


# =============================================================================
# Models
# =============================================================================


@dataclass
class RemoteProject:
    """A project on the hosting server.

    Attributes:
        id: Numeric project id.
        name: Display name.
        path_with_namespace: Full path, e.g. ``group/sub/project``.
        web_url: Browser URL.
        http_url_to_repo: HTTPS clone URL.
        default_branch: Default branch, if the repository is not empty.
        description: Project description.
    """

    id: int
    name: str
    path_with_namespace: str
    web_url: str = ""
    http_url_to_repo: str = ""
    default_branch: str | None = None
    description: str = ""

    @property
    def namespace(self) -> str:
        """Group path the project lives in."""
        if "/" not in self.path_with_namespace:
            return ""
        return self.path_with_namespace.rsplit("/", 1)[0]

    @property
    def slug(self) -> str:
        return self.path_with_namespace.rsplit("/", 1)[-1]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "path_with_namespace": self.path_with_namespace,
            "web_url": self.web_url,
            "http_url_to_repo": self.http_url_to_repo,
            "default_branch": self.default_branch,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteProject:
        """Create from an API response object."""
        return cls(
            id=int(data["id"]),
            name=data.get("name") or data.get("path", ""),
            path_with_namespace=data.get("path_with_namespace", data.get("name", "")),
            web_url=data.get("web_url", ""),
            http_url_to_repo=data.get("http_url_to_repo", ""),
            default_branch=data.get("default_branch"),
            description=data.get("description") or "",
        )


# =============================================================================
# Helpers
# =============================================================================


def normalize_base_url(base_url: str) -> str:
    """Strip whitespace, trailing slashes and an ``/api/v4`` suffix."""
    url = base_url.strip().rstrip("/")
    if url.endswith(API_PREFIX):
        url = url[: -len(API_PREFIX)]
    return url.rstrip("/")


def clone_url_with_token(url: str, token: str) -> str:
    """Embed ``oauth2:<token>`` credentials into an HTTPS clone URL."""
    parts = urllib.parse.urlsplit(url)
    if not token or parts.scheme not in ("http", "https"):
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"oauth2:{urllib.parse.quote(token, safe='')}@{host}"
    return urllib.parse.urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def is_empty_destination(destination: Path) -> bool:
    """True if ``destination`` does not exist or is an empty directory."""
    if not destination.exists():
        return True
    if not destination.is_dir():
        return False
    return next(destination.iterdir(), None) is None


# =============================================================================
# Client
# =============================================================================


class RemoteClient:
    """Authenticated client for a GitLab API v4 server."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: int = 30,
        clone_timeout: float | None = 300,
    ) -> None:
        """Initialize client.

        Args:
            base_url: Server URL; a trailing ``/`` or ``/api/v4`` is removed.
            token: Personal access token.
            timeout: HTTP timeout in seconds.
            clone_timeout: Seconds before ``git clone`` is abandoned.
        """
        self.base_url = normalize_base_url(base_url)
        self.token = token
        self.timeout = timeout
        self.clone_timeout = clone_timeout

    @property
    def api_url(self) -> str:
        return f"{self.base_url}{API_PREFIX}"

    def redact(self, text: str) -> str:
        """Remove the token (raw and URL-encoded) from ``text``."""
        if not self.token:
            return text
        for secret in {self.token, urllib.parse.quote(self.token, safe="")}:
            text = text.replace(secret, REDACTED)
        return text

    def _request(
        self,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> tuple[Any, dict[str, str]]:
        """GET ``path`` and decode the JSON body.

        Returns:
            (decoded body, response headers)

        Raises:
            AuthError: 401 or 403.
            NotFoundError: 404.
            NetworkError: Transport failure or timeout.
            RemoteClientError: Any other failure.
        """
        if not self.base_url:
            raise RemoteClientError("Remote base URL is not configured")

        url = f"{self.api_url}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"

        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
        }
        req = urllib.request.Request(url, headers=headers, method="GET")
        logger.debug(f"GET {url}")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
                response_headers = {k: v for k, v in response.headers.items()}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8", errors="replace") if e.fp else ""
            message = self.redact(_error_message(error_body) or e.reason or "")
            if e.code in (401, 403):
                raise AuthError(f"Authentication failed ({e.code}): {message}", e.code) from None
            if e.code == 404:
                raise NotFoundError(f"Not found: {path}", e.code) from None
            raise RemoteClientError(f"API error {e.code}: {message}", e.code) from None
        except urllib.error.URLError as e:
            raise NetworkError(f"Connection error: {self.redact(str(e.reason))}") from None
        except OSError as e:
            raise NetworkError(f"Request failed: {self.redact(str(e))}") from None

        try:
            return json.loads(body), response_headers
        except json.JSONDecodeError as e:
            raise RemoteClientError(f"Invalid JSON from {path}: {e}") from None

    def _paginate(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Follow ``X-Next-Page`` headers up to MAX_PAGES pages."""
        items: list[dict[str, Any]] = []
        page: str | None = "1"
        pages = 0

        while page and pages < MAX_PAGES:
            data, headers = self._request(path, {**params, "page": page})
            if not isinstance(data, list):
                raise RemoteClientError(f"Unexpected response from {path}")
            items.extend(data)
            pages += 1
            page = _header(headers, "X-Next-Page").strip() or None

        if page:
            logger.warning(f"Stopped after {MAX_PAGES} pages of {path}")
        return items

    def list_projects(self, search: str | None = None) -> list[RemoteProject]:
        """Projects the token's user is a member of, sorted by full path."""
        params: dict[str, Any] = {
            "membership": "true",
            "per_page": PER_PAGE,
            "order_by": "path",
            "sort": "asc",
        }
        if search:
            params["search"] = search

        items = self._paginate("/projects", params)
        projects = [RemoteProject.from_dict(item) for item in items]
        projects.sort(key=lambda p: p.path_with_namespace.lower())
        logger.info(f"Fetched {len(projects)} projects from {self.base_url}")
        return projects

    def get_project(self, project_id: int | str) -> RemoteProject:
        data, _ = self._request(f"/projects/{_quote_id(project_id)}")
        if not isinstance(data, dict):
            raise RemoteClientError(f"Unexpected response for project {project_id}")
        return RemoteProject.from_dict(data)

    def list_branches(self, project_id: int | str) -> list[str]:
        """Branch names of a project, sorted."""
        items = self._paginate(
            f"/projects/{_quote_id(project_id)}/repository/branches",
            {"per_page": PER_PAGE},
        )
        return sorted(item["name"] for item in items if "name" in item)

    def clone(
        self,
        project_id: int | str,
        destination: Path | str,
        branch: str | None = None,
    ) -> Path:
        """Clone a project into ``destination``.

        The destination must be missing or an empty directory; this is checked
        before anything touches the filesystem or the network. The token is
        used for the clone and removed from the stored remote URL afterwards.

        Raises:
            DestinationNotEmpty: ``destination`` already has content.
            RemoteClientError: The API lookup or ``git clone`` failed.
        """
        dest = Path(destination).expanduser()
        if not is_empty_destination(dest):
            raise DestinationNotEmpty(dest)

        project = self.get_project(project_id)
        if not project.http_url_to_repo:
            raise RemoteClientError(f"Project {project.path_with_namespace} has no HTTP clone URL")

        args = ["clone"]
        if branch:
            args += ["--branch", branch]
        args += [clone_url_with_token(project.http_url_to_repo, self.token), str(dest)]

        logger.info(f"Cloning {project.path_with_namespace} into {dest}")
        try:
            cp = run_git(args, check=False, timeout=self.clone_timeout)
        except GitTimeout as e:
            raise NetworkError(f"Clone failed: {e.detail}") from None
        except GitOperationError as e:
            raise RemoteClientError(f"Clone failed: {self.redact(e.detail)}") from None
        if cp.returncode != 0:
            raise self._clone_error(cp.stderr.strip() or f"exit code {cp.returncode}")

        # Keep the token out of .git/config
        run_git(["remote", "set-url", "origin", project.http_url_to_repo], cwd=dest, check=False)
        return dest

    def _clone_error(self, stderr: str) -> RemoteClientError:
        """Map ``git clone`` output to the matching client error."""
        message = f"Clone failed: {self.redact(stderr)}"
        if any(marker in stderr for marker in _CLONE_AUTH_MARKERS):
            return AuthError(message)
        if any(marker in stderr for marker in _CLONE_NOT_FOUND_MARKERS):
            return NotFoundError(message)
        if any(marker in stderr for marker in _CLONE_NETWORK_MARKERS):
            return NetworkError(message)
        return RemoteClientError(message)


def _quote_id(project_id: int | str) -> str:
    return urllib.parse.quote(str(project_id), safe="")


def _header(headers: dict[str, str], name: str) -> str:
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value or ""
    return ""


def _error_message(body: str) -> str:
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body[:200]
    if isinstance(data, dict):
        message = data.get("message") or data.get("error_description") or data.get("error")
        if message:
            return str(message)
    return body[:200]
