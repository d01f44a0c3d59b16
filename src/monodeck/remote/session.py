"""Remote credentials plus the last fetched project and branch lists."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from ..exceptions import RemoteClientError
from .client import RemoteClient, RemoteProject

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, str, int], RemoteClient]


class RemoteSession:
    """Holds one set of credentials and caches what was fetched with them.

    Saving new credentials clears every cached list.
    """

    def __init__(
        self,
        base_url: str = "",
        token: str = "",
        *,
        timeout: int = 30,
        clone_timeout: float | None = 300,
        client_factory: ClientFactory | None = None,
    ):
        self._factory = client_factory or self._default_client
        self.timeout = timeout
        self.clone_timeout = clone_timeout
        self.base_url = ""
        self.token = ""
        self.client: RemoteClient | None = None
        self.projects: list[RemoteProject] = []
        self.selected_project_id: int | None = None
        self.branches: list[str] = []
        self.update_credentials(base_url, token)

    def _default_client(self, base_url: str, token: str, timeout: int) -> RemoteClient:
        return RemoteClient(base_url, token, timeout=timeout, clone_timeout=self.clone_timeout)

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.token)

    def update_credentials(self, base_url: str, token: str) -> None:
        """Replace credentials and drop cached data."""
        self.base_url = base_url
        self.token = token
        self.client = self._factory(base_url, token, self.timeout) if base_url else None
        self.clear()
        logger.debug(f"Remote credentials updated for {base_url or '(none)'}")

    def clear(self) -> None:
        self.projects = []
        self.selected_project_id = None
        self.branches = []

    def _require_client(self) -> RemoteClient:
        if self.client is None:
            raise RemoteClientError("Remote base URL is not configured")
        return self.client

    def refresh_projects(self, search: str | None = None) -> list[RemoteProject]:
        """Fetch the project list. The cache is only replaced on success."""
        projects = self._require_client().list_projects(search)
        self.projects = projects
        return projects

    def select_project(self, project_id: int) -> list[str]:
        """Select a project and fetch its branches."""
        branches = self._require_client().list_branches(project_id)
        self.selected_project_id = project_id
        self.branches = branches
        return branches

    @property
    def selected_project(self) -> RemoteProject | None:
        for project in self.projects:
            if project.id == self.selected_project_id:
                return project
        return None

    def grouped_projects(self) -> dict[str, list[RemoteProject]]:
        """Cached projects grouped by namespace, namespaces sorted."""
        groups: dict[str, list[RemoteProject]] = {}
        for project in self.projects:
            groups.setdefault(project.namespace, []).append(project)
        return {namespace: groups[namespace] for namespace in sorted(groups)}

    def get_project(self, project_id: int) -> RemoteProject:
        return self._require_client().get_project(project_id)

    def clone(self, project_id: int, destination: Path | str, branch: str | None = None) -> Path:
        return self._require_client().clone(project_id, destination, branch)
