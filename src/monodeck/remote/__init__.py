"""Remote hosting API (GitLab v4) client and session."""

from .client import RemoteClient, RemoteProject, clone_url_with_token, normalize_base_url
from .session import RemoteSession

__all__ = [
    "RemoteClient",
    "RemoteProject",
    "RemoteSession",
    "clone_url_with_token",
    "normalize_base_url",
]
