"""Git working-tree tracking through the git CLI."""

from .models import CommitFileChange, CommitInfo, GitState, GitStateKind
from .tracker import GitStateTracker

__all__ = [
    "CommitFileChange",
    "CommitInfo",
    "GitState",
    "GitStateKind",
    "GitStateTracker",
]
