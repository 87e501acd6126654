"""Git worktree provisioning for remediation runs."""

from .git import GitCommandError, GitResult, run_git
from .worktree import (
    BranchCheckedOutError,
    BranchSyncFailedError,
    NotARepositoryError,
    PushFailedError,
    PushRejectedError,
    Worktree,
    WorktreeBusyError,
    WorktreeError,
    WorktreeManager,
)

__all__ = [
    "BranchCheckedOutError",
    "BranchSyncFailedError",
    "GitCommandError",
    "GitResult",
    "NotARepositoryError",
    "PushFailedError",
    "PushRejectedError",
    "Worktree",
    "WorktreeBusyError",
    "WorktreeError",
    "WorktreeManager",
    "run_git",
]
