"""Reusable git worktree for review remediation.

One worktree lives next to the managed repository and is shared by every
branch: each preparation fetches the branch tip and resets the worktree to
it, throwing away anything a previous failed attempt left behind. The
worktree is never removed, so large repositories are only checked out once.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional, Union

from src.remediator.provisioner.git import GitCommandError, run_git

logger = logging.getLogger(__name__)

DEFAULT_WORKTREE_DIR = Path(".remediator") / "review-worktree"

_NON_FAST_FORWARD_MARKERS = ("non-fast-forward",)


class WorktreeError(Exception):
    """Base error for worktree operations."""


class NotARepositoryError(WorktreeError):
    """Raised when the managed path is not inside a git working tree."""

    retryable = False

    def __init__(self, path: Path, detail: str = ""):
        self.path = path
        message = f"{path} is not a git repository"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class BranchSyncFailedError(WorktreeError):
    """Raised when the worktree cannot be brought to the branch's remote tip."""

    def __init__(self, branch: str, detail: str):
        self.branch = branch
        self.detail = detail
        super().__init__(f"Failed to sync branch '{branch}': {detail}")


class BranchCheckedOutError(BranchSyncFailedError):
    """Raised when another worktree, usually the managed checkout itself,
    has the branch checked out.

    Git refuses to check a branch out twice, so retrying cannot help until
    someone switches that checkout to another branch.
    """

    retryable = False


class WorktreeBusyError(WorktreeError):
    """Raised when the worktree is requested while already lent out."""


class PushFailedError(WorktreeError):
    """Raised when a push fails for a reason worth retrying."""

    retryable = True

    def __init__(self, branch: str, detail: str):
        self.branch = branch
        self.detail = detail
        super().__init__(f"Failed to push '{branch}': {detail}")


class PushRejectedError(PushFailedError):
    """Raised when the remote branch has diverged (non-fast-forward).

    Retrying cannot fix this; someone has to rebase or force-push.
    """

    retryable = False


@dataclass
class Worktree:
    """The shared checkout, as prepared for one branch.

    Attributes:
        branch_name: Branch currently checked out.
        path: Filesystem location of the worktree.
        last_prepared_at: When the branch was last synced to its remote tip.
    """

    branch_name: str
    path: Path
    last_prepared_at: Optional[datetime] = None


class WorktreeManager:
    """Owns the single reusable worktree and lends it out one branch at a time.

    Attributes:
        repository_path: Directory inside the managed repository.
        worktree_path: Explicit worktree location, or None to use
            ``<repository root>/.remediator/review-worktree``.
        remote: Remote to fetch from and push to.
    """

    def __init__(
        self,
        repository_path: Union[str, Path] = ".",
        worktree_path: Optional[Union[str, Path]] = None,
        remote: str = "origin",
    ):
        self.repository_path = Path(repository_path)
        self.worktree_path = Path(worktree_path) if worktree_path else None
        self.remote = remote
        self._root: Optional[Path] = None
        self._current: Optional[Worktree] = None
        self._leased = False

    @property
    def current(self) -> Optional[Worktree]:
        return self._current

    async def repository_root(self) -> Path:
        """Return the top level of the managed repository.

        Raises:
            NotARepositoryError: If ``repository_path`` is not in a git tree.
        """
        if self._root is not None:
            return self._root

        if not self.repository_path.is_dir():
            raise NotARepositoryError(self.repository_path, "directory does not exist")

        try:
            result = await run_git(["rev-parse", "--show-toplevel"], cwd=self.repository_path)
        except GitCommandError as exc:
            raise NotARepositoryError(self.repository_path, exc.stderr) from exc

        self._root = Path(result.stdout).resolve()
        return self._root

    async def _target_path(self) -> Path:
        root = await self.repository_root()
        if self.worktree_path is not None:
            return self.worktree_path.resolve()
        return root / DEFAULT_WORKTREE_DIR

    async def prepare(self, branch_name: str) -> Worktree:
        """Sync the shared worktree to the remote tip of ``branch_name``.

        Creates the worktree on first use. Local changes and commits left by
        earlier attempts are discarded.

        Raises:
            NotARepositoryError: If the managed path is not a repository.
            BranchCheckedOutError: If another worktree holds the branch.
            BranchSyncFailedError: If fetch or checkout fails.
        """
        root = await self.repository_root()
        path = await self._target_path()
        remote_ref = f"{self.remote}/{branch_name}"

        logger.info(
            "Preparing worktree",
            extra={"branch": branch_name, "path": str(path)},
        )

        try:
            await run_git(["check-ref-format", "--branch", branch_name], cwd=root)
            holder = await self._checked_out_elsewhere(root, path, branch_name)
            if holder is not None:
                raise BranchCheckedOutError(branch_name, f"branch is checked out at {holder}")
            await run_git(
                ["fetch", self.remote, f"+refs/heads/{branch_name}:refs/remotes/{remote_ref}"],
                cwd=root,
            )

            if (path / ".git").exists():
                await run_git(["reset", "--hard"], cwd=path)
                await run_git(["clean", "-fd"], cwd=path)
                await run_git(["checkout", "-B", branch_name, remote_ref], cwd=path)
            else:
                await run_git(["worktree", "prune"], cwd=root)
                path.parent.mkdir(parents=True, exist_ok=True)
                await run_git(
                    ["worktree", "add", "--force", "-B", branch_name, str(path), remote_ref],
                    cwd=root,
                )
        except GitCommandError as exc:
            logger.error(
                "Worktree sync failed",
                extra={"branch": branch_name, "error": exc.stderr},
            )
            raise BranchSyncFailedError(branch_name, exc.stderr) from exc
        except OSError as exc:
            raise BranchSyncFailedError(branch_name, str(exc)) from exc

        self._current = Worktree(
            branch_name=branch_name,
            path=path,
            last_prepared_at=datetime.now(timezone.utc),
        )
        return self._current

    async def _checked_out_elsewhere(
        self, root: Path, path: Path, branch_name: str
    ) -> Optional[Path]:
        """Return the worktree other than ``path`` that has ``branch_name`` checked out."""
        result = await run_git(["worktree", "list", "--porcelain"], cwd=root)
        own_path = path.resolve()
        worktree: Optional[Path] = None
        for line in result.stdout.splitlines():
            if line.startswith("worktree "):
                worktree = Path(line[len("worktree "):]).resolve()
            elif line == f"branch refs/heads/{branch_name}" and worktree != own_path:
                return worktree
        return None

    @asynccontextmanager
    async def lease(self, branch_name: str) -> AsyncIterator[Worktree]:
        """Prepare the worktree for ``branch_name`` and lend it to the caller.

        Raises:
            WorktreeBusyError: If the worktree is already lent out.
        """
        if self._leased:
            raise WorktreeBusyError("Worktree is already in use")

        self._leased = True
        try:
            yield await self.prepare(branch_name)
        finally:
            self._leased = False

    async def has_uncommitted_changes(self, worktree: Worktree) -> bool:
        result = await run_git(["status", "--porcelain"], cwd=worktree.path)
        return bool(result.stdout)

    async def commits_ahead(self, worktree: Worktree) -> int:
        """Count local commits not yet on the remote branch."""
        result = await run_git(
            ["rev-list", "--count", f"{self.remote}/{worktree.branch_name}..HEAD"],
            cwd=worktree.path,
        )
        return int(result.stdout or "0")

    async def push(self, worktree: Worktree) -> None:
        """Push the worktree's HEAD to its remote branch.

        Raises:
            PushRejectedError: If the remote branch has diverged.
            PushFailedError: For any other push failure.
        """
        branch = worktree.branch_name
        try:
            await run_git(
                ["push", self.remote, f"HEAD:refs/heads/{branch}"],
                cwd=worktree.path,
            )
        except GitCommandError as exc:
            detail = exc.stderr
            if any(marker in detail for marker in _NON_FAST_FORWARD_MARKERS):
                raise PushRejectedError(branch, detail) from exc
            raise PushFailedError(branch, detail) from exc

        logger.info("Pushed branch", extra={"branch": branch, "path": str(worktree.path)})
