"""Per-thread git worktree isolation and idle-worktree reclamation."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import git

from tether.config.models import WorkspaceConfig
from tether.store import SessionStore, WorkspaceRecord

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILES = (".env", ".env.local", ".env.development")

_UNSAFE_REF_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


class WorkspaceError(Exception):
    """A git worktree operation failed."""


@dataclass(frozen=True)
class GitInfo:
    is_git: bool
    repo_root: Path | None = None


@dataclass(frozen=True)
class WorktreeResult:
    path: Path
    branch: str


@dataclass
class SweepReport:
    """Outcome of one idle-worktree sweep."""

    removed: list[str] = field(default_factory=list)
    skipped_active: list[str] = field(default_factory=list)
    skipped_dirty: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def examined(self) -> int:
        return (
            len(self.removed)
            + len(self.skipped_active)
            + len(self.skipped_dirty)
            + len(self.failed)
        )


def detect_git_repo(path: Path | str) -> GitInfo:
    """Return the enclosing repository's working tree root, if any."""
    try:
        repo = git.Repo(path, search_parent_directories=True)
    except (git.InvalidGitRepositoryError, git.NoSuchPathError):
        return GitInfo(is_git=False)
    root = repo.working_tree_dir
    if root is None:
        return GitInfo(is_git=False)
    return GitInfo(is_git=True, repo_root=Path(root))


def branch_name_for_thread(thread_key: str, prefix: str = "tether") -> str:
    return f"{prefix}/{_UNSAFE_REF_CHARS.sub('-', thread_key)}"


def _current_branch(repo: git.Repo) -> str:
    try:
        return str(repo.git.rev_parse("--abbrev-ref", "HEAD")).strip() or "main"
    except git.GitCommandError:
        return "main"


def _forget_missing_worktree(repo: git.Repo, path: Path) -> None:
    if path.exists():
        return
    try:
        repo.git.worktree("unlock", str(path))
    except git.GitCommandError:
        pass
    try:
        repo.git.worktree("prune")
    except git.GitCommandError as exc:
        logger.debug("worktree prune failed: %s", exc)


def create_worktree(
    repo_root: Path | str,
    thread_key: str,
    base_branch: str | None = None,
    *,
    trees_dir: str = "trees",
    branch_prefix: str = "tether",
) -> WorktreeResult:
    """Check out the thread's branch at ``<repo>/<trees_dir>/<branch>`` and lock it.

    The branch is created from *base_branch* (default: the current branch)
    unless it survives from an earlier worktree.
    """
    repo = git.Repo(repo_root)
    branch = branch_name_for_thread(thread_key, branch_prefix)
    trees = Path(repo_root) / trees_dir
    path = trees / branch.replace("/", "-")
    trees.mkdir(parents=True, exist_ok=True)

    # A worktree whose directory vanished stays registered (and locked).
    _forget_missing_worktree(repo, path)

    if branch in {head.name for head in repo.heads}:
        add_args = ("add", str(path), branch)
    else:
        add_args = ("add", "-b", branch, str(path), base_branch or _current_branch(repo))
    try:
        repo.git.worktree(*add_args)
    except git.GitCommandError as exc:
        msg = f"git worktree add failed for {path}: {exc.stderr.strip() or exc}"
        raise WorkspaceError(msg) from exc

    try:
        repo.git.worktree("lock", str(path), "--reason", f"Thread: {thread_key}")
    except git.GitCommandError as exc:
        logger.debug("%s: worktree lock failed: %s", thread_key, exc)

    return WorktreeResult(path=path, branch=branch)


def remove_worktree(repo_root: Path | str, path: Path | str, branch: str) -> None:
    """Unlock, force-remove, and delete the branch of a worktree."""
    repo = git.Repo(repo_root)
    try:
        repo.git.worktree("unlock", str(path))
    except git.GitCommandError:
        pass

    try:
        repo.git.worktree("remove", str(path), "--force")
    except git.GitCommandError as exc:
        msg = f"git worktree remove failed for {path}: {exc.stderr.strip() or exc}"
        raise WorkspaceError(msg) from exc

    try:
        repo.git.branch("-D", branch)
    except git.GitCommandError as exc:
        logger.debug("branch %s not deleted: %s", branch, exc)


def has_uncommitted_changes(path: Path | str) -> bool:
    """``git status --porcelain`` is non-empty; unknown counts as dirty."""
    try:
        status = git.Repo(path).git.status("--porcelain")
    except (git.GitCommandError, git.InvalidGitRepositoryError, git.NoSuchPathError):
        return True
    return bool(str(status).strip())


def copy_env_files(
    source: Path | str,
    target: Path | str,
    names: Sequence[str] = DEFAULT_ENV_FILES,
) -> list[str]:
    """Copy untracked env files present in *source* into *target*."""
    copied: list[str] = []
    for name in names:
        src = Path(source) / name
        if src.is_file():
            shutil.copyfile(src, Path(target) / name)
            copied.append(name)
    return copied


def is_registered_worktree(repo_root: Path | str, path: Path | str) -> bool:
    """*path* is listed by ``git worktree list`` for *repo_root*."""
    try:
        listing = git.Repo(repo_root).git.worktree("list", "--porcelain")
    except (git.GitCommandError, git.InvalidGitRepositoryError, git.NoSuchPathError):
        return False
    wanted = Path(path).resolve()
    for line in str(listing).splitlines():
        if line.startswith("worktree ") and Path(line[len("worktree "):]).resolve() == wanted:
            return True
    return False


def _reclaim_released(record: WorkspaceRecord, repo_root: Path) -> bool:
    """Deal with a worktree left on disk after its thread changed directory.

    Returns True when it belongs to *repo_root* and can be used again.
    Otherwise a clean one is removed so a fresh worktree can take its place.
    """
    if Path(record.repo_root).resolve() == repo_root.resolve() and is_registered_worktree(
        repo_root, record.path
    ):
        return True
    if has_uncommitted_changes(record.path):
        logger.warning(
            "%s: released worktree %s has uncommitted changes, leaving it",
            record.thread_key,
            record.path,
        )
        return False
    try:
        remove_worktree(record.repo_root, record.path, record.branch)
    except (WorkspaceError, git.InvalidGitRepositoryError, git.NoSuchPathError) as exc:
        logger.error("%s: failed to remove released worktree: %s", record.thread_key, exc)
    else:
        logger.info("%s: removed released worktree %s", record.thread_key, record.path)
    return False


class WorkspaceManager:
    """Resolve each thread's working root, creating worktrees lazily."""

    def __init__(self, store: SessionStore, config: WorkspaceConfig | None = None) -> None:
        self._store = store
        self._config = config or WorkspaceConfig()

    @property
    def config(self) -> WorkspaceConfig:
        return self._config

    async def resolve(self, thread_key: str, base_root: Path | str) -> Path:
        """Return the directory the thread's generation should run in.

        Git commands run in a worker thread; store access stays on the
        calling thread. Never raises: any isolation failure falls back to
        *base_root*.
        """
        base = Path(base_root)
        if not self._config.enabled:
            return base

        record = self._store.get_workspace(thread_key)
        if record is not None and not record.cleaned_up:
            if Path(record.path).is_dir():
                self._store.touch_workspace(thread_key)
                logger.info("%s: reusing worktree %s", thread_key, record.path)
                return Path(record.path)
            logger.warning("%s: worktree %s vanished, recreating", thread_key, record.path)

        info = await asyncio.to_thread(detect_git_repo, base)
        logger.info("%s: git detection: cwd=%s is_git=%s", thread_key, base, info.is_git)
        if not info.is_git or info.repo_root is None:
            return base

        if record is not None and record.cleaned_up and Path(record.path).is_dir():
            if await asyncio.to_thread(_reclaim_released, record, info.repo_root):
                self._store.upsert_workspace(
                    thread_key, record.repo_root, record.path, record.branch
                )
                logger.info("%s: reattached released worktree %s", thread_key, record.path)
                return Path(record.path)

        try:
            result, copied = await asyncio.to_thread(
                self._create, thread_key, info.repo_root, base
            )
        except (
            WorkspaceError,
            OSError,
            git.GitCommandError,
            git.InvalidGitRepositoryError,
        ) as exc:
            logger.error("%s: worktree creation failed: %s", thread_key, exc)
            return base

        self._store.upsert_workspace(
            thread_key, str(info.repo_root), str(result.path), result.branch
        )
        logger.info(
            "%s: created worktree %s (branch %s, env files %s)",
            thread_key,
            result.path,
            result.branch,
            copied,
        )
        return result.path

    def _create(
        self, thread_key: str, repo_root: Path, base: Path
    ) -> tuple[WorktreeResult, list[str]]:
        result = create_worktree(
            repo_root,
            thread_key,
            trees_dir=self._config.trees_dir,
            branch_prefix=self._config.branch_prefix,
        )
        return result, copy_env_files(base, result.path, self._config.env_files)

    def sweep(
        self,
        idle_minutes: int | None = None,
        is_active: Callable[[str], bool] = lambda _key: False,
        now: datetime | None = None,
    ) -> SweepReport:
        """Remove idle worktrees, skipping active threads and dirty trees."""
        minutes = idle_minutes if idle_minutes is not None else self._config.idle_minutes
        report = SweepReport()
        stale = self._store.stale_workspaces(minutes, now=now)
        logger.info("worktree sweep: %d stale worktree(s) (idle > %d min)", len(stale), minutes)

        for record in stale:
            if is_active(record.thread_key):
                report.skipped_active.append(record.thread_key)
                continue
            if has_uncommitted_changes(record.path):
                logger.info("skipping stale worktree with uncommitted changes: %s", record.path)
                report.skipped_dirty.append(record.thread_key)
                continue
            try:
                remove_worktree(record.repo_root, record.path, record.branch)
            except (WorkspaceError, git.InvalidGitRepositoryError, git.NoSuchPathError) as exc:
                logger.error("failed to clean worktree %s: %s", record.path, exc)
                report.failed.append(record.thread_key)
                continue
            self._store.mark_workspace_cleaned(record.thread_key)
            logger.info("cleaned stale worktree: %s", record.path)
            report.removed.append(record.thread_key)

        return report
