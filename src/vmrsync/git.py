"""The narrow slice of git plumbing used by the sync engine.

All git operations use :func:`subprocess.run`; no GitPython dependency.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from .errors import VmrError

logger = logging.getLogger(__name__)

# Well-known hash of the empty tree, used as the diff base for whole-tree listings
EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"


class GitError(VmrError):
    """Raised when a git subprocess returns a non-zero exit code."""

    def __init__(self, message: str, *, returncode: int = 1, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def run_git(
    *args: str,
    cwd: str | Path | None = None,
    check: bool = True,
    input_text: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """Execute a git command via subprocess and return the result.

    Parameters
    ----------
    *args:
        Arguments passed after ``git``.
    cwd:
        Working directory for the command.
    check:
        If *True*, raise :class:`GitError` on non-zero exit.
    """
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    result = subprocess.run(
        cmd,
        cwd=cwd,
        capture_output=True,
        text=True,
        input=input_text,
    )
    if check and result.returncode != 0:
        raise GitError(
            f"git {' '.join(args)} failed (rc={result.returncode}): {result.stderr.strip()}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result


class LocalRepository:
    """A git working tree on disk."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).resolve()

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return run_git(*args, cwd=self.path, check=check)

    # -- Setup ----------------------------------------------------------------

    def init(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        self.git("init", "--quiet")

    def is_repo(self) -> bool:
        if not self.path.is_dir():
            return False
        result = self.git("rev-parse", "--show-toplevel", check=False)
        return result.returncode == 0 and Path(result.stdout.strip()).resolve() == self.path

    # -- Remotes --------------------------------------------------------------

    def remote_url(self, name: str) -> str | None:
        result = self.git("remote", "get-url", name, check=False)
        return result.stdout.strip() if result.returncode == 0 else None

    def add_remote_if_missing(self, name: str, url: str) -> None:
        current = self.remote_url(name)
        if current is None:
            self.git("remote", "add", name, url)
        elif current != url:
            self.git("remote", "set-url", name, url)

    def fetch(self, remote: str) -> None:
        self.git("fetch", "--quiet", "--tags", "--force", remote, f"+refs/heads/*:refs/remotes/{remote}/*")
        # Lets "<remote>/HEAD" resolve to the remote's default branch
        self.git("remote", "set-head", remote, "--auto", check=False)

    # -- Revisions ------------------------------------------------------------

    def try_resolve(self, revision: str) -> str | None:
        """Return the commit SHA for ``revision`` or ``None`` when it is unknown locally."""

        result = self.git("rev-parse", "--verify", "--quiet", f"{revision}^{{commit}}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def head_sha(self) -> str:
        return self.git("rev-parse", "HEAD").stdout.strip()

    def has_commits(self) -> bool:
        return self.try_resolve("HEAD") is not None

    def checkout_detached(self, revision: str) -> None:
        self.git("checkout", "--quiet", "--force", "--detach", revision)

    def list_files(self, revision: str, path: str | None = None) -> list[str]:
        """Return repository-relative paths of all files tracked at ``revision``."""

        args = ["ls-tree", "-r", "-z", "--name-only", revision]
        if path:
            args.extend(["--", path])
        output = self.git(*args).stdout
        return [item for item in output.split("\0") if item]

    def binary_files(self, revision: str, path: str | None = None) -> list[str]:
        """Return files git considers binary at ``revision``."""

        args = ["diff", "--numstat", "-z", "--no-renames", EMPTY_TREE, revision]
        if path:
            args.extend(["--", path])
        output = self.git(*args).stdout
        files: list[str] = []
        for record in output.split("\0"):
            if record.startswith("-\t-\t"):
                files.append(record[4:])
        return files

    def log(self, path: str, revision: str = "HEAD") -> list[str]:
        """Return SHAs of commits reachable from ``revision`` that touched ``path``, newest first."""

        output = self.git("log", "--format=%H", revision, "--", path).stdout
        return output.split()

    def show_file(self, revision: str, path: str) -> bytes | None:
        """Return the content of ``path`` at ``revision``, or ``None`` if absent."""

        result = subprocess.run(
            ["git", "show", f"{revision}:{path}"],
            cwd=self.path,
            capture_output=True,
        )
        if result.returncode != 0:
            return None
        return result.stdout

    # -- Branches -------------------------------------------------------------

    def current_branch(self) -> str:
        result = self.git("symbolic-ref", "--quiet", "--short", "HEAD", check=False)
        if result.returncode == 0:
            return result.stdout.strip()
        return self.head_sha()

    def create_branch(self, name: str) -> None:
        self.git("checkout", "--quiet", "-b", name)

    def checkout(self, name: str) -> None:
        self.git("checkout", "--quiet", name)

    def delete_branch(self, name: str) -> None:
        self.git("branch", "-D", name)

    def branch_exists(self, name: str) -> bool:
        return self.try_resolve(f"refs/heads/{name}") is not None

    def merge_squash(self, branch: str) -> None:
        self.git("merge", "--squash", branch)

    # -- Stage / commit -------------------------------------------------------

    def stage(self, *paths: str | Path) -> None:
        """Stage additions, modifications and deletions under ``paths``."""
        str_paths = [str(p) for p in paths]
        self.git("add", "--all", "--", *str_paths)

    def has_staged_changes(self) -> bool:
        return self.git("diff", "--cached", "--quiet", check=False).returncode != 0

    def commit(self, message: str, *, author_name: str, author_email: str, allow_empty: bool = False) -> str:
        """Create a commit with the given message and return its full SHA."""
        args = [
            "-c",
            f"user.name={author_name}",
            "-c",
            f"user.email={author_email}",
            "-c",
            "commit.gpgsign=false",
            "commit",
            "--quiet",
            "-m",
            message,
        ]
        if allow_empty:
            args.append("--allow-empty")
        self.git(*args)
        return self.head_sha()

    def apply_patch(self, patch: Path, *, directory: str, reverse: bool = False, check_only: bool = False) -> None:
        args = ["apply", "--whitespace=nowarn", f"--directory={directory}"]
        if reverse:
            args.append("--reverse")
        if check_only:
            args.append("--check")
        args.append(str(patch))
        self.git(*args)


class WorkBranch:
    """Isolation branch that stages a sync before it is squashed back."""

    def __init__(self, repo: LocalRepository, original_branch: str, name: str) -> None:
        self.repo = repo
        self.original_branch = original_branch
        self.name = name

    @classmethod
    def create(cls, repo: LocalRepository, name: str) -> "WorkBranch":
        original = repo.current_branch()
        if repo.branch_exists(name):
            raise GitError(
                f"Work branch '{name}' already exists; resume from it or delete it before retrying",
            )
        repo.create_branch(name)
        logger.info("Created work branch %s (from %s)", name, original)
        return cls(repo, original, name)

    def merge_back(self, message: str, *, author_name: str, author_email: str) -> str | None:
        """Squash the work branch into the original branch. Returns the new commit SHA."""

        self.repo.checkout(self.original_branch)
        self.repo.merge_squash(self.name)
        sha: str | None = None
        if self.repo.has_staged_changes():
            sha = self.repo.commit(message, author_name=author_name, author_email=author_email)
        self.repo.delete_branch(self.name)
        logger.info("Merged work branch %s into %s", self.name, self.original_branch)
        return sha
