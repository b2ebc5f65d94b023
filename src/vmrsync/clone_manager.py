"""Local cache of individual repository clones."""

from __future__ import annotations

import logging
import threading
from hashlib import blake2b
from pathlib import Path
from typing import Sequence

from .cancellation import CancellationToken, ensure_token
from .config import SourceMapping
from .errors import RevisionNotFoundError
from .git import GitError, LocalRepository
from .models import HEAD

logger = logging.getLogger(__name__)


def remote_name(uri: str) -> str:
    """Stable remote name for ``uri`` so the same URL always maps to the same remote."""

    return "r" + blake2b(uri.encode(), digest_size=8).hexdigest()


class CloneManager:
    """Keeps one working clone per mapping and fetches remotes on demand.

    Calls for different mappings run independently; calls for the same mapping serialize
    on a per-mapping lock so a clone is never observed half-fetched.
    """

    def __init__(self, clone_dir: Path) -> None:
        self.clone_dir = clone_dir
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def clone_path(self, mapping: SourceMapping) -> Path:
        return self.clone_dir / mapping.name

    def prepare_clone(
        self,
        mapping: SourceMapping,
        remotes: Sequence[str],
        revision: str,
        cancellation: CancellationToken | None = None,
    ) -> Path:
        """Make sure the clone of ``mapping`` contains ``revision`` and is checked out at it."""

        token = ensure_token(cancellation)
        candidates = tuple(dict.fromkeys(uri.rstrip("/") for uri in remotes if uri))

        with self._lock_for(mapping.name):
            repo = LocalRepository(self.clone_path(mapping))
            if not repo.is_repo():
                logger.info("Creating clone of %s in %s", mapping.name, repo.path)
                repo.init()

            sha = None if revision == HEAD else repo.try_resolve(revision)
            for uri in candidates:
                if sha is not None:
                    break
                token.raise_if_cancelled()
                name = remote_name(uri)
                try:
                    repo.add_remote_if_missing(name, uri)
                    logger.info("Fetching %s from %s", mapping.name, uri)
                    repo.fetch(name)
                except GitError as exc:
                    logger.warning("Failed to fetch %s from %s: %s", mapping.name, uri, exc)
                    continue
                sha = self._resolve_after_fetch(repo, name, revision, mapping.default_ref)

            if sha is None:
                raise RevisionNotFoundError(mapping.name, revision, candidates)

            repo.checkout_detached(sha)
            return repo.path

    def resolve_revision(self, clone_path: Path, revision: str) -> str:
        """Return the full SHA of ``revision`` in a prepared clone; ``HEAD`` means the checkout."""

        repo = LocalRepository(clone_path)
        sha = repo.try_resolve(revision)
        if sha is None:
            raise RevisionNotFoundError(clone_path.name, revision, ())
        return sha

    @staticmethod
    def _resolve_after_fetch(repo: LocalRepository, remote: str, revision: str, default_ref: str) -> str | None:
        if revision == HEAD:
            return repo.try_resolve(f"refs/remotes/{remote}/HEAD") or repo.try_resolve(
                f"refs/remotes/{remote}/{default_ref}"
            )
        return repo.try_resolve(f"refs/remotes/{remote}/{revision}") or repo.try_resolve(revision)

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())
