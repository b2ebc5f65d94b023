"""High level orchestration of VMR synchronization."""

from __future__ import annotations

import logging
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from .cancellation import CancellationToken, ensure_token
from .clone_manager import CloneManager
from .config import Config, SourceMapping
from .dependency_tracker import DependencyTracker
from .errors import AlreadyInitializedError, ConfigurationError, NotInitializedError, SyncError
from .filesystem import replace_tree
from .git import GitError, LocalRepository, WorkBranch
from .models import (
    AUTOMATION_COMMIT_TAG,
    HEAD,
    AdditionalRemote,
    DependencyUpdate,
    MappingStatus,
    SyncAction,
    SyncResult,
    VmrIngestionPatch,
    VmrManifestEntry,
    short_sha,
)
from .patch_handler import PatchHandler
from .scanner import CloakedFileScanner, ensure_no_cloaked_files
from .version_details import VersionDetails

logger = logging.getLogger(__name__)

# Message shown when initializing an individual repo for the first time
INITIALIZATION_COMMIT_MESSAGE = """[{name}] Initial pull of the individual repository ({new_sha_short})

Original commit: {remote}/commit/{new_sha}

{tag}"""

# Message used for every later sync of an individual repo
UPDATE_COMMIT_MESSAGE = """[{name}] Sync {old_sha_short}…{new_sha_short}

Diff: {remote}/compare/{old_sha}..{new_sha}

From: {remote}/commit/{old_sha}
To: {remote}/commit/{new_sha}

{tag}"""

INITIALIZATION_MERGE_MESSAGE = """Recursive initialization for {name} / {new_sha_short}

{tag}"""

UPDATE_MERGE_MESSAGE = """Recursive update for {name} / {new_sha_short}

{tag}"""


def format_commit_message(template: str, name: str, remote: str, new_sha: str, old_sha: str | None = None) -> str:
    return template.format(
        name=name,
        remote=remote,
        new_sha=new_sha,
        new_sha_short=short_sha(new_sha),
        old_sha=old_sha or "",
        old_sha_short=short_sha(old_sha or ""),
        tag=AUTOMATION_COMMIT_TAG,
    )


def work_branch_name(prefix: str, mapping: SourceMapping, target_revision: str | None) -> str:
    suffix = f"/{target_revision}" if target_revision else ""
    return f"{prefix}/{mapping.name}{suffix}"


class VmrManager:
    """Coordinates initialization and updates of individual repositories inside the VMR.

    Tree and history mutations happen sequentially on a single work branch; only clone
    preparation during dependency expansion fans out to a thread pool.
    """

    def __init__(
        self,
        config: Config,
        *,
        tracker: DependencyTracker | None = None,
        clone_manager: CloneManager | None = None,
    ) -> None:
        self.config = config
        self.settings = config.settings
        self.tracker = tracker or DependencyTracker(config)
        self.clone_manager = clone_manager or CloneManager(self.settings.clone_dir)
        self.repo = LocalRepository(self.settings.vmr_root)
        self.patch_handler = PatchHandler(self.repo, self.settings)

    def initialize_repository(
        self,
        mapping_name: str,
        target_revision: str | None = None,
        target_version: str | None = None,
        *,
        recursive: bool = False,
        additional_remotes: Sequence[AdditionalRemote] = (),
        cancellation: CancellationToken | None = None,
        verify_cloaking: bool = False,
        baseline_path: Path | None = None,
    ) -> list[SyncResult]:
        """Pull ``mapping_name`` (and optionally its dependencies) into the VMR for the first time."""

        token = ensure_token(cancellation)
        mapping = self.tracker.get_mapping(mapping_name)
        if self.tracker.get_current_version(mapping) is not None:
            raise AlreadyInitializedError(mapping.name)
        self._ensure_vmr()
        if self.settings.sources_path(mapping).exists():
            raise SyncError(
                f"'{self.settings.relative_sources_path(mapping)}' already exists but the source manifest has no "
                f"entry for '{mapping.name}'; remove the directory or record it in the manifest first"
            )

        root = DependencyUpdate(
            mapping=mapping,
            remote_uri=mapping.default_remote,
            target_revision=target_revision or mapping.default_ref,
            target_version=target_version,
        )
        work_branch = WorkBranch.create(self.repo, work_branch_name("init", mapping, target_revision))

        results: list[SyncResult] = []
        try:
            updates = self._expand(root, additional_remotes, token, initializing=True) if recursive else [root]
            for update in updates:
                token.raise_if_cancelled()
                if self.settings.sources_path(update.mapping).exists():
                    logger.info("%s is already present in the VMR, skipping", update.mapping.name)
                    results.append(
                        SyncResult(update.mapping.name, SyncAction.SKIPPED, details="Sources already present")
                    )
                    continue
                results.append(self._initialize_one(update, additional_remotes, token))

            if verify_cloaking:
                self._verify_cloaking(results, baseline_path)

            entry = self.tracker.get_current_version(mapping)
            if entry is None:
                raise SyncError(f"Initialization of '{mapping.name}' finished without recording a version")
        except Exception:
            self._report_interrupted(work_branch)
            raise

        message = format_commit_message(INITIALIZATION_MERGE_MESSAGE, mapping.name, mapping.default_remote, entry.sha)
        work_branch.merge_back(
            message,
            author_name=self.settings.commit_author_name,
            author_email=self.settings.commit_author_email,
        )
        logger.info("Recursive initialization for %s / %s finished", mapping.name, entry.sha)
        return results

    def update_repository(
        self,
        mapping_name: str,
        target_revision: str | None = None,
        target_version: str | None = None,
        *,
        recursive: bool = False,
        additional_remotes: Sequence[AdditionalRemote] = (),
        cancellation: CancellationToken | None = None,
        verify_cloaking: bool = False,
        baseline_path: Path | None = None,
    ) -> list[SyncResult]:
        """Bring an initialized mapping (and optionally its dependencies) to a new revision."""

        token = ensure_token(cancellation)
        mapping = self.tracker.get_mapping(mapping_name)
        if self.tracker.get_current_version(mapping) is None:
            raise NotInitializedError(mapping.name)
        self._ensure_vmr()

        root = DependencyUpdate(
            mapping=mapping,
            remote_uri=mapping.default_remote,
            target_revision=target_revision or mapping.default_ref,
            target_version=target_version,
        )
        work_branch = WorkBranch.create(self.repo, work_branch_name("sync", mapping, target_revision))

        results: list[SyncResult] = []
        try:
            updates = self._expand(root, additional_remotes, token, initializing=False) if recursive else [root]
            for update in updates:
                token.raise_if_cancelled()
                results.append(self._update_one(update, additional_remotes, token))

            if verify_cloaking:
                self._verify_cloaking(results, baseline_path)

            entry = self.tracker.get_current_version(mapping)
            if entry is None:
                raise SyncError(f"Manifest entry of '{mapping.name}' disappeared during the update")
        except Exception:
            self._report_interrupted(work_branch)
            raise

        message = format_commit_message(UPDATE_MERGE_MESSAGE, mapping.name, mapping.default_remote, entry.sha)
        work_branch.merge_back(
            message,
            author_name=self.settings.commit_author_name,
            author_email=self.settings.commit_author_email,
        )
        logger.info("Recursive update for %s / %s finished", mapping.name, entry.sha)
        return results

    def status(self) -> list[MappingStatus]:
        statuses: list[MappingStatus] = []
        for mapping in self.tracker.mappings:
            entry = self.tracker.get_current_version(mapping)
            statuses.append(
                MappingStatus(
                    mapping_name=mapping.name,
                    sha=entry.sha if entry else None,
                    source_version=entry.source_version if entry else None,
                    sources_present=self.settings.sources_path(mapping).is_dir(),
                )
            )
        return statuses

    # ------------------------------------------------------------------
    # Internal helpers

    def _ensure_vmr(self) -> None:
        if not self.repo.is_repo() or not self.repo.has_commits():
            raise ConfigurationError(f"VMR root '{self.repo.path}' must be a git repository with at least one commit")

    def _remotes_for(self, update: DependencyUpdate, additional_remotes: Sequence[AdditionalRemote]) -> list[str]:
        extra = [remote.remote_uri for remote in additional_remotes if remote.mapping_name == update.mapping.name]
        return [update.remote_uri, update.mapping.default_remote, *extra]

    def _prepare(
        self,
        update: DependencyUpdate,
        additional_remotes: Sequence[AdditionalRemote],
        token: CancellationToken,
    ) -> tuple[Path, str]:
        remotes = self._remotes_for(update, additional_remotes)
        clone_path = self.clone_manager.prepare_clone(update.mapping, remotes, update.target_revision, token)
        return clone_path, self.clone_manager.resolve_revision(clone_path, HEAD)

    def _expand(
        self,
        root: DependencyUpdate,
        additional_remotes: Sequence[AdditionalRemote],
        token: CancellationToken,
        *,
        initializing: bool,
    ) -> list[DependencyUpdate]:
        """Walk declared dependencies breadth-first starting at ``root``.

        Each mapping is visited at most once. For initialization, mappings already in the VMR
        are dropped; for updates, mappings not in the VMR or already at the declared SHA are.
        Returned updates target the exact SHA whose dependency file was read.
        """

        visited = {root.mapping.name}
        ordered = [root]
        level = [0]

        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as executor:
            while level:
                token.raise_if_cancelled()
                prepared = list(
                    executor.map(lambda index: self._prepare(ordered[index], additional_remotes, token), level)
                )
                next_level: list[int] = []

                for index, (clone_path, sha) in zip(level, prepared):
                    update = replace(ordered[index], target_revision=sha)
                    ordered[index] = update
                    for dependency in self._read_version_details(clone_path, sha).by_mapping().values():
                        mapping = self.tracker.find_mapping(dependency.mapping_name)
                        if mapping is None or mapping.name in visited:
                            continue
                        visited.add(mapping.name)

                        current = self.tracker.get_current_version(mapping)
                        if initializing and current is not None:
                            logger.debug("%s is already initialized, not following it", mapping.name)
                            continue
                        if not initializing and (current is None or current.sha == dependency.sha):
                            logger.debug("%s does not need an update", mapping.name)
                            continue

                        dependency_update = DependencyUpdate(
                            mapping=mapping,
                            remote_uri=dependency.uri.rstrip("/"),
                            target_revision=dependency.sha,
                            target_version=dependency.version,
                            parent=update,
                        )
                        logger.info("Found dependency %s", dependency_update.describe_chain())
                        ordered.append(dependency_update)
                        next_level.append(len(ordered) - 1)

                level = next_level

        return ordered

    def _read_version_details(self, clone_path: Path, sha: str) -> VersionDetails:
        path = self.settings.version_details_path
        content = LocalRepository(clone_path).show_file(sha, path)
        if content is None:
            return VersionDetails()
        return VersionDetails.parse(content.decode("utf-8"), source=f"{clone_path.name}@{short_sha(sha)}:{path}")

    def _initialize_one(
        self,
        update: DependencyUpdate,
        additional_remotes: Sequence[AdditionalRemote],
        token: CancellationToken,
    ) -> SyncResult:
        logger.info("Initializing %s at %s..", update.mapping.name, update.target_revision)
        clone_path, sha = self._prepare(update, additional_remotes, token)
        token.raise_if_cancelled()

        update = replace(update, target_revision=sha)
        message = format_commit_message(
            INITIALIZATION_COMMIT_MESSAGE, update.mapping.name, update.remote_uri, new_sha=sha
        )
        self._sync_to_revision(update, clone_path, [], message, token)
        logger.info("Initialization of %s finished", update.mapping.name)
        return SyncResult(update.mapping.name, SyncAction.INITIALIZED, sha=sha, commit_message=message)

    def _update_one(
        self,
        update: DependencyUpdate,
        additional_remotes: Sequence[AdditionalRemote],
        token: CancellationToken,
    ) -> SyncResult:
        mapping = update.mapping
        current = self.tracker.get_current_version(mapping)
        if current is None:
            logger.warning("%s is not initialized in the VMR, skipping its update", mapping.name)
            return SyncResult(mapping.name, SyncAction.SKIPPED, details="Not initialized")

        logger.info("Updating %s from %s to %s..", mapping.name, short_sha(current.sha), update.target_revision)
        clone_path, sha = self._prepare(update, additional_remotes, token)
        token.raise_if_cancelled()

        if sha == current.sha:
            logger.info("%s is already at %s", mapping.name, sha)
            return SyncResult(mapping.name, SyncAction.SKIPPED, sha=sha, details="Already up to date")

        update = replace(update, target_revision=sha)
        message = format_commit_message(UPDATE_COMMIT_MESSAGE, mapping.name, update.remote_uri, sha, current.sha)
        with tempfile.TemporaryDirectory(prefix=f"vmrsync-{mapping.name}-") as staging:
            prior_patches: list[VmrIngestionPatch] = []
            last_sync = self.tracker.recorded_in(mapping, self.repo)
            if last_sync is None:
                logger.warning("No commit recorded %s at %s, patches will not be stripped", mapping.name, current.sha)
            else:
                prior_patches = self.patch_handler.committed_patches(mapping, Path(staging), last_sync)
            self._sync_to_revision(update, clone_path, prior_patches, message, token)

        logger.info("Update of %s finished", mapping.name)
        return SyncResult(mapping.name, SyncAction.UPDATED, sha=sha, commit_message=message)

    def _sync_to_revision(
        self,
        update: DependencyUpdate,
        clone_path: Path,
        prior_patches: Sequence[VmrIngestionPatch],
        commit_message: str,
        token: CancellationToken,
    ) -> None:
        """Strip patches, replace the mapping's sources, reapply patches and commit."""

        mapping = update.mapping
        sha = update.target_revision
        relative = self.settings.relative_sources_path(mapping)
        manifest_relative = self.tracker.manifest_path.relative_to(self.repo.path).as_posix()

        try:
            patches = self.patch_handler.restore_patched_files(mapping, prior_patches, token)
            files = LocalRepository(clone_path).list_files(sha)
            copied = replace_tree(
                clone_path,
                files,
                self.settings.sources_path(mapping),
                include=mapping.include,
                exclude=mapping.exclude,
            )
            logger.info("Copied %d file(s) of %s into %s", len(copied), mapping.name, relative)
            self.patch_handler.apply_patches(patches, self.repo.path)

            self.tracker.record_version(
                mapping,
                VmrManifestEntry(
                    mapping_name=mapping.name,
                    sha=sha,
                    source_version=update.target_version,
                    remote_uri=update.remote_uri,
                ),
            )
            self.repo.stage(relative, manifest_relative)
            self.repo.commit(
                commit_message,
                author_name=self.settings.commit_author_name,
                author_email=self.settings.commit_author_email,
                allow_empty=True,
            )
        except Exception as exc:
            self._discard_uncommitted(relative, manifest_relative)
            if isinstance(exc, GitError):
                raise SyncError(f"Failed to synchronize '{mapping.name}' from {update.remote_uri}: {exc}") from exc
            raise

    def _discard_uncommitted(self, *paths: str) -> None:
        """Bring ``paths`` back to ``HEAD`` so the tree and manifest match the last commit."""

        self.repo.git("reset", "--quiet", "HEAD", "--", *paths, check=False)
        for path in paths:
            if self.repo.list_files("HEAD", path):
                self.repo.git("checkout", "HEAD", "--", path, check=False)
        self.repo.git("clean", "-fdq", "--", *paths, check=False)
        self.tracker.reload()

    def _verify_cloaking(self, results: Sequence[SyncResult], baseline_path: Path | None) -> None:
        synced = [
            self.tracker.get_mapping(result.mapping_name)
            for result in results
            if result.action is not SyncAction.SKIPPED
        ]
        scanner = CloakedFileScanner(self.repo, self.settings)
        ensure_no_cloaked_files(scanner, synced, baseline_path, src_dir=self.settings.src_dir)

    def _report_interrupted(self, work_branch: WorkBranch) -> None:
        original = work_branch.original_branch
        target = "the original branch" if original.startswith(("sync/", "init/")) else f"'{original}'"
        logger.warning(
            "The sync was interrupted. Work branch '%s' keeps the commits made so far; "
            "inspect or resume it, or check out %s and delete the work branch.",
            work_branch.name,
            target,
        )
