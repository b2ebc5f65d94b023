"""Application and removal of VMR-owned patches."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Sequence

from .cancellation import CancellationToken, ensure_token
from .config import Settings, SourceMapping
from .errors import PatchConflictError
from .git import GitError, LocalRepository
from .models import PatchCheck, VmrIngestionPatch

logger = logging.getLogger(__name__)

_FAILED_HUNK = re.compile(r"patch failed: (?P<path>.+?):\d+")
_FAILED_FILE = re.compile(
    r"error: (?P<path>.+?): (?:No such file or directory|does not exist in index|patch does not apply|already exists)"
)


def _conflicting_path(stderr: str) -> str | None:
    for pattern in (_FAILED_HUNK, _FAILED_FILE):
        match = pattern.search(stderr)
        if match:
            return match.group("path")
    return None


class PatchHandler:
    """Stateless transform between "patched" and "clean" mapping subtrees.

    Patches are applied with ``git apply --directory=<src>/<mapping>`` from the VMR root,
    in declaration order. Stripping reverses them in the opposite order.
    """

    def __init__(self, repo: LocalRepository, settings: Settings) -> None:
        self.repo = repo
        self.settings = settings

    def get_vmr_patches(self, mapping: SourceMapping) -> list[VmrIngestionPatch]:
        target = self.settings.relative_sources_path(mapping)
        return [VmrIngestionPatch(patch_path=path, relative_target=target) for path in mapping.vmr_patch_files]

    def committed_patches(
        self, mapping: SourceMapping, staging_dir: Path, revision: str = "HEAD"
    ) -> list[VmrIngestionPatch]:
        """Return ``mapping``'s patches as they were at ``revision``.

        Pass the commit that last synced the mapping to get the patches that sync applied.
        Their content is written to ``staging_dir`` since the patch files may have been
        added, edited or removed since.
        """

        target = self.settings.relative_sources_path(mapping)
        patches: list[VmrIngestionPatch] = []
        for path in mapping.vmr_patch_files:
            try:
                relative = path.relative_to(self.repo.path).as_posix()
            except ValueError:
                # Patches kept outside the VMR are not versioned with it
                patches.append(VmrIngestionPatch(patch_path=path, relative_target=target))
                continue
            content = self.repo.show_file(revision, relative)
            if content is None:
                logger.debug("Patch %s did not exist at %s, nothing to strip", relative, revision)
                continue
            staged = staging_dir / f"{len(patches):03d}-{path.name}"
            staged.write_bytes(content)
            patches.append(VmrIngestionPatch(patch_path=staged, relative_target=target))
        return patches

    def restore_patched_files(
        self,
        mapping: SourceMapping,
        prior_patches: Sequence[VmrIngestionPatch],
        cancellation: CancellationToken | None = None,
    ) -> list[VmrIngestionPatch]:
        """Strip ``prior_patches`` from the VMR and return the patches to reapply after the sync.

        For a first-time initialization ``prior_patches`` is empty and only the mapping's own
        patches are returned.
        """

        ensure_token(cancellation).raise_if_cancelled()
        if prior_patches:
            logger.info("Removing %d VMR patch(es) from %s", len(prior_patches), mapping.name)
            self.apply_patches(list(reversed(prior_patches)), self.repo.path, reverse=True)
        return self.get_vmr_patches(mapping)

    def check_patch(self, patch: VmrIngestionPatch, root: Path, *, reverse: bool = False) -> PatchCheck:
        repo = LocalRepository(root)
        try:
            repo.apply_patch(patch.patch_path, directory=patch.relative_target, reverse=reverse, check_only=True)
        except GitError as exc:
            return PatchCheck(
                patch=patch,
                ok=False,
                conflicting_path=_conflicting_path(exc.stderr) or patch.relative_target,
                details=exc.stderr.strip(),
            )
        return PatchCheck(patch=patch, ok=True)

    def apply_patches(self, patches: Sequence[VmrIngestionPatch], root: Path, *, reverse: bool = False) -> None:
        """Apply ``patches`` in list order; the first one that does not apply is fatal."""

        repo = LocalRepository(root)
        for patch in patches:
            check = self.check_patch(patch, root, reverse=reverse)
            if not check.ok:
                raise PatchConflictError(patch.patch_path, check.conflicting_path or patch.relative_target, check.details)
            logger.info("%s %s to %s", "Reverting" if reverse else "Applying", patch.patch_path.name, patch.relative_target)
            repo.apply_patch(patch.patch_path, directory=patch.relative_target, reverse=reverse)
