"""Error kinds surfaced by the synchronization engine."""

from __future__ import annotations

from pathlib import Path


class VmrError(RuntimeError):
    """Base class for all errors raised by vmrsync."""


class ConfigurationError(VmrError):
    """Raised when a mapping file, manifest or dependency file is invalid."""


class AlreadyInitializedError(VmrError):
    """Raised when initializing a mapping that is already present in the VMR."""

    def __init__(self, mapping_name: str) -> None:
        super().__init__(f"Repository '{mapping_name}' is already initialized in the VMR")
        self.mapping_name = mapping_name


class NotInitializedError(VmrError):
    """Raised when updating a mapping that has never been initialized."""

    def __init__(self, mapping_name: str) -> None:
        super().__init__(f"Repository '{mapping_name}' has not been initialized in the VMR yet")
        self.mapping_name = mapping_name


class RevisionNotFoundError(VmrError):
    """Raised when none of the candidate remotes contains the requested revision."""

    def __init__(self, mapping_name: str, revision: str, remotes: tuple[str, ...]) -> None:
        tried = ", ".join(remotes) or "<none>"
        super().__init__(f"Revision '{revision}' of '{mapping_name}' was not found in any remote ({tried})")
        self.mapping_name = mapping_name
        self.revision = revision
        self.remotes = remotes


class PatchConflictError(VmrError):
    """Raised when a VMR patch does not apply cleanly."""

    def __init__(self, patch_path: Path, conflicting_path: str, details: str = "") -> None:
        message = f"Patch '{patch_path}' failed to apply to '{conflicting_path}'"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)
        self.patch_path = patch_path
        self.conflicting_path = conflicting_path


class CloakViolationError(VmrError):
    """Raised when cloaked files are found inside the VMR."""

    def __init__(self, files: list[str]) -> None:
        preview = ", ".join(files[:5])
        suffix = "" if len(files) <= 5 else f" (and {len(files) - 5} more)"
        super().__init__(f"Found {len(files)} cloaked file(s) in the VMR: {preview}{suffix}")
        self.files = files


class OperationCancelledError(VmrError):
    """Raised when a cancellation token is triggered."""


class SyncError(VmrError):
    """Raised when a sync step fails for reasons other than the kinds above."""
