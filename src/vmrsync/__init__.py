"""Core package for the vmrsync project."""

from .cancellation import CancellationToken
from .cli import app, run
from .clone_manager import CloneManager
from .config import Config, Settings, SourceMapping, load_config
from .dependency_tracker import DependencyTracker
from .errors import (
    AlreadyInitializedError,
    CloakViolationError,
    ConfigurationError,
    NotInitializedError,
    OperationCancelledError,
    PatchConflictError,
    RevisionNotFoundError,
    SyncError,
    VmrError,
)
from .manager import VmrManager
from .manifest import SourceManifest
from .models import (
    AdditionalRemote,
    DependencyUpdate,
    MappingStatus,
    SyncAction,
    SyncResult,
    VmrIngestionPatch,
    VmrManifestEntry,
)
from .patch_handler import PatchHandler
from .scanner import SCANNERS, BinaryFileScanner, CloakedFileScanner, scan_vmr

__all__ = [
    "CancellationToken",
    "CloneManager",
    "Config",
    "Settings",
    "SourceMapping",
    "load_config",
    "DependencyTracker",
    "VmrError",
    "ConfigurationError",
    "AlreadyInitializedError",
    "NotInitializedError",
    "RevisionNotFoundError",
    "PatchConflictError",
    "CloakViolationError",
    "OperationCancelledError",
    "SyncError",
    "VmrManager",
    "SourceManifest",
    "AdditionalRemote",
    "DependencyUpdate",
    "MappingStatus",
    "SyncAction",
    "SyncResult",
    "VmrIngestionPatch",
    "VmrManifestEntry",
    "PatchHandler",
    "SCANNERS",
    "BinaryFileScanner",
    "CloakedFileScanner",
    "scan_vmr",
    "app",
    "run",
]
