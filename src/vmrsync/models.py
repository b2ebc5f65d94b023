"""Shared models and enums for vmrsync."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .config import SourceMapping

AUTOMATION_COMMIT_TAG = "[[ commit created by automation ]]"
HEAD = "HEAD"


def short_sha(sha: str) -> str:
    return sha[:7]


@dataclass(frozen=True, slots=True)
class AdditionalRemote:
    """Extra remote to try for a mapping after its default remote."""

    mapping_name: str
    remote_uri: str


@dataclass(frozen=True, slots=True)
class DependencyUpdate:
    """A unit of work: bring ``mapping`` to ``target_revision``."""

    mapping: SourceMapping
    remote_uri: str
    target_revision: str
    target_version: str | None = None
    parent: DependencyUpdate | None = field(default=None, compare=False)

    def describe_chain(self) -> str:
        """Return ``root -> ... -> self`` mapping names for log output."""

        names: list[str] = []
        current: DependencyUpdate | None = self
        while current is not None:
            names.append(current.mapping.name)
            current = current.parent
        return " -> ".join(reversed(names))


@dataclass(frozen=True, slots=True)
class VmrManifestEntry:
    """Recorded state of a mapping inside the VMR."""

    mapping_name: str
    sha: str
    source_version: str | None = None
    remote_uri: str | None = None


@dataclass(frozen=True, slots=True)
class VmrIngestionPatch:
    """A patch file and the VMR-relative directory it applies to."""

    patch_path: Path
    relative_target: str


@dataclass(frozen=True, slots=True)
class PatchCheck:
    """Outcome of checking whether a patch applies cleanly."""

    patch: VmrIngestionPatch
    ok: bool
    conflicting_path: str | None = None
    details: str = ""


class SyncAction(str, Enum):
    """Outcome of syncing one mapping."""

    INITIALIZED = "initialized"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Result emitted for each dependency update processed by the orchestrator."""

    mapping_name: str
    action: SyncAction
    sha: str | None = None
    commit_message: str | None = None
    details: str | None = None


@dataclass(frozen=True, slots=True)
class MappingStatus:
    """Status information for a mapping reported by ``vmrsync status``."""

    mapping_name: str
    sha: str | None
    source_version: str | None
    sources_present: bool

    @property
    def initialized(self) -> bool:
        return self.sha is not None
