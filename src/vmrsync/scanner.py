"""Scanners that audit the VMR for files which must not be there."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterable, Protocol, Sequence

from .cancellation import CancellationToken, ensure_token
from .config import Settings, SourceMapping
from .errors import CloakViolationError, ConfigurationError
from .filters import BaselineFilters, is_included, load_baseline, matches_any
from .git import LocalRepository

logger = logging.getLogger(__name__)


class Scanner(Protocol):
    """Decides which files of one tree revision count as offending."""

    scan_type: str

    def scan_sub_repository(self, mapping: SourceMapping, filters: BaselineFilters) -> list[str]: ...

    def scan_base_repository(self, mappings: Sequence[SourceMapping], filters: BaselineFilters) -> list[str]: ...


def _mapped_prefixes(settings: Settings, mappings: Iterable[SourceMapping]) -> tuple[str, ...]:
    return tuple(f"{settings.relative_sources_path(mapping)}/" for mapping in mappings)


class CloakedFileScanner:
    """Reports files that violate a mapping's cloaking rules or the baseline patterns."""

    scan_type = "cloaked"

    def __init__(self, repo: LocalRepository, settings: Settings, revision: str | None = None) -> None:
        self.repo = repo
        self.settings = settings
        # Every scan of this instance reads the same snapshot
        self.revision = revision or repo.head_sha()

    def scan_sub_repository(self, mapping: SourceMapping, filters: BaselineFilters) -> list[str]:
        prefix = self.settings.relative_sources_path(mapping)
        patterns = filters.for_mapping(mapping.name)
        offending: list[str] = []
        for path in self.repo.list_files(self.revision, prefix):
            relative = path[len(prefix) + 1 :]
            if not is_included(relative, mapping.include, mapping.exclude) or matches_any(path, patterns):
                offending.append(path)
        return offending

    def scan_base_repository(self, mappings: Sequence[SourceMapping], filters: BaselineFilters) -> list[str]:
        prefixes = _mapped_prefixes(self.settings, mappings)
        patterns = filters.for_base()
        return [
            path
            for path in self.repo.list_files(self.revision)
            if not path.startswith(prefixes) and matches_any(path, patterns)
        ]


class BinaryFileScanner:
    """Reports binary files, except those allowed by a matching baseline line."""

    scan_type = "binary"

    def __init__(self, repo: LocalRepository, settings: Settings, revision: str | None = None) -> None:
        self.repo = repo
        self.settings = settings
        self.revision = revision or repo.head_sha()

    def scan_sub_repository(self, mapping: SourceMapping, filters: BaselineFilters) -> list[str]:
        allowed = filters.for_mapping(mapping.name)
        files = self.repo.binary_files(self.revision, self.settings.relative_sources_path(mapping))
        return [path for path in files if not matches_any(path, allowed)]

    def scan_base_repository(self, mappings: Sequence[SourceMapping], filters: BaselineFilters) -> list[str]:
        prefixes = _mapped_prefixes(self.settings, mappings)
        allowed = filters.for_base()
        return [
            path
            for path in self.repo.binary_files(self.revision)
            if not path.startswith(prefixes) and not matches_any(path, allowed)
        ]


ScannerFactory = Callable[[LocalRepository, Settings], Scanner]


def _build_registry(*factories: type) -> dict[str, ScannerFactory]:
    registry: dict[str, ScannerFactory] = {}
    for factory in factories:
        name = getattr(factory, "scan_type", None)
        if not name or name in registry:
            raise ConfigurationError(f"Scanner {factory.__name__} has a missing or duplicate scan_type")
        for method in ("scan_sub_repository", "scan_base_repository"):
            if not callable(getattr(factory, method, None)):
                raise ConfigurationError(f"Scanner {factory.__name__} does not implement {method}")
        registry[name] = factory
    return registry


SCANNERS: dict[str, ScannerFactory] = _build_registry(CloakedFileScanner, BinaryFileScanner)


def scan_vmr(
    scanner: Scanner,
    mappings: Sequence[SourceMapping],
    baseline_path: Path | None = None,
    cancellation: CancellationToken | None = None,
    *,
    src_dir: str = "src",
    max_workers: int = 4,
) -> list[str]:
    """Scan every mapping plus the base repository concurrently.

    Any failing scan fails the whole operation. The result is sorted so output does not
    depend on which scan finished first.
    """

    token = ensure_token(cancellation)
    filters = load_baseline(baseline_path, src_dir=src_dir)
    logger.info("Scanning VMR repositories for %s files", scanner.scan_type)

    def run(mapping: SourceMapping | None) -> list[str]:
        token.raise_if_cancelled()
        if mapping is None:
            return scanner.scan_base_repository(mappings, filters)
        return scanner.scan_sub_repository(mapping, filters)

    futures: list[Future[list[str]]] = []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        for mapping in (*mappings, None):
            futures.append(executor.submit(run, mapping))
        try:
            batches = [future.result() for future in futures]
        except BaseException:
            for future in futures:
                future.cancel()
            raise

    files = sorted({path for batch in batches for path in batch})
    logger.info("The scanner found %d %s files", len(files), scanner.scan_type)
    return files


def ensure_no_cloaked_files(
    scanner: Scanner,
    mappings: Sequence[SourceMapping],
    baseline_path: Path | None = None,
    *,
    src_dir: str = "src",
) -> None:
    """Raise :class:`CloakViolationError` if any of ``mappings`` contains cloaked files."""

    filters = load_baseline(baseline_path, src_dir=src_dir)
    offending = sorted({path for mapping in mappings for path in scanner.scan_sub_repository(mapping, filters)})
    if offending:
        raise CloakViolationError(offending)
