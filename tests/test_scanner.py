from __future__ import annotations

import random
import time
from pathlib import Path
from typing import Callable, Sequence

import pytest
from conftest import GitRepo

from vmrsync.cancellation import CancellationToken
from vmrsync.config import Config, SourceMapping, load_config
from vmrsync.errors import CloakViolationError, ConfigurationError, OperationCancelledError
from vmrsync.filters import BaselineFilters
from vmrsync.git import LocalRepository
from vmrsync.scanner import (
    SCANNERS,
    BinaryFileScanner,
    CloakedFileScanner,
    _build_registry,
    ensure_no_cloaked_files,
    scan_vmr,
)

BINARY = b"MZ\x00\x01\x02\x00binary"


@pytest.fixture
def config(vmr: GitRepo, write_config: Callable[..., Path]) -> Config:
    config_path = write_config(
        'name = "runtime"\ndefault_remote = "https://example.invalid/runtime"\nexclude = ["**/*.pdb"]',
        'name = "arcade"\ndefault_remote = "https://example.invalid/arcade"',
    )
    vmr.commit(
        {
            "src/runtime/main.cs": "class Program {}\n",
            "src/runtime/bin/app.dll": BINARY,
            "src/arcade/eng/build.sh": "echo build\n",
            "tools/helper.dll": BINARY,
            "docs/index.md": "# docs\n",
        },
        message="Add sources",
    )
    return load_config(config_path)


def _baseline(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "baseline.txt"
    path.write_text(text)
    return path


def test_cloaked_scan_reports_baseline_matches(tmp_path: Path, vmr: GitRepo, config: Config) -> None:
    scanner = CloakedFileScanner(LocalRepository(vmr.path), config.settings)
    baseline = _baseline(tmp_path, "*.dll\nsrc/runtime/bin/\n")

    found = scan_vmr(scanner, config.mappings, baseline)

    assert found == ["src/runtime/bin/app.dll", "tools/helper.dll"]


def test_cloaked_scan_without_baseline_reports_excluded_files(vmr: GitRepo, config: Config) -> None:
    vmr.commit({"src/runtime/obj/main.pdb": "symbols"}, message="Leak symbols")
    scanner = CloakedFileScanner(LocalRepository(vmr.path), config.settings)

    assert scan_vmr(scanner, config.mappings) == ["src/runtime/obj/main.pdb"]


def test_scanner_reads_snapshot_taken_at_construction(tmp_path: Path, vmr: GitRepo, config: Config) -> None:
    scanner = CloakedFileScanner(LocalRepository(vmr.path), config.settings)
    vmr.commit({"src/arcade/late.dll": BINARY}, message="Late binary")
    baseline = _baseline(tmp_path, "*.dll\n")

    assert "src/arcade/late.dll" not in scan_vmr(scanner, config.mappings, baseline)


class _JitteryScanner:
    """Delegates to a real scanner but finishes sub-scans in random order."""

    def __init__(self, inner: CloakedFileScanner, seed: int) -> None:
        self.inner = inner
        self.scan_type = inner.scan_type
        self.random = random.Random(seed)

    def scan_sub_repository(self, mapping: SourceMapping, filters: BaselineFilters) -> list[str]:
        time.sleep(self.random.uniform(0, 0.02))
        return list(reversed(self.inner.scan_sub_repository(mapping, filters)))

    def scan_base_repository(self, mappings: Sequence[SourceMapping], filters: BaselineFilters) -> list[str]:
        time.sleep(self.random.uniform(0, 0.02))
        return self.inner.scan_base_repository(mappings, filters)


def test_scan_output_is_independent_of_completion_order(tmp_path: Path, vmr: GitRepo, config: Config) -> None:
    vmr.commit({"src/arcade/a.dll": BINARY, "src/arcade/b.dll": BINARY}, message="More binaries")
    inner = CloakedFileScanner(LocalRepository(vmr.path), config.settings)
    baseline = _baseline(tmp_path, "*.dll\n")

    results = {tuple(scan_vmr(_JitteryScanner(inner, seed), config.mappings, baseline)) for seed in range(5)}

    assert results == {
        ("src/arcade/a.dll", "src/arcade/b.dll", "src/runtime/bin/app.dll", "tools/helper.dll"),
    }


class _FailingScanner:
    scan_type = "failing"

    def scan_sub_repository(self, mapping: SourceMapping, filters: BaselineFilters) -> list[str]:
        if mapping.name == "arcade":
            raise RuntimeError("scan exploded")
        return ["src/runtime/bin/app.dll"]

    def scan_base_repository(self, mappings: Sequence[SourceMapping], filters: BaselineFilters) -> list[str]:
        return []


def test_one_failing_scan_fails_the_batch(config: Config) -> None:
    with pytest.raises(RuntimeError, match="scan exploded"):
        scan_vmr(_FailingScanner(), config.mappings)


def test_scan_honours_cancellation(vmr: GitRepo, config: Config) -> None:
    scanner = CloakedFileScanner(LocalRepository(vmr.path), config.settings)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        scan_vmr(scanner, config.mappings, cancellation=token)


def test_binary_scan_treats_baseline_as_allowlist(tmp_path: Path, vmr: GitRepo, config: Config) -> None:
    scanner = BinaryFileScanner(LocalRepository(vmr.path), config.settings)

    assert scan_vmr(scanner, config.mappings) == ["src/runtime/bin/app.dll", "tools/helper.dll"]

    baseline = _baseline(tmp_path, "src/runtime/bin/  # shipped prebuilt\n")
    assert scan_vmr(scanner, config.mappings, baseline) == ["tools/helper.dll"]


def test_registry_exposes_scanners_and_rejects_duplicates() -> None:
    assert SCANNERS["cloaked"] is CloakedFileScanner
    assert SCANNERS["binary"] is BinaryFileScanner

    with pytest.raises(ConfigurationError, match="duplicate"):
        _build_registry(CloakedFileScanner, CloakedFileScanner)

    class Incomplete:
        scan_type = "incomplete"

        def scan_sub_repository(self, mapping, filters):
            return []

    with pytest.raises(ConfigurationError, match="scan_base_repository"):
        _build_registry(Incomplete)


def test_ensure_no_cloaked_files(tmp_path: Path, vmr: GitRepo, config: Config) -> None:
    scanner = CloakedFileScanner(LocalRepository(vmr.path), config.settings)
    arcade = config.mapping("arcade")

    ensure_no_cloaked_files(scanner, [arcade], _baseline(tmp_path, "*.dll\n"))

    with pytest.raises(CloakViolationError) as excinfo:
        ensure_no_cloaked_files(scanner, config.mappings, _baseline(tmp_path, "*.dll\n"))

    assert excinfo.value.files == ["src/runtime/bin/app.dll"]
