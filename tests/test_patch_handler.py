from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
from conftest import GitRepo, init_repo

from vmrsync.config import load_config
from vmrsync.errors import PatchConflictError
from vmrsync.git import LocalRepository
from vmrsync.models import VmrIngestionPatch
from vmrsync.patch_handler import PatchHandler

ORIGINAL = "line one\nline two\nline three\n"


@pytest.fixture
def patch_source(tmp_path: Path) -> GitRepo:
    """Scratch repository mirroring the mapping's upstream layout, used to author patches."""

    repo = init_repo(tmp_path / "patch-source")
    repo.commit({"config.txt": ORIGINAL, "other.txt": "alpha\n"})
    return repo


def _handler(vmr: GitRepo, write_config: Callable[..., Path]) -> PatchHandler:
    config = load_config(write_config('name = "arcade"\ndefault_remote = "https://example.invalid/arcade"'))
    return PatchHandler(LocalRepository(vmr.path), config.settings)


def _sync_sources(vmr: GitRepo) -> Path:
    sources = vmr.path / "src" / "arcade"
    sources.mkdir(parents=True, exist_ok=True)
    (sources / "config.txt").write_text(ORIGINAL)
    (sources / "other.txt").write_text("alpha\n")
    return sources


def _snapshot(root: Path) -> dict[str, bytes]:
    return {path.relative_to(root).as_posix(): path.read_bytes() for path in sorted(root.rglob("*")) if path.is_file()}


def test_get_vmr_patches_preserves_declaration_order(
    vmr: GitRepo, write_config: Callable[..., Path], patch_source: GitRepo
) -> None:
    patches_dir = vmr.path / "src" / "patches" / "arcade"
    patches_dir.mkdir(parents=True)
    (patches_dir / "0002-b.patch").write_text(patch_source.diff_for({"other.txt": "beta\n"}))
    (patches_dir / "0001-a.patch").write_text(patch_source.diff_for({"config.txt": "patched\n"}))

    handler = _handler(vmr, write_config)
    patches = handler.get_vmr_patches(load_config(vmr.path).mapping("arcade"))

    assert [patch.patch_path.name for patch in patches] == ["0001-a.patch", "0002-b.patch"]
    assert {patch.relative_target for patch in patches} == {"src/arcade"}


def test_strip_and_reapply_round_trip(vmr: GitRepo, write_config: Callable[..., Path], patch_source: GitRepo) -> None:
    patches_dir = vmr.path / "src" / "patches" / "arcade"
    patches_dir.mkdir(parents=True)
    (patches_dir / "0001-config.patch").write_text(
        patch_source.diff_for({"config.txt": "line one\nline 2 (vmr)\nline three\n"})
    )
    (patches_dir / "0002-new-file.patch").write_text(patch_source.diff_for({"vmr-only.txt": "added by the VMR\n"}))

    handler = _handler(vmr, write_config)
    mapping = load_config(vmr.path).mapping("arcade")
    sources = _sync_sources(vmr)
    clean = _snapshot(sources)

    patches = handler.restore_patched_files(mapping, [])
    handler.apply_patches(patches, vmr.path)
    patched_once = _snapshot(sources)
    assert patched_once["config.txt"] == b"line one\nline 2 (vmr)\nline three\n"
    assert patched_once["vmr-only.txt"] == b"added by the VMR\n"

    to_reapply = handler.restore_patched_files(mapping, patches)
    assert _snapshot(sources) == clean
    assert to_reapply == patches

    handler.apply_patches(to_reapply, vmr.path)
    assert _snapshot(sources) == patched_once


def test_conflict_names_patch_and_path(vmr: GitRepo, write_config: Callable[..., Path], patch_source: GitRepo) -> None:
    patch_file = vmr.path / "fix.patch"
    patch_file.write_text(patch_source.diff_for({"config.txt": "patched\n"}))
    handler = _handler(vmr, write_config)
    sources = _sync_sources(vmr)
    (sources / "config.txt").unlink()

    patch = VmrIngestionPatch(patch_path=patch_file, relative_target="src/arcade")
    check = handler.check_patch(patch, vmr.path)
    assert not check.ok
    assert check.conflicting_path == "src/arcade/config.txt"

    with pytest.raises(PatchConflictError) as excinfo:
        handler.apply_patches([patch], vmr.path)

    assert excinfo.value.patch_path == patch_file
    assert excinfo.value.conflicting_path == "src/arcade/config.txt"
    assert "fix.patch" in str(excinfo.value)


def test_failure_mid_list_stops_application(
    vmr: GitRepo, write_config: Callable[..., Path], patch_source: GitRepo
) -> None:
    good = vmr.path / "1-good.patch"
    good.write_text(patch_source.diff_for({"other.txt": "beta\n"}))
    bad = vmr.path / "2-bad.patch"
    bad.write_text(patch_source.diff_for({"config.txt": "patched\n"}))
    never = vmr.path / "3-never.patch"
    never.write_text(patch_source.diff_for({"extra.txt": "extra\n"}))

    handler = _handler(vmr, write_config)
    sources = _sync_sources(vmr)
    (sources / "config.txt").write_text("diverged upstream\n")

    patches = [VmrIngestionPatch(path, "src/arcade") for path in (good, bad, never)]
    with pytest.raises(PatchConflictError) as excinfo:
        handler.apply_patches(patches, vmr.path)

    assert excinfo.value.patch_path == bad
    assert (sources / "other.txt").read_text() == "beta\n"
    assert not (sources / "extra.txt").exists()


def test_committed_patches_reads_head_version(
    vmr: GitRepo, write_config: Callable[..., Path], patch_source: GitRepo, tmp_path: Path
) -> None:
    patches_dir = vmr.path / "src" / "patches" / "arcade"
    patches_dir.mkdir(parents=True)
    committed = patch_source.diff_for({"config.txt": "committed\n"})
    (patches_dir / "0001-fix.patch").write_text(committed)
    vmr.commit(message="Add patch")
    (patches_dir / "0001-fix.patch").write_text(patch_source.diff_for({"config.txt": "edited\n"}))
    (patches_dir / "0002-new.patch").write_text(patch_source.diff_for({"other.txt": "beta\n"}))

    handler = _handler(vmr, write_config)
    mapping = load_config(vmr.path).mapping("arcade")
    staging = tmp_path / "staging"
    staging.mkdir()

    patches = handler.committed_patches(mapping, staging)

    assert len(patches) == 1
    assert patches[0].patch_path.parent == staging
    assert patches[0].patch_path.read_text() == committed
    assert patches[0].relative_target == "src/arcade"
