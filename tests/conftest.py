from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

import pytest


def git(path: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=path, capture_output=True, text=True, check=True)
    return result.stdout


@dataclass
class GitRepo:
    """A throwaway repository used as an upstream or as the VMR."""

    path: Path

    def write(self, files: Mapping[str, str | bytes]) -> None:
        for relative, content in files.items():
            target = self.path / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                target.write_bytes(content)
            else:
                target.write_text(content)

    def commit(
        self,
        files: Mapping[str, str | bytes] | None = None,
        *,
        remove: tuple[str, ...] = (),
        message: str = "update",
    ) -> str:
        self.write(files or {})
        for relative in remove:
            (self.path / relative).unlink()
        git(self.path, "add", "--all")
        git(self.path, "commit", "--quiet", "--allow-empty", "-m", message)
        return self.head()

    def head(self) -> str:
        return git(self.path, "rev-parse", "HEAD").strip()

    def branch(self) -> str:
        return git(self.path, "symbolic-ref", "--short", "HEAD").strip()

    def branches(self) -> list[str]:
        return git(self.path, "branch", "--format=%(refname:short)").split()

    def message(self, revision: str = "HEAD") -> str:
        return git(self.path, "log", "-1", "--format=%B", revision).strip()

    def commit_count(self, revision: str = "HEAD") -> int:
        return int(git(self.path, "rev-list", "--count", revision).strip())

    def diff_for(self, files: Mapping[str, str]) -> str:
        """Return a patch turning the current checkout into one with ``files`` written."""

        new_files = [relative for relative in files if not (self.path / relative).exists()]
        self.write(files)
        if new_files:
            git(self.path, "add", "--intent-to-add", *new_files)
        patch = git(self.path, "diff")
        git(self.path, "reset", "--quiet")
        git(self.path, "checkout", "--", ".")
        git(self.path, "clean", "-fdq")
        return patch


def init_repo(path: Path) -> GitRepo:
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "--quiet")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    return GitRepo(path)


@pytest.fixture(autouse=True)
def fake_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "vmrsync tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tests@vmrsync.invalid")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "vmrsync tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tests@vmrsync.invalid")
    return home


@pytest.fixture
def make_upstream(tmp_path: Path) -> Callable[..., GitRepo]:
    def factory(name: str, files: Mapping[str, str | bytes] | None = None) -> GitRepo:
        repo = init_repo(tmp_path / "upstreams" / name)
        repo.commit(files or {"README.md": f"# {name}\n"}, message=f"Initial {name} commit")
        return repo

    return factory


@pytest.fixture
def vmr(tmp_path: Path) -> GitRepo:
    repo = init_repo(tmp_path / "vmr")
    repo.commit({"README.md": "# VMR\n"}, message="Initial VMR commit")
    return repo


@pytest.fixture
def write_config(tmp_path: Path, vmr: GitRepo) -> Callable[..., Path]:
    """Write ``source-mappings.toml`` at the VMR root; ``mappings`` are TOML table bodies."""

    def factory(*mappings: str, defaults: str = "", settings: str = "") -> Path:
        body = f"""
[settings]
clone_dir = "{tmp_path / 'clones'}"
{settings}

[defaults]
{defaults}
"""
        for mapping in mappings:
            body += f"\n[[mappings]]\n{mapping}\n"
        config_path = vmr.path / "source-mappings.toml"
        config_path.write_text(body)
        return config_path

    return factory


def version_details(*dependencies: tuple[str, GitRepo, str]) -> str:
    """Render ``eng/Version.Details.toml`` declaring ``(mapping, upstream, sha)`` dependencies."""

    body = ""
    for mapping_name, upstream, sha in dependencies:
        body += f"""
[[dependencies]]
name = "Microsoft.DotNet.{mapping_name.title()}"
uri = "{upstream.path}"
sha = "{sha}"
version = "1.0.0-{sha[:7]}"
repo_name = "{mapping_name}"
"""
    return body
