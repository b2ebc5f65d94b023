"""TOML configuration loading for vmrsync."""

from __future__ import annotations

import os
import tempfile
import tomllib
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError

DEFAULT_CONFIG_FILENAME = "source-mappings.toml"
DEFAULT_REF = "main"


def _expand_path(raw: str | os.PathLike[str] | Path, *, base_dir: Path) -> Path:
    """Return an absolute ``Path`` by expanding env vars and user segments."""

    text = str(raw)
    expanded = Path(os.path.expandvars(text)).expanduser()
    if expanded.is_absolute():
        return expanded.resolve(strict=False)
    return (base_dir / expanded).resolve(strict=False)


def _string_list(owner: str, key: str, raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ConfigurationError(f"{owner}: '{key}' must be a list of strings")
    for item in raw:
        if item.startswith("/") or ".." in Path(item).parts:
            raise ConfigurationError(f"{owner}: pattern '{item}' must be relative to the repository root")
    return tuple(item for item in raw if item.strip())


class Settings(BaseModel):
    """Global configuration options."""

    model_config = ConfigDict(frozen=True)

    vmr_root: Path
    src_dir: str = "src"
    patches_dir: Path
    manifest_path: Path
    clone_dir: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()) / "vmrsync" / "clones")
    version_details_path: str = "eng/Version.Details.toml"
    max_workers: int = Field(default=4, ge=1)
    commit_author_name: str = "vmrsync-bot"
    commit_author_email: str = "vmrsync-bot@users.noreply.github.com"

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, base_dir: Path) -> "Settings":
        vmr_root = _expand_path(raw.get("vmr_root", "."), base_dir=base_dir)
        src_dir = str(raw.get("src_dir", "src")).strip("/")
        patches = _expand_path(raw.get("patches_dir", f"{src_dir}/patches"), base_dir=vmr_root)
        manifest = _expand_path(raw.get("manifest_path", f"{src_dir}/source-manifest.toml"), base_dir=vmr_root)
        if not manifest.is_relative_to(vmr_root):
            raise ConfigurationError(f"manifest_path '{manifest}' must be inside the VMR root '{vmr_root}'")

        values: dict[str, Any] = {
            "vmr_root": vmr_root,
            "src_dir": src_dir,
            "patches_dir": patches,
            "manifest_path": manifest,
        }
        if "clone_dir" in raw:
            values["clone_dir"] = _expand_path(raw["clone_dir"], base_dir=base_dir)
        for key in ("version_details_path", "max_workers", "commit_author_name", "commit_author_email"):
            if key in raw:
                values[key] = raw[key]

        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid [settings] table: {exc}") from exc

    def sources_path(self, mapping: "SourceMapping") -> Path:
        """Return the absolute directory holding ``mapping``'s sources in the VMR."""

        return self.vmr_root / self.relative_sources_path(mapping)

    def relative_sources_path(self, mapping: "SourceMapping") -> str:
        return f"{self.src_dir}/{mapping.name}"


class SourceMapping(BaseModel):
    """One individual repository mapped into the VMR."""

    model_config = ConfigDict(frozen=True)

    name: str
    default_remote: str
    default_ref: str = DEFAULT_REF
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    vmr_patch_files: tuple[Path, ...] = ()

    @classmethod
    def from_raw(
        cls,
        raw: Mapping[str, Any],
        *,
        defaults: Mapping[str, Any],
        patches_dir: Path,
    ) -> "SourceMapping":
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ConfigurationError("Every [[mappings]] entry must define a non-empty 'name'")
        if "/" in name or "\\" in name or name in {".", ".."}:
            raise ConfigurationError(f"Mapping name '{name}' must be a single path segment")

        remote = raw.get("default_remote")
        if not isinstance(remote, str) or not remote.strip():
            raise ConfigurationError(f"Mapping '{name}' must define 'default_remote'")

        owner = f"Mapping '{name}'"
        include = _string_list(owner, "include", raw.get("include"))
        exclude = _string_list(owner, "exclude", raw.get("exclude"))
        if not raw.get("ignore_defaults", False):
            include = _string_list("[defaults]", "include", defaults.get("include")) + include
            exclude = _string_list("[defaults]", "exclude", defaults.get("exclude")) + exclude

        try:
            return cls(
                name=name,
                default_remote=remote.rstrip("/"),
                default_ref=str(raw.get("default_ref", DEFAULT_REF)),
                include=include,
                exclude=exclude,
                vmr_patch_files=_patch_files(name, raw.get("patches"), patches_dir / name),
            )
        except ValidationError as exc:
            raise ConfigurationError(f"{owner} is invalid: {exc}") from exc


def _patch_files(name: str, raw: Any, directory: Path) -> tuple[Path, ...]:
    if raw is None:
        if not directory.is_dir():
            return ()
        return tuple(sorted(directory.glob("*.patch")))

    patches: list[Path] = []
    for item in _string_list(f"Mapping '{name}'", "patches", raw):
        candidate = directory / item
        if not candidate.is_file():
            raise ConfigurationError(f"Mapping '{name}' lists patch '{item}' which does not exist in '{directory}'")
        patches.append(candidate)
    return tuple(patches)


class Config(BaseModel):
    """Fully parsed mapping configuration."""

    model_config = ConfigDict(frozen=True)

    config_path: Path
    settings: Settings
    mappings: tuple[SourceMapping, ...]

    def mapping(self, name: str) -> SourceMapping:
        for candidate in self.mappings:
            if candidate.name == name:
                return candidate
        raise ConfigurationError(f"No repository mapping named '{name}' found")


def load_config(path: Path | None = None) -> Config:
    """Load and validate a mapping configuration file.

    Args:
        path: Optional path to the TOML file or the directory containing it. Defaults to
            ``source-mappings.toml`` in the current working directory.
    """

    config_path = _resolve_config_path(path)
    base_dir = config_path.parent

    try:
        with config_path.open("rb") as handle:
            data = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Configuration file '{config_path}' is not valid TOML: {exc}") from exc

    settings = Settings.from_raw(_table(data, "settings"), base_dir=base_dir)
    defaults = _table(data, "defaults")

    mappings_section = data.get("mappings")
    if not mappings_section or not isinstance(mappings_section, list):
        raise ConfigurationError("Configuration must define at least one [[mappings]] table")

    mappings: list[SourceMapping] = []
    seen: set[str] = set()
    for raw in mappings_section:
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Every [[mappings]] entry must be a table, got {raw!r}")
        mapping = SourceMapping.from_raw(raw, defaults=defaults, patches_dir=settings.patches_dir)
        if mapping.name in seen:
            raise ConfigurationError(f"Mapping '{mapping.name}' is defined more than once")
        seen.add(mapping.name)
        mappings.append(mapping)

    try:
        return Config(config_path=config_path, settings=settings, mappings=tuple(mappings))
    except ValidationError as exc:
        raise ConfigurationError(f"Configuration file '{config_path}' is invalid: {exc}") from exc


def _table(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigurationError(f"[{key}] must be a table, got {value!r}")
    return value


def _resolve_config_path(path: Path | None) -> Path:
    if path is None:
        path = Path.cwd() / DEFAULT_CONFIG_FILENAME
    else:
        path = Path(path)

    if not path.exists():
        raise ConfigurationError(f"Configuration file '{path}' does not exist")
    if path.is_dir():
        candidate = path / DEFAULT_CONFIG_FILENAME
        if not candidate.exists():
            raise ConfigurationError(f"Expected to find '{DEFAULT_CONFIG_FILENAME}' inside '{path}', but none was located")
        path = candidate

    return path.resolve(strict=False)
