"""Persistence for the VMR source manifest."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Iterable

from tomli_w import dump as toml_dump

from .errors import ConfigurationError
from .models import VmrManifestEntry


class SourceManifest:
    """Tracks which revision of every mapping is checked into the VMR."""

    def __init__(self, path: Path, entries: dict[str, VmrManifestEntry] | None = None) -> None:
        self.path = path
        self._entries: dict[str, VmrManifestEntry] = entries or {}

    @classmethod
    def load(cls, path: Path) -> "SourceManifest":
        if not path.exists():
            return cls(path, {})

        return cls.parse(path, path.read_bytes())

    @classmethod
    def parse(cls, path: Path, content: bytes) -> "SourceManifest":
        """Build a manifest from ``content``, e.g. the file as recorded in an older commit."""

        try:
            data = tomllib.loads(content.decode("utf-8"))
        except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
            raise ConfigurationError(f"Source manifest '{path}' is not valid TOML: {exc}") from exc

        entries: dict[str, VmrManifestEntry] = {}
        for item in data.get("repositories", []):
            try:
                entry = VmrManifestEntry(
                    mapping_name=item["name"],
                    sha=item["sha"],
                    source_version=item.get("version"),
                    remote_uri=item.get("remote_uri"),
                )
            except (AttributeError, KeyError, TypeError) as exc:
                raise ConfigurationError(f"Source manifest '{path}' has a malformed entry: {item!r}") from exc
            if entry.mapping_name in entries:
                raise ConfigurationError(f"Source manifest '{path}' lists '{entry.mapping_name}' more than once")
            entries[entry.mapping_name] = entry

        return cls(path, entries)

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "repositories": [
                self._entry_to_dict(entry) for entry in sorted(self._entries.values(), key=lambda e: e.mapping_name)
            ]
        }
        with self.path.open("wb") as handle:
            toml_dump(payload, handle)

    def get(self, mapping_name: str) -> VmrManifestEntry | None:
        return self._entries.get(mapping_name)

    def upsert(self, entry: VmrManifestEntry) -> None:
        self._entries[entry.mapping_name] = entry

    def remove(self, mapping_name: str) -> None:
        self._entries.pop(mapping_name, None)

    def entries(self) -> Iterable[VmrManifestEntry]:
        return self._entries.values()

    @staticmethod
    def _entry_to_dict(entry: VmrManifestEntry) -> dict[str, object]:
        payload: dict[str, object] = {
            "name": entry.mapping_name,
            "sha": entry.sha,
        }
        if entry.source_version is not None:
            payload["version"] = entry.source_version
        if entry.remote_uri is not None:
            payload["remote_uri"] = entry.remote_uri
        return payload
