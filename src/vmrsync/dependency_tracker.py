"""Registry of mappings and of what the VMR currently contains."""

from __future__ import annotations

import logging
from pathlib import Path

from .config import Config, SourceMapping, load_config
from .errors import ConfigurationError
from .git import LocalRepository
from .manifest import SourceManifest
from .models import VmrManifestEntry

logger = logging.getLogger(__name__)


class DependencyTracker:
    """Answers "is X initialized?" and "which revision is X at?".

    The tracker is the only writer of the source manifest. Entries are recorded by the
    orchestrator right before the commit that stages the synced tree, so the manifest file
    always changes together with the content it describes.
    """

    def __init__(self, config: Config | None = None) -> None:
        self._config: Config | None = None
        self._manifest: SourceManifest | None = None
        if config is not None:
            self._use(config)

    def initialize_mappings(self, path: Path | None = None) -> Config:
        """Load the mapping configuration once; later calls reuse it unless ``path`` differs."""

        if self._config is not None and (path is None or Path(path).resolve() == self._config.config_path):
            return self._config
        self._use(load_config(path))
        return self.config

    def _use(self, config: Config) -> None:
        self._config = config
        self._manifest = SourceManifest.load(config.settings.manifest_path)
        logger.debug(
            "Loaded %d mapping(s) from %s and %d manifest entr(ies)",
            len(config.mappings),
            config.config_path,
            len(list(self._manifest.entries())),
        )

    @property
    def config(self) -> Config:
        if self._config is None:
            raise ConfigurationError("Source mappings have not been initialized")
        return self._config

    @property
    def mappings(self) -> tuple[SourceMapping, ...]:
        return self.config.mappings

    def get_mapping(self, name: str) -> SourceMapping:
        return self.config.mapping(name)

    def find_mapping(self, name: str) -> SourceMapping | None:
        for mapping in self.mappings:
            if mapping.name == name:
                return mapping
        return None

    def get_current_version(self, mapping: SourceMapping) -> VmrManifestEntry | None:
        return self._require_manifest().get(mapping.name)

    def record_version(self, mapping: SourceMapping, entry: VmrManifestEntry) -> None:
        if entry.mapping_name != mapping.name:
            raise ValueError(f"Manifest entry for '{entry.mapping_name}' recorded against mapping '{mapping.name}'")
        manifest = self._require_manifest()
        manifest.upsert(entry)
        manifest.save()
        logger.info("Recorded %s at %s", mapping.name, entry.sha)

    def recorded_in(self, mapping: SourceMapping, repo: LocalRepository) -> str | None:
        """Return the commit that recorded ``mapping``'s current manifest entry.

        History of the manifest file is walked back from ``HEAD`` while the entry keeps the
        current SHA; later commits that only touch other mappings are passed over.
        """

        current = self.get_current_version(mapping)
        if current is None:
            return None

        relative = self.manifest_path.relative_to(repo.path).as_posix()
        recorded: str | None = None
        for commit in repo.log(relative):
            content = repo.show_file(commit, relative)
            entry = SourceManifest.parse(self.manifest_path, content).get(mapping.name) if content else None
            if entry is None or entry.sha != current.sha:
                break
            recorded = commit
        return recorded

    def reload(self) -> None:
        """Re-read the manifest from disk, dropping in-memory state."""

        self._manifest = SourceManifest.load(self.config.settings.manifest_path)

    @property
    def manifest_path(self) -> Path:
        return self.config.settings.manifest_path

    def _require_manifest(self) -> SourceManifest:
        if self._manifest is None:
            raise ConfigurationError("Source mappings have not been initialized")
        return self._manifest
