"""Reader for the dependency manifest shipped inside each individual repository."""

from __future__ import annotations

import tomllib
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import ConfigurationError


class DeclaredDependency(BaseModel):
    """An upstream dependency declared by an individual repository."""

    model_config = ConfigDict(frozen=True)

    name: str
    uri: str
    sha: str
    version: str | None = None
    repo_name: str | None = None

    @property
    def mapping_name(self) -> str:
        """Name of the VMR mapping this dependency is built from."""

        if self.repo_name:
            return self.repo_name
        segment = self.uri.rstrip("/").rsplit("/", 1)[-1]
        return segment.removesuffix(".git")


class VersionDetails(BaseModel):
    """Typed view over ``Version.Details.toml``."""

    model_config = ConfigDict(frozen=True)

    dependencies: tuple[DeclaredDependency, ...] = ()

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, source: str) -> "VersionDetails":
        try:
            return cls(dependencies=tuple(DeclaredDependency(**item) for item in raw.get("dependencies", [])))
        except (ValidationError, TypeError) as exc:
            raise ConfigurationError(f"Invalid dependency manifest '{source}': {exc}") from exc

    @classmethod
    def parse(cls, text: str, *, source: str = "<memory>") -> "VersionDetails":
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(f"Dependency manifest '{source}' is not valid TOML: {exc}") from exc
        return cls.from_raw(data, source=source)

    def by_mapping(self) -> dict[str, DeclaredDependency]:
        """Return the first declared dependency for each mapping, preserving declaration order."""

        result: dict[str, DeclaredDependency] = {}
        for dependency in self.dependencies:
            result.setdefault(dependency.mapping_name, dependency)
        return result
