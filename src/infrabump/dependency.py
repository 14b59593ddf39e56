"""Unified records for version-pinned dependencies found in IaC sources."""

from dataclasses import dataclass, replace
from typing import Optional, Union

from .error_handling import BumpError

ERROR_PREFIX = "ERROR: "
LOCAL_REPOSITORY_SCHEME = "file://"
OCI_REPOSITORY_SCHEME = "oci://"


@dataclass(frozen=True)
class ModuleSource:
    """A Terraform module declaration: registry source plus original constraint text."""

    source: str
    constraint: str

    @property
    def registry_path(self) -> str:
        """The ``namespace/name/provider`` part of the source, without any submodule."""
        return self.source.split("//", 1)[0]

    @property
    def submodule(self) -> Optional[str]:
        parts = self.source.split("//", 1)
        return parts[1] if len(parts) == 2 else None


@dataclass(frozen=True)
class ChartSource:
    """A Helm chart dependency: the repository it is pulled from."""

    repository: str

    @property
    def is_local(self) -> bool:
        return self.repository.startswith(LOCAL_REPOSITORY_SCHEME)

    @property
    def is_oci(self) -> bool:
        return self.repository.startswith(OCI_REPOSITORY_SCHEME)


DependencyKind = Union[ModuleSource, ChartSource]


@dataclass(frozen=True)
class SourceLocation:
    """Best-effort location of a declaration (1-based line number)."""

    file_path: str
    line_number: int = 1

    def __str__(self) -> str:
        return f"{self.file_path}:{self.line_number}"


@dataclass(frozen=True)
class Dependency:
    """A unified internal data structure to represent one discovered declaration."""

    name: str
    current_version: str
    kind: DependencyKind
    location: SourceLocation
    latest_version: Optional[str] = None
    latest_app_version: Optional[str] = None
    error: Optional[BumpError] = None

    @property
    def is_resolved(self) -> bool:
        return self.latest_version is not None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def is_up_to_date(self) -> bool:
        return not self.is_error and self.current_version == self.latest_version

    @property
    def is_updatable(self) -> bool:
        return (
            self.is_resolved
            and not self.is_error
            and self.current_version != self.latest_version
        )

    @property
    def ecosystem(self) -> str:
        if isinstance(self.kind, ModuleSource):
            return "terraform"
        if isinstance(self.kind, ChartSource):
            return "helm"
        raise TypeError(f"Unknown dependency kind: {type(self.kind).__name__}")

    @property
    def cache_key(self) -> Optional[str]:
        """
        Key identifying the registry lookup for this record.

        Records sharing a key are resolved over the network once per run.
        Local charts never hit the network and have no key.
        """
        if isinstance(self.kind, ModuleSource):
            return f"tf:{self.kind.source}"
        if isinstance(self.kind, ChartSource):
            if self.kind.is_local:
                return None
            return f"helm:{self.kind.repository}:{self.name}"
        raise TypeError(f"Unknown dependency kind: {type(self.kind).__name__}")

    def resolved(self, latest_version: str, latest_app_version: Optional[str] = None) -> "Dependency":
        """Return a copy carrying the resolved latest version."""
        return replace(
            self,
            latest_version=latest_version,
            latest_app_version=latest_app_version,
            error=None,
        )

    def failed(self, error: BumpError) -> "Dependency":
        """Return a copy carrying the error sentinel instead of a version."""
        return replace(
            self,
            latest_version=f"{ERROR_PREFIX}{error}",
            latest_app_version=None,
            error=error,
        )

    def display_name(self) -> str:
        return f"{self.name} ({self.location}) {self.current_version} → {self.latest_version}"
