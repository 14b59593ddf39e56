"""
Declaration scanners for Terraform modules and Helm chart dependencies.

Scanners turn a project directory into unresolved Dependency records. They do
no network I/O: resolution is the orchestrator's job.
"""

import re
from pathlib import Path
from typing import List

import yaml

from .cli_config import BumpConfig
from .dependency import ChartSource, Dependency, ModuleSource, SourceLocation
from .discovery import (
    CHART_MANIFEST,
    TERRAFORM_EXTENSION,
    IgnoreRules,
    Technology,
    walk_tree,
)
from .error_handling import ScanError, log_parsing_error
from .structured_logging import get_scanner_logger
from .versioning import extract_version_from_constraint

# A module block runs from its header to the first line that is exactly "}"
MODULE_BLOCK_PATTERN = re.compile(r'module\s+"([^"]+)"\s*\{(.*?)^\}$', re.MULTILINE | re.DOTALL)
# The attribute name must not be the tail of a longer one such as cluster_version
SOURCE_PATTERN = re.compile(r'(?<![\w-])source\s*=\s*"([^"]+)"')
VERSION_PATTERN = re.compile(r'(?<![\w-])version\s*=\s*"([^"]+)"')

# Sources Terraform fetches from somewhere other than the module registry
NON_REGISTRY_PREFIXES = ("./", "../", "/", "github.com/", "bitbucket.org/")


def find_line_number(content: str, needle: str) -> int:
    """1-based number of the first line containing ``needle``, or 1."""
    for index, line in enumerate(content.splitlines()):
        if needle in line:
            return index + 1
    return 1


def is_registry_source(source: str) -> bool:
    """
    Whether a module source is a ``namespace/name/provider`` registry address.

    A ``//submodule`` suffix is allowed. Local paths, VCS and URL sources are
    not.
    """
    if "::" in source or "://" in source or source.startswith(NON_REGISTRY_PREFIXES):
        return False

    registry_path = source.split("//", 1)[0]
    parts = registry_path.split("/")
    return len(parts) == 3 and all(parts)


def parse_terraform_modules(content: str, file_path: str) -> List[Dependency]:
    """
    Extract registry module declarations from the text of one ``.tf`` file.

    Blocks missing a ``source`` or ``version`` assignment, or whose source is
    not a registry address, are skipped.
    """
    logger = get_scanner_logger()
    dependencies = []

    for match in MODULE_BLOCK_PATTERN.finditer(content):
        label, block = match.group(1), match.group(2)

        source_match = SOURCE_PATTERN.search(block)
        version_match = VERSION_PATTERN.search(block)
        if source_match is None or version_match is None:
            continue

        source = source_match.group(1)
        constraint = version_match.group(1)
        if not is_registry_source(source):
            logger.debug("module_source_skipped", dependency=label, source=source)
            continue

        dependencies.append(
            Dependency(
                name=label,
                current_version=extract_version_from_constraint(constraint),
                kind=ModuleSource(source=source, constraint=constraint),
                location=SourceLocation(
                    file_path, find_line_number(content, f'module "{label}"')
                ),
            )
        )

    return dependencies


def _required_field(entry: dict, field: str, chart_file: str) -> str:
    value = entry.get(field)
    if value is None or isinstance(value, (dict, list)):
        raise ScanError(f"Dependency missing {field} in {chart_file}")
    return str(value)


def parse_chart_dependencies(content: str, file_path: str) -> List[Dependency]:
    """
    Extract the ``dependencies`` list of a Chart.yaml document.

    Local (``file://``) dependencies come back already resolved to their own
    version: they are never looked up remotely.

    Raises:
        ScanError: If the document is malformed or an entry lacks
            ``name``, ``version`` or ``repository``
    """
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ScanError(f"Failed to parse {file_path}") from e

    if document is None:
        raise ScanError(f"Empty {CHART_MANIFEST}: {file_path}")
    if not isinstance(document, dict):
        return []

    entries = document.get("dependencies")
    if not isinstance(entries, list):
        return []

    dependencies = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ScanError(f"Invalid dependency entry in {file_path}")

        name = _required_field(entry, "name", file_path)
        version = _required_field(entry, "version", file_path)
        repository = _required_field(entry, "repository", file_path)

        dependency = Dependency(
            name=name,
            current_version=version,
            kind=ChartSource(repository=repository),
            location=SourceLocation(file_path, find_line_number(content, f"name: {name}")),
        )
        if dependency.kind.is_local:
            dependency = dependency.resolved(version)
        dependencies.append(dependency)

    return dependencies


class TerraformScanner:
    """Scans every ``.tf`` file under a project, honoring ignore files."""

    technology = Technology.TERRAFORM

    def __init__(self, config: BumpConfig):
        self.config = config

    def find_source_files(self, project_path: Path) -> List[Path]:
        rules = IgnoreRules.for_path(project_path, enabled=not self.config.bump.no_ignore)
        files = []
        for directory, _depth, _dirnames, filenames in walk_tree(project_path, rules):
            files.extend(
                directory / name for name in filenames if name.endswith(TERRAFORM_EXTENSION)
            )
        return files

    def scan(self, project_path: Path) -> List[Dependency]:
        """
        Scan a Terraform project.

        Raises:
            ScanError: If a source file cannot be read
        """
        logger = get_scanner_logger()
        dependencies = []

        for tf_file in self.find_source_files(project_path):
            logger.debug("file_scanning", file_path=str(tf_file))
            try:
                content = tf_file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                log_parsing_error(
                    "Failed to read Terraform file",
                    "scanners",
                    "scan",
                    file_path=str(tf_file),
                    exception=e,
                )
                raise ScanError(f"Failed to read {tf_file}") from e

            dependencies.extend(parse_terraform_modules(content, str(tf_file)))

        return dependencies


class HelmScanner:
    """Scans the Chart.yaml at the root of a chart directory."""

    technology = Technology.HELM

    def __init__(self, config: BumpConfig):
        self.config = config

    def scan(self, project_path: Path) -> List[Dependency]:
        """
        Scan a Helm chart.

        Raises:
            ScanError: If Chart.yaml cannot be read or parsed
        """
        chart_file = project_path / CHART_MANIFEST
        if not chart_file.exists():
            return []

        get_scanner_logger().debug("file_scanning", file_path=str(chart_file))
        try:
            content = chart_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ScanError(f"Failed to read {chart_file}") from e

        try:
            return parse_chart_dependencies(content, str(chart_file))
        except ScanError as e:
            log_parsing_error(
                str(e), "scanners", "scan", file_path=str(chart_file), exception=e.__cause__
            )
            raise


def get_scanner(technology: Technology, config: BumpConfig):
    """
    Factory function returning the scanner for a technology.

    Raises:
        ValueError: If the technology has no scanner
    """
    if technology is Technology.TERRAFORM:
        return TerraformScanner(config)
    elif technology is Technology.HELM:
        return HelmScanner(config)
    else:
        raise ValueError(f"Unsupported technology: {technology}")
