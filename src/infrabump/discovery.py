"""
Project discovery for Terraform and Helm sources.

Finds the directories a bump run should scan: either the given path (or its
single detected child) or, in recursive mode, every directory under the root
that directly carries a technology marker. Discovery honors ``.gitignore``
files and ``.git/info/exclude`` unless ignore handling is turned off.
"""

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Pattern, Set, Tuple

from .cli_config import BumpConfig
from .error_handling import ScanError
from .structured_logging import get_scanner_logger

CHART_MANIFEST = "Chart.yaml"
TERRAFORM_DIR_NAME = "terraform"
TERRAFORM_EXTENSION = ".tf"


class Technology(Enum):
    """Infrastructure technologies whose dependencies can be bumped."""

    TERRAFORM = "terraform"
    HELM = "helm"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Project:
    """A directory recognized as a Terraform or Helm project."""

    technology: Technology
    path: Path


def _glob_to_regex(pattern: str) -> Pattern[str]:
    """Translate a gitignore glob into a regex where ``*`` never crosses ``/``."""
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif char == "*":
            parts.append("[^/]*")
            i += 1
        elif char == "?":
            parts.append("[^/]")
            i += 1
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape(char))
                i += 1
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                parts.append(f"[{body}]")
                i = end + 1
        else:
            parts.append(re.escape(char))
            i += 1
    return re.compile("".join(parts) + r"\Z")


@dataclass(frozen=True)
class IgnorePattern:
    """One rule from an ignore file, relative to the directory holding that file."""

    base: Path
    regex: Pattern[str]
    negated: bool = False
    directory_only: bool = False
    anchored: bool = False

    @classmethod
    def parse(cls, line: str, base: Path) -> Optional["IgnorePattern"]:
        """Parse an ignore-file line; comments and blank lines give None."""
        line = line.rstrip("\n").rstrip()
        if not line or line.startswith("#"):
            return None

        negated = line.startswith("!")
        if negated:
            line = line[1:]
        elif line.startswith("\\"):
            line = line[1:]

        directory_only = line.endswith("/")
        line = line.rstrip("/")
        if not line:
            return None

        # A slash anywhere but the end anchors the pattern to its base directory
        anchored = "/" in line
        line = line.lstrip("/")

        return cls(
            base=base,
            regex=_glob_to_regex(line),
            negated=negated,
            directory_only=directory_only,
            anchored=anchored,
        )

    def matches(self, path: Path, is_dir: bool) -> bool:
        if self.directory_only and not is_dir:
            return False
        try:
            relative = path.relative_to(self.base).as_posix()
        except ValueError:
            return False
        if relative in ("", "."):
            return False
        if self.anchored:
            return bool(self.regex.match(relative))
        return bool(self.regex.match(path.name))


class IgnoreRules:
    """
    Gitignore-style rules collected while walking a tree.

    Rules from deeper ignore files are consulted after shallower ones, and
    the last matching rule decides, so a nested ``!pattern`` can re-include
    what a parent excluded.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.patterns: List[IgnorePattern] = []
        self._loaded: Set[Path] = set()

    @classmethod
    def for_path(cls, path: Path, enabled: bool = True) -> "IgnoreRules":
        """
        Build rules for a walk starting at ``path``.

        Ignore files of the enclosing git repository (its ``.git/info/exclude``
        and every ``.gitignore`` from the repository root down to ``path``)
        are loaded up front.
        """
        rules = cls(enabled)
        if not enabled:
            return rules

        path = path.resolve()
        chain = [path, *path.parents]
        repo_root = next((p for p in chain if (p / ".git").exists()), None)

        if repo_root is None:
            rules.load_directory(path)
            return rules

        rules.load_file(repo_root / ".git" / "info" / "exclude", repo_root)
        for directory in reversed(chain[: chain.index(repo_root) + 1]):
            rules.load_directory(directory)
        return rules

    def load_file(self, ignore_file: Path, base: Path) -> None:
        try:
            with open(ignore_file, encoding="utf-8", errors="replace") as f:
                lines = f.readlines()
        except OSError:
            return

        for line in lines:
            pattern = IgnorePattern.parse(line, base)
            if pattern is not None:
                self.patterns.append(pattern)

    def load_directory(self, directory: Path) -> None:
        """Load ``directory/.gitignore`` once."""
        if not self.enabled or directory in self._loaded:
            return
        self._loaded.add(directory)
        self.load_file(directory / ".gitignore", directory)

    def is_ignored(self, path: Path, is_dir: bool) -> bool:
        if not self.enabled:
            return False
        ignored = False
        for pattern in self.patterns:
            if pattern.matches(path, is_dir):
                ignored = not pattern.negated
        return ignored


def is_hidden(path: Path) -> bool:
    return path.name.startswith(".")


def walk_tree(
    root: Path,
    rules: IgnoreRules,
    max_depth: Optional[int] = None,
) -> Iterator[Tuple[Path, int, List[str], List[str]]]:
    """
    Sorted top-down walk that skips hidden and ignored entries.

    Yields ``(directory, depth, dirnames, filenames)`` like ``os.walk``; the
    caller may prune ``dirnames`` in place. The root has depth 0 and no
    directory deeper than ``max_depth`` is visited.
    """
    root = root.resolve()
    for dirpath, dirnames, filenames in os.walk(root):
        directory = Path(dirpath)
        depth = len(directory.relative_to(root).parts)
        rules.load_directory(directory)

        kept_dirs = []
        for name in sorted(dirnames):
            child = directory / name
            if is_hidden(child) or rules.is_ignored(child, is_dir=True):
                continue
            if max_depth is not None and depth + 1 > max_depth:
                continue
            kept_dirs.append(name)
        dirnames[:] = kept_dirs

        kept_files = [
            name
            for name in sorted(filenames)
            if not is_hidden(directory / name)
            and not rules.is_ignored(directory / name, is_dir=False)
        ]

        yield directory, depth, dirnames, kept_files


def detect_technology_direct(path: Path) -> Optional[Technology]:
    """
    Detect the technology of a directory from its own markers only.

    Markers: a ``Chart.yaml`` file, a directory literally named ``terraform``,
    or ``.tf`` files directly inside. Children are never looked at.
    """
    if not path.is_dir():
        return None

    if (path / CHART_MANIFEST).is_file():
        return Technology.HELM
    if path.name == TERRAFORM_DIR_NAME:
        return Technology.TERRAFORM

    try:
        for entry in os.scandir(path):
            if entry.name.endswith(TERRAFORM_EXTENSION) and entry.is_file():
                return Technology.TERRAFORM
    except OSError:
        return None

    return None


def scan_child_technologies(path: Path) -> List[Project]:
    """Detect projects among the immediate, non-hidden child directories."""
    try:
        children = sorted(p for p in path.iterdir() if p.is_dir() and not is_hidden(p))
    except OSError as e:
        raise ScanError(f"Failed to read directory {path}: {e}") from e

    projects = []
    for child in children:
        technology = detect_technology_direct(child)
        if technology is not None:
            projects.append(Project(technology, child))
    return projects


def detect_project(path: Path) -> Project:
    """
    Detect the single project at ``path``.

    The path itself wins if it carries a marker; otherwise exactly one
    detected child directory is used.

    Raises:
        ScanError: If the path is not a directory, or zero or several
            child projects are found
    """
    if not path.exists():
        raise ScanError(f"Path does not exist: {path}")
    if not path.is_dir():
        raise ScanError(f"Path is not a directory: {path}")

    technology = detect_technology_direct(path)
    if technology is not None:
        return Project(technology, path)

    children = scan_child_technologies(path)
    if not children:
        raise ScanError(f"No Terraform or Helm project detected in {path}")
    if len(children) > 1:
        found = ", ".join(f"{p.path.name} ({p.technology})" for p in children)
        raise ScanError(
            f"Multiple projects detected in {path}: {found}. "
            "Use recursive mode to bump them all."
        )

    get_scanner_logger().info(
        "project_detected_in_child", path=str(children[0].path), technology=str(children[0].technology)
    )
    return children[0]


def _covered_by(directory: Path, projects: List[Project], technology: Technology) -> bool:
    """Whether an earlier project of ``technology`` already contains ``directory``."""
    return any(
        p.technology is technology and p.path in directory.parents for p in projects
    )


def discover_projects(root: Path, config: BumpConfig) -> List[Project]:
    """
    Find every project under ``root``, in deterministic walk order.

    The walk continues below a detected project, but a directory is only
    reported when no enclosing project has the same technology: the Terraform
    scanner already reads nested ``.tf`` files and a chart's ``charts/`` holds
    its own vendored subcharts. A chart below a Terraform root is still found.

    Raises:
        ScanError: If ``root`` is not a readable directory
    """
    if not root.exists():
        raise ScanError(f"Path does not exist: {root}")
    if not root.is_dir():
        raise ScanError(f"Path is not a directory: {root}")

    rules = IgnoreRules.for_path(root, enabled=not config.bump.no_ignore)
    projects: List[Project] = []

    for directory, _depth, _dirnames, _filenames in walk_tree(
        root, rules, max_depth=config.bump.max_depth
    ):
        technology = detect_technology_direct(directory)
        if technology is None or _covered_by(directory, projects, technology):
            continue
        projects.append(Project(technology, directory))

    logger = get_scanner_logger()
    logger.info(
        "projects_discovered",
        terraform_projects=sum(1 for p in projects if p.technology is Technology.TERRAFORM),
        helm_projects=sum(1 for p in projects if p.technology is Technology.HELM),
        max_depth=config.bump.max_depth,
    )
    return projects
