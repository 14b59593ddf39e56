"""
Semantic version selection and constraint handling.

Registry responses are lists of raw version or tag strings. Selecting the
latest one must follow semantic-version precedence (``1.10.0 > 1.9.0``,
``1.0.0 > 1.0.0-rc.1``), never string order.
"""

import re
from typing import Iterable, List, Optional

import semver

from .error_handling import ParseError

CONSTRAINT_VERSION_PATTERN = re.compile(r"[0-9]+\.[0-9]+(?:\.[0-9]+)?")

# Checked in order: ">=" must win over ">"
CONSTRAINT_OPERATORS = ("~>", ">=", ">")


def strip_v_prefix(version: str) -> str:
    """Remove one leading ``v`` from a version string."""
    return version[1:] if version.startswith("v") else version


def versions_match(left: Optional[str], right: Optional[str]) -> bool:
    """Compare two version strings, ignoring one leading ``v`` on either side."""
    if left is None or right is None:
        return False
    return strip_v_prefix(str(left)) == strip_v_prefix(str(right))


def parse_version(raw: str) -> Optional[semver.Version]:
    """
    Parse a raw tag or version string.

    Args:
        raw: Version text, optionally prefixed with ``v``

    Returns:
        The parsed version, or None if the text is not a semantic version
    """
    if not isinstance(raw, str):
        return None
    try:
        return semver.Version.parse(strip_v_prefix(raw.strip()))
    except (ValueError, TypeError):
        return None


def is_prerelease(version: semver.Version) -> bool:
    return bool(version.prerelease)


def filter_versions(raw_versions: Iterable[str], include_prereleases: bool = False) -> List[semver.Version]:
    """Parse raw versions, silently dropping unparsable ones and, unless asked, prereleases."""
    versions = []
    for raw in raw_versions:
        parsed = parse_version(raw)
        if parsed is None:
            continue
        if not include_prereleases and is_prerelease(parsed):
            continue
        versions.append(parsed)
    return versions


def select_latest(raw_versions: List[str], include_prereleases: bool = False) -> str:
    """
    Select the highest semantic version from a list of raw strings.

    The ``v`` prefix is re-attached to the result if and only if the first
    raw entry carries one, preserving the repository's authoring convention.

    Args:
        raw_versions: Versions or tags as returned by a registry
        include_prereleases: Keep versions with a prerelease component

    Returns:
        str: The latest version

    Raises:
        ParseError: If no valid version remains after filtering
    """
    candidates = filter_versions(raw_versions, include_prereleases)
    if not candidates:
        raise ParseError("No valid versions found")

    latest = max(candidates)
    prefix = "v" if raw_versions and str(raw_versions[0]).startswith("v") else ""
    return f"{prefix}{latest}"


def extract_version_from_constraint(constraint: str) -> str:
    """
    Extract a comparable version number from a constraint.

    ``"~> 5.0"`` gives ``"5.0"``, ``">= 4.0.0"`` gives ``"4.0.0"``. Text without
    any ``number.number`` part is returned unchanged.
    """
    match = CONSTRAINT_VERSION_PATTERN.search(constraint)
    return match.group(0) if match else constraint


def constraint_operator(constraint: str) -> str:
    """Return the leading ``~>``, ``>=`` or ``>`` operator, or an empty string."""
    stripped = constraint.strip()
    for operator in CONSTRAINT_OPERATORS:
        if stripped.startswith(operator):
            return operator
    return ""


def render_constraint(old_constraint: str, new_version: str) -> str:
    """Rebuild a constraint around a new version, keeping the original operator."""
    operator = constraint_operator(old_constraint)
    if operator:
        return f"{operator} {new_version}"
    return new_version
