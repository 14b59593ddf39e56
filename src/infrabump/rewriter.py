"""
Write approved version updates back to their source files.

Each rewrite replaces a whole file atomically: the new content goes to a
temporary file in the same directory which then replaces the original.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .dependency import ChartSource, Dependency, ModuleSource
from .error_handling import RewriteError
from .structured_logging import get_rewriter_logger
from .versioning import render_constraint, strip_v_prefix, versions_match


def atomic_write(file_path: Path, content: str) -> None:
    """
    Replace ``file_path`` with ``content`` in one step.

    Raises:
        OSError: If the temporary file cannot be written or moved into place
    """
    file_path = Path(file_path)
    fd, tmp_name = tempfile.mkstemp(
        dir=file_path.parent, prefix=f".{file_path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        if file_path.exists():
            os.chmod(tmp_name, file_path.stat().st_mode & 0o7777)
        os.replace(tmp_name, file_path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


# Attribute names must start at a word boundary, not inside cluster_version etc.
ATTRIBUTE_START = r"(?<![\w-])"


def _module_version_patterns(source: str, label: Optional[str]) -> List["re.Pattern[str]"]:
    header = rf'module\s+"{re.escape(label)}"' if label else r'module\s+"[^"]+"'
    source_part = rf'{ATTRIBUTE_START}source\s*=\s*"{re.escape(source)}"'
    return [
        # source before version, the usual layout
        re.compile(
            rf'({header}\s*\{{[^}}]*?{source_part}[^}}]*?{ATTRIBUTE_START}version\s*=\s*")([^"]*)(")',
            re.MULTILINE,
        ),
        re.compile(
            rf'({header}\s*\{{[^}}]*?{ATTRIBUTE_START}version\s*=\s*")([^"]*)("[^}}]*?{source_part})',
            re.MULTILINE,
        ),
    ]


def update_terraform_content(
    content: str,
    source: str,
    old_constraint: str,
    new_version: str,
    label: Optional[str] = None,
) -> str:
    """
    Return ``content`` with the version of one module block replaced.

    The first block whose ``source`` equals ``source`` (and whose label is
    ``label``, when given) gets its quoted version rewritten, keeping the
    ``~>``, ``>=`` or ``>`` operator of ``old_constraint``.

    Raises:
        RewriteError: If no such block exists or it has nested braces between
            its ``source`` and ``version`` assignments
    """
    new_constraint = render_constraint(old_constraint, new_version)

    for pattern in _module_version_patterns(source, label):
        updated, count = pattern.subn(
            lambda m: f"{m.group(1)}{new_constraint}{m.group(3)}", content, count=1
        )
        if count:
            return updated

    raise RewriteError(
        f"No module block with source '{source}' and a version assignment found",
        details={"source": source, "module_label": label},
    )


def update_terraform_module(
    file_path: Path,
    source: str,
    old_constraint: str,
    new_version: str,
    label: Optional[str] = None,
) -> None:
    """Rewrite one module's version constraint in a ``.tf`` file."""
    file_path = Path(file_path)
    try:
        content = file_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise RewriteError(f"Failed to read {file_path}") from e

    updated = update_terraform_content(content, source, old_constraint, new_version, label)

    try:
        atomic_write(file_path, updated)
    except OSError as e:
        raise RewriteError(f"Failed to write {file_path}") from e


def _cascaded_version(parent_version: str, new_version: str) -> str:
    """New parent version in the parent's own ``v`` style."""
    prefix = "v" if parent_version.startswith("v") else ""
    return f"{prefix}{strip_v_prefix(new_version)}"


def update_chart_document(
    document: Dict[str, Any],
    chart_name: str,
    old_version: str,
    new_version: str,
    new_app_version: Optional[str] = None,
) -> List[str]:
    """
    Apply a dependency update to a parsed Chart.yaml document in place.

    The chart's own ``version`` follows the dependency when it equalled the
    old dependency version, and so does ``appVersion`` when a new app version
    is known.

    Returns:
        List[str]: The top-level fields that were cascaded

    Raises:
        RewriteError: If the document has no dependency named ``chart_name``
    """
    entries = document.get("dependencies")
    matched = False
    if isinstance(entries, list):
        for entry in entries:
            if isinstance(entry, dict) and str(entry.get("name")) == chart_name:
                entry["version"] = new_version
                matched = True

    if not matched:
        raise RewriteError(f"Dependency '{chart_name}' not found in Chart.yaml")

    cascaded = []
    parent_version = document.get("version")
    if parent_version is not None and versions_match(str(parent_version), old_version):
        document["version"] = _cascaded_version(str(parent_version), new_version)
        cascaded.append("version")

    app_version = document.get("appVersion")
    if (
        new_app_version
        and app_version is not None
        and versions_match(str(app_version), old_version)
    ):
        document["appVersion"] = new_app_version
        cascaded.append("appVersion")

    return cascaded


def update_helm_chart(
    chart_file: Path,
    chart_name: str,
    old_version: str,
    new_version: str,
    new_app_version: Optional[str] = None,
) -> List[str]:
    """
    Rewrite a dependency version in Chart.yaml.

    Comments and formatting of the original file are not preserved.

    Returns:
        List[str]: The top-level fields that were cascaded
    """
    chart_file = Path(chart_file)
    try:
        with open(chart_file, encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except (OSError, UnicodeDecodeError) as e:
        raise RewriteError(f"Failed to read {chart_file}") from e
    except yaml.YAMLError as e:
        raise RewriteError(f"Failed to parse {chart_file}") from e

    if not isinstance(document, dict):
        raise RewriteError(f"Empty or invalid Chart.yaml: {chart_file}")

    cascaded = update_chart_document(
        document, chart_name, old_version, new_version, new_app_version
    )

    content = yaml.safe_dump(
        document, sort_keys=False, default_flow_style=False, allow_unicode=True
    )
    try:
        atomic_write(chart_file, content)
    except OSError as e:
        raise RewriteError(f"Failed to write {chart_file}") from e

    return cascaded


def apply_update(dependency: Dependency) -> None:
    """
    Write a resolved dependency's latest version to its declaring file.

    Raises:
        RewriteError: Naming the dependency, if it cannot be applied
    """
    if not dependency.is_updatable:
        raise RewriteError(f"Failed to update {dependency.name}: no newer version resolved")

    logger = get_rewriter_logger()
    kind = dependency.kind
    file_path = Path(dependency.location.file_path)

    try:
        if isinstance(kind, ModuleSource):
            update_terraform_module(
                file_path,
                kind.source,
                kind.constraint,
                dependency.latest_version,
                label=dependency.name,
            )
            cascaded: List[str] = []
        elif isinstance(kind, ChartSource):
            cascaded = update_helm_chart(
                file_path,
                dependency.name,
                dependency.current_version,
                dependency.latest_version,
                dependency.latest_app_version,
            )
        else:
            raise TypeError(f"Unknown dependency kind: {type(kind).__name__}")
    except RewriteError as e:
        logger.error(
            "dependency_update_failed",
            dependency=dependency.name,
            file_path=str(file_path),
            error=str(e),
        )
        raise RewriteError(f"Failed to update {dependency.name}: {e}") from e

    logger.info(
        "dependency_updated",
        dependency=dependency.name,
        file_path=str(file_path),
        from_version=dependency.current_version,
        to_version=dependency.latest_version,
        cascaded=cascaded,
    )
