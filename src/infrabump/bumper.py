"""
Bump orchestration: discover → scan → resolve → select → apply.

Projects are processed one after another and dependencies are resolved
sequentially through the resolution cache, so each distinct registry key
costs at most one network lookup per run.
"""

import time
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx

from .cache_manager import ResolutionCache
from .cli_config import BumpConfig
from .dependency import Dependency
from .discovery import Project, detect_project, discover_projects
from .error_handling import BumpError, RewriteError, get_error_handler
from .registry_clients import (
    BaseRegistryClient,
    RegistryCheckResult,
    get_registry_client,
    registry_type_for,
)
from .rewriter import apply_update
from .scanners import get_scanner
from .structured_logging import clear_run_context, get_bumper_logger, set_run_context

# Receives the updatable candidates and the pre-selected subset, returns the approved ones
Selector = Callable[[List[Dependency], List[Dependency]], List[Dependency]]


def select_all(candidates: List[Dependency], preselected: List[Dependency]) -> List[Dependency]:
    """Approve every candidate."""
    return list(candidates)


def select_preselected(
    candidates: List[Dependency], preselected: List[Dependency]
) -> List[Dependency]:
    """Approve only what was pre-selected (the single candidate, if there is one)."""
    return list(preselected)


class BumpStatus(Enum):
    """How a bump run ended."""

    NO_PROJECTS = "no_projects"
    NO_DEPENDENCIES = "no_dependencies"
    ALL_FAILED = "all_failed"
    UP_TO_DATE = "up_to_date"
    NOTHING_SELECTED = "nothing_selected"
    UPDATED = "updated"
    UPDATE_FAILED = "update_failed"


@dataclass(frozen=True)
class ProjectError:
    """A project whose scan failed and contributed no dependencies."""

    project: Project
    error: BumpError


@dataclass
class BumpReport:
    """Everything collected by a run before selection."""

    root_path: str
    projects: List[Project] = field(default_factory=list)
    dependencies: List[Dependency] = field(default_factory=list)
    project_errors: List[ProjectError] = field(default_factory=list)
    cache_stats: Dict[str, Any] = field(default_factory=dict)
    cache_entries: List[Dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def errored(self) -> List[Dependency]:
        return [d for d in self.dependencies if d.is_error]

    @property
    def up_to_date(self) -> List[Dependency]:
        return [d for d in self.dependencies if d.is_up_to_date]

    @property
    def updatable(self) -> List[Dependency]:
        return [d for d in self.dependencies if d.is_updatable]

    @property
    def all_failed(self) -> bool:
        """True when dependencies were found and every one of them failed to resolve."""
        return bool(self.dependencies) and all(d.is_error for d in self.dependencies)


@dataclass
class ApplyResult:
    """
    Outcome of applying a batch of approved updates.

    Updates are applied in order and the batch stops at the first failure:
    earlier writes stay on disk, later ones are not attempted.
    """

    applied: List[Dependency] = field(default_factory=list)
    failed: Optional[Dependency] = None
    error: Optional[RewriteError] = None
    not_attempted: List[Dependency] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed is None


@dataclass
class BumpOutcome:
    """Final result of ``run_bump``."""

    status: BumpStatus
    report: BumpReport
    selected: List[Dependency] = field(default_factory=list)
    apply_result: Optional[ApplyResult] = None

    @property
    def dependencies(self) -> List[Dependency]:
        return self.report.dependencies

    @property
    def applied_count(self) -> int:
        return len(self.apply_result.applied) if self.apply_result else 0

    @property
    def exit_code(self) -> int:
        if self.status in (BumpStatus.ALL_FAILED, BumpStatus.UPDATE_FAILED):
            return 1
        if self.status is BumpStatus.NO_DEPENDENCIES and self.report.project_errors:
            return 1
        return 0


class DependencyBumper:
    """
    Drives scanning and cache-aware resolution for one run.

    Use as an async context manager: registry clients are opened on first
    use and closed on exit.
    """

    def __init__(
        self,
        config: BumpConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache: Optional[ResolutionCache] = None,
    ):
        self.config = config
        self.transport = transport
        self.cache = cache if cache is not None else ResolutionCache()
        self._clients: Dict[str, BaseRegistryClient] = {}
        self._exit_stack: Optional[AsyncExitStack] = None

    async def __aenter__(self):
        self._exit_stack = AsyncExitStack()
        await self._exit_stack.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
            self._exit_stack = None
        self._clients.clear()

    async def _client_for(self, dependency: Dependency) -> BaseRegistryClient:
        registry_type = registry_type_for(dependency)
        if registry_type not in self._clients:
            if self._exit_stack is None:
                raise RuntimeError("DependencyBumper must be used as an async context manager")
            client = get_registry_client(registry_type, self.config, self.transport)
            self._clients[registry_type] = await self._exit_stack.enter_async_context(client)
        return self._clients[registry_type]

    def discover(self, path: Path, recursive: bool = False) -> List[Project]:
        """
        Find the projects to scan.

        Raises:
            ScanError: In single mode, if no unique project can be detected
        """
        if recursive:
            return discover_projects(path, self.config)
        return [detect_project(path)]

    def scan_project(self, project: Project) -> List[Dependency]:
        """Scan one project for unresolved dependencies."""
        logger = get_bumper_logger()
        logger.info(
            "project_scan_started", path=str(project.path), technology=str(project.technology)
        )
        dependencies = get_scanner(project.technology, self.config).scan(project.path)
        logger.info(
            "project_scan_completed",
            path=str(project.path),
            dependency_count=len(dependencies),
        )
        return dependencies

    async def resolve(self, dependency: Dependency) -> Dependency:
        """
        Resolve one dependency through the cache.

        Lookup failures come back as a failed dependency, never as an
        exception. Dependencies without a cache key (local charts) are
        returned unchanged.
        """
        cache_key = dependency.cache_key
        if cache_key is None:
            return dependency

        logger = get_bumper_logger()
        result = self.cache.get(cache_key)
        if result is not None:
            logger.debug("resolution_cache_hit", cache_key=cache_key, dependency=dependency.name)
        else:
            client = await self._client_for(dependency)
            result = await client.fetch_latest(dependency)
            self.cache.put(cache_key, result)

        return self._apply_result(dependency, result)

    @staticmethod
    def _apply_result(dependency: Dependency, result: RegistryCheckResult) -> Dependency:
        logger = get_bumper_logger()
        if result.error is not None or result.version is None:
            error = result.error or BumpError("Registry returned no version")
            logger.warning(
                "dependency_resolution_failed",
                dependency=dependency.name,
                location=str(dependency.location),
                error=str(error),
            )
            return dependency.failed(error)

        logger.debug(
            "dependency_resolved",
            dependency=dependency.name,
            current_version=dependency.current_version,
            latest_version=result.version,
        )
        return dependency.resolved(result.version, result.app_version)

    async def collect(self, path: Path, recursive: bool = False) -> BumpReport:
        """
        Discover, scan and resolve every dependency under ``path``.

        A project whose scan fails is recorded in ``project_errors`` and the
        run continues with the other projects.
        """
        start_time = time.time()
        path = Path(path)
        report = BumpReport(root_path=str(path))
        report.projects = self.discover(path, recursive)

        for project in report.projects:
            try:
                dependencies = self.scan_project(project)
            except BumpError as e:
                get_error_handler().error(
                    e.category,
                    f"Failed to scan project: {e}",
                    "bumper",
                    "collect",
                    exception=e,
                    details={"path": str(project.path)},
                )
                report.project_errors.append(ProjectError(project, e))
                continue

            for dependency in dependencies:
                report.dependencies.append(await self.resolve(dependency))

        report.cache_stats = self.cache.get_stats()
        report.cache_entries = self.cache.get_entries_info()
        report.duration_ms = int((time.time() - start_time) * 1000)
        return report

    def apply(self, dependencies: List[Dependency]) -> ApplyResult:
        """Apply approved updates in order, stopping at the first failure."""
        result = ApplyResult()
        for index, dependency in enumerate(dependencies):
            try:
                apply_update(dependency)
            except RewriteError as e:
                result.failed = dependency
                result.error = e
                result.not_attempted = list(dependencies[index + 1:])
                get_bumper_logger().error(
                    "apply_batch_stopped",
                    dependency=dependency.name,
                    error=str(e),
                    not_attempted=len(result.not_attempted),
                )
                break
            result.applied.append(dependency)
        return result


async def run_bump(
    path: Path,
    config: BumpConfig,
    selector: Selector,
    recursive: bool = False,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    on_report: Optional[Callable[[BumpReport], None]] = None,
) -> BumpOutcome:
    """
    Run a complete bump over ``path``.

    Args:
        path: Project directory, or the root of a recursive scan
        config: Run configuration
        selector: Approves the updates to apply
        recursive: Scan every project under ``path``
        transport: Optional httpx transport, mainly for tests
        on_report: Called with the collected report before any selection

    Returns:
        BumpOutcome describing where the run stopped
    """
    logger = get_bumper_logger()
    set_run_context(run_id=uuid.uuid4().hex[:12], root_path=str(path), recursive=recursive)
    try:
        async with DependencyBumper(config, transport) as bumper:
            report = await bumper.collect(Path(path), recursive)

        logger.info(
            "bump_collected",
            project_count=len(report.projects),
            dependency_count=len(report.dependencies),
            error_count=len(report.errored),
            updatable_count=len(report.updatable),
            cache_hits=report.cache_stats.get("hits", 0),
        )
        if on_report is not None:
            on_report(report)

        if not report.projects:
            return BumpOutcome(BumpStatus.NO_PROJECTS, report)
        if not report.dependencies:
            return BumpOutcome(BumpStatus.NO_DEPENDENCIES, report)
        if report.all_failed:
            return BumpOutcome(BumpStatus.ALL_FAILED, report)

        candidates = report.updatable
        if not candidates:
            return BumpOutcome(BumpStatus.UP_TO_DATE, report)

        preselected = list(candidates) if len(candidates) == 1 else []
        approved = selector(candidates, preselected)
        selected = [d for d in candidates if d in approved]
        if not selected:
            return BumpOutcome(BumpStatus.NOTHING_SELECTED, report)

        apply_result = bumper.apply(selected)
        status = BumpStatus.UPDATED if apply_result.success else BumpStatus.UPDATE_FAILED
        logger.info(
            "bump_completed",
            status=status.value,
            applied_count=len(apply_result.applied),
        )
        return BumpOutcome(status, report, selected, apply_result)
    finally:
        clear_run_context()
