"""
Registry clients for resolving the latest version of a dependency.

Implements clients for the Terraform module registry, HTTP Helm chart
repositories (``index.yaml``) and OCI registries hosting Helm charts,
including bearer token acquisition for the latter.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
import yaml

from .cli_config import BumpConfig
from .dependency import ChartSource, Dependency, ModuleSource
from .error_handling import (
    AuthError,
    BumpError,
    NetworkError,
    ParseError,
    log_credential_error,
    log_network_error,
    sanitize_url,
)
from .structured_logging import get_registry_logger, log_registry_check
from .versioning import select_latest, strip_v_prefix

DOCKER_HUB_REGISTRY = "registry-1.docker.io"
INDEX_FILE_NAME = "index.yaml"


@dataclass(frozen=True)
class RegistryCheckResult:
    """Result of resolving one dependency key against a registry."""

    cache_key: str
    registry_type: str
    version: Optional[str] = None
    app_version: Optional[str] = None
    error: Optional[BumpError] = None
    check_duration_ms: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.version is not None


class OciPathRule(Enum):
    """How the chart name is combined with the repository path of an OCI URL."""

    NEVER_APPEND = "never"
    ALWAYS_APPEND = "always"
    APPEND_IF_MISSING = "if_missing"


# Registry hosts whose chart repositories need the chart name appended.
# Docker Hub: registry-1.docker.io/v2/bitnamicharts/mariadb/tags/list
# ghcr.io: grafana/helm-charts needs the name, prometheus-community/charts/prometheus already has it
OCI_PATH_RULES: Dict[str, OciPathRule] = {
    DOCKER_HUB_REGISTRY: OciPathRule.ALWAYS_APPEND,
    "ghcr.io": OciPathRule.APPEND_IF_MISSING,
}


def parse_oci_url(oci_url: str) -> Tuple[str, str]:
    """
    Split an OCI repository URL into registry host and repository path.

    ``oci://ghcr.io/org/chart`` gives ``("ghcr.io", "org/chart")``.

    Raises:
        ParseError: If the URL is not of the form ``oci://host/path``
    """
    if not oci_url.startswith("oci://"):
        raise ParseError(f"Invalid OCI URL format: {oci_url}")

    parts = oci_url[len("oci://"):].split("/", 1)
    if len(parts) != 2 or not parts[0] or not parts[1].strip("/"):
        raise ParseError(f"Invalid OCI URL format: {oci_url}")

    return parts[0], parts[1].strip("/")


def complete_oci_repository(registry: str, repository: str, chart_name: str) -> str:
    """Apply the per-registry path completion rule to an OCI repository path."""
    rule = OCI_PATH_RULES.get(registry, OciPathRule.NEVER_APPEND)

    if rule is OciPathRule.ALWAYS_APPEND:
        return f"{repository}/{chart_name}"
    if rule is OciPathRule.APPEND_IF_MISSING:
        if repository.split("/")[-1] == chart_name:
            return repository
        return f"{repository}/{chart_name}"
    return repository


def anonymous_token_urls(registry: str, repository: str) -> List[str]:
    """Conventional token endpoints for anonymous pull access, in the order they are tried."""
    scope = f"repository:{repository}:pull"
    if registry == DOCKER_HUB_REGISTRY:
        return [f"https://auth.docker.io/token?service=registry.docker.io&scope={scope}"]
    return [
        f"https://{registry}/token?scope={scope}",
        f"https://{registry}/v2/token?scope={scope}",
    ]


def chart_index_url(repository: str) -> str:
    """Return the ``index.yaml`` URL of an HTTP chart repository."""
    if repository.endswith(f"/{INDEX_FILE_NAME}"):
        return repository
    if repository.endswith("/"):
        return f"{repository}{INDEX_FILE_NAME}"
    return f"{repository}/{INDEX_FILE_NAME}"


class BaseRegistryClient(ABC):
    """
    Base class for registry clients.

    Uses the async context manager pattern for ``httpx.AsyncClient`` resource
    management: the HTTP client is created on context entry and closed on
    exit. Every request shares the configured timeout.
    """

    def __init__(
        self,
        config: BumpConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.timeout = config.network.timeout_seconds
        self.include_prereleases = config.bump.include_prereleases
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None
        self._headers = {"User-Agent": config.network.user_agent}

    async def __aenter__(self):
        """Initialize the HTTP client when entering the context."""
        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            headers=self._headers,
            transport=self.transport,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Clean up the HTTP client when exiting the context."""
        if self.client:
            await self.client.aclose()
            self.client = None

    @abstractmethod
    def get_registry_type(self) -> str:
        """Get the registry type identifier."""

    @abstractmethod
    async def fetch_latest(self, dependency: Dependency) -> RegistryCheckResult:
        """Resolve the latest version for a dependency. Never raises for lookup failures."""

    async def _get(self, url: str, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        """
        GET a URL, turning transport failures and non-2xx answers into NetworkError.

        Raises:
            NetworkError: If the host is unreachable, times out or answers non-2xx
        """
        if self.client is None:
            raise NetworkError(
                "HTTP client not initialized - use within async context manager",
                url=url,
            )

        try:
            response = await self.client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            log_network_error(
                "Registry request timed out", "registry_clients", "_get", url=url, exception=e
            )
            raise NetworkError(
                f"Request to {sanitize_url(url)} timed out after {self.timeout}s", url=url
            ) from e
        except httpx.RequestError as e:
            log_network_error(
                "Registry unreachable", "registry_clients", "_get", url=url, exception=e
            )
            raise NetworkError(f"Failed to reach {sanitize_url(url)}: {e}", url=url) from e

        if not response.is_success:
            log_network_error(
                "Registry returned an error status",
                "registry_clients",
                "_get",
                url=url,
                status_code=response.status_code,
            )
            raise NetworkError(
                f"HTTP {response.status_code} for {sanitize_url(url)}",
                url=url,
                status_code=response.status_code,
            )

        return response

    @staticmethod
    def _json(response: httpx.Response, what: str) -> Any:
        """Decode a JSON body, raising ParseError on malformed content."""
        try:
            return response.json()
        except ValueError as e:
            raise ParseError(f"Failed to parse {what} response as JSON") from e

    def _result(
        self,
        cache_key: str,
        start_time: float,
        version: Optional[str] = None,
        app_version: Optional[str] = None,
        error: Optional[BumpError] = None,
    ) -> RegistryCheckResult:
        duration_ms = int((time.time() - start_time) * 1000)
        log_registry_check(
            cache_key,
            self.get_registry_type(),
            version,
            error=str(error) if error else None,
            response_time_ms=duration_ms,
        )
        return RegistryCheckResult(
            cache_key=cache_key,
            registry_type=self.get_registry_type(),
            version=version,
            app_version=app_version,
            error=error,
            check_duration_ms=duration_ms,
        )


class ModuleRegistryClient(BaseRegistryClient):
    """Client for the Terraform module registry (``/v1/modules/{ns}/{name}/{provider}``)."""

    def __init__(self, config: BumpConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config, transport)
        self.base_url = config.network.module_registry_url.rstrip("/")

    def get_registry_type(self) -> str:
        return "terraform"

    def module_url(self, registry_path: str) -> str:
        parts = registry_path.split("/")
        if len(parts) != 3 or not all(parts):
            raise ParseError(
                f"Module source '{registry_path}' is not of the form namespace/name/provider"
            )
        namespace, name, provider = (quote(part, safe="") for part in parts)
        return f"{self.base_url}/v1/modules/{namespace}/{name}/{provider}"

    async def fetch_versions(self, registry_path: str) -> List[str]:
        """
        Fetch every published version of a module.

        Args:
            registry_path: ``namespace/name/provider``

        Returns:
            List[str]: Raw version strings as published
        """
        url = self.module_url(registry_path)
        get_registry_logger().debug("module_versions_fetch", url=url)

        response = await self._get(url)
        data = self._json(response, "module registry")

        versions = data.get("versions") if isinstance(data, dict) else None
        if not isinstance(versions, list):
            raise ParseError("Module registry response has no 'versions' list")

        return [str(v) for v in versions if isinstance(v, (str, int, float))]

    async def fetch_latest(self, dependency: Dependency) -> RegistryCheckResult:
        if not isinstance(dependency.kind, ModuleSource):
            raise TypeError(f"{dependency.name} is not a Terraform module dependency")

        start_time = time.time()
        cache_key = dependency.cache_key or f"tf:{dependency.kind.source}"
        if dependency.kind.submodule:
            # Submodules are versioned with their parent module
            get_registry_logger().debug(
                "module_submodule_lookup",
                dependency=dependency.name,
                registry_path=dependency.kind.registry_path,
                submodule=dependency.kind.submodule,
            )
        try:
            versions = await self.fetch_versions(dependency.kind.registry_path)
            latest = select_latest(versions, self.include_prereleases)
        except BumpError as e:
            return self._result(cache_key, start_time, error=e)

        return self._result(cache_key, start_time, version=latest)


class ChartIndexClient(BaseRegistryClient):
    """Client for classic HTTP Helm repositories serving an ``index.yaml``."""

    def get_registry_type(self) -> str:
        return "helm"

    async def fetch_versions(
        self, repository: str, chart_name: str
    ) -> Tuple[List[str], Dict[str, Dict[str, Any]]]:
        """
        Fetch the release entries of one chart from a repository index.

        Args:
            repository: Repository URL, with or without ``index.yaml``
            chart_name: Chart to look up in ``entries``

        Returns:
            The raw version strings in index order, and a version to entry lookup
        """
        url = chart_index_url(repository)
        get_registry_logger().debug("chart_index_fetch", url=sanitize_url(url), chart=chart_name)

        response = await self._get(url)
        try:
            document = yaml.safe_load(response.text)
        except yaml.YAMLError as e:
            raise ParseError(f"Failed to parse Helm index YAML from {sanitize_url(url)}") from e

        if not isinstance(document, dict):
            raise ParseError("Helm index is empty or not a mapping")

        entries = document.get("entries")
        chart_entries = entries.get(chart_name) if isinstance(entries, dict) else None
        if chart_entries is None:
            raise ParseError(f"Chart '{chart_name}' not found in repository")
        if not isinstance(chart_entries, list):
            raise ParseError(f"Invalid entries format for chart '{chart_name}'")

        versions: List[str] = []
        version_to_entry: Dict[str, Dict[str, Any]] = {}
        for entry in chart_entries:
            if not isinstance(entry, dict) or entry.get("version") is None:
                continue
            version = str(entry["version"])
            versions.append(version)
            version_to_entry.setdefault(version, entry)

        return versions, version_to_entry

    async def fetch_latest(self, dependency: Dependency) -> RegistryCheckResult:
        if not isinstance(dependency.kind, ChartSource):
            raise TypeError(f"{dependency.name} is not a Helm chart dependency")

        start_time = time.time()
        cache_key = dependency.cache_key or f"helm:{dependency.kind.repository}:{dependency.name}"
        try:
            versions, version_to_entry = await self.fetch_versions(
                dependency.kind.repository, dependency.name
            )
            latest = select_latest(versions, self.include_prereleases)
        except BumpError as e:
            return self._result(cache_key, start_time, error=e)

        entry = version_to_entry.get(latest) or version_to_entry.get(strip_v_prefix(latest))
        app_version = None
        if entry and entry.get("appVersion") is not None:
            app_version = str(entry["appVersion"])

        return self._result(cache_key, start_time, version=latest, app_version=app_version)


class OciTokenProvider:
    """
    Acquires bearer tokens for OCI registries.

    Order: a static token configured for the host, then a configured shell
    command whose stdout is the token, then anonymous token endpoints. Having
    no token at all is not an error: the request proceeds unauthenticated.
    """

    def __init__(self, config: BumpConfig, client: BaseRegistryClient):
        self.config = config
        self.client = client
        self._command_tokens: Dict[str, str] = {}

    async def get_token(self, registry: str, repository: str) -> Optional[str]:
        """
        Return a bearer token for ``registry``, or None to go unauthenticated.

        Raises:
            AuthError: If a configured token command fails or prints nothing
        """
        logger = get_registry_logger()
        auth = self.config.oci_auth_for(registry)

        if auth is not None and auth.token:
            logger.debug("oci_token_source", registry=registry, source="static")
            return auth.token.strip()

        if auth is not None and auth.command:
            if registry not in self._command_tokens:
                logger.debug("oci_token_source", registry=registry, source="command")
                self._command_tokens[registry] = await self._run_token_command(
                    registry, auth.command
                )
            return self._command_tokens[registry]

        return await self._fetch_anonymous_token(registry, repository)

    async def _run_token_command(self, registry: str, command: str) -> str:
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            log_credential_error(
                "Failed to execute token command",
                "registry_clients",
                "_run_token_command",
                registry=registry,
                exception=e,
            )
            raise AuthError(f"Failed to execute token command for '{registry}'") from e

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            error = AuthError(
                f"Token command for '{registry}' failed with exit code "
                f"{process.returncode}: {message}"
            )
            log_credential_error(
                "Token command failed",
                "registry_clients",
                "_run_token_command",
                registry=registry,
                exception=error,
            )
            raise error

        try:
            token = stdout.decode("utf-8").strip()
        except UnicodeDecodeError as e:
            raise AuthError(f"Token command output for '{registry}' is not valid UTF-8") from e

        if not token:
            raise AuthError(f"Token command for '{registry}' produced no token")

        return token

    async def _fetch_anonymous_token(self, registry: str, repository: str) -> Optional[str]:
        logger = get_registry_logger()
        for token_url in anonymous_token_urls(registry, repository):
            logger.debug("oci_anonymous_token_attempt", url=sanitize_url(token_url))
            if self.client.client is None:
                break
            try:
                response = await self.client.client.get(token_url)
                if not response.is_success:
                    continue
                data = response.json()
            except (httpx.HTTPError, ValueError):
                continue

            if isinstance(data, dict):
                token = data.get("token") or data.get("access_token")
                if token:
                    logger.debug("oci_token_source", registry=registry, source="anonymous")
                    return str(token)

        logger.debug("oci_unauthenticated", registry=registry)
        return None


class OciRegistryClient(BaseRegistryClient):
    """Client for Helm charts stored in OCI registries (``/v2/<path>/tags/list``)."""

    def __init__(self, config: BumpConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config, transport)
        self.token_provider = OciTokenProvider(config, self)

    def get_registry_type(self) -> str:
        return "oci"

    async def fetch_versions(self, repository: str, chart_name: str) -> List[str]:
        """
        Fetch the tags of an OCI chart repository.

        Args:
            repository: ``oci://host/path`` URL
            chart_name: Chart name, appended to the path where the registry needs it

        Returns:
            List[str]: Raw tags
        """
        registry, path = parse_oci_url(repository)
        full_repository = complete_oci_repository(registry, path, chart_name)

        token = await self.token_provider.get_token(registry, full_repository)
        headers = {"Authorization": f"Bearer {token}"} if token else None

        url = f"https://{registry}/v2/{full_repository}/tags/list"
        get_registry_logger().debug("oci_tags_fetch", url=url, authenticated=bool(token))

        response = await self._get(url, headers=headers)
        data = self._json(response, "OCI tags")

        if not isinstance(data, dict) or "tags" not in data:
            raise ParseError("OCI tags response has no 'tags' list")
        tags = data["tags"] or []
        if not isinstance(tags, list):
            raise ParseError("OCI tags response has no 'tags' list")

        return [str(tag) for tag in tags]

    async def fetch_latest(self, dependency: Dependency) -> RegistryCheckResult:
        if not isinstance(dependency.kind, ChartSource):
            raise TypeError(f"{dependency.name} is not a Helm chart dependency")

        start_time = time.time()
        cache_key = dependency.cache_key or f"helm:{dependency.kind.repository}:{dependency.name}"
        try:
            tags = await self.fetch_versions(dependency.kind.repository, dependency.name)
            latest = select_latest(tags, self.include_prereleases)
        except BumpError as e:
            return self._result(cache_key, start_time, error=e)

        # Tags carry no per-version metadata, so there is no app version
        return self._result(cache_key, start_time, version=latest)


def get_registry_client(
    registry_type: str,
    config: BumpConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BaseRegistryClient:
    """
    Factory function to get the appropriate registry client.

    Args:
        registry_type: Type of registry ('terraform', 'helm', 'oci')
        config: Run configuration
        transport: Optional httpx transport, mainly for tests

    Returns:
        Configured registry client

    Raises:
        ValueError: If registry_type is not supported
    """
    if registry_type == "terraform":
        return ModuleRegistryClient(config, transport)
    elif registry_type == "helm":
        return ChartIndexClient(config, transport)
    elif registry_type == "oci":
        return OciRegistryClient(config, transport)
    else:
        raise ValueError(f"Unsupported registry type: {registry_type}")


def registry_type_for(dependency: Dependency) -> str:
    """Pick the registry client type that resolves a dependency."""
    kind = dependency.kind
    if isinstance(kind, ModuleSource):
        return "terraform"
    if isinstance(kind, ChartSource):
        return "oci" if kind.is_oci else "helm"
    raise TypeError(f"Unknown dependency kind: {type(kind).__name__}")
