"""
Configuration management for infrabump.

Settings are loaded once at the top of a run (file, then environment
overrides) and passed explicitly to the orchestrator, scanners and registry
clients.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml
import yaml

from .error_handling import ErrorCategory, get_error_handler

CONFIG_FILE_NAMES = (".infrabump.toml", ".infrabump.json", ".infrabump.yaml")
USER_CONFIG_NAMES = ("config.toml", "config.json", "config.yaml")


@dataclass
class OciRegistryAuth:
    """Authentication for one OCI registry host: a static token or a token command."""

    token: Optional[str] = None
    command: Optional[str] = None


@dataclass
class BumpSettings:
    """Dependency scanning and resolution settings."""

    max_depth: int = 5
    include_prereleases: bool = False
    no_ignore: bool = False
    oci_registries: Dict[str, OciRegistryAuth] = field(default_factory=dict)


@dataclass
class NetworkConfig:
    """Network and registry configuration."""

    timeout_seconds: float = 10.0
    user_agent: str = "infrabump/0.4.0"
    module_registry_url: str = "https://registry.terraform.io"


@dataclass
class LoggingConfig:
    """Logging configuration."""

    log_level: str = "ERROR"


@dataclass
class BumpConfig:
    """Main configuration containing all subsections."""

    bump: BumpSettings = field(default_factory=BumpSettings)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def oci_auth_for(self, registry: str) -> Optional[OciRegistryAuth]:
        """Return the configured authentication for a registry host, if any."""
        return self.bump.oci_registries.get(registry)

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        """Convert to a plain dictionary, hiding static tokens unless asked not to."""
        data = asdict(self)
        if redact:
            for auth in data["bump"]["oci_registries"].values():
                if auth.get("token"):
                    auth["token"] = "[REDACTED]"
        return data


def validate_config_values(config: BumpConfig) -> List[str]:
    """
    Validate configuration values and return any errors.

    Args:
        config: Configuration to validate

    Returns:
        List[str]: List of validation errors (empty if valid)
    """
    errors = []

    if config.bump.max_depth < 0:
        errors.append("bump.max_depth must be non-negative")
    if config.network.timeout_seconds <= 0:
        errors.append("network.timeout_seconds must be positive")
    if not config.network.module_registry_url.startswith(("http://", "https://")):
        errors.append("network.module_registry_url must be an http(s) URL")

    for registry, auth in config.bump.oci_registries.items():
        if not auth.token and not auth.command:
            errors.append(
                f"bump.oci_registries.{registry} needs either 'token' or 'command'"
            )

    return errors


def load_config_file(config_path: Path) -> Optional[Dict[str, Any]]:
    """Load raw config data from a TOML, JSON or YAML file."""
    if not config_path.exists():
        return None

    suffix = config_path.suffix.lower()
    try:
        with open(config_path, encoding="utf-8") as f:
            if suffix == ".toml":
                return toml.load(f)
            if suffix in (".yaml", ".yml"):
                return yaml.safe_load(f) or {}
            if suffix == ".json":
                return json.load(f)
    except (OSError, ValueError, toml.TomlDecodeError, yaml.YAMLError) as e:
        get_error_handler().warning(
            ErrorCategory.CONFIGURATION,
            "Could not load configuration file",
            "cli_config",
            "load_config_file",
            details={"file_path": str(config_path)},
            exception=e,
        )

    return None


def get_user_config_dir() -> Path:
    """Directory holding the per-user configuration file."""
    base = os.environ.get("XDG_CONFIG_HOME")
    return (Path(base) if base else Path.home() / ".config") / "infrabump"


def find_config_file(start_dir: Optional[Path] = None) -> Optional[Path]:
    """Find config file in standard locations."""
    start_dir = start_dir or Path.cwd()
    locations = [start_dir / name for name in CONFIG_FILE_NAMES]
    locations += [get_user_config_dir() / name for name in USER_CONFIG_NAMES]

    for location in locations:
        if location.exists():
            return location

    return None


def apply_config_section(config: Any, section_data: Dict[str, Any], section_name: str) -> None:
    """Apply configuration from dictionary to config section."""
    for key, value in section_data.items():
        if not hasattr(config, key):
            get_error_handler().warning(
                ErrorCategory.CONFIGURATION,
                f"Unknown config key in {section_name}: {key}",
                "cli_config",
                "apply_config_section",
            )
            continue

        if key == "oci_registries" and isinstance(value, dict):
            for registry, auth in value.items():
                if isinstance(auth, dict):
                    config.oci_registries[registry] = OciRegistryAuth(
                        token=auth.get("token"), command=auth.get("command")
                    )
        else:
            setattr(config, key, value)


def load_environment_overrides(config: BumpConfig) -> None:
    """Load environment variable overrides."""

    def get_env_bool(key: str, default: bool) -> bool:
        value = os.environ.get(key, "").lower()
        return value in ["true", "1", "yes", "on"] if value else default

    def get_env_number(key: str, cast):
        if key not in os.environ:
            return None
        try:
            return cast(os.environ[key])
        except ValueError:
            get_error_handler().warning(
                ErrorCategory.CONFIGURATION,
                f"Invalid value for {key}, using default",
                "cli_config",
                "load_environment_overrides",
            )
            return None

    if (max_depth := get_env_number("INFRABUMP_MAX_DEPTH", int)) is not None:
        config.bump.max_depth = max_depth
    if (timeout := get_env_number("INFRABUMP_TIMEOUT", float)) is not None:
        config.network.timeout_seconds = timeout

    config.bump.include_prereleases = get_env_bool(
        "INFRABUMP_INCLUDE_PRERELEASES", config.bump.include_prereleases
    )
    config.bump.no_ignore = get_env_bool("INFRABUMP_NO_IGNORE", config.bump.no_ignore)

    if registry_url := os.environ.get("INFRABUMP_MODULE_REGISTRY_URL"):
        config.network.module_registry_url = registry_url.rstrip("/")
    if log_level := os.environ.get("INFRABUMP_LOG_LEVEL"):
        config.logging.log_level = log_level.upper()


def load_config(config_path: Optional[Path] = None) -> BumpConfig:
    """
    Load configuration from file and environment.

    Args:
        config_path: Explicit config file; standard locations are searched when omitted

    Returns:
        BumpConfig: A fresh configuration value
    """
    config = BumpConfig()

    config_file = config_path or find_config_file()
    if config_file:
        file_config = load_config_file(Path(config_file))
        if file_config:
            for section_name in ("bump", "network", "logging"):
                section = file_config.get(section_name)
                if isinstance(section, dict):
                    apply_config_section(
                        getattr(config, section_name), section, section_name
                    )

    load_environment_overrides(config)

    for error in validate_config_values(config):
        get_error_handler().warning(
            ErrorCategory.CONFIGURATION,
            f"Configuration validation error: {error}",
            "cli_config",
            "load_config",
        )

    return config


def create_sample_config() -> str:
    """Generate a commented TOML sample configuration."""
    return """# infrabump configuration file

[bump]
# Maximum directory depth for recursive scanning
max_depth = 5
# Consider versions such as 2.0.0-rc.1 when looking for the latest release
include_prereleases = false
# Walk directories listed in .gitignore files too
no_ignore = false

# OCI registry authentication for Helm charts.
# Give either a static token or a command whose stdout is the token.
#
# [bump.oci_registries."ghcr.io"]
# token = "ghp_your_github_token_here"
#
# [bump.oci_registries."123456789.dkr.ecr.us-east-1.amazonaws.com"]
# command = "aws ecr get-login-password --region us-east-1"

[network]
timeout_seconds = 10.0
module_registry_url = "https://registry.terraform.io"

[logging]
log_level = "ERROR"
"""
