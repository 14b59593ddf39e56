"""
Shared fixtures for infrabump tests.

Registry traffic never leaves the process: every client is built with an
``httpx.MockTransport`` backed by ``FakeRegistry``.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Tuple

import httpx
import pytest

from infrabump.cli_config import BumpConfig
from infrabump.error_handling import setup_error_handling

TERRAFORM_REGISTRY = "https://registry.terraform.io"
BITNAMI_REPO = "https://charts.bitnami.com/bitnami"


class FakeRegistry:
    """Routes requests by ``scheme://host/path`` and records every request."""

    def __init__(self):
        self.routes: Dict[str, Tuple[int, str, Any]] = {}
        self.requests: List[httpx.Request] = []

    def add_json(self, url: str, payload: Any, status: int = 200) -> None:
        self.routes[url] = (status, "json", payload)

    def add_text(self, url: str, text: str, status: int = 200) -> None:
        self.routes[url] = (status, "text", text)

    def add_module(self, registry_path: str, versions: List[str]) -> str:
        url = f"{TERRAFORM_REGISTRY}/v1/modules/{registry_path}"
        self.add_json(url, {"id": registry_path, "versions": versions})
        return url

    def add_chart_index(self, repository: str, entries: Dict[str, List[Dict[str, Any]]]) -> str:
        url = f"{repository.rstrip('/')}/index.yaml"
        lines = ["apiVersion: v1", "entries:"]
        for chart, releases in entries.items():
            lines.append(f"  {chart}:")
            for release in releases:
                lines.append(f"  - version: {json.dumps(release['version'])}")
                if "appVersion" in release:
                    lines.append(f"    appVersion: {json.dumps(release['appVersion'])}")
        self.add_text(url, "\n".join(lines) + "\n")
        return url

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        route = self.routes.get(key)
        if route is None:
            return httpx.Response(404, json={"errors": ["not found"]})

        status, kind, body = route
        if kind == "json":
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def count(self, url: str) -> int:
        return sum(
            1
            for r in self.requests
            if f"{r.url.scheme}://{r.url.host}{r.url.path}" == url
        )


@pytest.fixture
def temp_dir(tmp_path) -> Path:
    """A resolved temporary directory."""
    return tmp_path.resolve()


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep user config files and INFRABUMP_* variables out of every test."""
    for key in (
        "INFRABUMP_MAX_DEPTH",
        "INFRABUMP_TIMEOUT",
        "INFRABUMP_INCLUDE_PRERELEASES",
        "INFRABUMP_NO_IGNORE",
        "INFRABUMP_LOG_LEVEL",
        "INFRABUMP_MODULE_REGISTRY_URL",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    setup_error_handling()


@pytest.fixture
def config() -> BumpConfig:
    return BumpConfig()


@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry()


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def terraform_project(temp_dir) -> Path:
    """A Terraform project with registry, local and git modules."""
    project = temp_dir / "terraform"
    write(
        project / "main.tf",
        """terraform {
  required_version = ">= 1.5"
}

module "vpc" {
  source  = "terraform-aws-modules/vpc/aws"
  version = "~> 5.0"

  name = "main"
  cidr = "10.0.0.0/16"
}

module "local_stuff" {
  source = "./modules/stuff"
}

module "from_git" {
  source  = "git::https://example.com/modules/network.git"
  version = "1.0.0"
}
""",
    )
    write(
        project / "eks.tf",
        """module "eks" {
  source  = "terraform-aws-modules/eks/aws"
  version = "20.0.0"

  cluster_name = "main"
}
""",
    )
    return project


@pytest.fixture
def helm_chart(temp_dir) -> Path:
    """A Helm chart depending on postgresql from the Bitnami repository."""
    chart = temp_dir / "charts" / "app"
    write(
        chart / "Chart.yaml",
        f"""apiVersion: v2
name: app
description: Application chart
version: 1.2.0
appVersion: "1.2.0"
dependencies:
  - name: postgresql
    version: 12.0.0
    repository: {BITNAMI_REPO}
  - name: common
    version: 0.1.0
    repository: file://../common
""",
    )
    return chart
