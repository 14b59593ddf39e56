"""
End-to-end orchestration tests: discovery, cached resolution, selection and apply.
"""

from pathlib import Path

import pytest
import yaml

from infrabump.bumper import (
    BumpStatus,
    DependencyBumper,
    run_bump,
    select_all,
    select_preselected,
)
from infrabump.cache_manager import ResolutionCache
from infrabump.error_handling import NetworkError, ScanError
from infrabump.reporting import outcome_to_dict

BITNAMI_REPO = "https://charts.bitnami.com/bitnami"


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def select_none(candidates, preselected):
    return []


def vpc_module(version):
    return f"""module "vpc" {{
  source  = "terraform-aws-modules/vpc/aws"
  version = "{version}"
}}
"""


class TestResolution:
    """Test cache-aware resolution."""

    @pytest.mark.asyncio
    async def test_shared_source_is_fetched_once(self, temp_dir, config, fake_registry):
        url = fake_registry.add_module("terraform-aws-modules/vpc/aws", ["5.0.0", "5.8.1"])
        write(temp_dir / "prod" / "main.tf", vpc_module("5.0.0"))
        write(temp_dir / "staging" / "main.tf", vpc_module("5.0.0"))

        async with DependencyBumper(config, fake_registry.transport) as bumper:
            report = await bumper.collect(temp_dir, recursive=True)

        assert len(report.projects) == 2
        assert [d.latest_version for d in report.dependencies] == ["5.8.1", "5.8.1"]
        assert fake_registry.count(url) == 1
        assert report.cache_stats["hits"] == 1
        assert report.cache_stats["misses"] == 1

    @pytest.mark.asyncio
    async def test_errors_are_cached_too(self, temp_dir, config, fake_registry):
        write(temp_dir / "prod" / "main.tf", vpc_module("5.0.0"))
        write(temp_dir / "staging" / "main.tf", vpc_module("5.0.0"))

        async with DependencyBumper(config, fake_registry.transport) as bumper:
            report = await bumper.collect(temp_dir, recursive=True)

        assert all(d.is_error for d in report.dependencies)
        assert all(isinstance(d.error, NetworkError) for d in report.dependencies)
        assert report.dependencies[0].latest_version.startswith("ERROR: ")
        assert len(fake_registry.requests) == 1

    @pytest.mark.asyncio
    async def test_cache_can_be_shared_between_runs(self, terraform_project, config, fake_registry):
        fake_registry.add_module("terraform-aws-modules/vpc/aws", ["5.8.1"])
        fake_registry.add_module("terraform-aws-modules/eks/aws", ["20.8.4"])
        cache = ResolutionCache()

        for _ in range(2):
            async with DependencyBumper(config, fake_registry.transport, cache) as bumper:
                await bumper.collect(terraform_project)

        assert len(fake_registry.requests) == 2
        assert len(cache) == 2

    @pytest.mark.asyncio
    async def test_local_chart_needs_no_network(self, helm_chart, config, fake_registry):
        fake_registry.add_chart_index(
            BITNAMI_REPO, {"postgresql": [{"version": "12.0.0", "appVersion": "15.3.0"}]}
        )

        async with DependencyBumper(config, fake_registry.transport) as bumper:
            report = await bumper.collect(helm_chart)

        assert [d.is_up_to_date for d in report.dependencies] == [True, True]
        assert fake_registry.count(f"{BITNAMI_REPO}/index.yaml") == 1
        assert len(fake_registry.requests) == 1

    @pytest.mark.asyncio
    async def test_resolve_requires_context(self, terraform_project, config):
        bumper = DependencyBumper(config)
        dependency = bumper.scan_project(bumper.discover(terraform_project)[0])[0]
        with pytest.raises(RuntimeError):
            await bumper.resolve(dependency)


class TestRunBump:
    """Test run outcomes."""

    @pytest.mark.asyncio
    async def test_helm_update_end_to_end(self, helm_chart, config, fake_registry):
        fake_registry.add_chart_index(
            BITNAMI_REPO,
            {
                "postgresql": [
                    {"version": "13.0.0", "appVersion": "16.1.0"},
                    {"version": "12.0.0", "appVersion": "15.3.0"},
                ]
            },
        )

        outcome = await run_bump(
            helm_chart, config, select_all, transport=fake_registry.transport
        )

        assert outcome.status is BumpStatus.UPDATED
        assert outcome.exit_code == 0
        assert outcome.applied_count == 1
        document = yaml.safe_load((helm_chart / "Chart.yaml").read_text())
        assert document["dependencies"][0]["version"] == "13.0.0"
        assert document["version"] == "1.2.0"
        assert document["appVersion"] == "1.2.0"

    @pytest.mark.asyncio
    async def test_second_run_is_up_to_date(self, terraform_project, config, fake_registry):
        fake_registry.add_module("terraform-aws-modules/vpc/aws", ["5.0.0", "5.8.1"])
        fake_registry.add_module("terraform-aws-modules/eks/aws", ["20.0.0", "20.8.4"])

        first = await run_bump(
            terraform_project, config, select_all, transport=fake_registry.transport
        )
        assert first.status is BumpStatus.UPDATED
        assert first.applied_count == 2
        assert 'version = "~> 5.8.1"' in (terraform_project / "main.tf").read_text()
        assert 'version = "20.8.4"' in (terraform_project / "eks.tf").read_text()

        snapshot = {p.name: p.read_text() for p in terraform_project.glob("*.tf")}
        second = await run_bump(
            terraform_project, config, select_all, transport=fake_registry.transport
        )
        assert second.status is BumpStatus.UP_TO_DATE
        assert {p.name: p.read_text() for p in terraform_project.glob("*.tf")} == snapshot

    @pytest.mark.asyncio
    async def test_all_failed(self, terraform_project, config, fake_registry):
        outcome = await run_bump(
            terraform_project, config, select_all, transport=fake_registry.transport
        )

        assert outcome.status is BumpStatus.ALL_FAILED
        assert outcome.exit_code == 1
        assert outcome.apply_result is None

    @pytest.mark.asyncio
    async def test_partial_failure_still_updates(self, terraform_project, config, fake_registry):
        fake_registry.add_module("terraform-aws-modules/eks/aws", ["20.8.4"])

        outcome = await run_bump(
            terraform_project, config, select_all, transport=fake_registry.transport
        )

        assert outcome.status is BumpStatus.UPDATED
        assert [d.name for d in outcome.report.errored] == ["vpc"]
        assert [d.name for d in outcome.selected] == ["eks"]

    @pytest.mark.asyncio
    async def test_nothing_selected(self, terraform_project, config, fake_registry):
        fake_registry.add_module("terraform-aws-modules/vpc/aws", ["5.8.1"])
        fake_registry.add_module("terraform-aws-modules/eks/aws", ["20.8.4"])
        before = (terraform_project / "main.tf").read_text()

        outcome = await run_bump(
            terraform_project, config, select_none, transport=fake_registry.transport
        )

        assert outcome.status is BumpStatus.NOTHING_SELECTED
        assert outcome.exit_code == 0
        assert (terraform_project / "main.tf").read_text() == before

    @pytest.mark.asyncio
    async def test_single_candidate_is_preselected(self, terraform_project, config, fake_registry):
        fake_registry.add_module("terraform-aws-modules/vpc/aws", ["5.0"])
        fake_registry.add_module("terraform-aws-modules/eks/aws", ["20.8.4"])
        seen = {}

        def selector(candidates, preselected):
            seen["candidates"] = [d.name for d in candidates]
            seen["preselected"] = [d.name for d in preselected]
            return select_preselected(candidates, preselected)

        outcome = await run_bump(
            terraform_project, config, selector, transport=fake_registry.transport
        )

        # "5.0" is not a full semantic version, so vpc fails to resolve
        assert seen == {"candidates": ["eks"], "preselected": ["eks"]}
        assert outcome.status is BumpStatus.UPDATED

    @pytest.mark.asyncio
    async def test_apply_stops_at_first_failure(self, terraform_project, config, fake_registry):
        fake_registry.add_module("terraform-aws-modules/vpc/aws", ["5.8.1"])
        fake_registry.add_module("terraform-aws-modules/eks/aws", ["20.8.4"])
        main_before = (terraform_project / "main.tf").read_text()

        def selector(candidates, preselected):
            # The first candidate's block disappears before it can be applied
            (terraform_project / "eks.tf").write_text("# moved\n")
            return candidates

        outcome = await run_bump(
            terraform_project, config, selector, transport=fake_registry.transport
        )

        assert outcome.status is BumpStatus.UPDATE_FAILED
        assert outcome.exit_code == 1
        assert outcome.apply_result.failed.name == "eks"
        assert "Failed to update eks" in str(outcome.apply_result.error)
        assert [d.name for d in outcome.apply_result.not_attempted] == ["vpc"]
        assert (terraform_project / "main.tf").read_text() == main_before

    @pytest.mark.asyncio
    async def test_project_scan_error_does_not_stop_run(
        self, temp_dir, terraform_project, config, fake_registry
    ):
        fake_registry.add_module("terraform-aws-modules/vpc/aws", ["5.8.1"])
        fake_registry.add_module("terraform-aws-modules/eks/aws", ["20.8.4"])
        write(
            temp_dir / "charts" / "broken" / "Chart.yaml",
            "name: broken\nversion: 1.0.0\ndependencies:\n  - name: redis\n    version: 18.0.0\n",
        )

        outcome = await run_bump(
            temp_dir, config, select_all, recursive=True, transport=fake_registry.transport
        )

        assert outcome.status is BumpStatus.UPDATED
        assert len(outcome.report.project_errors) == 1
        project_error = outcome.report.project_errors[0]
        assert project_error.project.path == temp_dir / "charts" / "broken"
        assert isinstance(project_error.error, ScanError)

    @pytest.mark.asyncio
    async def test_no_projects(self, temp_dir, config):
        (temp_dir / "docs").mkdir()
        outcome = await run_bump(temp_dir, config, select_all, recursive=True)

        assert outcome.status is BumpStatus.NO_PROJECTS
        assert outcome.exit_code == 0

    @pytest.mark.asyncio
    async def test_no_dependencies(self, temp_dir, config):
        write(temp_dir / "infra" / "main.tf", 'resource "null_resource" "x" {}\n')
        outcome = await run_bump(temp_dir / "infra", config, select_all)

        assert outcome.status is BumpStatus.NO_DEPENDENCIES
        assert outcome.exit_code == 0

    @pytest.mark.asyncio
    async def test_single_mode_detection_error_propagates(self, temp_dir, config):
        write(temp_dir / "a" / "main.tf", "")
        write(temp_dir / "b" / "main.tf", "")

        with pytest.raises(ScanError, match="Multiple projects"):
            await run_bump(temp_dir, config, select_all)

    @pytest.mark.asyncio
    async def test_on_report_runs_before_selection(self, terraform_project, config, fake_registry):
        fake_registry.add_module("terraform-aws-modules/vpc/aws", ["5.8.1"])
        fake_registry.add_module("terraform-aws-modules/eks/aws", ["20.8.4"])
        calls = []

        def on_report(report):
            calls.append(("report", len(report.updatable)))

        def selector(candidates, preselected):
            calls.append(("select", len(candidates)))
            return []

        await run_bump(
            terraform_project,
            config,
            selector,
            transport=fake_registry.transport,
            on_report=on_report,
        )
        assert calls == [("report", 2), ("select", 2)]

    @pytest.mark.asyncio
    async def test_chart_below_terraform_root_is_bumped(self, temp_dir, config, fake_registry):
        fake_registry.add_module("terraform-aws-modules/vpc/aws", ["5.0.0"])
        fake_registry.add_chart_index(
            BITNAMI_REPO, {"redis": [{"version": "18.1.0", "appVersion": "7.2.0"}]}
        )
        write(temp_dir / "main.tf", vpc_module("5.0.0"))
        write(
            temp_dir / "charts" / "cache" / "Chart.yaml",
            "apiVersion: v2\nname: cache\nversion: 0.1.0\ndependencies:\n"
            f"  - name: redis\n    version: 18.0.0\n    repository: {BITNAMI_REPO}\n",
        )

        outcome = await run_bump(
            temp_dir, config, select_all, recursive=True, transport=fake_registry.transport
        )

        assert [d.name for d in outcome.selected] == ["redis"]
        assert outcome.status is BumpStatus.UPDATED
        document = yaml.safe_load((temp_dir / "charts" / "cache" / "Chart.yaml").read_text())
        assert document["dependencies"][0]["version"] == "18.1.0"


class TestJsonDocument:
    """Test the JSON rendering of a run."""

    @pytest.mark.asyncio
    async def test_cache_entries_on_request(self, temp_dir, config, fake_registry):
        fake_registry.add_module("terraform-aws-modules/vpc/aws", ["5.8.1"])
        write(temp_dir / "prod" / "main.tf", vpc_module("5.0.0"))
        write(temp_dir / "staging" / "main.tf", vpc_module("5.0.0"))

        outcome = await run_bump(
            temp_dir, config, select_none, recursive=True, transport=fake_registry.transport
        )

        assert "entries" not in outcome_to_dict(outcome)["cache"]
        assert "warnings" not in outcome_to_dict(outcome)

        document = outcome_to_dict(
            outcome, warnings=["[NETWORK] x"], include_cache_entries=True
        )
        assert document["cache"]["entries"] == [
            {
                "cache_key": "tf:terraform-aws-modules/vpc/aws",
                "latest_version": "5.8.1",
                "error": None,
                "access_count": 1,
            }
        ]
        assert document["warnings"] == ["[NETWORK] x"]
        assert outcome.report.cache_stats["hits"] == 1
