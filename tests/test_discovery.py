"""
Tests for project detection, recursive discovery and ignore-file handling.
"""

from pathlib import Path

import pytest

from infrabump.cli_config import BumpConfig
from infrabump.discovery import (
    IgnorePattern,
    IgnoreRules,
    Project,
    Technology,
    detect_project,
    detect_technology_direct,
    discover_projects,
)
from infrabump.error_handling import ScanError


def touch(path: Path, content: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def relative_projects(projects, root):
    return [(p.path.relative_to(root).as_posix(), p.technology) for p in projects]


class TestDirectDetection:
    """Test marker-based technology detection."""

    def test_chart_manifest(self, temp_dir):
        touch(temp_dir / "Chart.yaml", "name: app\n")
        assert detect_technology_direct(temp_dir) is Technology.HELM

    def test_tf_files(self, temp_dir):
        touch(temp_dir / "main.tf")
        assert detect_technology_direct(temp_dir) is Technology.TERRAFORM

    def test_directory_named_terraform(self, temp_dir):
        (temp_dir / "terraform").mkdir()
        assert detect_technology_direct(temp_dir / "terraform") is Technology.TERRAFORM

    def test_chart_manifest_wins(self, temp_dir):
        touch(temp_dir / "Chart.yaml")
        touch(temp_dir / "main.tf")
        assert detect_technology_direct(temp_dir) is Technology.HELM

    def test_children_are_not_inspected(self, temp_dir):
        touch(temp_dir / "nested" / "main.tf")
        assert detect_technology_direct(temp_dir) is None

    def test_missing_directory(self, temp_dir):
        assert detect_technology_direct(temp_dir / "nope") is None


class TestSingleProjectDetection:
    """Test detection for a non-recursive run."""

    def test_path_itself(self, terraform_project):
        assert detect_project(terraform_project) == Project(Technology.TERRAFORM, terraform_project)

    def test_single_child_fallback(self, temp_dir):
        touch(temp_dir / "infra" / "main.tf")
        touch(temp_dir / "docs" / "README.md")

        project = detect_project(temp_dir)
        assert project == Project(Technology.TERRAFORM, temp_dir / "infra")

    def test_hidden_children_are_skipped(self, temp_dir):
        touch(temp_dir / ".terraform" / "modules" / "main.tf")
        touch(temp_dir / "chart" / "Chart.yaml")

        assert detect_project(temp_dir) == Project(Technology.HELM, temp_dir / "chart")

    def test_no_project(self, temp_dir):
        touch(temp_dir / "docs" / "README.md")
        with pytest.raises(ScanError, match="No Terraform or Helm project"):
            detect_project(temp_dir)

    def test_multiple_children(self, temp_dir):
        touch(temp_dir / "a" / "main.tf")
        touch(temp_dir / "b" / "Chart.yaml")
        with pytest.raises(ScanError, match="recursive"):
            detect_project(temp_dir)

    def test_missing_path(self, temp_dir):
        with pytest.raises(ScanError, match="does not exist"):
            detect_project(temp_dir / "missing")

    def test_file_path(self, temp_dir):
        with pytest.raises(ScanError, match="not a directory"):
            detect_project(touch(temp_dir / "main.tf"))


class TestRecursiveDiscovery:
    """Test discovery across a directory tree."""

    def test_finds_projects_in_walk_order(self, temp_dir, terraform_project, helm_chart):
        projects = discover_projects(temp_dir, BumpConfig())

        assert relative_projects(projects, temp_dir) == [
            ("charts/app", Technology.HELM),
            ("terraform", Technology.TERRAFORM),
        ]

    def test_same_technology_below_a_project_is_not_repeated(self, temp_dir, helm_chart):
        touch(helm_chart / "charts" / "sub" / "Chart.yaml", "name: sub\n")
        touch(temp_dir / "terraform" / "modules" / "net" / "main.tf")

        projects = discover_projects(temp_dir, BumpConfig())
        assert relative_projects(projects, temp_dir) == [
            ("charts/app", Technology.HELM),
            ("terraform", Technology.TERRAFORM),
        ]

    def test_charts_below_terraform_root_are_found(self, temp_dir):
        touch(temp_dir / "main.tf")
        touch(temp_dir / "modules" / "net" / "main.tf")
        touch(temp_dir / "charts" / "app" / "Chart.yaml", "name: app\n")
        touch(temp_dir / "charts" / "app" / "charts" / "sub" / "Chart.yaml", "name: sub\n")

        projects = discover_projects(temp_dir, BumpConfig())
        assert relative_projects(projects, temp_dir) == [
            (".", Technology.TERRAFORM),
            ("charts/app", Technology.HELM),
        ]

    def test_max_depth(self, temp_dir, terraform_project, helm_chart):
        config = BumpConfig()
        config.bump.max_depth = 1

        projects = discover_projects(temp_dir, config)
        assert relative_projects(projects, temp_dir) == [("terraform", Technology.TERRAFORM)]

    def test_root_can_be_a_project(self, terraform_project):
        projects = discover_projects(terraform_project, BumpConfig())
        assert projects == [Project(Technology.TERRAFORM, terraform_project)]

    def test_hidden_directories_are_skipped(self, temp_dir):
        touch(temp_dir / ".cache" / "main.tf")
        touch(temp_dir / "live" / "main.tf")

        projects = discover_projects(temp_dir, BumpConfig())
        assert relative_projects(projects, temp_dir) == [("live", Technology.TERRAFORM)]

    def test_gitignore_and_no_ignore(self, temp_dir):
        touch(temp_dir / ".gitignore", "vendor/\n")
        touch(temp_dir / "vendor" / "network" / "main.tf")
        touch(temp_dir / "live" / "main.tf")

        projects = discover_projects(temp_dir, BumpConfig())
        assert relative_projects(projects, temp_dir) == [("live", Technology.TERRAFORM)]

        config = BumpConfig()
        config.bump.no_ignore = True
        projects = discover_projects(temp_dir, config)
        assert relative_projects(projects, temp_dir) == [
            ("live", Technology.TERRAFORM),
            ("vendor/network", Technology.TERRAFORM),
        ]

    def test_negation_re_includes(self, temp_dir):
        touch(temp_dir / ".gitignore", "build/*\n!build/keep\n")
        touch(temp_dir / "build" / "drop" / "main.tf")
        touch(temp_dir / "build" / "keep" / "main.tf")

        projects = discover_projects(temp_dir, BumpConfig())
        assert relative_projects(projects, temp_dir) == [("build/keep", Technology.TERRAFORM)]

    def test_nested_gitignore(self, temp_dir):
        touch(temp_dir / "envs" / ".gitignore", "scratch\n")
        touch(temp_dir / "envs" / "prod" / "main.tf")
        touch(temp_dir / "envs" / "scratch" / "main.tf")
        touch(temp_dir / "scratch" / "main.tf")

        projects = discover_projects(temp_dir, BumpConfig())
        assert relative_projects(projects, temp_dir) == [
            ("envs/prod", Technology.TERRAFORM),
            ("scratch", Technology.TERRAFORM),
        ]

    def test_repository_ignore_files_apply_below_root(self, temp_dir):
        (temp_dir / ".git" / "info").mkdir(parents=True)
        touch(temp_dir / ".git" / "info" / "exclude", "excluded\n")
        touch(temp_dir / ".gitignore", "ignored/\n")
        touch(temp_dir / "infra" / "ok" / "main.tf")
        touch(temp_dir / "infra" / "ignored" / "main.tf")
        touch(temp_dir / "infra" / "excluded" / "main.tf")

        projects = discover_projects(temp_dir / "infra", BumpConfig())
        assert relative_projects(projects, temp_dir) == [("infra/ok", Technology.TERRAFORM)]

    def test_missing_root(self, temp_dir):
        with pytest.raises(ScanError):
            discover_projects(temp_dir / "missing", BumpConfig())


class TestIgnorePatterns:
    """Test gitignore pattern semantics."""

    def test_comments_and_blank_lines(self, temp_dir):
        assert IgnorePattern.parse("# comment", temp_dir) is None
        assert IgnorePattern.parse("   ", temp_dir) is None

    def test_unanchored_matches_any_depth(self, temp_dir):
        pattern = IgnorePattern.parse("*.tfstate", temp_dir)
        assert pattern.matches(temp_dir / "a" / "b" / "prod.tfstate", is_dir=False)
        assert not pattern.matches(temp_dir / "a" / "main.tf", is_dir=False)

    def test_anchored_pattern(self, temp_dir):
        pattern = IgnorePattern.parse("/build", temp_dir)
        assert pattern.matches(temp_dir / "build", is_dir=True)
        assert not pattern.matches(temp_dir / "src" / "build", is_dir=True)

    def test_directory_only(self, temp_dir):
        pattern = IgnorePattern.parse("cache/", temp_dir)
        assert pattern.matches(temp_dir / "cache", is_dir=True)
        assert not pattern.matches(temp_dir / "cache", is_dir=False)

    def test_double_star(self, temp_dir):
        pattern = IgnorePattern.parse("**/generated/*.tf", temp_dir)
        assert pattern.matches(temp_dir / "generated" / "x.tf", is_dir=False)
        assert pattern.matches(temp_dir / "a" / "b" / "generated" / "x.tf", is_dir=False)

    def test_last_match_wins(self, temp_dir):
        touch(temp_dir / ".gitignore", "*.tf\n!keep.tf\n")
        rules = IgnoreRules.for_path(temp_dir)

        assert rules.is_ignored(temp_dir / "drop.tf", is_dir=False)
        assert not rules.is_ignored(temp_dir / "keep.tf", is_dir=False)

    def test_disabled_rules(self, temp_dir):
        touch(temp_dir / ".gitignore", "*\n")
        rules = IgnoreRules.for_path(temp_dir, enabled=False)
        assert not rules.is_ignored(temp_dir / "main.tf", is_dir=False)
