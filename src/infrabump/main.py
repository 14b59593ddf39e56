import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from .bumper import BumpReport, Selector, run_bump, select_all
from .cli_config import BumpConfig, create_sample_config, load_config
from .dependency import Dependency
from .error_handling import BumpError, get_error_handler, setup_error_handling
from .reporting import BumpReporter, outcome_to_dict
from .structured_logging import configure_logging

from . import __version__

console = Console()
err_console = Console(stderr=True)


def parse_selection(answer: str, count: int) -> List[int]:
    """
    Turn a prompt answer into zero-based candidate indices.

    Accepts ``all``, an empty answer (nothing), or comma-separated 1-based
    numbers and ``a-b`` ranges.

    Raises:
        ValueError: If the answer names a number outside ``1..count``
    """
    answer = answer.strip().lower()
    if not answer:
        return []
    if answer in ("all", "a", "*"):
        return list(range(count))

    indices: List[int] = []
    for part in answer.replace(" ", "").split(","):
        if not part:
            continue
        if "-" in part:
            start_text, end_text = part.split("-", 1)
            numbers = range(int(start_text), int(end_text) + 1)
        else:
            numbers = [int(part)]
        for number in numbers:
            if not 1 <= number <= count:
                raise ValueError(f"{number} is not between 1 and {count}")
            if number - 1 not in indices:
                indices.append(number - 1)
    return indices


def prompt_selector(prompt_console: Console) -> Selector:
    """Build a selector that asks the operator which updates to apply."""

    def select(candidates: List[Dependency], preselected: List[Dependency]) -> List[Dependency]:
        prompt_console.print(
            f"\n[cyan]Found {len(candidates)} dependencies with updates available[/cyan]"
        )
        for number, dependency in enumerate(candidates, start=1):
            marker = "[green]*[/green]" if dependency in preselected else " "
            prompt_console.print(f" {marker} {number}. {dependency.display_name()}")

        default = ",".join(str(candidates.index(d) + 1) for d in preselected)
        while True:
            answer = Prompt.ask(
                "Select dependencies to update (e.g. 1,3 or 2-4, 'all', empty for none)",
                console=prompt_console,
                default=default,
                show_default=bool(default),
            )
            try:
                indices = parse_selection(answer, len(candidates))
            except ValueError as e:
                prompt_console.print(f"⚠️  Invalid selection: {e}", style="yellow")
                continue
            return [candidates[i] for i in indices]

    return select


def output_json_results(outcome, warnings: List[str], verbose: bool = False) -> None:
    """Export results as JSON."""
    results = outcome_to_dict(outcome, warnings=warnings, include_cache_entries=verbose)
    print(json.dumps(results, indent=2, ensure_ascii=False))


def configure_run_logging(config: BumpConfig, verbose: bool) -> None:
    log_level = "INFO" if verbose else config.logging.log_level
    configure_logging(log_level)
    setup_error_handling(log_level=getattr(logging, log_level.upper(), logging.ERROR))


async def async_bump(
    path: Path,
    config: BumpConfig,
    recursive: bool,
    assume_yes: bool,
    output_format: str,
    verbose: bool = False,
) -> int:
    """Run a bump and render it; returns the process exit code."""
    reporter = BumpReporter(console)
    warnings: List[str] = []
    get_error_handler().register_callback(lambda context: warnings.append(context.render()))

    def show_report(report: BumpReport) -> None:
        if output_format == "console":
            reporter.print_report(report)

    selector = select_all if assume_yes else prompt_selector(err_console)
    outcome = await run_bump(
        path, config, selector, recursive=recursive, on_report=show_report
    )

    if output_format == "json":
        output_json_results(outcome, warnings, verbose)
    else:
        reporter.print_outcome(outcome)

    return outcome.exit_code


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version information")
@click.pass_context
def cli(ctx, version):
    """
    📦 infrabump: dependency bumps for Terraform modules and Helm charts

    Finds version-pinned modules and chart dependencies, looks up the latest
    release in their registries and rewrites the files you approve.
    """
    if version:
        console.print(f"infrabump version {__version__}", style="bold blue")
        ctx.exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@cli.command()
@click.argument(
    "path",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
)
@click.option(
    "--recursive",
    "-r",
    is_flag=True,
    help="Scan every Terraform and Helm project below PATH",
)
@click.option(
    "--max-depth",
    type=click.IntRange(min=0),
    help="Deepest directory level searched in recursive mode (overrides bump.max_depth)",
)
@click.option(
    "--include-prereleases",
    is_flag=True,
    help="Consider prerelease versions such as 2.0.0-rc.1",
)
@click.option(
    "--no-ignore",
    is_flag=True,
    help="Do not honor .gitignore files and .git/info/exclude",
)
@click.option(
    "--yes",
    "-y",
    "assume_yes",
    is_flag=True,
    help="Apply every available update without prompting",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Log discovery and resolution events to stderr",
)
@click.option(
    "--output-format",
    type=click.Choice(["console", "json"], case_sensitive=False),
    default="console",
    help="Output format for results",
    show_default=True,
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Configuration file to use instead of the standard locations",
)
def bump(
    path: Path,
    recursive: bool,
    max_depth: Optional[int],
    include_prereleases: bool,
    no_ignore: bool,
    assume_yes: bool,
    verbose: bool,
    output_format: str,
    config_file: Optional[Path],
) -> None:
    """
    Bump Terraform module and Helm chart dependency versions.

    Examples:

      infrabump bump ./infra/terraform

      infrabump bump . --recursive

      infrabump bump charts/app --yes --output-format json
    """
    try:
        config = load_config(config_file)
        if max_depth is not None:
            config.bump.max_depth = max_depth
        if include_prereleases:
            config.bump.include_prereleases = True
        if no_ignore:
            config.bump.no_ignore = True
        configure_run_logging(config, verbose)

        output_format = output_format.lower()
        if output_format == "console":
            mode = "recursive" if recursive else "single project"
            console.print(
                Panel(
                    f"📦 [bold blue]infrabump[/bold blue] v{__version__} - scanning {path} ({mode})",
                    border_style="blue",
                )
            )

        exit_code = asyncio.run(
            async_bump(path, config, recursive, assume_yes, output_format, verbose)
        )

    except (KeyboardInterrupt, EOFError):
        err_console.print("\n⚠️  Bump interrupted by user", style="yellow")
        sys.exit(130)
    except BumpError as e:
        err_console.print(f"❌ Error: {': '.join(e.chain())}", style="red")
        sys.exit(1)

    if exit_code:
        sys.exit(exit_code)


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command("init")
@click.option(
    "--path",
    type=click.Path(),
    default=".infrabump.toml",
    help="Path where to create the config file",
    show_default=True,
)
@click.option("--force", is_flag=True, help="Overwrite existing config file")
def config_init(path: str, force: bool):
    """Create a sample configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        console.print(f"⚠️  Config file already exists at {config_path}", style="yellow")
        console.print("Use --force to overwrite", style="dim")
        return

    try:
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(create_sample_config())
    except OSError as e:
        console.print(f"❌ Failed to create config file: {e}", style="red")
        sys.exit(1)

    console.print(f"✅ Created configuration file at {config_path}", style="green")
    console.print("Edit this file to customize your settings", style="dim")


@config.command("show")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Configuration file to show instead of the standard locations",
)
def config_show(config_file: Optional[Path]):
    """Show the effective configuration (tokens redacted)."""
    current_config = load_config(config_file)

    console.print(Panel("[bold blue]🔧 Configuration[/bold blue]", border_style="blue"))

    console.print("\n[bold cyan]📦 Bump Settings:[/bold cyan]")
    console.print(f"  Max Depth: {current_config.bump.max_depth}")
    console.print(f"  Include Prereleases: {current_config.bump.include_prereleases}")
    console.print(f"  Ignore Files Disabled: {current_config.bump.no_ignore}")

    registries = current_config.to_dict(redact=True)["bump"]["oci_registries"]
    if registries:
        console.print("\n[bold cyan]🔐 OCI Registries:[/bold cyan]")
        for registry, auth in registries.items():
            source = "token" if auth.get("token") else "command"
            detail = auth.get("token") or auth.get("command")
            console.print(f"  {registry}: {source} ({detail})")

    console.print("\n[bold cyan]🌐 Network Settings:[/bold cyan]")
    console.print(f"  Timeout: {current_config.network.timeout_seconds}s")
    console.print(f"  Module Registry: {current_config.network.module_registry_url}")
    console.print(f"  User Agent: {current_config.network.user_agent}")

    console.print("\n[bold cyan]📝 Logging Settings:[/bold cyan]")
    console.print(f"  Log Level: {current_config.logging.log_level}")


if __name__ == "__main__":
    cli()
