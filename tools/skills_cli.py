#!/usr/bin/env python3

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import List, NoReturn, Optional

import click
import typer
import yaml
from click.core import ParameterSource
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from config.skills_config import (
    DEFAULT_CONCURRENCY,
    DEFAULT_CONFIG_PATH,
    DEFAULT_CONFIG_TEMPLATE,
    DEFAULT_DELAY_MS,
    DEFAULT_MAX_DEPTH,
    DEFAULT_OUTPUT_DIR,
    CrawlConfig,
    SkillsScope,
    SkillsTarget,
    describe_targets,
    load_config_or_default,
    render_config_template
)
from observability.logging import get_logger, level_for_verbosity, setup_logging
from pipelines.crawler import CrawlReport, crawl_urls, process_single_page
from pipelines.errors import ConfigError, FetchError, MaterializationError
from pipelines.materializer import clean_output_dir, find_generated
from pipelines.state import STATE_FILENAME

logger = get_logger(__name__)

console = Console()
app = typer.Typer(help="DocSkills - turn documentation sites into agent skills", no_args_is_help=True)

EXIT_ABORTED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

TARGET_LABELS = {
    SkillsTarget.CUSTOM: "Custom (specify output path)",
    SkillsTarget.GITHUB_COPILOT: "GitHub Copilot",
    SkillsTarget.CLAUDE_CODE: "Claude Code",
    SkillsTarget.CURSOR: "Cursor",
    SkillsTarget.ANTIGRAVITY: "Antigravity (Gemini)",
    SkillsTarget.OPENAI_CODEX: "OpenAI Codex",
    SkillsTarget.OPENCODE: "OpenCode",
}


@dataclass
class CliState:
    """Global options shared by every command."""
    config_path: Path
    config_explicit: bool = False
    output: Optional[Path] = None
    target: Optional[str] = None
    user: bool = False
    quiet: bool = False


def _fail(message: str, code: int = EXIT_ABORTED) -> NoReturn:
    logger.debug(f"Exiting with code {code}: {message}")
    console.print(f"❌ {escape(message)}", style="bold red")
    raise typer.Exit(code)


def _say(state: CliState, message: str, style: Optional[str] = None):
    if not state.quiet:
        console.print(message, style=style)


def _load_config(state: CliState) -> CrawlConfig:
    """Load the config file and apply global overrides; exit 2 on errors."""
    try:
        config = load_config_or_default(state.config_path, required=state.config_explicit)
        overrides = {}
        if state.target:
            overrides['target'] = SkillsTarget.parse(state.target)
        if state.user:
            overrides['scope'] = SkillsScope.USER
        return config.with_overrides(**overrides)
    except ConfigError as e:
        _fail(f"Configuration error: {e}", EXIT_CONFIG)


def _output_dir(state: CliState, config: CrawlConfig) -> Path:
    return state.output or config.resolve_output_path()


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", envvar="SKILLS_CONFIG", help="Config file path"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", envvar="SKILLS_OUTPUT", help="Output directory (overrides config and target)"),
    target: Optional[str] = typer.Option(None, "--target", "-t", help="Agent tool: " + ", ".join(t.value for t in SkillsTarget)),
    user: bool = typer.Option(False, "--user", help="Write to the user-level skills directory of the target"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="More logging (-vv includes HTTP libraries)"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log errors"),
    log_json: bool = typer.Option(False, "--log-json", help="Log JSON lines to stderr"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also log JSON lines to this file")
):
    """DocSkills - turn documentation sites into agent skills"""
    setup_logging(
        level_for_verbosity(verbose, quiet),
        log_file=str(log_file) if log_file else None,
        use_json=log_json,
        verbose=verbose
    )
    ctx.obj = CliState(
        config_path=config,
        config_explicit=ctx.get_parameter_source("config") is not ParameterSource.DEFAULT,
        output=output,
        target=target,
        user=user,
        quiet=quiet
    )


def _print_report(state: CliState, report: CrawlReport):
    stats = report.stats
    table = Table(title=f"📊 Crawl {report.status.value}")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Discovered", str(stats.discovered))
    table.add_row("Visited", str(stats.visited))
    table.add_row("Skipped by rule", str(stats.skipped_by_rule))
    table.add_row("Skipped by policy", str(stats.skipped_by_policy))
    table.add_row("Failed", str(stats.failed))
    table.add_row("Written", str(stats.written))
    if stats.duration is not None:
        table.add_row("Duration", f"{stats.duration.total_seconds():.1f}s")

    if not state.quiet:
        console.print(table)

    if report.would_write:
        _say(state, f"\n🔎 Dry run: {len(report.would_write)} skill(s) would be written:")
        for path in report.would_write:
            _say(state, f"  • {escape(str(path))}")

    if report.error:
        console.print(f"❌ Crawl aborted: {escape(report.error)}", style="bold red")


@app.command()
def crawl(
    ctx: typer.Context,
    urls: List[str] = typer.Argument(..., help="Seed URLs (may end in a glob such as /docs/*)"),
    delay: Optional[int] = typer.Option(None, "--delay", help="Delay between requests to a host (ms)"),
    depth: Optional[int] = typer.Option(None, "--depth", help="Maximum crawl depth"),
    subdomains: bool = typer.Option(False, "--subdomains", help="Follow links to subdomains of the seeds"),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", min=1, help="Stop after this many pages"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Crawl and process without writing files"),
    resume: bool = typer.Option(False, "--resume", help="Continue an interrupted crawl")
):
    """Crawl documentation sites and write one skill per page"""
    state: CliState = ctx.obj
    config = _load_config(state)

    try:
        config = config.with_overrides(
            delay_ms=delay,
            max_depth=depth,
            subdomains=True if subdomains else None
        )
    except ConfigError as e:
        _fail(f"Configuration error: {e}", EXIT_CONFIG)

    output_dir = _output_dir(state, config)

    try:
        report = asyncio.run(crawl_urls(
            urls,
            config,
            output_dir=output_dir,
            dry_run=dry_run,
            max_pages=max_pages,
            resume=resume
        ))
    except ConfigError as e:
        _fail(f"Configuration error: {e}", EXIT_CONFIG)
    except KeyboardInterrupt:
        logger.warning("Crawl interrupted by user")
        console.print("⚠️  Interrupted; progress saved, continue with --resume", style="bold yellow")
        raise typer.Exit(EXIT_INTERRUPTED)

    _print_report(state, report)
    if not report.succeeded:
        raise typer.Exit(EXIT_ABORTED)


@app.command()
def single(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Page URL"),
    stdout: bool = typer.Option(False, "--stdout", help="Print the skill instead of writing it")
):
    """Convert exactly one page into a skill"""
    state: CliState = ctx.obj
    config = _load_config(state)
    output_dir = _output_dir(state, config)

    try:
        artifact = asyncio.run(process_single_page(url, config, output_dir=output_dir, to_stdout=stdout))
    except ConfigError as e:
        _fail(f"Configuration error: {e}", EXIT_CONFIG)
    except (FetchError, MaterializationError) as e:
        _fail(str(e))
    except KeyboardInterrupt:
        raise typer.Exit(EXIT_INTERRUPTED)

    if stdout:
        typer.echo(artifact.content, nl=False)
    else:
        _say(state, f"✅ Wrote skill '{escape(artifact.name)}' to {escape(str(artifact.path))}", style="bold green")


@app.command()
def validate(
    ctx: typer.Context,
    show: bool = typer.Option(False, "--show", help="Print the resolved configuration")
):
    """Check the configuration file"""
    state: CliState = ctx.obj
    config = _load_config(state)

    console.print(f"✅ Configuration is valid ({escape(str(state.config_path))})", style="bold green")
    if not show:
        return

    table = Table(title="⚙️  Configuration")
    table.add_column("Setting", style="bold")
    table.add_column("Value")

    table.add_row("output (resolved)", escape(str(_output_dir(state, config))))
    for key, value in config.to_dict().items():
        if key in ('rules', 'remove_selectors'):
            continue
        table.add_row(key, escape(str(value)))
    table.add_row("effective user agent", escape(config.effective_user_agent))
    table.add_row("remove_selectors", escape(", ".join(config.remove_selectors)))
    console.print(table)

    if config.rules:
        rules_table = Table(title="Rules")
        rules_table.add_column("#", justify="right")
        rules_table.add_column("Action", style="bold")
        rules_table.add_column("Pattern")
        for i, rule in enumerate(config.rules, 1):
            rules_table.add_row(str(i), rule.action.value, escape(rule.url))
        console.print(rules_table)
    else:
        console.print("No rules configured; every URL in scope is allowed.")

    console.print("\nTargets:")
    for line in describe_targets():
        console.print(f"  • {escape(line)}")


@app.command()
def clean(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation"),
    pattern: Optional[str] = typer.Option(None, "--pattern", "-p", help="Only remove skills whose name matches this glob")
):
    """Remove previously generated skills"""
    state: CliState = ctx.obj
    config = _load_config(state)
    output_dir = _output_dir(state, config)

    try:
        targets = find_generated(output_dir, pattern)
    except ConfigError as e:
        _fail(f"Invalid pattern: {e}", EXIT_CONFIG)

    has_state = pattern is None and (output_dir / STATE_FILENAME).exists()
    if not targets and not has_state:
        _say(state, f"Nothing to clean in {escape(str(output_dir))}")
        return

    for path in targets:
        _say(state, f"  • {escape(str(path))}")

    if not force and not typer.confirm(f"Remove {len(targets)} generated skill(s) from {output_dir}?"):
        _say(state, "Cancelled.")
        return

    removed = clean_output_dir(output_dir, pattern)
    _say(state, f"🧹 Removed {len(removed)} skill(s) from {escape(str(output_dir))}", style="bold green")


def _prompt_config() -> str:
    """Ask for the main settings and render them into a config file."""
    console.print("🛠️  Where should skills be installed?", style="bold")
    for target, label in TARGET_LABELS.items():
        console.print(f"  [cyan]{target.value:<15}[/cyan] {label}")
    target = SkillsTarget(typer.prompt(
        "Target agent",
        default=SkillsTarget.CUSTOM.value,
        type=click.Choice([t.value for t in TARGET_LABELS])
    ))
    scope = SkillsScope(typer.prompt(
        "Install at project or user level",
        default=SkillsScope.PROJECT.value,
        type=click.Choice([s.value for s in SkillsScope])
    ))

    output = DEFAULT_OUTPUT_DIR
    if target is SkillsTarget.CUSTOM:
        output = typer.prompt("Output directory", default=DEFAULT_OUTPUT_DIR)

    delay_ms = typer.prompt("Request delay in milliseconds", default=DEFAULT_DELAY_MS, type=click.IntRange(min=0))
    max_depth = typer.prompt("Maximum crawl depth", default=DEFAULT_MAX_DEPTH, type=click.IntRange(min=0))
    concurrency = typer.prompt("Concurrency limit", default=DEFAULT_CONCURRENCY, type=click.IntRange(min=1))

    return render_config_template(target, scope, output, delay_ms, max_depth, concurrency)


@app.command()
def init(
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
    path: Path = typer.Option(Path(DEFAULT_CONFIG_PATH), "--path", help="Where to write the config"),
    interactive: bool = typer.Option(
        True, "--interactive/--no-interactive", help="Prompt for the main settings instead of writing defaults"
    )
):
    """Create a configuration file"""
    if path.exists() and not force:
        _fail(f"{path} already exists (use --force to overwrite)")

    content = _prompt_config() if interactive else DEFAULT_CONFIG_TEMPLATE
    try:
        CrawlConfig.from_dict(yaml.safe_load(content))
    except ConfigError as e:
        _fail(f"Configuration error: {e}", EXIT_CONFIG)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as e:
        _fail(f"Failed to write {path}: {e}")

    console.print(f"✅ Wrote configuration to {escape(str(path))}", style="bold green")
    console.print("Start crawling with: docskills crawl <URL>")


if __name__ == "__main__":
    app()
