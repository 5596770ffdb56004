"""lessonrefine CLI — Typer + Rich terminal interface.

Commands: check, refine, models, config.
All output is Rich-powered with color-coded panels and tables.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from lessonrefine import __version__
from lessonrefine.errors import JudgeUnavailableError
from lessonrefine.events import RefinementEvent, RefinementEventEmitter, RefinementEventType
from lessonrefine.heuristics.filter import HeuristicFilter
from lessonrefine.keys import load_keys_env, missing_keys
from lessonrefine.loop.session import RefinementSession
from lessonrefine.providers.registry import load_models, load_refinement_config, required_key_envs
from lessonrefine.schemas.content import ContentSpec, LessonDocument
from lessonrefine.schemas.pipeline import OperationMode
from lessonrefine.schemas.session import RefinementOutcome, RefinementStatus

# Load API keys from ~/.lessonrefine/keys.env and .env on startup
load_keys_env()

console = Console()

# ── App and sub-apps ─────────────────────────────────────────────

app = typer.Typer(
    name="lessonrefine",
    help="Cascade quality evaluation and targeted refinement of lesson content.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

models_app = typer.Typer(
    name="models",
    help="Inspect the model registry.",
    no_args_is_help=True,
)
app.add_typer(models_app, name="models")

config_app = typer.Typer(
    name="config",
    help="Show refinement configuration.",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")


# ── Version callback ───────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"lessonrefine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """lessonrefine — evaluate lessons cheaply, repair them surgically."""


# ── Helpers ──────────────────────────────────────────────────────

def _load_registry():
    """Load the model registry, exit on error."""
    try:
        return load_models()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading models:[/red] {e}")
        raise typer.Exit(1) from None


def _load_config():
    """Load refinement config, exit on error."""
    try:
        return load_refinement_config()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1) from None


def load_document(path: Path) -> LessonDocument:
    """Read a lesson from JSON (``{"sections": [...]}``) or Markdown."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return LessonDocument.model_validate_json(text)
    return LessonDocument.from_markdown(text)


def _read_document(path: Path) -> LessonDocument:
    try:
        return load_document(path)
    except OSError as e:
        console.print(f"[red]Cannot read document:[/red] {e}")
        raise typer.Exit(1) from None
    except (ValidationError, ValueError) as e:
        console.print(f"[red]Invalid document:[/red] {e}")
        raise typer.Exit(1) from None


def _read_spec(path: Path | None, document: LessonDocument, fallback_title: str) -> ContentSpec:
    if path is None:
        title = document.sections[0].title if document.sections else fallback_title
        return ContentSpec(title=title or fallback_title)
    try:
        return ContentSpec.model_validate_json(path.read_text(encoding="utf-8"))
    except OSError as e:
        console.print(f"[red]Cannot read spec:[/red] {e}")
        raise typer.Exit(1) from None
    except ValidationError as e:
        console.print(f"[red]Invalid spec:[/red] {e}")
        raise typer.Exit(1) from None


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _status_style(status: RefinementStatus) -> str:
    """Return a Rich style string for a terminal status."""
    return {
        RefinementStatus.ACCEPTED: "bold green",
        RefinementStatus.ACCEPTED_WITH_WARNING: "bold yellow",
        RefinementStatus.BEST_EFFORT: "bold yellow",
        RefinementStatus.ESCALATED: "bold red",
    }.get(status, "white")


def _print_event(event: RefinementEvent) -> None:
    """Console listener for refinement progress."""
    data = event.data
    if event.type is RefinementEventType.ITERATION_COMPLETE:
        delta = f" ({event.score_delta:+.3f})" if event.score_delta is not None else ""
        console.print(
            f"[bold]Iteration {event.iteration}[/bold]: score "
            f"{data.get('score', 0.0):.3f}{delta} via {data.get('stage')}"
        )
    elif event.type is RefinementEventType.ARBITER_COMPLETE:
        console.print(
            f"  [dim]plan: {data.get('tasks')} task(s) in {data.get('batches')} batch(es), "
            f"agreement {data.get('agreement', 0.0):.2f} ({data.get('tier')})[/dim]"
        )
    elif event.type is RefinementEventType.PATCH_APPLIED:
        console.print(f"  [green]✓[/green] {event.section_id} ({data.get('action')})")
    elif event.type is RefinementEventType.VERIFICATION_RESULT and not data.get("passed"):
        console.print(f"  [red]✗[/red] {event.section_id}: {data.get('reason')}")
    elif event.type is RefinementEventType.SECTION_LOCKED:
        console.print(f"  [yellow]⊘[/yellow] {event.section_id} locked")
    elif event.type is RefinementEventType.REGRESSION_DETECTED:
        console.print(
            f"  [red]regression[/red] in {event.section_id} on {data.get('criterion')}"
        )
    elif event.type is RefinementEventType.BUDGET_WARNING:
        console.print(
            f"  [yellow]budget warning:[/yellow] {data.get('tokens_used'):,} of "
            f"{data.get('token_budget'):,} tokens"
        )


def _display_outcome(outcome: RefinementOutcome) -> None:
    style = _status_style(outcome.status)
    lines = [
        f"Status: [{style}]{outcome.status.value}[/{style}] ({outcome.stop_reason.value})",
        f"Final score: {outcome.final_score:.3f}",
        f"Iterations: {outcome.iterations_used}",
        f"Tokens: {outcome.tokens_used:,}",
        f"Unresolved issues: {len(outcome.unresolved_issues)}",
    ]
    if outcome.locked_sections:
        lines.append(f"Locked sections: {', '.join(outcome.locked_sections)}")
    if outcome.regressions:
        lines.append(f"Regressions reverted: {len(outcome.regressions)}")
    if outcome.human_review:
        lines.append("[bold red]Human review required[/bold red]")
    if outcome.full_regeneration_required:
        lines.append("[bold red]Full regeneration required[/bold red]")
    if outcome.best_effort is not None:
        be = outcome.best_effort
        lines.append(
            f"Best effort: iteration {be.selected_iteration} "
            f"({be.quality_status.value})"
        )
        lines.extend(f"  • {hint}" for hint in be.improvement_hints)
    console.print(Panel("\n".join(lines), title="Refinement Outcome", border_style=style))


# ── lessonrefine check ───────────────────────────────────────────

@app.command()
def check(
    document: Path = typer.Argument(..., help="Lesson file (.json or .md)"),
    spec: Path = typer.Option(None, "--spec", "-s", help="Content spec JSON"),
) -> None:
    """Run the free heuristic checks and print metrics and failures."""
    config = _load_config()
    lesson = _read_document(document)
    content_spec = _read_spec(spec, lesson, document.stem)

    result = HeuristicFilter(config.heuristics).check(lesson, content_spec)

    table = Table(title="Heuristic Metrics", show_header=False, show_lines=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Score", f"{result.score:.3f}")
    table.add_row("Structural Score", f"{result.structural_score:.3f}")
    for name, value in sorted(result.metrics.items()):
        table.add_row(name, f"{value:.2f}" if isinstance(value, float) else str(value))
    console.print(table)

    if result.failures:
        failures = Table(title="Failures")
        failures.add_column("Check", style="cyan")
        failures.add_column("Severity")
        failures.add_column("Section", style="dim")
        failures.add_column("Message")
        for f in result.failures:
            failures.add_row(f.check, f.severity.value, f.section_id, f.message)
        console.print()
        console.print(failures)

    verdict = "[bold green]passed[/bold green]" if result.passed else "[bold red]failed[/bold red]"
    console.print(f"\nHeuristic filter {verdict}")
    if not result.passed:
        raise typer.Exit(1)


# ── lessonrefine refine ──────────────────────────────────────────

@app.command()
def refine(
    document: Path = typer.Argument(..., help="Lesson file (.json or .md)"),
    spec: Path = typer.Option(..., "--spec", "-s", help="Content spec JSON"),
    mode: str = typer.Option(None, "--mode", "-m", help="semi-auto or full-auto"),
    max_iterations: int = typer.Option(None, "--max-iterations", help="Hard iteration limit"),
    token_budget: int = typer.Option(None, "--token-budget", help="Session token budget"),
    timeout: float = typer.Option(None, "--timeout", help="Session timeout in seconds"),
    output: Path = typer.Option(None, "--output", "-o", help="Write the outcome JSON here"),
    as_json: bool = typer.Option(False, "--json", help="Print the outcome as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Evaluate and refine a lesson until it is accepted or the loop stops."""
    _configure_logging(verbose)
    config = _load_config()
    registry = _load_registry()

    updates: dict = {}
    if mode is not None:
        try:
            updates["mode"] = OperationMode(mode)
        except ValueError:
            console.print(f"[red]Unknown mode:[/red] {mode} (use semi-auto or full-auto)")
            raise typer.Exit(1) from None
    limit_updates = {
        k: v for k, v in {
            "max_iterations": max_iterations,
            "token_budget": token_budget,
            "timeout_seconds": timeout,
        }.items() if v is not None
    }
    if limit_updates:
        updates["limits"] = config.limits.model_copy(update=limit_updates)
    if updates:
        config = config.model_copy(update=updates)

    missing = missing_keys(required_key_envs(registry, config.cascade))
    if missing:
        console.print(f"[red]Missing API keys:[/red] {', '.join(missing)}")
        console.print("[dim]Add them to ~/.lessonrefine/keys.env or .env[/dim]")
        raise typer.Exit(1)

    lesson = _read_document(document)
    content_spec = _read_spec(spec, lesson, document.stem)

    events = RefinementEventEmitter()
    if not as_json:
        events.add_listener(_print_event)
    try:
        session = RefinementSession.from_registry(config, registry, events=events)
    except KeyError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1) from None

    try:
        outcome = asyncio.run(session.run(lesson, content_spec))
    except JudgeUnavailableError as e:
        console.print(f"[red]No judge available:[/red] {e}")
        raise typer.Exit(2) from None

    payload = outcome.model_dump_json(indent=2)
    if output is not None:
        output.write_text(payload, encoding="utf-8")
    if as_json:
        console.print_json(payload)
    else:
        _display_outcome(outcome)
        if output is not None:
            console.print(f"[dim]Outcome written to {output}[/dim]")


# ── lessonrefine models ──────────────────────────────────────────

@models_app.command("list")
def models_list() -> None:
    """Show all registered models as a table."""
    registry = _load_registry()

    table = Table(title="Registered Models", show_lines=True)
    table.add_column("Key", style="bold cyan")
    table.add_column("Display Name")
    table.add_column("Provider", style="dim")
    table.add_column("Context", justify="right")
    table.add_column("Input $/M", justify="right")
    table.add_column("Output $/M", justify="right")
    table.add_column("Accuracy", justify="right")

    for key, cfg in sorted(registry.items()):
        table.add_row(
            key,
            cfg.display_name,
            cfg.provider,
            f"{cfg.context_window:,}",
            f"${cfg.cost_input:.2f}",
            f"${cfg.cost_output:.2f}",
            f"{cfg.historical_accuracy:.2f}",
        )

    console.print(table)
    console.print(f"\n[dim]{len(registry)} models registered[/dim]")


# ── lessonrefine config ──────────────────────────────────────────

@config_app.command("show")
def config_show() -> None:
    """Show the resolved refinement configuration."""
    config = _load_config()

    table = Table(title="Refinement Configuration", show_header=False, show_lines=True)
    table.add_column("Setting", style="bold")
    table.add_column("Value")

    table.add_row("Mode", config.mode.value)
    for mode, thresholds in config.modes.items():
        table.add_row(
            f"Thresholds ({mode.value})",
            f"accept {thresholds.accept:.2f} / good enough {thresholds.good_enough:.2f}",
        )
    table.add_row("Max Iterations", str(config.limits.max_iterations))
    table.add_row("Token Budget", f"{config.limits.token_budget:,}")
    table.add_row("Timeout", f"{config.limits.timeout_seconds:g}s")
    table.add_row("Regression Tolerance", f"{config.regression_tolerance:.2f}")
    table.add_row("Lock After Edits", str(config.section_lock_after_edits))
    table.add_row("Convergence Threshold", f"{config.convergence_threshold:.2f}")
    table.add_row("Agreement Tiers", f"{config.alpha_high:.2f} / {config.alpha_moderate:.2f}")
    table.add_row("Concurrency (K)", str(config.execution.max_concurrent))
    console.print(table)

    cascade = config.cascade
    models = Table(title="Cascade Models")
    models.add_column("Role", style="cyan")
    models.add_column("Model")
    models.add_row("Single judge", cascade.single_judge or "(none)")
    models.add_row("Voting judges", ", ".join(cascade.voting_judges) or "(none)")
    models.add_row("Tiebreaker", cascade.tiebreaker or "(none)")
    models.add_row("Delta judge", cascade.delta_judge or "(none)")
    models.add_row("Generator", cascade.generator or "(none)")
    console.print()
    console.print(models)
