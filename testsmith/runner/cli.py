from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Awaitable, Optional, TypeVar

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from testsmith.core.config import TestsmithConfig
from testsmith.core.exceptions import ConfigurationError, PlannerError, SessionStartError
from testsmith.core.logging import configure_logging, get_logger
from testsmith.core.metrics import ensure_metrics_server
from testsmith.core.schemas import Scenario
from testsmith.emitter.codegen import CodeEmitter
from testsmith.llm.factory import oracle_from_config
from testsmith.runner.pipeline import GenerationPipeline, PipelineResult, validate_inputs
from testsmith.store.artifacts import VALIDATED_PLAN_FILE, ArtifactStore
from testsmith.store.report import summary_rows

load_dotenv()

app = typer.Typer(help="Generate validated Playwright UI tests from a requirement.")
log = get_logger("cli")
console = Console()

EXIT_CONFIG = 2
EXIT_PLANNER = 3
EXIT_SESSION = 4
EXIT_INTERRUPTED = 130

T = TypeVar("T")


def _slugify(text: str) -> str:
    return "-".join("".join(c.lower() if c.isalnum() else " " for c in text).split())[:60] or "run"


def _load_config(config_path: Optional[Path]) -> TestsmithConfig:
    return TestsmithConfig.load(config_path)


def _run_async(coro: Awaitable[T]) -> T:
    """Run ``coro``; SIGINT/SIGTERM cancel it so open browser sessions close cleanly."""

    async def _main() -> T:
        task = asyncio.ensure_future(coro)
        loop = asyncio.get_running_loop()

        def _shutdown(sig: signal.Signals) -> None:
            log.info("shutdown_signal_received", signal=sig.name)
            console.print("\n[yellow]Shutdown signal received. Cancelling current stage...[/yellow]")
            task.cancel()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _shutdown, sig)
            except NotImplementedError:
                # Windows event loops; Ctrl+C still raises KeyboardInterrupt
                log.debug("signal_handler_unavailable", signal=sig.name)
        return await task

    return asyncio.run(_main())


def _fail(exc: Exception) -> None:
    """Print ``exc`` and exit with its code."""
    if isinstance(exc, ConfigurationError):
        console.print(f"[red]✖ Configuration error:[/red] {exc}")
        raise typer.Exit(EXIT_CONFIG)
    if isinstance(exc, PlannerError):
        console.print(f"[red]✖ Planning failed:[/red] {exc}")
        console.print("[yellow]💡 Try:[/yellow] check the oracle credentials or rephrase the requirement.")
        raise typer.Exit(EXIT_PLANNER)
    if isinstance(exc, SessionStartError):
        console.print(f"[red]✖ Browser could not start:[/red] {exc}")
        console.print("[yellow]💡 Try:[/yellow] playwright install chromium")
        raise typer.Exit(EXIT_SESSION)
    raise exc


def _print_result(result: PipelineResult) -> None:
    table = Table(show_header=True, header_style="bold cyan", box=None)
    table.add_column("Metric", style="dim")
    table.add_column("Value", justify="right", style="bold")
    if result.summary is not None:
        for name, value in summary_rows(result.summary).items():
            table.add_row(name, str(value))
    else:
        table.add_row("Scenarios", str(len(result.plan.scenarios)))
        table.add_row("Validation", "skipped")
    table.add_row("Selectors", str(len(result.selectors)))
    for stage, seconds in result.timings.items():
        table.add_row(f"{stage.capitalize()} time", f"{seconds:.1f}s")
    console.print(Panel(table, title="[bold green]✓ Tests generated[/bold green]", border_style="green"))
    console.print(f"\n[bold cyan]📁 Output:[/bold cyan] {result.output_dir}")
    console.print(f"[bold cyan]🧪 Tests:[/bold cyan] {result.output_dir / 'tests' / 'ui-tests.spec.js'}")
    console.print(f"[bold cyan]📄 Report:[/bold cyan] {result.output_dir / 'report.md'}\n")


def _scenario_done(index: int, scenario: Scenario) -> None:
    if scenario.validated:
        console.print(f"  [green]✓[/green] {scenario.name} [dim]({scenario.attempts} attempt(s))[/dim]")
    else:
        console.print(f"  [yellow]✗[/yellow] {scenario.name} [dim]unvalidated after {scenario.attempts} attempt(s)[/dim]")
        if scenario.errors:
            console.print(f"      [dim]{scenario.errors[-1]}[/dim]")


@app.command()
def generate(
    requirement: str = typer.Argument(..., help="Natural-language testing requirement"),
    project: Path = typer.Option(Path("."), "--project", "-p", help="Path to the frontend project"),
    base_url: str = typer.Option(..., "--base-url", "-u", help="URL of the running application"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output directory"),
    skip_validation: bool = typer.Option(False, "--skip-validation", help="Emit tests without replaying them"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", min=1, help="Attempts per scenario"),
    max_tool_calls: Optional[int] = typer.Option(None, "--max-tool-calls", min=0, help="Tool-call budget for analysis"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config.yaml"),
) -> None:
    """Analyze the project, validate scenarios against the live app, and emit Playwright tests."""
    configure_logging()
    console.print(Panel.fit(
        f"[bold cyan]🧪 testsmith[/bold cyan] - [dim]UI test generation[/dim]\n"
        f"[bold]Requirement:[/bold] {requirement}\n"
        f"[bold]Project:[/bold] {project} | [bold]URL:[/bold] {base_url}",
        border_style="cyan",
        padding=(1, 2),
    ))

    cfg = _load_config(config)
    if max_tool_calls is not None:
        cfg.analysis.max_tool_calls = max_tool_calls
    if cfg.metrics.enabled:
        ensure_metrics_server(cfg.metrics.prometheus_port)
    output_dir = output or Path(cfg.output.base_dir) / _slugify(requirement)

    try:
        pipeline = GenerationPipeline(cfg, oracle_from_config(cfg))
        console.print("[cyan]Running pipeline[/cyan] [dim](analysis → validation → emission)[/dim]")
        result = _run_async(pipeline.run(
            requirement,
            project,
            base_url,
            output_dir,
            skip_validation=skip_validation,
            max_iterations=max_iterations,
            on_scenario_done=_scenario_done,
        ))
    except asyncio.CancelledError:
        console.print("[yellow]Generation cancelled.[/yellow]")
        raise typer.Exit(EXIT_INTERRUPTED)
    except (ConfigurationError, PlannerError, SessionStartError) as exc:
        _fail(exc)
        return
    _print_result(result)
    log.info("generation_complete", output=str(result.output_dir), files=len(result.files))


@app.command()
def analyze(
    requirement: str = typer.Argument(..., help="Natural-language testing requirement"),
    project: Path = typer.Option(Path("."), "--project", "-p", help="Path to the frontend project"),
    base_url: str = typer.Option(..., "--base-url", "-u", help="URL of the running application"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output directory"),
    max_tool_calls: Optional[int] = typer.Option(None, "--max-tool-calls", min=0),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config.yaml"),
) -> None:
    """Run the analysis stage only and write plan.json."""
    configure_logging()
    cfg = _load_config(config)
    if max_tool_calls is not None:
        cfg.analysis.max_tool_calls = max_tool_calls
    output_dir = output or Path(cfg.output.base_dir) / _slugify(requirement)

    async def _analyze():
        validate_inputs(requirement, project, base_url)
        pipeline = GenerationPipeline(cfg, oracle_from_config(cfg))
        return await pipeline.analyze(requirement, project, base_url)

    try:
        with console.status("[bold cyan]Analyzing project...", spinner="dots"):
            analysis, plan, planner = _run_async(_analyze())
    except asyncio.CancelledError:
        raise typer.Exit(EXIT_INTERRUPTED)
    except (ConfigurationError, PlannerError, SessionStartError) as exc:
        _fail(exc)
        return

    store = ArtifactStore(output_dir)
    store.write_analysis(analysis)
    path = store.write_plan(plan)
    if planner.last_report is not None:
        store.write_constitution_report(planner.last_report)
        for warning in planner.last_report.warnings:
            console.print(f"  [yellow]⚠[/yellow] {warning.rule_name}: {warning.reason}")
    if not analysis.complete:
        console.print("[yellow]⚠ Analysis stopped early; routes were reconstructed from tool results[/yellow]")
    console.print(f"[green]✓[/green] Planned [bold]{len(plan.scenarios)}[/bold] scenarios → {path}")


@app.command()
def emit(
    input_dir: Path = typer.Argument(..., help="Directory holding validated-plan.json or plan.json"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output directory (default: input directory)"),
) -> None:
    """Emit the Playwright project from saved artifacts."""
    configure_logging()
    store = ArtifactStore(input_dir)
    validated = (input_dir / VALIDATED_PLAN_FILE).exists()
    try:
        plan = store.load_plan(validated=validated)
    except ConfigurationError as exc:
        _fail(exc)
        return
    if not validated:
        console.print("[yellow]⚠ No validated plan found; emitting plan.json with every scenario tagged @unvalidated[/yellow]")
    files = CodeEmitter(output or input_dir).emit(plan, store.load_selectors())
    console.print(f"[green]✓[/green] Wrote [bold]{len(files)}[/bold] files to {output or input_dir}")


if __name__ == "__main__":
    app()
