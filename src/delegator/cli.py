"""CLI entry point for the agent delegation runtime."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from delegator import __version__
from delegator.errors import DelegationError

if TYPE_CHECKING:
    from delegator.config import RuntimeConfig
    from delegator.models.capabilities import CapabilityManifest
    from delegator.models.contracts import AcceptanceDecision, DelegationContract
    from delegator.runtime.agent_runtime import DelegationOutcome
    from delegator.telemetry.events import TelemetryEvent, TelemetryQueryFilter

console = Console()

_STATUS_COLOR = {
    "completed": "green",
    "failed": "red",
    "timeout": "yellow",
    "cancelled": "dim",
    "active": "cyan",
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(version=__version__, prog_name="delegator")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: <data dir>/config.toml)",
)
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Data directory (default: ~/.delegator)",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, data_dir: Path | None, verbose: bool) -> None:
    """Agent delegation runtime: capability discovery, admission, execution and telemetry."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["data_dir"] = data_dir
    ctx.obj["verbose"] = verbose


# ── Helpers ───────────────────────────────────────────────────────────────


def _get_config(ctx: click.Context) -> RuntimeConfig:
    from delegator.config import load_config

    env = dict(os.environ)
    data_dir = ctx.obj.get("data_dir")
    if data_dir is not None:
        env["DELEGATOR_DATA_DIR"] = str(data_dir)
    try:
        return load_config(ctx.obj.get("config_path"), env=env)
    except (DelegationError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc


def _load_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path}: invalid JSON ({exc})") from exc


def _load_manifests(path: Path) -> list[CapabilityManifest]:
    """Read one manifest, a list of manifests, or {"manifests": [...]}."""
    from delegator.models.capabilities import CapabilityManifest

    data = _load_json(path)
    if isinstance(data, dict):
        data = data.get("manifests", [data])
    try:
        return [CapabilityManifest.from_dict(item) for item in data]
    except (DelegationError, ValueError, KeyError, TypeError) as exc:
        raise click.ClickException(f"{path}: invalid manifest ({exc})") from exc


def _load_contract(path: Path) -> DelegationContract:
    from delegator.models.contracts import DelegationContract

    try:
        return DelegationContract.from_dict(_load_json(path))
    except (DelegationError, ValueError, KeyError, TypeError) as exc:
        raise click.ClickException(f"{path}: invalid contract ({exc})") from exc


def _registry_with(manifests: list[CapabilityManifest]):
    from delegator.registry.capability_registry import CapabilityRegistry

    registry = CapabilityRegistry()
    for manifest in manifests:
        try:
            registry.register_manifest(manifest)
        except DelegationError as exc:
            raise click.ClickException(str(exc)) from exc
    return registry


def _query_events(db_path: Path, query: TelemetryQueryFilter) -> list[TelemetryEvent]:
    from delegator.telemetry.sinks import SQLiteTelemetrySink

    async def _read() -> list[TelemetryEvent]:
        async with SQLiteTelemetrySink(db_path) as sink:
            return await sink.query_events(query)

    return asyncio.run(_read())


def _db_path(ctx: click.Context, db: Path | None) -> Path | None:
    path = db or _get_config(ctx).telemetry_db_path
    if not path.exists():
        console.print("[dim]No telemetry recorded yet. Run a contract first.[/dim]")
        return None
    return path


def _print_decision(decision: AcceptanceDecision) -> None:
    if decision.can_accept:
        console.print(
            f"[green]Accepted[/green] (confidence {decision.confidence:.2f}, "
            f"estimated {decision.estimated_completion_ms}ms)"
        )
    else:
        gate = f" ({decision.gate})" if decision.gate else ""
        console.print(f"[red]Rejected{gate}:[/red] {decision.reason}")

    assessment = decision.assessment
    table = Table(title="Assessment")
    table.add_column("Factor", style="cyan")
    table.add_column("Score", justify="right")
    table.add_row("Capability match", f"{assessment.capability_match:.2f}")
    table.add_row("Resource availability", f"{assessment.resource_availability:.2f}")
    table.add_row("Workload capacity", f"{assessment.workload_capacity:.2f}")
    table.add_row("Reputation", f"{assessment.reputation_compliance:.2f}")
    table.add_row("Firebreak compliance", f"{assessment.firebreak_compliance:.2f}")
    console.print(table)


def _print_outcome(outcome: DelegationOutcome) -> None:
    _print_decision(outcome.decision)
    result = outcome.result
    if result is None:
        return
    color = _STATUS_COLOR.get(str(result.status), "dim")
    console.print(f"\n[{color}]Status: {result.status}[/{color}]")
    console.print(f"Execution: {result.execution_id}")
    console.print(f"Duration: {result.metrics.execution_time_ms:.0f}ms")
    console.print(f"Attempts: {result.metrics.attempts}")
    if result.verification is not None:
        console.print(
            f"Verification: {result.verification.method} "
            f"(quality {result.verification.quality_score:.2f})"
        )
    if result.output is not None:
        console.print(f"Output: {json.dumps(result.output, default=str)}")


# ── Commands ──────────────────────────────────────────────────────────────


@main.command()
@click.option("--force", is_flag=True, help="Overwrite an existing config.toml")
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Initialize the data directory, config file and telemetry database."""
    from delegator.config import write_default_config
    from delegator.telemetry.sinks import SQLiteTelemetrySink

    config = _get_config(ctx)
    config_file = write_default_config(config.data_dir, overwrite=force)

    async def _create_db() -> None:
        async with SQLiteTelemetrySink(config.telemetry_db_path):
            pass

    asyncio.run(_create_db())
    console.print(f"[green]Delegator initialized at {config.data_dir}[/green]")
    console.print(f"  Config:    {config_file}")
    console.print(f"  Telemetry: {config.telemetry_db_path}")


@main.command()
@click.argument("manifests", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-c", "--capability", "capabilities", multiple=True, help="Required capability id")
@click.option("--min-confidence", type=float, default=None, help="Minimum confidence level")
@click.option("--min-success-rate", type=float, default=None, help="Minimum success rate")
@click.option("--max-time", type=int, default=None, help="Maximum completion estimate (ms)")
@click.option("--tag", "tags", multiple=True, help="Required tag")
@click.option("--pattern", "patterns", multiple=True, help="Task pattern the capability must handle")
@click.option("--available-only", is_flag=True, help="Skip busy and offline agents")
@click.option("--limit", default=10, help="Number of matches to show")
def query(
    manifests: Path,
    capabilities: tuple[str, ...],
    min_confidence: float | None,
    min_success_rate: float | None,
    max_time: int | None,
    tags: tuple[str, ...],
    patterns: tuple[str, ...],
    available_only: bool,
    limit: int,
) -> None:
    """Find capabilities across the agents in a MANIFESTS JSON file."""
    from delegator.models.capabilities import CapabilityQuery

    registry = _registry_with(_load_manifests(manifests))
    try:
        capability_query = CapabilityQuery(
            required_capabilities=list(capabilities),
            min_confidence=min_confidence,
            min_success_rate=min_success_rate,
            max_completion_time_ms=max_time,
            required_tags=list(tags),
            task_patterns=list(patterns),
            only_available=available_only,
        )
    except DelegationError as exc:
        raise click.ClickException(str(exc)) from exc

    matches = registry.query_capabilities(capability_query)[:limit]
    if not matches:
        console.print("[dim]No matching capabilities.[/dim]")
        return

    table = Table(title="Capability Matches")
    table.add_column("Agent", style="cyan")
    table.add_column("Capability", style="green")
    table.add_column("Confidence", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Score", justify="right", style="bold")
    table.add_column("Load")
    table.add_column("Warnings", max_width=40)

    for match in matches:
        table.add_row(
            match.agent_id,
            match.capability.capability_id,
            f"{match.capability.confidence_level:.2f}",
            f"{match.capability.success_rate:.0%}",
            f"{match.score:.3f}",
            f"{match.current_workload}/{match.max_concurrent_tasks}",
            "; ".join(match.warnings),
        )
    console.print(table)


@main.command()
@click.argument("manifests", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("contract", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the decision as JSON")
@click.pass_context
def evaluate(ctx: click.Context, manifests: Path, contract: Path, as_json: bool) -> None:
    """Decide whether the contract's delegatee would accept CONTRACT."""
    from delegator.runtime.agent_runtime import AgentRuntime
    from delegator.runtime.handlers import simulated_handler

    config = _get_config(ctx)
    registry = _registry_with(_load_manifests(manifests))
    parsed = _load_contract(contract)
    config = dataclasses.replace(config, agent_id=parsed.delegatee_agent_id)
    runtime = AgentRuntime(config, registry, simulated_handler())

    decision = runtime.evaluate_contract(parsed)
    if as_json:
        click.echo(json.dumps(decision.to_dict(), indent=2))
    else:
        _print_decision(decision)


@main.command()
@click.argument("manifests", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("contract", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--steps", default=4, help="Simulated progress steps")
@click.option("--step-delay", default=0.05, help="Seconds between simulated steps")
@click.option("--fail", is_flag=True, help="Make the simulated task fail")
@click.option("--db", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Telemetry database (default: <data dir>/telemetry.db)")
@click.option("--show-events", is_flag=True, help="Echo telemetry events as they flush")
@click.pass_context
def run(
    ctx: click.Context,
    manifests: Path,
    contract: Path,
    steps: int,
    step_delay: float,
    fail: bool,
    db: Path | None,
    show_events: bool,
) -> None:
    """Negotiate and execute CONTRACT with a simulated task body."""
    from delegator.errors import ExecutionError
    from delegator.runtime.agent_runtime import AgentRuntime
    from delegator.runtime.handlers import simulated_handler
    from delegator.telemetry.bridge import TelemetryBridge
    from delegator.telemetry.engine import TelemetryEngine
    from delegator.telemetry.sinks import ConsoleTelemetrySink, SQLiteTelemetrySink, TelemetrySink

    config = _get_config(ctx)
    registry = _registry_with(_load_manifests(manifests))
    parsed = _load_contract(contract)
    config = dataclasses.replace(config, agent_id=parsed.delegatee_agent_id)

    sinks: list[TelemetrySink] = [SQLiteTelemetrySink(db or config.telemetry_db_path)]
    if show_events:
        sinks.append(ConsoleTelemetrySink(console))
    handler = simulated_handler(
        steps=steps,
        step_delay_s=step_delay,
        fail_with=RuntimeError("simulated task failure") if fail else None,
    )

    async def _run() -> tuple[DelegationOutcome | None, ExecutionError | None]:
        telemetry = TelemetryEngine(config.agent_id, config.telemetry, sinks)
        runtime = AgentRuntime(config, registry, handler)
        runtime.add_listener(TelemetryBridge(telemetry))
        async with telemetry:
            try:
                return await runtime.delegate(parsed), None
            except ExecutionError as exc:
                return None, exc

    try:
        outcome, error = asyncio.run(_run())
    except DelegationError as exc:
        raise click.ClickException(str(exc)) from exc

    console.print(f"[bold cyan]Contract:[/bold cyan] {parsed.contract_id} -> {parsed.delegatee_agent_id}")
    if outcome is not None:
        _print_outcome(outcome)
        return

    assert error is not None
    console.print(f"\n[red]Status: {parsed.status}[/red]")
    console.print(f"Error: {error}")
    if error.result is not None:
        console.print(f"Attempts: {error.result.metrics.attempts}")
    ctx.exit(1)


@main.command()
@click.option("--agent", "agent_id", default=None, help="Filter by agent id")
@click.option("--contract", "contract_id", default=None, help="Filter by contract id")
@click.option("--chain", "chain_root_id", default=None, help="Filter by chain root id")
@click.option("--type", "event_types", multiple=True, help="Filter by event type")
@click.option("--severity", "severities", multiple=True, help="Filter by severity")
@click.option("--limit", default=50, help="Number of events to show")
@click.option("--db", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.pass_context
def events(
    ctx: click.Context,
    agent_id: str | None,
    contract_id: str | None,
    chain_root_id: str | None,
    event_types: tuple[str, ...],
    severities: tuple[str, ...],
    limit: int,
    db: Path | None,
) -> None:
    """Show recorded telemetry events, newest first."""
    from delegator.telemetry.events import TelemetryQueryFilter

    path = _db_path(ctx, db)
    if path is None:
        return
    try:
        query_filter = TelemetryQueryFilter.from_params(
            agent_id=agent_id,
            contract_id=contract_id,
            chain_root_id=chain_root_id,
            event_types=event_types,
            severities=severities,
            limit=limit,
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    rows = _query_events(path, query_filter)
    if not rows:
        console.print("[dim]No matching events.[/dim]")
        return

    table = Table(title="Telemetry Events")
    table.add_column("Time", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Severity")
    table.add_column("Agent", style="green")
    table.add_column("Contract")
    table.add_column("Chain")
    for event in rows:
        table.add_row(
            f"{event.timestamp:%Y-%m-%d %H:%M:%S}",
            str(event.event_type),
            str(event.severity),
            event.agent_id,
            event.contract_id,
            f"{event.root_id}@{event.chain_correlation.chain_depth}",
        )
    console.print(table)


@main.command()
@click.argument("root_id")
@click.option("--db", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.pass_context
def analyze(ctx: click.Context, root_id: str, db: Path | None) -> None:
    """Analyze the delegation chain rooted at ROOT_ID."""
    from delegator.errors import ChainNotFoundError
    from delegator.telemetry.analysis import analyze_chain
    from delegator.telemetry.events import TelemetryQueryFilter

    path = _db_path(ctx, db)
    if path is None:
        return
    rows = _query_events(path, TelemetryQueryFilter(chain_root_id=root_id))
    try:
        analysis = analyze_chain(rows, root_id)
    except ChainNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc

    console.print(f"[bold]Chain:[/bold] {analysis.root_delegation_id}")
    console.print(f"[bold]Contracts:[/bold] {analysis.total_contracts}")
    console.print(f"[bold]Max depth:[/bold] {analysis.max_depth}")
    console.print(f"[bold]Participants:[/bold] {', '.join(analysis.participants)}")
    console.print(f"[bold]Duration:[/bold] {analysis.duration_ms:.0f}ms")
    console.print(f"[bold]Success rate:[/bold] {analysis.success_rate:.0%}")
    console.print(f"[bold]Retries:[/bold] {analysis.total_retries}")

    table = Table(title="Timeline")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Contract")
    table.add_column("Agent", style="green")
    table.add_column("Depth", justify="right")
    for entry in analysis.timeline:
        table.add_row(
            f"{entry.timestamp:%H:%M:%S.%f}"[:-3],
            str(entry.event_type),
            entry.contract_id,
            entry.agent_id,
            str(entry.chain_depth),
        )
    console.print(table)


@main.command()
@click.option("--max-depth", default=10, help="Depth above which a chain is flagged")
@click.option("--max-duration-ms", default=300_000.0, help="Duration above which a chain is flagged")
@click.option("--min-success-rate", default=0.8, help="Success rate below which a chain is flagged")
@click.option("--max-retries", default=5, help="Retry count above which a chain is flagged")
@click.option("--db", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.pass_context
def anomalies(
    ctx: click.Context,
    max_depth: int,
    max_duration_ms: float,
    min_success_rate: float,
    max_retries: int,
    db: Path | None,
) -> None:
    """Flag delegation chains that break depth, duration, success or retry limits."""
    from delegator.telemetry.analysis import AnomalyThresholds, find_anomalies
    from delegator.telemetry.events import TelemetryQueryFilter

    path = _db_path(ctx, db)
    if path is None:
        return
    thresholds = AnomalyThresholds(max_depth, max_duration_ms, min_success_rate, max_retries)
    found = find_anomalies(_query_events(path, TelemetryQueryFilter()), thresholds)
    if not found:
        console.print("[green]No anomalies detected.[/green]")
        return

    table = Table(title="Chain Anomalies")
    table.add_column("Chain", style="cyan")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Description")
    for anomaly in found:
        color = "red" if anomaly.severity == "critical" else "yellow"
        table.add_row(
            anomaly.root_delegation_id,
            str(anomaly.anomaly_type),
            f"[{color}]{anomaly.severity}[/{color}]",
            anomaly.description,
        )
    console.print(table)


@main.command()
@click.option("--start", default=None, help="ISO-8601 start of the window")
@click.option("--end", default=None, help="ISO-8601 end of the window")
@click.option("--db", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.pass_context
def summary(ctx: click.Context, start: str | None, end: str | None, db: Path | None) -> None:
    """Summarize performance over recorded telemetry."""
    from delegator.models.capabilities import parse_timestamp
    from delegator.telemetry.analysis import generate_performance_summary
    from delegator.telemetry.events import TelemetryQueryFilter

    path = _db_path(ctx, db)
    if path is None:
        return
    try:
        window_start, window_end = parse_timestamp(start), parse_timestamp(end)
    except ValueError as exc:
        raise click.ClickException(f"Invalid timestamp: {exc}") from exc

    report = generate_performance_summary(
        _query_events(path, TelemetryQueryFilter()), window_start, window_end
    )
    console.print(f"[bold]Events:[/bold] {report.total_events}")
    console.print(f"[bold]Contracts:[/bold] {report.total_contracts} in {report.total_chains} chain(s)")
    console.print(
        f"[bold]Outcomes:[/bold] {report.completed} completed, {report.failed} failed "
        f"({report.success_rate:.0%})"
    )
    console.print(f"[bold]Avg execution:[/bold] {report.average_execution_time_ms:.0f}ms")
    console.print(f"[bold]Avg lifecycle:[/bold] {report.average_lifecycle_time_ms:.0f}ms")

    if report.busiest_agents:
        table = Table(title="Busiest Agents")
        table.add_column("Agent", style="cyan")
        table.add_column("Events", justify="right")
        for agent_id, count in report.busiest_agents:
            table.add_row(agent_id, str(count))
        console.print(table)


@main.command()
@click.option("--port", default=3850, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
def serve(port: int, host: str) -> None:
    """Start the HTTP API server."""
    import uvicorn

    from delegator.api.server import app

    uvicorn.run(app, host=host, port=port)
