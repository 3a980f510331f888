"""
Typer CLI for the learnbuild pipeline stages.

Commands:
    learnbuild init-db                         - Create database tables
    learnbuild compact-traces [--dry-run]      - Compact old decision-trace payloads
    learnbuild evaluate-variants [--limit N]   - Turn matured variant exposures into outcomes
    learnbuild plan-runtime PATH_ID [--force]  - Build the runtime (cadence) plan for a path
    learnbuild select-probes USER SET          - Pick adaptive probes for a learner's next lessons
    learnbuild refine-grouping USER SET PATH   - Re-cluster an intake's proposed paths
    learnbuild info                            - Show configuration

Usage:
    learnbuild --help
    learnbuild compact-traces --dry-run --limit 1000
    learnbuild select-probes <user-id> <set-id> --path-id <path-id>
"""

from __future__ import annotations

import sys
from typing import Any, Optional
from uuid import UUID

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config import get_settings
from src.core.errors import PipelineError

app = typer.Typer(help="learnbuild CLI: grounded lesson docs, probes and runtime plans", no_args_is_help=True)
console = Console()


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Install the stderr sink and, when configured, a rotating file sink."""
    settings = get_settings()
    level = level or settings.log_level
    log_file = log_file if log_file is not None else settings.log_file
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}",
    )
    if log_file:
        logger.add(log_file, level=level, rotation="10 MB", retention=5)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
) -> None:
    configure_logging(level="DEBUG" if verbose else None)


def _parse_uuid(raw: str, name: str) -> UUID:
    try:
        return UUID(raw.strip())
    except ValueError:
        rprint(f"[red]✗[/red] {name} is not a valid UUID: {raw!r}")
        raise typer.Exit(code=2)


def _print_counts(title: str, counts: dict[str, Any]) -> None:
    table = Table(title=title, show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in counts.items():
        table.add_row(key, str(value))
    console.print(table)


def _fail(e: PipelineError) -> None:
    logger.error(f"{e.kind}: {e}")
    rprint(f"[red]✗[/red] {e.kind}: {e}")
    raise typer.Exit(code=1)


# ========================================
# DATABASE
# ========================================


@app.command("init-db")
def init_db_command() -> None:
    """
    Create all tables from the SQLAlchemy models.

    Safe to run multiple times (idempotent).
    """
    from src.db.database import init_db

    logger.info("Initializing database tables...")
    init_db()
    rprint("[green]✓[/green] Database initialized!")


# ========================================
# MAINTENANCE
# ========================================


@app.command("compact-traces")
def compact_traces(
    dry_run: bool = typer.Option(False, "--dry-run", help="Count changes without writing"),
    limit: int = typer.Option(0, "--limit", help="Max rows scanned per table (0 = all)"),
    force: bool = typer.Option(False, "--force", help="Run even when TRACE_COMPACTION_ENABLED is off"),
) -> None:
    """
    Compact oversized candidate payloads in old decision-trace rows.

    Examples:
        learnbuild compact-traces --dry-run
        learnbuild compact-traces --limit 5000
    """
    from dataclasses import replace

    from src.db.database import session_scope
    from src.db.trace_compactor import TraceCompactionConfig, TraceCompactor

    config = TraceCompactionConfig.from_env()
    if force:
        config = replace(config, enabled=True)
    if not config.enabled:
        rprint("[yellow]⚠[/yellow] Trace compaction is disabled (set TRACE_COMPACTION_ENABLED=true or pass --force)")
        return

    with session_scope() as session:
        result = TraceCompactor(session, config).run(dry_run=dry_run, limit=max(0, limit))

    table = Table(title=f"Trace Compaction{' (dry run)' if dry_run else ''}", show_header=True)
    table.add_column("Table", style="cyan")
    table.add_column("Scanned", justify="right")
    table.add_column("Updated", justify="right", style="green")
    table.add_column("Skipped", justify="right", style="dim")
    for stats in result.tables:
        table.add_row(stats.table, str(stats.scanned), str(stats.updated), str(stats.skipped))
    table.add_row("[bold]Total[/bold]", str(result.total_scanned), str(result.total_updated), "")
    console.print(table)


@app.command("evaluate-variants")
def evaluate_variants(
    limit: int = typer.Option(0, "--limit", help="Max exposures to evaluate (0 = policy default)"),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Only this learner's exposures"),
) -> None:
    """Create outcome rows for doc variant exposures old enough to evaluate."""
    from src.adaptive.variant_evaluator import VariantEvaluator
    from src.db.database import session_scope

    uid = _parse_uuid(user_id, "user id") if user_id else None
    with session_scope() as session:
        result = VariantEvaluator(session).evaluate(user_id=uid, limit=limit or None)
    _print_counts(
        "Variant Evaluation",
        {
            "considered": result.considered,
            "outcomes_created": result.outcomes_created,
            "outcomes_skipped": result.outcomes_skipped,
        },
    )


# ========================================
# ADAPTIVE STAGES
# ========================================


@app.command("plan-runtime")
def plan_runtime(
    path_id: str = typer.Argument(..., help="Path to plan"),
    force: bool = typer.Option(False, "--force", help="Rebuild even if a plan exists"),
) -> None:
    """
    Build the runtime plan (session length, breaks, probe cadence) for a path.

    Without an LLM client the heuristic plan is used.
    """
    from src.adaptive.runtime_planner import RuntimePlanner
    from src.db.database import session_scope
    from src.db.models import Path

    pid = _parse_uuid(path_id, "path id")
    try:
        with session_scope() as session:
            path = session.get(Path, pid)
            if path is None:
                rprint(f"[red]✗[/red] Path {pid} not found")
                raise typer.Exit(code=1)
            result = RuntimePlanner(session).build(path.user_id, pid, force=force)
    except PipelineError as e:
        _fail(e)

    policy = result.plan.get("path", {})
    _print_counts(
        f"Runtime Plan ({result.source}{', reused' if result.reused else ''})",
        {
            "target_session_minutes": policy.get("target_session_minutes"),
            "max_prompts_per_hour": policy.get("max_prompts_per_hour"),
            "break_after_minutes": policy.get("break_policy", {}).get("after_minutes"),
            "policy_profile": policy.get("policy_profile"),
            "modules": len(result.plan.get("modules", [])),
            "lessons": len(result.plan.get("lessons", [])),
            "nodes_updated": result.nodes_updated,
        },
    )


@app.command("select-probes")
def select_probes(
    user_id: str = typer.Argument(..., help="Learner"),
    material_set_id: str = typer.Argument(..., help="Material set the path was built from"),
    path_id: Optional[str] = typer.Option(None, "--path-id", help="Path (defaults to the set's latest path)"),
    lookahead: int = typer.Option(0, "--lookahead", help="Nodes after the active node (0 = policy default)"),
) -> None:
    """Select adaptive probes in the learner's upcoming lesson docs."""
    from sqlalchemy import select

    from src.adaptive.probe_selector import ProbeSelector
    from src.db.database import session_scope
    from src.db.models import Path

    uid = _parse_uuid(user_id, "user id")
    sid = _parse_uuid(material_set_id, "material set id")
    try:
        with session_scope() as session:
            pid = _parse_uuid(path_id, "path id") if path_id else session.scalar(
                select(Path.id)
                .where(Path.user_id == uid, Path.material_set_id == sid)
                .order_by(Path.created_at.desc())
                .limit(1)
            )
            if pid is None:
                rprint(f"[red]✗[/red] No path found for material set {sid}")
                raise typer.Exit(code=1)
            result = ProbeSelector(session).select(uid, sid, pid, lookahead=lookahead)
    except PipelineError as e:
        _fail(e)

    _print_counts(
        "Probe Selection",
        {
            "nodes_considered": result.nodes_considered,
            "docs_considered": result.docs_considered,
            "blocks_considered": result.blocks_considered,
            "probes_selected": result.probes_selected,
            "docs_updated": result.docs_updated,
            "rate_limited": result.rate_limited,
        },
    )


@app.command("refine-grouping")
def refine_grouping(
    user_id: str = typer.Argument(..., help="Path owner"),
    material_set_id: str = typer.Argument(..., help="Material set"),
    path_id: str = typer.Argument(..., help="Path whose intake is refined"),
    no_wait: bool = typer.Option(False, "--no-wait", help="Never ask the user; skip low-confidence groupings"),
) -> None:
    """Re-cluster the files behind an intake's proposed paths."""
    from src.curriculum.grouping_refiner import GroupingRefiner
    from src.db.database import session_scope

    uid = _parse_uuid(user_id, "user id")
    sid = _parse_uuid(material_set_id, "material set id")
    pid = _parse_uuid(path_id, "path id")
    try:
        with session_scope() as session:
            result = GroupingRefiner(session).refine(uid, sid, pid, wait_for_user=False if no_wait else None)
    except PipelineError as e:
        _fail(e)

    _print_counts(
        "Grouping Refinement",
        {
            "status": result.status,
            "mode": result.mode or "-",
            "paths_before": result.paths_before,
            "paths_after": result.paths_after,
            "files_considered": result.files_considered,
            "confidence": f"{result.confidence:.2f}",
        },
    )


# ========================================
# INFO
# ========================================


@app.command("info")
def show_info() -> None:
    """Show current configuration."""
    settings = get_settings()
    table = Table(title="learnbuild Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Database URL", settings.database_url.split("@")[-1])
    table.add_row("Log Level", settings.log_level)
    table.add_row("Doc prompt version", settings.node_doc_prompt_version)
    table.add_row("Doc quality mode", settings.node_doc_quality_mode)
    table.add_row("Runtime plan model", settings.runtime_plan_model or "(heuristic only)")
    table.add_row("Grouping wait for user", str(settings.path_grouping_wait_for_user))
    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
