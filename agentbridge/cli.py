"""
AGENTBRIDGE CLI — The Interface

Pipeline:
  - agentbridge process "<message>"     (parse → validate → [execute] → audit)
  - agentbridge process ... --auto-execute

Plus utilities:
  - agentbridge init [root]     (bootstrap .agentbridge with config + governance document)
  - agentbridge rules           (show active governance rules)
  - agentbridge audit           (query the audit log)
  - agentbridge stats           (audit statistics)
  - agentbridge prune           (apply the retention window)
  - agentbridge export <file>   (audit log to JSON or CSV)
  - agentbridge status          (config, API keys, health)
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from agentbridge.identity import __codename__, __tagline__, __version__, BANNER
from agentbridge.audit_logger import AuditLogger
from agentbridge.bridge import AgentBridge, MessageReport
from agentbridge.config_loader import BridgeConfig, load_config, validate_api_keys
from agentbridge.governance import RuleStore

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".agentbridge" / ".env")

app = typer.Typer(
    name="agentbridge",
    help=f"{__codename__} — {__tagline__}\nThe intent governance pipeline.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

OUTCOME_COLORS = {
    "processed": "green",
    "failed": "red",
    "rejected": "red",
    "pending_approval": "yellow",
}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def init(
    root: Optional[Path] = typer.Argument(None, help="Project root"),
):
    """Initialize the .agentbridge directory in a project."""
    _print_banner()

    root = (root or Path.cwd()).resolve()
    ab_dir = root / ".agentbridge"
    ab_dir.mkdir(parents=True, exist_ok=True)

    config_path = ab_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# AGENTBRIDGE project-level config overrides
# These merge with the built-in defaults.

# Switch pipeline stages off:
# pipeline:
#   enable_execution: false

# Execution limits:
# execution:
#   max_concurrent: 3
#   intent_timeout: 30

# Audit retention:
# audit:
#   retention_days: 30

# Let a model phrase replies (needs an API key):
# composer:
#   enabled: true
#   model: "anthropic/claude-sonnet-4-20250514"
""")

    config = load_config(root)
    created = asyncio.run(RuleStore(config.governance.rules_path).ensure_default_document())

    console.print(Panel(
        f"  Config:     {config_path}\n"
        f"  Governance: {config.governance.rules_path}"
        + ("" if created else " [dim](kept existing)[/]")
        + f"\n  Audit log:  {config.audit.log_path}",
        title="✅ Initialized",
        border_style="green",
    ))


@app.command()
def process(
    message: str = typer.Argument(..., help="Chat message to run through the pipeline"),
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Project root"),
    session: str = typer.Option("cli", "--session", "-s", help="Session id recorded in the audit log"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id recorded in the audit log"),
    auto_execute: bool = typer.Option(False, "--auto-execute", "-x", help="Execute intents that pass governance"),
    as_json: bool = typer.Option(False, "--json", help="Print the full report as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run one chat message through parse → validate → execute → audit."""
    _configure_logging(verbose)
    config = _load(root)

    report, reply = asyncio.run(_process(config, message, session, user, auto_execute))

    if as_json:
        console.print_json(report.model_dump_json())
        return

    _print_banner()
    console.print(f"[dim]Confidence: {report.parsed.confidence:.2f}[/]")
    for err in report.parsed.parse_errors:
        console.print(f"[yellow]⚠ {err}[/]")

    if not report.results:
        console.print("[dim]No intents recognised.[/]")
        return

    table = Table(title="Intents", border_style="cyan")
    table.add_column("Type", style="dim")
    table.add_column("Id", style="dim")
    table.add_column("Priority")
    table.add_column("Outcome")
    table.add_column("Rules")
    table.add_column("Notes")

    for r in report.results:
        color = OUTCOME_COLORS.get(r.outcome, "dim")
        notes = r.validation.errors + r.validation.warnings
        if r.execution and r.execution.error:
            notes.append(r.execution.error)
        table.add_row(
            r.intent.type,
            r.intent.id[:8],
            r.intent.priority,
            f"[{color}]{r.outcome}[/]",
            ", ".join(r.validation.applied_rules) or "-",
            escape("; ".join(notes)[:80]),
        )

    console.print(table)
    console.print(Panel(escape(reply), title="Reply", border_style="green"))


async def _process(
    config: BridgeConfig,
    message: str,
    session: str,
    user: str | None,
    auto_execute: bool,
) -> tuple[MessageReport, str]:
    bridge = AgentBridge.from_config(config)
    await bridge.initialize()
    try:
        report = await bridge.process_message(message, session, user_id=user, auto_execute=auto_execute)
        reply = await bridge.compose_reply(report)
    finally:
        await bridge.close()
    return report, reply


@app.command()
def rules(
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Project root"),
):
    """Show the active governance rules."""
    config = _load(root)
    active = asyncio.run(RuleStore(config.governance.rules_path).load())

    table = Table(title=f"Governance Rules ({config.governance.rules_path})", border_style="cyan")
    table.add_column("#", style="dim")
    table.add_column("Id")
    table.add_column("Applies to", style="dim")
    table.add_column("Conditions")
    table.add_column("Action")

    action_colors = {"allow": "green", "deny": "red", "require_approval": "yellow", "modify": "magenta"}
    for i, rule in enumerate(active, 1):
        conditions = " AND ".join(f"{c.field} {c.operator} {c.value!r}" for c in rule.conditions)
        color = action_colors.get(rule.action, "dim")
        table.add_row(str(i), rule.id, ", ".join(rule.intent_types), escape(conditions[:60]) or "-", f"[{color}]{rule.action}[/]")

    console.print(table)


@app.command()
def audit(
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Project root"),
    outcome: Optional[List[str]] = typer.Option(None, "--outcome", "-o", help="Filter by outcome (repeatable)"),
    intent_type: Optional[List[str]] = typer.Option(None, "--type", "-t", help="Filter by intent type (repeatable)"),
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Only entries from the last N days"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum entries to show"),
):
    """Query the audit log, newest first."""
    config = _load(root)
    start = datetime.now(timezone.utc) - timedelta(days=days) if days else None

    records = asyncio.run(_auditor(config).query(
        start=start, intent_types=intent_type, outcomes=outcome, limit=limit,
    ))

    if not records:
        console.print("[dim]No audit entries match.[/]")
        return

    table = Table(title="Audit Log", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Session", style="dim")
    table.add_column("Type")
    table.add_column("Target")
    table.add_column("Outcome")
    table.add_column("Rules", style="dim")

    for r in records:
        color = OUTCOME_COLORS.get(r.outcome, "dim")
        table.add_row(
            r.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            r.source.session_id,
            r.intent.type,
            escape((r.intent.target or r.intent.command or r.intent.service or "-")[:50]),
            f"[{color}]{r.outcome}[/]",
            ", ".join(r.validation.applied_rules)[:40] or "-",
        )

    console.print(table)


@app.command()
def stats(
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Project root"),
    days: int = typer.Option(7, "--days", "-d", help="Trailing window in days"),
):
    """Audit statistics over a trailing window."""
    config = _load(root)
    s = asyncio.run(_auditor(config).statistics(days))

    console.print(f"\n[bold]Last {days} days:[/]")
    console.print(f"  Total intents:     {s.total_intents}")
    console.print(f"  Successful:        [green]{s.successful_executions}[/]")
    console.print(f"  Failed:            [red]{s.failed_executions}[/]")
    console.print(f"  Rejected:          [red]{s.rejected_intents}[/]")
    console.print(f"  Pending approval:  [yellow]{s.pending_approvals}[/]")
    console.print(f"  Not executed:      {s.not_executed}")

    if s.intent_type_breakdown:
        table = Table(title="By Intent Type", border_style="cyan")
        table.add_column("Type")
        table.add_column("Count", justify="right")
        for kind, count in sorted(s.intent_type_breakdown.items(), key=lambda kv: -kv[1]):
            table.add_row(kind, str(count))
        console.print(table)

    if s.rule_violations:
        table = Table(title="Rules on Rejected / Flagged Intents", border_style="yellow")
        table.add_column("Rule")
        table.add_column("Count", justify="right")
        for rule_id, count in sorted(s.rule_violations.items(), key=lambda kv: -kv[1]):
            table.add_row(rule_id, str(count))
        console.print(table)


@app.command()
def prune(
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Project root"),
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Retention window (default from config)"),
):
    """Drop audit entries older than the retention window."""
    config = _load(root)
    removed = asyncio.run(_auditor(config).prune(days))
    console.print(f"[green]Pruned {removed} audit entries.[/]")


@app.command()
def export(
    output: Path = typer.Argument(..., help="Destination file"),
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Project root"),
    fmt: str = typer.Option("json", "--format", "-f", help="json or csv"),
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Only entries from the last N days"),
):
    """Export the audit log to JSON or CSV."""
    if fmt not in ("json", "csv"):
        console.print(f"[red]Unknown format: {fmt} (use json or csv)[/]")
        raise typer.Exit(1)

    config = _load(root)
    start = datetime.now(timezone.utc) - timedelta(days=days) if days else None
    count = asyncio.run(_auditor(config).export(output, fmt=fmt, start=start))
    console.print(f"[green]Exported {count} entries to {output}[/]")


@app.command()
def status(
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Project root"),
):
    """Check AGENTBRIDGE configuration and readiness."""
    _print_banner()
    config = _load(root)

    keys = validate_api_keys()
    key_table = Table(title="API Keys (reply composer)", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    health = asyncio.run(_health(config))

    console.print(f"\n[bold]Pipeline:[/]")
    for name, enabled in health["components"].items():
        mark = "[green]✓[/]" if enabled else "[red]✗[/]"
        console.print(f"  {mark} {name}")

    console.print(f"\n[bold]Governance:[/]")
    console.print(f"  Document: {config.governance.rules_path}")
    console.print(f"  Rules:    {health['rules']}")

    console.print(f"\n[bold]Execution:[/]")
    console.print(f"  Workspace:      {config.execution.working_directory}")
    console.print(f"  Max concurrent: {config.execution.max_concurrent}")
    console.print(f"  Timeout:        {config.execution.intent_timeout}s")

    console.print(f"\n[bold]Audit:[/]")
    console.print(f"  Log:       {config.audit.log_path}")
    console.print(f"  Retention: {config.audit.retention_days} days")
    console.print(f"  Composer:  {config.composer.model if config.composer.enabled else 'disabled'}")


async def _health(config: BridgeConfig) -> dict:
    bridge = AgentBridge(config)
    return await bridge.health()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load(root: Path | None) -> BridgeConfig:
    root = (root or Path.cwd()).resolve()
    if not root.exists():
        console.print(f"[red]Project root not found: {root}[/]")
        raise typer.Exit(1)
    return load_config(root)


def _auditor(config: BridgeConfig) -> AuditLogger:
    return AuditLogger(
        config.audit.log_path,
        buffer_size=config.audit.buffer_size,
        retention_days=config.audit.retention_days,
        excerpt_length=config.audit.excerpt_length,
    )


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg))}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg))}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
