#!/usr/bin/env python3
"""Alert Engine - CLI Entry Point."""
import sys
import time
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import click
from rich.console import Console
from rich.table import Table

from __version__ import __version__

console = Console()

SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "cyan",
    "info": "dim",
}

HEALTH_STYLES = {"healthy": "green", "degraded": "yellow", "critical": "red"}


def _init_components(config_path=None, verbose=False):
    """Lazy initialization of all components."""
    from utils.logger import setup_logging
    from config import load_config
    from models.database import Database
    from monitor.health import SystemHealthService
    from monitor.collector import MetricsCollector
    from alerts.resolver import MetricResolver
    from alerts.engine import AlertTriggerEngine
    from alerts.rules_manager import RulesManager
    from service.manager import EngineManager

    config = load_config(config_path)
    setup_logging("DEBUG" if verbose else config["logging"]["level"], config["logging"].get("file"))

    db = Database(config["database"]["path"])
    db.connect()

    health = SystemHealthService(db)
    resolver = MetricResolver(db, health)
    manager_config = config["manager"]

    engine = AlertTriggerEngine(db, resolver, config={
        **config["engine"],
        "evaluation_interval": manager_config["alert_evaluation_interval"],
    })
    collector = MetricsCollector(db, health, config={
        **config["collector"],
        "collection_interval": manager_config["metrics_collection_interval"],
    })
    manager = EngineManager(db, engine, collector, config=manager_config)
    rules = RulesManager(config["rules"]["path"], resolver)

    return {
        "config": config, "db": db, "health": health, "resolver": resolver,
        "engine": engine, "collector": collector, "manager": manager, "rules": rules,
    }


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="alertengine")
@click.pass_context
def cli(ctx, config_path, verbose):
    """Alert Engine - threshold alerts over embedding, health, and notification metrics."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_components(ctx):
    if "_components" not in ctx.obj:
        ctx.obj["_components"] = _init_components(ctx.obj.get("config_path"), ctx.obj.get("verbose"))
    return ctx.obj["_components"]


def _fail(message):
    console.print(f"[red]✗ {message}[/red]")
    raise SystemExit(1)


def _results_table(results, title):
    table = Table(title=title, show_header=True)
    table.add_column("Rule")
    table.add_column("Severity")
    table.add_column("Value", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Triggered")
    table.add_column("Reason", style="dim")
    for r in results:
        style = SEVERITY_STYLES.get(r.severity, "")
        value = f"{r.metric_value:.2f}" if r.metric_value is not None else "N/A"
        fired = "[bold red]YES[/bold red]" if r.triggered else "[dim]no[/dim]"
        table.add_row(r.rule_name, f"[{style}]{r.severity}[/{style}]", value,
                      f"{r.threshold_value:g}", fired, r.reason or "")
    return table


# ──────────────────────────────────────────────────────
# ENGINE
# ──────────────────────────────────────────────────────
@cli.group()
def engine():
    """Run and inspect the alert engine."""
    pass


@engine.command("run")
@click.option("--start", "force_start", is_flag=True, help="Start even when manager.auto_start is off")
@click.pass_context
def engine_run(ctx, force_start):
    """Run the collector and alert engine in the foreground until interrupted."""
    c = _get_components(ctx)
    manager = c["manager"]
    if not (manager.get_config()["auto_start"] or force_start):
        _fail("auto_start is disabled in config. Pass --start to run anyway.")

    try:
        manager.start()
    except Exception as e:
        _fail(f"Failed to start: {e}")

    console.print("[bold green]Alert engine running.[/bold green] Press Ctrl+C to stop.")
    try:
        while manager.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\nStopping...")
    finally:
        manager.stop()
        c["db"].close()


@engine.command("evaluate")
@click.pass_context
def engine_evaluate(ctx):
    """Collect metrics and evaluate every enabled rule once."""
    c = _get_components(ctx)
    outcome = c["manager"].force_evaluation()
    results = outcome["results"]
    if not results:
        console.print("[dim]No enabled alert rules. Run: alertengine rules sync[/dim]")
        return
    console.print(_results_table(results, "Evaluation Results"))
    triggered = sum(1 for r in results if r.triggered)
    console.print(f"\n{triggered}/{len(results)} rule(s) triggered")


@engine.command("evaluate-rule")
@click.argument("rule_id")
@click.pass_context
def engine_evaluate_rule(ctx, rule_id):
    """Evaluate a single rule now."""
    c = _get_components(ctx)
    result = c["engine"].force_rule_evaluation(rule_id)
    if result is None:
        _fail(f"Rule {rule_id} not found or could not be evaluated")
    console.print(_results_table([result], f"Rule {rule_id}"))


@engine.command("health")
@click.pass_context
def engine_health(ctx):
    """Show system health and engine statistics."""
    from utils.formatters import format_metric, format_pct

    c = _get_components(ctx)
    health = c["health"].perform_health_check()
    perf = c["health"].get_performance_metrics()

    overall = health["overall_status"]
    style = HEALTH_STYLES.get(overall, "")
    console.print(f"[bold]System health:[/bold] [{style}]{overall}[/{style}] "
                  f"(score {health['health_score']:.0f})")

    table = Table(show_header=True)
    table.add_column("Component")
    table.add_column("Status")
    table.add_column("Details", style="dim")
    for comp in health["components"]:
        cstyle = {"healthy": "green", "warning": "yellow", "critical": "red"}.get(comp["status"], "")
        table.add_row(comp["name"], f"[{cstyle}]{comp['status']}[/{cstyle}]", comp.get("message", ""))
    console.print(table)

    console.print(f"  Response time: {format_metric(perf['api_response_time'], 'ms')}")
    console.print(f"  Error rate:    {format_pct(perf['error_rate'])}")
    console.print(f"  Cache hits:    {format_pct(perf['cache_hit_rate'])}")


# ──────────────────────────────────────────────────────
# RULES
# ──────────────────────────────────────────────────────
@cli.group()
def rules():
    """Alert rule management."""
    pass


@rules.command("list")
@click.pass_context
def rules_list(ctx):
    """List alert rules in the store."""
    c = _get_components(ctx)
    stored = c["db"].get_alert_rules()
    if not stored:
        console.print("[dim]No rules in the store. Run: alertengine rules sync[/dim]")
        return
    table = Table(title="Alert Rules", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Source")
    table.add_column("Condition")
    table.add_column("Severity")
    table.add_column("Enabled")
    for r in stored:
        unit = r.threshold_unit or ""
        style = SEVERITY_STYLES.get(r.severity, "")
        table.add_row(r.id, r.name, r.metric_source,
                      f"{r.metric_name} {r.threshold_operator} {r.threshold_value:g}{unit}",
                      f"[{style}]{r.severity}[/{style}]",
                      "[green]✓[/green]" if r.enabled else "[red]✗[/red]")
    console.print(table)


@rules.command("sync")
@click.pass_context
def rules_sync(ctx):
    """Load rules from the rules YAML and upsert them into the store."""
    c = _get_components(ctx)
    count = c["rules"].sync(c["db"])
    console.print(f"[green]✓[/green] Synced {count} rule(s) from {c['rules'].rules_path}")


@rules.command("test")
@click.argument("rule_id")
@click.pass_context
def rules_test(ctx, rule_id):
    """Dry-run a rule: resolve its metric and show whether it would fire."""
    c = _get_components(ctx)
    rule = c["db"].get_alert_rule(rule_id) or c["rules"].get_rule(rule_id)
    if rule is None:
        _fail(f"Rule {rule_id} not found")

    outcome = c["engine"].test_rule(rule)
    value = outcome["metric_value"]
    console.print(f"[bold]{rule.name}[/bold] ({rule.metric_source}/{rule.metric_name})")
    console.print(f"  Current value: {f'{value:.2f}' if value is not None else 'N/A'}")
    console.print(f"  Condition:     {rule.threshold_operator} {rule.threshold_value:g}")
    if outcome["would_trigger"]:
        console.print(f"  [bold red]Would trigger:[/bold red] {outcome['simulated_alert']['title']}")
    else:
        console.print(f"  [green]Would not trigger[/green] ({outcome['reason']})")


# ──────────────────────────────────────────────────────
# ALERTS
# ──────────────────────────────────────────────────────
@cli.group()
def alerts():
    """Alert inspection and status updates."""
    pass


@alerts.command("list")
@click.option("--status", type=click.Choice(["active", "acknowledged", "resolved", "suppressed"]),
              default=None, help="Only alerts with this status")
@click.option("--limit", default=50, help="Maximum alerts to show")
@click.pass_context
def alerts_list(ctx, status, limit):
    """Show recent alerts."""
    from utils.formatters import format_timestamp

    c = _get_components(ctx)
    found = c["db"].query_alerts(status=status, limit=limit)
    if not found:
        console.print("[dim]No alerts[/dim]")
        return
    table = Table(title="Alerts", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Time", style="dim")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Title")
    for a in found:
        style = SEVERITY_STYLES.get(a.severity, "")
        table.add_row(str(a.id), format_timestamp(a.created_at), f"[{style}]{a.severity}[/{style}]",
                      a.status, a.title[:70])
    console.print(table)


@alerts.command("activity")
@click.option("--hours", default=24, help="Hours to look back")
@click.pass_context
def alerts_activity(ctx, hours):
    """Summarize alert activity."""
    c = _get_components(ctx)
    activity = c["manager"].get_recent_activity(hours)
    console.print(f"[bold]{activity['total_alerts']}[/bold] alert(s) in the last {hours}h")

    for heading, counts in (("By severity", activity["alerts_by_severity"]),
                            ("By status", activity["alerts_by_status"])):
        if counts:
            parts = ", ".join(f"{k}: {v}" for k, v in sorted(counts.items()))
            console.print(f"  {heading}: {parts}")

    if activity["top_triggered_rules"]:
        table = Table(title="Top Triggered Rules", show_header=True)
        table.add_column("Rule")
        table.add_column("ID", style="dim")
        table.add_column("Count", justify="right")
        for row in activity["top_triggered_rules"]:
            table.add_row(row["rule_name"], row["rule_id"], str(row["count"]))
        console.print(table)


def _set_status(ctx, alert_id, status):
    c = _get_components(ctx)
    if not c["db"].update_alert_status(alert_id, status):
        _fail(f"Alert {alert_id} not found")
    console.print(f"[green]✓[/green] Alert {alert_id} marked {status}")


@alerts.command("ack")
@click.argument("alert_id", type=int)
@click.pass_context
def alerts_ack(ctx, alert_id):
    """Acknowledge an alert."""
    _set_status(ctx, alert_id, "acknowledged")


@alerts.command("resolve")
@click.argument("alert_id", type=int)
@click.pass_context
def alerts_resolve(ctx, alert_id):
    """Resolve an alert so its rule can fire again."""
    _set_status(ctx, alert_id, "resolved")


# ──────────────────────────────────────────────────────
# METRICS
# ──────────────────────────────────────────────────────
@cli.group()
def metrics():
    """Metrics collection."""
    pass


@metrics.command("collect")
@click.pass_context
def metrics_collect(ctx):
    """Collect one round of metrics and persist them."""
    from monitor.collector import get_metric_unit
    from utils.formatters import format_metric

    c = _get_components(ctx)
    snapshots = c["collector"].force_collection()
    for snap in snapshots:
        table = Table(title=snap.source, show_header=True)
        table.add_column("Metric")
        table.add_column("Value", justify="right")
        for name, value in sorted(snap.metrics.items()):
            table.add_row(name, format_metric(value, get_metric_unit(name)))
        console.print(table)
    errors = c["collector"].get_statistics().collection_errors
    if errors:
        console.print(f"[yellow]{errors} metric group(s) failed to collect[/yellow]")


if __name__ == "__main__":
    cli()
