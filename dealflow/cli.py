"""Command line interface for dealflow workers and admin queries."""

from __future__ import annotations

import asyncio
import csv
import logging
import sys
from pathlib import Path
from typing import Optional

import typer

from dealflow import Engine, get_repository, get_transport, load_config
from dealflow.errors import DealflowError, RunNotFound

app = typer.Typer(help="CLI for dealflow messaging workflows")

# Command groups
worker_app = typer.Typer(help="Commands for running workers")
flows_app = typer.Typer(help="Commands for managing flows")
runs_app = typer.Typer(help="Commands for inspecting runs")
metrics_app = typer.Typer(help="Commands for delivery metrics")
audit_app = typer.Typer(help="Commands for the notification log")

app.add_typer(worker_app, name="worker")
app.add_typer(flows_app, name="flows")
app.add_typer(runs_app, name="runs")
app.add_typer(metrics_app, name="metrics")
app.add_typer(audit_app, name="audit")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level (DEBUG, INFO, ...)"),
) -> None:
    """Dealflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine(config_path: Optional[Path] = None) -> Engine:
    config = load_config(str(config_path) if config_path else None)
    return Engine(config=config, repository=get_repository(), transport=get_transport(config=config))


@worker_app.command("start")
def worker_start(
    lifespan: Optional[float] = None,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """
    Run the scheduler and metrics consumer.

    Recovers interrupted and due runs from the repository, then processes the
    runs and metrics queues until stopped or ``lifespan`` seconds pass.

    Example:
        dealflow worker start
        dealflow worker start --lifespan 300 --config ./config.yaml
    """
    engine = _engine(config)
    typer.echo("Starting dealflow worker")
    asyncio.run(engine.start(lifespan=lifespan))


@flows_app.command("list")
def flows_list() -> None:
    """
    List flows with their latest version and status.

    Example:
        dealflow flows list
        # Output: welcome    v2    active      user_signup    Welcome Series
    """
    repo = get_repository()
    flows = asyncio.run(repo.list_flows())
    if not flows:
        typer.echo("No flows found")
        return
    for flow in flows:
        status = "active" if flow.is_active else "inactive"
        typer.echo(f"{flow.id}\tv{flow.version}\t{status}\t{flow.trigger.type}\t{flow.name}")


@flows_app.command("load")
def flows_load(
    path: Path,
    templates: Optional[Path] = typer.Option(None, help="YAML template catalog"),
    activate: bool = typer.Option(False, help="Activate every loaded flow"),
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """
    Validate and save flows from a YAML file.

    Example:
        dealflow flows load flows.yaml --templates templates.yaml --activate
    """
    engine = _engine(config)
    try:
        if templates is not None:
            engine.templates.load(str(templates))
        saved = asyncio.run(engine.load_flows(str(path), activate=activate))
    except DealflowError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    for flow in saved:
        typer.echo(f"Saved {flow.id} v{flow.version}")


@flows_app.command("duplicate")
def flows_duplicate(
    flow_id: str,
    copy_id: Optional[str] = typer.Option(None, help="Id for the copy (generated if omitted)"),
    name: Optional[str] = typer.Option(None, help="Name for the copy"),
    templates: Optional[Path] = typer.Option(None, help="YAML template catalog"),
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """
    Copy a flow's latest version into a new, inactive flow.

    Example:
        dealflow flows duplicate welcome --copy-id welcome-b --templates templates.yaml
        # Output: Duplicated welcome as welcome-b (Welcome Series (Copy))
    """
    engine = _engine(config)
    try:
        if templates is not None:
            engine.templates.load(str(templates))
        copy = asyncio.run(engine.duplicate_flow(flow_id, copy_id, name))
    except DealflowError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Duplicated {flow_id} as {copy.id} ({copy.name})")


@runs_app.command("list")
def runs_list(
    flow_id: Optional[str] = typer.Option(None, help="Only runs of this flow"),
    state: Optional[str] = typer.Option(None, help="Only runs in this state"),
) -> None:
    """
    List runs with their state and current step.

    Example:
        dealflow runs list --state failed
    """
    repo = get_repository()
    runs = asyncio.run(
        repo.list_runs(flow_id=flow_id, states=[state] if state else None)
    )
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        line = f"{run.id}\t{run.flow_id}\t{run.recipient_id}\t{run.state}"
        if run.last_error and run.state == "failed":
            line += f"\t{run.last_error}"
        typer.echo(line)


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """
    Show a run with its delivery attempts.

    Example:
        dealflow runs show 5f0c...
    """
    engine = _engine()
    try:
        status = asyncio.run(engine.get_run_status(run_id))
    except RunNotFound:
        typer.echo("Run not found")
        raise typer.Exit(code=1)

    run = status.run
    typer.echo(f"Run {run.id}: {run.state}")
    typer.echo(f"Flow: {run.flow_id} v{run.flow_version}  Recipient: {run.recipient_id}")
    if run.current_step_id:
        typer.echo(f"Current step: {run.current_step_id}")
    if run.wake_at:
        typer.echo(f"Wakes at: {run.wake_at.isoformat()} ({run.wait_reason})")
    if run.last_error:
        typer.echo(f"Last error: {run.last_error}")
    for attempt in status.attempts:
        typer.echo(
            f"- {attempt.step_id} #{attempt.attempt_number} {attempt.channel}: "
            f"{attempt.outcome} (cost {attempt.cost:.3f})"
            + (f" {attempt.error}" if attempt.error else "")
        )


@metrics_app.command("show")
def metrics_show(
    flow_id: Optional[str] = typer.Option(None),
    channel: Optional[str] = typer.Option(None),
    step_id: Optional[str] = typer.Option(None),
) -> None:
    """
    Show delivery and engagement metrics rebuilt from the stored log.

    Example:
        dealflow metrics show --channel sms
    """
    engine = _engine()

    async def _snapshot():
        await engine.rebuild_metrics()
        return engine.metrics.snapshot(flow_id=flow_id, channel=channel, step_id=step_id)

    snapshot = asyncio.run(_snapshot())
    typer.echo(f"Sent: {snapshot.sent}")
    typer.echo(f"Delivered: {snapshot.delivered}")
    typer.echo(f"Opened: {snapshot.opened}")
    typer.echo(f"Clicked: {snapshot.clicked}")
    typer.echo(f"Failed: {snapshot.failed}")
    typer.echo(f"Cost: {snapshot.cost:.2f}")
    typer.echo(f"Open rate: {snapshot.open_rate:.1%}")
    typer.echo(f"Click rate: {snapshot.click_rate:.1%}")
    typer.echo(f"Cost per click: {snapshot.cost_per_click:.2f}")


@audit_app.command("export")
def audit_export(
    flow_id: Optional[str] = typer.Option(None),
    channel: Optional[str] = typer.Option(None),
    output: Optional[Path] = typer.Option(None, help="Write CSV here instead of stdout"),
) -> None:
    """
    Export the notification log as CSV.

    Columns: date, channel, audience, status, delivered, opened, clicked, cost.

    Example:
        dealflow audit export --channel whatsapp --output log.csv
    """
    engine = _engine()
    rows = asyncio.run(engine.export_audit(flow_id=flow_id, channel=channel))

    handle = open(output, "w", newline="") if output else sys.stdout
    try:
        writer = csv.writer(handle)
        writer.writerow(
            ["date", "channel", "audience", "status", "delivered", "opened", "clicked", "cost"]
        )
        for row in rows:
            writer.writerow(
                [
                    row.timestamp.isoformat(),
                    row.channel or "",
                    row.audience or "",
                    row.status,
                    row.delivered,
                    row.opened,
                    row.clicked,
                    f"{row.cost:.3f}",
                ]
            )
    finally:
        if output:
            handle.close()
    if output:
        typer.echo(f"Wrote {len(rows)} rows to {output}")


if __name__ == "__main__":
    app()
