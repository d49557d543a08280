"""Command line interface for opsflow workers and operators."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer

from .config import load_config
from .constants import ALL_TOPICS
from .definitions import install_bundle, load_bundle
from .errors import OpsflowError
from .runtime import Services, build_services

T = TypeVar("T")

app = typer.Typer(help="CLI for opsflow workflows, campaigns and CRM sync")

# Command groups
workflow_app = typer.Typer(help="Commands for workflow definitions and executions")
campaign_app = typer.Typer(help="Commands for controlling campaigns")
sync_app = typer.Typer(help="Commands for CRM synchronization")

app.add_typer(workflow_app, name="workflow")
app.add_typer(campaign_app, name="campaign")
app.add_typer(sync_app, name="sync")

_state: dict = {"config": None}


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Root log level"),
    config: Optional[Path] = typer.Option(
        None, "--config", help="Path to config.yaml (default: $OPSFLOW_CONFIG)"
    ),
) -> None:
    """opsflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config"] = str(config) if config else None


def _run(func: Callable[[Services], Awaitable[T]], autorun: bool = False) -> T:
    """Build services, run ``func`` and report opsflow errors as exit code 1."""

    async def runner() -> T:
        services = build_services(load_config(_state["config"]), autorun=autorun)
        try:
            return await func(services)
        finally:
            await services.close()

    try:
        return asyncio.run(runner())
    except OpsflowError as e:
        typer.secho(f"Error [{e.code}]: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.command("worker")
def worker(
    topic: Optional[List[str]] = typer.Option(
        None, "--topic", help="Topic to consume (repeatable; default: all)"
    ),
    lifespan: Optional[float] = None,
) -> None:
    """
    Run a command worker.

    Consumes workflow, campaign and sync commands from the configured
    transport until stopped or ``lifespan`` seconds elapse.

    Example:
        opsflow worker
        opsflow worker --topic workflow.execute --lifespan 300
    """
    topics = topic or list(ALL_TOPICS)
    typer.echo(f"Starting worker on: {', '.join(topics)}")

    async def consume(services: Services) -> None:
        await services.worker.start(topics, lifespan=lifespan)

    _run(consume, autorun=True)


@app.command("scheduler")
def scheduler(
    interval: float = typer.Option(1.0, help="Seconds between ticks"),
    lifespan: Optional[float] = None,
    once: bool = typer.Option(False, help="Run a single tick and exit"),
) -> None:
    """Resume due delayed workflows and retry due CRM syncs."""

    async def tick(services: Services) -> None:
        if once:
            result = await services.scheduler.tick()
            typer.echo(f"Resumed {result.resumed}, synced {result.synced}")
            return
        await services.scheduler.run_forever(interval=interval, lifespan=lifespan)

    _run(tick)


@workflow_app.command("load")
def workflow_load(path: Path) -> None:
    """Install definitions, campaigns and integrations from a YAML file."""
    try:
        bundle = load_bundle(path)
    except OpsflowError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def install(services: Services) -> None:
        await install_bundle(services.repository, bundle)

    _run(install)
    typer.echo(
        f"Loaded {len(bundle.definitions)} definition(s) and "
        f"{len(bundle.campaigns)} campaign(s)"
    )


@workflow_app.command("list")
def workflow_list(
    executions: bool = typer.Option(False, help="List executions instead"),
) -> None:
    """List workflow definitions, or executions with their status."""

    async def fetch(services: Services) -> list:
        if executions:
            return await services.repository.list_executions()
        return await services.repository.list_definitions()

    items = _run(fetch)
    if not items:
        typer.echo("No executions found" if executions else "No definitions found")
        return
    for item in items:
        if executions:
            typer.echo(f"{item.id}\t{item.definition_id}\t{item.status.value}")
        else:
            state = "enabled" if item.enabled else "disabled"
            typer.echo(f"{item.id}\t{item.trigger.event_type}\t{state}")


@workflow_app.command("show")
def workflow_show(execution_id: str) -> None:
    """Show an execution with its step history."""

    async def fetch(services: Services):
        execution = await services.repository.get_execution(execution_id)
        steps = await services.repository.list_steps(execution_id) if execution else []
        return execution, steps

    execution, steps = _run(fetch)
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    if execution.last_error:
        typer.echo(f"Error [{execution.error_code}]: {execution.last_error}")
    for step in steps:
        typer.echo(
            f"- {step.step_id} (run {step.run}): {step.status}"
            + (f" after {step.attempts} attempt(s)" if step.attempts else "")
        )


@workflow_app.command("cancel")
def workflow_cancel(execution_id: str) -> None:
    """Cancel a queued or waiting execution."""
    execution = _run(lambda services: services.engine.cancel(execution_id))
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


@campaign_app.command("start")
def campaign_start(
    campaign_id: str,
    run: bool = typer.Option(
        False, help="Run the call loop in this process instead of a worker"
    ),
) -> None:
    """Start a campaign (or report its live execution)."""
    _control(campaign_id, "start", run)


@campaign_app.command("resume")
def campaign_resume(
    campaign_id: str,
    run: bool = typer.Option(
        False, help="Run the call loop in this process instead of a worker"
    ),
) -> None:
    """Resume a paused campaign."""
    _control(campaign_id, "resume", run)


@campaign_app.command("pause")
def campaign_pause(campaign_id: str) -> None:
    """Pause a running campaign between calls."""
    execution = _run(lambda services: services.campaigns.pause(campaign_id))
    typer.echo(f"Campaign {campaign_id}: {execution.status.value}")


@campaign_app.command("stop")
def campaign_stop(
    campaign_id: str,
    wait: bool = typer.Option(False, help="Wait for the in-flight call to finish"),
    force: bool = typer.Option(False, help="Finalize even with a call in flight"),
) -> None:
    """Stop a campaign."""
    execution = _run(
        lambda services: services.campaigns.stop(campaign_id, wait=wait, force=force)
    )
    typer.echo(f"Campaign {campaign_id}: {execution.status.value}")


def _control(campaign_id: str, action: str, run: bool) -> None:
    async def apply(services: Services):
        if not run:
            await services.campaigns.status(campaign_id)
            await services.dispatcher.enqueue_campaign_control(campaign_id, action)
            return None
        execution = await services.campaigns.control(campaign_id, action)
        return await services.campaigns.join(execution.id)

    execution = _run(apply, autorun=run)
    if execution is None:
        typer.echo(f"Queued {action} for campaign {campaign_id}")
    else:
        typer.echo(f"Campaign {campaign_id}: {execution.status.value}")


@campaign_app.command("status")
def campaign_status(campaign_id: str) -> None:
    """Show the latest execution of a campaign with progress."""
    _echo_json(_run(lambda services: services.campaigns.status(campaign_id)))


@sync_app.command("abandoned")
def sync_abandoned(tenant_id: Optional[str] = None) -> None:
    """List sync records that exhausted their retries."""
    records = _run(lambda services: services.sync.list_abandoned(tenant_id))
    if not records:
        typer.echo("No abandoned sync records")
        return
    for record in records:
        typer.echo(
            f"{record.id}\t{record.tenant_id}\t{record.entity_type}:{record.entity_id}"
            f"\t{record.attempts}\t{record.last_error}"
        )


@sync_app.command("replay")
def sync_replay(record_id: str) -> None:
    """Retry an abandoned or failed sync record."""
    record = _run(lambda services: services.sync.replay(record_id))
    typer.echo(f"Sync record {record.id}: {record.status.value}")


@sync_app.command("pull")
def sync_pull(tenant_id: str, provider_id: Optional[str] = None) -> None:
    """Pull remote CRM changes since the last watermark."""
    applied = _run(lambda services: services.sync.pull_from_crm(tenant_id, provider_id))
    typer.echo(f"Applied {applied} change(s)")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
