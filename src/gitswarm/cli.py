from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from gitswarm.config import ConfigError, SwarmConfig, load_config, save_config
from gitswarm.logs import configure_logging
from gitswarm.orchestrator import AgentLoop
from gitswarm.phases import PhaseFailure
from gitswarm.protocol import ClaimConflict
from gitswarm.registry import RegistryError, TaskRegistry
from gitswarm.state import SwarmStateError

STOP_OUTCOMES = {"phase_failed", "setup_failed"}


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: SwarmConfig
    loop: AgentLoop


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value).expanduser()
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _load_runtime(ctx: click.Context, config_value: str) -> Runtime:
    config_path = _resolve_config_path(config_value)
    try:
        config = load_config(config_path)
        loop = AgentLoop.from_config(config)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(loop.holder, verbose=bool(ctx.obj and ctx.obj.get("debug")))
    return Runtime(config_path=config_path, config=config, loop=loop)


def _prepare_store(runtime: Runtime) -> None:
    try:
        runtime.loop.store.ensure_clone()
        runtime.loop.store.sync_down()
    except SwarmStateError as exc:
        raise click.ClickException(str(exc)) from exc


def _status_payload(runtime: Runtime, *, verbose: bool) -> dict[str, Any]:
    loop = runtime.loop
    registry = TaskRegistry.load(loop.store)
    leases = []
    for lease in loop.locks.list_leases():
        leases.append(
            {
                "resource": lease.resource_id,
                "agent": lease.holder,
                "started": lease.created.isoformat() if lease.created else None,
                "health": loop.locks.detector.assess(lease),
            }
        )
    payload: dict[str, Any] = {
        "agent_id": loop.holder,
        "head": loop.store.head(),
        "registry": registry is not None,
        "counts": registry.counts() if registry is not None else {},
        "leases": leases,
        "validation": {
            "passed": loop.markers.passed(),
            "round": loop.markers.round(),
            "max_rounds": runtime.config.phases.max_validation_rounds,
        },
    }
    if registry is not None:
        next_task = loop.selector.select(registry)
        payload["next_task"] = next_task.id if next_task else None
        if verbose:
            payload["tasks"] = registry.to_payload()
    if verbose and loop.markers.passed():
        payload["validation"]["summary"] = loop.markers.summary()
    return payload


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Log debug output.")
@click.pass_context
def cli(ctx: click.Context, debug: bool) -> None:
    """gitswarm: leaderless task coordination over a shared git remote."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command("init")
@click.option("--url", default=None, help="Shared git remote URL.")
@click.option("--workdir", default=None, help="Local clone directory.")
@click.option("--backend", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default="gitswarm.toml", show_default=True)
def init_command(
    url: str | None, workdir: str | None, backend: str | None, config_value: str
) -> None:
    config_path = _resolve_config_path(config_value)
    try:
        config = load_config(config_path, environ={})
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if url:
        config.store.url = url
    if workdir:
        config.store.workdir = workdir
    if backend:
        config.worker.backend = backend
    save_config(config_path, config)

    click.echo(f"Config: {config_path}")
    click.echo(f"Shared store: {config.store.url or '(unset)'} ({config.store.branch})")
    click.echo(f"Workdir: {config.store.workdir}")
    click.echo(f"Worker: {config.worker.backend} ({config.worker.model})")


@cli.command("run")
@click.option("--config", "config_value", default="gitswarm.toml", show_default=True)
@click.pass_context
def run_command(ctx: click.Context, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    try:
        summary = asyncio.run(runtime.loop.run())
    except (SwarmStateError, ConfigError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Agent {summary.agent_id} finished: {summary.outcome}")
    click.echo(f"Iterations: {summary.iterations}")
    click.echo(f"Completed: {len(summary.completed)}  Failed attempts: {len(summary.failed)}")
    if summary.outcome in STOP_OUTCOMES:
        ctx.exit(1)


@cli.command("claim")
@click.argument("task_id")
@click.option("--config", "config_value", default="gitswarm.toml", show_default=True)
@click.pass_context
def claim_command(ctx: click.Context, task_id: str, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    _prepare_store(runtime)
    try:
        lease = runtime.loop.protocol.claim(task_id)
    except (ClaimConflict, RegistryError, SwarmStateError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Claimed {task_id} as {lease.holder}")


@cli.command("release")
@click.argument("task_id")
@click.argument("status", type=click.Choice(["done", "failed"]), default="done")
@click.option("--config", "config_value", default="gitswarm.toml", show_default=True)
@click.pass_context
def release_command(ctx: click.Context, task_id: str, status: str, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    _prepare_store(runtime)
    try:
        result = runtime.loop.protocol.release(task_id, succeeded=status == "done")
    except (RegistryError, SwarmStateError) as exc:
        raise click.ClickException(str(exc)) from exc
    if not result.applied:
        click.echo(f"Nothing to release for {task_id}")
        return
    if not result.published:
        raise click.ClickException(f"Release of {task_id} was not published")
    click.echo(f"Released {task_id}: {result.status}")


@cli.command("plan")
@click.option("--config", "config_value", default="gitswarm.toml", show_default=True)
@click.pass_context
def plan_command(ctx: click.Context, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    _prepare_store(runtime)
    try:
        outcome = asyncio.run(runtime.loop.planning.run())
    except (PhaseFailure, SwarmStateError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Planning: {outcome}")


@cli.command("validate")
@click.option("--config", "config_value", default="gitswarm.toml", show_default=True)
@click.pass_context
def validate_command(ctx: click.Context, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    _prepare_store(runtime)
    try:
        outcome = asyncio.run(runtime.loop.validation.run())
    except (PhaseFailure, SwarmStateError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Validation: {outcome}")


@cli.command("sync")
@click.argument("direction", type=click.Choice(["pull", "push"]))
@click.option("--config", "config_value", default="gitswarm.toml", show_default=True)
@click.pass_context
def sync_command(ctx: click.Context, direction: str, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    store = runtime.loop.store
    if direction == "pull":
        _prepare_store(runtime)
        click.echo(f"Synced to {store.head()}")
        return
    try:
        published = store.publish(runtime.config.store.max_append_attempts)
    except SwarmStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if not published:
        raise click.ClickException("Push failed after retry")
    click.echo(f"Pushed {store.head()}")


@cli.command("reclaim")
@click.option("--config", "config_value", default="gitswarm.toml", show_default=True)
@click.pass_context
def reclaim_command(ctx: click.Context, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    _prepare_store(runtime)
    try:
        report = runtime.loop.reclaimer.sweep()
    except (RegistryError, SwarmStateError) as exc:
        raise click.ClickException(str(exc)) from exc
    if not report.changed:
        click.echo("Nothing to reclaim.")
        return
    for resource, reason in sorted(report.reclaimed.items()):
        click.echo(f"reclaimed {resource} ({reason})")
    for task_id in report.orphaned:
        click.echo(f"requeued orphaned task {task_id}")
    for task_id in report.requeued:
        click.echo(f"requeued failed task {task_id}")
    if not report.published:
        raise click.ClickException("Reclaim sweep was not published")


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="gitswarm.toml", show_default=True)
@click.pass_context
def status_command(ctx: click.Context, verbose: bool, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    _prepare_store(runtime)
    try:
        payload = _status_payload(runtime, verbose=verbose)
    except RegistryError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
