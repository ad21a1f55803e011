# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""LoyaltyFlow CLI - Command Line Interface for the workflow execution engine"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
import yaml

# Force UTF-8 encoding for Windows
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8")
    sys.stderr.reconfigure(encoding="utf-8")

from loyaltyflow import __version__
from loyaltyflow.core.cache import get_cache
from loyaltyflow.core.config import ensure_directories, load_config, set_config
from loyaltyflow.core.engine import WorkflowEngine
from loyaltyflow.core.exceptions import DefinitionError, FlowError
from loyaltyflow.core.logger import setup_logging
from loyaltyflow.core.models import ResumeEvent
from loyaltyflow.core.outbound import InMemoryOutbound


def _parse_vars(pairs) -> Dict[str, Any]:
    """Parse ``key=value`` pairs; values are read as YAML scalars"""
    result: Dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"Expected key=value, got {pair!r}")
        key, value = pair.split("=", 1)
        result[key] = yaml.safe_load(value) if value else ""
    return result


def _engine(ctx: click.Context, dry_run: bool = False) -> WorkflowEngine:
    config = load_config(ctx.obj.get("config_file"))
    set_config(config)
    ensure_directories(config)
    setup_logging(
        level="DEBUG" if ctx.obj.get("verbose") else config.observability.log_level,
        log_dir=config.paths.log_dir,
        file_output=config.observability.file_logs,
        console_output=ctx.obj.get("verbose", False),
    )
    outbound = InMemoryOutbound() if dry_run else None
    return WorkflowEngine(config=config, outbound=outbound)


def _echo(data: Any):
    click.echo(json.dumps(data, indent=2, default=str))


def _fail(error: FlowError):
    click.echo(f"Error: {error.message}", err=True)
    if isinstance(error, DefinitionError):
        for item in error.errors:
            click.echo(f"  - {item}", err=True)
    raise click.Abort()


def _run(ctx: click.Context, dry_run: bool, work):
    """Run an async engine operation and close the engine afterwards"""
    engine = _engine(ctx, dry_run=dry_run)

    async def _main():
        try:
            return await work(engine)
        finally:
            await engine.close()

    try:
        return engine, asyncio.run(_main())
    except FlowError as e:
        _fail(e)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_file", type=click.Path(exists=True), help="Config file")
@click.option("--verbose", "-v", is_flag=True, help="Log to the console")
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[str], verbose: bool):
    """LoyaltyFlow - durable workflow engine for loyalty conversations.

    Publish workflow definitions, start and resume executions, and inspect
    their step history.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = Path(config_file) if config_file else None
    ctx.obj["verbose"] = verbose


# =============================================================================
# Definitions
# =============================================================================

@cli.command()
@click.argument("file_path", type=click.Path(exists=True))
@click.option("--no-activate", is_flag=True, help="Publish without activating")
@click.pass_context
def publish(ctx: click.Context, file_path: str, no_activate: bool):
    """Publish a YAML/JSON definition as a new workflow version."""
    engine = _engine(ctx)
    try:
        _, warnings = engine.validate(get_cache().load_or_parse(file_path))
        version = engine.publish_file(file_path, activate=not no_activate)
    except FlowError as e:
        _fail(e)

    state = "active" if version.is_active else "inactive"
    click.echo(f"Published {version.id} ({state})")
    for warning in warnings:
        click.echo(f"  warning: {warning}")


@cli.command()
@click.argument("file_path", type=click.Path(exists=True))
@click.pass_context
def validate(ctx: click.Context, file_path: str):
    """Validate a definition file without publishing it."""
    engine = _engine(ctx)
    try:
        version, warnings = engine.validate(get_cache().load_or_parse(file_path))
    except FlowError as e:
        _fail(e)

    click.echo(f"Valid: {version.workflow_id} ({len(version.nodes)} nodes)")
    for warning in warnings:
        click.echo(f"  warning: {warning}")


@cli.command()
@click.argument("workflow_id")
@click.option("--activate", "activate_version", type=int, help="Make this version active")
@click.pass_context
def versions(ctx: click.Context, workflow_id: str, activate_version: Optional[int]):
    """List versions of a workflow."""
    engine = _engine(ctx)
    try:
        if activate_version is not None:
            engine.activate_version(workflow_id, activate_version)
        items = engine.list_versions(workflow_id)
    except FlowError as e:
        _fail(e)

    if not items:
        click.echo(f"No versions of {workflow_id}")
        return
    for version in items:
        marker = "*" if version.is_active else " "
        created = version.created_at.strftime("%Y-%m-%d %H:%M") if version.created_at else ""
        click.echo(f"{marker} v{version.version:<4} {created}  {version.name or ''}")


# =============================================================================
# Executions
# =============================================================================

@cli.command()
@click.argument("workflow_id")
@click.option("--session", "-s", "session_id", required=True, help="Session id")
@click.option("--version", "version_ref", default="active", help="Version number or 'active'")
@click.option("--var", "variables", multiple=True, help="Initial variable key=value")
@click.option("--user", "user_id", help="User id")
@click.option("--chat", "chat_id", help="Chat id")
@click.option("--dry-run", "-n", is_flag=True, help="Record messages and HTTP calls instead of sending")
@click.pass_context
def start(ctx, workflow_id, session_id, version_ref, variables, user_id, chat_id, dry_run):
    """Start a workflow for a session."""
    initial = _parse_vars(variables)

    async def work(engine: WorkflowEngine):
        execution_id = await engine.start(
            workflow_id,
            session_id=session_id,
            version=version_ref,
            initial_variables=initial,
            user_id=user_id,
            chat_id=chat_id,
        )
        return engine.get_execution(execution_id)

    engine, result = _run(ctx, dry_run, work)
    _print_outcome(result)
    if dry_run:
        for message in engine.outbound.messages:
            click.echo(f"  > {message.text}")


@cli.command()
@click.argument("execution_id")
@click.option("--text", help="Message text")
@click.option("--callback", "callback_data", help="Button callback data")
@click.option("--var", "variables", multiple=True, help="Variable key=value")
@click.option("--dry-run", "-n", is_flag=True, help="Record messages and HTTP calls instead of sending")
@click.pass_context
def resume(ctx, execution_id, text, callback_data, variables, dry_run):
    """Deliver an event to a waiting execution."""
    event = ResumeEvent(text=text, callback_data=callback_data, variables=_parse_vars(variables))

    async def work(engine: WorkflowEngine):
        await engine.resume(execution_id, event)
        return engine.get_execution(execution_id)

    engine, result = _run(ctx, dry_run, work)
    _print_outcome(result)
    if dry_run:
        for message in engine.outbound.messages:
            click.echo(f"  > {message.text}")


def _print_outcome(result: Dict[str, Any]):
    execution = result["execution"]
    click.echo(f"Execution: {execution['execution_id']}")
    click.echo(f"Status:    {result['status']}")
    click.echo(f"Node:      {execution['current_node_id']}")
    if execution.get("error"):
        click.echo(f"Error:     {execution['error']}")
    if result.get("wait_payload"):
        click.echo(f"Waiting:   {execution['wait_type']}")


@cli.command()
@click.argument("execution_id")
@click.option("--output", "-o", type=click.Choice(["text", "json"]), default="text")
@click.pass_context
def status(ctx: click.Context, execution_id: str, output: str):
    """Show an execution with its step history."""
    engine = _engine(ctx)
    try:
        result = engine.get_execution(execution_id)
    except FlowError as e:
        _fail(e)

    if output == "json":
        _echo(result)
        return

    _print_outcome(result)
    click.echo("")
    for step in result["steps"]:
        icon = {"completed": "+", "error": "-", "skipped": "~", "running": ">"}.get(step["status"], "?")
        click.echo(f"[{icon}] {step['step']:>3} {step['node_id']} ({step['node_type']})")
        for message in step["messages"]:
            click.echo(f"        {message}")


@cli.command()
@click.argument("execution_id")
@click.option("--from-node", "from_node_id", help="Node to restart at")
@click.option("--reset-variables", is_flag=True, help="Use a fresh session")
@click.option("--skip-completed", is_flag=True, help="Restart where the original stopped")
@click.option("--session", "session_id", help="Session id for the new execution")
@click.pass_context
def restart(ctx, execution_id, from_node_id, reset_variables, skip_completed, session_id):
    """Restart an execution as a new one."""

    async def work(engine: WorkflowEngine):
        result = await engine.restart(
            execution_id,
            from_node_id=from_node_id,
            reset_variables=reset_variables,
            skip_completed=skip_completed,
            session_id=session_id,
        )
        await engine.join()
        return result

    engine, result = _run(ctx, False, work)
    new = engine.context_manager.get_execution(result["new_execution_id"])
    click.echo(f"Restarted {result['parent_execution_id']} from {result['restarted_from_node_id']}")
    click.echo(f"New execution: {new.execution_id} ({new.status.value})")


@cli.command("list")
@click.option("--workflow", "-w", "workflow_id", help="Filter by workflow")
@click.option("--status", help="Filter by status")
@click.option("--user", "user_id", help="Filter by user")
@click.option("--search", help="Search session or chat id")
@click.option("--page", default=1, help="Page number")
@click.option("--limit", default=20, help="Page size")
@click.option("--nested", is_flag=True, help="Include sub-workflow executions")
@click.pass_context
def list_executions(ctx, workflow_id, status, user_id, search, page, limit, nested):
    """List executions, newest first."""
    engine = _engine(ctx)
    result = engine.list_executions(
        workflow_id=workflow_id,
        status=status,
        user_id=user_id,
        search=search,
        page=page,
        limit=limit,
        include_nested=nested,
    )

    if not result["executions"]:
        click.echo("No executions")
        return

    click.echo(f"{'EXECUTION':<38} {'WORKFLOW':<20} {'STATUS':<10} {'STEPS':>5}  SESSION")
    for item in result["executions"]:
        click.echo(
            f"{item['execution_id']:<38} {item['workflow_id'][:20]:<20} "
            f"{item['status']:<10} {item['step_count']:>5}  {item['session_id']}"
        )
    pagination = result["pagination"]
    click.echo(f"\nPage {pagination['page']}/{pagination['total_pages']} ({pagination['total']} total)")


@cli.command()
@click.argument("execution_id")
@click.pass_context
def cancel(ctx: click.Context, execution_id: str):
    """Cancel a running or waiting execution."""
    engine = _engine(ctx)
    try:
        cancelled = engine.cancel(execution_id)
    except FlowError as e:
        _fail(e)

    if cancelled:
        click.echo(f"Cancelled {execution_id}")
    else:
        click.echo(f"{execution_id} is not running or waiting")


@cli.command()
@click.pass_context
def tick(ctx: click.Context):
    """Resume executions whose delay has elapsed."""

    async def work(engine: WorkflowEngine):
        return await engine.resume_due_delays()

    _, resumed = _run(ctx, False, work)
    click.echo(f"Resumed {len(resumed)} execution(s)")
    for execution_id in resumed:
        click.echo(f"  {execution_id}")


@cli.command()
@click.option("--keep-days", default=30, help="Keep finished executions this many days")
@click.option("--stale-minutes", type=int, help="Also fail executions running longer than this")
@click.pass_context
def cleanup(ctx: click.Context, keep_days: int, stale_minutes: Optional[int]):
    """Delete old executions and expired variables."""
    engine = _engine(ctx)
    if stale_minutes:
        stale = engine.mark_stale_as_failed(stale_minutes)
        click.echo(f"Marked {stale} stale execution(s) as failed")
    result = engine.cleanup(keep_days)
    click.echo(f"Deleted {result['executions']} execution(s), {result['variables']} expired variable(s)")


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, help="Port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int):
    """Serve the REST API (requires the 'server' extra)."""
    try:
        import uvicorn

        from loyaltyflow.server.app import create_app
    except ImportError:
        click.echo("The API server requires FastAPI: pip install loyaltyflow[server]", err=True)
        raise click.Abort()

    engine = _engine(ctx)
    click.echo(f"Serving LoyaltyFlow API on http://{host}:{port}")
    uvicorn.run(create_app(engine), host=host, port=port)


if __name__ == "__main__":
    cli()
