"""agentdeck CLI - talk to agents and manage their checkpoints."""

import asyncio
import logging
import sys
from dataclasses import fields
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from agentdeck import __version__
from agentdeck.checkpoint import CheckpointFilters, CheckpointSearchQuery, SORT_KEYS
from agentdeck.config import AGENTDECK_DIR, DeckConfig, get_config
from agentdeck.errors import AgentDeckException, format_error
from agentdeck.events import decode_metadata_chunk, is_metadata_chunk
from agentdeck.orchestrator import AgentOrchestrator

console = Console()


def _orchestrator(ctx: click.Context) -> AgentOrchestrator:
    return AgentOrchestrator(get_config(ctx.obj.get("workspace_root")))


def _fail(error: AgentDeckException | Exception) -> None:
    console.print(f"[red]{escape(format_error(error))}[/red]")
    sys.exit(1)


def _ts(value: str | None) -> str:
    return value[:16].replace("T", " ") if value else "-"


@click.group()
@click.version_option(version=__version__)
@click.option("--workspace-root", type=click.Path(file_okay=False, path_type=Path), help="Workspace root directory")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx, workspace_root, verbose):
    """agentdeck: Orchestrate CLI AI agents across workspaces."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["workspace_root"] = workspace_root


@main.command()
@click.pass_context
def backends(ctx):
    """Probe configured backends and show which are available."""
    orchestrator = _orchestrator(ctx)
    status = asyncio.run(orchestrator.backend_status())

    table = Table()
    table.add_column("BACKEND")
    table.add_column("BINARY")
    table.add_column("STATUS")
    for adapter in orchestrator.selector.adapters:
        ok = status.get(adapter.name, False)
        table.add_row(adapter.name, adapter.binary, "[green]available[/green]" if ok else "[red]unavailable[/red]")
    console.print(table)


@main.command()
@click.argument("workspace")
@click.argument("agent")
@click.argument("message")
@click.option("--backend", "-b", help="Preferred backend (claude, gemini)")
@click.option("--no-stream", is_flag=True, help="Wait for the full answer")
@click.option("--show-tools", is_flag=True, help="Print tool activity while streaming")
@click.pass_context
def ask(ctx, workspace, agent, message, backend, no_stream, show_tools):
    """Send MESSAGE to AGENT in WORKSPACE."""
    orchestrator = _orchestrator(ctx)

    async def run() -> None:
        try:
            if no_stream:
                response = await orchestrator.generate_response(workspace, agent, message, preferred_backend=backend)
                console.print(response.content, markup=False, highlight=False)
                meta = response.metadata
                colour = "green" if meta.get("success") else "red"
                console.print(f"[dim]{meta.get('backend')}[/dim] [{colour}]{meta.get('state')}[/{colour}]")
                return

            async for chunk in orchestrator.generate_streaming_response(
                workspace, agent, message, preferred_backend=backend
            ):
                if not is_metadata_chunk(chunk):
                    console.print(chunk, end="", markup=False, highlight=False, soft_wrap=True)
                    continue
                decoded = decode_metadata_chunk(chunk)
                if show_tools and decoded is not None:
                    kind, payload = decoded
                    if kind == "TOOL_USE":
                        console.print(f"\n[dim]> {payload.get('name')}[/dim]")
                    elif kind == "TOOL_RESULT":
                        console.print(f"[dim]  {escape(str(payload.get('content_preview', '')))}[/dim]")
            console.print()
        finally:
            await orchestrator.shutdown()

    try:
        asyncio.run(run())
    except AgentDeckException as e:
        _fail(e)


@main.command()
@click.argument("workspace")
@click.argument("agent")
@click.option("--limit", "-n", default=20, help="Number of messages to show")
@click.pass_context
def history(ctx, workspace, agent, limit):
    """Show an agent's conversation log."""
    orchestrator = _orchestrator(ctx)
    try:
        messages = asyncio.run(orchestrator.load_conversation_history(workspace, agent))
    except AgentDeckException as e:
        _fail(e)

    if not messages:
        console.print(f"[yellow]No history for {workspace}/{agent}[/yellow]")
        return

    table = Table()
    table.add_column("TIME")
    table.add_column("ROLE")
    table.add_column("BACKEND")
    table.add_column("MESSAGE")
    for m in messages[-limit:]:
        content = m.content.replace("\n", " ")
        content = content[:60] + "..." if len(content) > 60 else content
        table.add_row(_ts(m.timestamp), m.role, m.metadata.get("backend", ""), content)
    console.print(table)


# ============================================================================
# Checkpoints
# ============================================================================


@main.group()
def checkpoint():
    """Manage agent checkpoints."""
    pass


@checkpoint.command("create")
@click.argument("workspace")
@click.argument("agent")
@click.argument("title")
@click.option("--description", "-d", help="What this checkpoint captures")
@click.option("--tag", "-t", "tags", multiple=True, help="Tag (repeatable)")
@click.pass_context
def checkpoint_create(ctx, workspace, agent, title, description, tags):
    """Checkpoint AGENT's current conversation."""
    orchestrator = _orchestrator(ctx)
    try:
        checkpoint_id = asyncio.run(orchestrator.create_checkpoint(workspace, agent, title, description, list(tags)))
    except AgentDeckException as e:
        _fail(e)
    console.print(f"[green]✓[/green] Created checkpoint {checkpoint_id}")


def _summary_table(summaries) -> Table:
    table = Table()
    table.add_column("ID")
    table.add_column("TITLE")
    table.add_column("AGENT")
    table.add_column("TAGS")
    table.add_column("SCORE", justify="right")
    table.add_column("USES", justify="right")
    table.add_column("CREATED")
    for s in summaries:
        table.add_row(
            s.id,
            s.title,
            s.agent_type,
            ", ".join(s.tags) or "-",
            f"{s.performance_score:.0%}",
            str(s.usage_count),
            _ts(s.created_at),
        )
    return table


@checkpoint.command("list")
@click.option("--limit", "-n", default=20, help="Number of checkpoints to show")
@click.option("--sort", "sort_by", type=click.Choice(SORT_KEYS), default="created")
@click.pass_context
def checkpoint_list(ctx, limit, sort_by):
    """List saved checkpoints."""
    orchestrator = _orchestrator(ctx)
    result = asyncio.run(orchestrator.search_checkpoints(CheckpointSearchQuery(sort_by=sort_by, limit=limit)))
    if not result.results:
        console.print("[yellow]No checkpoints found.[/yellow]")
        console.print("Create one with: agentdeck checkpoint create WORKSPACE AGENT TITLE")
        return
    console.print(_summary_table(result.results))
    if result.total_count > len(result.results):
        console.print(f"[dim]{len(result.results)} of {result.total_count} shown[/dim]")


@checkpoint.command("search")
@click.argument("query", default="")
@click.option("--tag", "-t", "tags", multiple=True, help="Match any of these tags")
@click.option("--expertise", "-e", multiple=True, help="Match any of these expertise areas")
@click.option("--context-type", "context_types", multiple=True, help="Match any of these context types")
@click.option("--min-score", type=float, default=0.0, help="Minimum performance score (0-1)")
@click.option("--recent", is_flag=True, help="Only checkpoints used in the last 7 days")
@click.option("--sort", "sort_by", type=click.Choice(SORT_KEYS), default="relevance")
@click.option("--limit", "-n", default=20)
@click.option("--offset", default=0)
@click.pass_context
def checkpoint_search(ctx, query, tags, expertise, context_types, min_score, recent, sort_by, limit, offset):
    """Search checkpoints by text and filters."""
    orchestrator = _orchestrator(ctx)
    search = CheckpointSearchQuery(
        query=query,
        filters=CheckpointFilters(
            context_types=context_types,
            expertise_areas=expertise,
            tags=tags,
            performance_threshold=min_score,
            recently_used=recent,
        ),
        sort_by=sort_by,
        limit=limit,
        offset=offset,
    )
    result = asyncio.run(orchestrator.search_checkpoints(search))
    if not result.results:
        console.print("[yellow]No matching checkpoints.[/yellow]")
    else:
        console.print(_summary_table(result.results))
    console.print(f"[dim]{result.total_count} match(es) in {result.search_time_ms:.1f}ms[/dim]")
    if result.suggested_tags:
        console.print(f"[dim]Tags: {', '.join(result.suggested_tags)}[/dim]")


@checkpoint.command("show")
@click.argument("checkpoint_id")
@click.pass_context
def checkpoint_show(ctx, checkpoint_id):
    """Show details of a checkpoint."""
    orchestrator = _orchestrator(ctx)
    try:
        cp = orchestrator.checkpoints.get_checkpoint(checkpoint_id)
    except AgentDeckException as e:
        _fail(e)

    console.print(f"[bold]{cp.title}[/bold] [dim]{cp.id}[/dim]")
    console.print(cp.description)
    console.print()
    console.print(f"  Agent: {cp.workspace_id}/{cp.agent_id} ({cp.agent_type}, {cp.agent_configuration.model})")
    console.print(f"  Created: {_ts(cp.created_at)} by {cp.created_by}")
    console.print(f"  Tags: {', '.join(cp.tags) or '-'}")
    console.print(f"  {cp.expertise_summary}")
    metrics = cp.performance_metrics
    console.print(
        f"  Commands: {metrics.commands_executed} ({metrics.success_rate:.0%} success, "
        f"{metrics.errors_encountered} errors)"
    )
    console.print(f"  Used: {cp.usage_count} time(s), last {_ts(cp.last_used)}")
    console.print(f"  {cp.full_conversation_state.summary}")


@checkpoint.command("restore")
@click.argument("checkpoint_id")
@click.argument("workspace")
@click.argument("agent")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.pass_context
def checkpoint_restore(ctx, checkpoint_id, workspace, agent, force):
    """Replace AGENT's conversation with a checkpoint's."""
    if not force and not click.confirm(f"Overwrite the conversation of {workspace}/{agent}?"):
        console.print("Cancelled.")
        return
    orchestrator = _orchestrator(ctx)
    try:
        cp = asyncio.run(orchestrator.restore_from_checkpoint(workspace, agent, checkpoint_id))
    except AgentDeckException as e:
        _fail(e)
    console.print(
        f"[green]✓[/green] Restored {len(cp.full_conversation_state.messages)} messages "
        f"from '{cp.title}' into {workspace}/{agent}"
    )


@checkpoint.command("rm")
@click.argument("checkpoint_id")
@click.pass_context
def checkpoint_rm(ctx, checkpoint_id):
    """Delete a checkpoint."""
    orchestrator = _orchestrator(ctx)
    if asyncio.run(orchestrator.delete_checkpoint(checkpoint_id)):
        console.print(f"[green]✓[/green] Deleted {checkpoint_id}")
    else:
        console.print(f"[yellow]Checkpoint {checkpoint_id} not found[/yellow]")


@checkpoint.command("stats")
@click.pass_context
def checkpoint_stats(ctx):
    """Show checkpoint storage statistics."""
    orchestrator = _orchestrator(ctx)
    stats = asyncio.run(orchestrator.get_checkpoint_stats())
    console.print(f"Checkpoints: {stats.total_checkpoints}")
    console.print(f"Total size: {stats.total_size_bytes:,} bytes (avg {stats.average_size_bytes:,.0f})")
    console.print(f"Top tags: {', '.join(stats.most_used_tags) or '-'}")
    console.print(f"Top expertise: {', '.join(stats.most_common_expertise) or '-'}")


# ============================================================================
# Config
# ============================================================================


@main.group()
def config():
    """Manage configuration (~/.agentdeck/config.yaml)."""
    pass


@config.command("list")
@click.pass_context
def config_list(ctx):
    """Show the effective configuration."""
    effective = get_config(ctx.obj.get("workspace_root"))
    defaults = DeckConfig()
    for f in fields(DeckConfig):
        value, default = getattr(effective, f.name), getattr(defaults, f.name)
        if value != default:
            console.print(f"  {f.name}: [cyan]{value}[/cyan] [dim](default: {default})[/dim]")
        else:
            console.print(f"  {f.name}: {value}")


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--workspace", "workspace_level", is_flag=True, help="Write to <workspace-root>/.agentdeck/")
@click.pass_context
def config_set(ctx, key, value, workspace_level):
    """Set a configuration value.

    Examples:
        agentdeck config set claude_timeout 600
        agentdeck config set backend_priority gemini,claude
    """
    key = key.replace("-", "_")
    known = {f.name: f for f in fields(DeckConfig)}
    if key not in known:
        console.print(f"[red]Unknown config key: {key}[/red]")
        console.print(f"[dim]Keys: {', '.join(known)}[/dim]")
        sys.exit(1)

    default = getattr(DeckConfig(), key)
    try:
        if isinstance(default, bool):
            typed = value.lower() in ("1", "true", "yes", "on")
        elif isinstance(default, int):
            typed = int(value)
        elif isinstance(default, float):
            typed = float(value)
        elif isinstance(default, list):
            typed = [v.strip() for v in value.split(",") if v.strip()]
        else:
            typed = value
    except ValueError:
        console.print(f"[red]Invalid value for {key}: {value}[/red]")
        sys.exit(1)

    if workspace_level:
        root = ctx.obj.get("workspace_root")
        if root is None:
            console.print("[red]--workspace needs --workspace-root[/red]")
            sys.exit(1)
        config_dir = Path(root) / ".agentdeck"
    else:
        config_dir = AGENTDECK_DIR

    current = DeckConfig.load(config_dir)
    setattr(current, key, typed)
    path = current.save(config_dir)
    console.print(f"[green]✓[/green] Set {key} = {typed} ({path})")


if __name__ == "__main__":
    main()
