"""CLI entry point for aumai-toolrouter."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click

from aumai_toolrouter.config import RouterSettings, load_settings
from aumai_toolrouter.errors import ConfigError
from aumai_toolrouter.logging import configure_logging
from aumai_toolrouter.models import ChatMessage, McpStatus, MessageType
from aumai_toolrouter.session import SessionController

_EXIT_WORDS = {"exit", "quit", ":q"}


def _build_session(settings: RouterSettings) -> SessionController:
    """Create the session used by every command."""
    return SessionController.from_settings(settings)


def _load_catalog(path: str) -> dict[str, list[dict[str, Any]]]:
    """Read a ``{server_id: [{name, description, input_schema?}]}`` JSON file."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Catalog {path} is not valid JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise click.ClickException(f"Catalog {path} must map server ids to tool lists.")
    catalog: dict[str, list[dict[str, Any]]] = {}
    for server_id, tools in raw.items():
        if not isinstance(tools, list):
            raise click.ClickException(f"Tools for server '{server_id}' must be a list.")
        for tool in tools:
            if not isinstance(tool, dict) or not tool.get("name"):
                raise click.ClickException(f"Every tool of server '{server_id}' needs a name.")
        catalog[str(server_id)] = tools
    return catalog


def _format_message(message: ChatMessage) -> str:
    if message.type is MessageType.USER:
        label = "You"
    elif message.type is MessageType.TOOL:
        label = f"Tool: {message.tool_name}"
    else:
        label = "System"
    return f"[{label}] {message.content}"


@click.group()
@click.version_option(package_name="aumai-toolrouter")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON settings file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override the configured log level.",
)
@click.pass_context
def main(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """AumAI Toolrouter: route natural-language requests to the right tool."""
    try:
        settings = load_settings(config_path, log_level=log_level.upper() if log_level else None)
    except ConfigError as exc:
        raise click.ClickException(exc.message) from exc
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json")
    ctx.obj = settings


@main.command("index")
@click.option(
    "--catalog",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file mapping server ids to tool lists.",
)
@click.pass_obj
def index_cmd(settings: RouterSettings, catalog: str) -> None:
    """Embed every tool of CATALOG and report how many were indexed."""
    tools = _load_catalog(catalog)

    async def run() -> None:
        async with _build_session(settings) as session:
            session.set_mcp_status(McpStatus.READY)
            stats = await session.update_catalog(tools)
            click.echo(
                f"Indexed {stats.indexed_count} of {stats.total_count} tool(s), "
                f"{stats.failed_count} failed (model: {session.model_status.status.value})."
            )
            for name in stats.failed:
                click.echo(f"  Failed: {name}", err=True)

    asyncio.run(run())


@main.command("match")
@click.option(
    "--catalog",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file mapping server ids to tool lists.",
)
@click.option("--query", required=True, help="Natural-language request.")
@click.option("--top-k", type=int, default=None, help="Maximum number of matches.")
@click.option("--threshold", type=float, default=None, help="Minimum cosine similarity.")
@click.option(
    "--output-format",
    default="text",
    type=click.Choice(["text", "json"]),
    show_default=True,
)
@click.pass_obj
def match_cmd(
    settings: RouterSettings,
    catalog: str,
    query: str,
    top_k: int | None,
    threshold: float | None,
    output_format: str,
) -> None:
    """Rank the tools of CATALOG against QUERY."""
    tools = _load_catalog(catalog)

    async def run() -> None:
        async with _build_session(settings) as session:
            session.set_mcp_status(McpStatus.READY)
            await session.update_catalog(tools)
            result = await session.router.route(query, top_k=top_k, similarity_threshold=threshold)

        if result.error:
            raise click.ClickException(f"Could not match query: {result.error}")
        if not result.matches:
            click.echo("No matching tools found.")
            return

        if output_format == "json":
            data = [
                {
                    "rank": rank,
                    "tool_name": match.tool_name,
                    "server_id": match.server_id,
                    "similarity": round(match.similarity, 4),
                }
                for rank, match in enumerate(result.matches, start=1)
            ]
            click.echo(json.dumps(data, indent=2))
        else:
            for rank, match in enumerate(result.matches, start=1):
                click.echo(f"  [{rank}] {match.tool_name} ({match.server_id}, similarity={match.similarity:.4f})")

    asyncio.run(run())


@main.command("chat")
@click.option(
    "--catalog",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file mapping server ids to tool lists.",
)
@click.pass_obj
def chat_cmd(settings: RouterSettings, catalog: str) -> None:
    """Interactive tool routing over CATALOG. Type 'exit' to leave."""
    tools = _load_catalog(catalog)

    async def run() -> None:
        async with _build_session(settings) as session:
            session.set_mcp_status(McpStatus.READY)
            stats = await session.update_catalog(tools)
            click.echo(f"Ready: {stats.indexed_count} tool(s) indexed, {stats.failed_count} failed.")
            while True:
                try:
                    line = await asyncio.to_thread(click.prompt, "you", default="", show_default=False)
                except click.Abort:
                    break
                if line.strip().lower() in _EXIT_WORDS:
                    break
                for message in await session.handle_submit(line):
                    if message.type is not MessageType.USER:
                        click.echo(_format_message(message))

    asyncio.run(run())


if __name__ == "__main__":
    main()
