"""Hopline command line: drive sessions against the local store."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from hopline.app import Hopline
from hopline.config import Settings, get_settings
from hopline.errors import HoplineError
from hopline.events import FinalResult, TransientMessage
from hopline.logging_utils import configure_logging
from hopline.service import SendResult, SessionDetails
from hopline.types import ProcessingStatus, Role

app = typer.Typer(name="hopline", help="Durable hop-by-hop agent turns", add_completion=False)
console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    home: Path | None = typer.Option(None, "--home", help="Directory for the database and agents.yaml"),  # noqa: B008
    agents_file: Path | None = typer.Option(None, "--agents", help="Agent catalog YAML"),  # noqa: B008
    log_level: str | None = typer.Option(None, "--log-level", help="Log level"),
) -> None:
    overrides: dict[str, object] = {}
    if home is not None:
        overrides["home"] = home
    if agents_file is not None:
        overrides["agents_file"] = agents_file
    if log_level is not None:
        overrides["log_level"] = log_level
    settings = get_settings(**overrides)
    configure_logging(profile="cli", level=settings.log_level)
    ctx.obj = settings


def _open(ctx: typer.Context) -> Hopline:
    settings: Settings = ctx.obj
    try:
        return Hopline(settings)
    except HoplineError as exc:
        console.print(f"[red]error:[/red] {exc}")
        raise typer.Exit(1) from exc


async def _run_turn(
    hopline: Hopline, session_id: str, send: Callable[[], Awaitable[SendResult]]
) -> SendResult:
    finals: list[FinalResult] = []

    async def _on_final(result: FinalResult) -> None:
        finals.append(result)

    async def _on_transient(message: TransientMessage) -> None:
        console.print(f"[dim]... {escape(message.content)}[/dim]")

    detach_final = hopline.bus.on_final_result(_on_final)
    detach_transient = hopline.bus.on_transient(_on_transient)
    try:
        result = await send()
        if result.success:
            await hopline.drain()
    finally:
        detach_final()
        detach_transient()

    for final in finals:
        if final.success:
            console.print(escape(final.final_message_content or ""))
        else:
            console.print(f"[red]System Error:[/red] {escape(final.error_details or '')}")
    active = hopline.store.active_turn(session_id)
    if not finals and active is not None and active.processing_status is ProcessingStatus.AWAITING_ACTION:
        console.print(
            f"[yellow]Waiting for confirmation:[/yellow] hopline confirm {session_id} {active.turn_identifier}"
        )
    return result


def _finish(result: SendResult) -> None:
    if not result.success:
        console.print(f"[red]error:[/red] {result.error}")
        raise typer.Exit(1)


@app.command()
def agents(ctx: typer.Context) -> None:
    """List configured agents and their capabilities."""
    hopline = _open(ctx)
    table = Table("agent", "label", "memory", "capabilities")
    for agent in hopline.catalog.agents:
        rows = hopline.registry.compact_rows(agent.developer_name)
        table.add_row(agent.developer_name, agent.label, agent.memory.strategy, escape("\n".join(rows)))
    console.print(table)
    hopline.close()


@app.command("new-session")
def new_session(
    ctx: typer.Context,
    agent: str = typer.Argument(..., help="Agent developer name"),
    context_record: str | None = typer.Option(None, "--context-record", help="Record the chat is about"),
    user: str | None = typer.Option(None, "--user", help="User id"),
) -> None:
    """Create a chat session and print its id."""
    hopline = _open(ctx)
    try:
        details = hopline.service.create_new_chat_session(context_record, agent, user)
    except HoplineError as exc:
        console.print(f"[red]error:[/red] {exc}")
        raise typer.Exit(1) from exc
    finally:
        hopline.close()
    typer.echo(details.session_id)
    if details.welcome_message:
        console.print(details.welcome_message)


@app.command()
def send(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session id"),
    message: str = typer.Argument(..., help="User message"),
    turn_id: str | None = typer.Option(None, "--turn-id", help="Idempotency key for this message"),
) -> None:
    """Send a message and run the turn to completion or suspension."""
    hopline = _open(ctx)
    try:
        result = asyncio.run(
            _run_turn(hopline, session_id, lambda: hopline.service.send_message(session_id, message, None, turn_id))
        )
    finally:
        hopline.close()
    _finish(result)


@app.command()
def confirm(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session id"),
    turn_id: str = typer.Argument(..., help="Turn waiting for confirmation"),
    deny: bool = typer.Option(False, "--deny", help="Decline instead of approving"),
) -> None:
    """Approve or decline the action a turn is waiting on."""
    hopline = _open(ctx)
    try:
        result = asyncio.run(
            _run_turn(hopline, session_id, lambda: hopline.service.confirm_action(session_id, turn_id, not deny))
        )
    except HoplineError as exc:
        console.print(f"[red]error:[/red] {exc}")
        raise typer.Exit(1) from exc
    finally:
        hopline.close()
    _finish(result)


@app.command()
def history(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session id"),
    limit: int | None = typer.Option(None, "--limit", help="Messages per page"),
    before: float | None = typer.Option(None, "--before", help="Only messages older than this timestamp"),
) -> None:
    """Print one page of a session's messages, oldest first."""
    hopline = _open(ctx)
    try:
        session = hopline.store.require_session(session_id)
        agent = hopline.registry.agent(session.agent_id)
        if before is None:
            messages = hopline.service.load_session_content(
                SessionDetails(session_id, agent.welcome_message, agent.transient_messages_enabled), limit
            )
        else:
            messages = hopline.service.get_chat_history(session_id, limit, before)
    except HoplineError as exc:
        console.print(f"[red]error:[/red] {exc}")
        raise typer.Exit(1) from exc
    finally:
        hopline.close()
    for message in messages:
        stamp = datetime.fromtimestamp(message.timestamp, UTC).strftime("%H:%M:%S")
        label = message.tool_name if message.role is Role.TOOL and message.tool_name else str(message.role)
        prefix = f"[dim]{stamp} {escape(message.external_id)}[/dim] [bold]{escape(label)}[/bold]"
        console.print(f"{prefix}: {escape(message.content)}")


@app.command("start-over")
def start_over(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session id"),
    external_id: str = typer.Argument(..., help="First message to remove"),
) -> None:
    """Remove a message and everything after it."""
    hopline = _open(ctx)
    try:
        hopline.service.start_over_from_message(session_id, external_id)
    except HoplineError as exc:
        console.print(f"[red]error:[/red] {exc}")
        raise typer.Exit(1) from exc
    finally:
        hopline.close()
    console.print(f"Rewound {session_id} to before {external_id}.")
