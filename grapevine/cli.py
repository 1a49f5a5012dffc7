#!/usr/bin/env python3

from __future__ import annotations
import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import aioconsole
import typer
from rich.console import Console
from rich.table import Table

from grapevine.client import GrapevineClient, init
from grapevine.config import ClientConfig, load_config
from grapevine.errors import GrapevineError, PlayerNotFoundError
from grapevine.events import ERROR_EVENT, Event
from grapevine.log import configure_root_logging, get_logger

app = typer.Typer(help="Grapevine intermud network client")
console = Console()
logger = get_logger(__name__)


def _config(config_path: Optional[Path], client_id: Optional[str], client_secret: Optional[str],
            endpoint: Optional[str], channels: Optional[List[str]] = None) -> ClientConfig:
    try:
        return load_config(
            config_path,
            client_id=client_id,
            client_secret=client_secret,
            endpoint=endpoint,
            channels=channels or None,
        )
    except GrapevineError as e:
        console.print(f"[red]Configuration error[/]: {e}")
        raise typer.Exit(code=2)


def _games_table(client: GrapevineClient) -> Table:
    table = Table(title="Games on the network")
    table.add_column("Game")
    table.add_column("Players")
    for game, players in sorted(client.games.items(), key=lambda item: item[0].lower()):
        table.add_row(game, ", ".join(players) or "[dim]-[/]")
    return table


def _print_broadcast(payload: dict) -> None:
    console.print(
        f"[bold yellow]{payload.get('channel', '?')}[/] "
        f"{payload.get('name', '?')}@{payload.get('game', '?')}: {payload.get('message', '')}"
    )


def _print_tell(payload: dict) -> None:
    console.print(
        f"[bold cyan]Tell[/] from {payload.get('from_name', '?')}@{payload.get('from_game', '?')} "
        f"to {payload.get('to_name', '?')}: {payload.get('message', '')}"
    )


def _print_error(error: Exception) -> None:
    console.print(f"[red]Error[/]: {error}")


ConfigOption = typer.Option(None, "--config", "-c", help="YAML file with client settings")
ClientIdOption = typer.Option(None, help="Client id (or GRAPEVINE_CLIENT_ID)")
ClientSecretOption = typer.Option(None, help="Client secret (or GRAPEVINE_CLIENT_SECRET)")
EndpointOption = typer.Option(None, help="Hub socket URL (or GRAPEVINE_ENDPOINT)")
LogLevelOption = typer.Option("WARNING", help="Log level")


@app.command()
def games(
    config: Optional[Path] = ConfigOption,
    client_id: Optional[str] = ClientIdOption,
    client_secret: Optional[str] = ClientSecretOption,
    endpoint: Optional[str] = EndpointOption,
    log_level: str = LogLevelOption,
):
    """Connect, print the games on the network and their players, then exit."""
    configure_root_logging(log_level)
    settings = _config(config, client_id, client_secret, endpoint)

    async def main_loop() -> None:
        async with init(settings) as client:
            console.print(_games_table(client))

    try:
        asyncio.run(main_loop())
    except GrapevineError as e:
        console.print(f"[red]Could not reach the hub[/]: {e}")
        raise typer.Exit(code=1)


@app.command()
def listen(
    channel: List[str] = typer.Option([], "--channel", help="Channel to subscribe to (repeatable)"),
    config: Optional[Path] = ConfigOption,
    client_id: Optional[str] = ClientIdOption,
    client_secret: Optional[str] = ClientSecretOption,
    endpoint: Optional[str] = EndpointOption,
    log_level: str = LogLevelOption,
):
    """Print channel broadcasts and tells until interrupted."""
    configure_root_logging(log_level)
    settings = _config(config, client_id, client_secret, endpoint, channel)

    async def main_loop() -> None:
        client = init(settings)
        client.on(ERROR_EVENT, _print_error)
        client.on(Event.CHANNELS_BROADCAST, _print_broadcast)
        client.on(Event.TELLS_RECEIVE, _print_tell)
        client.on("ready", lambda payload: console.print(
            "[green]Reconnected[/]" if payload.get("reconnected") else "[green]Connected[/]"))
        try:
            await client.connect()
            console.print(f"Listening on {', '.join(settings.channels) or 'no channels'}; Ctrl-C to stop")
            await asyncio.Event().wait()
        finally:
            client.close()
            await client.wait_closed()

    try:
        asyncio.run(main_loop())
    except KeyboardInterrupt:
        console.print("Bye")
    except GrapevineError as e:
        console.print(f"[red]Could not reach the hub[/]: {e}")
        raise typer.Exit(code=1)


@app.command()
def chat(
    player: str = typer.Option(..., help="Local player name to speak as"),
    channel: str = typer.Option("gossip", help="Channel plain lines are sent to"),
    config: Optional[Path] = ConfigOption,
    client_id: Optional[str] = ClientIdOption,
    client_secret: Optional[str] = ClientSecretOption,
    endpoint: Optional[str] = EndpointOption,
    log_level: str = LogLevelOption,
):
    """Interactive session: chat on a channel and send tells."""
    configure_root_logging(log_level)
    settings = _config(config, client_id, client_secret, endpoint)

    async def main_loop() -> None:
        client = init(settings)
        client.on(ERROR_EVENT, _print_error)
        client.on(Event.CHANNELS_BROADCAST, _print_broadcast)
        client.on(Event.TELLS_RECEIVE, _print_tell)
        try:
            await client.connect()
            await client.add_player(player)
            await client.send(Event.CHANNELS_SUBSCRIBE, {"channel": channel})
            console.print(f"[bold green]Connected[/] as {player} on {channel}. /help for commands")

            while True:
                line = (await aioconsole.ainput(": ")).strip()
                if not line:
                    continue
                if line in {"/quit", "/exit"}:
                    break
                try:
                    await _handle_line(client, player, channel, line)
                except GrapevineError as e:
                    console.print(f"[red]{type(e).__name__}[/]: {e}")
        finally:
            client.close()
            await client.wait_closed()

    try:
        asyncio.run(main_loop())
    except (KeyboardInterrupt, EOFError):
        console.print("Bye")
    except GrapevineError as e:
        console.print(f"[red]Could not reach the hub[/]: {e}")
        raise typer.Exit(code=1)


async def _handle_line(client: GrapevineClient, player: str, channel: str, line: str) -> None:
    if line == "/help":
        console.print("/who, /tell <player@game> <message>, /quit; anything else goes to the channel")
        return
    if line == "/who":
        console.print(_games_table(client))
        return
    if line.startswith("/tell "):
        parts = line.split(" ", 2)
        if len(parts) < 3 or not parts[2].strip():
            console.print("Usage: /tell <player@game> <message>")
            return
        try:
            target = client.find_player(parts[1])
        except PlayerNotFoundError as e:
            console.print(f"[red]{e}[/]")
            return
        await client.send(Event.TELLS_SEND, {
            "from_name": player,
            "to_game": target.game,
            "to_name": target.name,
            "sent_at": datetime.now(timezone.utc),
            "message": parts[2].strip(),
        })
        console.print(f"[dim]Tell sent to {target}[/]")
        return
    if line.startswith("/"):
        console.print("Unknown command. /help")
        return
    await client.send(Event.CHANNELS_SEND, {"channel": channel, "name": player, "message": line})


def main() -> None:
    app()


if __name__ == "__main__":
    main()
