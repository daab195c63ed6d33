from __future__ import annotations

import asyncio
import json
import sys
from typing import List, Optional

import typer
from loguru import logger

from .engine import LoupeAgent
from .errors import StorageError
from .models import LogMessageSeverity
from .queue import PersistentQueue
from .session import AgentSession
from .settings import AgentSettings
from .storage import SqliteStore

app = typer.Typer(help="Loupe agent operational CLI")


@app.callback()
def main(log_level: str = typer.Option("WARNING", "--log-level", help="loguru level for stderr")):
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper())


def _settings(**overrides) -> AgentSettings:
    return AgentSettings(**{k: v for k, v in overrides.items() if v is not None})


async def _send(settings: AgentSettings, severity: LogMessageSeverity, args: tuple, kw: dict):
    async with LoupeAgent(settings) as agent:
        if agent.write(severity, *args, **kw) is None:
            return {"queued": False}
        outcome = await agent.deliver_pending()
        health = agent.health()
    return {
        "queued": True,
        "status": outcome.status_code if outcome else None,
        "reason": outcome.reason if outcome else None,
        "pending": health.memory_buffered + health.durable_pending,
    }


@app.command("send")
def send(
    category: str = typer.Argument(..., help="Message category"),
    caption: str = typer.Argument(..., help="Message caption"),
    description: str = typer.Argument("", help="Description; {0}, {1}... refer to --param"),
    severity: str = typer.Option(
        "information", "--severity", help="critical|error|warning|information|verbose"
    ),
    param: List[str] = typer.Option([], "--param", help="Description parameter (repeatable)"),
    details: Optional[str] = typer.Option(None, "--details", help="Details (JSON recommended)"),
    origin: Optional[str] = typer.Option(None, "--origin", envvar="LOUPE_ORIGIN"),
    storage_path: Optional[str] = typer.Option(None, "--storage-path", envvar="LOUPE_STORAGE_PATH"),
):
    """Write one message and attempt a single delivery."""
    try:
        level = LogMessageSeverity.parse(severity)
    except (KeyError, ValueError):
        logger.error(f"Unknown severity: {severity}")
        raise typer.Exit(code=2)

    settings = _settings(ORIGIN=origin, STORAGE_PATH=storage_path, INTERVAL_DEBOUNCE_MS=0)
    args = (category, caption, description, param or None)
    result = asyncio.run(_send(settings, level, args, {"details": details}))
    typer.echo(json.dumps(result, indent=2))
    if not result["queued"]:
        raise typer.Exit(code=1)


@app.command("pending")
def pending(
    storage_path: str = typer.Option(..., "--storage-path", envvar="LOUPE_STORAGE_PATH"),
):
    """Count messages waiting in a durable store."""
    try:
        store = SqliteStore(storage_path)
    except StorageError as e:
        logger.error(f"Unable to open {storage_path}: {e}")
        raise typer.Exit(code=1)
    try:
        keys = PersistentQueue(store).durable_keys()
    finally:
        store.close()
    typer.echo(json.dumps({"storage_path": storage_path, "pending": len(keys)}, indent=2))


@app.command("session-header")
def session_header(
    session_storage_path: Optional[str] = typer.Option(
        None, "--session-storage-path", envvar="LOUPE_SESSION_STORAGE_PATH"
    ),
):
    """Print the header correlating server requests with this agent session."""
    store = SqliteStore(session_storage_path) if session_storage_path else None
    try:
        typer.echo(json.dumps(AgentSession(store).header(), indent=2))
    finally:
        if store is not None:
            store.close()


if __name__ == "__main__":
    app()
