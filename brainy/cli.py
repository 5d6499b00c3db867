"""CLI entry point: `brainy start`, `brainy init`, `brainy prefs`, etc."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Config, DEFAULT_CONFIG_DIR, DEFAULT_CONFIG_FILE, DEFAULTS
from .errors import BrainyError, ConfigError

console = Console()


def _setup_logging(log_dir: Path, env: str = "local"):
    log_dir.mkdir(parents=True, exist_ok=True)
    log = logging.getLogger("brainy")
    log.setLevel(logging.DEBUG if env == "local" else logging.INFO)
    fh = RotatingFileHandler(
        log_dir / "brainy.log", maxBytes=5_000_000, backupCount=2
    )
    fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    log.addHandler(fh)
    log.addHandler(logging.StreamHandler())


def _load_config(config_path: str | None) -> Config:
    try:
        return Config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc} {exc.detail}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(__version__, prog_name="brainy")
def main():
    """Brainy — a Telegram assistant that remembers how you like to talk."""
    pass


@main.command()
def init():
    """Interactive setup: write a config file."""
    click.echo("Brainy setup\n")

    if DEFAULT_CONFIG_FILE.exists():
        if not click.confirm(f"Config already exists at {DEFAULT_CONFIG_FILE}. Overwrite?"):
            click.echo("Aborted.")
            return

    bot_token = click.prompt("Telegram Bot Token (from @BotFather)")
    username = click.prompt("Bot username (without @)", default="", show_default=False)
    api_key = click.prompt("OpenAI API key", hide_input=True)
    model = click.prompt("Model", default=DEFAULTS["openai"]["model"])
    backend = click.prompt(
        "Storage backend", type=click.Choice(["memory", "sqlite"]), default="sqlite",
    )

    config_data = {
        "env": "prod",
        "telegram": {"bot_token": bot_token, "username": username},
        "openai": {"api_key": api_key, "model": model},
        "storage": {"backend": backend},
        "analyzer": dict(DEFAULTS["analyzer"]),
    }

    DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    with open(DEFAULT_CONFIG_FILE, "w") as f:
        yaml.dump(config_data, f, default_flow_style=False, sort_keys=False)

    click.echo(f"\nConfig written to {DEFAULT_CONFIG_FILE}")
    click.echo("Run 'brainy start' to begin.")


@main.command()
@click.option("-c", "--config", "config_path", default=None, help="Config file path")
def start(config_path):
    """Start the bot and the preference analyzer (foreground)."""
    cfg = _load_config(config_path)
    errors = cfg.validate()
    if errors:
        click.echo("Configuration errors:", err=True)
        for e in errors:
            click.echo(f"  - {e}", err=True)
        click.echo(f"\nRun 'brainy init' to set up, or edit {DEFAULT_CONFIG_FILE}", err=True)
        sys.exit(1)

    cfg.data_dir.mkdir(parents=True, exist_ok=True)
    _setup_logging(cfg.log_dir, cfg.env)

    click.echo(f"Starting brainy (model: {cfg.model}, storage: {cfg.storage_backend})...")
    from .bot import Bot
    bot = Bot(cfg)
    asyncio.run(bot.run())


@main.command()
@click.argument("user_id", type=int)
@click.option("-c", "--config", "config_path", default=None, help="Config file path")
def context(user_id, config_path):
    """Show the stored dialog context of a user."""
    from .storage import open_storage

    cfg = _load_config(config_path)
    contexts, prefs = open_storage(cfg)
    try:
        ctx = contexts.get_context(user_id)
    except BrainyError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    finally:
        prefs.close()
        contexts.close()

    if ctx is None:
        console.print(f"[dim]No context stored for user {user_id}.[/dim]")
        return

    title = f"User {user_id} — {len(ctx.messages)} messages, {ctx.tokens} tokens"
    if ctx.topic:
        title += f" — topic: {ctx.topic}"
    table = Table(title=title, show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("From", style="bold")
    table.add_column("Tokens", justify="right")
    table.add_column("Text")
    for msg in ctx.messages:
        text = msg.text if len(msg.text) <= 80 else msg.text[:77] + "..."
        table.add_row(
            msg.timestamp.strftime("%Y-%m-%d %H:%M"),
            "user" if msg.is_user else "bot",
            str(msg.tokens),
            text,
        )
    console.print(table)


@main.command()
@click.argument("user_id", type=int)
@click.option("-c", "--config", "config_path", default=None, help="Config file path")
def prefs(user_id, config_path):
    """Show the analysed preferences of a user."""
    from .storage import open_storage

    cfg = _load_config(config_path)
    contexts, store = open_storage(cfg)
    try:
        p = store.get_user_preferences(user_id)
    except BrainyError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    finally:
        store.close()
        contexts.close()

    if p is None:
        console.print(f"[dim]No preferences stored for user {user_id}.[/dim]")
        return

    table = Table(title=f"Preferences of user {user_id}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for field, value in p.model_dump(mode="json").items():
        if field == "user_id":
            continue
        if isinstance(value, list):
            value = ", ".join(value)
        table.add_row(field, "-" if value in (None, "") else str(value))
    console.print(table)


@main.command()
@click.argument("user_id", type=int)
@click.option("-c", "--config", "config_path", default=None, help="Config file path")
def analyze(user_id, config_path):
    """Run one preference analysis for a user now."""
    from .analyzer import PreferenceAnalyzer
    from .completion import CompletionClient
    from .storage import open_storage

    cfg = _load_config(config_path)
    if not cfg.api_key:
        click.echo("openai.api_key is required", err=True)
        sys.exit(1)

    contexts, store = open_storage(cfg)
    analyzer = PreferenceAnalyzer.from_config(cfg, contexts, store, CompletionClient.from_config(cfg))
    try:
        outcome = asyncio.run(analyzer.analyze_user(user_id))
    except BrainyError as exc:
        console.print(f"[red]Analysis failed:[/red] {exc}")
        if exc.detail:
            console.print(f"[dim]{exc.detail[:500]}[/dim]")
        sys.exit(1)
    finally:
        store.close()
        contexts.close()

    console.print(f"[green]{outcome.value}[/green]")


@main.command()
@click.option("-n", "--lines", default=50, help="Number of lines to show")
@click.option("-f", "--follow", is_flag=True, help="Follow log output")
@click.option("-c", "--config", "config_path", default=None, help="Config file path")
def logs(lines, follow, config_path):
    """Show brainy logs."""
    cfg = _load_config(config_path)
    log_file = cfg.log_dir / "brainy.log"
    if not log_file.exists():
        click.echo("No logs yet.")
        return

    cmd = ["tail"]
    if follow:
        cmd.append("-f")
    cmd += ["-n", str(lines), str(log_file)]
    os.execvp("tail", cmd)
