"""CLI entry point for SpecPilot."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from specpilot import __version__
from specpilot.config import Config, ConfigError, load_config
from specpilot.exceptions import InvocationError, SpecPilotError, ValidationError


def _resolve_config_path(config_path: Path | None) -> Path | None:
    """Resolve the effective specpilot.toml path used for config loading."""
    if config_path is not None:
        return config_path
    candidates = [
        Path.cwd() / "specpilot.toml",
        Path.home() / ".specpilot" / "specpilot.toml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
@click.version_option(version=__version__, prog_name="specpilot")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to specpilot.toml configuration file.",
)
@click.option("--log-level", default=None, help="Override [logging].level.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """SpecPilot: turn a product idea into a development spec, one stage at a time."""
    ctx.ensure_object(dict)
    resolved_config_path = _resolve_config_path(config_path)
    try:
        config = load_config(resolved_config_path)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = resolved_config_path
    _configure_logging(log_level or config.logging.level)


def _print_turn(result) -> None:
    click.echo("")
    click.echo(result.reply)
    for index, option in enumerate(result.options, start=1):
        click.echo(f"  [{index}] {option.label}")
    stage = result.state.current_stage.name
    click.echo(click.style(f"({stage}, completeness {result.completeness}%)", dim=True))


def _pick(result, answer: str) -> str:
    """Map a numeric answer onto the matching option's value."""
    if answer.isdigit():
        index = int(answer) - 1
        if 0 <= index < len(result.options):
            return result.options[index].value
    return answer


async def _chat(config: Config, session_id: str | None, in_memory: bool) -> None:
    from specpilot.runtime import build_runtime

    runtime = await build_runtime(config, persist=not in_memory)
    try:
        if session_id is None:
            state = await runtime.create_session()
            session_id = state.session_id
            click.echo(f"Session {session_id}")
        elif not await runtime.store.session_exists(session_id):
            raise click.ClickException(f"Session not found: {session_id}")
        click.echo("Describe what you want to build. Empty line or Ctrl-D to quit.")

        last = None
        while True:
            try:
                answer = click.prompt("you", default="", show_default=False).strip()
            except click.Abort:
                break
            if not answer:
                break
            message = _pick(last, answer) if last is not None else answer
            try:
                last = await runtime.router.advance(session_id, message)
            except (InvocationError, ValidationError) as e:
                click.echo(f"Model call failed: {e}", err=True)
                continue
            _print_turn(last)
            if last.state.stop:
                break
    finally:
        await runtime.shutdown()


@cli.command()
@click.option("--session", "session_id", default=None, help="Resume a session by ID.")
@click.option("--memory", "in_memory", is_flag=True, help="Keep sessions in memory only.")
@click.pass_context
def chat(ctx: click.Context, session_id: str | None, in_memory: bool) -> None:
    """Run an interactive requirements session in the terminal."""
    config = ctx.obj["config"]
    try:
        asyncio.run(_chat(config, session_id, in_memory))
    except SpecPilotError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--host", default=None, help="Override server host.")
@click.option("--port", default=None, type=int, help="Override server port.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the SpecPilot API server."""
    config = ctx.obj["config"]
    actual_host = host if host is not None else config.server.host
    actual_port = port if port is not None else config.server.port

    click.echo(f"Starting SpecPilot server on {actual_host}:{actual_port}")

    import uvicorn

    from specpilot.api.server import create_app

    try:
        app = create_app(config)
        uvicorn.run(app, host=actual_host, port=actual_port, log_level="info")
    except Exception as e:
        click.echo(f"Server failed to start: {e}", err=True)
        sys.exit(1)


async def _load_session(config: Config, session_id: str) -> dict | None:
    from specpilot.state.memory import Database
    from specpilot.state.session_store import SqliteSessionStore

    db = Database(config.database_path)
    await db.initialize()
    state = await SqliteSessionStore(db).get_session(session_id)
    return state.to_dict() if state else None


@cli.command()
@click.argument("session_id")
@click.option("--spec-only", is_flag=True, help="Print only the generated specification.")
@click.pass_context
def show(ctx: click.Context, session_id: str, spec_only: bool) -> None:
    """Print a stored session."""
    data = asyncio.run(_load_session(ctx.obj["config"], session_id))
    if data is None:
        click.echo(f"Session not found: {session_id}", err=True)
        sys.exit(1)
    if spec_only:
        click.echo(data["final_spec"] or "(no specification yet)")
        return
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
