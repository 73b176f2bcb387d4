"""CLI host for the sandbox engine."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer

from runbox import events as ev
from runbox.config import SandboxConfig, load_config
from runbox.engine import EngineState, SandboxEngine
from runbox.errors import ConfigurationError
from runbox.libraries import LibraryManager, extract_version
from runbox.logging_utils import configure_logging

app = typer.Typer(help="Runbox sandbox CLI")
libs_app = typer.Typer(help="Manage injected libraries")
origins_app = typer.Typer(help="Manage trusted origins")
app.add_typer(libs_app, name="libs")
app.add_typer(origins_app, name="origins")

_STYLES = {
    "log": None,
    "info": typer.colors.CYAN,
    "warn": typer.colors.YELLOW,
    "error": typer.colors.RED,
}


def _load(config_path: Optional[str]) -> SandboxConfig:
    if config_path is None:
        return SandboxConfig()
    try:
        return load_config(config_path)
    except (FileNotFoundError, ConfigurationError) as exc:
        typer.secho(f"❌ {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def _manager(config: SandboxConfig) -> LibraryManager:
    logger = configure_logging(config.log_level)
    return LibraryManager.from_config(config, events=ev.EventEmitter(logger), logger=logger)


def _print_message(kind: str, args: list[str]) -> None:
    text = " ".join(args)
    color = _STYLES.get(kind)
    if color is None:
        typer.echo(text)
    else:
        typer.secho(text, fg=color, err=kind in ("warn", "error"))


async def _run_code(engine: SandboxEngine, code: str) -> str:
    finished = asyncio.Event()
    outcome = {"status": "completed"}

    def on_status(status: str) -> None:
        if status in ("completed", "timeout"):
            outcome["status"] = status
            finished.set()

    engine.on_status = on_status
    try:
        await engine.execute(code)
        await finished.wait()
    finally:
        engine.close()
    return outcome["status"]


@app.command()
def run(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Python file to run"),
    timeout_ms: Optional[int] = typer.Option(None, "--timeout-ms", help="Override the run timeout"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to YAML config"),
) -> None:
    """Run a file inside a fresh sandbox and stream its output."""
    config = _load(config_path)
    if timeout_ms is not None:
        config.timeout_ms = timeout_ms
    logger = configure_logging(config.log_level)
    try:
        engine = SandboxEngine.from_config(
            config,
            libraries=_manager(config),
            on_message=_print_message,
            logger=logger,
        )
    except ConfigurationError as exc:
        typer.secho(f"❌ {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    code = file.read_text(encoding="utf-8")
    status = asyncio.run(_run_code(engine, code))
    if status == "timeout" or engine.state is EngineState.REJECTED:
        raise typer.Exit(1)


@app.command()
def policy(
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to YAML config"),
) -> None:
    """Print the policy string the next run would receive."""
    typer.echo(_manager(_load(config_path)).build_policy())


@libs_app.command("list")
def libs_list(
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to YAML config"),
) -> None:
    libraries = _manager(_load(config_path)).get_libraries()
    if not libraries:
        typer.echo("No libraries added.")
        return
    for library in libraries:
        version = extract_version(library.url)
        suffix = f" v{version}" if version else ""
        typer.echo(f"{library.id}  {library.name}{suffix}  {library.url}")


@libs_app.command("add")
def libs_add(
    url: str = typer.Argument(..., help="URL of a single-file Python module"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Trust the origin without asking"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to YAML config"),
) -> None:
    """Add a library, asking to trust its origin when needed."""
    manager = _manager(_load(config_path))
    result = manager.add_reference(url, name)
    if result.needs_approval and result.domain:
        approved = yes or typer.confirm(f"Trust origin {result.domain}?")
        if not approved:
            typer.secho("Origin not trusted; library not added.", fg=typer.colors.YELLOW, err=True)
            raise typer.Exit(1)
        _ = manager.add_origin(result.domain)
        result = manager.add_reference(url, name)

    if not result.success or result.library is None:
        typer.secho(f"❌ {result.error or 'Library not added'}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    typer.secho(f"✅ Added {result.library.name} ({result.library.id})", fg=typer.colors.GREEN)


@libs_app.command("remove")
def libs_remove(
    library_id: str = typer.Argument(..., help="Library id as shown by 'libs list'"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to YAML config"),
) -> None:
    if not _manager(_load(config_path)).remove_reference(library_id):
        typer.secho(f"❌ Library not found: {library_id}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    typer.echo(f"Removed {library_id}")


@origins_app.command("list")
def origins_list(
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to YAML config"),
) -> None:
    manager = _manager(_load(config_path))
    for origin in manager.get_origins():
        marker = " (default)" if origin in manager.default_origins else ""
        typer.echo(f"{origin}{marker}")


@origins_app.command("add")
def origins_add(
    origin: str = typer.Argument(..., help="Hostname to trust"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to YAML config"),
) -> None:
    manager = _manager(_load(config_path))
    if manager.add_origin(origin):
        typer.echo(f"Trusted {origin}")
    elif manager.is_origin_trusted(origin.strip().lower()):
        typer.echo(f"{origin} is already trusted")
    else:
        typer.secho(f"❌ Invalid origin: {origin}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


@origins_app.command("remove")
def origins_remove(
    origin: str = typer.Argument(..., help="Hostname to stop trusting"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to YAML config"),
) -> None:
    manager = _manager(_load(config_path))
    if origin.strip().lower() in manager.default_origins:
        typer.secho(f"❌ {origin} is a built-in origin and cannot be removed", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    if not manager.remove_origin(origin):
        typer.secho(f"❌ Origin not trusted: {origin}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    typer.echo(f"Removed {origin}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
