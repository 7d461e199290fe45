"""Command line entry point for coday-slack."""

from __future__ import annotations

import dataclasses
from pathlib import Path

import click

from .config import ConfigError, load_settings


@click.group()
@click.version_option(package_name="coday-slack")
def main() -> None:
    """Bridge Slack conversations to long-lived Coday assistant threads."""


@main.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Settings file (defaults to ~/.coday/slack.toml)",
)
@click.option("--host", help="Interface for the webhook server")
@click.option("--port", type=click.IntRange(1, 65535), help="Port for the webhook server")
@click.option("--debug", is_flag=True, help="Enable debug logging")
def serve(
    config_path: Path | None, host: str | None, port: int | None, debug: bool
) -> None:
    """Serve the Slack webhook and Socket Mode connections."""
    from .backend import build_and_run

    try:
        settings, _ = load_settings(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    overrides: dict[str, object] = {}
    if host:
        overrides["host"] = host
    if port is not None:
        overrides["port"] = port
    if debug:
        overrides["debug"] = True
    try:
        build_and_run(dataclasses.replace(settings, **overrides))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.option("--project", required=True, help="Coday project to configure")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Settings file (defaults to ~/.coday/slack.toml)",
)
def setup(project: str, config_path: Path | None) -> None:
    """Interactively write a project's Slack integration."""
    from .onboarding import interactive_setup
    from .projects import JsonProjectStore

    try:
        settings, _ = load_settings(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    store = JsonProjectStore(settings.projects_path)
    if not interactive_setup(project, store):
        raise click.ClickException("setup cancelled")
    click.echo(f"Slack integration saved for {project} in {store.path}")


if __name__ == "__main__":
    main()
