"""errorferry Command Line Interface.

Operator commands that inspect and drive the persisted pipeline state.
They are only meaningful with a shared store (``store.backend: database``);
against the in-memory backend every command sees an empty pipeline.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import typer
import yaml
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from errorferry import __version__
from errorferry.contracts.enums import HealthStatus
from errorferry.core.config import ReporterSettings, load_settings, resolve_config

if TYPE_CHECKING:
    from errorferry.engine.orchestrator import Orchestrator

__all__ = ["app"]

DEFAULT_SETTINGS = "errorferry.yaml"

app = typer.Typer(
    name="errorferry",
    help="errorferry: resilient error event delivery.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"errorferry version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Populate ERRORFERRY_* overrides from a .env file without clobbering the environment.

    Raises:
        typer.Exit: An explicit env_file does not exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(f"Error: .env file not found: {env_file}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Do not read ERRORFERRY_* overrides from a .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help=".env file to load instead of searching upward from the working directory.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log pipeline decisions at DEBUG level.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Emit log lines as JSON objects on stderr.",
    ),
) -> None:
    """errorferry: resilient error event delivery."""
    from errorferry.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "WARNING")

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            f"Warning: --no-dotenv is set, not loading {env_file}.",
            fg=typer.colors.YELLOW,
            err=True,
        )


def _load_or_exit(settings: str) -> ReporterSettings:
    """Load settings, turning every configuration failure into exit code 1."""
    settings_path = Path(settings).expanduser()
    try:
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {settings}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


def _build(config: ReporterSettings) -> Orchestrator:
    """Build the pipeline, exiting 1 when the endpoint policy rejects the endpoint."""
    from errorferry.contracts.errors import EndpointPolicyError
    from errorferry.engine.orchestrator import Orchestrator

    try:
        return Orchestrator.from_settings(config)
    except EndpointPolicyError as e:
        typer.echo("Endpoint rejected:", err=True)
        for error in e.errors:
            typer.echo(f"  - {error}", err=True)
        raise typer.Exit(1) from None


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


_SETTINGS_OPTION = typer.Option(
    DEFAULT_SETTINGS,
    "--settings",
    "-s",
    help="Reporter settings YAML (endpoint, store, limits).",
)


@app.command()
def health(
    settings: str = _SETTINGS_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output the full report as JSON."),
) -> None:
    """Show the self-monitor health assessment.

    Exits 1 when the pipeline is unhealthy.
    """
    config = _load_or_exit(settings)
    orchestrator = _build(config)
    try:
        report = orchestrator.health()
    finally:
        orchestrator.shutdown()

    if json_output:
        _echo_json(
            {
                "status": report.status.value,
                "score": report.score,
                "issues": list(report.issues),
                "recommendations": list(report.recommendations),
                "metrics": report.metrics,
            }
        )
    else:
        typer.echo(f"Status: {report.status.value} (score {report.score}/100)")
        for issue, recommendation in zip(report.issues, report.recommendations, strict=True):
            typer.echo(f"  - {issue}: {recommendation}")

    if report.status == HealthStatus.UNHEALTHY:
        raise typer.Exit(1)


@app.command()
def queue(
    settings: str = _SETTINGS_OPTION,
    clear: bool = typer.Option(False, "--clear", help="Discard every queued entry."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show the offline queue, or empty it with --clear."""
    config = _load_or_exit(settings)
    orchestrator = _build(config)
    offline = orchestrator.offline_queue
    try:
        if clear:
            removed = offline.clear()
            typer.echo(f"Removed {removed} queued entries.")
            return

        stats = offline.stats()
        entries = offline.entries()
    finally:
        orchestrator.shutdown()

    if json_output:
        stats["entries"] = [{"id": e.id, "enqueued_at": e.enqueued_at, "attempts": e.attempts} for e in entries]
        _echo_json(stats)
        return

    typer.echo(f"Queued: {stats['size']}/{stats['max_size']}")
    for entry in entries:
        message = entry.payload.get("message", "<compressed>")
        typer.echo(f"  {entry.id[:12]}  attempts={entry.attempts}  {str(message)[:60]}")


@app.command()
def replay(
    settings: str = _SETTINGS_OPTION,
) -> None:
    """Attempt one replay pass of the offline queue now."""
    config = _load_or_exit(settings)
    orchestrator = _build(config)
    try:
        result = orchestrator.replay_offline()
    finally:
        orchestrator.shutdown()

    if result.skipped:
        typer.echo("Replay skipped: another replay is running or the circuit is open.")
        raise typer.Exit(1)

    typer.echo(
        f"Replayed {result.attempted} entries: {result.delivered} delivered, "
        f"{result.failed} failed, {result.dropped} dropped."
    )
    if result.interrupted:
        typer.echo("Replay interrupted: the circuit breaker opened.", err=True)
        raise typer.Exit(1)


@app.command("check-config")
def check_config(
    settings: str = _SETTINGS_OPTION,
    show: bool = typer.Option(False, "--show", help="Print the resolved configuration as YAML."),
) -> None:
    """Validate a settings file, including endpoint policy."""
    from errorferry.core.security import SecurityValidator

    config = _load_or_exit(settings)
    result = SecurityValidator(config.security).validate_configuration(config)

    for warning in result.warnings:
        typer.secho(f"Warning: {warning}", fg=typer.colors.YELLOW, err=True)
    if not result.valid:
        typer.echo("Configuration errors:", err=True)
        for error in result.errors:
            typer.echo(f"  - {error}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Configuration valid for project {config.project!r} ({config.environment}).")
    if show:
        typer.echo(yaml.safe_dump(resolve_config(config), sort_keys=False))


if __name__ == "__main__":
    app()
