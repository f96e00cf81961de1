"""Entry-point for the proctoring media service."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Tuple

import typer
import uvicorn

from app.bootstrap import initialize_app
from app.config import AppConfig
from app.errors import ProctorMediaError
from app.logging_utils import DEFAULT_LOG_FORMAT, configure_logging, get_log_file_path
from app.services.merge import MergeOrchestrator
from app.services.records import MergeStatus, parse_channel
from app.services.registry import SegmentRegistry
from app.services.sweep import ConsistencySweep
from app.storage import StorageBackends
from app.web import create_app


LOGGER = logging.getLogger("proctor_media.cli")


cli = typer.Typer(add_completion=False, help="Proctoring media pipeline commands")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(storage_root: Path) -> None:
    log_file = get_log_file_path(storage_root)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    configure_logging(handlers=[file_handler, stream_handler])


def _load() -> AppConfig:
    config = initialize_app()
    _prepare_logging(config.storage_root)
    return config


def _build_storage(config: AppConfig) -> Tuple[SegmentRegistry, StorageBackends]:
    return SegmentRegistry(config), StorageBackends.from_config(config)


def _build_orchestrator(config: AppConfig) -> Tuple[SegmentRegistry, MergeOrchestrator]:
    registry, backends = _build_storage(config)
    return registry, MergeOrchestrator(config, registry, backends)


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
) -> None:
    """Run the HTTP API."""

    app_config = _load()
    app = create_app(app_config)
    server_config = uvicorn.Config(app, host=host, port=port, log_config=None)
    server = uvicorn.Server(server_config)
    app.state.server = server
    server.run()


@cli.command()
def merge(
    session_id: str = typer.Argument(..., help="Session whose recording should be merged"),
    channel: str = typer.Argument(..., help="webcam or screen"),
    timeout: Optional[float] = typer.Option(None, help="Seconds to wait for the merge to finish"),
) -> None:
    """Trigger a merge and wait for it to finish."""

    config = _load()
    registry, orchestrator = _build_orchestrator(config)
    try:
        status = orchestrator.trigger(session_id, parse_channel(channel, mergeable=True))
        typer.echo(f"Merge status after trigger: {status.value}")
        if not orchestrator.wait(timeout):
            typer.echo("Timed out waiting for the merge to finish.")
            raise typer.Exit(code=2)
    except ProctorMediaError as error:
        typer.echo(f"Merge could not be triggered: {error}")
        raise typer.Exit(code=1) from error
    finally:
        orchestrator.shutdown(wait=True)

    job = registry.get_merge_job(session_id, parse_channel(channel))
    if job is None:
        raise typer.Exit(code=1)
    typer.echo(f"Final status: {job.status.value}")
    if job.recording_ref is not None:
        typer.echo(f"Recording: {job.recording_ref}")
    if job.status is MergeStatus.FAILED:
        typer.echo(f"Reason: {job.reason}")
        raise typer.Exit(code=1)


@cli.command()
def status(session_id: str = typer.Argument(..., help="Session to inspect")) -> None:
    """Print the proctoring report of a session as JSON."""

    config = _load()
    registry = SegmentRegistry(config)
    try:
        report = registry.get_report(session_id)
    except ProctorMediaError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    typer.echo(json.dumps(report.to_dict(), indent=2))


@cli.command()
def sweep() -> None:
    """Clear location fields that disagree with a segment's declared backend."""

    config = _load()
    registry, backends = _build_storage(config)
    report = ConsistencySweep(registry, backends).run()
    typer.echo(json.dumps(report.to_dict(), indent=2))
    if report.errors:
        raise typer.Exit(code=1)


@cli.command()
def reclaim() -> None:
    """Requeue merges stuck in processing past the configured timeout."""

    config = _load()
    _, orchestrator = _build_orchestrator(config)
    try:
        reclaimed = orchestrator.reclaim_stale()
        for session_id, channel in reclaimed:
            typer.echo(f"Reclaimed {session_id}/{channel.value}")
        orchestrator.wait()
    finally:
        orchestrator.shutdown(wait=True)
    typer.echo(f"{len(reclaimed)} job(s) reclaimed.")


@cli.command("retry-failed")
def retry_failed() -> None:
    """Requeue merges that failed for transient reasons."""

    config = _load()
    _, orchestrator = _build_orchestrator(config)
    try:
        requeued = orchestrator.retry_failed()
        for session_id, channel in requeued:
            typer.echo(f"Retrying {session_id}/{channel.value}")
        orchestrator.wait()
    finally:
        orchestrator.shutdown(wait=True)
    typer.echo(f"{len(requeued)} job(s) retried.")


@cli.command("purge-orphans")
def purge_orphans() -> None:
    """Delete bytes left behind by duplicate uploads and superseded recordings."""

    config = _load()
    registry, backends = _build_storage(config)
    removed = ConsistencySweep(registry, backends).purge_orphans()
    typer.echo(f"{removed} orphaned object(s) deleted.")


if __name__ == "__main__":
    cli()
