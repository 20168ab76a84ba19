"""Command line interface for flowexec."""

import json
from pathlib import Path
from typing import Any, Optional

import anyio
import structlog
import typer

from .config import Config
from .engine import Engine
from .exceptions import FlowExecError
from .log import configure_logging

app = typer.Typer(
    name="flowexec",
    help="Execute flow documents through the file based job queue.",
    no_args_is_help=True,
)

logger = structlog.get_logger(__name__)


def _config(working_root: Optional[Path], silent: bool = False) -> Config:
    settings: dict[str, Any] = {}
    if working_root is not None:
        settings["working_root"] = working_root

    config = Config(**settings)
    configure_logging(
        level="ERROR" if silent else config.log_level,
        format=config.log_format,
        force=True,
    )
    return config


def _parse_input(raw: Optional[str]) -> Any:
    if raw is None:
        return None

    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _format(value: Any) -> str:
    if isinstance(value, str):
        return value

    return json.dumps(value, indent=2, default=str)


@app.command("run")
def run(
    flow: Path = typer.Argument(..., help="Flow document to execute"),
    input: Optional[str] = typer.Option(
        None, "--input", "-i", help="Flow input, as JSON (plain text is passed as is)"
    ),
    timeout_ms: Optional[int] = typer.Option(
        None, "--timeout-ms", help="Per-node timeout in milliseconds, 0 for none"
    ),
    working_root: Optional[Path] = typer.Option(
        None, "--working-root", help="Directory holding the job queue"
    ),
    silent: bool = typer.Option(
        False, "--silent", "-s", help="Only print the final output"
    ),
):
    """Run a flow document and print its final output."""
    engine = Engine(_config(working_root, silent))

    try:
        result = engine.run_flow_sync(flow, _parse_input(input), timeout_ms=timeout_ms)
    except FlowExecError as e:
        if not silent:
            for line in e.logs:
                typer.echo(line, err=True)

        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if not silent:
        for line in result.logs:
            typer.echo(line, err=True)

    typer.echo(_format(result.output))


@app.command("serve")
def serve(
    working_root: Optional[Path] = typer.Option(
        None, "--working-root", help="Directory holding the job queue"
    ),
):
    """Process jobs dropped into the inbox until interrupted."""
    engine = Engine(_config(working_root), serve=False)

    try:
        anyio.run(engine.queue.serve)
    except KeyboardInterrupt:
        logger.info("shutting down")


@app.command("stop")
def stop(
    job_id: str = typer.Argument(..., help="Id of the job to terminate"),
    working_root: Optional[Path] = typer.Option(
        None, "--working-root", help="Directory holding the job queue"
    ),
):
    """Ask the serve loop running a job to terminate it."""
    engine = Engine(_config(working_root), serve=False)
    engine.stop(job_id)
    typer.echo(f"Stop requested for {job_id}")


if __name__ == "__main__":
    app()
