"""replwire command line."""

from __future__ import annotations

import asyncio
import importlib
from typing import Any

import typer
from loguru import logger

from replwire.client import NreplClient
from replwire.config import Settings, get_settings
from replwire.errors import ReplWireError, RequestTimeoutError
from replwire.logging_utils import configure_logging
from replwire.server import Evaluator, NreplServer

app = typer.Typer(name="replwire", help="nREPL wire protocol client and server", add_completion=False)


def load_evaluator(entrypoint: str) -> Evaluator:
    """Resolve ``module:attr`` to an evaluator; classes and factories are called."""

    module_name, _, attr = entrypoint.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter(f"expected module:attr, got {entrypoint!r}")
    module = importlib.import_module(module_name)
    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part)
    if callable(target) and not hasattr(target, "evaluate"):
        target = target()
    elif isinstance(target, type):
        target = target()
    if not hasattr(target, "evaluate"):
        raise typer.BadParameter(f"{entrypoint} does not provide an evaluate() method")
    return target


def _settings(host: str | None, port: int | None, timeout: float | None = None) -> Settings:
    settings = get_settings(host=host, port=port, request_timeout_seconds=timeout)
    configure_logging(profile=settings.log_profile, level=settings.log_level)
    return settings


def _run_client[T](settings: Settings, action) -> T:
    async def _main() -> T:
        async with await NreplClient.connect(settings=settings) as client:
            return await action(client)

    try:
        return asyncio.run(_main())
    except RequestTimeoutError as exc:
        typer.echo(f"timeout: {exc}", err=True)
        raise typer.Exit(2) from exc
    except ReplWireError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc


@app.command("serve")
def serve(
    evaluator: str | None = typer.Option(None, "--evaluator", "-e", help="Evaluator entrypoint as module:attr"),
    host: str | None = typer.Option(None, "--host", help="Host to bind to"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on"),
) -> None:
    """Run an nREPL server."""

    settings = _settings(host, port)
    server = NreplServer(load_evaluator(evaluator) if evaluator else None, settings)

    def _ready(listener: asyncio.Server) -> None:
        bound = listener.sockets[0].getsockname()[1] if listener.sockets else settings.port
        typer.echo(f"nREPL server started on port {bound} on host {settings.host}")

    try:
        asyncio.run(server.serve(on_ready=_ready))
    except KeyboardInterrupt:
        logger.info("server.stop reason=keyboard_interrupt")


@app.command("eval")
def eval_code(
    code: str = typer.Argument(..., help="Code to evaluate"),
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port", "-p"),
    timeout: float | None = typer.Option(None, "--timeout", "-t", help="Seconds to wait before interrupting"),
    ns: str | None = typer.Option(None, "--ns", help="Namespace to evaluate in"),
) -> None:
    """Evaluate code on a running server in a fresh session."""

    settings = _settings(host, port, timeout)

    async def _eval(client: NreplClient):
        session = await client.clone_session()
        try:
            return await client.eval(code, session=session, ns=ns)
        finally:
            await client.close_session(session)

    result = _run_client(settings, _eval)
    if result.out:
        typer.echo(result.out, nl=False)
    if result.err:
        typer.echo(result.err, nl=False, err=True)
    for value in result.values:
        typer.echo(f"=> {value}")
    if result.has_error:
        raise typer.Exit(1)


@app.command("describe")
def describe(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port", "-p"),
) -> None:
    """Show the ops and versions a server reports."""

    settings = _settings(host, port)
    response = _run_client(settings, lambda client: client.describe())
    for name, versions in sorted((response.get("versions") or {}).items()):
        version = versions.get(b"version-string", b"?") if isinstance(versions, dict) else versions
        typer.echo(f"{_text(name)} {_text(version)}")
    for op in sorted(response.get("ops") or {}):
        typer.echo(f"op {_text(op)}")


@app.command("sessions")
def sessions(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port", "-p"),
) -> None:
    """List live sessions on a server."""

    settings = _settings(host, port)
    for session in _run_client(settings, lambda client: client.ls_sessions()):
        typer.echo(session)


def _text(value: Any) -> str:
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)
