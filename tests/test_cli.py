from __future__ import annotations

import asyncio
import socket
import textwrap
import threading
from collections.abc import Iterator
from contextlib import suppress
from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

from replwire import cli
from replwire.cli import app, load_evaluator
from replwire.server import NreplServer, Output, Result


class EchoEvaluator:
    async def evaluate(self, code, session):
        yield Output(f"evaluating {code}\n")
        yield Result(code.upper(), ns="user")


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)


@pytest.fixture
def evaluator_module(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    (tmp_path / "sample_evaluators.py").write_text(
        textwrap.dedent(
            """
            class Upper:
                def evaluate(self, code, session):
                    yield code.upper()

            instance = Upper()

            def make():
                return Upper()

            not_an_evaluator = object()
            """
        ),
        encoding="utf-8",
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    return "sample_evaluators"


@pytest.mark.parametrize("attr", ["Upper", "instance", "make"])
def test_load_evaluator_accepts_classes_instances_and_factories(evaluator_module: str, attr: str) -> None:
    evaluator = load_evaluator(f"{evaluator_module}:{attr}")

    assert type(evaluator).__name__ == "Upper"


@pytest.mark.parametrize("entrypoint", ["sample_evaluators", "sample_evaluators:not_an_evaluator", ":Upper"])
def test_load_evaluator_rejects_bad_entrypoints(evaluator_module: str, entrypoint: str) -> None:
    with pytest.raises(typer.BadParameter):
        load_evaluator(entrypoint)


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def running_server() -> Iterator[int]:
    ready = threading.Event()
    state: dict[str, object] = {}

    async def _main() -> None:
        state["loop"] = asyncio.get_running_loop()
        state["task"] = asyncio.current_task()

        def _ready(listener: asyncio.Server) -> None:
            state["port"] = listener.sockets[0].getsockname()[1]
            ready.set()

        await NreplServer(EchoEvaluator()).serve("127.0.0.1", 0, on_ready=_ready)

    def _run() -> None:
        with suppress(asyncio.CancelledError):
            asyncio.run(_main())

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    assert ready.wait(5)
    yield state["port"]
    state["loop"].call_soon_threadsafe(state["task"].cancel)
    thread.join(5)


def test_eval_command_prints_output_and_value(running_server: int) -> None:
    result = CliRunner().invoke(app, ["eval", "hello", "--host", "127.0.0.1", "--port", str(running_server)])

    assert result.exit_code == 0, result.output
    assert "evaluating hello" in result.stdout
    assert "=> HELLO" in result.stdout


def test_describe_and_sessions_commands(running_server: int) -> None:
    runner = CliRunner()

    described = runner.invoke(app, ["describe", "--port", str(running_server)])
    listed = runner.invoke(app, ["sessions", "--port", str(running_server)])

    assert described.exit_code == 0, described.output
    assert "op eval" in described.stdout
    assert "replwire 0.1.0" in described.stdout
    assert listed.exit_code == 0, listed.output
    assert listed.stdout == ""


def test_eval_command_reports_unreachable_server() -> None:
    result = CliRunner().invoke(app, ["eval", "1", "--port", str(_free_port())])

    assert result.exit_code == 1
