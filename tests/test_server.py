from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import pytest

from grove_mcp import __version__
from grove_mcp.config import GroveSettings
from grove_mcp.server import configure_logging, create_server
from grove_mcp.storage import SetupStep
from grove_mcp.terminal import FakeTerminalRunner, TerminalToolNotFoundError


@pytest.fixture()
def settings(tmp_path: Path, monkeypatch) -> GroveSettings:
    monkeypatch.setenv("GROVE_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("GROVE_LOG_LEVEL", "debug")
    return GroveSettings()


def test_create_server_wires_components(settings: GroveSettings) -> None:
    runner = FakeTerminalRunner()
    server = create_server(settings, terminal_runner=runner)

    assert server.grove_settings is settings
    assert server.session_manager.registry.path == settings.sessions_file
    assert server.session_manager.events is server.broadcaster
    assert server.setup_manager._output_limit == settings.setup_output_limit == 65536
    assert server.tool_handles.create_session.name == "create_session"
    assert server.terminal_metadata == {"tmux": "/tmp/fake-tmux", "ttyd": "/tmp/fake-ttyd"}


def test_status_resource_reports_registry(settings: GroveSettings) -> None:
    server = create_server(settings, terminal_runner=FakeTerminalRunner())
    server.config_store.set_webhook_url("https://hooks.example/grove")

    payload = json.loads(server.status_resource())

    assert payload["server_version"] == __version__
    assert payload["log_level"] == "DEBUG"
    assert payload["sessions"] == {"count": 0, "next_port": 7681, "ids": []}
    assert payload["events"] == {"subscribers": 0, "polling": False}
    assert payload["webhook_configured"] is True


def test_setup_progress_reaches_subscribers(settings: GroveSettings, tmp_path: Path) -> None:
    server = create_server(settings, terminal_runner=FakeTerminalRunner())

    async def scenario():
        subscription = server.broadcaster.subscribe()
        await server.setup_manager.start_setup("s1", tmp_path, [SetupStep(name="Install", run="echo hi")])
        await server.setup_manager.wait_for_setup("s1")
        events = subscription.drain()
        await server.broadcaster.aclose()
        return events

    events = asyncio.run(scenario())

    progress = [event for event in events if event["type"] == "setup_progress"]
    assert [event["status"] for event in progress] == ["running", "running", "done"]
    assert progress[1]["output"] == "hi\n"
    assert {event["name"] for event in progress} == {"Install"}


def test_create_server_requires_terminal_tools(settings: GroveSettings, monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PATH", str(tmp_path))

    with pytest.raises(TerminalToolNotFoundError):
        create_server(settings)


def test_configure_logging_writes_file(tmp_path: Path, monkeypatch) -> None:
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)
    log_file = tmp_path / "logs" / "server.log"

    configure_logging("INFO", log_file)
    logging.getLogger("grove_mcp.test").info("hello from grove")
    for handler in root.handlers:
        handler.flush()

    assert "hello from grove" in log_file.read_text(encoding="utf-8")
    for handler in root.handlers:
        handler.close()
