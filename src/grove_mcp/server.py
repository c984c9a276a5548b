"""FastMCP server bootstrap for Grove."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import StreamingResponse

from . import __version__
from .config import GroveSettings, get_settings
from .events import EventBroadcaster, sse_stream
from .sessions import SessionManager
from .setup import SetupManager
from .storage import ConfigStore, SessionRegistry
from .terminal import TerminalRunner, TerminalToolNotFoundError, load_patterns
from .tools import register_tools


def configure_logging(level: str, log_file: Path | None = None) -> None:
    """Configure root logging for the Grove server."""

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def create_server(
    settings: Optional[GroveSettings] = None,
    terminal_runner: TerminalRunner | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the session and setup engines wired in."""

    settings = settings or get_settings()

    terminal_runner = terminal_runner or TerminalRunner()
    terminal_metadata = {
        "tmux": str(terminal_runner.tmux_path),
        "ttyd": str(terminal_runner.ttyd_path),
    }

    registry = SessionRegistry(settings.sessions_file, base_port=settings.base_port)
    config_store = ConfigStore(settings.config_file)

    session_manager = SessionManager(
        registry,
        config_store,
        terminal_runner,
        settings,
        patterns=load_patterns(settings.state_patterns_path),
        tmux_config=Path.home() / ".tmux.conf",
    )
    setup_manager = SetupManager(output_limit=settings.setup_output_limit)
    broadcaster = EventBroadcaster(
        session_manager.list_sessions,
        webhook_url=config_store.get_webhook_url,
        poll_interval=settings.poll_interval,
        webhook_timeout=settings.webhook_timeout,
        on_subscribe=setup_manager.publish_all_setup_states,
    )
    session_manager.events = broadcaster
    setup_manager.set_publisher(broadcaster.publish_setup_progress)

    @asynccontextmanager
    async def lifespan(_server: FastMCP):
        await session_manager.reconcile_stale_sessions()
        session_manager.start_reconciler(settings.reconcile_interval)
        try:
            yield {}
        finally:
            await broadcaster.aclose()
            await setup_manager.aclose()
            await session_manager.aclose()

    server = FastMCP(
        name="Grove MCP",
        version=__version__,
        instructions=(
            "Grove runs one coding-agent terminal per git worktree and exposes it over "
            "a web terminal. Use the tools to create and delete sessions, inspect their "
            "activity state, and drive each session's setup pipeline."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(
        server,
        sessions=session_manager,
        setup=setup_manager,
        config_store=config_store,
    )

    def status_resource() -> str:
        """Return a JSON string summarizing basic runtime state."""

        state = registry.load()
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "terminal": terminal_metadata,
            "sessions": {
                "count": len(state.sessions),
                "next_port": state.next_port,
                "ids": [record.id for record in state.sessions],
            },
            "events": {
                "subscribers": broadcaster.subscriber_count,
                "polling": broadcaster.is_polling,
            },
            "webhook_configured": bool(config_store.get_webhook_url()),
        }
        return json.dumps(payload)

    server.resource(
        "resource://grove/status",
        name="grove_status",
        description="Provides the current runtime status for the Grove MCP server.",
        mime_type="application/json",
    )(status_resource)

    @server.custom_route("/events", methods=["GET"])
    async def events_route(request: Request) -> StreamingResponse:
        subscription = broadcaster.subscribe()
        return StreamingResponse(
            sse_stream(subscription),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    setattr(server, "grove_settings", settings)
    setattr(server, "terminal_metadata", terminal_metadata)
    setattr(server, "session_manager", session_manager)
    setattr(server, "setup_manager", setup_manager)
    setattr(server, "broadcaster", broadcaster)
    setattr(server, "config_store", config_store)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the Grove MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level, settings.resolved_log_file)

    try:
        server = create_server(settings)
    except TerminalToolNotFoundError as exc:
        logging.getLogger(__name__).error("Cannot start Grove", extra={"error": str(exc)})
        raise SystemExit(1) from exc
    logging.getLogger(__name__).info(
        "Launching Grove MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "transport": settings.transport,
            "config_dir": str(settings.config_dir),
        },
    )
    if settings.transport == "stdio":
        server.run()
    else:
        server.run(transport=settings.transport, host=settings.http_host, port=settings.http_port)


if __name__ == "__main__":
    main()
