"""Tool registration for Grove MCP."""

import logging
from dataclasses import dataclass
from typing import Any, Literal

from fastmcp import Context, FastMCP

from ..sessions import SessionError, SessionManager
from ..setup import SetupManager
from ..storage import ConfigStore


@dataclass(slots=True)
class ToolHandles:
    create_session: Any
    delete_session: Any
    list_sessions: Any
    start_setup: Any
    retry_setup: Any
    cancel_setup: Any
    stop_step: Any
    start_step: Any
    get_setup_state: Any
    set_webhook_url: Any
    remove_webhook_url: Any
    get_webhook_url: Any
    register_push_token: Any
    remove_push_token: Any


def _result(error: str | None) -> dict[str, Any]:
    if error is not None:
        return {"error": error}
    return {"success": True}


def register_tools(
    server: FastMCP,
    *,
    sessions: SessionManager,
    setup: SetupManager,
    config_store: ConfigStore,
) -> ToolHandles:
    """Register Grove's MCP tools on the server."""

    async def _create_session(
        repo_id: str,
        worktree: str,
        skip_permissions: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a terminal session for a repo worktree and start its setup pipeline."""

        try:
            record = await sessions.create_session(repo_id, worktree, skip_permissions)
        except SessionError as exc:
            _emit_log(context, "warning", "Session creation failed", extra={"repo_id": repo_id, "error": str(exc)})
            return {"error": str(exc)}

        repo = config_store.get_repo(repo_id)
        setup_started = await setup.start_setup(
            record.id,
            record.worktree,
            repo.setup_steps if repo is not None else None,
        )

        _emit_log(
            context,
            "info",
            "Created session",
            extra={"session_id": record.id, "port": record.port, "setup_started": setup_started},
        )
        payload = record.model_dump(mode="json", exclude={"pid"})
        payload["setup_started"] = setup_started
        return payload

    async def _delete_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Stop a session's processes, discard its setup pipeline and forget it."""

        setup.cleanup_setup(session_id)
        deleted = await sessions.stop_session(session_id)
        if not deleted:
            return {"error": "Session not found"}
        _emit_log(context, "info", "Deleted session", extra={"session_id": session_id})
        return {"success": True}

    async def _list_sessions(context: Context | None = None) -> list[dict[str, Any]]:
        """List sessions with liveness and derived activity state."""

        listing = await sessions.list_sessions()
        _emit_log(context, "debug", "Listing sessions", extra={"count": len(listing)})
        return [entry.model_dump(mode="json") for entry in listing]

    tool_create = server.tool(
        name="create_session",
        description=(
            "Start a web-accessible agent terminal for a registered repo's worktree branch. "
            "Returns the session record including its terminal URL."
        ),
    )(_create_session)

    tool_delete = server.tool(
        name="delete_session",
        description="Stop a session's terminal processes and remove it from the registry.",
    )(_delete_session)

    tool_list = server.tool(
        name="list_sessions",
        description="List sessions with is_active and state (waiting, busy or idle).",
    )(_list_sessions)

    async def _start_setup(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """(Re)start the setup pipeline for an existing session."""

        record = sessions.registry.get(session_id)
        if record is None:
            return {"error": "Session not found"}
        repo = config_store.get_repo(record.repo_id)
        started = await setup.start_setup(
            session_id,
            record.worktree,
            repo.setup_steps if repo is not None else None,
        )
        _emit_log(context, "info", "Setup requested", extra={"session_id": session_id, "started": started})
        return {"started": started}

    async def _retry_setup(session_id: str, context: Context | None = None) -> dict[str, Any]:
        error = await setup.retry_setup(session_id)
        _emit_log(context, "info", "Setup retry", extra={"session_id": session_id, "error": error})
        return _result(error)

    def _cancel_setup(session_id: str, context: Context | None = None) -> dict[str, Any]:
        error = setup.cancel_setup(session_id)
        _emit_log(context, "info", "Setup cancel", extra={"session_id": session_id, "error": error})
        return _result(error)

    def _stop_step(session_id: str, step: int, context: Context | None = None) -> dict[str, Any]:
        return _result(setup.stop_step(session_id, step))

    async def _start_step(session_id: str, step: int, context: Context | None = None) -> dict[str, Any]:
        return _result(await setup.start_step(session_id, step))

    def _get_setup_state(session_id: str, context: Context | None = None) -> dict[str, Any]:
        return {"session_id": session_id, "steps": setup.get_setup_state(session_id)}

    tool_start_setup = server.tool(
        name="start_setup",
        description="Run the worktree's setup steps (or the repo defaults) for a session.",
    )(_start_setup)

    tool_retry_setup = server.tool(
        name="retry_setup",
        description="Resume a halted setup pipeline from its first failed or stopped step.",
    )(_retry_setup)

    tool_cancel_setup = server.tool(
        name="cancel_setup",
        description="Cancel a session's setup pipeline and kill every running step.",
    )(_cancel_setup)

    tool_stop_step = server.tool(
        name="stop_step",
        description="Stop one running setup step by index.",
    )(_stop_step)

    tool_start_step = server.tool(
        name="start_step",
        description="Restart one stopped or failed setup step by index; it runs in the background.",
    )(_start_step)

    tool_setup_state = server.tool(
        name="get_setup_state",
        description="Return each setup step's status and captured output for a session.",
    )(_get_setup_state)

    def _set_webhook_url(url: str, context: Context | None = None) -> dict[str, Any]:
        config_store.set_webhook_url(url)
        _emit_log(context, "info", "Webhook URL set")
        return {"success": True}

    def _remove_webhook_url(context: Context | None = None) -> dict[str, Any]:
        config_store.remove_webhook_url()
        _emit_log(context, "info", "Webhook URL removed")
        return {"success": True}

    def _get_webhook_url(context: Context | None = None) -> dict[str, Any]:
        return {"url": config_store.get_webhook_url()}

    def _register_push_token(
        token: str,
        platform: Literal["ios", "android"],
        context: Context | None = None,
    ) -> dict[str, Any]:
        entry = config_store.add_push_token(token, platform)
        _emit_log(context, "info", "Registered push token", extra={"platform": platform})
        return {"success": True, "registered_at": entry.registered_at.isoformat()}

    def _remove_push_token(token: str, context: Context | None = None) -> dict[str, Any]:
        if not config_store.remove_push_token(token):
            return {"error": "Token not found"}
        return {"success": True}

    tool_set_webhook = server.tool(
        name="set_webhook_url",
        description="Set the URL that receives a POST when a busy session starts waiting for input.",
    )(_set_webhook_url)

    tool_remove_webhook = server.tool(
        name="remove_webhook_url",
        description="Stop sending session state webhooks.",
    )(_remove_webhook_url)

    tool_get_webhook = server.tool(
        name="get_webhook_url",
        description="Return the configured webhook URL, if any.",
    )(_get_webhook_url)

    tool_register_token = server.tool(
        name="register_push_token",
        description="Register or refresh a mobile push token (ios or android).",
    )(_register_push_token)

    tool_remove_token = server.tool(
        name="remove_push_token",
        description="Forget a mobile push token.",
    )(_remove_push_token)

    return ToolHandles(
        create_session=tool_create,
        delete_session=tool_delete,
        list_sessions=tool_list,
        start_setup=tool_start_setup,
        retry_setup=tool_retry_setup,
        cancel_setup=tool_cancel_setup,
        stop_step=tool_stop_step,
        start_step=tool_start_step,
        get_setup_state=tool_setup_state,
        set_webhook_url=tool_set_webhook,
        remove_webhook_url=tool_remove_webhook,
        get_webhook_url=tool_get_webhook,
        register_push_token=tool_register_token,
        remove_push_token=tool_remove_token,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
