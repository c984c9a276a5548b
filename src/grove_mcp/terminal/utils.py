"""Utility helpers for the terminal and process adapters."""

from __future__ import annotations

import logging
import os
import signal
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

SESSION_PREFIX = "grove-"

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

TMUX_REQUIRED_LINES = (
    "set -g mouse on",
    "set -s extended-keys on",
    "set -as terminal-features 'xterm*:extkeys'",
)


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def multiplexer_session_name(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def ensure_tmux_config(path: Path | None = None) -> bool:
    """Append any missing required lines to the tmux config. Returns True if written."""

    conf_path = Path(path) if path is not None else Path.home() / ".tmux.conf"
    if conf_path.exists():
        content = conf_path.read_text(encoding="utf-8")
        missing = [line for line in TMUX_REQUIRED_LINES if line not in content]
        if not missing:
            return False
        conf_path.write_text(content.rstrip() + "\n" + "\n".join(missing) + "\n", encoding="utf-8")
    else:
        conf_path.write_text("\n".join(TMUX_REQUIRED_LINES) + "\n", encoding="utf-8")
    logger.info("Updated tmux config", extra={"path": str(conf_path)})
    return True


def signal_process_group(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Signal the process group led by ``pid``, falling back to the process alone.

    Returns False when neither the group nor the process could be signalled.
    """

    try:
        os.killpg(pid, sig)
        return True
    except ProcessLookupError:
        pass
    except OSError as exc:
        logger.debug("Process group signal failed, falling back", extra={"pid": pid, "error": str(exc)})
    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError as exc:
        logger.warning("Not permitted to signal process", extra={"pid": pid, "error": str(exc)})
        return False


__all__ = [
    "SESSION_PREFIX",
    "TMUX_REQUIRED_LINES",
    "ensure_tmux_config",
    "multiplexer_session_name",
    "sanitize_environment",
    "signal_process_group",
]
