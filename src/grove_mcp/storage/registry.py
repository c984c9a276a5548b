"""JSON-backed durable session registry."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .models import SessionRecord, SessionsState

logger = logging.getLogger(__name__)


class RegistryError(RuntimeError):
    """Raised when a registry document cannot be written."""


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write ``payload`` as JSON so readers never observe a partial file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.write("\n")
        os.replace(tmp_name, path)
    except OSError as exc:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise RegistryError(f"Failed to write {path}: {exc}") from exc


def read_json(path: Path) -> Any | None:
    """Return the decoded document, or ``None`` when missing or unreadable."""

    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable JSON document", extra={"path": str(path), "error": str(exc)})
        return None


class SessionRegistry:
    """Load and save the session list and next-port counter as one document."""

    def __init__(self, path: Path, *, base_port: int = 7681) -> None:
        self._path = Path(path)
        self._base_port = base_port

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> SessionsState:
        document = read_json(self._path)
        if document is None:
            return SessionsState(next_port=self._base_port)
        try:
            state = SessionsState.model_validate(document)
        except ValidationError as exc:
            logger.warning(
                "Session registry failed validation; starting empty",
                extra={"path": str(self._path), "error": str(exc)},
            )
            return SessionsState(next_port=self._base_port)
        if state.next_port < self._base_port:
            state.next_port = self._base_port
        return state

    def save(self, state: SessionsState) -> None:
        write_json_atomic(self._path, state.model_dump(mode="json"))

    def get(self, session_id: str) -> SessionRecord | None:
        for record in self.load().sessions:
            if record.id == session_id:
                return record
        return None


__all__ = ["RegistryError", "SessionRegistry", "read_json", "write_json_atomic"]
