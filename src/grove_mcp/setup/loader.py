"""Setup step loading from per-worktree config files."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..storage import SetupStep

logger = logging.getLogger(__name__)

SETUP_DIR = ".grove"
SETUP_FILENAMES = ("setup.json", "setup.yml", "setup.yaml")


class SetupConfigError(RuntimeError):
    """Raised when a worktree setup file cannot be parsed."""


class SetupConfig(BaseModel):
    setup: list[SetupStep] = Field(default_factory=list)


def find_setup_file(worktree_path: Path | str) -> Path | None:
    base = Path(worktree_path) / SETUP_DIR
    for name in SETUP_FILENAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return None


def load_worktree_steps(worktree_path: Path | str) -> list[SetupStep] | None:
    """Return the worktree's own step list, or None when it has no setup file."""

    path = find_setup_file(worktree_path)
    if path is None:
        return None

    try:
        text = path.read_text(encoding="utf-8")
        if path.suffix == ".json":
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise SetupConfigError(f"Failed to parse {path}: {exc}") from exc

    if document is None:
        return []
    try:
        return SetupConfig.model_validate(document).setup
    except ValidationError as exc:
        raise SetupConfigError(f"Setup config validation error in {path}: {exc}") from exc


def resolve_steps(
    worktree_path: Path | str,
    defaults: Iterable[SetupStep] | None = None,
) -> list[SetupStep]:
    """Prefer the worktree's setup file; fall back to the repo defaults."""

    try:
        steps = load_worktree_steps(worktree_path)
    except SetupConfigError as exc:
        logger.warning("Invalid worktree setup config", extra={"worktree": str(worktree_path), "error": str(exc)})
        steps = None
    if steps is None:
        return list(defaults or [])
    return steps


__all__ = [
    "SETUP_DIR",
    "SetupConfig",
    "SetupConfigError",
    "find_setup_file",
    "load_worktree_steps",
    "resolve_steps",
]
