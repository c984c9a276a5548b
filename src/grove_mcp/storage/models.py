"""Data models for the persisted session registry and config store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SetupStep(BaseModel):
    """One provisioning command in a setup pipeline."""

    name: str = Field(..., description="Display name shown while the step runs.")
    run: str = Field(..., description="Shell command executed in the worktree.")
    background: bool = Field(
        default=False,
        description="Whether later steps may start without waiting for this one to exit.",
    )

    @field_validator("name", "run")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Setup step name and run must not be empty")
        return normalized


class Repo(BaseModel):
    """A repository registered with Grove."""

    id: str
    path: str
    name: str
    setup_steps: list[SetupStep] = Field(default_factory=list)


class PushToken(BaseModel):
    token: str
    platform: Literal["ios", "android"]
    registered_at: datetime = Field(default_factory=_utcnow)


class GroveConfig(BaseModel):
    """Top-level document stored in config.json."""

    repos: list[Repo] = Field(default_factory=list)
    webhook_url: str | None = None
    clone_directory: str | None = None
    push_tokens: list[PushToken] = Field(default_factory=list)


class SessionRecord(BaseModel):
    """A persisted session: one multiplexer session plus its web-terminal bridge."""

    id: str
    repo_id: str
    repo_name: str
    worktree: str
    branch: str
    port: int = 0
    terminal_url: str = ""
    pid: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    skip_permissions: bool = False


class SessionsState(BaseModel):
    """Session list plus the next unassigned bridge port, stored as one document."""

    sessions: list[SessionRecord] = Field(default_factory=list)
    next_port: int = 7681


__all__ = [
    "GroveConfig",
    "PushToken",
    "Repo",
    "SessionRecord",
    "SessionsState",
    "SetupStep",
]
