"""Repo, webhook and push-token settings stored in config.json."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import ValidationError

from .models import GroveConfig, PushToken, Repo
from .registry import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class ConfigStore:
    """Thin read-modify-write wrapper around the Grove config document."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    def load(self) -> GroveConfig:
        document = read_json(self._path)
        if document is None:
            return GroveConfig()
        try:
            return GroveConfig.model_validate(document)
        except ValidationError as exc:
            logger.warning("Config failed validation; using defaults", extra={"error": str(exc)})
            return GroveConfig()

    def save(self, config: GroveConfig) -> None:
        write_json_atomic(self._path, config.model_dump(mode="json", exclude_none=True))

    def list_repos(self) -> list[Repo]:
        return self.load().repos

    def get_repo(self, repo_id: str) -> Repo | None:
        for repo in self.load().repos:
            if repo.id == repo_id:
                return repo
        return None

    def get_webhook_url(self) -> str | None:
        return self.load().webhook_url

    def set_webhook_url(self, url: str) -> None:
        config = self.load()
        config.webhook_url = url
        self.save(config)

    def remove_webhook_url(self) -> None:
        config = self.load()
        config.webhook_url = None
        self.save(config)

    def list_push_tokens(self) -> list[PushToken]:
        return self.load().push_tokens

    def add_push_token(self, token: str, platform: Literal["ios", "android"]) -> PushToken:
        """Register a token, refreshing platform and timestamp if already known."""

        config = self.load()
        now = datetime.now(timezone.utc)
        for existing in config.push_tokens:
            if existing.token == token:
                existing.platform = platform
                existing.registered_at = now
                self.save(config)
                return existing
        entry = PushToken(token=token, platform=platform, registered_at=now)
        config.push_tokens.append(entry)
        self.save(config)
        return entry

    def remove_push_token(self, token: str) -> bool:
        config = self.load()
        remaining = [entry for entry in config.push_tokens if entry.token != token]
        if len(remaining) == len(config.push_tokens):
            return False
        config.push_tokens = remaining
        self.save(config)
        return True


__all__ = ["ConfigStore"]
