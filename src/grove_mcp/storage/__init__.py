"""Storage abstractions for Grove MCP."""

from .config_store import ConfigStore
from .models import GroveConfig, PushToken, Repo, SessionRecord, SessionsState, SetupStep
from .registry import RegistryError, SessionRegistry

__all__ = [
    "ConfigStore",
    "GroveConfig",
    "PushToken",
    "RegistryError",
    "Repo",
    "SessionRecord",
    "SessionRegistry",
    "SessionsState",
    "SetupStep",
]
