"""Provider registry and lookup."""

from pathlib import Path
from typing import Optional, Type

from ..config import AgentLogsConfig, load_config
from .base import SessionProvider

# Registry of all known providers, keyed by provider tag
_PROVIDERS: dict[str, Type[SessionProvider]] = {}


def register_provider(provider_class: Type[SessionProvider]) -> Type[SessionProvider]:
    """Decorator to register a provider class."""
    _PROVIDERS[provider_class.name] = provider_class
    return provider_class


def get_provider(name: str, config: Optional[AgentLogsConfig] = None) -> SessionProvider | None:
    """Get an instance of a provider by name."""
    provider_class = _PROVIDERS.get(name)
    if provider_class:
        return provider_class(config or load_config())
    return None


def get_all_providers(config: Optional[AgentLogsConfig] = None) -> list[SessionProvider]:
    """Get instances of all registered providers."""
    config = config or load_config()
    return [cls(config) for cls in _PROVIDERS.values()]


def get_available_providers(config: Optional[AgentLogsConfig] = None) -> list[SessionProvider]:
    """Get instances of all providers whose storage exists."""
    return [p for p in get_all_providers(config) if p.is_available()]


def provider_for_path(path: Path, config: Optional[AgentLogsConfig] = None) -> str:
    """Guess the provider tag of a transcript file from where it lives.

    Falls back to the path convention (``/.codex/`` means Codex) and then to
    Claude, the runtime archived sessions almost always come from.
    """
    for provider in get_all_providers(config):
        if provider.owns_path(path):
            return provider.name
    if "/.codex/" in str(path):
        return "codex"
    if "/opencode/storage/" in str(path):
        return "opencode"
    return "claude"


# Import providers to trigger registration
from . import claude  # noqa: F401, E402
from . import codex  # noqa: F401, E402
from . import opencode  # noqa: F401, E402
