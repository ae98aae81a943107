"""Integration registry and factory for resolving providers based on configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import ProviderNotFoundError

if TYPE_CHECKING:
    from app.config import Settings
    from integrations.base import CommandExecutor, NotificationDispatcher, StorageProvider

# Maps category → mode → import path (module, class_name).
# Providers are imported lazily to avoid loading unused dependencies.
PROVIDER_MAP: dict[str, dict[str, tuple[str, str]]] = {
    "storage": {
        "mock": ("integrations.mock.mock_store", "MemoryStore"),
        "memory": ("integrations.mock.mock_store", "MemoryStore"),
        "sqlite": ("integrations.sqlite.store", "SQLiteStore"),
    },
    "executor": {
        "mock": ("integrations.mock.mock_executor", "MockExecutor"),
        "shell": ("integrations.local.shell_executor", "ShellExecutor"),
    },
    "notifier": {
        "mock": ("integrations.mock.mock_notifier", "MockNotifier"),
        "log": ("integrations.local.log_notifier", "LogNotifier"),
    },
}

# The provider each category uses when its mode is plain "live".
_LIVE_DEFAULTS: dict[str, str] = {
    "storage": "sqlite",
    "executor": "shell",
    "notifier": "log",
}


def _import_class(module_path: str, class_name: str) -> type:
    """Lazily import a provider class by its module path and class name."""
    import importlib

    module = importlib.import_module(module_path)
    return getattr(module, class_name)


class IntegrationRegistry:
    """Resolves and caches integration providers based on application configuration."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._cache: dict[str, object] = {}

    def _resolve_mode(self, category: str) -> str:
        """Determine the effective provider key for a category.

        Per-category overrides (e.g. STORAGE_MODE=sqlite) win over the global
        FLEETGUARD_MODE; ``live`` maps to the category's default live provider.
        """
        mode = (self._settings.get_integration_mode(category) or "mock").strip().lower()
        if mode == "live":
            return _LIVE_DEFAULTS.get(category, mode)
        return mode

    def get_provider(
        self, category: str
    ) -> StorageProvider | CommandExecutor | NotificationDispatcher:
        """Return the provider instance for the given category.

        Providers are instantiated once and cached for the lifetime of the registry.
        """
        if category in self._cache:
            return self._cache[category]  # type: ignore[return-value]

        if category not in PROVIDER_MAP:
            raise ProviderNotFoundError(category)

        mode = self._resolve_mode(category)
        providers = PROVIDER_MAP[category]

        if mode not in providers:
            raise ProviderNotFoundError(category, mode)

        module_path, class_name = providers[mode]
        cls = _import_class(module_path, class_name)
        instance = cls(self._settings)
        self._cache[category] = instance
        return instance  # type: ignore[return-value]

    @property
    def storage(self) -> StorageProvider:
        return self.get_provider("storage")  # type: ignore[return-value]

    @property
    def executor(self) -> CommandExecutor:
        return self.get_provider("executor")  # type: ignore[return-value]

    @property
    def notifier(self) -> NotificationDispatcher:
        return self.get_provider("notifier")  # type: ignore[return-value]

    def reset(self) -> None:
        """Clear the provider cache, forcing re-resolution on next access."""
        self._cache.clear()
