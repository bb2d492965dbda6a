"""
Input Plugin Base - Abstract interface for request sources.

Input plugins let requesters create, read, update and delete managed
objects. They only talk to the object store; reconciliation is driven by
the store's watch events, never by the input plugin directly.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from objects import ObjectKey

# Enqueues one object for an immediate reconcile; False if its kind is unknown
TriggerCallback = Callable[[ObjectKey], bool]


class InputPlugin(ABC):
    """Abstract base class for input plugins."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self, trigger: Optional[TriggerCallback] = None) -> None:
        """
        Start serving requests.

        Args:
            trigger: Callback that enqueues an object for reconciliation,
                used by manual reconcile requests.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
        """
        Check if the input plugin is healthy.

        Returns:
            Tuple of (is_healthy, status_message).
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load plugin-specific configuration from environment variables."""
        return {}

    def set_store(self, store: Any) -> None:
        """
        Set the object store for plugins that read or write objects.

        Args:
            store: The DatabaseManager instance
        """
        pass

    def set_registry(self, registry: Any) -> None:
        """
        Set the plugin registry, used to look up kinds and their schemas.

        Args:
            registry: The PluginRegistry instance
        """
        pass

    def set_event_bus(self, event_bus: Any) -> None:
        """
        Set the event bus for plugins that stream events.

        Args:
            event_bus: The EventBus instance
        """
        pass
