"""
Plugin Registry - Discovery and registration of hooks and input plugins.

Exactly one business hook may be registered per kind. Registering a second
hook for a kind is a startup error.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from errors import FatalConfigError
from plugins.hooks.base import BusinessHook
from plugins.inputs.base import InputPlugin

logger = logging.getLogger(__name__)

HOOK_ENTRY_POINT_GROUP = "hwplugin.hooks"


class PluginRegistry:
    """
    Central registry for business hooks and input plugins.

    Holds registered classes and lazily creates one initialized instance
    of each.
    """

    def __init__(self):
        # Registered classes (not instantiated)
        self._hooks: Dict[str, Type[BusinessHook]] = {}
        self._input_plugins: Dict[str, Type[InputPlugin]] = {}

        # Cached metadata so listing does not instantiate again
        self._hook_info: Dict[str, Dict[str, Any]] = {}

        # Initialized instances
        self._hook_instances: Dict[str, BusinessHook] = {}
        self._input_instances: Dict[str, InputPlugin] = {}

        # Configurations loaded from environment at registration
        self._hook_configs: Dict[str, Dict[str, Any]] = {}
        self._input_plugin_configs: Dict[str, Dict[str, Any]] = {}

    # Registration methods

    def register_hook(self, hook_class: Type[BusinessHook]) -> None:
        """
        Register a business hook class.

        Args:
            hook_class: The BusinessHook subclass to register

        Raises:
            FatalConfigError: If a hook is already registered for the kind
        """
        temp_instance = hook_class()
        kind = temp_instance.kind

        existing = self._hooks.get(kind)
        if existing is not None:
            raise FatalConfigError(
                f"Kind '{kind}' is already handled by {existing.__name__}. "
                f"Cannot register {hook_class.__name__}."
            )

        self._hooks[kind] = hook_class
        self._hook_info[kind] = {
            "kind": kind,
            "version": temp_instance.version,
            "spec_schema": temp_instance.spec_schema,
        }
        self._hook_configs[kind] = hook_class.load_config_from_env()
        logger.info(
            f"Registered hook for kind {kind}: "
            f"{hook_class.__name__} v{temp_instance.version}"
        )

    def register_input_plugin(self, plugin_class: Type[InputPlugin]) -> None:
        """
        Register an input plugin class.

        Args:
            plugin_class: The InputPlugin subclass to register
        """
        temp_instance = plugin_class()
        name = temp_instance.name

        if name in self._input_plugins:
            logger.warning(f"Overwriting existing input plugin: {name}")

        self._input_plugins[name] = plugin_class
        self._input_plugin_configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered input plugin: {name} v{temp_instance.version}")

    # Instantiation methods

    async def get_hook(
        self, kind: str, config: Optional[Dict[str, Any]] = None
    ) -> BusinessHook:
        """
        Get the initialized hook for a kind.

        Args:
            kind: The object kind
            config: Configuration passed to initialize(); defaults to the
                configuration loaded from the environment

        Raises:
            ValueError: If no hook is registered for the kind
        """
        if kind not in self._hooks:
            available = ", ".join(self._hooks.keys()) or "none"
            raise ValueError(f"Unknown kind: {kind}. Available kinds: {available}")

        if kind not in self._hook_instances:
            hook = self._hooks[kind]()
            await hook.initialize(
                config if config is not None else self.get_hook_config(kind)
            )
            self._hook_instances[kind] = hook
            logger.info(f"Initialized hook for kind {kind}")

        return self._hook_instances[kind]

    async def get_input_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> InputPlugin:
        """
        Get an initialized input plugin instance.

        Raises:
            ValueError: If the plugin name is not registered
        """
        if name not in self._input_plugins:
            available = ", ".join(self._input_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown input plugin: {name}. Available plugins: {available}"
            )

        if name not in self._input_instances:
            plugin = self._input_plugins[name]()
            await plugin.initialize(config or {})
            self._input_instances[name] = plugin
            logger.info(f"Initialized input plugin: {name}")

        return self._input_instances[name]

    # Discovery methods

    def list_kinds(self) -> List[str]:
        """List all kinds that have a registered hook."""
        return list(self._hooks.keys())

    def list_input_plugins(self) -> List[str]:
        """List all registered input plugin names."""
        return list(self._input_plugins.keys())

    def has_kind(self, kind: str) -> bool:
        """Check if a hook is registered for the kind."""
        return kind in self._hooks

    def has_input_plugin(self, name: str) -> bool:
        """Check if an input plugin is registered."""
        return name in self._input_plugins

    def get_hook_info(self, kind: str) -> Optional[Dict[str, Any]]:
        """
        Get information about the hook registered for a kind.

        Returns:
            Dictionary with 'kind', 'version' and 'spec_schema', or None
        """
        return self._hook_info.get(kind)

    def get_hook_config(self, kind: str) -> Dict[str, Any]:
        """Get the environment-loaded configuration of the hook for a kind."""
        return self._hook_configs.get(kind, {})

    def get_input_plugin_config(self, name: str) -> Dict[str, Any]:
        """Get the environment-loaded configuration of an input plugin."""
        return self._input_plugin_configs.get(name, {})


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """
    Register the built-in hooks and input plugins, then discover
    third-party hooks via entry points.

    Raises:
        FatalConfigError: If two hooks claim the same kind
    """
    registry = get_registry()

    from plugins.hooks import AllocationHook, ReleaseHook

    registry.register_hook(AllocationHook)
    registry.register_hook(ReleaseHook)

    try:
        from plugins.inputs.http import HTTPInputPlugin

        registry.register_input_plugin(HTTPInputPlugin)
    except ImportError as e:
        logger.warning(f"Could not load HTTP input plugin: {e}")

    for ep in entry_points(group=HOOK_ENTRY_POINT_GROUP):
        try:
            hook_class = ep.load()
        except Exception as e:
            logger.warning(f"Could not load hook {ep.name}: {e}")
            continue
        registry.register_hook(hook_class)
