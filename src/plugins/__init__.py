"""
Plugin system for the hardware plugin operator.

Business hooks carry kind-specific logic; input plugins expose the object
store to requesters.
"""

from plugins.hooks.base import BusinessHook, HookContext
from plugins.inputs.base import InputPlugin
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "BusinessHook",
    "HookContext",
    "InputPlugin",
    "PluginRegistry",
    "get_registry",
]
