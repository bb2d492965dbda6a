"""
Business hooks package.

Hooks carry the kind-specific logic the reconciliation engine invokes.
Third-party hooks are discovered via Python entry points
(group: 'hwplugin.hooks').
"""

from plugins.hooks.allocation import AllocationHook
from plugins.hooks.base import BusinessHook, HookContext
from plugins.hooks.release import ReleaseHook

__all__ = ["AllocationHook", "BusinessHook", "HookContext", "ReleaseHook"]
