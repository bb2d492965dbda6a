"""
Business Hook Base - Abstract interface for kind-specific business logic.

A hook implements what it means to fulfil and to tear down one kind of
request. The reconciliation engine owns everything else: fetching,
finalizers, patching and retries.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from objects import ManagedObject, ObjectKey
from store import ObjectStore


class HookContext:
    """
    Context provided to hooks by the engine for one reconcile pass.

    Gives hooks access to secondary records in the store and lets them ask
    for a delayed re-run.
    """

    def __init__(
        self,
        store: ObjectStore,
        key: ObjectKey,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.store = store
        self.key = key
        self.shutdown_event = shutdown_event or asyncio.Event()
        self._requeue_after: Optional[float] = None

    def requeue_after(self, seconds: float) -> None:
        """
        Ask for another reconcile pass after a delay.

        The shortest delay requested during a pass wins.

        Args:
            seconds: Delay before the object is reconciled again.
        """
        if self._requeue_after is None or seconds < self._requeue_after:
            self._requeue_after = seconds

    @property
    def requested_requeue(self) -> Optional[float]:
        return self._requeue_after

    @property
    def shutting_down(self) -> bool:
        return self.shutdown_event.is_set()


class BusinessHook(ABC):
    """
    Abstract base class for business hooks.

    Both operations receive a private copy of the freshest snapshot and
    return the desired status. They must be idempotent: the engine may call
    them any number of times for the same object, including after a crash
    half way through a previous call.

    Raise HookError to report a business-rule failure.
    """

    @property
    @abstractmethod
    def kind(self) -> str:
        """Object kind handled by this hook (e.g., 'NodeAllocationRequest')."""
        pass

    @property
    def version(self) -> str:
        """Hook version string."""
        return "1.0.0"

    @property
    def spec_schema(self) -> Dict[str, Any]:
        """JSON Schema (Draft 7) that requester specs are validated against."""
        return {"type": "object"}

    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the hook with configuration.

        Called once when the hook is instantiated.

        Args:
            config: Hook-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def apply(self, obj: ManagedObject, ctx: HookContext) -> Dict[str, Any]:
        """
        Move the object forward towards its fulfilled state.

        Must check what already exists before creating anything, so repeated
        calls produce no new side effects.

        Args:
            obj: Copy of the current object (spec and status)
            ctx: HookContext for secondary records and requeue requests

        Returns:
            The desired status of the object.
        """
        pass

    @abstractmethod
    async def cleanup(self, obj: ManagedObject, ctx: HookContext) -> Dict[str, Any]:
        """
        Tear down whatever the object owns outside the store.

        Only called once deletion has been requested. May run several times
        and must not assume a previous partial cleanup completed.

        Args:
            obj: Copy of the current object (spec and status)
            ctx: HookContext for secondary records and requeue requests

        Returns:
            The desired status of the object.
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load hook-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this hook.
        """
        return {}
