"""
Operator Controller - Wires watch events to the reconciliation engine.

Similar to Kubernetes controllers: every enabled kind gets one Reconciler.
Object identities arrive from the event bus (edge-triggered) and from a
periodic resync over the whole store (level-triggered safety net that also
recovers work after a restart). Both feed one de-duplicating work queue
drained by the dispatcher's workers.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from config import ControllerConfig, PluginConfig
from dispatcher import Dispatcher, WorkQueue
from errors import FatalConfigError, StoreError
from events import EventBus, ObjectEvent
from objects import ObjectKey
from plugins.registry import PluginRegistry, get_registry
from reconciler import ReconcileResult, Reconciler
from store import ObjectStore

logger = logging.getLogger(__name__)


class Controller:
    """Runs one Reconciler per enabled kind behind a shared work queue."""

    def __init__(
        self,
        store: ObjectStore,
        registry: Optional[PluginRegistry] = None,
        config: Optional[ControllerConfig] = None,
        plugin_config: Optional[PluginConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.registry = registry or get_registry()
        self.config = config or ControllerConfig()
        self.plugin_config = plugin_config or PluginConfig()
        self.running = False
        self._event_bus = event_bus

        self.queue = WorkQueue(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )
        self.dispatcher = Dispatcher(
            self.queue, self.reconcile, workers=self.config.max_concurrent_reconciles
        )
        self.reconcilers: Dict[str, Reconciler] = {}

        self._shutdown_event = asyncio.Event()
        self._subscriber_id: Optional[str] = None
        self._tasks: List[asyncio.Task] = []

    async def setup(self) -> None:
        """
        Build a Reconciler for every enabled kind.

        Raises:
            FatalConfigError: If an enabled kind has no hook, or nothing is
                left to reconcile.
        """
        known = self.registry.list_kinds()
        unknown = [k for k in self.plugin_config.enabled_kinds if k not in known]
        if unknown:
            raise FatalConfigError(
                f"Enabled kinds have no registered hook: {', '.join(unknown)}"
            )

        for kind in known:
            if not self.plugin_config.is_enabled(kind):
                logger.info(f"Kind {kind} is not enabled, skipping")
                continue

            hook_config = dict(self.registry.get_hook_config(kind))
            hook_config.update(self.plugin_config.get_plugin_config(kind))
            hook = await self.registry.get_hook(kind, hook_config)

            self.reconcilers[kind] = Reconciler(
                kind=kind,
                hook=hook,
                store=self.store,
                finalizer=self.config.finalizer_name,
                max_conflict_retries=self.config.max_conflict_retries,
                shutdown_event=self._shutdown_event,
            )
            logger.info(
                f"Reconciling kind {kind} with finalizer {self.config.finalizer_name}"
            )

        if not self.reconcilers:
            raise FatalConfigError("No kinds to reconcile")

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Route a key to the Reconciler of its kind."""
        reconciler = self.reconcilers.get(key.kind)
        if reconciler is None:
            logger.warning(f"No reconciler for {key}, dropping")
            return ReconcileResult(success=True, message="Unknown kind")
        return await reconciler.reconcile(key)

    def trigger(self, key: ObjectKey) -> bool:
        """
        Enqueue an object for reconciliation.

        Returns:
            False if the object's kind is not reconciled by this controller.
        """
        if key.kind not in self.reconcilers:
            return False
        self.queue.add(key)
        return True

    async def start(self):
        """Start the dispatcher, the event subscription and the resync loop."""
        logger.info("Starting Operator Controller")
        if not self.reconcilers:
            await self.setup()

        self.running = True
        self._shutdown_event.clear()

        self._tasks = [
            asyncio.create_task(self.dispatcher.run()),
            asyncio.create_task(self._resync_loop()),
        ]
        if self._event_bus is not None:
            self._subscriber_id, subscription = await self._event_bus.subscribe(
                lambda event: event.key.kind in self.reconcilers
            )
            self._tasks.append(asyncio.create_task(self._watch_loop(subscription)))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            if self.running:
                raise
        except Exception as e:
            logger.error(f"Controller error: {e}", exc_info=True)
            raise

    async def stop(self):
        """Stop gracefully. Passes still in flight are cancelled."""
        logger.info("Stopping Operator Controller")
        self.running = False
        self._shutdown_event.set()

        await self.dispatcher.stop()

        if self._event_bus is not None and self._subscriber_id is not None:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks = []

    async def _watch_loop(self, subscription) -> None:
        async for event in subscription:
            self._on_event(event)

    def _on_event(self, event: ObjectEvent) -> None:
        logger.debug(
            f"Watch event {event.event_type.value} for {event.key} "
            f"at version {event.resource_version}"
        )
        self.queue.add(event.key)

    async def resync(self) -> int:
        """
        Enqueue every object of every reconciled kind.

        Returns:
            Number of keys enqueued.
        """
        count = 0
        for kind in self.reconcilers:
            try:
                keys = await self.store.list_keys(kind)
            except StoreError as e:
                logger.warning(f"Resync of kind {kind} failed: {e}")
                continue
            for key in keys:
                self.queue.add(key)
            count += len(keys)
        return count

    async def _resync_loop(self) -> None:
        """Resync immediately, then every resync_interval seconds."""
        interval = self.config.resync_interval
        while self.running:
            count = await self.resync()
            logger.info(f"Resync enqueued {count} objects")

            if interval <= 0:
                return
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
