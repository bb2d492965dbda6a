"""
Reconciliation Engine - Generic finalizer-driven control loop.

One Reconciler instance serves one kind, parametrized by the business hook
for that kind and by the finalizer token that marks its claim on objects.

Each pass re-fetches the object and derives what to do from the snapshot
alone:

- unclaimed: add the finalizer and stop; the resulting watch event starts
  the real work in a later pass, once the claim is durable
- claimed and active: run the hook's apply and persist the status
- deleting with our finalizer: run the hook's cleanup, persist the status,
  then drop the finalizer so the store can erase the object

Writes are merge patches computed against the snapshot and sent with its
resource version. A conflict discards everything computed in the pass and
starts over from a fresh read.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from errors import (
    ConflictError,
    FatalConfigError,
    HookError,
    NotFoundError,
    StoreError,
    UnavailableError,
)
from objects import (
    FULFILLED_CONDITION,
    Condition,
    ConditionStatus,
    ManagedObject,
    ObjectKey,
    Phase,
    phase_of,
    set_status_condition,
)
from patch import create_merge_patch
from plugins.hooks.base import BusinessHook, HookContext
from store import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONFLICT_RETRIES = 5


@dataclass
class ReconcileResult:
    """Outcome of one reconcile() call, as seen by the dispatcher."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[float] = None


class Reconciler:
    """Reconciles objects of one kind through a business hook."""

    def __init__(
        self,
        kind: str,
        hook: BusinessHook,
        store: ObjectStore,
        finalizer: str,
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        if not finalizer:
            raise FatalConfigError(f"A finalizer token is required for {kind}")
        if hook.kind != kind:
            raise FatalConfigError(
                f"Hook for kind '{hook.kind}' cannot reconcile kind '{kind}'"
            )
        self.kind = kind
        self.hook = hook
        self.store = store
        self.finalizer = finalizer
        self.max_conflict_retries = max_conflict_retries
        self.shutdown_event = shutdown_event or asyncio.Event()

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """
        Reconcile the object identified by ``key``.

        Safe to call any number of times, concurrently for different keys.

        Args:
            key: Identity of the object that may have changed

        Returns:
            ReconcileResult. success=False asks the dispatcher to retry
            with backoff; requeue_after asks for a delayed re-run.
        """
        if key.kind != self.kind:
            raise ValueError(f"Reconciler for {self.kind} got key {key}")

        for attempt in range(1, self.max_conflict_retries + 2):
            try:
                return await self._reconcile_once(key)
            except ConflictError as e:
                logger.info(
                    f"Conflict on {key} (attempt {attempt}), "
                    f"re-fetching and starting over: {e}"
                )
            except NotFoundError:
                logger.info(f"Object {key} no longer exists")
                return ReconcileResult(success=True, message="Object no longer exists")
            except UnavailableError as e:
                logger.warning(f"Store unavailable while reconciling {key}: {e}")
                return ReconcileResult(success=False, message=f"Store unavailable: {e}")
            except StoreError as e:
                logger.error(f"Store error while reconciling {key}: {e}", exc_info=True)
                return ReconcileResult(success=False, message=f"Store error: {e}")

        message = (
            f"Gave up on {key} after {self.max_conflict_retries + 1} "
            f"conflicting writes"
        )
        logger.warning(message)
        return ReconcileResult(success=False, message=message)

    async def _reconcile_once(self, key: ObjectKey) -> ReconcileResult:
        obj = await self.store.get_object(key)
        phase = phase_of(obj, self.finalizer)

        if phase is Phase.UNCLAIMED:
            return await self._add_finalizer(obj)

        if phase is Phase.DELETING:
            if not obj.has_finalizer(self.finalizer):
                logger.debug(f"{key} is being deleted and is not ours to clean up")
                return ReconcileResult(success=True, message="Not claimed")
            return await self._process_delete(obj)

        return await self._process_update(obj)

    async def _add_finalizer(self, obj: ManagedObject) -> ReconcileResult:
        """Claim the object. No hook runs until the claim is persisted."""
        delta = create_merge_patch(
            obj.metadata_view(), obj.with_finalizer(self.finalizer).metadata_view()
        )
        await self.store.patch_meta(obj.key, obj.resource_version, delta)
        logger.info(f"Added finalizer {self.finalizer} to {obj.key}")
        return ReconcileResult(success=True, message="Finalizer added")

    async def _process_update(self, obj: ManagedObject) -> ReconcileResult:
        ctx = self._hook_context(obj)
        try:
            status = await self.hook.apply(obj.deepcopy(), ctx)
        except StoreError:
            raise
        except HookError as e:
            logger.error(f"Failed to process update of {obj.key}: {e.message}")
            return await self._record_failure(obj, e.reason or "Failed", e.message)
        except Exception as e:
            logger.error(f"Failed to process update of {obj.key}: {e}", exc_info=True)
            return await self._record_failure(obj, "InternalError", str(e))

        await self._save_status(obj, status)
        return ReconcileResult(
            success=True,
            message="Reconciled",
            requeue_after=ctx.requested_requeue,
        )

    async def _process_delete(self, obj: ManagedObject) -> ReconcileResult:
        logger.info(f"Processing deletion of {obj.key}")
        ctx = self._hook_context(obj)
        try:
            status = await self.hook.cleanup(obj.deepcopy(), ctx)
        except StoreError:
            raise
        except HookError as e:
            logger.error(f"Cleanup of {obj.key} failed: {e.message}")
            return await self._record_failure(
                obj, e.reason or "CleanupFailed", e.message
            )
        except Exception as e:
            logger.error(f"Cleanup of {obj.key} failed: {e}", exc_info=True)
            return await self._record_failure(obj, "InternalError", str(e))

        updated = await self._save_status(obj, status)

        if ctx.requested_requeue is not None:
            # Cleanup still in progress, keep the finalizer.
            return ReconcileResult(
                success=True,
                message="Cleanup in progress",
                requeue_after=ctx.requested_requeue,
            )

        delta = create_merge_patch(
            updated.metadata_view(),
            updated.without_finalizer(self.finalizer).metadata_view(),
        )
        remaining = await self.store.patch_meta(
            updated.key, updated.resource_version, delta
        )
        if remaining is None:
            logger.info(f"Removed finalizer from {obj.key}, object erased")
        else:
            logger.info(
                f"Removed finalizer from {obj.key}, "
                f"waiting on: {list(remaining.finalizers)}"
            )
        return ReconcileResult(success=True, message="Cleanup complete")

    async def _record_failure(
        self, obj: ManagedObject, reason: str, message: str
    ) -> ReconcileResult:
        """Surface a hook failure as Fulfilled=False and ask for a retry."""
        status = obj.deepcopy().status
        status["conditions"] = set_status_condition(
            status.get("conditions", []),
            Condition(
                type=FULFILLED_CONDITION,
                status=ConditionStatus.FALSE,
                reason=reason,
                message=message,
            ),
        )
        await self._save_status(obj, status)
        return ReconcileResult(success=False, message=message)

    async def _save_status(
        self, obj: ManagedObject, status: Dict[str, Any]
    ) -> ManagedObject:
        """
        Persist ``status`` through the status channel.

        Returns the object as stored afterwards. Nothing is written when the
        status did not change.
        """
        delta = create_merge_patch(obj.status_view(), {"status": status})
        if not delta:
            logger.debug(f"Status of {obj.key} unchanged")
            return obj
        updated = await self.store.patch_status(obj.key, obj.resource_version, delta)
        logger.info(f"Saved updated status of {obj.key}")
        return updated

    def _hook_context(self, obj: ManagedObject) -> HookContext:
        return HookContext(
            store=self.store, key=obj.key, shutdown_event=self.shutdown_event
        )
