"""Pytest configuration and fixtures."""

import copy
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import ConflictError, NotFoundError
from events import EventType, ObjectEvent
from objects import (
    FULFILLED_CONDITION,
    Condition,
    ConditionStatus,
    ManagedObject,
    ObjectKey,
    set_status_condition,
    utcnow,
)
from patch import apply_merge_patch
from plugins.hooks.base import BusinessHook, HookContext
from store import ObjectStore, OwnerReference, Secret

FINALIZER = "hwplugin.io/finalizer"
FIXED_TIME = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


def make_event(
    event_type: EventType, key: ObjectKey, resource_version: str = ""
) -> ObjectEvent:
    return ObjectEvent(
        event_type=event_type,
        key=key,
        resource_version=resource_version,
        timestamp="2024-01-15T10:30:00.000000Z",
    )


class InMemoryObjectStore(ObjectStore):
    """
    Object store fake with the semantics of the PostgreSQL store.

    Enforces resource versions, single deletion timestamps, erasure once the
    last finalizer of a deleting object goes, and garbage collection of owned
    secrets. Every write attempt is recorded in ``calls``.
    """

    def __init__(self):
        self.objects: Dict[ObjectKey, ManagedObject] = {}
        self.secrets: Dict[Tuple[str, str], Secret] = {}
        self.calls: List[Tuple[str, Any, Dict[str, Any]]] = []
        self.get_count = 0
        # Called with (operation, key) before each object write is applied
        self.before_write: Optional[Callable[[str, ObjectKey], None]] = None
        self._failures: Dict[str, List[Exception]] = {}
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    # Test helpers

    def create(
        self,
        kind: str,
        namespace: str,
        name: str,
        spec: Optional[Dict[str, Any]] = None,
        finalizers: Tuple[str, ...] = (),
        status: Optional[Dict[str, Any]] = None,
    ) -> ManagedObject:
        obj = ManagedObject(
            kind=kind,
            namespace=namespace,
            name=name,
            uid=f"uid-{namespace}-{name}",
            resource_version=self._next_version(),
            creation_timestamp=utcnow(),
            finalizers=tuple(finalizers),
            spec=copy.deepcopy(spec or {}),
            status=copy.deepcopy(status or {}),
        )
        self.objects[obj.key] = obj
        return obj

    def request_delete(self, key: ObjectKey) -> Optional[ManagedObject]:
        current = self.objects[key]
        if not current.finalizers:
            self._erase(current)
            return None
        if current.deleting:
            return current
        marked = replace(
            current,
            deletion_timestamp=utcnow(),
            resource_version=self._next_version(),
        )
        self.objects[key] = marked
        return marked

    def touch(self, key: ObjectKey, label: str = "touched") -> ManagedObject:
        """Simulate a concurrent writer adding a label."""
        current = self.objects[key]
        updated = replace(
            current,
            labels={**current.labels, label: "true"},
            resource_version=self._next_version(),
        )
        self.objects[key] = updated
        return updated

    def fail(self, operation: str, error: Exception) -> None:
        """Make the next call of ``operation`` raise ``error``."""
        self._failures.setdefault(operation, []).append(error)

    def writes(self, operation: Optional[str] = None) -> List[Tuple[str, Any, Dict]]:
        return [c for c in self.calls if operation is None or c[0] == operation]

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _erase(self, obj: ManagedObject) -> None:
        del self.objects[obj.key]
        for secret_key, secret in list(self.secrets.items()):
            if secret.owner is not None and secret.owner.uid == obj.uid:
                del self.secrets[secret_key]

    def _current(self, key: ObjectKey, base_version: str) -> ManagedObject:
        current = self.objects.get(key)
        if current is None:
            raise NotFoundError(f"{key} not found")
        if current.resource_version != base_version:
            raise ConflictError(
                f"{key} changed", current_version=current.resource_version
            )
        return current

    # ObjectStore

    async def get_object(self, key: ObjectKey) -> ManagedObject:
        self._maybe_fail("get_object")
        self.get_count += 1
        obj = self.objects.get(key)
        if obj is None:
            raise NotFoundError(f"{key} not found")
        return obj

    async def patch_meta(
        self, key: ObjectKey, base_version: str, delta: Dict[str, Any]
    ) -> Optional[ManagedObject]:
        self.calls.append(("patch_meta", key, delta))
        self._maybe_fail("patch_meta")
        if self.before_write:
            self.before_write("patch_meta", key)
        assert set(delta) == {"metadata"}

        current = self._current(key, base_version)
        metadata = apply_merge_patch(current.metadata_view(), delta)["metadata"]
        updated = replace(
            current,
            finalizers=tuple(metadata.get("finalizers") or ()),
            labels=dict(metadata.get("labels") or {}),
            resource_version=self._next_version(),
        )
        if updated.deleting and not updated.finalizers:
            self._erase(current)
            return None
        self.objects[key] = updated
        return updated

    async def patch_status(
        self, key: ObjectKey, base_version: str, delta: Dict[str, Any]
    ) -> ManagedObject:
        self.calls.append(("patch_status", key, delta))
        self._maybe_fail("patch_status")
        if self.before_write:
            self.before_write("patch_status", key)
        assert set(delta) == {"status"}

        current = self._current(key, base_version)
        status = apply_merge_patch(current.status_view(), delta)["status"]
        updated = replace(
            current, status=status or {}, resource_version=self._next_version()
        )
        self.objects[key] = updated
        return updated

    async def list_keys(self, kind: str) -> List[ObjectKey]:
        self._maybe_fail("list_keys")
        return [key for key in self.objects if key.kind == kind]

    async def create_or_update_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        owner: Optional[OwnerReference] = None,
    ) -> Secret:
        self._maybe_fail("create_or_update_secret")
        existing = self.secrets.get((namespace, name))
        if existing and existing.data == data and existing.owner == owner:
            return existing
        self.calls.append(("create_or_update_secret", (namespace, name), data))
        secret = Secret(
            namespace=namespace,
            name=name,
            data=dict(data),
            owner=owner,
            resource_version=self._next_version(),
        )
        self.secrets[(namespace, name)] = secret
        return secret

    async def get_secret(self, namespace: str, name: str) -> Optional[Secret]:
        return self.secrets.get((namespace, name))


class FakeHook(BusinessHook):
    """Configurable hook for kind 'Widget' that records every call."""

    def __init__(self, kind: str = "Widget"):
        self._kind = kind
        self.applied: List[ManagedObject] = []
        self.cleaned: List[ManagedObject] = []
        self.apply_error: Optional[Exception] = None
        self.cleanup_error: Optional[Exception] = None
        self.apply_requeue: Optional[float] = None
        self.cleanup_requeue: Optional[float] = None
        self.config: Dict[str, Any] = {}

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def spec_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["size"],
            "properties": {"size": {"type": "integer", "minimum": 1}},
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.config = config

    async def apply(self, obj: ManagedObject, ctx: HookContext) -> Dict[str, Any]:
        self.applied.append(obj)
        if self.apply_error:
            raise self.apply_error
        if self.apply_requeue is not None:
            ctx.requeue_after(self.apply_requeue)
        status = copy.deepcopy(obj.status)
        status["observedSize"] = obj.spec.get("size")
        status["conditions"] = set_status_condition(
            status.get("conditions", []),
            Condition(
                type=FULFILLED_CONDITION,
                status=ConditionStatus.TRUE,
                reason="Fulfilled",
                message="Widget is ready",
            ),
            now=FIXED_TIME,
        )
        return status

    async def cleanup(self, obj: ManagedObject, ctx: HookContext) -> Dict[str, Any]:
        self.cleaned.append(obj)
        if self.cleanup_error:
            raise self.cleanup_error
        if self.cleanup_requeue is not None:
            ctx.requeue_after(self.cleanup_requeue)
        return copy.deepcopy(obj.status)


@pytest.fixture
def store():
    """In-memory object store."""
    return InMemoryObjectStore()


@pytest.fixture
def hook():
    """Recording hook for kind 'Widget'."""
    return FakeHook()


@pytest.fixture
def widget_key():
    return ObjectKey("Widget", "default", "widget-1")


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn
