"""
Object Store Client - Abstract interface to the versioned object store.

The reconciliation engine only talks to the store through this interface.
Every write is a single atomic call guarded by the resource version the
caller last observed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from objects import ManagedObject, ObjectKey


@dataclass(frozen=True)
class OwnerReference:
    """Reference from a secondary record to the object that owns it."""

    kind: str
    name: str
    uid: str

    @classmethod
    def for_object(cls, obj: ManagedObject) -> "OwnerReference":
        return cls(kind=obj.kind, name=obj.name, uid=obj.uid)


@dataclass
class Secret:
    """Secondary credentials record, garbage-collected with its owner."""

    namespace: str
    name: str
    data: Dict[str, bytes] = field(default_factory=dict)
    owner: Optional[OwnerReference] = None
    resource_version: str = ""


class ObjectStore(ABC):
    """Abstract object store client."""

    @abstractmethod
    async def get_object(self, key: ObjectKey) -> ManagedObject:
        """
        Fetch the current version of an object.

        Raises:
            NotFoundError: If the object does not exist
            UnavailableError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def patch_meta(
        self, key: ObjectKey, base_version: str, delta: Dict[str, Any]
    ) -> Optional[ManagedObject]:
        """
        Apply a merge patch to the metadata channel (finalizers, labels).

        Args:
            key: Object identity
            base_version: Resource version the delta was computed against
            delta: Merge patch of the form ``{"metadata": {...}}``

        Returns:
            The updated object, or None if the patch cleared the last
            finalizer of a deleting object and the store erased it.

        Raises:
            ConflictError: If base_version is stale
            NotFoundError: If the object does not exist
            UnavailableError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def patch_status(
        self, key: ObjectKey, base_version: str, delta: Dict[str, Any]
    ) -> ManagedObject:
        """
        Apply a merge patch to the status channel.

        Args:
            key: Object identity
            base_version: Resource version the delta was computed against
            delta: Merge patch of the form ``{"status": {...}}``

        Raises:
            ConflictError: If base_version is stale
            NotFoundError: If the object does not exist
            UnavailableError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def list_keys(self, kind: str) -> List[ObjectKey]:
        """List the identities of all stored objects of a kind."""
        pass

    @abstractmethod
    async def create_or_update_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        owner: Optional[OwnerReference] = None,
    ) -> Secret:
        """Create a secret, or reconcile its data and owner if it exists."""
        pass

    @abstractmethod
    async def get_secret(self, namespace: str, name: str) -> Optional[Secret]:
        """Get a secret, or None if it does not exist."""
        pass
