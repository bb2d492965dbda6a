"""
Managed Objects - Snapshot types for objects held in the store.

A ManagedObject is an immutable snapshot of one stored object. Lifecycle
phases are derived from its fields, never stored.
"""

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

FULFILLED_CONDITION = "Fulfilled"


class ConditionStatus(str, Enum):
    """Allowed values of a condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Phase(Enum):
    """Lifecycle phase of an object, as seen by one engine."""

    UNCLAIMED = "Unclaimed"
    CLAIMED_ACTIVE = "Claimed-Active"
    DELETING = "Deleting"
    GONE = "Gone"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ObjectKey:
    """Stable identity of a stored object."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ManagedObject:
    """Snapshot of a stored object at one resource version."""

    kind: str
    namespace: str
    name: str
    uid: str
    resource_version: str
    generation: int = 1
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    finalizers: Tuple[str, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict)
    spec: Dict[str, Any] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.kind, self.namespace, self.name)

    @property
    def deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def deepcopy(self) -> "ManagedObject":
        """Return a copy whose nested dicts can be mutated freely."""
        return replace(
            self,
            labels=copy.deepcopy(self.labels),
            spec=copy.deepcopy(self.spec),
            status=copy.deepcopy(self.status),
        )

    def with_finalizer(self, finalizer: str) -> "ManagedObject":
        if finalizer in self.finalizers:
            return self
        return replace(self, finalizers=self.finalizers + (finalizer,))

    def without_finalizer(self, finalizer: str) -> "ManagedObject":
        return replace(
            self, finalizers=tuple(f for f in self.finalizers if f != finalizer)
        )

    def metadata_view(self) -> Dict[str, Any]:
        """The part of the object written through the metadata channel."""
        return {
            "metadata": {
                "finalizers": list(self.finalizers),
                "labels": dict(self.labels),
            }
        }

    def status_view(self) -> Dict[str, Any]:
        """The part of the object written through the status channel."""
        return {"status": copy.deepcopy(self.status)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "metadata": {
                "namespace": self.namespace,
                "name": self.name,
                "uid": self.uid,
                "resourceVersion": self.resource_version,
                "generation": self.generation,
                "creationTimestamp": _isoformat(self.creation_timestamp),
                "deletionTimestamp": _isoformat(self.deletion_timestamp),
                "finalizers": list(self.finalizers),
                "labels": dict(self.labels),
            },
            "spec": copy.deepcopy(self.spec),
            "status": copy.deepcopy(self.status),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagedObject":
        metadata = data.get("metadata", {})
        return cls(
            kind=data["kind"],
            namespace=metadata["namespace"],
            name=metadata["name"],
            uid=metadata.get("uid", ""),
            resource_version=str(metadata.get("resourceVersion", "")),
            generation=metadata.get("generation", 1),
            creation_timestamp=_parse_time(metadata.get("creationTimestamp")),
            deletion_timestamp=_parse_time(metadata.get("deletionTimestamp")),
            finalizers=tuple(metadata.get("finalizers") or ()),
            labels=dict(metadata.get("labels") or {}),
            spec=copy.deepcopy(data.get("spec") or {}),
            status=copy.deepcopy(data.get("status") or {}),
        )


def phase_of(obj: Optional[ManagedObject], finalizer: str) -> Phase:
    """Derive the lifecycle phase of an object for the given finalizer token."""
    if obj is None:
        return Phase.GONE
    if obj.deleting:
        return Phase.DELETING
    if obj.has_finalizer(finalizer):
        return Phase.CLAIMED_ACTIVE
    return Phase.UNCLAIMED


@dataclass(frozen=True)
class Condition:
    """A single status condition, keyed by type."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": ConditionStatus(self.status).value,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": _isoformat(self.last_transition_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=ConditionStatus(data.get("status", ConditionStatus.UNKNOWN.value)),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=_parse_time(data.get("lastTransitionTime")),
        )


def set_status_condition(
    conditions: List[Dict[str, Any]],
    condition: Condition,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Set a condition in a list of serialized conditions.

    An existing entry with the same type is replaced in place. Its
    lastTransitionTime is kept unless the status changed. New entries are
    appended.

    Args:
        conditions: Conditions as stored in status (list of dicts)
        condition: The condition to set
        now: Transition time to use for changed or new entries

    Returns:
        A new list; the input list is not modified.
    """
    now = now or condition.last_transition_time or utcnow()
    result = [dict(c) for c in conditions or []]

    for index, existing in enumerate(result):
        if existing.get("type") != condition.type:
            continue
        transition = now
        if existing.get("status") == ConditionStatus(condition.status).value:
            previous = _parse_time(existing.get("lastTransitionTime"))
            transition = previous or now
        result[index] = replace(condition, last_transition_time=transition).to_dict()
        return result

    result.append(replace(condition, last_transition_time=now).to_dict())
    return result


def find_status_condition(
    conditions: List[Dict[str, Any]], condition_type: str
) -> Optional[Condition]:
    """Find a condition by type, or None if absent."""
    for entry in conditions or []:
        if entry.get("type") == condition_type:
            return Condition.from_dict(entry)
    return None


def is_condition_true(conditions: List[Dict[str, Any]], condition_type: str) -> bool:
    condition = find_status_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
