"""
Release Hook - Fulfils requests to release a previously allocated node.
"""

import copy
import logging
from typing import Any, Dict

from objects import (
    FULFILLED_CONDITION,
    Condition,
    ConditionStatus,
    ManagedObject,
    set_status_condition,
)
from plugins.hooks.base import BusinessHook, HookContext

logger = logging.getLogger(__name__)

KIND = "NodeReleaseRequest"


class ReleaseHook(BusinessHook):
    """Business hook for NodeReleaseRequest objects."""

    @property
    def kind(self) -> str:
        return KIND

    @property
    def spec_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["cloudID", "nodeID"],
            "properties": {
                "cloudID": {"type": "string", "minLength": 1},
                "nodeID": {"type": "string", "minLength": 1},
                "extensions": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                },
            },
        }

    async def apply(self, obj: ManagedObject, ctx: HookContext) -> Dict[str, Any]:
        spec = obj.spec
        logger.info(
            f"Fulfilling request {obj.namespace}/{obj.name}: "
            f"cloud_id={spec.get('cloudID')} node_id={spec.get('nodeID')} "
            f"extensions={spec.get('extensions', {})}"
        )

        status = copy.deepcopy(obj.status)
        status["conditions"] = set_status_condition(
            status.get("conditions", []),
            Condition(
                type=FULFILLED_CONDITION,
                status=ConditionStatus.TRUE,
                reason="Fulfilled",
                message="The request has been fulfilled",
            ),
        )

        logger.info(
            f"Fulfilled request {obj.namespace}/{obj.name}: "
            f"cloud_id={spec.get('cloudID')} node_id={spec.get('nodeID')}"
        )
        return status

    async def cleanup(self, obj: ManagedObject, ctx: HookContext) -> Dict[str, Any]:
        logger.info(f"Performing cleanup for {obj.namespace}/{obj.name}")
        return copy.deepcopy(obj.status)
