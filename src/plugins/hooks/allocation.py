"""
Allocation Hook - Fulfils requests to allocate a hardware node.

Assigns a node identifier once, keeps a BMC credentials secret owned by the
request and reports the BMC details in the request status.
"""

import copy
import logging
import os
import uuid
from typing import Any, Dict

from objects import (
    FULFILLED_CONDITION,
    Condition,
    ConditionStatus,
    ManagedObject,
    set_status_condition,
)
from plugins.hooks.base import BusinessHook, HookContext
from store import OwnerReference

logger = logging.getLogger(__name__)

KIND = "NodeAllocationRequest"
BMC_SECRET_SUFFIX = "-bmc"


class AllocationHook(BusinessHook):
    """Business hook for NodeAllocationRequest objects."""

    def __init__(self):
        self.bmc_address = "https://mybmc.com"
        self.bmc_username = "myuser"
        self.bmc_password = "mypass"

    @property
    def kind(self) -> str:
        return KIND

    @property
    def spec_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["cloudID", "location"],
            "properties": {
                "cloudID": {"type": "string", "minLength": 1},
                "location": {"type": "string", "minLength": 1},
                "extensions": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                },
            },
        }

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load BMC settings from environment variables."""
        config = {}
        for key, env_var in (
            ("bmc_address", "BMC_ADDRESS"),
            ("bmc_username", "BMC_USERNAME"),
            ("bmc_password", "BMC_PASSWORD"),
        ):
            value = os.getenv(env_var)
            if value:
                config[key] = value
        return config

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.bmc_address = config.get("bmc_address", self.bmc_address)
        self.bmc_username = config.get("bmc_username", self.bmc_username)
        self.bmc_password = config.get("bmc_password", self.bmc_password)

    async def apply(self, obj: ManagedObject, ctx: HookContext) -> Dict[str, Any]:
        spec = obj.spec
        logger.info(
            f"Fulfilling request {obj.namespace}/{obj.name}: "
            f"cloud_id={spec.get('cloudID')} location={spec.get('location')} "
            f"extensions={spec.get('extensions', {})}"
        )

        status = copy.deepcopy(obj.status)

        # The identifier lets the hardware manager find the node in later
        # update or release requests, so it is assigned exactly once.
        if not status.get("nodeId"):
            status["nodeId"] = str(uuid.uuid4())

        secret_name = f"{obj.name}{BMC_SECRET_SUFFIX}"
        await ctx.store.create_or_update_secret(
            namespace=obj.namespace,
            name=secret_name,
            data={
                "username": self.bmc_username.encode(),
                "password": self.bmc_password.encode(),
            },
            owner=OwnerReference.for_object(obj),
        )
        logger.info(f"Created BMC credentials secret {obj.namespace}/{secret_name}")

        status["bmc"] = {
            "address": self.bmc_address,
            "credentialsName": secret_name,
        }
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
            f"node_id={status['nodeId']} cloud_id={spec.get('cloudID')}"
        )
        return status

    async def cleanup(self, obj: ManagedObject, ctx: HookContext) -> Dict[str, Any]:
        # The BMC secret is owned by the request and goes away with it.
        logger.info(f"Performing cleanup for {obj.namespace}/{obj.name}")
        return copy.deepcopy(obj.status)
