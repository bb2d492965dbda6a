"""
HTTP Input Plugin - REST API for managed objects.

Requesters create, read, update and delete objects through this API. It only
writes to the object store; the controller picks the changes up from the
store's watch events.
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StoreError,
    UnavailableError,
)
from events import EventBus, ObjectEvent
from objects import ManagedObject, ObjectKey
from plugins.inputs.base import InputPlugin, TriggerCallback
from validation import validate_object_name, validate_spec_against_schema

logger = logging.getLogger(__name__)

MAX_SPEC_SIZE = 1024 * 1024  # 1MB max for spec


def validate_json_size(value: Dict[str, Any], field_name: str) -> Dict[str, Any]:
    """Validate that JSON data doesn't exceed size limits."""
    if len(json.dumps(value)) > MAX_SPEC_SIZE:
        raise ValueError(
            f"{field_name} exceeds maximum size of {MAX_SPEC_SIZE // 1024}KB"
        )
    return value


class ObjectCreate(BaseModel):
    """Request body for creating an object."""

    name: str = Field(..., description="Object name, unique per kind and namespace")
    spec: Dict[str, Any] = Field(..., description="Request parameters")
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        error = validate_object_name(v, "name")
        if error:
            raise ValueError(error)
        return v

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")


class ObjectUpdate(BaseModel):
    """Request body for replacing an object's spec."""

    spec: Dict[str, Any]
    resource_version: Optional[str] = Field(
        None, description="Reject the update if the object changed since this version"
    )

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")


class ObjectResponse(BaseModel):
    """An object as exposed over the API."""

    kind: str
    metadata: Dict[str, Any]
    spec: Dict[str, Any]
    status: Dict[str, Any]

    @classmethod
    def from_object(cls, obj: ManagedObject) -> "ObjectResponse":
        return cls(**obj.to_dict())


class KindInfo(BaseModel):
    """A reconciled kind and the schema its specs must satisfy."""

    kind: str
    version: str
    spec_schema: Dict[str, Any]


def _store_error_to_http(e: StoreError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (AlreadyExistsError, ConflictError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, UnavailableError):
        return HTTPException(status_code=503, detail=str(e))
    logger.error(f"Store error: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API for managed objects.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.server = None
        self._store = None
        self._registry = None
        self._event_bus: Optional[EventBus] = None
        self._trigger: Optional[TriggerCallback] = None
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        return {
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8000")),
            "log_level": os.getenv("LOG_LEVEL", "INFO").lower(),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the HTTP API plugin."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)

        self.app = FastAPI(
            title="Hardware Plugin Operator API",
            description="Requests for node allocation and release",
            version="1.0.0",
        )
        self._setup_routes()

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_store(self, store) -> None:
        """Set the object store instance."""
        self._store = store

    def set_registry(self, registry) -> None:
        """Set the plugin registry used to look up kinds."""
        self._registry = registry

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus instance for streaming watch events."""
        self._event_bus = event_bus

    def set_trigger(self, trigger: Optional[TriggerCallback]) -> None:
        self._trigger = trigger

    def _require_store(self):
        if not self._store:
            raise HTTPException(status_code=503, detail="Database not available")
        return self._store

    def _require_kind(self, kind: str) -> Dict[str, Any]:
        """Return the hook info for a kind, or 404 if nothing reconciles it."""
        info = self._registry.get_hook_info(kind) if self._registry else None
        if info is None:
            raise HTTPException(status_code=404, detail=f"Unknown kind: {kind}")
        return info

    def _check_spec(self, kind: str, spec: Dict[str, Any]) -> None:
        info = self._require_kind(kind)
        is_valid, error = validate_spec_against_schema(spec, info["spec_schema"])
        if not is_valid:
            raise HTTPException(
                status_code=400, detail=f"Spec validation failed: {error}"
            )

    @staticmethod
    def _check_namespace(namespace: str) -> None:
        error = validate_object_name(namespace, "namespace")
        if error:
            raise HTTPException(status_code=400, detail=error)

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        - Health check: GET /
        - Objects: /api/v1/namespaces/{namespace}/{kind}[/{name}]
        - Manual reconcile: POST /api/v1/namespaces/{namespace}/{kind}/{name}/reconcile
        - Watch: GET /api/v1/watch (SSE)
        - Kind discovery: GET /api/v1/kinds

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "hwplugin-operator"}

        @self.app.get("/api/v1/kinds", response_model=List[KindInfo])
        async def list_kinds():
            """List the kinds this operator reconciles."""
            if not self._registry:
                return []
            return [
                KindInfo(**self._registry.get_hook_info(kind))
                for kind in self._registry.list_kinds()
            ]

        @self.app.post(
            "/api/v1/namespaces/{namespace}/{kind}",
            response_model=ObjectResponse,
            status_code=201,
        )
        async def create_object(namespace: str, kind: str, body: ObjectCreate):
            """Create a new object."""
            store = self._require_store()
            self._check_namespace(namespace)
            self._check_spec(kind, body.spec)

            try:
                obj = await store.create_object(
                    kind=kind,
                    namespace=namespace,
                    name=body.name,
                    spec=body.spec,
                    labels=body.labels,
                )
            except StoreError as e:
                raise _store_error_to_http(e)
            return ObjectResponse.from_object(obj)

        @self.app.get(
            "/api/v1/namespaces/{namespace}/{kind}",
            response_model=List[ObjectResponse],
        )
        async def list_objects(
            namespace: str, kind: str, limit: int = Query(100, ge=1, le=1000)
        ):
            """List objects of a kind in a namespace."""
            store = self._require_store()
            self._require_kind(kind)
            try:
                objects = await store.list_objects(
                    kind=kind, namespace=namespace, limit=limit
                )
            except StoreError as e:
                raise _store_error_to_http(e)
            return [ObjectResponse.from_object(obj) for obj in objects]

        @self.app.get(
            "/api/v1/namespaces/{namespace}/{kind}/{name}",
            response_model=ObjectResponse,
        )
        async def get_object(namespace: str, kind: str, name: str):
            """Get a single object."""
            store = self._require_store()
            try:
                obj = await store.get_object(ObjectKey(kind, namespace, name))
            except StoreError as e:
                raise _store_error_to_http(e)
            return ObjectResponse.from_object(obj)

        @self.app.put(
            "/api/v1/namespaces/{namespace}/{kind}/{name}",
            response_model=ObjectResponse,
        )
        async def update_object(
            namespace: str, kind: str, name: str, body: ObjectUpdate
        ):
            """Replace an object's spec."""
            store = self._require_store()
            self._check_spec(kind, body.spec)
            try:
                obj = await store.update_spec(
                    ObjectKey(kind, namespace, name),
                    body.spec,
                    base_version=body.resource_version,
                )
            except StoreError as e:
                raise _store_error_to_http(e)
            return ObjectResponse.from_object(obj)

        @self.app.delete(
            "/api/v1/namespaces/{namespace}/{kind}/{name}", status_code=202
        )
        async def delete_object(namespace: str, kind: str, name: str):
            """Request deletion. The object stays until its finalizers are gone."""
            store = self._require_store()
            key = ObjectKey(kind, namespace, name)
            try:
                marked = await store.delete_object(key)
            except StoreError as e:
                raise _store_error_to_http(e)

            if marked is None:
                return {"message": "Object deleted", "key": str(key)}
            return {
                "message": "Object marked for deletion",
                "key": str(key),
                "finalizers": list(marked.finalizers),
            }

        @self.app.post(
            "/api/v1/namespaces/{namespace}/{kind}/{name}/reconcile",
            status_code=202,
        )
        async def trigger_reconciliation(namespace: str, kind: str, name: str):
            """Manually trigger reconciliation of an object."""
            if not self._trigger:
                raise HTTPException(status_code=503, detail="Controller not available")
            key = ObjectKey(kind, namespace, name)
            if not self._trigger(key):
                raise HTTPException(status_code=404, detail=f"Unknown kind: {kind}")
            return {"message": "Reconciliation triggered", "key": str(key)}

        @self.app.get("/api/v1/watch")
        async def watch(kind: Optional[str] = None, namespace: Optional[str] = None):
            """SSE stream of watch events, optionally filtered by kind and namespace."""
            if not self._event_bus:
                raise HTTPException(
                    status_code=503, detail="Event streaming not available"
                )

            def filter_fn(event: ObjectEvent) -> bool:
                if kind and event.key.kind != kind:
                    return False
                if namespace and event.key.namespace != namespace:
                    return False
                return True

            subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self._event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self, trigger: Optional[TriggerCallback] = None) -> None:
        """Start the HTTP server."""
        if trigger is not None:
            self._trigger = trigger

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self._config.get("log_level", "info"),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"
