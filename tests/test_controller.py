"""Unit tests for controller.py - Main reconciliation controller."""

import asyncio

import pytest
import pytest_asyncio

from config import ControllerConfig, PluginConfig
from conftest import FINALIZER, FakeHook, InMemoryObjectStore, make_event
from controller import Controller
from errors import FatalConfigError, UnavailableError
from events import EventBus, EventType
from objects import ObjectKey, is_condition_true
from plugins.registry import PluginRegistry


class GadgetHook(FakeHook):
    def __init__(self):
        super().__init__(kind="Gadget")


class NotifyingStore(InMemoryObjectStore):
    """Publishes a watch event after every write, like the database trigger."""

    def __init__(self, bus: EventBus):
        super().__init__()
        self.bus = bus

    async def patch_meta(self, key, base_version, delta):
        result = await super().patch_meta(key, base_version, delta)
        if result is None:
            await self.bus.publish(make_event(EventType.DELETED, key))
        else:
            await self.bus.publish(
                make_event(EventType.MODIFIED, key, result.resource_version)
            )
        return result

    async def patch_status(self, key, base_version, delta):
        result = await super().patch_status(key, base_version, delta)
        await self.bus.publish(
            make_event(EventType.MODIFIED, key, result.resource_version)
        )
        return result


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def registry():
    registry = PluginRegistry()
    registry.register_hook(FakeHook)
    return registry


@pytest.fixture
def controller_config():
    return ControllerConfig(
        finalizer_name=FINALIZER,
        max_concurrent_reconciles=2,
        resync_interval=0,
        backoff_base_delay=0.01,
        backoff_max_delay=0.05,
    )


@pytest.mark.asyncio
class TestControllerSetup:
    """Tests for Controller.setup."""

    async def test_builds_reconciler_per_kind(self, store, registry, controller_config):
        registry.register_hook(GadgetHook)
        controller = Controller(store, registry, controller_config)

        await controller.setup()

        assert sorted(controller.reconcilers) == ["Gadget", "Widget"]
        reconciler = controller.reconcilers["Widget"]
        assert reconciler.finalizer == FINALIZER
        assert reconciler.max_conflict_retries == controller_config.max_conflict_retries

    async def test_only_enabled_kinds(self, store, registry, controller_config):
        registry.register_hook(GadgetHook)
        controller = Controller(
            store,
            registry,
            controller_config,
            PluginConfig(enabled_kinds=["Widget"]),
        )

        await controller.setup()

        assert list(controller.reconcilers) == ["Widget"]

    async def test_plugin_config_passed_to_hook(self, store, registry, controller_config):
        controller = Controller(
            store,
            registry,
            controller_config,
            PluginConfig(plugin_configs={"Widget": {"colour": "blue"}}),
        )

        await controller.setup()

        assert controller.reconcilers["Widget"].hook.config == {"colour": "blue"}

    async def test_unknown_enabled_kind_is_fatal(self, store, registry, controller_config):
        controller = Controller(
            store,
            registry,
            controller_config,
            PluginConfig(enabled_kinds=["Widget", "Sprocket"]),
        )

        with pytest.raises(FatalConfigError, match="Sprocket"):
            await controller.setup()

    async def test_no_kinds_is_fatal(self, store, controller_config):
        controller = Controller(store, PluginRegistry(), controller_config)

        with pytest.raises(FatalConfigError, match="No kinds to reconcile"):
            await controller.setup()


@pytest.mark.asyncio
class TestControllerQueueing:
    """Tests for trigger, watch events and resync."""

    @pytest_asyncio.fixture
    async def controller(self, store, registry, controller_config):
        controller = Controller(store, registry, controller_config)
        await controller.setup()
        return controller

    async def test_trigger_known_kind(self, controller, widget_key):
        assert controller.trigger(widget_key) is True
        assert controller.trigger(widget_key) is True
        assert len(controller.queue) == 1

    async def test_trigger_unknown_kind(self, controller):
        assert controller.trigger(ObjectKey("Gadget", "default", "g")) is False
        assert len(controller.queue) == 0

    async def test_reconcile_unknown_kind(self, controller):
        result = await controller.reconcile(ObjectKey("Gadget", "default", "g"))
        assert result.success is True
        assert result.message == "Unknown kind"

    async def test_reconcile_routes_to_kind(self, controller, store, widget_key):
        store.create("Widget", "default", "widget-1", spec={"size": 1})

        result = await controller.reconcile(widget_key)

        assert result.message == "Finalizer added"

    async def test_watch_event_enqueues_key(self, controller, widget_key):
        controller._on_event(make_event(EventType.ADDED, widget_key, "1"))
        assert len(controller.queue) == 1

    async def test_resync_enqueues_every_object(self, controller, store):
        store.create("Widget", "default", "widget-1")
        store.create("Widget", "other", "widget-2")
        store.create("Gadget", "default", "gadget-1")

        count = await controller.resync()

        assert count == 2
        assert len(controller.queue) == 2

    async def test_resync_survives_store_errors(self, controller, store):
        store.create("Widget", "default", "widget-1")
        store.fail("list_keys", UnavailableError("database down"))

        assert await controller.resync() == 0
        assert await controller.resync() == 1


@pytest.mark.asyncio
class TestControllerLifecycle:
    """End-to-end runs of the controller against an in-memory store."""

    async def test_start_and_stop(self, store, registry, controller_config):
        bus = EventBus()
        controller = Controller(store, registry, controller_config, event_bus=bus)
        task = asyncio.create_task(controller.start())

        await wait_for(lambda: bus.subscriber_count() == 1)
        assert controller.running is True

        await controller.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert controller.running is False
        assert bus.subscriber_count() == 0

    async def test_resync_recovers_existing_objects(
        self, store, registry, controller_config, widget_key
    ):
        store.create("Widget", "default", "widget-1", spec={"size": 1})
        controller = Controller(store, registry, controller_config)
        task = asyncio.create_task(controller.start())

        # Without watch events only the finalizer pass runs
        await wait_for(lambda: FINALIZER in store.objects[widget_key].finalizers)

        await controller.stop()
        await asyncio.wait_for(task, timeout=1.0)

    async def test_object_lifecycle(self, registry, controller_config, widget_key):
        bus = EventBus()
        store = NotifyingStore(bus)
        controller = Controller(store, registry, controller_config, event_bus=bus)
        task = asyncio.create_task(controller.start())
        await wait_for(lambda: bus.subscriber_count() == 1)

        created = store.create("Widget", "default", "widget-1", spec={"size": 3})
        await bus.publish(make_event(EventType.ADDED, widget_key, "1"))

        def fulfilled():
            obj = store.objects[widget_key]
            return is_condition_true(obj.status.get("conditions", []), "Fulfilled")

        await wait_for(fulfilled)
        obj = store.objects[widget_key]
        assert obj.finalizers == (FINALIZER,)
        assert obj.status["observedSize"] == 3
        assert obj.uid == created.uid

        store.request_delete(widget_key)
        await bus.publish(make_event(EventType.MODIFIED, widget_key))

        await wait_for(lambda: widget_key not in store.objects)
        hook = controller.reconcilers["Widget"].hook
        assert len(hook.cleaned) >= 1

        await controller.stop()
        await asyncio.wait_for(task, timeout=1.0)
