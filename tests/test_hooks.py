"""Unit tests for the built-in business hooks, driven through the engine."""

import pytest

from conftest import FINALIZER
from errors import FatalConfigError
from objects import (
    FULFILLED_CONDITION,
    ConditionStatus,
    ObjectKey,
    find_status_condition,
)
from plugins.hooks import AllocationHook, HookContext, ReleaseHook
from reconciler import Reconciler

ALLOCATION_KEY = ObjectKey("NodeAllocationRequest", "cloud-a", "nar-1")
RELEASE_KEY = ObjectKey("NodeReleaseRequest", "cloud-a", "nrr-1")


async def reconcile_times(reconciler, key, times):
    results = []
    for _ in range(times):
        results.append(await reconciler.reconcile(key))
    return results


class TestHookContext:
    """Tests for HookContext."""

    def test_shortest_requeue_wins(self, store):
        ctx = HookContext(store, ALLOCATION_KEY)
        assert ctx.requested_requeue is None

        ctx.requeue_after(30)
        ctx.requeue_after(5)
        ctx.requeue_after(60)

        assert ctx.requested_requeue == 5

    def test_shutting_down(self, store):
        ctx = HookContext(store, ALLOCATION_KEY)
        assert ctx.shutting_down is False
        ctx.shutdown_event.set()
        assert ctx.shutting_down is True


class TestAllocationHookConfig:
    """Tests for AllocationHook configuration."""

    def test_defaults(self):
        hook = AllocationHook()
        assert hook.kind == "NodeAllocationRequest"
        assert hook.bmc_address == "https://mybmc.com"
        assert hook.bmc_username == "myuser"
        assert hook.bmc_password == "mypass"

    def test_load_config_from_env(self, monkeypatch):
        monkeypatch.setenv("BMC_ADDRESS", "https://bmc.example.com")
        monkeypatch.setenv("BMC_USERNAME", "admin")
        monkeypatch.delenv("BMC_PASSWORD", raising=False)

        config = AllocationHook.load_config_from_env()

        assert config == {
            "bmc_address": "https://bmc.example.com",
            "bmc_username": "admin",
        }

    @pytest.mark.asyncio
    async def test_initialize_overrides(self):
        hook = AllocationHook()
        await hook.initialize({"bmc_password": "s3cret"})
        assert hook.bmc_password == "s3cret"
        assert hook.bmc_username == "myuser"

    def test_kind_mismatch_rejected(self, store):
        with pytest.raises(FatalConfigError):
            Reconciler("NodeReleaseRequest", AllocationHook(), store, FINALIZER)


@pytest.mark.asyncio
class TestAllocationScenario:
    """Allocation requests are claimed, fulfilled and cleaned up."""

    @pytest.fixture
    def reconciler(self, store):
        return Reconciler(
            "NodeAllocationRequest", AllocationHook(), store, FINALIZER
        )

    @pytest.fixture
    def request_obj(self, store):
        return store.create(
            "NodeAllocationRequest",
            "cloud-a",
            "nar-1",
            spec={"cloudID": "cloud-a", "location": "dc-1"},
        )

    async def test_fulfilled_after_two_passes(self, store, reconciler, request_obj):
        await reconcile_times(reconciler, ALLOCATION_KEY, 2)

        stored = store.objects[ALLOCATION_KEY]
        assert stored.finalizers == (FINALIZER,)
        assert stored.status["nodeId"]
        assert stored.status["bmc"] == {
            "address": "https://mybmc.com",
            "credentialsName": "nar-1-bmc",
        }
        condition = find_status_condition(
            stored.status["conditions"], FULFILLED_CONDITION
        )
        assert condition.status == ConditionStatus.TRUE
        assert condition.reason == "Fulfilled"
        assert condition.message == "The request has been fulfilled"

    async def test_bmc_secret_owned_by_request(self, store, reconciler, request_obj):
        await reconcile_times(reconciler, ALLOCATION_KEY, 2)

        secret = store.secrets[("cloud-a", "nar-1-bmc")]
        assert secret.data == {"username": b"myuser", "password": b"mypass"}
        assert secret.owner.uid == request_obj.uid
        assert secret.owner.kind == "NodeAllocationRequest"
        assert secret.owner.name == "nar-1"

    async def test_node_id_is_stable(self, store, reconciler, request_obj):
        await reconcile_times(reconciler, ALLOCATION_KEY, 2)
        node_id = store.objects[ALLOCATION_KEY].status["nodeId"]
        writes = len(store.writes())

        await reconcile_times(reconciler, ALLOCATION_KEY, 3)

        assert store.objects[ALLOCATION_KEY].status["nodeId"] == node_id
        assert len(store.writes()) == writes

    async def test_conflict_does_not_assign_second_node_id(
        self, store, reconciler, request_obj
    ):
        await reconcile_times(reconciler, ALLOCATION_KEY, 2)
        node_id = store.objects[ALLOCATION_KEY].status["nodeId"]

        store.touch(ALLOCATION_KEY)
        await reconciler.reconcile(ALLOCATION_KEY)

        assert store.objects[ALLOCATION_KEY].status["nodeId"] == node_id

    async def test_deletion_erases_request_and_secret(
        self, store, reconciler, request_obj
    ):
        await reconcile_times(reconciler, ALLOCATION_KEY, 2)
        store.request_delete(ALLOCATION_KEY)

        result = await reconciler.reconcile(ALLOCATION_KEY)

        assert result.success is True
        assert ALLOCATION_KEY not in store.objects
        assert ("cloud-a", "nar-1-bmc") not in store.secrets

    async def test_deleted_before_claim_never_fulfilled(
        self, store, reconciler, request_obj
    ):
        store.request_delete(ALLOCATION_KEY)

        result = await reconciler.reconcile(ALLOCATION_KEY)

        assert result.success is True
        assert ALLOCATION_KEY not in store.objects
        assert store.secrets == {}


@pytest.mark.asyncio
class TestReleaseScenario:
    """Release requests are claimed and fulfilled."""

    @pytest.fixture
    def reconciler(self, store):
        return Reconciler("NodeReleaseRequest", ReleaseHook(), store, FINALIZER)

    async def test_fulfilled(self, store, reconciler):
        store.create(
            "NodeReleaseRequest",
            "cloud-a",
            "nrr-1",
            spec={"cloudID": "cloud-a", "nodeID": "node-7"},
        )

        await reconcile_times(reconciler, RELEASE_KEY, 2)

        stored = store.objects[RELEASE_KEY]
        condition = find_status_condition(
            stored.status["conditions"], FULFILLED_CONDITION
        )
        assert condition.status == ConditionStatus.TRUE
        assert store.secrets == {}

    async def test_deletion(self, store, reconciler):
        store.create(
            "NodeReleaseRequest",
            "cloud-a",
            "nrr-1",
            spec={"cloudID": "cloud-a", "nodeID": "node-7"},
        )
        await reconcile_times(reconciler, RELEASE_KEY, 2)
        store.request_delete(RELEASE_KEY)

        await reconciler.reconcile(RELEASE_KEY)

        assert RELEASE_KEY not in store.objects

    def test_spec_schema_requires_node_id(self):
        assert ReleaseHook().spec_schema["required"] == ["cloudID", "nodeID"]
