"""Unit tests for the hash-gated apply path of managed resources."""

import pytest
from conftest import NAMESPACE, api_exception, owner_body
from chop.resources.managed import (
    SPEC_HASH_ANNOTATION,
    ApplyError,
    ManagedConfigMap,
    ManagedSecret,
    ManagedService,
    ResourceFieldError,
    ResourceReconciler,
)
from kubernetes_asyncio.client import (
    V1ConfigMap,
    V1ObjectMeta,
    V1Secret,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
)


def config_map(data, name="test-config"):
    return ManagedConfigMap(
        V1ConfigMap(
            api_version="v1",
            kind="ConfigMap",
            metadata=V1ObjectMeta(name=name, namespace=NAMESPACE, labels={"app": "test"}),
            data=data,
        )
    )


def service(port=9181, cluster_ip=None):
    return ManagedService(
        V1Service(
            api_version="v1",
            kind="Service",
            metadata=V1ObjectMeta(name="test-svc", namespace=NAMESPACE),
            spec=V1ServiceSpec(
                cluster_ip=cluster_ip,
                selector={"app": "test"},
                ports=[V1ServicePort(name="client", port=port)],
            ),
        )
    )


@pytest.fixture
def owner():
    return owner_body("KeeperCluster", "test")


@pytest.fixture
def reconciler(store, settings):
    return ResourceReconciler(store, settings, cluster_name="test")


class TestResourceReconcilerApply:
    """Tests for ResourceReconciler.apply()."""

    @pytest.mark.asyncio
    async def test_creates_missing_object(self, store, reconciler, owner):
        changed = await reconciler.apply(owner, config_map({"a": "1"}))

        assert changed is True
        assert store.writes == [("create", "ConfigMap", "test-config")]
        stored = store.read("ConfigMap", "test-config")
        assert stored.data == {"a": "1"}
        assert SPEC_HASH_ANNOTATION in stored.metadata.annotations

    @pytest.mark.asyncio
    async def test_second_apply_is_noop(self, store, reconciler, owner):
        await reconciler.apply(owner, config_map({"a": "1"}))
        changed = await reconciler.apply(owner, config_map({"a": "1"}))

        assert changed is False
        assert len(store.writes) == 1

    @pytest.mark.asyncio
    async def test_changed_spec_replaces_object(self, store, reconciler, owner):
        await reconciler.apply(owner, config_map({"a": "1"}))
        changed = await reconciler.apply(owner, config_map({"a": "2"}))

        assert changed is True
        assert store.writes[-1] == ("replace", "ConfigMap", "test-config")
        stored = store.read("ConfigMap", "test-config")
        assert stored.data == {"a": "2"}
        assert stored.metadata.resource_version == "2"

    @pytest.mark.asyncio
    async def test_sets_controller_owner_reference(self, store, reconciler, owner):
        await reconciler.apply(owner, config_map({"a": "1"}))

        refs = store.read("ConfigMap", "test-config").metadata.owner_references
        assert len(refs) == 1
        assert refs[0].uid == "test-uid"
        assert refs[0].kind == "KeeperCluster"
        assert refs[0].controller is True

    @pytest.mark.asyncio
    async def test_conflict_is_retried_with_fresh_read(self, store, reconciler, owner):
        await reconciler.apply(owner, config_map({"a": "1"}))
        store.conflicts = 2

        changed = await reconciler.apply(owner, config_map({"a": "2"}))

        assert changed is True
        assert store.read("ConfigMap", "test-config").data == {"a": "2"}
        replaces = [c for c in store.calls if c[0] == "replace"]
        assert len(replaces) == 3

    @pytest.mark.asyncio
    async def test_conflict_retries_are_bounded(self, store, reconciler, owner, settings):
        await reconciler.apply(owner, config_map({"a": "1"}))
        store.conflicts = 100

        with pytest.raises(ApplyError) as exc_info:
            await reconciler.apply(owner, config_map({"a": "2"}))

        assert exc_info.value.operation == "update"
        assert exc_info.value.cause.status == 409
        replaces = [c for c in store.calls if c[0] == "replace"]
        assert len(replaces) == settings.conflict_retry_attempts
        assert store.read("ConfigMap", "test-config").data == {"a": "1"}

    @pytest.mark.asyncio
    async def test_other_failures_are_not_retried(self, store, reconciler, owner):
        store.failures[("create", "ConfigMap", "test-config")] = api_exception(422, "Invalid")

        with pytest.raises(ApplyError) as exc_info:
            await reconciler.apply(owner, config_map({"a": "1"}))

        assert exc_info.value.operation == "create"
        assert exc_info.value.identity == ("ConfigMap", NAMESPACE, "test-config")
        assert [c for c in store.calls if c[0] == "create"] == [
            ("create", "ConfigMap", "test-config")
        ]

    @pytest.mark.asyncio
    async def test_unknown_spec_field_fails_before_any_store_call(self, store, reconciler, owner):
        with pytest.raises(ResourceFieldError):
            await reconciler.apply(owner, config_map({"a": "1"}), spec_fields=("specc",))
        with pytest.raises(ResourceFieldError):
            await reconciler.apply(owner, config_map({"a": "1"}), spec_fields=("metadata",))

        assert store.calls == []

    @pytest.mark.asyncio
    async def test_immutable_secret_is_never_updated(self, store, reconciler, owner):
        def secret(value):
            return ManagedSecret(
                V1Secret(
                    metadata=V1ObjectMeta(name="test-credentials", namespace=NAMESPACE),
                    data={"password": value},
                )
            )

        await reconciler.apply(owner, secret("Zmlyc3Q="))
        changed = await reconciler.apply(owner, secret("c2Vjb25k"))

        assert changed is False
        assert store.read("Secret", "test-credentials").data == {"password": "Zmlyc3Q="}

    @pytest.mark.asyncio
    async def test_service_update_keeps_allocated_cluster_ip(self, store, reconciler, owner):
        await reconciler.apply(owner, service())
        store.read("Service", "test-svc").spec.cluster_ip = "10.0.0.12"

        await reconciler.apply(owner, service(port=9281))

        stored = store.read("Service", "test-svc")
        assert stored.spec.ports[0].port == 9281
        assert stored.spec.cluster_ip == "10.0.0.12"

    @pytest.mark.asyncio
    async def test_service_update_keeps_allocated_cluster_ips(self, store, reconciler, owner):
        await reconciler.apply(owner, service())
        stored = store.read("Service", "test-svc")
        ips_attr = next(a for a, key in stored.spec.attribute_map.items() if key == "clusterIPs")
        stored.spec.cluster_ip = "10.0.0.12"
        setattr(stored.spec, ips_attr, ["10.0.0.12", "fd00::12"])

        changed = await reconciler.apply(owner, service(port=9281))

        stored = store.read("Service", "test-svc")
        assert changed is True
        assert stored.spec.ports[0].port == 9281
        assert getattr(stored.spec, ips_attr) == ["10.0.0.12", "fd00::12"]


class TestManagedResourceHash:
    """Tests for ManagedResource.compute_hash()."""

    def test_hash_ignores_metadata(self):
        a = config_map({"a": "1"})
        b = config_map({"a": "1"}, name="other")
        b.annotate("x", "y")

        assert a.compute_hash() == b.compute_hash()

    def test_hash_follows_spec(self):
        assert config_map({"a": "1"}).compute_hash() != config_map({"a": "2"}).compute_hash()
