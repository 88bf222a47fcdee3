"""Shared fixtures: an in-memory object store and cluster factories."""

import copy
import json
import pytest
from chop.resources.clickhousecluster import ClickHouseCluster
from chop.resources.keepercluster import KeeperCluster
from chop.resources.managed import (
    CONFIG_REVISION_ANNOTATION,
    STATEFULSET_REVISION_ANNOTATION,
    ManagedStatefulSet,
)
from chop.types.schemas import ClickHouseClusterSpecSchema, KeeperClusterSpecSchema
from chop.types.settings import Settings
from kubernetes_asyncio.client import (
    ApiException,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1StatefulSet,
    V1StatefulSetSpec,
    V1StatefulSetStatus,
    V1LabelSelector,
)

NAMESPACE = "test-ns"


def api_exception(status: int, reason: str) -> ApiException:
    ex = ApiException(status=status, reason=reason)
    ex.body = json.dumps({"reason": reason})
    return ex


class FakeStore:
    """Dict-backed stand-in for `KubernetesStore` with resource versions.

    `conflicts` makes the next N replaces fail with a version conflict;
    `failures` maps (verb, kind, name) to an exception raised once.
    """

    def __init__(self):
        self.objects = {}
        self.writes = []
        self.calls = []
        self.conflicts = 0
        self.failures = {}

    def _fail(self, verb, kind, name):
        ex = self.failures.pop((verb, kind, name), None)
        if ex is not None:
            raise ex

    async def get(self, kind, namespace, name):
        self.calls.append(("get", kind, name))
        self._fail("get", kind, name)
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj)

    async def create(self, kind, namespace, body):
        name = body.metadata.name
        self.calls.append(("create", kind, name))
        self._fail("create", kind, name)
        key = (kind, namespace, name)
        if key in self.objects:
            raise api_exception(409, "AlreadyExists")
        obj = copy.deepcopy(body)
        obj.metadata.resource_version = "1"
        obj.metadata.generation = 1
        self.objects[key] = obj
        self.writes.append(("create", kind, name))
        return copy.deepcopy(obj)

    async def replace(self, kind, namespace, name, body):
        self.calls.append(("replace", kind, name))
        self._fail("replace", kind, name)
        key = (kind, namespace, name)
        current = self.objects.get(key)
        if current is None:
            raise api_exception(404, "NotFound")
        if self.conflicts > 0:
            self.conflicts -= 1
            raise api_exception(409, "Conflict")
        if body.metadata.resource_version != current.metadata.resource_version:
            raise api_exception(409, "Conflict")
        obj = copy.deepcopy(body)
        obj.metadata.resource_version = str(int(current.metadata.resource_version) + 1)
        generation = current.metadata.generation or 1
        if kind == "StatefulSet":
            if obj.spec.to_dict() != current.spec.to_dict():
                generation += 1
            obj.status = current.status
        obj.metadata.generation = generation
        self.objects[key] = obj
        self.writes.append(("replace", kind, name))
        return copy.deepcopy(obj)

    async def delete(self, kind, namespace, name):
        self.calls.append(("delete", kind, name))
        self._fail("delete", kind, name)
        if self.objects.pop((kind, namespace, name), None) is None:
            return False
        self.writes.append(("delete", kind, name))
        return True

    async def list(self, kind, namespace, labels):
        self.calls.append(("list", kind, None))
        self._fail("list", kind, None)
        items = []
        for (k, ns, _), obj in sorted(self.objects.items(), key=lambda item: item[0]):
            if k != kind or ns != namespace:
                continue
            obj_labels = obj.metadata.labels or {}
            if all(obj_labels.get(key) == value for key, value in labels.items()):
                items.append(copy.deepcopy(obj))
        return items

    # helpers

    def names(self, kind):
        return sorted(name for (k, _, name) in self.objects if k == kind)

    def read(self, kind, name, namespace=NAMESPACE):
        return self.objects[(kind, namespace, name)]

    def mark_ready(self, name, namespace=NAMESPACE):
        sts = self.objects[("StatefulSet", namespace, name)]
        sts.status = V1StatefulSetStatus(
            replicas=1, ready_replicas=1, observed_generation=sts.metadata.generation
        )

    def mark_all_ready(self):
        for kind, namespace, name in list(self.objects):
            if kind == "StatefulSet":
                self.mark_ready(name, namespace)


class FakeKeeperStatus:
    """Answers `server_mode` from a per-host table; member 0 leads by default."""

    def __init__(self, modes=None, fail=()):
        self.modes = modes or {}
        self.fail = set(fail)
        self.hosts = []
        self.ca_data = None

    async def server_mode(self, host, port, timeout=None):
        self.hosts.append((host, port))
        if host in self.fail:
            raise ConnectionRefusedError(host)
        if host in self.modes:
            return self.modes[host]
        return "leader" if "-keeper-0-0." in host else "follower"


def owner_body(kind, name, uid=None):
    return {
        "apiVersion": "clickhouse.com/v1alpha1",
        "kind": kind,
        "metadata": {
            "name": name,
            "namespace": NAMESPACE,
            "uid": uid or f"{name}-uid",
        },
    }


def make_statefulset(
    name,
    config_revision="cfg",
    statefulset_revision="sts",
    ready=True,
    generation=1,
    labels=None,
    restarted_at=None,
):
    """A stored replica stateful set carrying the given revisions."""
    template_annotations = (
        {"clickhouse.com/restarted-at": restarted_at} if restarted_at else None
    )
    body = V1StatefulSet(
        metadata=V1ObjectMeta(
            name=name,
            namespace=NAMESPACE,
            generation=generation,
            labels=labels or {},
            annotations={
                CONFIG_REVISION_ANNOTATION: config_revision,
                STATEFULSET_REVISION_ANNOTATION: statefulset_revision,
            },
        ),
        spec=V1StatefulSetSpec(
            replicas=1,
            selector=V1LabelSelector(match_labels=labels or {}),
            service_name="headless",
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(annotations=template_annotations),
                spec=V1PodSpec(containers=[]),
            ),
        ),
        status=V1StatefulSetStatus(
            replicas=1,
            ready_replicas=1 if ready else 0,
            observed_generation=generation,
        ),
    )
    return ManagedStatefulSet(body)


@pytest.fixture
def settings():
    return Settings(
        conflict_retry_attempts=5,
        conflict_retry_backoff_seconds=0,
        conflict_retry_max_backoff_seconds=0,
        status_request_timeout_seconds=1,
        command_timeout_seconds=1,
        default_cluster_domain="cluster.local",
        default_keeper_image="clickhouse/clickhouse-keeper:24.8",
        default_clickhouse_image="clickhouse/clickhouse-server:24.8",
        management_username="operator",
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def keeper_status():
    return FakeKeeperStatus()


@pytest.fixture
def keeper_factory(store, settings, keeper_status):
    """Build a `KeeperCluster` named `test` from a raw (camelCase) spec."""

    def factory(spec=None, status=None, name="test", generation=1):
        return KeeperCluster(
            name,
            NAMESPACE,
            KeeperClusterSpecSchema().load(spec or {}),
            owner=owner_body(KeeperCluster.KIND, name),
            store=store,
            status=status,
            generation=generation,
            conf=settings,
            status_client=keeper_status,
        )

    return factory


@pytest.fixture
def clickhouse_factory(store, settings):
    """Build a `ClickHouseCluster` named `test` referencing keeper `test`."""

    def factory(spec=None, status=None, name="test", generation=1, commander=None):
        raw = {"keeperClusterRef": {"name": "test"}}
        raw.update(spec or {})
        return ClickHouseCluster(
            name,
            NAMESPACE,
            ClickHouseClusterSpecSchema().load(raw),
            owner=owner_body(ClickHouseCluster.KIND, name),
            store=store,
            status=status,
            generation=generation,
            conf=settings,
            commander=commander,
        )

    return factory
