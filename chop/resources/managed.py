"""Owned kubernetes objects and the hash-gated apply path.

Every object the operator owns is wrapped in a `ManagedResource`. The wrapper
knows how to fingerprint the fields that matter (`compute_hash`) and how to
move them onto a fetched copy of the object (`copy_spec_from`), so
`ResourceReconciler.apply` can treat all kinds the same way.
"""
import kopf
import logging
from typing import Any, Iterable, Optional, Sequence, Tuple
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from kubernetes_asyncio.client import (
    V1ConfigMap,
    V1ObjectMeta,
    V1PodDisruptionBudget,
    V1Secret,
    V1Service,
    V1StatefulSet,
)
from chop.resources.store import KubernetesStore
from chop.sensors import OperatorSensor
from chop.types.settings import Settings
from chop.utils.errors import already_exists_error, conflict_error
from chop.utils.helpers import compute_hash

SPEC_HASH_ANNOTATION = "clickhouse.com/spec-hash"
CONFIG_REVISION_ANNOTATION = "clickhouse.com/config-revision"
STATEFULSET_REVISION_ANNOTATION = "clickhouse.com/statefulset-revision"
RESTARTED_AT_ANNOTATION = "clickhouse.com/restarted-at"

logger = logging.getLogger(__name__)


class ResourceFieldError(LookupError):
    """A spec field name that the resource kind does not have."""


class ApplyError(Exception):
    """A create or update of a managed resource failed."""

    def __init__(self, operation: str, identity: Tuple[str, str, str], cause: BaseException):
        self.operation = operation
        self.identity = identity
        self.cause = cause
        kind, namespace, name = identity
        super().__init__(f"{operation} {kind} {namespace}/{name}: {cause}")


def _plain(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


class ManagedResource:
    """A kubernetes object owned by a cluster."""

    KIND: str
    MODEL: type
    SPEC_FIELDS: Sequence[str] = ("spec",)
    #: Created once and never updated afterwards
    IMMUTABLE: bool = False

    _NON_SPEC_FIELDS = ("api_version", "kind", "metadata", "status")

    def __init__(self, body):
        if body.metadata is None:
            body.metadata = V1ObjectMeta()
        self.body = body

    @property
    def name(self) -> str:
        return self.body.metadata.name

    @property
    def namespace(self) -> str:
        return self.body.metadata.namespace

    @property
    def annotations(self) -> dict:
        return self.body.metadata.annotations or {}

    def identity(self) -> Tuple[str, str, str]:
        return (self.KIND, self.namespace, self.name)

    def annotate(self, key: str, value: str) -> None:
        if self.body.metadata.annotations is None:
            self.body.metadata.annotations = {}
        self.body.metadata.annotations[key] = value

    def check_fields(self, fields: Iterable[str]) -> None:
        known = getattr(self.MODEL, "openapi_types", {})
        for field in fields:
            if field in self._NON_SPEC_FIELDS or field not in known:
                raise ResourceFieldError(f"{self.KIND} has no spec field {field!r}")

    def compute_hash(self, fields: Optional[Sequence[str]] = None) -> str:
        fields = tuple(fields or self.SPEC_FIELDS)
        self.check_fields(fields)
        return compute_hash({f: _plain(getattr(self.body, f)) for f in fields})

    def copy_spec_from(self, other: "ManagedResource", fields: Optional[Sequence[str]] = None) -> None:
        """Copy declared spec fields, labels, annotations and owners from `other`.

        Identity and platform-managed fields (resourceVersion, uid, status)
        of this object are left untouched.
        """
        fields = tuple(fields or self.SPEC_FIELDS)
        self.check_fields(fields)
        for field in fields:
            setattr(self.body, field, getattr(other.body, field))
        self.body.metadata.labels = other.body.metadata.labels
        self.body.metadata.annotations = other.body.metadata.annotations
        self.body.metadata.owner_references = other.body.metadata.owner_references


class ManagedStatefulSet(ManagedResource):
    KIND = "StatefulSet"
    MODEL = V1StatefulSet

    def copy_spec_from(self, other, fields=None):
        current = self.body.spec
        super().copy_spec_from(other, fields)
        if current is None or self.body.spec is current:
            return
        # selector, serviceName and volumeClaimTemplates cannot change in place
        spec = _copy_model(self.body.spec)
        spec.selector = current.selector
        spec.service_name = current.service_name
        spec.volume_claim_templates = current.volume_claim_templates
        self.body.spec = spec

    @property
    def config_revision(self) -> Optional[str]:
        return self.annotations.get(CONFIG_REVISION_ANNOTATION)

    @property
    def statefulset_revision(self) -> Optional[str]:
        return self.annotations.get(STATEFULSET_REVISION_ANNOTATION)

    @property
    def restarted_at(self) -> Optional[str]:
        template = self.body.spec.template if self.body.spec else None
        if template is None or template.metadata is None:
            return None
        return (template.metadata.annotations or {}).get(RESTARTED_AT_ANNOTATION)


class ManagedConfigMap(ManagedResource):
    KIND = "ConfigMap"
    MODEL = V1ConfigMap
    SPEC_FIELDS = ("data",)


class ManagedService(ManagedResource):
    KIND = "Service"
    MODEL = V1Service

    def copy_spec_from(self, other, fields=None):
        current = self.body.spec
        super().copy_spec_from(other, fields)
        if current is None or self.body.spec is current:
            return
        # allocated by the platform; attribute names differ between client releases
        spec = _copy_model(self.body.spec)
        for attr, key in spec.attribute_map.items():
            if key in ("clusterIP", "clusterIPs"):
                setattr(spec, attr, getattr(current, attr))
        self.body.spec = spec


class ManagedSecret(ManagedResource):
    KIND = "Secret"
    MODEL = V1Secret
    SPEC_FIELDS = ("data",)
    IMMUTABLE = True


class ManagedPodDisruptionBudget(ManagedResource):
    KIND = "PodDisruptionBudget"
    MODEL = V1PodDisruptionBudget


def _copy_model(model):
    """Shallow copy of a kubernetes model so the desired object is not mutated."""
    kwargs = {attr: getattr(model, attr) for attr in model.openapi_types}
    return type(model)(**kwargs)


def _retryable(ex: BaseException) -> bool:
    return conflict_error(ex) or already_exists_error(ex)


class ResourceReconciler:
    """Makes the store match a desired managed resource.

    `apply` writes at most once per call: nothing when the spec hash recorded
    on the stored object matches, a create when it is missing, a replace of
    the declared spec fields otherwise. Version conflicts are retried with a
    fresh read; other failures surface as `ApplyError`.
    """

    def __init__(
        self,
        store: KubernetesStore,
        conf: Settings = None,
        sensor: OperatorSensor = None,
        cluster_name: str = None,
    ):
        self.store = store
        self.conf = conf or Settings()
        self.sensor = sensor or OperatorSensor()
        self.cluster_name = cluster_name

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(_retryable),
            stop=stop_after_attempt(self.conf.conflict_retry_attempts),
            wait=wait_exponential(
                multiplier=self.conf.conflict_retry_backoff_seconds,
                max=self.conf.conflict_retry_max_backoff_seconds,
            ),
            reraise=True,
        )

    async def apply(
        self,
        owner,
        desired: ManagedResource,
        spec_fields: Optional[Sequence[str]] = None,
    ) -> bool:
        """Create or update `desired`. Returns True when a write was issued."""
        fields = tuple(spec_fields or desired.SPEC_FIELDS)
        desired_hash = desired.compute_hash(fields)
        kopf.adopt(desired.body, owner=owner)
        desired.annotate(SPEC_HASH_ANNOTATION, desired_hash)

        kind, namespace, name = desired.identity()
        sensor_state = self.sensor.on_resource_sync_start(
            self.cluster_name, name, namespace, kind
        )
        operation = "get"
        try:
            async for attempt in self._retrying():
                with attempt:
                    operation = "get"
                    existing = await self.store.get(kind, namespace, name)
                    if existing is None:
                        operation = "create"
                        await self.store.create(kind, namespace, desired.body)
                        result = "create"
                    else:
                        current = type(desired)(existing)
                        if desired.IMMUTABLE or current.annotations.get(SPEC_HASH_ANNOTATION) == desired_hash:
                            result = "noop"
                        else:
                            self.sensor.on_resource_drift_detected(
                                self.cluster_name, name, namespace, kind, ",".join(fields)
                            )
                            current.copy_spec_from(desired, fields)
                            operation = "update"
                            await self.store.replace(kind, namespace, name, current.body)
                            result = "update"
        except Exception as ex:
            self.sensor.on_resource_sync_complete(
                self.cluster_name, name, namespace, kind, sensor_state, operation, False, ex
            )
            raise ApplyError(operation, desired.identity(), ex) from ex

        self.sensor.on_resource_sync_complete(
            self.cluster_name, name, namespace, kind, sensor_state, result, True
        )
        if result != "noop":
            logger.info(f"{result.capitalize()}d {kind} {namespace}/{name}")
        return result != "noop"
