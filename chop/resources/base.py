"""One reconciliation pass, written once for both cluster kinds.

A pass applies the cluster-wide objects, observes every replica, lets the
`RolloutSequencer` create and update replicas under the kind's policy,
removes replicas that are no longer wanted, folds everything into the
status conditions and hands a status patch back to the handler. The
kind-specific parts (configuration, ports, health, scaling, post-rollout
commands) are the hooks at the bottom of `BaseCluster`.
"""
import logging
import yaml
from typing import Any, Dict, List, Mapping, Optional, Tuple
from kubernetes_asyncio.client import (
    V1ConfigMap,
    V1ConfigMapVolumeSource,
    V1Container,
    V1ContainerPort,
    V1EnvVar,
    V1KeyToPath,
    V1LabelSelector,
    V1ObjectMeta,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimSpec,
    V1PodDisruptionBudget,
    V1PodDisruptionBudgetSpec,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Probe,
    V1ResourceRequirements,
    V1SecretVolumeSource,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1StatefulSet,
    V1StatefulSetSpec,
    V1StatefulSetUpdateStrategy,
    V1Volume,
    V1VolumeMount,
)
from chop.common.models.labels import Labels
from chop.resources.conditions import (
    FALSE,
    RECONCILE_STEP_FAILED,
    RECONCILE_SUCCEEDED,
    REPLICAS_NOT_READY,
    REPLICAS_READY,
    ConditionAggregator,
    ConditionList,
    HealthVerdict,
)
from chop.resources.managed import (
    CONFIG_REVISION_ANNOTATION,
    RESTARTED_AT_ANNOTATION,
    STATEFULSET_REVISION_ANNOTATION,
    ApplyError,
    ManagedConfigMap,
    ManagedPodDisruptionBudget,
    ManagedResource,
    ManagedService,
    ManagedStatefulSet,
    ResourceReconciler,
)
from chop.resources.replica import ReplicaID, ReplicaState, ReplicaStateTracker
from chop.resources.revision import configuration_revision, workload_revision
from chop.resources.rollout import RolloutPolicy, RolloutResult, RolloutSequencer
from chop.resources.store import KubernetesStore
from chop.sensors import OperatorSensor
from chop.types.settings import Settings
from chop.utils.helpers import compute_hash, deep_merge
from chop.utils.parallel import MultiError, execute_parallel

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"
POD_ERROR_REASONS = ("ImagePullBackOff", "ErrImagePull", "CrashLoopBackOff")

# Event reasons
FAILED_CREATE = "FailedCreate"
FAILED_UPDATE = "FailedUpdate"
SUCCESSFUL_DELETE = "SuccessfulDelete"
FAILED_DELETE = "FailedDelete"

NORMAL = "Normal"
WARNING = "Warning"


def replica_hostname(
    cluster_name: str, role: str, replica_path: str, namespace: str, cluster_domain: str
) -> str:
    """DNS name of the single pod of a replica behind the headless service."""
    return (
        f"{cluster_name}-{role}-{replica_path}-0.{cluster_name}-{role}-headless"
        f".{namespace}.svc.{cluster_domain}"
    )


class InvalidSpecError(ValueError):
    """The cluster spec cannot be rendered into resources."""


def pod_error(pod) -> Optional[str]:
    """Terminal waiting reason of a pod container, if any."""
    if pod is None or pod.status is None:
        return None
    statuses = list(pod.status.init_container_statuses or []) + list(
        pod.status.container_statuses or []
    )
    for container in statuses:
        waiting = container.state.waiting if container.state else None
        if waiting is not None and waiting.reason in POD_ERROR_REASONS:
            return f"container {container.name}: {waiting.reason}"
    return None


class ReconcileResult:
    """Outcome of one pass: the status patch, convergence and the pass error."""

    def __init__(
        self,
        status: Dict[str, Any],
        converged: bool,
        error: Optional[BaseException] = None,
        events: List[Tuple[str, str, str]] = None,
    ):
        self.status = status
        self.converged = converged
        self.error = error
        self.events = events or []

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def __repr__(self) -> str:
        return f"ReconcileResult<converged={self.converged} error={self.error}>"


class BaseCluster:
    """A cluster custom resource and everything it owns."""

    KIND: str
    PLURAL: str
    #: Short role used in object names: `<cluster>-<role>-...`
    ROLE: str
    #: Value of the role label
    LABEL_ROLE: str
    CONTAINER_NAME: str
    GROUP = "clickhouse.com"
    VERSION = "v1alpha1"
    OPERATOR_NAME = "clickhouse-operator"

    DATA_VOLUME = "data"
    TLS_VOLUME = "tls"
    DATA_PATH: str
    TLS_PATH: str
    #: (volume name, configmap key, mount directory)
    CONFIG_MOUNTS: Tuple[Tuple[str, str, str], ...] = ()

    def __init__(
        self,
        name: str,
        namespace: str,
        spec,
        owner: Mapping,
        store: KubernetesStore,
        status: Mapping = None,
        generation: Optional[int] = None,
        conf: Settings = None,
        sensor: OperatorSensor = None,
    ):
        self.name = name
        self.namespace = namespace
        self.spec = spec
        self.owner = owner
        self.store = store
        self.status = dict(status or {})
        self._generation = generation
        self.conf = conf or Settings()
        self.sensor = sensor or OperatorSensor()
        self._conditions = ConditionList(self.status.get("conditions"))
        self.reconciler = ResourceReconciler(store, self.conf, self.sensor, name)
        self.events: List[Tuple[str, str, str]] = []

    # capability interface

    @property
    def generation(self) -> Optional[int]:
        return self._generation

    @property
    def conditions(self) -> ConditionList:
        return self._conditions

    # naming

    @property
    def api_version(self) -> str:
        return f"{self.GROUP}/{self.VERSION}"

    @property
    def component_name(self) -> str:
        return f"{self.name}-{self.ROLE}"

    @property
    def headless_service_name(self) -> str:
        return f"{self.component_name}-headless"

    @property
    def client_service_name(self) -> str:
        return self.component_name

    @property
    def cluster_domain(self) -> str:
        return self.spec.cluster_domain or self.conf.default_cluster_domain

    def statefulset_name(self, replica_id: ReplicaID) -> str:
        return f"{self.component_name}-{replica_id.path()}"

    def configmap_name(self, replica_id: ReplicaID) -> str:
        return self.statefulset_name(replica_id)

    def pod_name(self, replica_id: ReplicaID) -> str:
        return f"{self.statefulset_name(replica_id)}-0"

    def hostname_by_id(self, replica_id: ReplicaID) -> str:
        return replica_hostname(
            self.name, self.ROLE, replica_id.path(), self.namespace, self.cluster_domain
        )

    @property
    def labels(self) -> Labels:
        return Labels.generate_default_labels(
            app=self.component_name,
            cluster_name=self.name,
            role=self.LABEL_ROLE,
            managed_by=self.OPERATOR_NAME,
            extra=self.spec.labels,
        )

    @property
    def image(self) -> str:
        raise NotImplementedError()

    def validate(self) -> None:
        tls = self.spec.tls
        if tls.enabled and tls.server_cert_secret is None:
            raise InvalidSpecError("tls.serverCertSecret is required when TLS is enabled")
        if tls.required and not tls.enabled:
            raise InvalidSpecError("tls.required needs tls.enabled")

    # configuration

    def render_config(self, replica_id: ReplicaID, members: List[ReplicaID]) -> Dict[str, str]:
        """Configuration files of one replica, keyed by configmap key."""
        documents = self.prepare_base_config()
        config = deep_merge(
            documents[CONFIG_FILE], self.prepare_topology_config(replica_id, members)
        )
        documents[CONFIG_FILE] = deep_merge(config, self.spec.settings.extra_config)
        return {
            key: yaml.safe_dump(document, default_flow_style=False, sort_keys=True)
            for key, document in documents.items()
        }

    def configuration_revision(self) -> str:
        return configuration_revision(
            self.prepare_base_config(), self.spec.settings.extra_config
        )

    def statefulset_revision(self) -> str:
        return workload_revision(self.prepare_statefulset(self.reference_replica_id()).body)

    # templates

    def prepare_config_map(self, replica_id: ReplicaID, members: List[ReplicaID]) -> ManagedConfigMap:
        return ManagedConfigMap(
            V1ConfigMap(
                api_version="v1",
                kind="ConfigMap",
                metadata=V1ObjectMeta(
                    name=self.configmap_name(replica_id),
                    namespace=self.namespace,
                    labels=self.replica_labels(replica_id).as_dict(),
                ),
                data=self.render_config(replica_id, members),
            )
        )

    def prepare_volumes(self, replica_id: ReplicaID) -> List[V1Volume]:
        volumes = [
            V1Volume(
                name=volume,
                config_map=V1ConfigMapVolumeSource(
                    name=self.configmap_name(replica_id),
                    items=[V1KeyToPath(key=key, path=key)],
                ),
            )
            for volume, key, _ in self.CONFIG_MOUNTS
        ]
        if self.spec.tls.enabled:
            volumes.append(
                V1Volume(
                    name=self.TLS_VOLUME,
                    secret=V1SecretVolumeSource(
                        secret_name=self.spec.tls.server_cert_secret.name,
                        default_mode=0o444,
                    ),
                )
            )
        return volumes

    def prepare_volume_mounts(self) -> List[V1VolumeMount]:
        mounts = [
            V1VolumeMount(name=volume, mount_path=path, read_only=True)
            for volume, _, path in self.CONFIG_MOUNTS
        ]
        mounts.append(V1VolumeMount(name=self.DATA_VOLUME, mount_path=self.DATA_PATH))
        if self.spec.tls.enabled:
            mounts.append(
                V1VolumeMount(name=self.TLS_VOLUME, mount_path=self.TLS_PATH, read_only=True)
            )
        return mounts

    def prepare_data_volume_claim(self) -> V1PersistentVolumeClaim:
        storage = self.spec.storage
        return V1PersistentVolumeClaim(
            metadata=V1ObjectMeta(name=self.DATA_VOLUME),
            spec=V1PersistentVolumeClaimSpec(
                access_modes=list(storage.access_modes),
                storage_class_name=storage.storage_class,
                resources=V1ResourceRequirements(requests={"storage": storage.size}),
            ),
        )

    def prepare_resources(self) -> Optional[V1ResourceRequirements]:
        resources = self.spec.resources
        if not resources:
            return None
        return V1ResourceRequirements(
            limits=resources.get("limits"), requests=resources.get("requests")
        )

    def prepare_container(self, replica_id: ReplicaID) -> V1Container:
        return V1Container(
            name=self.CONTAINER_NAME,
            image=self.image,
            image_pull_policy=self.spec.image_pull_policy,
            ports=self.prepare_container_ports(),
            env=self.prepare_env(replica_id) or None,
            resources=self.prepare_resources(),
            volume_mounts=self.prepare_volume_mounts(),
            readiness_probe=self.prepare_readiness_probe(),
        )

    def prepare_statefulset(
        self, replica_id: ReplicaID, restarted_at: Optional[str] = None
    ) -> ManagedStatefulSet:
        """Single-pod stateful set of one replica."""
        labels = self.replica_labels(replica_id).as_dict()
        template_annotations = dict(self.spec.annotations or {})
        if restarted_at:
            template_annotations[RESTARTED_AT_ANNOTATION] = restarted_at
        stateful_set = V1StatefulSet(
            api_version="apps/v1",
            kind="StatefulSet",
            metadata=V1ObjectMeta(
                name=self.statefulset_name(replica_id),
                namespace=self.namespace,
                labels=labels,
                annotations={},
            ),
            spec=V1StatefulSetSpec(
                replicas=1,
                service_name=self.headless_service_name,
                pod_management_policy="Parallel",
                update_strategy=V1StatefulSetUpdateStrategy(type="RollingUpdate"),
                selector=V1LabelSelector(match_labels=labels),
                template=V1PodTemplateSpec(
                    metadata=V1ObjectMeta(
                        labels=labels, annotations=template_annotations or None
                    ),
                    spec=V1PodSpec(
                        containers=[self.prepare_container(replica_id)],
                        volumes=self.prepare_volumes(replica_id),
                    ),
                ),
                volume_claim_templates=[self.prepare_data_volume_claim()],
            ),
        )
        return ManagedStatefulSet(stateful_set)

    def _prepare_service(self, name: str, headless: bool) -> ManagedService:
        return ManagedService(
            V1Service(
                api_version="v1",
                kind="Service",
                metadata=V1ObjectMeta(
                    name=name, namespace=self.namespace, labels=self.labels.as_dict()
                ),
                spec=V1ServiceSpec(
                    cluster_ip="None" if headless else None,
                    publish_not_ready_addresses=True if headless else None,
                    selector=self.labels.selector().as_dict(),
                    ports=self.prepare_service_ports(),
                ),
            )
        )

    def prepare_headless_service(self) -> ManagedService:
        return self._prepare_service(self.headless_service_name, headless=True)

    def prepare_client_service(self) -> ManagedService:
        return self._prepare_service(self.client_service_name, headless=False)

    def _prepare_pod_disruption_budget(
        self, name: str, selector: Labels, min_available=None, max_unavailable=None
    ) -> ManagedPodDisruptionBudget:
        return ManagedPodDisruptionBudget(
            V1PodDisruptionBudget(
                api_version="policy/v1",
                kind="PodDisruptionBudget",
                metadata=V1ObjectMeta(
                    name=name, namespace=self.namespace, labels=self.labels.as_dict()
                ),
                spec=V1PodDisruptionBudgetSpec(
                    min_available=min_available,
                    max_unavailable=max_unavailable,
                    selector=V1LabelSelector(match_labels=selector.as_dict()),
                ),
            )
        )

    def pod_disruption_overrides(self) -> Optional[Tuple[Any, Any]]:
        """(minAvailable, maxUnavailable) set on the cluster, or None."""
        budget = self.spec.pod_disruption_budget
        if budget is None or (budget.min_available is None and budget.max_unavailable is None):
            return None
        return budget.min_available, budget.max_unavailable

    # observation

    async def observe(self) -> Tuple[ReplicaStateTracker, Optional[MultiError]]:
        """Read every replica of the cluster from the store and the servers."""
        tracker = ReplicaStateTracker()
        items = await self.store.list(
            "StatefulSet", self.namespace, self.labels.selector().as_dict()
        )
        for item in items:
            replica_id = self.replica_id_from_labels(item.metadata.labels or {})
            if replica_id is None:
                logger.warning(f"Ignoring StatefulSet {item.metadata.name} without replica labels")
                continue
            tracker.set(replica_id, ReplicaState(ManagedStatefulSet(item)))

        async def observe_replica(replica_id: ReplicaID) -> None:
            state = tracker.get(replica_id)
            pod = await self.store.get("Pod", self.namespace, self.pod_name(replica_id))
            reason = pod_error(pod)
            if reason is not None:
                state.error = True
                state.message = reason
            try:
                state.mode, state.healthy = await self.probe_replica(replica_id)
            except Exception as ex:
                state.healthy = False
                if state.message is None:
                    state.message = str(ex)
                logger.debug(f"Replica {replica_id} did not answer: {ex}")

        # each probe carries its own deadline; the batch one only bounds stragglers
        _, error = await execute_parallel(
            tracker.ids(),
            observe_replica,
            timeout=self.conf.status_request_timeout_seconds * 2,
        )
        return tracker, error

    # the pass

    def _record_apply_error(self, errors: Dict[Any, BaseException], ex: ApplyError) -> None:
        kind, _, name = ex.identity
        reason = FAILED_CREATE if ex.operation == "create" else FAILED_UPDATE
        self.events.append((WARNING, reason, f"{ex.operation} {kind} {name}: {ex.cause}"))
        errors[f"{kind}/{name}"] = ex

    async def apply_all(self, resources: List[ManagedResource], errors: Dict[Any, BaseException]) -> None:
        for resource in resources:
            try:
                await self.reconciler.apply(self.owner, resource)
            except ApplyError as ex:
                self._record_apply_error(errors, ex)

    async def apply_replica(
        self,
        replica_id: ReplicaID,
        members: List[ReplicaID],
        config_revision: str,
        statefulset_revision: str,
        restarted_at: Optional[str],
    ) -> bool:
        """Write the configmap and stateful set of one replica."""
        await self.reconciler.apply(self.owner, self.prepare_config_map(replica_id, members))
        stateful_set = self.prepare_statefulset(replica_id, restarted_at)
        stateful_set.annotate(CONFIG_REVISION_ANNOTATION, config_revision)
        stateful_set.annotate(STATEFULSET_REVISION_ANNOTATION, statefulset_revision)
        return await self.reconciler.apply(self.owner, stateful_set)

    async def remove_replicas(self, replica_ids: List[ReplicaID], errors: Dict[Any, BaseException]) -> None:
        for replica_id in replica_ids:
            name = self.statefulset_name(replica_id)
            try:
                await self.store.delete("StatefulSet", self.namespace, name)
                await self.store.delete("ConfigMap", self.namespace, self.configmap_name(replica_id))
            except Exception as ex:
                logger.warning(f"Failed to remove replica {replica_id}: {ex}")
                self.events.append((WARNING, FAILED_DELETE, f"delete StatefulSet {name}: {ex}"))
                errors[str(replica_id)] = ex
                continue
            logger.info(f"Removed replica {replica_id} of {self.KIND} {self.namespace}/{self.name}")
            self.events.append((NORMAL, SUCCESSFUL_DELETE, f"deleted StatefulSet {name}"))

    def _status_patch(self, status: Dict[str, Any]) -> Dict[str, Any]:
        """Only the status fields that differ from what is stored."""
        if self.conditions.changed:
            status["conditions"] = self.conditions.as_list()
        return {
            key: value for key, value in status.items() if self.status.get(key) != value
        }

    async def reconcile(self) -> ReconcileResult:
        """Run one reconciliation pass."""
        self.validate()
        errors: Dict[Any, BaseException] = {}
        await self.apply_all(self.prepare_cluster_resources(), errors)
        await self.prepare(errors)

        try:
            tracker, observe_error = await self.observe()
        except Exception as ex:
            logger.warning(f"Failed to observe replicas of {self.namespace}/{self.name}: {ex}")
            # without a view of the replicas no replica may be written
            self.conditions.set(
                RECONCILE_SUCCEEDED, FALSE, RECONCILE_STEP_FAILED, str(ex), self.generation
            )
            error = MultiError.combine(MultiError(errors) if errors else None, ex)
            return ReconcileResult(self._status_patch({}), False, error, self.events)
        if observe_error is not None:
            errors.update(observe_error.errors)

        config_revision = self.configuration_revision()
        statefulset_revision = self.statefulset_revision()
        replica_ids = self.target_replica_ids(tracker, config_revision, statefulset_revision)

        # topology-only changes reach running replicas without a restart
        for replica_id in replica_ids:
            state = tracker.get(replica_id)
            if state.exists and not state.config_changed(config_revision):
                await self.apply_all([self.prepare_config_map(replica_id, replica_ids)], errors)

        async def apply_replica(replica_id, restarted_at):
            return await self.apply_replica(
                replica_id, replica_ids, config_revision, statefulset_revision, restarted_at
            )

        sequencer = RolloutSequencer(self.rollout_policy(replica_ids), apply_replica, self.sensor, self.name)
        rollout = await sequencer.run(replica_ids, tracker, config_revision, statefulset_revision)
        if rollout.error is not None:
            for replica_id, ex in rollout.error:
                if isinstance(ex, ApplyError):
                    self._record_apply_error(errors, ex)
                else:
                    errors[str(replica_id)] = ex

        extra = [rid for rid in tracker.ids() if rid not in replica_ids and tracker.get(rid).exists]
        if extra and self.may_remove(rollout):
            await self.remove_replicas(extra, errors)

        status: Dict[str, Any] = {}
        post_error = await self.after_rollout(tracker, rollout, status)
        if post_error is not None:
            errors["post-rollout"] = post_error

        error = MultiError(errors) if errors else None
        ready = ConditionAggregator(self.conditions, self.generation).aggregate(
            tracker,
            rollout,
            self.desired_replicas,
            error=error,
            health=self.health_verdict(tracker, replica_ids),
            ready_reason=self.ready_reason(tracker, replica_ids),
            not_ready_reason=self.not_ready_reason(tracker, replica_ids),
        )

        update_revision = compute_hash(f"{config_revision}/{statefulset_revision}")
        status.update(
            observedGeneration=self.generation,
            configurationRevision=config_revision,
            statefulSetRevision=statefulset_revision,
            readyReplicas=sum(
                1 for rid in replica_ids if tracker.get(rid).is_ready()
            ),
            updateRevision=update_revision,
        )
        if ready:
            status["currentRevision"] = update_revision
        logger.debug(f"{self.KIND} {self.namespace}/{self.name}: {rollout}")
        return ReconcileResult(self._status_patch(status), ready, error, self.events)

    # kind-specific hooks

    @property
    def desired_replicas(self) -> int:
        raise NotImplementedError()

    def replica_labels(self, replica_id: ReplicaID) -> Labels:
        raise NotImplementedError()

    def replica_id_from_labels(self, labels: Mapping[str, str]) -> Optional[ReplicaID]:
        raise NotImplementedError()

    def reference_replica_id(self) -> ReplicaID:
        raise NotImplementedError()

    def prepare_base_config(self) -> Dict[str, Dict[str, Any]]:
        """Topology-free configuration documents keyed by configmap key."""
        raise NotImplementedError()

    def prepare_topology_config(self, replica_id: ReplicaID, members: List[ReplicaID]) -> Dict[str, Any]:
        return {}

    def prepare_container_ports(self) -> List[V1ContainerPort]:
        raise NotImplementedError()

    def prepare_service_ports(self) -> List[V1ServicePort]:
        raise NotImplementedError()

    def prepare_env(self, replica_id: ReplicaID) -> List[V1EnvVar]:
        return []

    def prepare_readiness_probe(self) -> Optional[V1Probe]:
        return None

    def prepare_cluster_resources(self) -> List[ManagedResource]:
        return [self.prepare_headless_service(), self.prepare_client_service()]

    async def prepare(self, errors: Dict[Any, BaseException]) -> None:
        """Load what the templates need beyond the spec."""

    async def probe_replica(self, replica_id: ReplicaID) -> Tuple[Optional[str], bool]:
        """(server mode, healthy) reported by a running replica."""
        raise NotImplementedError()

    def rollout_policy(self, replica_ids: List[ReplicaID]) -> RolloutPolicy:
        return RolloutPolicy()

    def target_replica_ids(
        self, tracker: ReplicaStateTracker, config_revision: str, statefulset_revision: str
    ) -> List[ReplicaID]:
        raise NotImplementedError()

    def may_remove(self, rollout: RolloutResult) -> bool:
        return rollout.converged

    async def after_rollout(
        self, tracker: ReplicaStateTracker, rollout: RolloutResult, status: Dict[str, Any]
    ) -> Optional[BaseException]:
        return None

    def health_verdict(self, tracker: ReplicaStateTracker, replica_ids: List[ReplicaID]) -> Optional[HealthVerdict]:
        return None

    def ready_reason(self, tracker: ReplicaStateTracker, replica_ids: List[ReplicaID]) -> str:
        return REPLICAS_READY

    def not_ready_reason(self, tracker: ReplicaStateTracker, replica_ids: List[ReplicaID]) -> str:
        return REPLICAS_NOT_READY
