"""ClickHouse cluster: shards of independently rolled replicas.

Each shard has its own pod disruption budget and rolls one replica at a
time. Replicas find each other through cluster discovery in keeper, so the
only topology in the rendered configuration is the replica's own macros and
the keeper node list of the referenced `KeeperCluster`.

Replicas that join an existing cluster get the replicated databases of an
already synced replica before they are recorded in `status.syncedReplicas`.
"""
import base64
import logging
import secrets
from typing import Any, Dict, List, Mapping, Optional, Tuple
from kubernetes_asyncio.client import (
    V1ContainerPort,
    V1EnvVar,
    V1EnvVarSource,
    V1HTTPGetAction,
    V1ObjectMeta,
    V1Probe,
    V1Secret,
    V1SecretKeySelector,
    V1ServicePort,
)
from chop.common.models.labels import Labels
from chop.resources.base import CONFIG_FILE, BaseCluster, replica_hostname
from chop.resources.conditions import ALL_SHARDS_READY, SOME_SHARDS_NOT_READY
from chop.resources.managed import ManagedResource, ManagedSecret
from chop.resources.replica import ClickHouseReplicaID, ReplicaStateTracker
from chop.resources.rollout import RolloutResult, RolloutStage, ShardPolicy
from chop.types.models.clickhousecluster_spec import ClickHouseClusterSpec
from chop.utils.parallel import MultiError, execute_parallel
from chop.web.commander import Commander

logger = logging.getLogger(__name__)

USERS_FILE = "users.yaml"
PASSWORD_KEY = "management-password"
PASSWORD_ENV = "CLICKHOUSE_OPERATOR_PASSWORD"
DISCOVERY_CLUSTER = "default"


class KeeperNode:
    """Coordination endpoint of one member of the referenced keeper ensemble."""

    def __init__(self, host: str, port: int, secure: bool = False):
        self.host = host
        self.port = port
        self.secure = secure

    def as_dict(self) -> Dict[str, Any]:
        node = {"host": self.host, "port": self.port}
        if self.secure:
            node["secure"] = 1
        return node


class ClickHouseCluster(BaseCluster):
    KIND = "ClickHouseCluster"
    PLURAL = "clickhouseclusters"
    ROLE = "clickhouse"
    LABEL_ROLE = Labels.CLICKHOUSE_ROLE
    CONTAINER_NAME = "clickhouse-server"

    NATIVE_PORT = 9000
    NATIVE_TLS_PORT = 9440
    HTTP_PORT = 8123
    HTTP_TLS_PORT = 8443
    INTERSERVER_PORT = 9009
    PROMETHEUS_PORT = 9363
    MANAGEMENT_PORT = 9001

    KEEPER_ROLE = "keeper"
    KEEPER_CLIENT_PORT = 9181
    KEEPER_CLIENT_TLS_PORT = 9281

    DATA_PATH = "/var/lib/clickhouse"
    TLS_PATH = "/etc/clickhouse-server/tls"
    CONFIG_MOUNTS = (
        ("config", CONFIG_FILE, "/etc/clickhouse-server/config.d"),
        ("users", USERS_FILE, "/etc/clickhouse-server/users.d"),
    )

    spec: ClickHouseClusterSpec

    def __init__(self, *args, commander: Commander = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.commander = commander
        self.keeper_nodes: List[KeeperNode] = []

    @property
    def image(self) -> str:
        return self.spec.image or self.conf.default_clickhouse_image

    @property
    def desired_replicas(self) -> int:
        return self.spec.shards * self.spec.replicas

    @property
    def credentials_secret_name(self) -> str:
        return f"{self.component_name}-credentials"

    def replica_ids(self) -> List[ClickHouseReplicaID]:
        return [
            ClickHouseReplicaID(shard, index)
            for shard in range(self.spec.shards)
            for index in range(self.spec.replicas)
        ]

    def replica_labels(self, replica_id: ClickHouseReplicaID) -> Labels:
        return self.labels.include_shard_id(replica_id.shard_id).include_replica_id(
            replica_id.index
        )

    def replica_id_from_labels(self, labels: Mapping[str, str]) -> Optional[ClickHouseReplicaID]:
        shard = labels.get(Labels.SHARD_ID_LABEL)
        index = labels.get(Labels.REPLICA_ID_LABEL)
        if shard is None or index is None or not (shard.isdigit() and index.isdigit()):
            return None
        return ClickHouseReplicaID(int(shard), int(index))

    def reference_replica_id(self) -> ClickHouseReplicaID:
        return ClickHouseReplicaID(0, 0)

    def keeper_path(self, *parts: str) -> str:
        return "/".join(("/clickhouse", self.name) + parts)

    def prepare_base_config(self) -> Dict[str, Dict[str, Any]]:
        settings = self.spec.settings
        tls = self.spec.tls
        config = {
            "path": f"{self.DATA_PATH}/",
            "listen_host": "0.0.0.0",
            "logger": {"level": settings.logger.level, "console": settings.logger.console},
            "interserver_http_port": self.INTERSERVER_PORT,
            "protocols": {
                "management": {
                    "type": "http",
                    "port": self.MANAGEMENT_PORT,
                    "description": "operator management",
                }
            },
            "distributed_ddl": {"path": self.keeper_path("task_queue", "ddl")},
            "user_defined_zookeeper_path": self.keeper_path("user_defined"),
            "allow_experimental_cluster_discovery": True,
            "prometheus": {
                "endpoint": "/metrics",
                "port": self.PROMETHEUS_PORT,
                "metrics": True,
                "events": True,
                "asynchronous_metrics": True,
            },
        }
        if not tls.required:
            config["http_port"] = self.HTTP_PORT
            config["tcp_port"] = self.NATIVE_PORT
        if tls.enabled:
            config["https_port"] = self.HTTP_TLS_PORT
            config["tcp_port_secure"] = self.NATIVE_TLS_PORT
            config["openSSL"] = {
                "server": {
                    "certificateFile": f"{self.TLS_PATH}/tls.crt",
                    "privateKeyFile": f"{self.TLS_PATH}/tls.key",
                    "caConfig": f"{self.TLS_PATH}/ca.crt",
                    "verificationMode": "relaxed",
                },
                "client": {
                    "caConfig": f"{self.TLS_PATH}/ca.crt",
                    "verificationMode": "relaxed",
                },
            }

        users = {
            "users": {
                self.conf.management_username: {
                    "password": {"@from_env": PASSWORD_ENV},
                    "profile": "default",
                    "quota": "default",
                    "networks": {"ip": "::/0"},
                    "grants": [{"query": "GRANT ALL ON *.* WITH GRANT OPTION"}],
                }
            }
        }
        return {CONFIG_FILE: config, USERS_FILE: users}

    def prepare_topology_config(
        self, replica_id: ClickHouseReplicaID, members: List[ClickHouseReplicaID]
    ) -> Dict[str, Any]:
        config = {
            "macros": {
                "cluster": DISCOVERY_CLUSTER,
                "shard": str(replica_id.shard_id),
                "replica": self.hostname_by_id(replica_id),
            },
            "remote_servers": {
                DISCOVERY_CLUSTER: {
                    "discovery": {
                        "path": self.keeper_path("discovery", DISCOVERY_CLUSTER),
                        "shard": replica_id.shard_id,
                    }
                }
            },
        }
        if self.keeper_nodes:
            config["zookeeper"] = {"node": [node.as_dict() for node in self.keeper_nodes]}
            if not self.spec.tls.enabled and any(node.secure for node in self.keeper_nodes):
                config["openSSL"] = {"client": {"verificationMode": "none"}}
        return config

    def prepare_container_ports(self) -> List[V1ContainerPort]:
        ports = [
            V1ContainerPort(name="interserver", container_port=self.INTERSERVER_PORT),
            V1ContainerPort(name="prometheus", container_port=self.PROMETHEUS_PORT),
            V1ContainerPort(name="management", container_port=self.MANAGEMENT_PORT),
        ]
        if not self.spec.tls.required:
            ports.append(V1ContainerPort(name="http", container_port=self.HTTP_PORT))
            ports.append(V1ContainerPort(name="native", container_port=self.NATIVE_PORT))
        if self.spec.tls.enabled:
            ports.append(V1ContainerPort(name="https", container_port=self.HTTP_TLS_PORT))
            ports.append(V1ContainerPort(name="native-tls", container_port=self.NATIVE_TLS_PORT))
        return ports

    def prepare_service_ports(self) -> List[V1ServicePort]:
        return [
            V1ServicePort(name=port.name, port=port.container_port, target_port=port.container_port)
            for port in self.prepare_container_ports()
        ]

    def prepare_env(self, replica_id: ClickHouseReplicaID) -> List[V1EnvVar]:
        return [
            V1EnvVar(
                name=PASSWORD_ENV,
                value_from=V1EnvVarSource(
                    secret_key_ref=V1SecretKeySelector(
                        name=self.credentials_secret_name, key=PASSWORD_KEY
                    )
                ),
            )
        ]

    def prepare_readiness_probe(self) -> V1Probe:
        if self.spec.tls.required:
            action = V1HTTPGetAction(path="/ping", port=self.HTTP_TLS_PORT, scheme="HTTPS")
        else:
            action = V1HTTPGetAction(path="/ping", port=self.HTTP_PORT)
        return V1Probe(
            http_get=action, initial_delay_seconds=5, period_seconds=5, failure_threshold=6
        )

    def prepare_credentials_secret(self) -> ManagedSecret:
        password = secrets.token_urlsafe(24)
        return ManagedSecret(
            V1Secret(
                api_version="v1",
                kind="Secret",
                metadata=V1ObjectMeta(
                    name=self.credentials_secret_name,
                    namespace=self.namespace,
                    labels=self.labels.as_dict(),
                ),
                type="Opaque",
                data={PASSWORD_KEY: base64.b64encode(password.encode()).decode()},
            )
        )

    def prepare_pod_disruption_budget(self, shard_id: int) -> ManagedResource:
        """Budget of one shard; the cluster override wins over the defaults."""
        overrides = self.pod_disruption_overrides()
        if overrides is not None:
            min_available, max_unavailable = overrides
        elif self.spec.replicas > 1:
            min_available, max_unavailable = 1, None
        else:
            min_available, max_unavailable = None, 1
        return self._prepare_pod_disruption_budget(
            f"{self.component_name}-{shard_id}",
            self.labels.selector().include_shard_id(shard_id),
            min_available=min_available,
            max_unavailable=max_unavailable,
        )

    def prepare_cluster_resources(self) -> List[ManagedResource]:
        resources = super().prepare_cluster_resources()
        resources.append(self.prepare_credentials_secret())
        resources.extend(
            self.prepare_pod_disruption_budget(shard) for shard in range(self.spec.shards)
        )
        return resources

    async def load_keeper_nodes(self) -> List[KeeperNode]:
        """Members of the referenced keeper ensemble, read from its stateful sets."""
        keeper = self.spec.keeper_cluster_ref.name
        selector = Labels.generate_default_labels(
            app=f"{keeper}-{self.KEEPER_ROLE}",
            cluster_name=keeper,
            role=Labels.KEEPER_ROLE,
            managed_by=self.OPERATOR_NAME,
        ).selector()
        items = await self.store.list("StatefulSet", self.namespace, selector.as_dict())
        nodes = []
        for item in items:
            index = (item.metadata.labels or {}).get(Labels.KEEPER_REPLICA_ID_LABEL)
            if index is None:
                continue
            containers = item.spec.template.spec.containers if item.spec else []
            port_names = {port.name for c in containers for port in (c.ports or [])}
            secure = "client" not in port_names and "client-tls" in port_names
            nodes.append(
                KeeperNode(
                    replica_hostname(
                        keeper, self.KEEPER_ROLE, index, self.namespace, self.cluster_domain
                    ),
                    self.KEEPER_CLIENT_TLS_PORT if secure else self.KEEPER_CLIENT_PORT,
                    secure,
                )
            )
        return sorted(nodes, key=lambda node: node.host)

    async def load_password(self) -> Optional[str]:
        secret = await self.store.get("Secret", self.namespace, self.credentials_secret_name)
        if secret is None or not secret.data or PASSWORD_KEY not in secret.data:
            return None
        return base64.b64decode(secret.data[PASSWORD_KEY]).decode()

    async def open_commander(self) -> Commander:
        if self.commander is None:
            password = await self.load_password()
            if password is None:
                raise LookupError(f"Secret {self.credentials_secret_name} has no {PASSWORD_KEY}")
            self.commander = Commander(
                self.hostname_by_id,
                self.MANAGEMENT_PORT,
                self.conf.management_username,
                password,
                conf=self.conf,
            )
        return self.commander

    async def close(self) -> None:
        if self.commander is not None:
            await self.commander.close()

    async def prepare(self, errors: Dict[Any, BaseException]) -> None:
        keeper = self.spec.keeper_cluster_ref.name
        try:
            self.keeper_nodes = await self.load_keeper_nodes()
        except Exception as ex:
            errors[f"KeeperCluster/{keeper}"] = ex
            return
        if not self.keeper_nodes:
            errors[f"KeeperCluster/{keeper}"] = LookupError(
                f"KeeperCluster {keeper} has no replicas"
            )
        try:
            await self.open_commander()
        except Exception as ex:
            errors[f"Secret/{self.credentials_secret_name}"] = ex

    async def reconcile(self):
        try:
            return await super().reconcile()
        finally:
            await self.close()

    async def probe_replica(self, replica_id: ClickHouseReplicaID) -> Tuple[Optional[str], bool]:
        if self.commander is None:
            raise LookupError("management credentials are not available")
        await self.commander.ping(replica_id, timeout=self.conf.status_request_timeout_seconds)
        return None, True

    def rollout_policy(self, replica_ids) -> ShardPolicy:
        return ShardPolicy()

    def target_replica_ids(self, tracker, config_revision, statefulset_revision) -> List[ClickHouseReplicaID]:
        return self.replica_ids()

    async def sync_new_replicas(
        self, tracker: ReplicaStateTracker, rollout: RolloutResult
    ) -> Tuple[List[str], Optional[BaseException]]:
        """Copy databases onto replicas that became ready but were never synced.

        Returns the paths of all synced replicas and the sync error, if any.
        """
        desired = {rid.path() for rid in self.replica_ids()}
        synced = sorted(p for p in self.status.get("syncedReplicas") or [] if p in desired)
        ready = [
            rid for rid, stage in sorted(rollout.stages.items())
            if stage is RolloutStage.UP_TO_DATE
        ]
        pending = [rid for rid in ready if rid.path() not in synced]
        if not pending:
            return synced, None

        sources = [rid for rid in ready if rid.path() in synced]
        if not sources:
            if synced:
                # synced replicas exist but none is ready to copy from
                return synced, None
            # a new cluster has nothing to copy
            return sorted(synced + [rid.path() for rid in pending]), None

        commander = self.commander
        if commander is None:
            return synced, LookupError("management credentials are not available")
        timeout = self.conf.command_timeout_seconds
        try:
            databases = await commander.databases(sources[0], timeout)
        except Exception as ex:
            return synced, ex

        async def sync(replica_id: ClickHouseReplicaID) -> None:
            await commander.create_databases(replica_id, databases, timeout)
            await commander.sync_replica(replica_id, timeout)

        sensor_state = self.sensor.on_command_start(self.name, "sync_replica", len(pending))
        _, error = await execute_parallel(pending, sync)
        failed = error.errors if error is not None else {}
        self.sensor.on_command_complete(self.name, "sync_replica", sensor_state, len(failed))
        for replica_id in pending:
            if replica_id not in failed:
                logger.info(f"Synced databases of replica {replica_id} from {sources[0]}")
                synced.append(replica_id.path())
        return sorted(synced), error

    async def after_rollout(
        self, tracker: ReplicaStateTracker, rollout: RolloutResult, status: Dict[str, Any]
    ) -> Optional[BaseException]:
        synced, error = await self.sync_new_replicas(tracker, rollout)
        status["syncedReplicas"] = synced
        return error

    async def sync_all_shards(self) -> Optional[MultiError]:
        """Run `SYSTEM SYNC` on every replica of every shard."""
        try:
            commander = await self.open_commander()
            sensor_state = self.sensor.on_command_start(
                self.name, "sync_shard", self.desired_replicas
            )
            timeout = self.conf.command_timeout_seconds
            _, error = await execute_parallel(
                range(self.spec.shards),
                lambda shard: commander.sync_shard(shard, self.spec.replicas, timeout),
            )
            errors = {}
            for shard, err in error or []:
                if isinstance(err, MultiError):
                    errors.update(err.errors)
                else:
                    errors[f"shard {shard}"] = err
            self.sensor.on_command_complete(self.name, "sync_shard", sensor_state, len(errors))
            return MultiError(errors) if errors else None
        finally:
            await self.close()

    def ready_reason(self, tracker, replica_ids) -> str:
        return ALL_SHARDS_READY

    def not_ready_reason(self, tracker, replica_ids) -> str:
        return SOME_SHARDS_NOT_READY
