import base64
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple
from kubernetes_asyncio.client import (
    V1ContainerPort,
    V1Probe,
    V1ServicePort,
    V1TCPSocketAction,
)
from chop.common.models.labels import Labels
from chop.resources.base import CONFIG_FILE, BaseCluster
from chop.resources.conditions import (
    CLUSTER_READY,
    INCONSISTENT_STATE,
    NO_LEADER,
    NOT_ENOUGH_FOLLOWERS,
    STANDALONE_READY,
    HealthVerdict,
)
from chop.resources.managed import ManagedResource
from chop.resources.replica import KeeperReplicaID, ReplicaStateTracker
from chop.resources.rollout import QuorumPolicy, RolloutStage, evaluate_stage
from chop.types.models.keepercluster_spec import KeeperClusterSpec
from chop.web.keeper import FOLLOWER, HEALTHY_MODES, LEADER, STANDALONE, KeeperStatusClient

logger = logging.getLogger(__name__)

CA_KEY = "ca.crt"


class KeeperCluster(BaseCluster):
    """Quorum-based keeper ensemble."""

    KIND = "KeeperCluster"
    PLURAL = "keeperclusters"
    ROLE = "keeper"
    LABEL_ROLE = Labels.KEEPER_ROLE
    CONTAINER_NAME = "clickhouse-keeper"

    CLIENT_PORT = 9181
    CLIENT_TLS_PORT = 9281
    RAFT_PORT = 9234
    PROMETHEUS_PORT = 9363

    DATA_PATH = "/var/lib/clickhouse-keeper"
    TLS_PATH = "/etc/clickhouse-keeper/tls"
    CONFIG_MOUNTS = (("config", CONFIG_FILE, "/etc/clickhouse-keeper/keeper_config.d"),)

    spec: KeeperClusterSpec

    def __init__(self, *args, status_client: KeeperStatusClient = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.status_client = status_client or KeeperStatusClient(
            timeout=self.conf.status_request_timeout_seconds,
            use_tls=self.spec.tls.required,
        )

    @property
    def image(self) -> str:
        return self.spec.image or self.conf.default_keeper_image

    @property
    def desired_replicas(self) -> int:
        return self.spec.replicas

    @property
    def client_port(self) -> int:
        """Port the operator and ClickHouse talk to."""
        return self.CLIENT_TLS_PORT if self.spec.tls.required else self.CLIENT_PORT

    @property
    def client_secure(self) -> bool:
        return self.spec.tls.required

    def replica_labels(self, replica_id: KeeperReplicaID) -> Labels:
        return self.labels.include_keeper_replica_id(replica_id.index)

    def replica_id_from_labels(self, labels: Mapping[str, str]) -> Optional[KeeperReplicaID]:
        value = labels.get(Labels.KEEPER_REPLICA_ID_LABEL)
        if value is None or not value.isdigit():
            return None
        return KeeperReplicaID(int(value))

    def reference_replica_id(self) -> KeeperReplicaID:
        return KeeperReplicaID(0)

    def prepare_base_config(self) -> Dict[str, Dict[str, Any]]:
        settings = self.spec.settings
        tls = self.spec.tls
        keeper_server = {
            "storage_path": self.DATA_PATH,
            "log_storage_path": f"{self.DATA_PATH}/coordination/log",
            "snapshot_storage_path": f"{self.DATA_PATH}/coordination/snapshots",
            "four_letter_word_white_list": "*",
            "coordination_settings": {
                "operation_timeout_ms": 10000,
                "session_timeout_ms": 30000,
                "raft_logs_level": settings.logger.level,
            },
        }
        if not tls.required:
            keeper_server["tcp_port"] = self.CLIENT_PORT
        if tls.enabled:
            keeper_server["tcp_port_secure"] = self.CLIENT_TLS_PORT
            keeper_server["raft_configuration"] = {"secure": True}

        config = {
            "listen_host": "0.0.0.0",
            "path": self.DATA_PATH,
            "logger": {"level": settings.logger.level, "console": settings.logger.console},
            "keeper_server": keeper_server,
            "prometheus": {
                "endpoint": "/metrics",
                "port": self.PROMETHEUS_PORT,
                "metrics": True,
                "events": True,
                "asynchronous_metrics": True,
            },
        }
        if tls.enabled:
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
        return {CONFIG_FILE: config}

    def prepare_topology_config(self, replica_id: KeeperReplicaID, members: List[KeeperReplicaID]) -> Dict[str, Any]:
        # raft ids start at 1
        return {
            "keeper_server": {
                "server_id": replica_id.index + 1,
                "raft_configuration": {
                    "server": [
                        {
                            "id": member.index + 1,
                            "hostname": self.hostname_by_id(member),
                            "port": self.RAFT_PORT,
                        }
                        for member in sorted(members)
                    ]
                },
            }
        }

    def prepare_container_ports(self) -> List[V1ContainerPort]:
        ports = [
            V1ContainerPort(name="raft", container_port=self.RAFT_PORT),
            V1ContainerPort(name="prometheus", container_port=self.PROMETHEUS_PORT),
        ]
        if not self.spec.tls.required:
            ports.append(V1ContainerPort(name="client", container_port=self.CLIENT_PORT))
        if self.spec.tls.enabled:
            ports.append(V1ContainerPort(name="client-tls", container_port=self.CLIENT_TLS_PORT))
        return ports

    def prepare_service_ports(self) -> List[V1ServicePort]:
        return [
            V1ServicePort(name=port.name, port=port.container_port, target_port=port.container_port)
            for port in self.prepare_container_ports()
        ]

    def prepare_readiness_probe(self) -> V1Probe:
        return V1Probe(
            tcp_socket=V1TCPSocketAction(port=self.client_port),
            initial_delay_seconds=5,
            period_seconds=5,
            failure_threshold=6,
        )

    def prepare_pod_disruption_budget(self) -> ManagedResource:
        overrides = self.pod_disruption_overrides()
        if overrides is not None:
            min_available, max_unavailable = overrides
        else:
            min_available, max_unavailable = None, self.spec.replicas // 2
        return self._prepare_pod_disruption_budget(
            self.component_name,
            self.labels.selector(),
            min_available=min_available,
            max_unavailable=max_unavailable,
        )

    def prepare_cluster_resources(self) -> List[ManagedResource]:
        return super().prepare_cluster_resources() + [self.prepare_pod_disruption_budget()]

    async def load_ca_bundle(self) -> Optional[str]:
        name = self.spec.tls.server_cert_secret.name
        secret = await self.store.get("Secret", self.namespace, name)
        if secret is None or not secret.data or CA_KEY not in secret.data:
            logger.warning(f"Secret {name} has no {CA_KEY}, trusting system roots for keeper status")
            return None
        return base64.b64decode(secret.data[CA_KEY]).decode()

    async def prepare(self, errors: Dict[Any, BaseException]) -> None:
        if not self.spec.tls.required or self.status_client.ca_data is not None:
            return
        try:
            self.status_client.ca_data = await self.load_ca_bundle()
        except Exception as ex:
            errors[f"Secret/{self.spec.tls.server_cert_secret.name}"] = ex

    async def probe_replica(self, replica_id: KeeperReplicaID) -> Tuple[Optional[str], bool]:
        mode = await self.status_client.server_mode(
            self.hostname_by_id(replica_id),
            self.client_port,
            timeout=self.conf.status_request_timeout_seconds,
        )
        return mode, mode in HEALTHY_MODES

    def rollout_policy(self, replica_ids: List[KeeperReplicaID]) -> QuorumPolicy:
        # majority of the members rolled this pass, not of the desired size
        return QuorumPolicy(len(replica_ids))

    def target_replica_ids(
        self, tracker: ReplicaStateTracker, config_revision: str, statefulset_revision: str
    ) -> List[KeeperReplicaID]:
        """Members for this pass.

        A new ensemble starts with all its members. Afterwards membership
        moves by one replica per pass, and only while every member is up to
        date: the next free index joins, or the highest index leaves.
        """
        existing = [rid for rid, state in tracker.items() if state.exists]
        desired = self.spec.replicas
        if not existing:
            return [KeeperReplicaID(index) for index in range(desired)]
        if len(existing) == desired:
            return existing

        settled = all(
            evaluate_stage(tracker.get(rid), config_revision, statefulset_revision)
            is RolloutStage.UP_TO_DATE
            for rid in existing
        )
        if not settled:
            logger.info(
                f"Keeper {self.namespace}/{self.name} has {len(existing)} of {desired} "
                "members, waiting for all members to be up to date before scaling"
            )
            return existing

        if len(existing) < desired:
            taken = {rid.index for rid in existing}
            index = next(i for i in range(desired + len(existing)) if i not in taken)
            logger.info(f"Adding keeper replica {index} to {self.namespace}/{self.name}")
            return sorted(existing + [KeeperReplicaID(index)])
        logger.info(f"Removing keeper replica {existing[-1]} from {self.namespace}/{self.name}")
        return existing[:-1]

    def may_remove(self, rollout) -> bool:
        # members leave one at a time through target_replica_ids
        return True

    def health_verdict(self, tracker: ReplicaStateTracker, replica_ids: List[KeeperReplicaID]) -> HealthVerdict:
        modes = [tracker.get(rid).mode for rid in replica_ids if tracker.get(rid).exists]
        leaders = modes.count(LEADER)
        followers = modes.count(FOLLOWER)
        if len(replica_ids) == 1:
            if STANDALONE in modes or leaders == 1:
                return True, STANDALONE_READY, ""
            return False, NO_LEADER, "Keeper is not serving requests"
        if leaders == 0:
            return False, NO_LEADER, "No keeper member reports leader mode"
        if leaders > 1:
            return False, INCONSISTENT_STATE, f"{leaders} keeper members report leader mode"
        if followers < len(replica_ids) - 1:
            return False, NOT_ENOUGH_FOLLOWERS, (
                f"{followers} of {len(replica_ids) - 1} expected followers"
            )
        return True, CLUSTER_READY, ""

    def ready_reason(self, tracker, replica_ids) -> str:
        return STANDALONE_READY if self.spec.replicas == 1 else CLUSTER_READY
