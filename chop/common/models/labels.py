from typing import Dict


class ResourceLabels:
    CLICKHOUSE_DOMAIN: str = "clickhouse.com/"

    ROLE_LABEL = CLICKHOUSE_DOMAIN + "role"

    KEEPER_REPLICA_ID_LABEL = CLICKHOUSE_DOMAIN + "keeper-replica-id"

    SHARD_ID_LABEL = CLICKHOUSE_DOMAIN + "shard-id"

    REPLICA_ID_LABEL = CLICKHOUSE_DOMAIN + "replica-id"


class Labels(ResourceLabels):
    APP_LABEL = "app"

    KUBERNETES_DOMAIN = "app.kubernetes.io/"

    KUBERNETES_NAME_LABEL = KUBERNETES_DOMAIN + "name"

    KUBERNETES_INSTANCE_LABEL = KUBERNETES_DOMAIN + "instance"

    KUBERNETES_MANAGED_BY_LABEL = KUBERNETES_DOMAIN + "managed-by"

    KEEPER_ROLE = "clickhouse-keeper"

    CLICKHOUSE_ROLE = "clickhouse-server"

    _labels: Dict[str, str]

    def __init__(self, labels: Dict[str, str] = None) -> None:
        self._labels = dict(labels) if labels else dict()

    def update(self, labels: Dict[str, str]) -> "Labels":
        self._labels.update(labels.copy())
        return self

    def as_dict(self) -> Dict[str, str]:
        """Return labels as dictionary."""
        return self._labels.copy()

    def as_str(self):
        """Return labels as a comma separated selector string."""
        return ",".join([f"{k}={v}" for k, v in self._labels.items()])

    def include(self, label: str, value) -> "Labels":
        self.update({label: str(value)})
        return self

    def include_app(self, app: str) -> "Labels":
        return self.include(self.APP_LABEL, app)

    def include_role(self, role: str) -> "Labels":
        return self.include(self.ROLE_LABEL, role)

    def include_kubernetes_name(self, name: str) -> "Labels":
        return self.include(self.KUBERNETES_NAME_LABEL, name)

    def include_kubernetes_instance(self, instance_name: str) -> "Labels":
        return self.include(self.KUBERNETES_INSTANCE_LABEL, instance_name)

    def include_kubernetes_managed_by(self, operator_name: str) -> "Labels":
        return self.include(self.KUBERNETES_MANAGED_BY_LABEL, operator_name)

    def include_keeper_replica_id(self, replica_id: int) -> "Labels":
        return self.include(self.KEEPER_REPLICA_ID_LABEL, replica_id)

    def include_shard_id(self, shard_id: int) -> "Labels":
        return self.include(self.SHARD_ID_LABEL, shard_id)

    def include_replica_id(self, replica_id: int) -> "Labels":
        return self.include(self.REPLICA_ID_LABEL, replica_id)

    def contains(self, other: "Labels"):
        """Returns True if all labels in `other` are contained."""
        return all(
            key in self._labels and self._labels[key] == value
            for key, value in other.as_dict().items()
        )

    def selector(self) -> "Labels":
        """Labels that select every replica of one cluster and role."""
        return Labels(
            {
                key: self._labels[key]
                for key in (self.APP_LABEL, self.KUBERNETES_INSTANCE_LABEL, self.ROLE_LABEL)
                if key in self._labels
            }
        )

    def copy(self) -> "Labels":
        return Labels(self._labels)

    def __str__(self):
        return f"Labels<{self._labels}>"

    @classmethod
    def generate_default_labels(
        cls,
        app: str,
        cluster_name: str,
        role: str,
        managed_by: str,
        extra: Dict[str, str] = None,
    ) -> "Labels":
        labels = Labels(extra)
        return (
            labels.include_app(app)
            .include_role(role)
            .include_kubernetes_name(role)
            .include_kubernetes_instance(cluster_name)
            .include_kubernetes_managed_by(managed_by)
        )
