"""Unit tests for spec schemas, settings and labels."""

import pytest
from marshmallow import ValidationError
from chop.common.models.labels import Labels
from chop.types.schemas import ClickHouseClusterSpecSchema, KeeperClusterSpecSchema
from chop.types.settings import Settings


class TestKeeperClusterSpecSchema:
    """Tests for KeeperClusterSpecSchema."""

    def test_defaults(self):
        spec = KeeperClusterSpecSchema().load({})

        assert spec.replicas == 1
        assert spec.image is None
        assert spec.storage.size == "10Gi"
        assert spec.storage.access_modes == ["ReadWriteOnce"]
        assert spec.tls.enabled is False
        assert spec.tls.server_cert_secret is None
        assert spec.settings.logger.level == "information"
        assert spec.settings.extra_config == {}
        assert spec.pod_disruption_budget is None
        assert spec.labels == {}

    def test_camel_case_fields(self):
        spec = KeeperClusterSpecSchema().load(
            {
                "replicas": 3,
                "imagePullPolicy": "IfNotPresent",
                "storage": {"size": "1Gi", "storageClass": "fast"},
                "tls": {"enabled": True, "serverCertSecret": {"name": "cert"}},
                "clusterDomain": "k8s.example.com",
            }
        )

        assert spec.replicas == 3
        assert spec.image_pull_policy == "IfNotPresent"
        assert spec.storage.storage_class == "fast"
        assert spec.tls.server_cert_secret.name == "cert"
        assert spec.cluster_domain == "k8s.example.com"

    def test_replicas_must_be_positive(self):
        with pytest.raises(ValidationError):
            KeeperClusterSpecSchema().load({"replicas": 0})

    @pytest.mark.parametrize("value", [1, "25%"])
    def test_budget_accepts_int_or_string(self, value):
        spec = KeeperClusterSpecSchema().load({"podDisruptionBudget": {"maxUnavailable": value}})

        assert spec.pod_disruption_budget.max_unavailable == value

    def test_budget_rejects_bool(self):
        with pytest.raises(ValidationError):
            KeeperClusterSpecSchema().load({"podDisruptionBudget": {"minAvailable": True}})


class TestClickHouseClusterSpecSchema:
    """Tests for ClickHouseClusterSpecSchema."""

    def test_keeper_reference_is_required(self):
        with pytest.raises(ValidationError):
            ClickHouseClusterSpecSchema().load({})

    def test_shards(self):
        spec = ClickHouseClusterSpecSchema().load(
            {"shards": 3, "replicas": 2, "keeperClusterRef": {"name": "keeper"}}
        )

        assert spec.shards == 3
        assert spec.keeper_cluster_ref.name == "keeper"

    def test_shards_must_be_positive(self):
        with pytest.raises(ValidationError):
            ClickHouseClusterSpecSchema().load({"shards": 0, "keeperClusterRef": {"name": "k"}})


class TestSettings:
    """Tests for Settings."""

    def test_overrides(self):
        conf = Settings(command_timeout_seconds=3, default_cluster_domain=None)

        assert conf.command_timeout_seconds == 3
        assert conf.default_cluster_domain == Settings.default_cluster_domain

    def test_unknown_setting(self):
        with pytest.raises(TypeError):
            Settings(no_such_setting=1)


class TestLabels:
    """Tests for Labels."""

    def test_selector_keeps_identity_labels(self):
        labels = Labels.generate_default_labels(
            app="test-keeper",
            cluster_name="test",
            role=Labels.KEEPER_ROLE,
            managed_by="clickhouse-operator",
            extra={"team": "data"},
        )

        assert labels.selector().as_dict() == {
            "app": "test-keeper",
            "app.kubernetes.io/instance": "test",
            "clickhouse.com/role": "clickhouse-keeper",
        }
        assert labels.contains(labels.selector())

    def test_include_does_not_leak_into_copies(self):
        labels = Labels({"app": "a"})
        other = labels.copy().include_shard_id(1)

        assert labels.as_dict() == {"app": "a"}
        assert other.as_dict() == {"app": "a", "clickhouse.com/shard-id": "1"}
