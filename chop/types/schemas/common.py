from marshmallow import fields, validate
from chop.types.base import BaseSchema
from chop.types.models.common import (
    StorageSpec,
    SecretRef,
    TlsSpec,
    LoggerSettings,
    ServerSettings,
    PodDisruptionBudgetSpec,
    ClusterRef,
)


class IntOrString(fields.Field):
    """Kubernetes IntOrString value, e.g. `1` or `"50%"`."""

    def _deserialize(self, value, attr, data, **kwargs):
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise self.make_error("invalid")
        return value

    default_error_messages = {"invalid": "Must be an integer or a string."}


class StorageSchema(BaseSchema):
    __model__ = StorageSpec

    size = fields.Str(data_key="size", load_default="10Gi")
    storage_class = fields.Str(
        data_key="storageClass", allow_none=True, load_default=None
    )
    access_modes = fields.List(
        fields.Str(), data_key="accessModes", load_default=lambda: ["ReadWriteOnce"]
    )


class SecretRefSchema(BaseSchema):
    __model__ = SecretRef

    name = fields.Str(data_key="name", required=True)


class TlsSchema(BaseSchema):
    __model__ = TlsSpec

    enabled = fields.Bool(data_key="enabled", load_default=False)
    required = fields.Bool(data_key="required", load_default=False)
    server_cert_secret = fields.Nested(
        SecretRefSchema(), data_key="serverCertSecret", allow_none=True, load_default=None
    )


class LoggerSettingsSchema(BaseSchema):
    __model__ = LoggerSettings

    level = fields.Str(data_key="level", load_default="information")
    console = fields.Bool(data_key="console", load_default=True)


class ServerSettingsSchema(BaseSchema):
    __model__ = ServerSettings

    logger = fields.Nested(
        LoggerSettingsSchema(),
        data_key="logger",
        load_default=lambda: LoggerSettingsSchema().load({}),
    )
    extra_config = fields.Dict(data_key="extraConfig", load_default=dict)


class PodDisruptionBudgetSchema(BaseSchema):
    __model__ = PodDisruptionBudgetSpec

    min_available = IntOrString(
        data_key="minAvailable", allow_none=True, load_default=None
    )
    max_unavailable = IntOrString(
        data_key="maxUnavailable", allow_none=True, load_default=None
    )


class ClusterRefSchema(BaseSchema):
    __model__ = ClusterRef

    name = fields.Str(data_key="name", required=True)


class ClusterSpecSchema(BaseSchema):
    """Fields shared by both cluster kinds."""

    replicas = fields.Int(
        data_key="replicas", load_default=1, validate=validate.Range(min=1)
    )
    image = fields.Str(data_key="image", allow_none=True, load_default=None)
    image_pull_policy = fields.Str(
        data_key="imagePullPolicy", allow_none=True, load_default=None
    )
    resources = fields.Dict(data_key="resources", allow_none=True, load_default=None)
    storage = fields.Nested(
        StorageSchema(),
        data_key="storage",
        load_default=lambda: StorageSchema().load({}),
    )
    tls = fields.Nested(
        TlsSchema(), data_key="tls", load_default=lambda: TlsSchema().load({})
    )
    settings = fields.Nested(
        ServerSettingsSchema(),
        data_key="settings",
        load_default=lambda: ServerSettingsSchema().load({}),
    )
    pod_disruption_budget = fields.Nested(
        PodDisruptionBudgetSchema(),
        data_key="podDisruptionBudget",
        allow_none=True,
        load_default=None,
    )
    cluster_domain = fields.Str(
        data_key="clusterDomain", allow_none=True, load_default=None
    )
    labels = fields.Dict(
        keys=fields.Str(), values=fields.Str(), data_key="labels", load_default=dict
    )
    annotations = fields.Dict(
        keys=fields.Str(), values=fields.Str(), data_key="annotations", load_default=dict
    )
