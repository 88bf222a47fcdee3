from .common import (
    StorageSchema,
    SecretRefSchema,
    TlsSchema,
    LoggerSettingsSchema,
    ServerSettingsSchema,
    PodDisruptionBudgetSchema,
    ClusterRefSchema,
)
from .keepercluster_spec import KeeperClusterSpecSchema
from .clickhousecluster_spec import ClickHouseClusterSpecSchema

__all__ = [
    "StorageSchema",
    "SecretRefSchema",
    "TlsSchema",
    "LoggerSettingsSchema",
    "ServerSettingsSchema",
    "PodDisruptionBudgetSchema",
    "ClusterRefSchema",
    "KeeperClusterSpecSchema",
    "ClickHouseClusterSpecSchema",
]
