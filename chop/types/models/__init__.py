from .common import (
    StorageSpec,
    SecretRef,
    TlsSpec,
    LoggerSettings,
    ServerSettings,
    PodDisruptionBudgetSpec,
    ClusterRef,
)
from .keepercluster_spec import KeeperClusterSpec
from .clickhousecluster_spec import ClickHouseClusterSpec

__all__ = [
    "StorageSpec",
    "SecretRef",
    "TlsSpec",
    "LoggerSettings",
    "ServerSettings",
    "PodDisruptionBudgetSpec",
    "ClusterRef",
    "KeeperClusterSpec",
    "ClickHouseClusterSpec",
]
