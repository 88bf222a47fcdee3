from typing import Any, Dict, Optional
from chop.types.base import BaseModel
from chop.types.models.common import (
    StorageSpec,
    TlsSpec,
    ServerSettings,
    PodDisruptionBudgetSpec,
)


class KeeperClusterSpec(BaseModel):
    """KeeperCluster CRD spec"""

    replicas: int
    image: Optional[str]
    image_pull_policy: Optional[str]
    resources: Optional[Dict[str, Any]]
    storage: StorageSpec
    tls: TlsSpec
    settings: ServerSettings
    pod_disruption_budget: Optional[PodDisruptionBudgetSpec]
    cluster_domain: Optional[str]
    labels: Dict[str, str]
    annotations: Dict[str, str]
