from typing import Any, Dict, List, Optional, Union
from chop.types.base import BaseModel


class StorageSpec(BaseModel):
    """Volume claim template of the data volume"""

    size: str
    storage_class: Optional[str]
    access_modes: List[str]


class SecretRef(BaseModel):
    name: str


class TlsSpec(BaseModel):
    """TLS toggle and the secret holding the server certificate"""

    enabled: bool
    required: bool
    server_cert_secret: Optional[SecretRef]


class LoggerSettings(BaseModel):
    level: str
    console: bool


class ServerSettings(BaseModel):
    """Server settings rendered into the generated configuration"""

    logger: LoggerSettings
    extra_config: Dict[str, Any]


class PodDisruptionBudgetSpec(BaseModel):
    min_available: Optional[Union[int, str]]
    max_unavailable: Optional[Union[int, str]]


class ClusterRef(BaseModel):
    name: str
