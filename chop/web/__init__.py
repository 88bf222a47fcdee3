from .client import ClickHouseClient
from .commander import Commander, ConnectionCache, DatabaseDescriptor
from .keeper import KeeperStatusClient

__all__ = [
    "ClickHouseClient",
    "Commander",
    "ConnectionCache",
    "DatabaseDescriptor",
    "KeeperStatusClient",
]
