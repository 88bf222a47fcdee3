import os
from typing import Any

_TRUE, _FALSE = {"True", "true", "yes", "1"}, {"False", "false", "no", "0"}


def _getenv(name: str, *default: Any) -> Any:
    try:
        v = os.environ[name]
        if v in _TRUE:
            return True
        elif v in _FALSE:
            return False
        else:
            return v
    except KeyError:
        pass
    if default:
        return default[0]
    raise KeyError(name)


# ------------------------------------------------
# ---- Defaults and environment variables ----
# ------------------------------------------------

#: Seconds before a pass that has not converged yet is retried
REQUEUE_ON_REFRESH_TIMEOUT_SECONDS = float(
    _getenv("REQUEUE_ON_REFRESH_TIMEOUT_SECONDS", 1.0)
)

#: Seconds before a failed pass is retried
REQUEUE_ON_ERROR_TIMEOUT_SECONDS = float(
    _getenv("REQUEUE_ON_ERROR_TIMEOUT_SECONDS", 5.0)
)

#: Deadline in seconds for observing a single replica (mntr, ping, pod read)
STATUS_REQUEST_TIMEOUT_SECONDS = float(
    _getenv("STATUS_REQUEST_TIMEOUT_SECONDS", 10.0)
)

#: Deadline in seconds for one administrative command against a replica
COMMAND_TIMEOUT_SECONDS = float(_getenv("COMMAND_TIMEOUT_SECONDS", 30.0))

#: Write attempts before a version conflict is surfaced as an error
CONFLICT_RETRY_ATTEMPTS = int(_getenv("CONFLICT_RETRY_ATTEMPTS", 5))

#: Initial backoff in seconds between conflict retries (doubles each attempt)
CONFLICT_RETRY_BACKOFF_SECONDS = float(
    _getenv("CONFLICT_RETRY_BACKOFF_SECONDS", 0.05)
)

#: Upper bound in seconds for the conflict retry backoff
CONFLICT_RETRY_MAX_BACKOFF_SECONDS = float(
    _getenv("CONFLICT_RETRY_MAX_BACKOFF_SECONDS", 1.0)
)

#: Interval in seconds of the periodic resync timer
RESYNC_INTERVAL_SECONDS = float(_getenv("RESYNC_INTERVAL_SECONDS", 30.0))

#: Image used for keeper replicas when the cluster does not set one
DEFAULT_KEEPER_IMAGE = _getenv(
    "DEFAULT_KEEPER_IMAGE", "clickhouse/clickhouse-keeper:latest"
)

#: Image used for ClickHouse replicas when the cluster does not set one
DEFAULT_CLICKHOUSE_IMAGE = _getenv(
    "DEFAULT_CLICKHOUSE_IMAGE", "clickhouse/clickhouse-server:latest"
)

#: DNS domain of the kubernetes cluster when the cluster object does not set one
DEFAULT_CLUSTER_DOMAIN = _getenv("DEFAULT_CLUSTER_DOMAIN", "cluster.local")

#: User the operator authenticates as on the management port
MANAGEMENT_USERNAME = _getenv("MANAGEMENT_USERNAME", "operator")

#: Start the prometheus metrics server
METRICS_ENABLED = bool(_getenv("METRICS_ENABLED", True))

#: Port of the prometheus metrics server
METRICS_PORT = int(_getenv("METRICS_PORT", 8000))

#: Maximum number of concurrent kopf workers
WORKER_LIMIT = int(_getenv("WORKER_LIMIT", 4))


class Settings:
    """Operator settings"""

    requeue_on_refresh_timeout_seconds: float = REQUEUE_ON_REFRESH_TIMEOUT_SECONDS
    requeue_on_error_timeout_seconds: float = REQUEUE_ON_ERROR_TIMEOUT_SECONDS
    status_request_timeout_seconds: float = STATUS_REQUEST_TIMEOUT_SECONDS
    command_timeout_seconds: float = COMMAND_TIMEOUT_SECONDS
    conflict_retry_attempts: int = CONFLICT_RETRY_ATTEMPTS
    conflict_retry_backoff_seconds: float = CONFLICT_RETRY_BACKOFF_SECONDS
    conflict_retry_max_backoff_seconds: float = CONFLICT_RETRY_MAX_BACKOFF_SECONDS
    resync_interval_seconds: float = RESYNC_INTERVAL_SECONDS
    default_keeper_image: str = DEFAULT_KEEPER_IMAGE
    default_clickhouse_image: str = DEFAULT_CLICKHOUSE_IMAGE
    default_cluster_domain: str = DEFAULT_CLUSTER_DOMAIN
    management_username: str = MANAGEMENT_USERNAME
    metrics_enabled: bool = METRICS_ENABLED
    metrics_port: int = METRICS_PORT
    worker_limit: int = WORKER_LIMIT

    def __init__(self, *args, **kwargs):
        for key, value in kwargs.items():
            if not hasattr(type(self), key):
                raise TypeError(f"Unknown setting: {key}")
            if value is not None:
                setattr(self, key, value)
