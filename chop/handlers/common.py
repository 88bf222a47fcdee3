import asyncio
import kopf
import logging
from collections import defaultdict
from typing import Dict, Mapping, Optional, Type
from marshmallow import ValidationError
from chop.resources.base import BaseCluster, InvalidSpecError, ReconcileResult
from chop.resources.store import KubernetesStore
from chop.sensors import OperatorSensor
from chop.types.base import BaseSchema
from chop.types.settings import Settings

PAUSE_ANNOTATION = "clickhouse.com/pause-reconciliation"
RECONCILE_FAILED = "ReconcileFailed"

TRUTHY = ("true", "1", "yes", "True", "Yes", "YES")

# One pass at a time per cluster object
reconciliation_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)


class TimerLogFilter(logging.Filter):
    def filter(self, record):
        """Timer logs are noisy so we filter them out."""
        return "Timer " not in record.getMessage()


kopf_logger = logging.getLogger("kopf.objects")
kopf_logger.addFilter(TimerLogFilter())


def reconciliation_paused(annotations: Optional[Mapping]) -> bool:
    return (annotations or {}).get(PAUSE_ANNOTATION) in TRUTHY


def get_conf(memo: kopf.Memo) -> Settings:
    return getattr(memo, "conf", None) or Settings()


def get_sensor(memo: kopf.Memo) -> OperatorSensor:
    return getattr(memo, "sensor", None) or OperatorSensor()


def build_cluster(
    cluster_cls: Type[BaseCluster],
    schema_cls: Type[BaseSchema],
    body,
    name: str,
    namespace: str,
    spec,
    meta,
    status,
    memo: kopf.Memo,
) -> BaseCluster:
    """Load the spec and wrap the custom resource for one pass."""
    conf = get_conf(memo)
    try:
        spec_model = schema_cls().load(dict(spec))
    except ValidationError as ex:
        raise kopf.PermanentError(f"Invalid {cluster_cls.KIND} spec: {ex.messages}") from ex
    return cluster_cls(
        name,
        namespace,
        spec_model,
        owner=body,
        store=KubernetesStore(memo.api_client, conf.status_request_timeout_seconds),
        status=dict(status or {}),
        generation=meta.get("generation"),
        conf=conf,
        sensor=get_sensor(memo),
    )


def post_events(body, result: ReconcileResult) -> None:
    for type_, reason, message in result.events:
        kopf.event(body, type=type_, reason=reason, message=message)


async def reconcile(
    cluster_cls: Type[BaseCluster],
    schema_cls: Type[BaseSchema],
    body,
    name: str,
    namespace: str,
    spec,
    meta,
    status,
    patch,
    annotations,
    memo: kopf.Memo,
    logger: logging.Logger,
    trigger_source: str,
    requeue: bool = True,
) -> None:
    """Run one reconciliation pass and requeue until the cluster converges.

    Raises:
        kopf.TemporaryError: the pass failed (error delay) or has not
            converged yet (refresh delay). Only when `requeue` is set.
        kopf.PermanentError: the spec cannot be reconciled as written.
    """
    kind = cluster_cls.KIND
    if reconciliation_paused(annotations):
        logger.info("Reconciliation is paused.")
        return

    conf = get_conf(memo)
    sensor = get_sensor(memo)
    async with reconciliation_locks[f"{kind}/{namespace}/{name}"]:
        sensor_state = sensor.on_reconcile_start(
            name, kind, namespace, meta.get("generation", 0), trigger_source
        )
        try:
            cluster = build_cluster(
                cluster_cls, schema_cls, body, name, namespace, spec, meta, status, memo
            )
            logger.debug(f"Reconciling {kind}/{name} in {namespace} namespace.")
            result = await cluster.reconcile()
        except (kopf.PermanentError, InvalidSpecError) as e:
            sensor.on_reconcile_complete(name, kind, namespace, sensor_state, False, False, e)
            kopf.warn(body, reason=RECONCILE_FAILED, message=str(e))
            raise kopf.PermanentError(str(e)) from e
        except Exception as e:
            logger.error(f"Unexpected error during reconcilation: {e}")
            logger.exception(e)
            sensor.on_reconcile_complete(name, kind, namespace, sensor_state, False, False, e)
            kopf.warn(body, reason=RECONCILE_FAILED, message=str(e))
            if not requeue:
                return
            raise kopf.TemporaryError(
                f"Reconciliation failed: {e}", delay=conf.requeue_on_error_timeout_seconds
            ) from e

        post_events(body, result)
        if result.status:
            patch.status.update(result.status)
        sensor.on_reconcile_complete(
            name, kind, namespace, sensor_state, result.succeeded, result.converged, result.error
        )

    if result.error is not None:
        logger.warning(f"Reconciliation of {kind}/{name} failed: {result.error}")
        kopf.warn(body, reason=RECONCILE_FAILED, message=str(result.error))
        if requeue:
            raise kopf.TemporaryError(
                f"Reconciliation failed: {result.error}",
                delay=conf.requeue_on_error_timeout_seconds,
            )
    elif not result.converged:
        logger.debug(f"{kind}/{name} has not converged yet.")
        if requeue:
            raise kopf.TemporaryError(
                "Waiting for replicas to converge",
                delay=conf.requeue_on_refresh_timeout_seconds,
            )
    else:
        logger.debug(f"Reconciled {kind}/{name} in {namespace} namespace.")
