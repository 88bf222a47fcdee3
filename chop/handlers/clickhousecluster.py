import kopf
from logging import Logger
from chop.handlers.common import (
    build_cluster,
    reconcile,
    reconciliation_locks,
    reconciliation_paused,
)
from chop.resources.clickhousecluster import ClickHouseCluster
from chop.types.schemas import ClickHouseClusterSpecSchema
from chop.types.settings import RESYNC_INTERVAL_SECONDS

KIND = ClickHouseCluster.KIND
SYNC_ANNOTATION = "clickhouse.com/sync-replicas"
SYNC_REQUESTED = "SyncRequested"
SYNC_FAILED = "SyncFailed"


@kopf.on.resume(kind=KIND)
@kopf.on.create(kind=KIND)
@kopf.on.update(kind=KIND)
async def reconciliation(
    body, spec, name, meta, status, patch, namespace, annotations, memo, logger: Logger, reason, **kwargs
):
    """Reconcile ClickHouseCluster resources."""
    await reconcile(
        ClickHouseCluster,
        ClickHouseClusterSpecSchema,
        body,
        name,
        namespace,
        spec,
        meta,
        status,
        patch,
        annotations,
        memo,
        logger,
        trigger_source=str(reason),
    )


@kopf.timer(KIND, interval=RESYNC_INTERVAL_SECONDS, initial_delay=RESYNC_INTERVAL_SECONDS)
async def resync(
    body, spec, name, meta, status, patch, namespace, annotations, memo, logger: Logger, **kwargs
):
    """Periodic pass; the next tick is the retry."""
    await reconcile(
        ClickHouseCluster,
        ClickHouseClusterSpecSchema,
        body,
        name,
        namespace,
        spec,
        meta,
        status,
        patch,
        annotations,
        memo,
        logger,
        trigger_source="timer",
        requeue=False,
    )


@kopf.on.resume(kind=KIND, annotations={SYNC_ANNOTATION: kopf.PRESENT})
@kopf.on.update(kind=KIND, annotations={SYNC_ANNOTATION: kopf.PRESENT})
async def sync_replicas(
    body, spec, name, meta, status, patch, namespace, annotations, memo, logger: Logger, **kwargs
):
    """Synchronize replicated databases and tables of every shard on request.

    The request annotation is removed whatever the outcome; failures are
    reported as an event.
    """
    patch.metadata.annotations[SYNC_ANNOTATION] = None
    if reconciliation_paused(annotations):
        logger.info("Reconciliation is paused, ignoring sync request.")
        return

    cluster: ClickHouseCluster = build_cluster(
        ClickHouseCluster,
        ClickHouseClusterSpecSchema,
        body,
        name,
        namespace,
        spec,
        meta,
        status,
        memo,
    )
    async with reconciliation_locks[f"{KIND}/{namespace}/{name}"]:
        try:
            error = await cluster.sync_all_shards()
        except Exception as e:
            logger.exception(e)
            error = e

    if error is not None:
        logger.warning(f"Failed to sync replicas of {KIND}/{name}: {error}")
        kopf.warn(body, reason=SYNC_FAILED, message=str(error))
    else:
        logger.info(f"Synced replicas of {cluster.spec.shards} shard(s) of {KIND}/{name}.")
        kopf.event(
            body,
            type="Normal",
            reason=SYNC_REQUESTED,
            message=f"Synchronized replicas of {cluster.spec.shards} shard(s).",
        )
