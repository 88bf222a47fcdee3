import kopf
from logging import Logger
from chop.handlers.common import reconcile
from chop.resources.keepercluster import KeeperCluster
from chop.types.schemas import KeeperClusterSpecSchema
from chop.types.settings import RESYNC_INTERVAL_SECONDS

KIND = KeeperCluster.KIND


@kopf.on.resume(kind=KIND)
@kopf.on.create(kind=KIND)
@kopf.on.update(kind=KIND)
async def reconciliation(
    body, spec, name, meta, status, patch, namespace, annotations, memo, logger: Logger, reason, **kwargs
):
    """Reconcile KeeperCluster resources."""
    await reconcile(
        KeeperCluster,
        KeeperClusterSpecSchema,
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
        KeeperCluster,
        KeeperClusterSpecSchema,
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
