"""Administrative commands against individual ClickHouse replicas.

A `Commander` belongs to one cluster and one reconciliation pass. It opens
at most one client per replica, on first use, and closes all of them in
`close()`. Every failure is raised as a `CommandError` naming the replica.
"""
import logging
from typing import Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional

from chop.resources.replica import ClickHouseReplicaID
from chop.types.settings import Settings
from chop.utils.parallel import MultiError, execute_parallel
from .client import ClickHouseClient
from .error import CommandError

logger = logging.getLogger(__name__)

DATABASES_QUERY = (
    "SELECT name, engine_full, engine = 'Replicated' AS is_replicated "
    "FROM system.databases "
    "WHERE engine NOT IN ('Atomic', 'Lazy', 'SQLite', 'Ordinary') "
    "AND name NOT IN ('system', 'information_schema', 'INFORMATION_SCHEMA') "
    "SETTINGS format_display_secrets_in_show_and_select=1"
)

REPLICATED_TABLES_QUERY = (
    "SELECT database, name FROM system.tables WHERE engine LIKE 'Replicated%'"
)


def quote_identifier(name: str) -> str:
    return "`" + name.replace("\\", "\\\\").replace("`", "\\`") + "`"


class DatabaseDescriptor(NamedTuple):
    name: str
    engine_full: str
    is_replicated: bool


class ConnectionCache:
    """Lazily created clients keyed by replica identity."""

    def __init__(self, factory: Callable[[ClickHouseReplicaID], ClickHouseClient]):
        self._factory = factory
        self._clients: Dict[ClickHouseReplicaID, ClickHouseClient] = {}

    def get(self, replica_id: ClickHouseReplicaID) -> ClickHouseClient:
        client = self._clients.get(replica_id)
        if client is None:
            try:
                client = self._factory(replica_id)
            except Exception as ex:
                raise CommandError(replica_id, "failed to open connection", ex) from ex
            self._clients[replica_id] = client
        return client

    def __contains__(self, replica_id) -> bool:
        return replica_id in self._clients

    def __len__(self) -> int:
        return len(self._clients)

    async def close(self) -> None:
        clients, self._clients = self._clients, {}
        for replica_id, client in clients.items():
            try:
                await client.close()
            except Exception as ex:
                logger.warning(f"Failed to close connection to replica {replica_id}: {ex}")


class Commander:
    def __init__(
        self,
        hostname: Callable[[ClickHouseReplicaID], str],
        port: int,
        username: str,
        password: str,
        conf: Settings = None,
        cache: Optional[ConnectionCache] = None,
    ):
        self.hostname = hostname
        self.port = port
        self.username = username
        self.password = password
        self.conf = conf or Settings()
        self.connections = cache if cache is not None else ConnectionCache(self._connect)

    def _connect(self, replica_id: ClickHouseReplicaID) -> ClickHouseClient:
        return ClickHouseClient(
            self.hostname(replica_id),
            self.port,
            self.username,
            self.password,
            timeout=self.conf.command_timeout_seconds,
        )

    async def close(self) -> None:
        await self.connections.close()

    async def __aenter__(self) -> "Commander":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _query(self, replica_id, sql: str, timeout: Optional[float] = None) -> List[dict]:
        client = self.connections.get(replica_id)
        try:
            return await client.query(sql, timeout=timeout)
        except Exception as ex:
            raise CommandError(replica_id, "query failed", ex) from ex

    async def _execute(self, replica_id, sql: str, timeout: Optional[float] = None) -> None:
        client = self.connections.get(replica_id)
        try:
            await client.execute(sql, timeout=timeout)
        except Exception as ex:
            raise CommandError(replica_id, f"`{sql}` failed", ex) from ex

    async def ping(self, replica_id: ClickHouseReplicaID, timeout: Optional[float] = None) -> None:
        client = self.connections.get(replica_id)
        try:
            alive = await client.ping(timeout=timeout)
        except Exception as ex:
            raise CommandError(replica_id, "ping failed", ex) from ex
        if not alive:
            raise CommandError(replica_id, "ping returned an unexpected response")

    async def databases(
        self, replica_id: ClickHouseReplicaID, timeout: Optional[float] = None
    ) -> Dict[str, DatabaseDescriptor]:
        """Non-system databases of a replica, keyed by name."""
        rows = await self._query(replica_id, DATABASES_QUERY, timeout)
        return {
            row["name"]: DatabaseDescriptor(
                row["name"], row["engine_full"], bool(int(row["is_replicated"]))
            )
            for row in rows
        }

    async def create_databases(
        self,
        replica_id: ClickHouseReplicaID,
        databases: Mapping[str, DatabaseDescriptor],
        timeout: Optional[float] = None,
    ) -> None:
        """Create missing databases, then sync replicated ones.

        All databases are attempted; failures are raised together.
        """
        errors = {}
        for name, db in sorted(databases.items()):
            try:
                await self._execute(
                    replica_id,
                    f"CREATE DATABASE IF NOT EXISTS {quote_identifier(name)} ENGINE = {db.engine_full}",
                    timeout,
                )
                if db.is_replicated:
                    await self._execute(
                        replica_id, f"SYSTEM SYNC DATABASE REPLICA {quote_identifier(name)}", timeout
                    )
            except CommandError as ex:
                errors[name] = ex
        if errors:
            raise CommandError(replica_id, "failed to create databases", MultiError(errors))

    async def sync_replica(
        self, replica_id: ClickHouseReplicaID, timeout: Optional[float] = None
    ) -> None:
        """Sync every replicated database and replicated table of one replica."""
        errors = {}
        try:
            databases = await self.databases(replica_id, timeout)
        except CommandError as ex:
            errors["system.databases"] = ex
            databases = {}
        for name, db in sorted(databases.items()):
            if not db.is_replicated:
                continue
            try:
                await self._execute(
                    replica_id, f"SYSTEM SYNC DATABASE REPLICA {quote_identifier(name)}", timeout
                )
            except CommandError as ex:
                errors[name] = ex

        try:
            tables = await self._query(replica_id, REPLICATED_TABLES_QUERY, timeout)
        except CommandError as ex:
            errors["system.tables"] = ex
            tables = []
        for row in tables:
            target = f"{quote_identifier(row['database'])}.{quote_identifier(row['name'])}"
            try:
                await self._execute(replica_id, f"SYSTEM SYNC REPLICA {target} LIGHTWEIGHT", timeout)
            except CommandError as ex:
                errors[f"{row['database']}.{row['name']}"] = ex

        if errors:
            raise CommandError(replica_id, "failed to sync replica", MultiError(errors))

    async def sync_shard(
        self, shard_id: int, replicas: int, timeout: Optional[float] = None
    ) -> None:
        """Run `sync_replica` on every replica of a shard concurrently."""
        ids = [ClickHouseReplicaID(shard_id, index) for index in range(replicas)]
        _, error = await execute_parallel(
            ids, lambda rid: self.sync_replica(rid, timeout), timeout=timeout
        )
        if error is not None:
            raise error

    async def sync_replicas(
        self, replica_ids: Iterable[ClickHouseReplicaID], timeout: Optional[float] = None
    ) -> Optional[MultiError]:
        _, error = await execute_parallel(
            replica_ids, lambda rid: self.sync_replica(rid, timeout), timeout=timeout
        )
        return error
