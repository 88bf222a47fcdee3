"""Keeper four-letter-word status client."""
import asyncio
import ssl as _ssl
from typing import Dict, Optional

MNTR = b"mntr"
SERVER_STATE_KEY = "zk_server_state"

LEADER = "leader"
FOLLOWER = "follower"
STANDALONE = "standalone"
OBSERVER = "observer"

HEALTHY_MODES = (LEADER, FOLLOWER, STANDALONE, OBSERVER)


def parse_mntr(payload: str) -> Dict[str, str]:
    """Parse `key<TAB>value` lines of a mntr response."""
    stats = {}
    for line in payload.splitlines():
        key, sep, value = line.partition("\t")
        if sep:
            stats[key.strip()] = value.strip()
    return stats


class KeeperStatusClient:
    """Sends `mntr` to a keeper member and reports its server state."""

    def __init__(self, timeout: float = 10.0, use_tls: bool = False, ca_data: Optional[str] = None):
        self.timeout = timeout
        self.use_tls = use_tls
        # PEM bundle trusted for member certificates, system roots when unset
        self.ca_data = ca_data

    def _ssl_context(self) -> Optional[_ssl.SSLContext]:
        if not self.use_tls:
            return None
        context = _ssl.create_default_context(cadata=self.ca_data)
        # member certificates are issued for the service, not the pod address
        context.check_hostname = False
        return context

    async def _command(self, host: str, port: int, command: bytes) -> str:
        reader, writer = await asyncio.open_connection(host, port, ssl=self._ssl_context())
        try:
            writer.write(command)
            await writer.drain()
            data = await reader.read()
        finally:
            writer.close()
            await writer.wait_closed()
        return data.decode("utf-8", errors="replace")

    async def mntr(self, host: str, port: int, timeout: Optional[float] = None) -> Dict[str, str]:
        payload = await asyncio.wait_for(
            self._command(host, port, MNTR),
            timeout=self.timeout if timeout is None else timeout,
        )
        return parse_mntr(payload)

    async def server_mode(self, host: str, port: int, timeout: Optional[float] = None) -> Optional[str]:
        stats = await self.mntr(host, port, timeout)
        return stats.get(SERVER_STATE_KEY)
