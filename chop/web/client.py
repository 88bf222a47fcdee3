"""ClickHouse HTTP interface client used on the management port."""
import json
from typing import Any, Dict, List, Optional
from .session import SessionManager

PING_PATH = "/ping"
QUERY_PATH = "/"


class ClickHouseClient(SessionManager):
    """Client for one ClickHouse server."""

    def __init__(self, host: str, port: int, username: str, password: str, **kwargs: Any) -> None:
        headers = kwargs.pop("headers", None) or {}
        headers["X-ClickHouse-User"] = username
        headers["X-ClickHouse-Key"] = password
        super().__init__(f"http://{host}:{port}", headers=headers, **kwargs)

    async def ping(self, timeout: Optional[float] = None) -> bool:
        body = await self.get(PING_PATH, timeout=timeout)
        return body.strip() == "Ok."

    async def query(self, sql: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Run a SELECT and return its rows as dicts."""
        body = await self.post(
            QUERY_PATH,
            data=sql,
            params={"default_format": "JSON"},
            timeout=timeout,
        )
        return json.loads(body).get("data", [])

    async def execute(self, sql: str, timeout: Optional[float] = None) -> None:
        await self.post(QUERY_PATH, data=sql, timeout=timeout)
