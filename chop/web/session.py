import aiohttp
from typing import Any, Dict, Mapping, Optional, Union
from yarl import URL

from .error import AuthenticationError, NotFoundError, QueryError

HEADERS = {
    "Accept": "*/*",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
}

"""Default timeout in seconds"""
TIMEOUT: float = 10


class SessionManager:
    """Owns one aiohttp session bound to a base URL.

    The session is created on first use, so instances can be built outside a
    running event loop.
    """

    def __init__(
        self,
        base_url: Union[str, URL],
        headers: Optional[Mapping] = None,
        auth: Optional[aiohttp.BasicAuth] = None,
        timeout: float = TIMEOUT,
        ssl: Any = True,
    ) -> None:
        merged_headers = dict(**HEADERS)
        merged_headers.update(headers or {})
        self.base_url = URL(str(base_url))
        self.headers = merged_headers
        self.auth = auth
        self.timeout = timeout
        self.ssl = ssl
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self.headers,
                auth=self.auth,
                connector=aiohttp.TCPConnector(ssl=self.ssl),
            )
        return self._session

    def _timeout(self, timeout: Optional[float]) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout if timeout is None else timeout)

    async def _check(self, res: aiohttp.ClientResponse) -> str:
        text = await res.text()
        if res.status == 401:
            raise AuthenticationError("Unauthorized")
        if res.status == 403:
            raise AuthenticationError("Forbidden")
        if res.status == 404:
            raise NotFoundError("Not found")
        if res.status >= 400:
            raise QueryError(res.status, text)
        return text

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Run a GET request and return the response body.
        Args:
            path: Path relative to the base URL.
            params: query string parameters
            timeout: Deadline in seconds, the session default when None.
        Raises:
            AuthenticationError: On 401 and 403.
            NotFoundError: On 404.
            QueryError: On any other error status.
        """
        async with self.session.get(
            self.base_url.with_path(path),
            params=params or {},
            timeout=self._timeout(timeout),
        ) as res:
            return await self._check(res)

    async def post(
        self,
        path: str,
        data: Union[str, bytes, None] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Run a POST request with a raw body and return the response body."""
        async with self.session.post(
            self.base_url.with_path(path),
            data=data,
            params=params or {},
            timeout=self._timeout(timeout),
        ) as res:
            return await self._check(res)

    def __repr__(self) -> str:
        return f"SessionManager<{self.base_url}>"

    async def close(self) -> None:
        """Close the underlying session"""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
