"""Fetch engine capability and the registry of available engines."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union, runtime_checkable

import httpx

from ..foundation.errors import EngineFetchError, FetchErrorKind, UnsupportedEngineError
from ..foundation.logging import get_logger

logger = get_logger(__name__)


class EngineKind(str, Enum):
    """Closed set of fetch engine identifiers."""
    HTTP = "http"
    PLAYWRIGHT = "playwright"
    CHROMIUM = "chromium"


@dataclass
class RawContent:
    """Raw document produced by a fetch engine."""
    url: str
    content: str
    status_code: int = 200
    content_type: str = "text/html"
    headers: Dict[str, str] = field(default_factory=dict)
    final_url: Optional[str] = None

    @property
    def effective_url(self) -> str:
        return self.final_url or self.url


@runtime_checkable
class FetchEngine(Protocol):
    """Given a URL and options, produce raw content or raise EngineFetchError."""

    async def fetch(self, url: str, options: Dict[str, Any]) -> RawContent:
        ...


class EngineRegistry:
    """Maps engine kinds to registered fetch engine implementations."""

    def __init__(self):
        self._engines: Dict[EngineKind, FetchEngine] = {}

    @staticmethod
    def parse_kind(engine_id: Union[str, EngineKind]) -> EngineKind:
        """Resolve an engine identifier to a member of the closed set.

        Raises:
            UnsupportedEngineError: If the identifier is not a known engine kind
        """
        try:
            return EngineKind(engine_id)
        except ValueError:
            raise UnsupportedEngineError(
                engine_id, available=[kind.value for kind in EngineKind]
            ) from None

    def register(self, engine_id: Union[str, EngineKind], engine: FetchEngine) -> EngineKind:
        kind = self.parse_kind(engine_id)
        if not isinstance(engine, FetchEngine):
            raise TypeError(f"{engine!r} does not implement fetch(url, options)")
        self._engines[kind] = engine
        logger.debug(f"Registered fetch engine {kind.value}: {type(engine).__name__}")
        return kind

    def resolve(self, engine_id: Union[str, EngineKind]) -> Tuple[EngineKind, FetchEngine]:
        """Look up a registered engine.

        Raises:
            UnsupportedEngineError: If the engine is unknown or not registered
        """
        kind = self.parse_kind(engine_id)
        engine = self._engines.get(kind)
        if engine is None:
            raise UnsupportedEngineError(kind.value, available=self.kinds())
        return kind, engine

    def kinds(self) -> List[str]:
        return [kind.value for kind in self._engines]

    def items(self):
        return list(self._engines.items())

    def __contains__(self, engine_id: object) -> bool:
        try:
            return EngineKind(engine_id) in self._engines
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._engines)


class HttpxFetchEngine:
    """Plain HTTP fetch engine without JavaScript rendering."""

    def __init__(
        self,
        user_agent: str = "crawlfront/0.1",
        follow_redirects: bool = True,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.user_agent = user_agent
        self.follow_redirects = follow_redirects
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": self.user_agent},
                follow_redirects=self.follow_redirects,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def fetch(self, url: str, options: Dict[str, Any]) -> RawContent:
        headers = options.get("headers") or None
        try:
            response = await self.client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise EngineFetchError(
                f"Timed out fetching {url}: {e}", kind=FetchErrorKind.TIMEOUT, url=url
            ) from e
        except httpx.HTTPError as e:
            raise EngineFetchError(
                f"Failed to fetch {url}: {e}", kind=FetchErrorKind.NETWORK, url=url
            ) from e

        if response.status_code >= 400:
            raise EngineFetchError(
                f"HTTP {response.status_code} fetching {url}",
                kind=FetchErrorKind.HTTP_STATUS,
                status_code=response.status_code,
                url=url
            )

        return RawContent(
            url=url,
            content=response.text,
            status_code=response.status_code,
            content_type=response.headers.get("content-type", "text/html"),
            headers=dict(response.headers),
            final_url=str(response.url),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
