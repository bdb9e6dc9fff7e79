"""
Single-attempt HTTP retrieval of feed documents and article pages.

Retries belong to the scheduler; cancelling the awaiting task aborts the request.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from core.errors import NetworkError, NetworkErrorKind

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "termfeed/0.1 (+https://pypi.org/project/termfeed/)"


@dataclass(frozen=True)
class FetchResponse:
    url: str
    status_code: int
    content: bytes
    text: str
    content_type: str


class Fetcher:
    def __init__(
        self,
        timeout: float = 20.0,
        user_agent: str = DEFAULT_USER_AGENT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": user_agent},
        )

    async def fetch(self, url: str, timeout: Optional[float] = None) -> FetchResponse:
        """
        Fetch a URL once.

        Raises:
            NetworkError: on timeout, connection failure or a non-2xx status
        """
        try:
            resp = await self._client.get(url, timeout=timeout or self.timeout)
        except httpx.TimeoutException as e:
            raise NetworkError(NetworkErrorKind.TIMEOUT, f"request to {url} timed out") from e
        except httpx.RequestError as e:
            raise NetworkError(NetworkErrorKind.CONNECTION, f"{type(e).__name__}: {e}") from e

        if resp.status_code >= 400:
            raise NetworkError(
                NetworkErrorKind.HTTP_STATUS,
                f"{url} returned {resp.status_code}",
                status_code=resp.status_code,
            )

        return FetchResponse(
            url=str(resp.url),
            status_code=resp.status_code,
            content=resp.content,
            text=resp.text,
            content_type=resp.headers.get("content-type", ""),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
