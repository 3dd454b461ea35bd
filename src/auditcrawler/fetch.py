"""
Single-page fetcher with httpx (HTTP/2 capable) and aiohttp backends.

``Fetcher.fetch`` never raises for network problems: timeouts, DNS and TLS
failures come back as a PageRecord with ``status_code=0`` and the error text,
so the crawler can keep going without special-casing exceptions.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Dict, Optional, Tuple

import aiohttp
import httpx

from .config import HttpConfig
from .errors import FetchError
from .models import PageRecord
from .parse import parse_document
from .urls import normalize_url

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


def _request_headers(user_agent: str) -> Dict[str, str]:
    return {
        "User-Agent": user_agent,
        "Accept-Encoding": "gzip, deflate, br",  # br = Brotli
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    }


def _resolve_backend(cfg: HttpConfig) -> str:
    backend = (cfg.http_backend or "auto").lower()
    if backend == "auto":
        return "httpx"
    return backend


def is_html(content_type: Optional[str]) -> bool:
    ct = (content_type or "").lower()
    # servers that omit the header are assumed to serve HTML
    return not ct or ct.startswith(HTML_CONTENT_TYPES)


class Fetcher:
    """Performs one bounded GET per call and turns the response into a PageRecord.

    A single connection pool is shared across calls; close it with ``aclose``
    or use the fetcher as an async context manager. An ``httpx.AsyncClient``
    may be injected (tests pass one built on ``httpx.MockTransport``).
    """

    def __init__(self, cfg: HttpConfig | None = None, client: httpx.AsyncClient | None = None):
        self.cfg = cfg or HttpConfig()
        self.backend = "httpx" if client is not None else _resolve_backend(self.cfg)
        if self.backend not in ("httpx", "aiohttp"):
            raise ValueError(f"Unknown HTTP backend: {self.cfg.http_backend}")
        self._client = client
        self._owns_client = client is None
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> "Fetcher":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _httpx_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                http2=self.cfg.enable_http2,
                follow_redirects=True,
                max_redirects=self.cfg.max_redirects,
            )
        return self._client

    def _aiohttp_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _get_httpx(self, url: str, timeout: float, user_agent: str) -> Tuple[int, str, Dict[str, str], str]:
        client = self._httpx_client()
        try:
            response = await client.get(url, headers=_request_headers(user_agent), timeout=httpx.Timeout(timeout))
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise FetchError(url, f"{type(e).__name__}: {e}") from e
        return response.status_code, str(response.url), dict(response.headers), response.text

    async def _get_aiohttp(self, url: str, timeout: float, user_agent: str) -> Tuple[int, str, Dict[str, str], str]:
        session = self._aiohttp_session()
        try:
            async with session.get(
                url,
                headers=_request_headers(user_agent),
                timeout=aiohttp.ClientTimeout(total=timeout),
                allow_redirects=True,
                max_redirects=self.cfg.max_redirects,
            ) as resp:
                text = await resp.text(errors="ignore")
                return resp.status, str(resp.url), dict(resp.headers), text
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(url, f"{type(e).__name__}: {e}") from e

    async def fetch(self, url: str, timeout: Optional[float] = None, user_agent: Optional[str] = None) -> PageRecord:
        """Fetch ``url`` and extract links, images and metadata.

        Non-2xx responses are still "successful" here: the status code is
        recorded and the body parsed. Only network-layer failures produce a
        status-0 record.
        """
        canonical = normalize_url(url)
        timeout = timeout if timeout is not None else self.cfg.timeout
        user_agent = user_agent or self.cfg.user_agent
        get = self._get_httpx if self.backend == "httpx" else self._get_aiohttp
        try:
            status, final_url, headers, text = await get(canonical, timeout, user_agent)
        except FetchError as e:
            logger.warning("%s", e)
            return PageRecord.failure(canonical, str(e))

        content_type = headers.get("content-type") or headers.get("Content-Type")
        if not is_html(content_type):
            logger.debug("Skipping parse of %s (%s)", canonical, content_type)
            return PageRecord(url=canonical, status_code=status, final_url=final_url)

        # links are resolved against the post-redirect location
        data = parse_document(text, final_url)
        logger.debug("Fetched %s -> %s (%d links)", canonical, status, len(data["outgoing_links"]))
        return PageRecord(
            url=canonical,
            title=data["title"],
            text_content=data["text_content"],
            raw_document=text,
            status_code=status,
            outgoing_links=tuple(data["outgoing_links"]),
            images=tuple(data["images"]),
            meta_tags=data["meta_tags"],
            final_url=final_url,
        )
