"""Web tools: fetch_url and web_search.

Uses a separate httpx client from the model transport, so no provider
credentials can leak into requests to arbitrary hosts.
"""

from __future__ import annotations

import asyncio
import html as html_module
import ipaddress
import logging
import re
import socket
import time
from typing import Any, Awaitable, Callable, Literal
from urllib.parse import urljoin, urlparse

import httpx
from pydantic import BaseModel, Field

from termagent.errors import ExecutionFailed, InvalidArguments, PermissionDenied, ToolTimeout
from termagent.tools.base import Tool, ToolContext, truncate

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 8000
MAX_SEARCH_RESULTS = 8
MAX_REDIRECTS = 5
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"

# Blocked IP ranges for SSRF protection
_BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),          # "This" network
    ipaddress.ip_network("127.0.0.0/8"),        # Loopback
    ipaddress.ip_network("10.0.0.0/8"),         # RFC1918
    ipaddress.ip_network("172.16.0.0/12"),      # RFC1918
    ipaddress.ip_network("192.168.0.0/16"),     # RFC1918
    ipaddress.ip_network("169.254.0.0/16"),     # Link-local, cloud metadata
    ipaddress.ip_network("100.64.0.0/10"),      # Carrier-grade NAT
    ipaddress.ip_network("::1/128"),            # IPv6 loopback
    ipaddress.ip_network("fc00::/7"),           # IPv6 unique local
    ipaddress.ip_network("fe80::/10"),          # IPv6 link-local
]

_BLOCKED_HOSTNAMES = {"localhost", "0.0.0.0", "metadata.google.internal"}

Resolver = Callable[[str], Awaitable[list[str]]]


async def resolve_host(hostname: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None)
    return [info[4][0] for info in infos]


async def check_url_safe(url: str, resolver: Resolver = resolve_host) -> None:
    """Raise PermissionDenied if ``url`` points at a private or local address."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise InvalidArguments("URL must start with http:// or https://")
    hostname = parsed.hostname
    if not hostname:
        raise InvalidArguments("Could not parse hostname from URL")
    if hostname.lower() in _BLOCKED_HOSTNAMES:
        raise PermissionDenied(f"Blocked hostname: {hostname}")

    try:
        addresses = [str(ipaddress.ip_address(hostname))]
    except ValueError:
        try:
            addresses = await resolver(hostname)
        except (socket.gaierror, OSError) as e:
            raise ExecutionFailed(f"Could not resolve hostname: {hostname}") from e

    for raw in addresses:
        ip = ipaddress.ip_address(raw.split("%", 1)[0])
        for network in _BLOCKED_NETWORKS:
            if ip.version == network.version and ip in network:
                raise PermissionDenied(f"URL resolves to blocked IP range ({network})")


def extract_readable(html: str) -> str:
    """Extract readable text from HTML using stdlib."""
    # Remove script, style, noscript, nav, header, footer tags
    text = re.sub(
        r"<(script|style|noscript|nav|header|footer)[^>]*>.*?</\1>",
        "", html, flags=re.DOTALL | re.IGNORECASE,
    )
    text = re.sub(r"<!--.*?-->", "", text, flags=re.DOTALL)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html_module.unescape(text)
    text = re.sub(r"\s+", " ", text).strip()
    return text


# ---------------------------------------------------------------------------
# fetch_url
# ---------------------------------------------------------------------------


class FetchUrlArgs(BaseModel):
    url: str = Field(min_length=1, description="URL to fetch (must be http or https)")


class FetchUrlTool(Tool):
    name = "fetch_url"
    description = "Fetch a URL and return its readable text content."
    Args = FetchUrlArgs
    max_output_chars = MAX_BODY_CHARS

    def __init__(self, http: httpx.AsyncClient, timeout: float = 15, resolver: Resolver = resolve_host) -> None:
        self._http = http
        self._timeout = timeout
        self._resolver = resolver

    async def run(self, args: FetchUrlArgs, ctx: ToolContext) -> dict[str, Any]:
        await check_url_safe(args.url, self._resolver)

        # Manual redirect following with the SSRF check on each hop
        current_url = args.url
        response: httpx.Response | None = None
        try:
            for _ in range(MAX_REDIRECTS + 1):
                response = await self._http.get(
                    current_url,
                    headers={"User-Agent": "termagent/0.1"},
                    follow_redirects=False,
                    timeout=self._timeout,
                )
                if response.status_code not in (301, 302, 303, 307, 308):
                    break
                location = response.headers.get("location", "")
                if not location:
                    break
                redirect_url = urljoin(current_url, location)
                await check_url_safe(redirect_url, self._resolver)
                current_url = redirect_url
            else:
                raise ExecutionFailed(f"Too many redirects (max {MAX_REDIRECTS})")
        except httpx.TimeoutException as e:
            raise ToolTimeout(f"Fetch timed out for: {args.url}") from e
        except httpx.HTTPError as e:
            raise ExecutionFailed(f"Could not fetch {args.url}: {e}") from e

        assert response is not None
        content_type = response.headers.get("content-type", "")
        is_text = any(t in content_type for t in ("text/", "application/json", "application/xml", "application/xhtml"))
        if content_type and not is_text:
            raise ExecutionFailed(f"Cannot extract text from binary content (content-type: {content_type})")

        body = extract_readable(response.text) if "html" in content_type else response.text
        body, cut = truncate(body, MAX_BODY_CHARS)
        payload: dict[str, Any] = {"url": current_url, "status": response.status_code, "content": body}
        if cut:
            payload["truncated"] = True
        return payload


# ---------------------------------------------------------------------------
# web_search
# ---------------------------------------------------------------------------


class WebSearchArgs(BaseModel):
    query: str = Field(min_length=1, description="Search query string")
    count: int = Field(default=MAX_SEARCH_RESULTS, ge=1, le=MAX_SEARCH_RESULTS, description="Number of results")
    freshness: Literal["day", "week", "month"] | None = Field(
        default=None, description="Filter by recency, or omit for all time"
    )


class WebSearchTool(Tool):
    name = "web_search"
    description = "Search the web for current information. Returns titles, URLs and snippets."
    Args = WebSearchArgs
    max_output_chars = MAX_BODY_CHARS

    def __init__(self, http: httpx.AsyncClient, api_key: str, daily_limit: int = 100, timeout: float = 10) -> None:
        self._http = http
        self._api_key = api_key
        self._daily_limit = daily_limit
        self._timeout = timeout
        self._rate_date = ""
        self._rate_count = 0

    def _check_rate_limit(self) -> None:
        today = time.strftime("%Y-%m-%d")
        if self._rate_date != today:
            self._rate_date = today
            self._rate_count = 0
        if self._rate_count >= self._daily_limit:
            raise ExecutionFailed(f"Daily web search limit reached ({self._daily_limit}). Resets tomorrow.")
        self._rate_count += 1
        if self._rate_count >= int(self._daily_limit * 0.8):
            logger.warning("Web search rate limit at %d/%d", self._rate_count, self._daily_limit)

    async def run(self, args: WebSearchArgs, ctx: ToolContext) -> dict[str, Any]:
        if not self._api_key:
            raise ExecutionFailed("BRAVE_SEARCH_API_KEY not configured. Set it to enable web search.")
        self._check_rate_limit()

        params: dict[str, Any] = {"q": args.query, "count": args.count}
        if args.freshness:
            params["freshness"] = {"day": "pd", "week": "pw", "month": "pm"}[args.freshness]

        try:
            response = await self._http.get(
                BRAVE_SEARCH_URL,
                params=params,
                headers={
                    "Accept": "application/json",
                    "X-Subscription-Token": self._api_key,
                },
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise ToolTimeout("Web search timed out. Try again.") from e
        except httpx.HTTPError as e:
            raise ExecutionFailed(f"Could not connect to search service: {e}") from e

        if response.status_code != 200:
            raise ExecutionFailed(f"Search failed (HTTP {response.status_code}). Check BRAVE_SEARCH_API_KEY if 401.")

        items = response.json().get("web", {}).get("results", [])
        results = [
            {
                "title": item.get("title", ""),
                "url": item.get("url", ""),
                "snippet": item.get("description", ""),
            }
            for item in items[: args.count]
        ]
        payload: dict[str, Any] = {"query": args.query, "results": results}
        if len(items) > args.count:
            payload["truncated"] = True
        return payload
