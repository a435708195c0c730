#!/usr/bin/env python3
"""
Feed fetch strategies.

Three interchangeable strategies share one interface, `await fetch(source, session)`:

- DirectFeedFetcher: GET the feed URL with browser-like headers
- RelayFeedFetcher: GET the relay endpoint with the feed URL as a query parameter
- FallbackFeedFetcher: direct first, relay once when the host looks like it is blocking us

FetchPolicy picks the strategy for each source. Retries on every path go
through utils.RetryPolicy.
"""

from asyncio import TimeoutError
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from aiohttp import ClientConnectionError, ClientError, ClientSession, ClientTimeout, ContentTypeError

from config import DEFAULT_USER_AGENT, get_logger
from errors import RelayError, SourceFetchError
from models import Source
from telemetry import trace_span
from utils import RetryPolicy, host_matches_pattern, normalize_host

logger = get_logger("relay")

HTTP_OK = 200

# Direct-fetch statuses worth another attempt
GATEWAY_STATUSES = frozenset({500, 502, 503, 504})
# Statuses that suggest rate limiting or bot blocking
BLOCKING_STATUSES = frozenset({403, 429})

FEED_ACCEPT = 'application/rss+xml, application/xml, text/xml, application/atom+xml, */*'


def browser_headers(user_agent: str = DEFAULT_USER_AGENT) -> dict:
    return {
        'User-Agent': user_agent,
        'Accept': FEED_ACCEPT,
        'Accept-Language': 'en-US,en;q=0.9',
        'Cache-Control': 'no-cache',
    }


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, SourceFetchError) and error.retryable


def _format_client_error(error: ClientError) -> str:
    detail = str(error).strip()
    return f"{error.__class__.__name__}: {detail}" if detail else error.__class__.__name__


@dataclass
class FeedResponse:
    """Raw feed body plus the path that produced it."""
    content: bytes
    via: str


class DirectFeedFetcher:
    """Fetch the feed straight from its host."""

    name = "direct"

    def __init__(self, retry_policy: RetryPolicy, timeout: float = 30.0, user_agent: str = DEFAULT_USER_AGENT):
        self.retry_policy = retry_policy
        self.timeout = timeout
        self.user_agent = user_agent

    async def fetch(self, source: Source, session: ClientSession) -> FeedResponse:
        content = await self.retry_policy.run(
            lambda: self._fetch_once(source, session),
            is_retryable,
            label=source.id,
        )
        return FeedResponse(content, self.name)

    async def _fetch_once(self, source: Source, session: ClientSession) -> bytes:
        try:
            async with session.get(
                source.feed_url,
                headers=browser_headers(self.user_agent),
                timeout=ClientTimeout(total=self.timeout),
            ) as response:
                if response.status != HTTP_OK:
                    raise SourceFetchError(
                        f"HTTP {response.status}",
                        status=response.status,
                        retryable=response.status in GATEWAY_STATUSES,
                        blocking=response.status in BLOCKING_STATUSES,
                    )
                return await response.read()
        except TimeoutError as e:
            raise SourceFetchError(f"Timed out after {self.timeout:g}s", retryable=True, blocking=True) from e
        except (ClientConnectionError, ConnectionResetError) as e:
            raise SourceFetchError(f"Network error: {e}", retryable=True, blocking=True) from e
        except ClientError as e:
            raise SourceFetchError(f"Network error: {_format_client_error(e)}") from e


class RelayFeedFetcher:
    """Fetch the feed through the relay endpoint.

    Relay contract: GET {relay_url}?url=<feed url>. 200 carries the raw feed
    body; anything else carries a JSON body {error, status, statusText, url}.
    """

    name = "relay"

    def __init__(self, relay_url: str, retry_policy: RetryPolicy, timeout: float = 30.0,
                 blocked_status: int = 429, user_agent: str = DEFAULT_USER_AGENT):
        self.relay_url = relay_url
        self.retry_policy = retry_policy
        self.timeout = timeout
        self.blocked_status = blocked_status
        self.user_agent = user_agent

    def build_url(self, feed_url: str) -> str:
        separator = '&' if '?' in self.relay_url else '?'
        return f"{self.relay_url}{separator}{urlencode({'url': feed_url})}"

    @trace_span(
        "relay.fetch",
        tracer_name="relay",
        attr_from_args=lambda self, source, session: {"feed.source_id": source.id},
    )
    async def fetch(self, source: Source, session: ClientSession) -> FeedResponse:
        content = await self.retry_policy.run(
            lambda: self._fetch_once(source, session),
            is_retryable,
            label=f"{source.id} via relay",
        )
        return FeedResponse(content, self.name)

    async def _fetch_once(self, source: Source, session: ClientSession) -> bytes:
        try:
            async with session.get(
                self.build_url(source.feed_url),
                headers={'User-Agent': self.user_agent},
                timeout=ClientTimeout(total=self.timeout),
            ) as response:
                if response.status == HTTP_OK:
                    return await response.read()
                details = await self._read_error_body(response)
                message = details.get('error') or response.reason or 'relay error'
                raise RelayError(
                    f"Relay returned {response.status}: {message}",
                    status=response.status,
                    upstream_status=details.get('status'),
                    retryable=response.status == self.blocked_status,
                    details=details,
                )
        except TimeoutError as e:
            raise RelayError(f"Relay timed out after {self.timeout:g}s", retryable=True) from e
        except (ClientConnectionError, ConnectionResetError) as e:
            raise RelayError(f"Relay network error: {e}", retryable=True) from e
        except ClientError as e:
            raise RelayError(f"Relay network error: {_format_client_error(e)}") from e

    async def _read_error_body(self, response) -> dict:
        try:
            body = await response.json(content_type=None)
        except (ContentTypeError, ValueError, ClientError):
            return {}
        return body if isinstance(body, dict) else {}


class FallbackFeedFetcher:
    """Direct first; on a blocking-class failure, one more try through the relay."""

    name = "direct+relay"

    def __init__(self, direct: DirectFeedFetcher, relay: RelayFeedFetcher):
        self.direct = direct
        self.relay = relay

    async def fetch(self, source: Source, session: ClientSession) -> FeedResponse:
        try:
            return await self.direct.fetch(source, session)
        except SourceFetchError as e:
            if not e.blocking:
                raise
            logger.warning(f"Direct fetch for {source.id} looks blocked ({e}); falling back to relay")
        return await self.relay.fetch(source, session)


class FetchPolicy:
    """Chooses the fetch strategy for each source."""

    def __init__(self, direct: DirectFeedFetcher, relay: RelayFeedFetcher,
                 host_patterns: Optional[list] = None):
        self.direct = direct
        self.relay = relay
        self.fallback = FallbackFeedFetcher(direct, relay)
        self.host_patterns = [p.lower() for p in (host_patterns or [])]

    @classmethod
    def from_config(cls, config, sleeper=None) -> "FetchPolicy":
        def policy(attempts: int) -> RetryPolicy:
            kwargs = {'sleeper': sleeper} if sleeper else {}
            return RetryPolicy(attempts, config.RETRY_DELAY_BASE, config.RETRY_MAX_DELAY, **kwargs)

        direct = DirectFeedFetcher(policy(config.MAX_RETRIES + 1), config.FEED_TIMEOUT, config.USER_AGENT)
        relay = RelayFeedFetcher(
            config.RELAY_URL,
            policy(config.RELAY_MAX_ATTEMPTS),
            config.FEED_TIMEOUT,
            blocked_status=config.RELAY_BLOCKED_STATUS,
            user_agent=config.USER_AGENT,
        )
        return cls(direct, relay, config.RELAY_HOST_PATTERNS)

    def is_sensitive(self, source: Source) -> bool:
        """Rate-limit-sensitive: flagged by the registry or hosted on a known blocking host."""
        if source.force_proxy:
            return True
        host = normalize_host(source.feed_url)
        return any(host_matches_pattern(host, pattern) for pattern in self.host_patterns)

    def strategy_for(self, source: Source):
        return self.relay if self.is_sensitive(source) else self.fallback
