import asyncio

import pytest
from aiohttp import ClientConnectionError

from conftest import FakeResponse, FakeSession, make_source
from errors import RelayError, SourceFetchError
from relay import DirectFeedFetcher, FallbackFeedFetcher, FetchPolicy, RelayFeedFetcher
from utils import RetryPolicy

RELAY_URL = "https://relay.example.com/api/fetch-rss"


def _direct(sleeper, attempts=3):
    return DirectFeedFetcher(RetryPolicy(attempts, 1.0, 30.0, sleeper=sleeper), timeout=5)


def _relay(sleeper, attempts=3, blocked_status=429):
    return RelayFeedFetcher(RELAY_URL, RetryPolicy(attempts, 1.0, 30.0, sleeper=sleeper), timeout=5,
                            blocked_status=blocked_status)


def test_retry_schedule_escalates_and_caps():
    policy = RetryPolicy(max_attempts=6, base_delay=1.0, max_delay=10.0)
    assert policy.schedule() == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_relay_url_encodes_feed_url(sleeper):
    relay = _relay(sleeper)
    assert relay.build_url("https://a.substack.com/feed?x=1") == \
        f"{RELAY_URL}?url=https%3A%2F%2Fa.substack.com%2Ffeed%3Fx%3D1"


@pytest.mark.asyncio
async def test_relay_retries_blocked_status_then_succeeds(sleeper):
    session = FakeSession([
        FakeResponse(status=429, json_body={"error": "Too Many Requests", "status": 429}),
        FakeResponse(status=429, json_body={"error": "Too Many Requests", "status": 429}),
        FakeResponse(body=b"<rss/>"),
    ])
    response = await _relay(sleeper).fetch(make_source("a"), session)
    assert response.content == b"<rss/>"
    assert response.via == "relay"
    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_relay_gives_up_after_max_attempts(sleeper):
    session = FakeSession([FakeResponse(status=429, json_body={"error": "slow down"})] * 3)
    with pytest.raises(RelayError) as excinfo:
        await _relay(sleeper).fetch(make_source("a"), session)
    assert excinfo.value.status == 429
    assert len(session.requests) == 3
    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_relay_non_retryable_error_surfaces_immediately(sleeper):
    session = FakeSession([
        FakeResponse(status=502, json_body={"error": "Upstream failed", "status": 404, "statusText": "Not Found"}),
    ])
    with pytest.raises(RelayError) as excinfo:
        await _relay(sleeper).fetch(make_source("a"), session)
    assert excinfo.value.status == 502
    assert excinfo.value.upstream_status == 404
    assert "Upstream failed" in str(excinfo.value)
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_relay_error_without_json_body(sleeper):
    session = FakeSession([FakeResponse(status=500, reason="Internal Server Error")])
    with pytest.raises(RelayError) as excinfo:
        await _relay(sleeper).fetch(make_source("a"), session)
    assert excinfo.value.details == {}
    assert "Internal Server Error" in str(excinfo.value)


@pytest.mark.asyncio
async def test_relay_retries_timeouts(sleeper):
    session = FakeSession([asyncio.TimeoutError(), FakeResponse(body=b"ok")])
    response = await _relay(sleeper).fetch(make_source("a"), session)
    assert response.content == b"ok"


@pytest.mark.asyncio
async def test_direct_retries_gateway_errors(sleeper):
    session = FakeSession([FakeResponse(status=503), FakeResponse(body=b"feed")])
    response = await _direct(sleeper).fetch(make_source("a"), session)
    assert response.content == b"feed"
    assert response.via == "direct"
    assert sleeper.delays == [1.0]


@pytest.mark.asyncio
async def test_direct_404_is_terminal(sleeper):
    session = FakeSession([FakeResponse(status=404)])
    with pytest.raises(SourceFetchError) as excinfo:
        await _direct(sleeper).fetch(make_source("a"), session)
    assert excinfo.value.status == 404
    assert not excinfo.value.blocking


@pytest.mark.asyncio
async def test_fallback_uses_relay_once_when_blocked(sleeper):
    session = FakeSession([FakeResponse(status=403), FakeResponse(body=b"via relay")])
    fetcher = FallbackFeedFetcher(_direct(sleeper), _relay(sleeper))
    response = await fetcher.fetch(make_source("a"), session)
    assert response.via == "relay"
    assert session.requests[0] == "https://a.example.com/feed.xml"
    assert session.requests[1].startswith(RELAY_URL)


@pytest.mark.asyncio
async def test_fallback_after_exhausted_connection_errors(sleeper):
    session = FakeSession([
        ClientConnectionError("reset"),
        ClientConnectionError("reset"),
        FakeResponse(body=b"via relay"),
    ])
    fetcher = FallbackFeedFetcher(_direct(sleeper, attempts=2), _relay(sleeper))
    response = await fetcher.fetch(make_source("a"), session)
    assert response.content == b"via relay"


@pytest.mark.asyncio
async def test_fallback_does_not_relay_non_blocking_errors(sleeper):
    session = FakeSession([FakeResponse(status=404)])
    fetcher = FallbackFeedFetcher(_direct(sleeper), _relay(sleeper))
    with pytest.raises(SourceFetchError):
        await fetcher.fetch(make_source("a"), session)
    assert len(session.requests) == 1


def test_policy_routes_sensitive_sources(make_config):
    policy = FetchPolicy.from_config(make_config(RELAY_HOST_PATTERNS="substack.com,medium.com"))
    substack = make_source("s", feed_url="https://someone.substack.com/feed")
    flagged = make_source("f", force_proxy=True)
    plain = make_source("p")

    assert policy.strategy_for(substack) is policy.relay
    assert policy.strategy_for(flagged) is policy.relay
    assert policy.strategy_for(plain) is policy.fallback
    assert policy.direct.retry_policy.max_attempts == 3
    assert policy.relay.retry_policy.max_attempts == 3
