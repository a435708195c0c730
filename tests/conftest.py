import pytest

from config import Config
from models import Source


class FakeResponse:
    """Just enough of aiohttp's ClientResponse for the fetch paths."""

    def __init__(self, status=200, body=b"", json_body=None, reason="OK"):
        self.status = status
        self.body = body
        self.json_body = json_body
        self.reason = reason

    async def read(self):
        return self.body

    async def text(self, errors="strict"):
        return self.body.decode("utf-8", errors)

    async def json(self, content_type=None):
        if self.json_body is None:
            raise ValueError("no JSON body")
        return self.json_body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Replays queued responses (or raises queued exceptions) and records requested URLs."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.requests = []

    def get(self, url, headers=None, timeout=None):
        self.requests.append(url)
        if not self.responses:
            raise AssertionError(f"unexpected request to {url}")
        outcome = self.responses.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingSleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def make_config(tmp_path):
    """Config rooted in tmp_path; keyword arguments become env values."""

    def _make(**env):
        values = {
            "DATA_PATH": str(tmp_path / "data"),
            "PUBLIC_DIR": str(tmp_path / "public"),
            "FETCH_PAGE_EXCERPTS": "false",
            "SENSITIVE_BATCH_DELAY": "0",
            "RETRY_DELAY_BASE": "0",
        }
        values.update({key: str(value) for key, value in env.items()})
        return Config(values)

    return _make


def make_source(source_id="example", **overrides):
    fields = {
        "id": source_id,
        "name": source_id.title(),
        "url": f"https://{source_id}.example.com",
        "feed_url": f"https://{source_id}.example.com/feed.xml",
    }
    fields.update(overrides)
    return Source(**fields)


def rss(*items, last_build_date=None):
    """Minimal RSS 2.0 document from (title, link, pub_date, description) tuples."""
    header = f"<lastBuildDate>{last_build_date}</lastBuildDate>" if last_build_date else ""
    body = []
    for title, link, pub_date, description in items:
        parts = [f"<title>{title}</title>"]
        if link:
            parts.append(f"<link>{link}</link>")
        if pub_date:
            parts.append(f"<pubDate>{pub_date}</pubDate>")
        if description:
            parts.append(f"<description><![CDATA[{description}]]></description>")
        body.append(f"<item>{''.join(parts)}</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel><title>Test</title><link>https://example.com</link>'
        f"{header}{''.join(body)}</channel></rss>"
    ).encode("utf-8")
