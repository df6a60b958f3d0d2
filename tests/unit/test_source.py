"""
test_source.py - Unit tests for the pool API and explorer clients.

Requests are served by httpx.MockTransport, so no network is touched.
"""

import httpx
import pytest

from poolboard.source import (
    ChainExplorer,
    PoolApiSource,
    SourceError,
    Submission,
    parse_submissions,
)

pytestmark = pytest.mark.asyncio

POOL_URL = "https://pool.test/api"
EXPLORER_URL = "https://explorer.test/api"


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _pool(handler, **kwargs) -> PoolApiSource:
    kwargs.setdefault("base_delay", 0.0)
    return PoolApiSource(POOL_URL, token="secret", client=_client(handler), **kwargs)


# ── parse_submissions ─────────────────────────────────────────────────────

class TestParse:

    async def test_username_and_diff(self):
        subs = parse_submissions([{"username": "bc1qa", "diff": 12}, {"username": "bc1qb", "diff": 3.5}])
        assert subs == [Submission("bc1qa", 12.0), Submission("bc1qb", 3.5)]

    async def test_alternate_keys(self):
        assert parse_submissions([{"address": "bc1qa", "difficulty": 1}]) == [Submission("bc1qa", 1.0)]

    async def test_empty_list(self):
        assert parse_submissions([]) == []

    @pytest.mark.parametrize("payload", [
        {"username": "a", "diff": 1},
        [{"diff": 1}],
        [{"username": "a", "diff": -1}],
        [{"username": "a", "diff": "12"}],
        [{"username": "a", "diff": True}],
        ["a"],
    ])
    async def test_rejects_malformed(self, payload):
        with pytest.raises(SourceError):
            parse_submissions(payload)


# ── PoolApiSource ─────────────────────────────────────────────────────────

class TestPoolApiSource:

    async def test_fetch(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[{"username": "bc1qa", "diff": 9}])

        source = _pool(handler)
        subs = await source.fetch_submissions(840000)
        assert subs == [Submission("bc1qa", 9.0)]
        assert seen[0].url.path == "/api/highestdiff/840000/all"
        assert seen[0].headers["Authorization"] == "Bearer secret"

    async def test_unknown_block_is_empty(self):
        source = _pool(lambda request: httpx.Response(404))
        assert await source.fetch_submissions(1) == []

    async def test_retries_transient_errors(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json=[{"username": "bc1qa", "diff": 1}])

        source = _pool(handler)
        assert len(await source.fetch_submissions(1)) == 1
        assert len(attempts) == 3

    async def test_retries_exhausted(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("refused", request=request)

        source = _pool(handler, max_retries=2)
        with pytest.raises(SourceError):
            await source.fetch_submissions(1)
        assert len(attempts) == 3

    async def test_client_error_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(401)

        source = _pool(handler)
        with pytest.raises(SourceError):
            await source.fetch_submissions(1)
        assert len(attempts) == 1

    async def test_invalid_json(self):
        source = _pool(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(SourceError):
            await source.fetch_submissions(1)

    async def test_no_token_no_header(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        source = PoolApiSource(POOL_URL, client=_client(handler))
        await source.fetch_submissions(1)
        assert "Authorization" not in seen[0].headers


# ── ChainExplorer ─────────────────────────────────────────────────────────

class TestChainExplorer:

    async def test_tip_height(self):
        explorer = ChainExplorer(EXPLORER_URL, client=_client(lambda request: httpx.Response(200, text="840123\n")))
        assert await explorer.get_tip_height() == 840123

    async def test_block_timestamp(self):
        def handler(request):
            if request.url.path == "/api/block-height/100":
                return httpx.Response(200, text="00000abc")
            if request.url.path == "/api/block/00000abc":
                return httpx.Response(200, json={"timestamp": 1700000000})
            return httpx.Response(404)

        explorer = ChainExplorer(EXPLORER_URL, client=_client(handler))
        assert await explorer.get_block_timestamp(100) == 1700000000.0

    async def test_block_timestamp_best_effort(self):
        explorer = ChainExplorer(EXPLORER_URL, client=_client(lambda request: httpx.Response(404)))
        assert await explorer.get_block_timestamp(100) is None

    async def test_malformed_block_details(self):
        def handler(request):
            if request.url.path.startswith("/api/block-height/"):
                return httpx.Response(200, text="00000abc")
            return httpx.Response(200, json={"height": 100})

        explorer = ChainExplorer(EXPLORER_URL, client=_client(handler))
        assert await explorer.get_block_timestamp(100) is None
