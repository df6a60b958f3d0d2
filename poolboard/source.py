"""
source.py - Upstream clients.

PoolApiSource reads per-user best shares for a block from the pool's stats
API. ChainExplorer reads the chain tip and block timestamps from a
mempool.space-compatible explorer.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx

logger = logging.getLogger("source")

DEFAULT_EXPLORER_URL = "https://mempool.space/api"
SOURCE_TIMEOUT = 10.0
LISTING_TIMEOUT = 30.0
MAX_RETRIES = 4
RETRY_BASE_DELAY = 0.5
RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


@dataclass
class Submission:
    address: str
    difficulty: float


class SourceError(Exception):
    """The upstream source could not be reached or returned unusable data."""


async def _get_with_retry(
    client: httpx.AsyncClient,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = SOURCE_TIMEOUT,
    max_retries: int = MAX_RETRIES,
    base_delay: float = RETRY_BASE_DELAY,
) -> httpx.Response:
    """GET with linear backoff plus jitter on transient failures.

    404 and other non-retryable responses are returned to the caller
    unchanged. Exhausted retries raise SourceError.
    """
    last_error: Optional[Exception] = None
    for attempt in range(max_retries + 1):
        try:
            response = await client.get(url, headers=headers, timeout=timeout)
            if response.status_code not in RETRYABLE_STATUS:
                return response
            last_error = SourceError(f"HTTP {response.status_code} from {url}")
        except httpx.RequestError as exc:
            last_error = exc

        if attempt < max_retries:
            delay = (base_delay + attempt * base_delay) * (random.random() + 0.5)
            logger.debug(
                "Retry %d/%d for %s in %.2fs (%s)",
                attempt + 1, max_retries, url, delay, last_error,
            )
            await asyncio.sleep(delay)

    raise SourceError(f"GET {url} failed after {max_retries} retries: {last_error}") from last_error


class PoolApiSource:
    """Per-block share listing from the pool API (``/highestdiff/{height}/all``)."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = LISTING_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        base_delay: float = RETRY_BASE_DELAY,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    async def fetch_submissions(self, block_height: int) -> List[Submission]:
        """Return every user's best share for the block, in source order.

        An unknown block (HTTP 404) yields an empty list.
        """
        client = await self._get_client()
        url = f"{self.base_url}/highestdiff/{block_height}/all"
        response = await _get_with_retry(
            client, url, headers=self._headers, timeout=self.timeout,
            max_retries=self.max_retries, base_delay=self.base_delay,
        )
        if response.status_code == 404:
            return []
        if response.status_code != 200:
            raise SourceError(f"HTTP {response.status_code} from {url}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceError(f"Invalid JSON from {url}") from exc
        return parse_submissions(payload)


def parse_submissions(payload) -> List[Submission]:
    """Validate a ``[{"username": ..., "diff": ...}, ...]`` listing."""
    if not isinstance(payload, list):
        raise SourceError("Expected a list of submissions")
    submissions = []
    for entry in payload:
        if not isinstance(entry, dict):
            raise SourceError("Submission entry is not an object")
        address = entry.get("username") or entry.get("address")
        diff = entry.get("diff", entry.get("difficulty"))
        if not isinstance(address, str) or not address:
            raise SourceError("Submission entry has no address")
        if isinstance(diff, bool) or not isinstance(diff, (int, float)) or diff < 0:
            raise SourceError(f"Submission entry has invalid difficulty: {diff!r}")
        submissions.append(Submission(address=address, difficulty=float(diff)))
    return submissions


class ChainExplorer:
    """Chain tip and block timestamps from a mempool.space-style API."""

    def __init__(self, base_url: str = DEFAULT_EXPLORER_URL, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=SOURCE_TIMEOUT)
        return self._client

    async def close(self):
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    async def get_tip_height(self) -> int:
        client = await self._get_client()
        url = f"{self.base_url}/blocks/tip/height"
        response = await _get_with_retry(client, url)
        if response.status_code != 200:
            raise SourceError(f"HTTP {response.status_code} from {url}")
        try:
            return int(response.text.strip())
        except ValueError as exc:
            raise SourceError(f"Invalid tip height from {url}") from exc

    async def get_block_timestamp(self, block_height: int) -> Optional[float]:
        """Best effort: None when the explorer cannot resolve the block."""
        client = await self._get_client()
        try:
            hash_url = f"{self.base_url}/block-height/{block_height}"
            response = await _get_with_retry(client, hash_url)
            if response.status_code != 200:
                return None
            block_hash = response.text.strip()
            details_url = f"{self.base_url}/block/{block_hash}"
            response = await _get_with_retry(client, details_url)
            if response.status_code != 200:
                return None
            return float(response.json()["timestamp"])
        except (SourceError, ValueError, KeyError, TypeError) as exc:
            logger.warning("No timestamp for block %d: %s", block_height, exc)
            return None
