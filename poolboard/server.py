"""
server.py - Pool dashboard server entry point.

Single-process server combining:
 - SQLite persistent storage via StorageManager
 - Watermark collector (on-demand trigger + background reconciliation)
 - Leaderboard ranking engine with address privacy filtering
 - Request rate governor on every public read
 - REST API (FastAPI on uvicorn, port 8080)

Usage:
    python -m poolboard.server [--api-port 8080] [--db-path data/poolboard.db] [--pool-api-url URL]
"""

import argparse
import asyncio
import logging
import os
from typing import Optional

import aiosqlite
import uvicorn
from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request
from starlette.responses import Response

from poolboard import __version__
from poolboard.collector import (
    BACKFILL_BLOCKS,
    KEEP_BLOCKS,
    RECONCILE_INTERVAL,
    WatermarkCollector,
)
from poolboard.leaderboard import LeaderboardRankingEngine
from poolboard.privacy import AddressPrivacyFilter
from poolboard.ratelimit import DEFAULT_LIMIT, DEFAULT_WINDOW_SEC, RequestRateGovernor
from poolboard.routers import register_all_routers
from poolboard.source import DEFAULT_EXPLORER_URL, ChainExplorer, PoolApiSource
from poolboard.storage import StorageManager

logger = logging.getLogger("server")


def configure_logging(level: int = logging.INFO):
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )


def with_rate_limit_headers(request: Request, response: Response) -> Response:
    """Copy the governed request's rate-limit headers onto an error response."""
    result = getattr(request.state, "rate_limit", None)
    if result is not None:
        for name, value in result.headers().items():
            response.headers.setdefault(name, value)
    return response


class DashboardServer:
    """Owns storage, engine components and the FastAPI app for one process."""

    def __init__(
        self,
        api_port: int = 8080,
        db_path: str = "data/poolboard.db",
        pool_api_url: str = "",
        pool_api_token: str = "",
        explorer_url: Optional[str] = DEFAULT_EXPLORER_URL,
        rate_limit: int = DEFAULT_LIMIT,
        rate_window_sec: float = DEFAULT_WINDOW_SEC,
        backfill_blocks: int = BACKFILL_BLOCKS,
        keep_blocks: Optional[int] = KEEP_BLOCKS,
        reconcile_interval: float = RECONCILE_INTERVAL,
        enable_reconcile: bool = True,
        source=None,
        explorer=None,
    ):
        self.api_port = api_port
        self.db_path = db_path
        self.backfill_blocks = backfill_blocks
        self.keep_blocks = keep_blocks
        self.reconcile_interval = reconcile_interval
        self._enable_reconcile = enable_reconcile

        # Upstream clients (injectable for tests)
        self.source = source or PoolApiSource(pool_api_url, token=pool_api_token)
        if explorer is None and explorer_url:
            explorer = ChainExplorer(explorer_url)
        self.explorer = explorer

        # Constructed once per process; the sweep runs between start() and stop()
        self.governor = RequestRateGovernor(limit=rate_limit, window_sec=rate_window_sec)

        # Storage + services are initialized async in initialize()
        self.storage: Optional[StorageManager] = None
        self.privacy: Optional[AddressPrivacyFilter] = None
        self.collector: Optional[WatermarkCollector] = None
        self.leaderboard: Optional[LeaderboardRankingEngine] = None

        self.app = FastAPI(title="Pool Dashboard", version=__version__)
        self.app.state.server = self
        self._register_routes()
        register_all_routers(self.app)
        self._uvicorn_server: Optional[uvicorn.Server] = None

    async def initialize(self):
        """Open storage and wire up services (must be called in async context)."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self.storage = StorageManager(self.db_path)
        await self.storage.initialize()

        self.privacy = AddressPrivacyFilter(self.storage.participants)
        self.collector = WatermarkCollector(
            self.storage, self.source, explorer=self.explorer, keep_blocks=self.keep_blocks,
        )
        self.leaderboard = LeaderboardRankingEngine(self.storage, self.privacy)

        logger.info("Services initialized (db=%s)", self.db_path)

    # -------------------------------------------------------------------
    # FastAPI routes
    # -------------------------------------------------------------------

    def _register_routes(self):
        app = self.app

        @app.exception_handler(aiosqlite.Error)
        async def storage_error_handler(request: Request, exc: aiosqlite.Error):
            logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
            response = JSONResponse(status_code=500, content={"detail": "Storage unavailable"})
            return with_rate_limit_headers(request, response)

        @app.exception_handler(RequestValidationError)
        async def validation_error_handler(request: Request, exc: RequestValidationError):
            response = JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})
            return with_rate_limit_headers(request, response)

        @app.exception_handler(StarletteHTTPException)
        async def http_error_handler(request: Request, exc: StarletteHTTPException):
            response = await http_exception_handler(request, exc)
            return with_rate_limit_headers(request, response)

        @app.get("/")
        async def root():
            return {
                "service": "Pool Dashboard",
                "version": __version__,
                "api_port": self.api_port,
                "blocks_tracked": await self.storage.watermarks.count(),
                "last_block": await self.storage.watermarks.max_height(),
                "participants": await self.storage.participants.count(),
                "rate_limited_clients": self.governor.tracked_clients(),
            }

    # -------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------

    async def start(self):
        """Start storage, background tasks, and the API server."""
        await self.initialize()
        self.governor.start()
        if self._enable_reconcile:
            self.collector.start(
                backfill_blocks=self.backfill_blocks, interval=self.reconcile_interval,
            )

        config = uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=self.api_port,
            log_level="info",
        )
        self._uvicorn_server = uvicorn.Server(config)
        logger.info("REST API starting on port %d", self.api_port)
        try:
            await self._uvicorn_server.serve()
        finally:
            await self.stop()

    async def stop(self):
        """Stop background tasks, close upstream clients and storage."""
        if self._uvicorn_server is not None:
            self._uvicorn_server.should_exit = True
        await self.governor.stop()
        if self.collector:
            await self.collector.stop()
        await self.source.close()
        if self.explorer is not None:
            await self.explorer.close()
        if self.storage:
            await self.storage.close()
            self.storage = None


def main():
    """CLI entry point for the dashboard server."""
    parser = argparse.ArgumentParser(description="Pool Dashboard Server")
    parser.add_argument("--api-port", type=int, default=8080, help="REST API port (default: 8080)")
    parser.add_argument("--db-path", default="data/poolboard.db", help="SQLite database path (default: data/poolboard.db)")
    parser.add_argument("--pool-api-url", default=os.environ.get("API_URL", ""), help="Pool stats API base URL (default: $API_URL)")
    parser.add_argument("--pool-api-token", default=os.environ.get("API_TOKEN", ""), help="Bearer token for the pool API (default: $API_TOKEN)")
    parser.add_argument("--explorer-url", default=DEFAULT_EXPLORER_URL, help=f"Block explorer API (default: {DEFAULT_EXPLORER_URL})")
    parser.add_argument("--rate-limit", type=int, default=DEFAULT_LIMIT, help=f"Requests per client per window (default: {DEFAULT_LIMIT})")
    parser.add_argument("--rate-window", type=float, default=DEFAULT_WINDOW_SEC, help=f"Rate-limit window in seconds (default: {DEFAULT_WINDOW_SEC:.0f})")
    parser.add_argument("--backfill-blocks", type=int, default=BACKFILL_BLOCKS, help=f"Blocks to backfill on startup (default: {BACKFILL_BLOCKS})")
    parser.add_argument("--keep-blocks", type=int, default=KEEP_BLOCKS, help=f"Blocks of history to retain (default: {KEEP_BLOCKS})")
    parser.add_argument("--reconcile-interval", type=float, default=RECONCILE_INTERVAL, help=f"Seconds between gap checks (default: {RECONCILE_INTERVAL:.0f})")
    parser.add_argument("--no-reconcile", action="store_true", help="Disable startup backfill and periodic reconciliation")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    if not args.pool_api_url:
        parser.error("--pool-api-url (or $API_URL) is required")

    server = DashboardServer(
        api_port=args.api_port,
        db_path=args.db_path,
        pool_api_url=args.pool_api_url,
        pool_api_token=args.pool_api_token,
        explorer_url=args.explorer_url,
        rate_limit=args.rate_limit,
        rate_window_sec=args.rate_window,
        backfill_blocks=args.backfill_blocks,
        keep_blocks=args.keep_blocks,
        reconcile_interval=args.reconcile_interval,
        enable_reconcile=not args.no_reconcile,
    )

    logger.info("=" * 60)
    logger.info("  Pool Dashboard Server v%s", __version__)
    logger.info("  REST API:    http://localhost:%d", args.api_port)
    logger.info("  Database:    %s", args.db_path)
    logger.info("  Pool API:    %s", args.pool_api_url)
    logger.info("  Rate limit:  %d per %.0fs", args.rate_limit, args.rate_window)
    logger.info("  Reconcile:   %s", "disabled" if args.no_reconcile else f"every {args.reconcile_interval:.0f}s")
    logger.info("=" * 60)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
