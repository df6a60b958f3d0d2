"""
Pool Dashboard - Server Package

Highest-difficulty watermark collection and privacy-preserving leaderboards
for a mining pool dashboard. Includes SQLite storage, the collector, the
ranking engine, a request rate governor, and the REST API.
"""

__version__ = "0.1.0"

__all__ = [
    "collector",
    "leaderboard",
    "privacy",
    "ratelimit",
    "server",
    "source",
    "storage",
]
