"""
test_leaderboard_api.py - Integration tests for /api/leaderboard, /api/user
and the service root.
"""

import pytest

from poolboard.leaderboard import REGISTRATION_MAX_PER_WINDOW
from poolboard.privacy import truncate

from unit.fake_source import addr

pytestmark = pytest.mark.asyncio


# ── /api/leaderboard ──────────────────────────────────────────────────────

class TestLeaderboardEndpoint:

    async def test_empty(self, client):
        r = client.get("/api/leaderboard")
        assert r.status_code == 200
        assert r.json() == []

    async def test_combined_default(self, seed, client, alice, bob, carol):
        await seed(1, [(alice, 900), (bob, 100)])
        await seed(2, [(alice, 800), (carol, 300)])
        await seed(3, [(bob, 1000), (carol, 500)])
        r = client.get("/api/leaderboard")
        assert r.status_code == 200
        data = r.json()
        assert [d["address"] for d in data] == [truncate(alice), truncate(bob), truncate(carol)]
        assert data[0]["diff_rank"] == 2
        assert data[0]["watermark_rank"] == 1
        assert data[2]["combined_score"] == 3.0

    async def test_combined_hides_private(self, server, seed, client, alice, bob):
        await seed(1, [(alice, 900), (bob, 100)])
        await server.storage.participants.set_visibility(alice, False)
        r = client.get("/api/leaderboard", params={"type": "combined"})
        assert [d["address"] for d in r.json()] == [truncate(bob)]

    async def test_difficulty_board(self, server, seed, client, alice, bob):
        await server.leaderboard.register_participant(alice)
        await server.leaderboard.register_participant(bob)
        await seed(1, [(alice, 10), (bob, 20)])
        r = client.get("/api/leaderboard", params={"type": "difficulty"})
        assert r.status_code == 200
        assert [(d["address"], d["diff"]) for d in r.json()] == [
            (truncate(bob), 20), (truncate(alice), 10),
        ]

    async def test_loyalty_board(self, server, client, alice):
        await server.leaderboard.register_participant(alice)
        r = client.get("/api/leaderboard", params={"type": "loyalty"})
        assert r.status_code == 200
        data = r.json()
        assert len(data) == 1
        assert data[0]["address"] == truncate(alice)
        assert data[0]["authorised_at"] > 0

    async def test_watermarks_board(self, seed, client, alice):
        await seed(1, [(alice, 10)])
        r = client.get("/api/leaderboard", params={"type": "watermarks"})
        assert r.json()[0]["watermark_count"] == 1

    async def test_limit(self, seed, client, alice, bob, carol):
        await seed(1, [(alice, 3), (bob, 2), (carol, 1)])
        r = client.get("/api/leaderboard", params={"limit": 2})
        assert len(r.json()) == 2
        assert client.get("/api/leaderboard", params={"limit": 0}).status_code == 400

    async def test_unknown_board(self, client):
        assert client.get("/api/leaderboard", params={"type": "richest"}).status_code == 400


# ── POST /api/user ────────────────────────────────────────────────────────

class TestRegistration:

    async def test_register(self, server, client, alice):
        r = client.post("/api/user", json={"address": alice})
        assert r.status_code == 200
        data = r.json()
        assert data["message"] == "Address added successfully"
        assert data["address"] == truncate(alice)
        assert alice not in r.text
        row = await server.storage.participants.get(alice)
        assert row["authorised_at"] > 0

    async def test_register_twice(self, client, alice):
        client.post("/api/user", json={"address": alice})
        r = client.post("/api/user", json={"address": alice})
        assert r.status_code == 200
        assert r.json() == {"message": "Address already being monitored"}

    async def test_invalid_address(self, client):
        r = client.post("/api/user", json={"address": "0x1234"})
        assert r.status_code == 400

    async def test_missing_body(self, client):
        assert client.post("/api/user", json={}).status_code == 400

    async def test_burst_throttled(self, server, client):
        for i in range(REGISTRATION_MAX_PER_WINDOW):
            r = client.post("/api/user", json={"address": addr(f"user{i}")})
            assert r.status_code == 200
        r = client.post("/api/user", json={"address": addr("late")})
        assert r.status_code == 429
        assert r.headers["X-RateLimit-Remaining"] == str(server.governor.limit - REGISTRATION_MAX_PER_WINDOW - 1)


# ── Service root and error mapping ────────────────────────────────────────

class TestRoot:

    async def test_root(self, seed, client, alice):
        await seed(5, [(alice, 1)])
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert data["blocks_tracked"] == 1
        assert data["last_block"] == 5
        assert data["participants"] == 1

    async def test_storage_error_is_500(self, server, client):
        await server.storage._db.execute("DROP TABLE block_highest_diff")
        r = client.get("/api/highest-diff")
        assert r.status_code == 500
        assert r.json() == {"detail": "Storage unavailable"}
