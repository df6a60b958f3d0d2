"""
test_privacy.py - Address truncation and public/private resolution.
"""

import pytest

from poolboard.privacy import ELLIPSIS, truncate


class TestTruncate:

    def test_standard_address(self):
        assert truncate("bc1qabcdefghijklmnopqrstuvwxyz0123") == "bc1q...0123"

    def test_empty(self):
        assert truncate("") == ""

    def test_none(self):
        assert truncate(None) == ""

    def test_short_address_never_revealed(self):
        for value in ("a", "abcd", "abcdefgh"):
            out = truncate(value)
            assert out != value
            assert ELLIPSIS in out

    @pytest.mark.parametrize("length", range(0, 101))
    def test_total_for_all_lengths(self, length):
        value = "x" * length
        out = truncate(value)
        assert isinstance(out, str)
        if length > 8:
            assert ELLIPSIS in out
            assert len(out) == 4 + len(ELLIPSIS) + 4

    def test_deterministic(self):
        a = "3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy"
        assert truncate(a) == truncate(a)


class TestIsPublic:

    @pytest.mark.asyncio
    async def test_unregistered_is_public(self, privacy, alice):
        assert await privacy.is_public(alice) is True

    @pytest.mark.asyncio
    async def test_registered_default_public(self, storage, privacy, alice):
        await storage.participants.register(alice)
        assert await privacy.is_public(alice) is True

    @pytest.mark.asyncio
    async def test_opted_out_is_private(self, storage, privacy, alice):
        await storage.participants.register(alice)
        await storage.participants.set_visibility(alice, False)
        assert await privacy.is_public(alice) is False

    @pytest.mark.asyncio
    async def test_opt_back_in(self, storage, privacy, alice):
        await storage.participants.register(alice)
        await storage.participants.set_visibility(alice, False)
        await storage.participants.set_visibility(alice, True)
        assert await privacy.is_public(alice) is True
