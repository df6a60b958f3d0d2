"""
privacy.py - Address visibility and truncation.

Participants are public unless they opted out. Every address that leaves
the engine goes through truncate().
"""

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from poolboard.storage import ParticipantRepo

logger = logging.getLogger("privacy")

TRUNCATE_KEEP = 4
ELLIPSIS = "..."


def truncate(address: str) -> str:
    """Keep the first and last four characters, e.g. ``bc1q...x7k2``.

    Total for any input: empty/None gives "", and addresses of eight
    characters or fewer are masked down to their first character.
    """
    if not address:
        return ""
    address = str(address)
    if len(address) <= TRUNCATE_KEEP * 2:
        return address[:1] + ELLIPSIS
    return f"{address[:TRUNCATE_KEEP]}{ELLIPSIS}{address[-TRUNCATE_KEEP:]}"


class AddressPrivacyFilter:
    """Resolves whether a participant may appear in public views."""

    def __init__(self, participant_repo: "ParticipantRepo"):
        self._participants = participant_repo

    async def is_public(self, address: str) -> bool:
        visibility = await self._participants.get_visibility(address)
        if visibility is None:
            # No registry row: opt-out model, treat as public
            return True
        if visibility:
            return True
        return False

    @staticmethod
    def truncate(address: str) -> str:
        return truncate(address)
