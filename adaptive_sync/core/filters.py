"""
Application-side place filtering.

Runs after a cell's raw count has been taken, so removing chains never hides a clipped cell
from the subdivision planner.
"""

import re
from typing import Iterable, List, Optional

from ..config import EXCLUDED_CHAINS
from ..models import ExternalPlace


class ChainFilter:
    """Drop places whose name contains an excluded chain name as whole words (case-insensitive)."""

    def __init__(self, excluded_chains: Optional[Iterable[str]] = None):
        chains = EXCLUDED_CHAINS if excluded_chains is None else excluded_chains
        self.excluded_chains = [c.strip().lower() for c in chains if c and c.strip()]
        self._patterns = [
            re.compile(r"(?<![\w'])" + re.escape(chain) + r"(?![\w'])", re.IGNORECASE)
            for chain in self.excluded_chains
        ]

    def is_excluded(self, place: ExternalPlace) -> bool:
        name = place.name or ""
        return any(p.search(name) for p in self._patterns)

    def __call__(self, places: List[ExternalPlace]) -> List[ExternalPlace]:
        return [p for p in places if not self.is_excluded(p)]


def keep_all(places: List[ExternalPlace]) -> List[ExternalPlace]:
    return list(places)
