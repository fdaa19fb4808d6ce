"""
Capability ranking for modelgate.

The registry asks a capability oracle how strong each model id is. The
heuristic oracle ranks by a fixed table of known models; the null oracle
is used when no ranking is available.
"""

from __future__ import annotations

from typing import Protocol


class CapabilityOracle(Protocol):
    """Capability oracle interface."""

    def rank(self, model_id: str) -> int:
        ...

    def is_pro(self, model_id: str) -> bool:
        ...

    def is_mini(self, model_id: str) -> bool:
        ...

    def is_nano(self, model_id: str) -> bool:
        ...

    def is_deep_research(self, model_id: str) -> bool:
        ...


# Higher is stronger. Unlisted models get DEFAULT_RANK.
BASE_RANKS: dict[str, int] = {
    "gpt-5.2": 100,
    "gpt-5.1": 95,
    "gpt-5": 90,
    "o3": 88,
    "gpt-4o": 85,
    "gpt-4.1": 84,
    "o1": 82,
    "o4-mini": 75,
    "gpt-5-mini": 74,
    "gpt-4.1-mini": 72,
    "o3-mini": 70,
    "o1-mini": 66,
    "gpt-4o-mini": 65,
    "gpt-5-nano": 60,
    "gpt-4.1-nano": 58,
}

DEFAULT_RANK = 50
PRO_BONUS = 6
CHAT_LATEST_PENALTY = 1


def _norm(model_id: str) -> str:
    return str(model_id or "").strip().lower()


class HeuristicCapabilityRank:
    """Rank models by name using the built-in table."""

    def __init__(self, base_ranks: dict[str, int] | None = None, default_rank: int = DEFAULT_RANK):
        self.base_ranks = dict(base_ranks or BASE_RANKS)
        self.default_rank = default_rank

    def is_pro(self, model_id: str) -> bool:
        return "-pro" in _norm(model_id)

    def is_mini(self, model_id: str) -> bool:
        return "-mini" in _norm(model_id)

    def is_nano(self, model_id: str) -> bool:
        return "-nano" in _norm(model_id)

    def is_chat_latest(self, model_id: str) -> bool:
        return "chat-latest" in _norm(model_id)

    def is_deep_research(self, model_id: str) -> bool:
        return "deep-research" in _norm(model_id)

    def base_id(self, model_id: str) -> str:
        """Strip variant suffixes so ``gpt-5-pro`` ranks from ``gpt-5``."""
        return _norm(model_id).replace("-chat-latest", "").replace("-pro", "")

    def rank(self, model_id: str) -> int:
        mid = _norm(model_id)
        if not mid:
            return 0

        if self.is_deep_research(mid):
            if "o3" in mid:
                return 86
            if "o4-mini" in mid:
                return 76

        rank = self.base_ranks.get(self.base_id(mid), self.default_rank)
        if self.is_pro(mid):
            rank += PRO_BONUS
        if self.is_chat_latest(mid):
            rank -= CHAT_LATEST_PENALTY
        return rank


class NullCapabilityOracle:
    """Oracle used when no capability data exists: everything ranks 0."""

    def rank(self, model_id: str) -> int:
        return 0

    def is_pro(self, model_id: str) -> bool:
        return False

    def is_mini(self, model_id: str) -> bool:
        return False

    def is_nano(self, model_id: str) -> bool:
        return False

    def is_deep_research(self, model_id: str) -> bool:
        return False
