"""
Model registry for modelgate.

Static price catalogue for every model id at every service tier, joined
with capability metadata from a capability oracle. Prices are USD per
1M tokens.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional

from modelgate.capability import CapabilityOracle, NullCapabilityOracle
from modelgate.schemas import ModelTier, RegistryEntry


# =============================================================================
# PRICE CATALOGUE
# =============================================================================

# (input, output, cached_input) per 1M tokens. None means unknown.
MODEL_CATALOG: dict[ModelTier, dict[str, tuple[Optional[float], Optional[float], Optional[float]]]] = {

    # -------------------------------------------------------------------------
    # FLEX: cheapest, slowest, may be queued by the provider
    # -------------------------------------------------------------------------
    ModelTier.FLEX: {
        "gpt-5.2": (0.875, 7.0, 0.0875),
        "gpt-5.1": (0.625, 5.0, 0.0625),
        "gpt-5": (0.625, 5.0, 0.0625),
        "gpt-5-mini": (0.125, 1.0, 0.0125),
        "gpt-5-nano": (0.025, 0.2, 0.0025),
        "o3": (1.0, 4.0, 0.25),
        "o4-mini": (0.55, 2.2, 0.138),
    },

    # -------------------------------------------------------------------------
    # STANDARD
    # -------------------------------------------------------------------------
    ModelTier.STANDARD: {
        "gpt-5.2": (1.75, 14.0, 0.175),
        "gpt-5.1": (1.25, 10.0, 0.125),
        "gpt-5": (1.25, 10.0, 0.125),
        "gpt-5-mini": (0.25, 2.0, 0.025),
        "gpt-5-nano": (0.05, 0.4, 0.005),
        "gpt-5.2-chat-latest": (1.75, 14.0, 0.175),
        "gpt-5.1-chat-latest": (1.25, 10.0, 0.125),
        "gpt-5-chat-latest": (1.25, 10.0, 0.125),
        "gpt-5.2-pro": (21.0, 168.0, None),
        "gpt-5-pro": (15.0, 120.0, None),
        "gpt-4.1": (2.0, 8.0, 0.5),
        "gpt-4.1-mini": (0.4, 1.6, 0.1),
        "gpt-4.1-nano": (0.1, 0.4, 0.025),
        "gpt-4o": (2.5, 10.0, 1.25),
        "gpt-4o-2024-05-13": (5.0, 15.0, None),
        "gpt-4o-mini": (0.15, 0.6, 0.075),
        "o1": (15.0, 60.0, 7.5),
        "o1-pro": (150.0, 600.0, None),
        "o3-pro": (20.0, 80.0, None),
        "o3": (2.0, 8.0, 0.5),
        "o3-deep-research": (10.0, 40.0, 2.5),
        "o4-mini": (1.1, 4.4, 0.275),
        "o4-mini-deep-research": (2.0, 8.0, 0.5),
        "o3-mini": (1.1, 4.4, 0.55),
        "o1-mini": (1.1, 4.4, 0.55),
    },

    # -------------------------------------------------------------------------
    # PRIORITY: fastest, most expensive
    # -------------------------------------------------------------------------
    ModelTier.PRIORITY: {
        "gpt-5.2": (3.5, 28.0, 0.35),
        "gpt-5.1": (2.5, 20.0, 0.25),
        "gpt-5": (2.5, 20.0, 0.25),
        "gpt-5-mini": (0.45, 3.6, 0.045),
        "gpt-4.1": (3.5, 14.0, 0.875),
        "gpt-4.1-mini": (0.7, 2.8, 0.175),
        "gpt-4.1-nano": (0.2, 0.8, 0.05),
        "gpt-4o": (4.25, 17.0, 2.125),
        "gpt-4o-2024-05-13": (8.75, 26.25, None),
        "gpt-4o-mini": (0.25, 1.0, 0.125),
        "o3": (3.5, 14.0, 0.875),
        "o4-mini": (2.0, 8.0, 0.5),
    },
}


# =============================================================================
# MODEL SPECS
# =============================================================================

def normalize_tier(tier) -> ModelTier:
    """Map a tier string to ModelTier; anything unknown becomes standard."""
    if isinstance(tier, ModelTier):
        return tier
    raw = str(tier or "").strip().lower()
    for candidate in ModelTier:
        if candidate.value == raw:
            return candidate
    return ModelTier.STANDARD


def parse_model_spec(spec) -> tuple[str, ModelTier]:
    """
    Split ``"<modelId>:<tier>"`` into its parts.

    Args:
        spec: Model spec string. A missing or unknown tier is read as standard.

    Returns:
        (model_id, tier). model_id is "" for empty input.
    """
    raw = str(spec or "").strip()
    if not raw:
        return "", ModelTier.STANDARD
    model_id, sep, tier = raw.rpartition(":")
    if not sep:
        return raw, ModelTier.STANDARD
    return model_id.strip(), normalize_tier(tier)


def format_model_spec(model_id: str, tier="standard") -> str:
    return f"{str(model_id or '').strip()}:{normalize_tier(tier).value}"


def map_service_tier(tier) -> str:
    """Service tier name the remote API expects for a catalogue tier."""
    normalized = normalize_tier(tier)
    if normalized == ModelTier.FLEX:
        return "flex"
    if normalized == ModelTier.PRIORITY:
        return "priority"
    return "default"


# =============================================================================
# REGISTRY
# =============================================================================

def model_family(model_id: str) -> str:
    mid = model_id.lower()
    if mid.startswith("gpt"):
        return "gpt"
    if mid.startswith("o"):
        return "o"
    return "other"


def model_notes(model_id: str) -> str:
    mid = model_id.lower()
    notes = []
    if mid.startswith("gpt-5.2"):
        notes.append("flagship")
    if "-pro" in mid:
        notes.append("pro")
    if "-mini" in mid:
        notes.append("mini")
    if "-nano" in mid:
        notes.append("nano")
    if "chat-latest" in mid:
        notes.append("chat-latest")
    if mid.startswith("o"):
        notes.append("reasoning")
    if "deep-research" in mid:
        notes.append("deep-research")
    return ", ".join(notes)


@dataclass
class ModelRegistry:
    """Registry entries keyed by model spec."""
    entries: list[RegistryEntry] = field(default_factory=list)
    by_key: dict[str, RegistryEntry] = field(default_factory=dict)

    def get(self, spec) -> Optional[RegistryEntry]:
        model_id, tier = parse_model_spec(spec)
        return self.by_key.get(format_model_spec(model_id, tier)) if model_id else None

    def __contains__(self, spec) -> bool:
        return self.get(spec) is not None

    def __iter__(self) -> Iterator[RegistryEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def specs(self) -> list[str]:
        return [entry.spec for entry in self.entries]


def build_registry(oracle: Optional[CapabilityOracle] = None) -> ModelRegistry:
    """
    Build the registry from the price catalogue.

    Deterministic and side-effect free. Without an oracle every model ranks 0
    and nothing is marked specialized.
    """
    oracle = oracle or NullCapabilityOracle()
    registry = ModelRegistry()

    for tier in (ModelTier.FLEX, ModelTier.STANDARD, ModelTier.PRIORITY):
        for model_id, (input_price, output_price, cached) in MODEL_CATALOG[tier].items():
            key = format_model_spec(model_id, tier)
            if key in registry.by_key:
                continue
            sum_1m = None
            if input_price is not None and output_price is not None:
                sum_1m = input_price + output_price
            entry = RegistryEntry(
                id=model_id,
                tier=tier,
                family=model_family(model_id),
                specialized=bool(oracle.is_deep_research(model_id)),
                notes=model_notes(model_id),
                capability_rank=int(oracle.rank(model_id)),
                input_price=input_price,
                output_price=output_price,
                cached_input_price=cached,
                sum_1m=sum_1m,
            )
            registry.entries.append(entry)
            registry.by_key[key] = entry

    return registry
