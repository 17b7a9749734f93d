"""Discount tier resolution for Forging Events.

Pure functions over a list of tiers and a pledge count. A tier unlocks once
the pledge count reaches its ``buyer_count``; the highest unlocked tier wins.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional


def _whole_number(value: Any) -> int:
    if isinstance(value, int):
        return value
    number = float(value)
    if not number.is_integer():
        raise ValueError(f"Buyer count must be a whole number, got {value!r}")
    return int(number)


@dataclass(frozen=True)
class Tier:
    buyer_count: int
    discount_percentage: float

    @classmethod
    def coerce(cls, value: Any) -> "Tier":
        """Build a Tier from a Tier, ORM row, (count, discount) pair or dict."""
        if isinstance(value, Tier):
            return value
        if isinstance(value, dict):
            buyers = value.get("buyer_count", value.get("buyerCount", value.get("buyers")))
            discount = value.get(
                "discount_percentage",
                value.get("discountPercentage", value.get("discount")),
            )
            return cls(_whole_number(buyers), float(discount))
        if isinstance(value, (tuple, list)):
            buyers, discount = value
            return cls(_whole_number(buyers), float(discount))
        return cls(_whole_number(value.buyer_count), float(value.discount_percentage))

    def to_dict(self) -> Dict[str, Any]:
        return {"buyer_count": self.buyer_count, "discount_percentage": self.discount_percentage}


@dataclass(frozen=True)
class TierProgress:
    current_discount: float
    next_tier: Optional[Tier]
    progress: float
    pledges_to_next_tier: int

    @property
    def highest_tier_unlocked(self) -> bool:
        return self.next_tier is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_discount": self.current_discount,
            "next_tier": self.next_tier.to_dict() if self.next_tier else None,
            "progress": self.progress,
            "pledges_to_next_tier": self.pledges_to_next_tier,
            "highest_tier_unlocked": self.highest_tier_unlocked,
        }


def sort_tiers(tiers: Iterable[Any]) -> List[Tier]:
    return sorted((Tier.coerce(t) for t in tiers), key=lambda t: t.buyer_count)


def unlocked_tier(tiers: Iterable[Any], buyer_count: int) -> Optional[Tier]:
    unlocked = None
    for tier in sort_tiers(tiers):
        if buyer_count >= tier.buyer_count:
            unlocked = tier
    return unlocked


def unlocked_discount(tiers: Iterable[Any], buyer_count: int) -> float:
    tier = unlocked_tier(tiers, buyer_count)
    return tier.discount_percentage if tier else 0.0


def next_tier(tiers: Iterable[Any], buyer_count: int) -> Optional[Tier]:
    for tier in sort_tiers(tiers):
        if tier.buyer_count > buyer_count:
            return tier
    return None


def progress(tiers: Iterable[Any], buyer_count: int) -> float:
    upcoming = next_tier(tiers, buyer_count)
    if upcoming is None:
        return 100.0
    return min(100.0, buyer_count / upcoming.buyer_count * 100)


def describe_progress(tiers: Iterable[Any], buyer_count: int) -> TierProgress:
    ordered = sort_tiers(tiers)
    upcoming = next_tier(ordered, buyer_count)
    return TierProgress(
        current_discount=unlocked_discount(ordered, buyer_count),
        next_tier=upcoming,
        progress=progress(ordered, buyer_count),
        pledges_to_next_tier=(upcoming.buyer_count - buyer_count) if upcoming else 0,
    )


__all__ = [
    "Tier",
    "TierProgress",
    "sort_tiers",
    "unlocked_tier",
    "unlocked_discount",
    "next_tier",
    "progress",
    "describe_progress",
]
