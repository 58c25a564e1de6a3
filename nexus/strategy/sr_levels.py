"""Support/Resistance level detection from pivot clustering — pure functions."""

from dataclasses import dataclass
from typing import Sequence

from nexus.strategy.models import Candle, LevelType, SRLevel

DEFAULT_LOOKBACK = 20
CLUSTER_TOLERANCE = 0.002  # relative distance, 0.2 %
MAX_LEVELS = 6


@dataclass(frozen=True)
class Pivot:
    """A local extreme: a pivot high (resistance) or pivot low (support)."""

    price: float
    level_type: LevelType
    index: int


def find_pivots(candles: Sequence[Candle], lookback: int = DEFAULT_LOOKBACK) -> list[Pivot]:
    """Identify pivot highs and lows.

    A pivot high is a candle whose high is strictly above every other
    high within *lookback* candles on each side; pivot lows mirror this
    on the low.  Only candles with a full window on both sides qualify.
    Pivots come back in index order, a high before a low at one index.
    """
    pivots: list[Pivot] = []
    for i in range(lookback, len(candles) - lookback):
        high = candles[i].high
        low = candles[i].low
        is_high = True
        is_low = True
        for j in range(i - lookback, i + lookback + 1):
            if j == i:
                continue
            if candles[j].high >= high:
                is_high = False
            if candles[j].low <= low:
                is_low = False
            if not is_high and not is_low:
                break
        if is_high:
            pivots.append(Pivot(price=high, level_type=LevelType.RESISTANCE, index=i))
        if is_low:
            pivots.append(Pivot(price=low, level_type=LevelType.SUPPORT, index=i))
    return pivots


def cluster_pivots(
    pivots: Sequence[Pivot], tolerance: float = CLUSTER_TOLERANCE
) -> list[SRLevel]:
    """Merge nearby pivots into levels.

    Each pivot not yet clustered becomes the representative of a new
    cluster and absorbs every later unclustered pivot whose distance to
    it, relative to the representative price, is below *tolerance*.

    Level type is the majority of member types (ties go to support),
    price is the member mean and strength the member count.  Levels are
    returned in cluster creation order.
    """
    used = [False] * len(pivots)
    levels: list[SRLevel] = []

    for i, rep in enumerate(pivots):
        if used[i]:
            continue
        used[i] = True
        members = [rep]
        for j in range(i + 1, len(pivots)):
            if used[j]:
                continue
            if abs(rep.price - pivots[j].price) / rep.price < tolerance:
                members.append(pivots[j])
                used[j] = True

        supports = sum(1 for m in members if m.level_type is LevelType.SUPPORT)
        resistances = len(members) - supports
        level_type = LevelType.SUPPORT if supports >= resistances else LevelType.RESISTANCE
        levels.append(
            SRLevel(
                level_type=level_type,
                price=sum(m.price for m in members) / len(members),
                strength=len(members),
            )
        )
    return levels


def detect_sr_levels(
    candles: Sequence[Candle],
    lookback: int = DEFAULT_LOOKBACK,
    tolerance: float = CLUSTER_TOLERANCE,
    max_levels: int = MAX_LEVELS,
) -> list[SRLevel]:
    """Detect clustered support and resistance levels.

    Args:
        candles: Chronological candles.
        lookback: Half-window size for pivot detection.
        tolerance: Relative clustering distance.
        max_levels: Number of strongest levels to keep.

    Returns:
        Up to *max_levels* ``SRLevel`` objects, strongest first.
    """
    levels = cluster_pivots(find_pivots(candles, lookback), tolerance)
    levels.sort(key=lambda lv: lv.strength, reverse=True)
    return levels[:max_levels]
