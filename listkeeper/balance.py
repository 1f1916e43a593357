"""
balance.py

Balance calculator for the three campaign lists. Pure functions, no I/O.
"""

from typing import Dict, Sequence

from .models import CAMPAIGN_LISTS, ListHandle

DEFAULT_TOLERANCE_PCT = 5.0


def deviation(c1: int, c2: int, c3: int) -> float:
    """
    Max over the three lists of |count - mean| / mean, as a percentage.

    An empty universe (total 0) reports 0 rather than dividing by zero.
    """
    counts = (c1, c2, c3)
    total = sum(counts)
    if total == 0:
        return 0.0
    mean = total / 3.0
    return max(abs(count - mean) / mean for count in counts) * 100.0


def is_balanced(c1: int, c2: int, c3: int, tolerance_pct: float = DEFAULT_TOLERANCE_PCT) -> bool:
    # float noise: 60/1200 must still read as exactly 5%
    return round(deviation(c1, c2, c3), 9) <= tolerance_pct


def campaign_counts(state: Dict) -> Sequence[int]:
    """Campaign sizes in list order from a handle- or value-keyed snapshot"""
    counts = []
    for handle in CAMPAIGN_LISTS:
        if handle in state:
            counts.append(int(state[handle]))
        else:
            counts.append(int(state.get(handle.value, 0)))
    return counts


def state_deviation(state: Dict) -> float:
    return deviation(*campaign_counts(state))


def state_is_balanced(state: Dict, tolerance_pct: float = DEFAULT_TOLERANCE_PCT) -> bool:
    return is_balanced(*campaign_counts(state), tolerance_pct=tolerance_pct)


def equal_targets(state: Dict) -> Dict[ListHandle, int]:
    """Equal split of the combined campaign size; the remainder goes to the earliest lists"""
    counts = campaign_counts(state)
    total = sum(counts)
    base, remainder = divmod(total, 3)
    return {handle: base + (1 if i < remainder else 0) for i, handle in enumerate(CAMPAIGN_LISTS)}
