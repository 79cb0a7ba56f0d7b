"""Follow window resolution.

A follow window is the span during which one purchase was live: from its
creation until now (active) or until its completion time (completed).
Renewals produce several windows per capper, merged here into disjoint
intervals. All functions are pure.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from copytrader.engine.follow_ledger import FollowSnapshot
from copytrader.models.follow_purchase import FollowStatus

_WINDOW_STATUSES = (FollowStatus.ACTIVE.value, FollowStatus.COMPLETED.value)


@dataclass(frozen=True, order=True)
class FollowWindow:
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


def build_windows(
    purchases: Iterable[FollowSnapshot], now: datetime
) -> dict[str, list[FollowWindow]]:
    """Raw (unmerged) windows per capper. Refunded and inverted windows are dropped."""
    windows: dict[str, list[FollowWindow]] = {}
    for purchase in purchases:
        if purchase.status not in _WINDOW_STATUSES:
            continue
        end = now if purchase.status == FollowStatus.ACTIVE.value else purchase.updated_at
        if end < purchase.created_at:
            continue
        windows.setdefault(purchase.capper_user_id, []).append(
            FollowWindow(purchase.created_at, end)
        )
    return windows


def merge_windows(windows: Iterable[FollowWindow]) -> list[FollowWindow]:
    """Merge overlapping or touching windows into a sorted, disjoint list."""
    merged: list[FollowWindow] = []
    for window in sorted(windows):
        if merged and window.start <= merged[-1].end:
            last = merged[-1]
            if window.end > last.end:
                merged[-1] = FollowWindow(last.start, window.end)
            continue
        merged.append(window)
    return merged


def resolve_windows(
    purchases: Iterable[FollowSnapshot], now: datetime
) -> dict[str, list[FollowWindow]]:
    """Merged windows per capper for one follower's purchases."""
    return {
        capper_id: merge_windows(windows)
        for capper_id, windows in build_windows(purchases, now).items()
    }


def is_trade_eligible(windows: Sequence[FollowWindow], created_at: datetime) -> bool:
    """True if a trade created at *created_at* falls inside any window."""
    return any(window.contains(created_at) for window in windows)


def select_representative(
    purchases: Iterable[FollowSnapshot],
) -> FollowSnapshot | None:
    """Pick the purchase shown for a capper.

    Prefers an active purchase, otherwise the newest completed one. Ties go to
    the most recently created row.
    """
    active: list[FollowSnapshot] = []
    completed: list[FollowSnapshot] = []
    for purchase in purchases:
        if purchase.status == FollowStatus.ACTIVE.value:
            active.append(purchase)
        elif purchase.status == FollowStatus.COMPLETED.value:
            completed.append(purchase)
    pool = active or completed
    if not pool:
        return None
    return max(pool, key=lambda p: (p.created_at, p.id))
