from __future__ import annotations


def position_between(previous: int | None, following: int | None, *, gap: int, min_gap: int) -> int | None:
    """Sparse ordering key between two neighbours, or None when the lane needs a rebalance.

    An empty lane starts at ``gap``; prepend and append step one ``gap`` past the
    edge. A midpoint is only accepted while it keeps ``min_gap`` on both sides.
    """

    if previous is None and following is None:
        return gap
    if previous is None:
        return following - gap
    if following is None:
        return previous + gap
    if following - previous < 2 * min_gap:
        return None
    return previous + (following - previous) // 2


def rebalanced_positions(count: int, *, gap: int) -> list[int]:
    return [gap * (index + 1) for index in range(count)]

