# escalada_client/ranking.py
"""
Live ranking computation (pure, deterministic, no I/O).

Algorithm (same as the API's overall export):
- For each route: compute "rank points" per athlete (average-of-positions for ties)
- For each athlete: fill missing routes with a penalty worse than last place on that route,
  then take the geometric mean of rank points across routes (rounded to 3 decimals)
- Sort ascending by total (lower is better), then by name (case-insensitive) for stability
- Assign ranks with ties on equal totals (1, 1, 3)

Times are carried through for display only; they never influence the order.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from escalada_client.store import BoxState

Series = Sequence[float | None]


@dataclass(frozen=True)
class RankingRow:
    rank: int
    name: str
    scores: tuple[float | None, ...]
    times: tuple[float | None, ...]
    total: float


def _name_key(name: str) -> tuple[str, str]:
    # Case-insensitive first; exact name as a final, total tie-breaker.
    return (name.casefold(), name)


def _score_at(series: Series | None, idx: int) -> float | None:
    if not series or idx >= len(series):
        return None
    value = series[idx]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def effective_routes_count(
    routes_count: int | None,
    route_index: int | None = None,
    holds_counts: Sequence[int] | None = None,
) -> int:
    """Number of routes to rank over: the largest of declared count, current route, holds list."""
    return max(
        1,
        int(routes_count or 0),
        int(route_index or 0),
        len(holds_counts or ()),
    )


def rank_points_per_route(
    scores_by_name: Mapping[str, Series],
    routes_count: int,
) -> tuple[dict[str, list[float | None]], list[int]]:
    """
    Compute per-route rank points with tie handling.

    Ties share the average of the positions they occupy (e.g. tie for 2nd/3rd => 2.5 each).
    Returns (points by name, number of scored competitors per route). Competitors without a
    score on a route get None for it; names never scored anywhere do not appear.
    """
    points: dict[str, list[float | None]] = {}
    scored_counts: list[int] = []
    for r in range(routes_count):
        scored = []
        for name, series in scores_by_name.items():
            score = _score_at(series, r)
            if score is not None:
                scored.append((name, score))
        # Highest score first, then name for a stable order inside tied blocks.
        scored.sort(key=lambda item: (-item[1], _name_key(item[0])))

        i = 0
        pos = 1
        while i < len(scored):
            j = i
            while j < len(scored) and scored[j][1] == scored[i][1]:
                j += 1
            tie_count = j - i
            avg_rank = (pos + pos + tie_count - 1) / 2
            for name, _ in scored[i:j]:
                points.setdefault(name, [None] * routes_count)[r] = avg_rank
            pos += tie_count
            i = j
        scored_counts.append(len(scored))
    return points, scored_counts


def geometric_total(
    points: Sequence[float | None],
    routes_count: int,
    scored_counts: Sequence[int],
) -> float:
    """Geometric mean of rank points; a missing route counts as (scored on that route) + 1."""
    filled = []
    for r in range(routes_count):
        value = points[r] if r < len(points) else None
        if value is None:
            value = (scored_counts[r] if r < len(scored_counts) else 0) + 1
        filled.append(value)
    return round(math.prod(filled) ** (1 / routes_count), 3)


def competition_ranks(sorted_totals: Sequence[float]) -> list[int]:
    """Competition ranking ("1, 1, 3") over totals already sorted ascending."""
    ranks: list[int] = []
    prev_total: float | None = None
    prev_rank = 0
    for idx, total in enumerate(sorted_totals, start=1):
        rank = prev_rank if total == prev_total else idx
        ranks.append(rank)
        prev_total = total
        prev_rank = rank
    return ranks


def build_ranking_rows(
    scores_by_name: Mapping[str, Series],
    times_by_name: Mapping[str, Series] | None = None,
    routes_count: int = 1,
) -> list[RankingRow]:
    """Ordered standings for one box. Competitors with no score on any route are omitted."""
    routes_count = max(1, int(routes_count))
    times_by_name = times_by_name or {}
    points, scored_counts = rank_points_per_route(scores_by_name, routes_count)

    base = []
    for name, rp in points.items():
        total = geometric_total(rp, routes_count, scored_counts)
        raw = tuple(_score_at(scores_by_name.get(name), r) for r in range(routes_count))
        raw_times = tuple(_score_at(times_by_name.get(name), r) for r in range(routes_count))
        base.append((total, name, raw, raw_times))

    base.sort(key=lambda item: (item[0], _name_key(item[1])))

    ranks = competition_ranks([item[0] for item in base])
    return [
        RankingRow(rank=rank, name=name, scores=raw, times=raw_times, total=total)
        for rank, (total, name, raw, raw_times) in zip(ranks, base)
    ]


def rank_box(box: BoxState) -> list[RankingRow]:
    routes_count = effective_routes_count(box.routes_count, box.route_index, box.holds_counts)
    return build_ranking_rows(box.scores_by_name(), box.times_by_name(), routes_count)


# ==================== DISPLAY HELPERS ====================
def visible_times(
    rows: Iterable[RankingRow],
    time_criterion_enabled: bool,
    top: int = 3,
) -> dict[str, tuple[float | None, ...]]:
    """Times shown next to the standings: top rows only, and only with the time criterion on."""
    if not time_criterion_enabled:
        return {}
    return {row.name: row.times for row in rows if row.rank <= top}


def podium_ties(rows: Sequence[RankingRow], podium: int = 3) -> list[tuple[str, ...]]:
    """Groups of two or more rows sharing a total whose shared rank is within the podium."""
    groups: dict[int, list[str]] = {}
    for row in rows:
        if row.rank <= podium:
            groups.setdefault(row.rank, []).append(row.name)
    return [tuple(names) for _, names in sorted(groups.items()) if len(names) > 1]


def format_seconds(sec: float | None) -> str:
    if sec is None or isinstance(sec, bool) or not isinstance(sec, (int, float)) or math.isnan(sec):
        return "--:--"
    whole = int(sec)
    return f"{whole // 60:02d}:{whole % 60:02d}"
