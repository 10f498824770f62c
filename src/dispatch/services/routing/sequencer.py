"""Stop ordering for a single crew route.

Nearest-neighbour construction from the depot followed by 2-opt
improvement. The matrix is indexed with the depot at 0 and stops at 1..N;
every function here is deterministic for a given matrix.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

from ...config import settings
from ...models.domain import DriveTime
from ..geospatial import squared_degree_distance

IMPROVEMENT_EPSILON = 1e-9


@dataclass(slots=True)
class RouteSequence:
    order: list[int]
    legs: list[float]
    total_seconds: float
    partial: bool = False

    def to_drive_time(self) -> DriveTime:
        return DriveTime(total_seconds=self.total_seconds, legs=list(self.legs), stale=False, partial=self.partial)


def nearest_neighbor_order(matrix: Sequence[Sequence[float]]) -> list[int]:
    """Greedy tour from the depot; ties go to the first index found.

    When no finite candidate is left the next unvisited index is taken, so an
    all-unreachable matrix yields the input order.
    """
    n = len(matrix)
    if n < 2:
        return []
    visited = [False] * n
    visited[0] = True
    order: list[int] = []
    current = 0
    for _ in range(n - 1):
        best = -1
        best_time = math.inf
        for j in range(1, n):
            if visited[j]:
                continue
            if best == -1:
                best = j
            t = matrix[current][j]
            if t < best_time:
                best_time = t
                best = j
        order.append(best)
        visited[best] = True
        current = best
    return order


def tour_length(order: Sequence[int], matrix: Sequence[Sequence[float]]) -> float:
    """Closed tour time depot -> order -> depot."""
    if not order:
        return 0.0
    tour = [0, *order, 0]
    return sum(matrix[a][b] for a, b in zip(tour, tour[1:]))


def _path_cost(path: Sequence[int], matrix: Sequence[Sequence[float]]) -> float:
    return sum(matrix[a][b] for a, b in zip(path, path[1:]))


def two_opt_improve(
    order: Sequence[int],
    matrix: Sequence[Sequence[float]],
    max_passes: int | None = None,
) -> list[int]:
    """Reverse tour segments while doing so strictly shortens the closed tour.

    Segment costs are recomputed in both directions, so asymmetric travel
    times never make the tour longer.
    """
    max_passes = settings.two_opt_max_passes if max_passes is None else max_passes
    if len(order) < 2:
        return list(order)

    tour = [0, *order, 0]
    last = len(tour) - 1
    passes = 0
    improved = True
    while improved and passes < max_passes:
        improved = False
        passes += 1
        for i in range(1, last - 1):
            for j in range(i + 1, last):
                before, after = tour[i - 1], tour[j + 1]
                segment = tour[i : j + 1]
                reversed_segment = segment[::-1]
                current = matrix[before][segment[0]] + _path_cost(segment, matrix) + matrix[segment[-1]][after]
                candidate = (
                    matrix[before][reversed_segment[0]]
                    + _path_cost(reversed_segment, matrix)
                    + matrix[reversed_segment[-1]][after]
                )
                if candidate + IMPROVEMENT_EPSILON < current:
                    tour[i : j + 1] = reversed_segment
                    improved = True
    return tour[1:-1]


def drive_legs(order: Sequence[int], matrix: Sequence[Sequence[float]]) -> tuple[list[float], float, bool]:
    """Legs depot->first, stop->stop, last->depot; unreachable legs count as 0."""
    if not order:
        return [], 0.0, False
    tour = [0, *order, 0]
    legs: list[float] = []
    partial = False
    for a, b in zip(tour, tour[1:]):
        leg = matrix[a][b]
        if leg is None or not math.isfinite(leg):
            partial = True
            leg = 0.0
        legs.append(float(leg))
    return legs, sum(legs), partial


def sequence_route(matrix: Sequence[Sequence[float]], max_passes: int | None = None) -> RouteSequence:
    order = nearest_neighbor_order(matrix)
    order = two_opt_improve(order, matrix, max_passes=max_passes)
    legs, total, partial = drive_legs(order, matrix)
    return RouteSequence(order=order, legs=legs, total_seconds=total, partial=partial)


def find_best_insertion_index(
    route: Sequence[Optional[tuple[float, float]]],
    point: Optional[tuple[float, float]],
    depot: Optional[tuple[float, float]],
) -> int:
    """Position in ``route`` where inserting ``point`` adds the least distance.

    Positions next to a stop without coordinates are skipped; a point without
    coordinates goes to the end.
    """
    count = len(route)
    if point is None or count == 0:
        return count
    best_index = count
    best_cost = math.inf
    for i in range(count + 1):
        prev = depot if i == 0 else route[i - 1]
        nxt = depot if i == count else route[i]
        if prev is None or nxt is None:
            continue
        cost = (
            squared_degree_distance(prev, point)
            + squared_degree_distance(point, nxt)
            - squared_degree_distance(prev, nxt)
        )
        if cost < best_cost:
            best_cost = cost
            best_index = i
    return best_index
