"""Pairwise travel-time matrix construction with transparent chunking."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Callable, Optional, Sequence

import numpy as np

from ...config import settings
from .osrm_client import DurationBlock, Point, TravelTimeProvider, default_travel_time_provider

logger = logging.getLogger(__name__)

UNREACHABLE = math.inf

Matrix = list[list[float]]


def unreachable_matrix(size: int) -> Matrix:
    """All-infinite matrix with a zero diagonal."""
    matrix = np.full((size, size), UNREACHABLE)
    np.fill_diagonal(matrix, 0.0)
    return matrix.tolist()


def _block_ranges(count: int, chunk_size: int) -> list[tuple[int, int]]:
    return [(start, min(start + chunk_size, count)) for start in range(0, count, chunk_size)]


def _as_seconds(block: DurationBlock, rows: int, cols: int) -> np.ndarray:
    values = np.full((rows, cols), UNREACHABLE)
    for i, row in enumerate(block[:rows]):
        for j, value in enumerate(row[:cols]):
            if value is None:
                continue
            seconds = float(value)
            if math.isfinite(seconds) and seconds >= 0:
                values[i, j] = seconds
    return values


class TravelTimeMatrixBuilder:
    """Build an N x N seconds matrix for an ordered point list (index 0 = depot).

    Requests over ``max_points_per_request`` points are split into
    origin/destination blocks, fetched concurrently and stitched back with the
    same indexing as a single request. A failed block stays unreachable; a
    failure of every block yields an all-infinite matrix instead of an error.
    """

    def __init__(
        self,
        provider: TravelTimeProvider | None = None,
        max_points_per_request: int | None = None,
        max_parallel_requests: int | None = None,
        on_failure: Callable[[str], None] | None = None,
    ) -> None:
        self.provider = provider or default_travel_time_provider()
        self.max_points_per_request = max_points_per_request or settings.matrix_max_points_per_request
        self.max_parallel_requests = max_parallel_requests or settings.matrix_max_parallel_requests
        self.on_failure = on_failure
        if self.max_points_per_request < 1:
            raise ValueError("max_points_per_request must be >= 1")

    async def _fetch_block(
        self,
        semaphore: asyncio.Semaphore,
        points: Sequence[Point],
        src: tuple[int, int],
        dst: tuple[int, int],
    ) -> tuple[tuple[int, int], tuple[int, int], Optional[DurationBlock]]:
        async with semaphore:
            try:
                block = await self.provider.durations(points[src[0] : src[1]], points[dst[0] : dst[1]])
                return src, dst, block
            except Exception as e:
                logger.warning(
                    "Failed to get travel times for block [%d:%d] -> [%d:%d]: %s",
                    src[0], src[1], dst[0], dst[1], e,
                )
                return src, dst, None

    async def build(self, points: Sequence[Point]) -> Matrix:
        count = len(points)
        if count == 0:
            return []
        if count == 1:
            return [[0.0]]

        start_time = time.monotonic()
        ranges = _block_ranges(count, self.max_points_per_request)
        if len(ranges) > 1:
            logger.info(
                "Chunking travel-time request: %d points (max per request: %d, blocks: %d)",
                count, self.max_points_per_request, len(ranges) ** 2,
            )

        semaphore = asyncio.Semaphore(self.max_parallel_requests)
        results = await asyncio.gather(
            *(self._fetch_block(semaphore, points, src, dst) for src in ranges for dst in ranges)
        )

        matrix = np.full((count, count), UNREACHABLE)
        failed = 0
        for (src_start, src_end), (dst_start, dst_end), block in results:
            if block is None:
                failed += 1
                continue
            matrix[src_start:src_end, dst_start:dst_end] = _as_seconds(
                block, src_end - src_start, dst_end - dst_start
            )
        np.fill_diagonal(matrix, 0.0)

        if failed == len(results):
            message = f"Travel-time service unavailable for {count} points; drive times are unknown."
            logger.warning(message)
            if self.on_failure:
                self.on_failure(message)
        elif failed:
            logger.warning(
                "Partial failure: %d/%d travel-time blocks failed; affected pairs are unreachable.",
                failed, len(results),
            )
        else:
            logger.debug("Travel-time matrix for %d points built in %.2fs", count, time.monotonic() - start_time)

        return matrix.tolist()
