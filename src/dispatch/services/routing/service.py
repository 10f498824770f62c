"""Route optimization pipeline: geocode, build the travel-time matrix, sequence, write back."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from ...config import settings
from ...models.domain import UNASSIGNED, DriveTime, Job
from ..geocoding import Geocoder
from ..geospatial import polar_angle
from ..schedule.store import ScheduleStore
from .matrix import TravelTimeMatrixBuilder
from .sequencer import drive_legs, sequence_route

logger = logging.getLogger(__name__)

Point = tuple[float, float]


@dataclass(slots=True)
class OptimizeProgress:
    step: str
    current: int = 0
    total: int = 0


ProgressCallback = Callable[[OptimizeProgress], None]


@dataclass(slots=True)
class DayOptimizationResult:
    routed_lanes: List[str]
    skipped_lanes: List[str]
    ungeocoded_job_ids: List[str]


def cluster_by_angle(jobs: Sequence[Job], cluster_count: int, depot: Point) -> List[List[Job]]:
    """Split geocoded jobs into angular sectors around the depot.

    Jobs are sorted by their angle from the depot and cut into runs of
    ``ceil(n / cluster_count)``; trailing clusters may be empty.
    """
    if cluster_count <= 0 or not jobs:
        return [list(jobs)]
    with_angle = sorted(jobs, key=lambda job: polar_angle(depot, job.coordinates))
    per_cluster = math.ceil(len(jobs) / cluster_count)
    clusters: list[list[Job]] = [[] for _ in range(cluster_count)]
    for index, job in enumerate(with_angle):
        clusters[min(index // per_cluster, cluster_count - 1)].append(job)
    return clusters


def legs_for_jobs(jobs: Sequence[Job], depot: Point, matrix: Sequence[Sequence[float]]) -> DriveTime:
    """Drive time for ``jobs`` in their current order.

    ``matrix`` is indexed depot first, then the geocoded jobs in list order.
    Jobs without coordinates get a zero leg; the return leg comes last.
    """
    order = list(range(1, len(matrix)))
    legs, total, partial = drive_legs(order, matrix)
    if not legs:
        return DriveTime(total_seconds=0.0, legs=[0.0] * len(jobs))
    outbound = iter(legs[:-1])
    per_job = [next(outbound) if job.has_coordinates else 0.0 for job in jobs]
    return DriveTime(total_seconds=total, legs=[*per_job, legs[-1]], partial=partial)


class RouteOptimizer:
    """Runs the geocode -> matrix -> sequence pipeline against a ScheduleStore.

    Every result is written back through the store's validating write-back
    methods, so work that finishes after its lane changed is discarded.
    """

    def __init__(
        self,
        geocoder: Geocoder | None = None,
        matrix_builder: TravelTimeMatrixBuilder | None = None,
        depot_address: str | None = None,
        depot_fallback: Point | None = None,
    ) -> None:
        self.geocoder = geocoder or Geocoder()
        self.matrix_builder = matrix_builder or TravelTimeMatrixBuilder()
        self.depot_address = depot_address or settings.depot_address
        self.depot_fallback = depot_fallback or (settings.depot_latitude, settings.depot_longitude)
        self._depot: Optional[Point] = None

    async def depot(self) -> Point:
        if self._depot is None:
            self._depot = await self.geocoder.resolve_depot(self.depot_address, self.depot_fallback)
        return self._depot

    async def geocode_jobs(
        self,
        store: ScheduleStore,
        jobs: Sequence[Job],
        on_progress: ProgressCallback | None = None,
    ) -> int:
        """Fill in missing coordinates; returns how many jobs were updated."""
        pending = [job for job in jobs if not job.has_coordinates and (job.address or "").strip()]
        if on_progress:
            on_progress(OptimizeProgress("geocoding", 0, len(pending)))
        if not pending:
            return 0

        def report(done: int, total: int) -> None:
            if on_progress:
                on_progress(OptimizeProgress("geocoding", done, total))

        results = await self.geocoder.geocode_many([job.address for job in pending], on_progress=report)
        updated = 0
        for job, coords in zip(pending, results):
            if coords is None:
                continue
            if store.set_coordinates(job.id, job.address, coords[0], coords[1]):
                updated += 1
        return updated

    async def _route(self, jobs: Sequence[Job], depot: Point) -> tuple[list[str], DriveTime]:
        with_coords = [job for job in jobs if job.has_coordinates]
        without_coords = [job for job in jobs if not job.has_coordinates]
        if not with_coords:
            return [job.id for job in jobs], DriveTime(total_seconds=0.0, legs=[0.0] * len(jobs))

        matrix = await self.matrix_builder.build([depot, *(job.coordinates for job in with_coords)])
        route = sequence_route(matrix)
        ordered = [with_coords[index - 1] for index in route.order] + without_coords
        drive = route.to_drive_time()
        outbound = drive.legs[:-1]
        drive.legs = [*outbound, *([0.0] * len(without_coords)), drive.legs[-1]]
        return [job.id for job in ordered], drive

    async def optimize_lane(self, store: ScheduleStore, lane_id: str, on_progress: ProgressCallback | None = None) -> bool:
        """Re-sequence one crew lane. Returns False when the result went stale."""
        lane = store.lane(lane_id)
        if lane is None or not lane.is_crew:
            return False
        if on_progress:
            on_progress(OptimizeProgress("geocoding_depot"))
        depot = await self.depot()
        await self.geocode_jobs(store, list(store.schedule.lanes.get(lane_id, [])), on_progress)

        jobs = list(store.schedule.lanes.get(lane_id, []))
        if not jobs:
            return store.apply_route(lane_id, [], DriveTime())
        fingerprint = store.lane_fingerprint(lane_id)
        if on_progress:
            on_progress(OptimizeProgress("matrix"))
        ordered_ids, drive = await self._route(jobs, depot)
        if on_progress:
            on_progress(OptimizeProgress("routes", 1, 1))
        applied = store.apply_route(lane_id, ordered_ids, drive, fingerprint)
        if not applied:
            logger.info("Route for lane %s changed while optimizing; result discarded", lane_id)
        return applied

    async def refresh_drive_time(self, store: ScheduleStore, lane_id: str) -> bool:
        """Recompute a lane's drive legs without reordering it."""
        jobs = list(store.schedule.lanes.get(lane_id, []))
        job_ids = [job.id for job in jobs]
        if not jobs:
            return store.set_drive_time(lane_id, job_ids, DriveTime())
        depot = await self.depot()
        points = [job.coordinates for job in jobs if job.has_coordinates]
        if not points:
            return store.set_drive_time(lane_id, job_ids, DriveTime(total_seconds=0.0, legs=[0.0] * len(jobs)))
        fingerprint = store.lane_fingerprint(lane_id)
        matrix = await self.matrix_builder.build([depot, *points])
        return store.set_drive_time(lane_id, job_ids, legs_for_jobs(jobs, depot, matrix), fingerprint)

    async def refresh_stale(self, store: ScheduleStore) -> List[str]:
        refreshed = []
        for lane_id in store.stale_lanes():
            if await self.refresh_drive_time(store, lane_id):
                refreshed.append(lane_id)
        return refreshed

    async def move_job_to_lane(self, store: ScheduleStore, job_id: str, lane_id: str) -> bool:
        """Move a job and re-sequence the receiving crew's route."""
        location = store.schedule.locate(job_id)
        if location is None:
            return False
        from_lane = location[0]
        if not store.move_job(job_id, lane_id):
            return False
        if lane_id != UNASSIGNED:
            await self.optimize_lane(store, lane_id)
        source = store.lane(from_lane)
        if from_lane != lane_id and source is not None and source.is_crew:
            await self.refresh_drive_time(store, from_lane)
        return True

    async def optimize_day(self, store: ScheduleStore, on_progress: ProgressCallback | None = None) -> DayOptimizationResult:
        """Re-cluster every crew lane's geocodable jobs by sector and route each crew.

        Pinned jobs and jobs that cannot be geocoded stay in their lane. A crew
        whose routing fails is skipped and keeps its unrouted job list.
        """

        def report(step: str, current: int = 0, total: int = 0) -> None:
            if on_progress:
                on_progress(OptimizeProgress(step, current, total))

        crews = store.crew_lanes()
        report("geocoding_depot")
        depot = await self.depot()

        all_jobs = [job for lane in crews for job in store.schedule.lanes.get(lane.id, [])]
        await self.geocode_jobs(store, all_jobs, on_progress)

        current: Dict[str, list[Job]] = {lane.id: list(store.schedule.lanes.get(lane.id, [])) for lane in crews}
        movable = [job for jobs in current.values() for job in jobs if job.has_coordinates and job.pinned_start is None]
        ungeocoded = [job.id for jobs in current.values() for job in jobs if not job.has_coordinates]
        if not movable or not crews:
            return DayOptimizationResult(routed_lanes=[], skipped_lanes=[], ungeocoded_job_ids=ungeocoded)

        report("matrix")
        report("clustering")
        clusters = cluster_by_angle(movable, len(crews), depot)
        moved_ids = {job.id for job in movable}
        lane_lists: Dict[str, list[Job]] = {}
        for index, lane in enumerate(crews):
            staying = [job for job in current[lane.id] if job.id not in moved_ids]
            lane_lists[lane.id] = clusters[index] + staying if index < len(clusters) else staying

        if not store.reassign_lanes({lane_id: [job.id for job in jobs] for lane_id, jobs in lane_lists.items()}):
            logger.info("Schedule changed during full optimization; result discarded")
            return DayOptimizationResult(routed_lanes=[], skipped_lanes=[lane.id for lane in crews], ungeocoded_job_ids=ungeocoded)

        routed: list[str] = []
        skipped: list[str] = []
        for index, lane in enumerate(crews, start=1):
            report("routes", index, len(crews))
            jobs = list(store.schedule.lanes.get(lane.id, []))
            if not jobs:
                continue
            fingerprint = store.lane_fingerprint(lane.id)
            try:
                ordered_ids, drive = await self._route(jobs, depot)
            except Exception:
                logger.exception("Routing failed for crew %s; skipping", lane.name)
                skipped.append(lane.id)
                continue
            if store.apply_route(lane.id, ordered_ids, drive, fingerprint):
                routed.append(lane.id)
            else:
                skipped.append(lane.id)

        return DayOptimizationResult(routed_lanes=routed, skipped_lanes=skipped, ungeocoded_job_ids=ungeocoded)
