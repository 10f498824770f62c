"""Manager -> crew roster and the lanes derived from it."""

from __future__ import annotations

import colorsys
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from ...models.domain import Lane, LaneKind, ManagerGroup

logger = logging.getLogger(__name__)

LANE_COLORS = (
    "#ef4444", "#f97316", "#eab308", "#22c55e", "#06b6d4", "#8b5cf6", "#ec4899", "#84cc16",
    "#f43f5e", "#fb923c", "#a3e635", "#2dd4bf",
)
MANAGER_COLORS = ("#3b82f6", "#8b5cf6", "#22c55e", "#f97316", "#ef4444", "#06b6d4", "#ec4899", "#84cc16")
HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")

DEFAULT_MANAGER_GROUPS = (
    ManagerGroup(manager="Kevin", title="Sr. Production Manager", color=MANAGER_COLORS[0], crews=["Gabriel", "David", "Michael"]),
    ManagerGroup(manager="Leo", title="Production Manager", color=MANAGER_COLORS[1], crews=["Ramon", "Roger"]),
    ManagerGroup(manager="Aaron", title="Production Manager", color=MANAGER_COLORS[2], crews=["Pedro", "Monica"]),
)


def _normalize_name(name: str | None) -> str:
    return " ".join((name or "").split()).lower()


def generate_color_family(base_hex: str, crew_count: int) -> list[str]:
    """Base colour followed by ``crew_count`` progressively lighter shades of the same hue."""

    value = base_hex.lstrip("#")
    r, g, b = (int(value[i : i + 2], 16) / 255 for i in (0, 2, 4))
    hue, lightness, saturation = colorsys.rgb_to_hls(r, g, b)

    colors = [base_hex]
    for index in range(crew_count):
        step = (index + 1) / (crew_count + 1)
        new_lightness = min(0.88, lightness + (0.88 - lightness) * step * 0.7)
        new_saturation = max(0.2, saturation - saturation * step * 0.3)
        rr, gg, bb = colorsys.hls_to_rgb(hue, new_lightness, new_saturation)
        colors.append("#" + "".join(f"{round(min(1.0, max(0.0, c)) * 255):02x}" for c in (rr, gg, bb)))
    return colors


def groups_from_rows(rows: Iterable[dict[str, Any]]) -> list[ManagerGroup]:
    """Group roster feed rows (``pm_name``, ``pm_title``, ``crew_name``, ``color``) by manager.

    Rows are expected in ``sort_order``; first appearance fixes a manager's position.
    """
    groups: dict[str, ManagerGroup] = {}
    for row in rows:
        manager = (row.get("pm_name") or "").strip()
        crew = (row.get("crew_name") or "").strip()
        if not manager:
            continue
        group = groups.get(manager)
        if group is None:
            group = ManagerGroup(
                manager=manager,
                title=row.get("pm_title") or "",
                color=row.get("color") or MANAGER_COLORS[len(groups) % len(MANAGER_COLORS)],
            )
            groups[manager] = group
        if crew and crew not in group.crews:
            group.crews.append(crew)
    return list(groups.values())


def _crew_shades(group: ManagerGroup) -> list[str]:
    """Lighter shades of the manager colour, one per crew; empty when the colour is not #rrggbb."""
    if not HEX_COLOR.match(group.color or ""):
        return []
    return generate_color_family(group.color, len(group.crews))[1:]


def build_lanes(groups: Sequence[ManagerGroup], include_managers: bool = True) -> list[Lane]:
    lanes: list[Lane] = []
    if include_managers:
        for index, group in enumerate(groups):
            lanes.append(Lane(id=f"manager-{index}", name=group.manager, color=group.color, kind=LaneKind.MANAGER))
    crew_index = 0
    for group in groups:
        shades = _crew_shades(group)
        for position, crew in enumerate(group.crews):
            color = shades[position] if shades else LANE_COLORS[crew_index % len(LANE_COLORS)]
            lanes.append(Lane(id=f"crew-{crew_index}", name=crew, color=color, kind=LaneKind.CREW))
            crew_index += 1
    return lanes


def find_lane_by_name(lanes: Sequence[Lane], name: str | None, kind: LaneKind | None = LaneKind.CREW) -> Optional[Lane]:
    key = _normalize_name(name)
    if not key:
        return None
    for lane in lanes:
        if (kind is None or lane.kind == kind) and _normalize_name(lane.name) == key:
            return lane
    return None


def schedule_columns(lanes: Sequence[Lane], groups: Sequence[ManagerGroup]) -> list[Lane]:
    """Display order: managers in roster order, then their crews, then any other lane."""
    manager_lanes: list[Lane] = []
    crew_lanes: list[Lane] = []
    for group in groups:
        manager_lane = find_lane_by_name(lanes, group.manager, LaneKind.MANAGER)
        if manager_lane:
            manager_lanes.append(manager_lane)
        for crew in group.crews:
            crew_lane = find_lane_by_name(lanes, crew, LaneKind.CREW)
            if crew_lane:
                crew_lanes.append(crew_lane)
    used = {lane.id for lane in (*manager_lanes, *crew_lanes)}
    rest = [lane for lane in lanes if lane.id not in used]
    return [*manager_lanes, *crew_lanes, *rest]


@dataclass(slots=True)
class Roster:
    """A roster snapshot; lanes are derived once and stay stable for its lifetime."""

    groups: list[ManagerGroup]
    lanes: list[Lane] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.lanes:
            self.lanes = build_lanes(self.groups)

    @classmethod
    def default(cls) -> "Roster":
        return cls(
            groups=[
                ManagerGroup(manager=g.manager, title=g.title, color=g.color, crews=list(g.crews))
                for g in DEFAULT_MANAGER_GROUPS
            ]
        )

    @classmethod
    def from_rows(cls, rows: Sequence[dict[str, Any]]) -> "Roster":
        groups = groups_from_rows(rows)
        if not groups:
            logger.info("Roster feed is empty; using the built-in default roster")
            return cls.default()
        return cls(groups=groups)

    @property
    def crew_lanes(self) -> list[Lane]:
        return [lane for lane in self.lanes if lane.is_crew]

    def columns(self) -> list[Lane]:
        return schedule_columns(self.lanes, self.groups)
