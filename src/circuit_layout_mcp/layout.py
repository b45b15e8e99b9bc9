from __future__ import annotations

import logging
import os
from collections import defaultdict
from dataclasses import dataclass, replace
from functools import reduce
from typing import Any

from .events import LayoutObserver, log_layout_event
from .models import (
    CircuitTopology,
    Component,
    GridPoint,
    LayoutDiagnostic,
    LayoutResult,
    Wire,
    format_wire_id,
)
from .plan import PlanToken, parse_verbal_plan, plan_component_ids


FORK_SPACING = 1
MERGE_SPACING = 2
BRANCH_ROW_SPACING = 2


class LayoutInvariantError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class LayoutConfig:
    """Junction rows used while routing parallel branches.

    Only single-level parallel groups are merged; nested groups or several
    simultaneous groups are routed without a dedicated merge point.
    """

    fork_row: int = 1
    merge_row: int = 0

    @classmethod
    def from_env(cls) -> "LayoutConfig":
        return cls(
            fork_row=int(os.getenv("CIRCUIT_LAYOUT_FORK_ROW", "1")),
            merge_row=int(os.getenv("CIRCUIT_LAYOUT_MERGE_ROW", "0")),
        )

    def as_dict(self) -> dict[str, int]:
        return {"fork_row": self.fork_row, "merge_row": self.merge_row}


# --- Position assignment ---


_Cursor = tuple[int, int]
_PositionState = tuple[_Cursor, dict[str, GridPoint]]


def branch_offsets(count: int) -> list[int]:
    # Symmetric about the series row, two rows apart.
    return [BRANCH_ROW_SPACING * index - (count - 1) for index in range(count)]


def _place_token(state: _PositionState, token: PlanToken) -> _PositionState:
    (x, y), positions = state
    if not token.parallel:
        return (x + 1, y), {**positions, token.text: (x, y)}

    x += FORK_SPACING
    placed = dict(positions)
    for member, offset in zip(token.members, branch_offsets(len(token.members))):
        placed[member] = (x, y + offset)
    return (x + MERGE_SPACING, y), placed


def assign_positions(tokens: list[PlanToken]) -> dict[str, GridPoint]:
    """Map every component id named by ``tokens`` to a grid point.

    Series ids take the cursor and advance it one column. A parallel group
    skips one column for its fork, stacks its members in that column and
    then skips two more for the merge. A repeated id keeps its last point.
    """
    initial: _PositionState = ((0, 0), {})
    _, positions = reduce(_place_token, tokens, initial)
    return positions


# --- Wire synthesis ---


def _group_by_column(components: list[Component]) -> dict[int, list[Component]]:
    ordered = sorted(components, key=lambda item: (item.grid_position[0], item.grid_position[1]))
    groups: dict[int, list[Component]] = defaultdict(list)
    for component in ordered:
        groups[component.grid_position[0]].append(component)
    return groups


def has_parallel_branches(components: list[Component]) -> bool:
    return any(len(group) > 1 for group in _group_by_column(components).values())


class _WireSink:
    def __init__(self) -> None:
        self.wires: list[Wire] = []

    def add(self, start: GridPoint, end: GridPoint) -> None:
        self.wires.append(Wire(id=format_wire_id(len(self.wires) + 1), from_grid=start, to_grid=end))

    def add_path(self, *points: GridPoint) -> None:
        for start, end in zip(points, points[1:]):
            self.add(start, end)


def synthesize_wires(components: list[Component], config: LayoutConfig | None = None) -> list[Wire]:
    """Route orthogonal wires between consecutive component columns.

    The output may contain zero-length and repeated segments; run it
    through :func:`sanitize_wires` before use.
    """
    cfg = config or LayoutConfig()
    sink = _WireSink()
    groups = _group_by_column(components)
    columns = sorted(groups)

    for current_x, next_x in zip(columns, columns[1:]):
        current = groups[current_x]
        following = groups[next_x]
        lane_x = next_x - 1

        if len(current) > 1:
            fork_x = current_x + 1
            fork_row = cfg.fork_row
            for component in current:
                cx, cy = component.grid_position
                sink.add_path((cx, cy), (fork_x, cy), (fork_x, fork_row))
            for component in following:
                nx, ny = component.grid_position
                sink.add_path((fork_x, fork_row), (lane_x, fork_row), (lane_x, ny), (nx, ny))
            continue

        cx, cy = current[0].grid_position
        for component in following:
            nx, ny = component.grid_position
            sink.add_path((cx, cy), (lane_x, cy), (lane_x, ny), (nx, ny))

    if columns and has_parallel_branches(components):
        last = groups[columns[-1]]
        if len(last) > 1:
            merge_x = columns[-1] + 1
            merge_row = cfg.merge_row
            for component in last:
                cx, cy = component.grid_position
                sink.add((cx, cy), (merge_x, cy))
                if cy != merge_row:
                    sink.add((merge_x, cy), (merge_x, merge_row))

    return sink.wires


# --- Sanitization ---


def sanitize_wires(wires: list[Wire]) -> tuple[list[Wire], dict[str, int]]:
    """Drop zero-length wires and repeated (from, to) pairs, keeping order."""
    seen: set[tuple[GridPoint, GridPoint]] = set()
    kept: list[Wire] = []
    zero_length = 0
    duplicates = 0
    for wire in wires:
        if wire.length < 1:
            zero_length += 1
            continue
        if wire.endpoints in seen:
            duplicates += 1
            continue
        seen.add(wire.endpoints)
        kept.append(wire)
    return kept, {"dropped_zero_length": zero_length, "dropped_duplicates": duplicates}


def renumber_wires(wires: list[Wire]) -> list[Wire]:
    for index, wire in enumerate(wires, start=1):
        wire.id = format_wire_id(index)
    return wires


# --- Connectivity classification ---


def build_wire_indices(
    wires: list[Wire],
) -> tuple[dict[GridPoint, list[Wire]], dict[GridPoint, list[Wire]]]:
    outgoing: dict[GridPoint, list[Wire]] = defaultdict(list)
    incoming: dict[GridPoint, list[Wire]] = defaultdict(list)
    for wire in wires:
        outgoing[wire.from_grid].append(wire)
        incoming[wire.to_grid].append(wire)
    return dict(outgoing), dict(incoming)


def classify_wires(wires: list[Wire], components: list[Component]) -> list[Wire]:
    """Fill the touch/fork/merge flags of horizontal wires in place.

    Vertical wires keep all four flags false.
    """
    occupied = {component.grid_position for component in components}
    outgoing, incoming = build_wire_indices(wires)
    for wire in wires:
        if not wire.is_horizontal:
            continue
        wire.start_touches_component = wire.from_grid in occupied
        wire.end_touches_component = wire.to_grid in occupied
        wire.is_part_of_fork = len(outgoing.get(wire.to_grid, [])) > 1
        wire.is_part_of_merge = len(incoming.get(wire.from_grid, [])) > 1
    return wires


# --- Normalization ---


def _shift(point: GridPoint, offset: GridPoint) -> GridPoint:
    return point[0] + offset[0], point[1] + offset[1]


def normalize_grid(components: list[Component], wires: list[Wire]) -> GridPoint:
    """Translate components and wires so no coordinate is negative.

    Returns the applied ``(dx, dy)`` offset; ``(0, 0)`` when nothing moved.
    """
    points: list[GridPoint] = [component.grid_position for component in components]
    for wire in wires:
        points.extend(wire.endpoints)
    if not points:
        return 0, 0

    min_x = min(point[0] for point in points)
    min_y = min(point[1] for point in points)
    offset = (-min_x if min_x < 0 else 0, -min_y if min_y < 0 else 0)
    if offset == (0, 0):
        return offset

    for component in components:
        component.grid_position = _shift(component.grid_position, offset)
    for wire in wires:
        wire.from_grid = _shift(wire.from_grid, offset)
        wire.to_grid = _shift(wire.to_grid, offset)
    return offset


def _check_invariants(components: list[Component], wires: list[Wire]) -> None:
    points = [component.grid_position for component in components]
    points.extend(point for wire in wires for point in wire.endpoints)
    if any(x < 0 or y < 0 for x, y in points):
        raise LayoutInvariantError("Negative grid coordinate survived normalization.")
    pairs = [wire.endpoints for wire in wires]
    if len(set(pairs)) != len(pairs):
        raise LayoutInvariantError("Duplicate wire endpoints survived sanitization.")
    if any(wire.length < 1 for wire in wires):
        raise LayoutInvariantError("Zero-length wire survived sanitization.")


# --- Pipeline ---


def _fail(
    observer: LayoutObserver,
    category: str,
    message: str,
) -> LayoutResult:
    observer(logging.ERROR, "layout_failed", category=category, message=message)
    return LayoutResult(
        topology=None,
        diagnostics=[LayoutDiagnostic(category=category, severity="error", message=message)],
    )


def _duplicate_ids(ids: list[str]) -> list[str]:
    seen: set[str] = set()
    repeated: list[str] = []
    for component_id in ids:
        if component_id in seen and component_id not in repeated:
            repeated.append(component_id)
        seen.add(component_id)
    return repeated


def layout_circuit(
    topology: CircuitTopology | None,
    *,
    config: LayoutConfig | None = None,
    observer: LayoutObserver | None = None,
) -> LayoutResult:
    """Lay out ``topology`` from its verbal plan.

    The input topology and its components are left untouched. Components
    named by the plan come back with normalized grid positions, followed by
    a freshly routed and classified wire list. Missing input yields a
    failed result; references that cannot be resolved are reported as
    warnings and skipped.
    """
    emit = observer or log_layout_event
    cfg = config or LayoutConfig()

    if topology is None:
        return _fail(emit, "malformed_input", "Circuit topology is missing.")
    emit(
        logging.INFO,
        "layout_start",
        components=len(topology.components or []),
        verbal_plan=topology.verbal_plan,
    )
    if topology.components is None:
        return _fail(emit, "malformed_input", "Component list is missing.")
    if topology.verbal_plan is not None and not isinstance(topology.verbal_plan, str):
        return _fail(emit, "malformed_input", "Verbal plan must be a string.")
    if not (topology.verbal_plan or "").strip():
        return _fail(emit, "malformed_input", "Verbal plan is empty.")

    diagnostics: list[LayoutDiagnostic] = []

    def warn(category: str, message: str, component_id: str) -> None:
        diagnostics.append(
            LayoutDiagnostic(category=category, severity="warning", message=message, component_id=component_id)
        )
        emit(logging.WARNING, category, component_id=component_id, message=message)

    tokens = parse_verbal_plan(topology.verbal_plan)
    plan_ids = plan_component_ids(tokens)
    emit(
        logging.INFO,
        "plan_parsed",
        token_count=len(tokens),
        tokens=[token.text for token in tokens],
    )
    for component_id in _duplicate_ids(plan_ids):
        warn(
            "duplicate_reference",
            f"Component '{component_id}' appears more than once in the verbal plan; keeping its last position.",
            component_id,
        )

    positions = assign_positions(tokens)
    emit(logging.INFO, "positions_assigned", positioned=len(positions))

    known_ids = {component.id for component in topology.components}
    for component_id in dict.fromkeys(plan_ids):
        if component_id not in known_ids:
            warn(
                "unresolved_reference",
                f"Verbal plan references '{component_id}' but no such component exists; skipping.",
                component_id,
            )

    placed: list[Component] = []
    placed_ids: set[str] = set()
    for component in topology.components:
        if component.id in placed_ids:
            warn(
                "duplicate_component",
                f"Component id '{component.id}' is listed more than once; keeping the first entry.",
                component.id,
            )
            continue
        position = positions.get(component.id)
        if position is None:
            warn(
                "unplaced_component",
                f"Component '{component.id}' is not referenced by the verbal plan; dropping it.",
                component.id,
            )
            continue
        placed_ids.add(component.id)
        placed.append(replace(component, grid_position=position))

    synthesized = synthesize_wires(placed, cfg)
    emit(logging.INFO, "wires_synthesized", wires=len(synthesized), parallel=has_parallel_branches(placed))

    wires, dropped = sanitize_wires(synthesized)
    emit(logging.INFO, "wires_sanitized", wires=len(wires), **dropped)

    classify_wires(wires, placed)
    renumber_wires(wires)

    offset = normalize_grid(placed, wires)
    emit(logging.INFO, "topology_normalized", offset_x=offset[0], offset_y=offset[1])
    _check_invariants(placed, wires)

    result_topology = CircuitTopology(
        components=placed,
        wires=wires,
        verbal_plan=topology.verbal_plan,
        formula=topology.formula,
        notes=topology.notes,
        conditional_branches=list(topology.conditional_branches),
        violations=list(topology.violations),
        extra=dict(topology.extra),
    )
    metrics: dict[str, Any] = {
        "token_count": len(tokens),
        "parallel_groups": sum(1 for token in tokens if token.parallel),
        "positioned_components": len(placed),
        "synthesized_wires": len(synthesized),
        **dropped,
        "wires": len(wires),
        "normalization_offset": {"x": offset[0], "y": offset[1]},
        "config": cfg.as_dict(),
    }
    emit(logging.INFO, "layout_complete", components=len(placed), wires=len(wires))
    return LayoutResult(topology=result_topology, diagnostics=diagnostics, metrics=metrics)
