from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .formatting import format_rounded_abbreviation


GridPoint = tuple[int, int]

_TOPOLOGY_KEYS = {
    "components",
    "wires",
    "verbalPlan",
    "formula",
    "notes",
    "conditionalBranches",
    "violations",
}


def grid_point_as_dict(point: GridPoint) -> dict[str, int]:
    return {"x": int(point[0]), "y": int(point[1])}


def grid_point_from_payload(raw: Any) -> GridPoint | None:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return int(raw.get("x", 0)), int(raw.get("y", 0))
    if isinstance(raw, (list, tuple)) and len(raw) == 2:
        return int(raw[0]), int(raw[1])
    raise ValueError(f"Grid position must be {{x, y}} or [x, y], got {raw!r}")


def format_wire_id(index: int) -> str:
    return f"W{index:02d}"


@dataclass(slots=True)
class Component:
    id: str
    type: str
    value: float = 0.0
    grid_position: GridPoint | None = None

    @property
    def display_value(self) -> str:
        return format_rounded_abbreviation(self.value)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "value": self.value,
        }
        if self.grid_position is not None:
            payload["gridPosition"] = grid_point_as_dict(self.grid_position)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Component":
        return cls(
            id=str(payload["id"]).strip(),
            type=str(payload.get("type", "")),
            value=float(payload.get("value") or 0.0),
            grid_position=grid_point_from_payload(payload.get("gridPosition")),
        )


@dataclass(slots=True)
class Wire:
    id: str
    from_grid: GridPoint
    to_grid: GridPoint
    start_touches_component: bool = False
    end_touches_component: bool = False
    is_part_of_fork: bool = False
    is_part_of_merge: bool = False

    @property
    def is_horizontal(self) -> bool:
        return self.from_grid[1] == self.to_grid[1]

    @property
    def length(self) -> int:
        return abs(self.to_grid[0] - self.from_grid[0]) + abs(self.to_grid[1] - self.from_grid[1])

    @property
    def endpoints(self) -> tuple[GridPoint, GridPoint]:
        return self.from_grid, self.to_grid

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fromGrid": grid_point_as_dict(self.from_grid),
            "toGrid": grid_point_as_dict(self.to_grid),
            "isHorizontal": self.is_horizontal,
            "startTouchesComponent": self.start_touches_component,
            "endTouchesComponent": self.end_touches_component,
            "isPartOfFork": self.is_part_of_fork,
            "isPartOfMerge": self.is_part_of_merge,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Wire":
        from_grid = grid_point_from_payload(payload.get("fromGrid"))
        to_grid = grid_point_from_payload(payload.get("toGrid"))
        if from_grid is None or to_grid is None:
            raise ValueError(f"Wire '{payload.get('id')}' is missing fromGrid/toGrid")
        return cls(
            id=str(payload.get("id", "")),
            from_grid=from_grid,
            to_grid=to_grid,
            start_touches_component=bool(payload.get("startTouchesComponent", False)),
            end_touches_component=bool(payload.get("endTouchesComponent", False)),
            is_part_of_fork=bool(payload.get("isPartOfFork", False)),
            is_part_of_merge=bool(payload.get("isPartOfMerge", False)),
        )


@dataclass(slots=True)
class CircuitTopology:
    """Components, wires and the upstream metadata that travels with them.

    ``formula``, ``notes``, ``conditional_branches``, ``violations`` and
    ``extra`` are never interpreted by the layout engine; they are copied
    from input to output unchanged.
    """

    components: list[Component] | None = field(default_factory=list)
    wires: list[Wire] = field(default_factory=list)
    verbal_plan: str | None = None
    formula: str | None = None
    notes: str | None = None
    conditional_branches: list[Any] = field(default_factory=list)
    violations: list[Any] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def component_by_id(self, component_id: str) -> Component | None:
        for component in self.components or []:
            if component.id == component_id:
                return component
        return None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "components": [component.as_dict() for component in self.components or []],
                "wires": [wire.as_dict() for wire in self.wires],
                "verbalPlan": self.verbal_plan,
                "formula": self.formula,
                "notes": self.notes,
                "conditionalBranches": self.conditional_branches,
                "violations": self.violations,
            }
        )
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CircuitTopology":
        raw_components = payload.get("components")
        components = (
            [Component.from_dict(item) for item in raw_components if isinstance(item, dict)]
            if isinstance(raw_components, list)
            else None
        )
        return cls(
            components=components,
            wires=[
                Wire.from_dict(item)
                for item in payload.get("wires") or []
                if isinstance(item, dict)
            ],
            verbal_plan=payload.get("verbalPlan"),
            formula=payload.get("formula"),
            notes=payload.get("notes"),
            conditional_branches=list(payload.get("conditionalBranches") or []),
            violations=list(payload.get("violations") or []),
            extra={key: value for key, value in payload.items() if key not in _TOPOLOGY_KEYS},
        )


@dataclass(slots=True)
class LayoutDiagnostic:
    category: str
    severity: str
    message: str
    component_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "category": self.category,
            "severity": self.severity,
            "message": self.message,
        }
        if self.component_id:
            payload["component_id"] = self.component_id
        return payload


@dataclass(slots=True)
class LayoutResult:
    topology: CircuitTopology | None
    diagnostics: list[LayoutDiagnostic] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.topology is not None

    @property
    def warnings(self) -> list[str]:
        return [item.message for item in self.diagnostics if item.severity == "warning"]

    @property
    def errors(self) -> list[str]:
        return [item.message for item in self.diagnostics if item.severity == "error"]

    def as_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "topology": self.topology.as_dict() if self.topology is not None else None,
            "warnings": self.warnings,
            "errors": self.errors,
            "diagnostics": [item.as_dict() for item in self.diagnostics],
            "metrics": self.metrics,
        }
