from __future__ import annotations

import unittest
from unittest.mock import patch

from circuit_layout_mcp.events import RecordingObserver, null_observer
from circuit_layout_mcp.layout import (
    LayoutConfig,
    assign_positions,
    branch_offsets,
    classify_wires,
    has_parallel_branches,
    layout_circuit,
    normalize_grid,
    sanitize_wires,
    synthesize_wires,
)
from circuit_layout_mcp.models import CircuitTopology, Component, Wire
from circuit_layout_mcp.plan import parse_verbal_plan


def _components(*ids: str) -> list[Component]:
    return [Component(id=component_id, type="resistor", value=100.0) for component_id in ids]


def _placed(**positions: tuple[int, int]) -> list[Component]:
    return [
        Component(id=component_id, type="resistor", grid_position=position)
        for component_id, position in positions.items()
    ]


def _segments(wires: list[Wire]) -> list[tuple[tuple[int, int], tuple[int, int]]]:
    return [wire.endpoints for wire in wires]


def _layout(plan: str, *ids: str, **kwargs) -> CircuitTopology:
    result = layout_circuit(
        CircuitTopology(components=_components(*ids), verbal_plan=plan),
        observer=null_observer,
        **kwargs,
    )
    assert result.topology is not None
    return result.topology


def _positions(topology: CircuitTopology) -> dict[str, tuple[int, int]]:
    return {component.id: component.grid_position for component in topology.components or []}


class TestPositionAssigner(unittest.TestCase):
    def test_series_tokens_advance_one_column(self) -> None:
        positions = assign_positions(parse_verbal_plan("A -> B -> C"))
        self.assertEqual(positions, {"A": (0, 0), "B": (1, 0), "C": (2, 0)})

    def test_parallel_group_fans_out_symmetrically(self) -> None:
        positions = assign_positions(parse_verbal_plan("A -> [B || C] -> D"))
        self.assertEqual(positions, {"A": (0, 0), "B": (2, -1), "C": (2, 1), "D": (4, 0)})

    def test_branch_offsets(self) -> None:
        self.assertEqual(branch_offsets(1), [0])
        self.assertEqual(branch_offsets(2), [-1, 1])
        self.assertEqual(branch_offsets(3), [-2, 0, 2])
        self.assertEqual(branch_offsets(4), [-3, -1, 1, 3])

    def test_repeated_id_keeps_last_position(self) -> None:
        positions = assign_positions(parse_verbal_plan("A -> B -> A"))
        self.assertEqual(positions, {"A": (2, 0), "B": (1, 0)})

    def test_no_tokens_yield_no_positions(self) -> None:
        self.assertEqual(assign_positions([]), {})


class TestWireSynthesizer(unittest.TestCase):
    def test_series_pair_emits_three_segment_path(self) -> None:
        wires = synthesize_wires(_placed(A=(0, 0), B=(1, 0)))
        self.assertEqual(
            _segments(wires),
            [((0, 0), (0, 0)), ((0, 0), (0, 0)), ((0, 0), (1, 0))],
        )
        self.assertEqual([wire.id for wire in wires], ["W01", "W02", "W03"])

    def test_fan_out_from_single_component(self) -> None:
        wires = synthesize_wires(_placed(A=(0, 0), B=(2, -1), C=(2, 1)))
        self.assertEqual(
            _segments(wires),
            [
                ((0, 0), (1, 0)),
                ((1, 0), (1, -1)),
                ((1, -1), (2, -1)),
                ((0, 0), (1, 0)),
                ((1, 0), (1, 1)),
                ((1, 1), (2, 1)),
            ],
        )

    def test_parallel_group_routes_through_fork_junction(self) -> None:
        wires = synthesize_wires(_placed(B=(2, -1), C=(2, 1), D=(4, 0)))
        self.assertEqual(
            _segments(wires),
            [
                ((2, -1), (3, -1)),
                ((3, -1), (3, 1)),
                ((2, 1), (3, 1)),
                ((3, 1), (3, 1)),
                ((3, 1), (3, 1)),
                ((3, 1), (3, 0)),
                ((3, 0), (4, 0)),
            ],
        )

    def test_fork_row_is_configurable(self) -> None:
        wires = synthesize_wires(_placed(B=(2, -1), C=(2, 1), D=(4, 0)), LayoutConfig(fork_row=0))
        self.assertIn(((3, -1), (3, 0)), _segments(wires))
        self.assertIn(((3, 1), (3, 0)), _segments(wires))

    def test_trailing_parallel_group_gets_merge_junction(self) -> None:
        wires = synthesize_wires(_placed(A=(0, 0), B=(2, -1), C=(2, 1), E=(2, 0)))
        merge = _segments(wires)[9:]
        self.assertEqual(
            merge,
            [
                ((2, -1), (3, -1)),
                ((3, -1), (3, 0)),
                ((2, 0), (3, 0)),
                ((2, 1), (3, 1)),
                ((3, 1), (3, 0)),
            ],
        )

    def test_merge_row_is_configurable(self) -> None:
        wires = synthesize_wires(_placed(A=(0, 0), B=(2, -1), C=(2, 1)), LayoutConfig(merge_row=-1))
        segments = _segments(wires)
        self.assertIn(((2, -1), (3, -1)), segments)
        self.assertNotIn(((3, -1), (3, -1)), segments)
        self.assertIn(((3, 1), (3, -1)), segments)

    def test_series_only_circuit_has_no_merge(self) -> None:
        components = _placed(A=(0, 0), B=(1, 0))
        self.assertFalse(has_parallel_branches(components))
        self.assertEqual(len(synthesize_wires(components)), 3)

    def test_single_or_no_component_produces_no_wires(self) -> None:
        self.assertEqual(synthesize_wires([]), [])
        self.assertEqual(synthesize_wires(_placed(A=(0, 0))), [])


class TestWireSanitizer(unittest.TestCase):
    def test_drops_zero_length_and_duplicates_in_order(self) -> None:
        wires = [
            Wire(id="W01", from_grid=(0, 0), to_grid=(0, 0)),
            Wire(id="W02", from_grid=(0, 0), to_grid=(1, 0)),
            Wire(id="W03", from_grid=(1, 0), to_grid=(1, 1)),
            Wire(id="W04", from_grid=(0, 0), to_grid=(1, 0)),
            Wire(id="W05", from_grid=(1, 0), to_grid=(0, 0)),
        ]
        kept, dropped = sanitize_wires(wires)
        self.assertEqual([wire.id for wire in kept], ["W02", "W03", "W05"])
        self.assertEqual(dropped, {"dropped_zero_length": 1, "dropped_duplicates": 1})


class TestConnectivityClassifier(unittest.TestCase):
    def test_vertical_wires_are_not_classified(self) -> None:
        wires = [
            Wire(id="W01", from_grid=(0, 0), to_grid=(1, 0)),
            Wire(id="W02", from_grid=(1, 0), to_grid=(1, 1)),
            Wire(id="W03", from_grid=(1, 0), to_grid=(1, -1)),
        ]
        classify_wires(wires, _placed(A=(0, 0), B=(1, 1)))
        self.assertTrue(wires[0].start_touches_component)
        self.assertTrue(wires[0].is_part_of_fork)
        for wire in wires[1:]:
            self.assertFalse(wire.end_touches_component)
            self.assertFalse(wire.start_touches_component)
            self.assertFalse(wire.is_part_of_fork)
            self.assertFalse(wire.is_part_of_merge)

    def test_merge_flag_reads_incoming_wires_at_source(self) -> None:
        wires = [
            Wire(id="W01", from_grid=(0, -1), to_grid=(0, 0)),
            Wire(id="W02", from_grid=(0, 1), to_grid=(0, 0)),
            Wire(id="W03", from_grid=(0, 0), to_grid=(1, 0)),
        ]
        classify_wires(wires, _placed(Z=(1, 0)))
        self.assertTrue(wires[2].is_part_of_merge)
        self.assertFalse(wires[2].is_part_of_fork)
        self.assertTrue(wires[2].end_touches_component)
        self.assertFalse(wires[2].start_touches_component)


class TestNormalizer(unittest.TestCase):
    def test_translates_to_zero_and_keeps_relative_offsets(self) -> None:
        components = _placed(A=(-2, 3), B=(1, -1))
        wires = [
            Wire(id="W01", from_grid=(-2, 3), to_grid=(1, 3)),
            Wire(id="W02", from_grid=(1, 3), to_grid=(1, -1)),
        ]
        before = [component.grid_position for component in components] + [
            point for wire in wires for point in wire.endpoints
        ]

        offset = normalize_grid(components, wires)

        after = [component.grid_position for component in components] + [
            point for wire in wires for point in wire.endpoints
        ]
        self.assertEqual(offset, (2, 1))
        self.assertEqual(min(x for x, _ in after), 0)
        self.assertEqual(min(y for _, y in after), 0)
        for (bx, by), (ax, ay) in zip(before, after):
            self.assertEqual((ax - bx, ay - by), (2, 1))

    def test_only_negative_axes_move(self) -> None:
        components = _placed(A=(3, -2), B=(5, 4))
        self.assertEqual(normalize_grid(components, []), (0, 2))
        self.assertEqual(components[0].grid_position, (3, 0))

    def test_normalization_is_idempotent(self) -> None:
        components = _placed(A=(-1, -1), B=(2, 2))
        wires = [Wire(id="W01", from_grid=(-1, -1), to_grid=(2, -1))]
        normalize_grid(components, wires)
        snapshot = ([c.grid_position for c in components], _segments(wires))
        self.assertEqual(normalize_grid(components, wires), (0, 0))
        self.assertEqual(([c.grid_position for c in components], _segments(wires)), snapshot)

    def test_empty_input_is_a_no_op(self) -> None:
        self.assertEqual(normalize_grid([], []), (0, 0))


class TestLayoutPipeline(unittest.TestCase):
    def test_series_circuit(self) -> None:
        topology = _layout("A -> B -> C", "A", "B", "C")
        self.assertEqual(_positions(topology), {"A": (0, 0), "B": (1, 0), "C": (2, 0)})
        self.assertEqual(_segments(topology.wires), [((0, 0), (1, 0)), ((1, 0), (2, 0))])
        self.assertEqual([wire.id for wire in topology.wires], ["W01", "W02"])
        for wire in topology.wires:
            self.assertTrue(wire.is_horizontal)
            self.assertTrue(wire.start_touches_component)
            self.assertTrue(wire.end_touches_component)
            self.assertFalse(wire.is_part_of_fork)
            self.assertFalse(wire.is_part_of_merge)

    def test_parallel_fork_and_merge(self) -> None:
        topology = _layout("A -> [B || C] -> D", "A", "B", "C", "D")
        positions = _positions(topology)
        # Normalization shifts the branch rows (-1, +1) down by one.
        self.assertEqual(positions, {"A": (0, 1), "B": (2, 0), "C": (2, 2), "D": (4, 1)})
        self.assertEqual(
            {positions["B"][1] - positions["A"][1], positions["C"][1] - positions["A"][1]},
            {-1, 1},
        )
        wires = topology.wires
        self.assertEqual(len(wires), 10)
        self.assertEqual([wire.id for wire in wires], [f"W{i:02d}" for i in range(1, 11)])

        first = wires[0]
        self.assertEqual(first.endpoints, ((0, 1), (1, 1)))
        self.assertTrue(first.start_touches_component)
        self.assertTrue(first.is_part_of_fork)

        entering_d = [wire for wire in wires if wire.to_grid == positions["D"]]
        self.assertEqual(len(entering_d), 1)
        self.assertTrue(entering_d[0].is_horizontal)
        self.assertTrue(entering_d[0].end_touches_component)
        self.assertFalse(entering_d[0].is_part_of_fork)
        self.assertFalse(entering_d[0].is_part_of_merge)

        leaving_b = [wire for wire in wires if wire.from_grid == positions["B"]]
        self.assertEqual(len(leaving_b), 1)
        self.assertTrue(leaving_b[0].start_touches_component)

    def test_merge_flag_after_fork_junction(self) -> None:
        result = layout_circuit(
            CircuitTopology(components=_components("A", "B", "C", "D"), verbal_plan="A -> [B || C] -> GHOST -> D"),
            observer=null_observer,
        )
        assert result.topology is not None
        merging = [wire for wire in result.topology.wires if wire.is_part_of_merge]
        self.assertEqual(len(merging), 1)
        self.assertEqual(merging[0].endpoints, ((3, 2), (4, 2)))
        self.assertEqual(_positions(result.topology)["D"], (5, 1))
        self.assertEqual(len(result.warnings), 1)
        self.assertIn("GHOST", result.warnings[0])

    def test_trailing_parallel_group_merges_on_merge_row(self) -> None:
        topology = _layout("A -> [B || C]", "A", "B", "C")
        into_merge = [wire for wire in topology.wires if wire.to_grid == (3, 1)]
        self.assertEqual(len(into_merge), 2)
        self.assertTrue(all(not wire.is_horizontal for wire in into_merge))
        self.assertEqual(len(topology.wires), 9)

    def test_output_invariants(self) -> None:
        topology = _layout(
            "S1 -> [R1 || R2 || R3] -> B1 -> [L1 + L2] -> return",
            "S1", "R1", "R2", "R3", "B1", "L1", "L2",
        )
        pairs = [wire.endpoints for wire in topology.wires]
        self.assertEqual(len(pairs), len(set(pairs)))
        self.assertTrue(all(start != end for start, end in pairs))
        points = [component.grid_position for component in topology.components or []]
        points.extend(point for pair in pairs for point in pair)
        self.assertEqual(min(x for x, _ in points), 0)
        self.assertEqual(min(y for _, y in points), 0)

    def test_coverage_and_missing_references(self) -> None:
        result = layout_circuit(
            CircuitTopology(components=_components("A", "B", "UNUSED"), verbal_plan="A -> MISSING -> B"),
            observer=null_observer,
        )
        self.assertTrue(result.succeeded)
        assert result.topology is not None
        ids = [component.id for component in result.topology.components or []]
        self.assertEqual(ids, ["A", "B"])
        self.assertEqual(_positions(result.topology), {"A": (0, 0), "B": (2, 0)})
        categories = sorted(item.category for item in result.diagnostics)
        self.assertEqual(categories, ["unplaced_component", "unresolved_reference"])
        self.assertEqual(result.errors, [])

    def test_duplicate_reference_is_reported(self) -> None:
        result = layout_circuit(
            CircuitTopology(components=_components("A", "B"), verbal_plan="A -> B -> A"),
            observer=null_observer,
        )
        assert result.topology is not None
        self.assertEqual([item.category for item in result.diagnostics], ["duplicate_reference"])
        self.assertEqual(_positions(result.topology), {"A": (2, 0), "B": (1, 0)})

    def test_input_topology_is_not_mutated(self) -> None:
        components = _components("A", "B")
        source = CircuitTopology(components=components, verbal_plan="A -> [B]", extra={"k": [1]})
        result = layout_circuit(source, observer=null_observer)
        assert result.topology is not None
        self.assertIsNone(components[0].grid_position)
        self.assertEqual(source.wires, [])
        self.assertIsNot(result.topology.components[0], components[0])

    def test_pass_through_fields_round_trip(self) -> None:
        branches = [{"condition": "S1 closed", "plan": "B1 -> L1"}]
        source = CircuitTopology(
            components=_components("A", "B"),
            verbal_plan="A -> B",
            formula="I = V / R",
            notes="drawn on a whiteboard",
            conditional_branches=branches,
            violations=[{"type": "overlap"}],
            extra={"imageResolution": {"x": 640, "y": 480}},
        )
        topology = layout_circuit(source, observer=null_observer).topology
        assert topology is not None
        self.assertEqual(topology.verbal_plan, "A -> B")
        self.assertEqual(topology.formula, "I = V / R")
        self.assertEqual(topology.notes, "drawn on a whiteboard")
        self.assertEqual(topology.conditional_branches, branches)
        self.assertEqual(topology.violations, [{"type": "overlap"}])
        self.assertEqual(topology.extra, {"imageResolution": {"x": 640, "y": 480}})

    def test_malformed_input_fails_without_raising(self) -> None:
        for topology, message in (
            (None, "Circuit topology is missing."),
            (CircuitTopology(components=None, verbal_plan="A"), "Component list is missing."),
            (CircuitTopology(components=_components("A"), verbal_plan=""), "Verbal plan is empty."),
            (CircuitTopology(components=_components("A"), verbal_plan="  "), "Verbal plan is empty."),
        ):
            result = layout_circuit(topology, observer=null_observer)
            self.assertFalse(result.succeeded)
            self.assertIsNone(result.topology)
            self.assertEqual(result.errors, [message])

    def test_non_string_plan_fails_without_raising(self) -> None:
        for plan in (5, ["A"]):
            with self.subTest(plan=plan):
                result = layout_circuit(
                    CircuitTopology(components=_components("A"), verbal_plan=plan),  # type: ignore[arg-type]
                    observer=null_observer,
                )
                self.assertFalse(result.succeeded)
                self.assertEqual([item.category for item in result.diagnostics], ["malformed_input"])
                self.assertEqual(result.errors, ["Verbal plan must be a string."])

    def test_repeated_component_id_is_placed_once(self) -> None:
        components = _components("A", "A", "B")
        components[1].type = "battery"
        result = layout_circuit(
            CircuitTopology(components=components, verbal_plan="A -> B"),
            observer=null_observer,
        )
        assert result.topology is not None
        placed = result.topology.components or []
        self.assertEqual([(item.id, item.type) for item in placed], [("A", "resistor"), ("B", "resistor")])
        self.assertEqual(_positions(result.topology), {"A": (0, 0), "B": (1, 0)})
        self.assertEqual([item.category for item in result.diagnostics], ["duplicate_component"])
        self.assertEqual(result.diagnostics[0].component_id, "A")

    def test_plan_without_known_components_yields_empty_topology(self) -> None:
        result = layout_circuit(
            CircuitTopology(components=_components("A"), verbal_plan="X -> Y"),
            observer=null_observer,
        )
        self.assertTrue(result.succeeded)
        assert result.topology is not None
        self.assertEqual(result.topology.components, [])
        self.assertEqual(result.topology.wires, [])

    def test_observer_receives_structured_events(self) -> None:
        observer = RecordingObserver()
        layout_circuit(
            CircuitTopology(components=_components("A", "B"), verbal_plan="A -> B -> C"),
            observer=observer,
        )
        self.assertEqual(
            observer.names(),
            [
                "layout_start",
                "plan_parsed",
                "positions_assigned",
                "unresolved_reference",
                "wires_synthesized",
                "wires_sanitized",
                "topology_normalized",
                "layout_complete",
            ],
        )
        sanitized = observer.events[5]
        self.assertEqual(sanitized["dropped_zero_length"], 2)

        failed = RecordingObserver()
        layout_circuit(CircuitTopology(components=[], verbal_plan=""), observer=failed)
        self.assertEqual(failed.names(), ["layout_start", "layout_failed"])

    def test_metrics(self) -> None:
        result = layout_circuit(
            CircuitTopology(components=_components("A", "B", "C", "D"), verbal_plan="A -> [B || C] -> D"),
            observer=null_observer,
        )
        self.assertEqual(result.metrics["token_count"], 3)
        self.assertEqual(result.metrics["parallel_groups"], 1)
        self.assertEqual(result.metrics["synthesized_wires"], 13)
        self.assertEqual(result.metrics["dropped_zero_length"], 2)
        self.assertEqual(result.metrics["dropped_duplicates"], 1)
        self.assertEqual(result.metrics["wires"], 10)
        self.assertEqual(result.metrics["normalization_offset"], {"x": 0, "y": 1})

    def test_config_from_env(self) -> None:
        with patch.dict("os.environ", {"CIRCUIT_LAYOUT_FORK_ROW": "2", "CIRCUIT_LAYOUT_MERGE_ROW": "-1"}):
            config = LayoutConfig.from_env()
        self.assertEqual(config, LayoutConfig(fork_row=2, merge_row=-1))


if __name__ == "__main__":
    unittest.main()
