from __future__ import annotations

import argparse
import logging
import os
from typing import Any

from mcp.server.fastmcp import FastMCP

from .events import get_layout_event_history, get_layout_health_snapshot
from .layout import LayoutConfig, layout_circuit
from .models import CircuitTopology, Component, LayoutResult
from .payload import CircuitPayloadError, parse_circuit_json, topology_from_payload
from .plan import parse_verbal_plan, plan_component_ids


mcp = FastMCP("circuit-layout-mcp")

_config = LayoutConfig.from_env()


def _layout_payload(result: LayoutResult) -> dict[str, Any]:
    if not result.succeeded or result.topology is None:
        raise ValueError("; ".join(result.errors) or "Circuit layout failed.")
    return {
        **result.topology.as_dict(),
        "warnings": result.warnings,
        "diagnostics": [item.as_dict() for item in result.diagnostics],
        "metrics": result.metrics,
    }


def _components_from_arguments(components: list[dict[str, Any]]) -> list[Component]:
    try:
        return topology_from_payload({"components": components}).components or []
    except CircuitPayloadError as exc:
        raise ValueError(str(exc)) from exc


@mcp.tool()
def getLayoutStatus() -> dict[str, Any]:
    """Get the active layout configuration and recent layout health counters."""
    return {
        "config": _config.as_dict(),
        "health": get_layout_health_snapshot(),
    }


@mcp.tool()
def parseVerbalPlan(verbal_plan: str) -> dict[str, Any]:
    """
    Tokenize a verbal plan such as "B1 -> [R1 || R2] -> L1 -> return".

    Returns each token (series id or bracketed parallel group) and the
    component ids in plan order.
    """
    tokens = parse_verbal_plan(verbal_plan)
    return {
        "tokens": [token.as_dict() for token in tokens],
        "component_ids": plan_component_ids(tokens),
        "parallel_groups": sum(1 for token in tokens if token.parallel),
    }


@mcp.tool()
def layoutCircuit(
    components: list[dict[str, Any]],
    verbal_plan: str,
    formula: str | None = None,
    notes: str | None = None,
    conditional_branches: list[Any] | None = None,
    violations: list[Any] | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Assign grid positions and route wires for a circuit described by a verbal plan.

    Components must include: id (unique). Optional component fields: type, value.
    Plan ids without a matching component are skipped and listed in warnings.
    """
    if components is None:
        raise ValueError("components is required")
    topology = CircuitTopology(
        components=_components_from_arguments(components),
        verbal_plan=verbal_plan,
        formula=formula,
        notes=notes,
        conditional_branches=list(conditional_branches or []),
        violations=list(violations or []),
        extra=dict(extra or {}),
    )
    return _layout_payload(layout_circuit(topology, config=_config))


@mcp.tool()
def layoutCircuitFromJson(circuit_json: str) -> dict[str, Any]:
    """
    Lay out a circuit from the JSON emitted by the circuit recognition step.

    Accepts a bare JSON object or one wrapped in a markdown code block. Keys
    other than components/verbalPlan are passed through unchanged.
    """
    try:
        topology = parse_circuit_json(circuit_json)
    except CircuitPayloadError as exc:
        raise ValueError(str(exc)) from exc
    return _layout_payload(layout_circuit(topology, config=_config))


@mcp.tool()
def getLayoutEventHistory(limit: int = 200) -> dict[str, Any]:
    """Return the most recent structured layout events (newest last)."""
    events = get_layout_event_history(limit=limit)
    return {"count": len(events), "events": events}


def _configure_layout(*, fork_row: int | None = None, merge_row: int | None = None) -> LayoutConfig:
    global _config
    defaults = LayoutConfig.from_env()
    _config = LayoutConfig(
        fork_row=defaults.fork_row if fork_row is None else int(fork_row),
        merge_row=defaults.merge_row if merge_row is None else int(merge_row),
    )
    return _config


def main() -> None:
    parser = argparse.ArgumentParser(description="MCP server for circuit schematic grid layout")
    parser.add_argument(
        "--fork-row",
        type=int,
        default=None,
        help="Grid row of the junction that joins a parallel group (env CIRCUIT_LAYOUT_FORK_ROW, default 1)",
    )
    parser.add_argument(
        "--merge-row",
        type=int,
        default=None,
        help="Grid row of the closing merge junction (env CIRCUIT_LAYOUT_MERGE_ROW, default 0)",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("CIRCUIT_LAYOUT_LOG_LEVEL", "WARNING"),
        help="Python logging level for layout events",
    )
    parser.add_argument(
        "--transport",
        default="stdio",
        choices=["stdio", "sse"],
        help="MCP transport",
    )
    args = parser.parse_args()

    logging.basicConfig(level=str(args.log_level).upper())
    _configure_layout(fork_row=args.fork_row, merge_row=args.merge_row)
    mcp.run(transport=args.transport)


if __name__ == "__main__":
    main()
