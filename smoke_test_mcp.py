#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import anyio
from mcp.client.session import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client


def _extract_call_result(payload: Any) -> Any:
    structured = getattr(payload, "structuredContent", None)
    if structured is not None:
        if isinstance(structured, dict) and "result" in structured:
            return structured["result"]
        return structured

    content = getattr(payload, "content", None) or []
    if not content:
        return None

    text = getattr(content[0], "text", None)
    if text is not None:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return None


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise AssertionError(message)


_PARALLEL_CIRCUIT = {
    "components": [
        {"id": "B1", "type": "battery", "value": 9},
        {"id": "R1", "type": "resistor", "value": 1000},
        {"id": "R2", "type": "resistor", "value": 2200},
        {"id": "L1", "type": "lightbulb", "value": 60},
    ],
    "verbalPlan": "B1 -> [R1 || R2] -> L1 -> return",
    "formula": "I = V / (R1*R2/(R1+R2) + L1)",
    "notes": "smoke test circuit",
    "conditionalBranches": [],
}


async def _run_smoke_test(args: argparse.Namespace) -> None:
    server_params = StdioServerParameters(
        command=args.server_command,
        args=["--transport", "stdio"],
        cwd=str(Path(args.server_cwd).expanduser().resolve()),
    )

    async with stdio_client(server_params) as (read_stream, write_stream):
        async with ClientSession(read_stream, write_stream) as session:
            init = await session.initialize()
            print(f"Connected to {init.serverInfo.name} {init.serverInfo.version}")

            tools_result = await session.list_tools()
            tool_names = {tool.name for tool in tools_result.tools}
            required_tools = {
                "getLayoutStatus",
                "parseVerbalPlan",
                "layoutCircuit",
                "layoutCircuitFromJson",
                "getLayoutEventHistory",
            }
            missing_tools = required_tools - tool_names
            _require(not missing_tools, f"Missing required tools: {sorted(missing_tools)}")
            print(f"Tool check passed ({len(tool_names)} tools)")

            status = _extract_call_result(await session.call_tool("getLayoutStatus", {}))
            _require(isinstance(status, dict), "getLayoutStatus did not return an object")
            print(f"Layout config: {status.get('config')}")

            plan = _extract_call_result(
                await session.call_tool(
                    "parseVerbalPlan",
                    {"verbal_plan": _PARALLEL_CIRCUIT["verbalPlan"]},
                )
            )
            _require(isinstance(plan, dict), "parseVerbalPlan did not return an object")
            _require(
                plan.get("component_ids") == ["B1", "R1", "R2", "L1"],
                f"Unexpected plan order: {plan.get('component_ids')}",
            )
            print("Plan parse check passed")

            layout = _extract_call_result(
                await session.call_tool(
                    "layoutCircuitFromJson",
                    {"circuit_json": "```json\n" + json.dumps(_PARALLEL_CIRCUIT) + "\n```"},
                )
            )
            _require(isinstance(layout, dict), "layoutCircuitFromJson did not return an object")
            positions = {
                item["id"]: (item["gridPosition"]["x"], item["gridPosition"]["y"])
                for item in layout.get("components", [])
            }
            _require(set(positions) == {"B1", "R1", "R2", "L1"}, f"Missing components: {positions}")
            _require(positions["R1"][0] == positions["R2"][0], "Parallel branches are not stacked")
            wires = layout.get("wires", [])
            _require(len(wires) >= 6, f"Expected at least 6 wires, got {len(wires)}")
            _require(
                [wire["id"] for wire in wires] == [f"W{i:02d}" for i in range(1, len(wires) + 1)],
                "Wire ids are not contiguous",
            )
            _require(layout.get("formula") == _PARALLEL_CIRCUIT["formula"], "formula was not passed through")
            print(f"Layout check passed ({len(positions)} components, {len(wires)} wires)")

            partial = _extract_call_result(
                await session.call_tool(
                    "layoutCircuit",
                    {
                        "components": [{"id": "A", "type": "resistor", "value": 10}],
                        "verbal_plan": "A -> GHOST",
                    },
                )
            )
            _require(isinstance(partial, dict), "layoutCircuit did not return an object")
            _require(len(partial.get("warnings", [])) == 1, "Unresolved reference was not reported")
            print("Unresolved reference check passed")

            history = _extract_call_result(
                await session.call_tool("getLayoutEventHistory", {"limit": 50})
            )
            _require(isinstance(history, dict), "getLayoutEventHistory did not return an object")
            _require(history.get("count", 0) > 0, "No layout events recorded")
            print(f"Event history check passed ({history['count']} events)")

    print("MCP smoke test passed")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="End-to-end smoke test for circuit-layout-mcp via MCP stdio transport"
    )
    parser.add_argument(
        "--server-command",
        default="circuit-layout-mcp",
        help="Command used to launch the MCP server",
    )
    parser.add_argument(
        "--server-cwd",
        default=str(Path(__file__).resolve().parent),
        help="Working directory for launching the server",
    )
    args = parser.parse_args()

    try:
        anyio.run(_run_smoke_test, args)
        return 0
    except Exception as exc:
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
