from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .models import CircuitTopology


class CircuitPayloadError(ValueError):
    pass


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code block, as chat models often emit one."""
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json") :]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def decode_payload_bytes(blob: bytes) -> str:
    if blob.startswith(b"\xef\xbb\xbf"):
        return blob.decode("utf-8-sig")
    if blob.startswith(b"\xff\xfe"):
        return blob.decode("utf-16le").lstrip("\ufeff")
    if blob.startswith(b"\xfe\xff"):
        return blob.decode("utf-16be").lstrip("\ufeff")
    # JSON always opens with an ASCII character, so a NUL in the first two
    # bytes means BOM-less UTF-16.
    if len(blob) >= 2 and blob[1] == 0:
        return blob.decode("utf-16le")
    if len(blob) >= 2 and blob[0] == 0:
        return blob.decode("utf-16be")
    return blob.decode("utf-8")


def load_circuit_payload(text: str) -> dict[str, Any]:
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise CircuitPayloadError("Circuit payload is empty.")
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise CircuitPayloadError(f"Circuit payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise CircuitPayloadError("Circuit payload must be a JSON object.")
    if "error" in payload:
        raise CircuitPayloadError(f"Circuit source reported an error: {payload['error']}")
    return payload


def topology_from_payload(payload: dict[str, Any]) -> CircuitTopology:
    components = payload.get("components")
    if components is not None and not isinstance(components, list):
        raise CircuitPayloadError("'components' must be a list.")
    seen_ids: set[str] = set()
    for index, raw in enumerate(components or []):
        if not isinstance(raw, dict):
            raise CircuitPayloadError(f"Component #{index} must be an object.")
        component_id = str(raw.get("id") or "").strip()
        if not component_id:
            raise CircuitPayloadError(f"Component #{index} is missing a non-empty 'id'.")
        if component_id in seen_ids:
            raise CircuitPayloadError(f"Component #{index} repeats id '{component_id}'.")
        seen_ids.add(component_id)
    verbal_plan = payload.get("verbalPlan")
    if verbal_plan is not None and not isinstance(verbal_plan, str):
        raise CircuitPayloadError("'verbalPlan' must be a string.")
    # Layout routes its own wires; upstream wires are not decoded.
    inputs = {key: value for key, value in payload.items() if key != "wires"}
    try:
        return CircuitTopology.from_dict(inputs)
    except (TypeError, ValueError) as exc:
        raise CircuitPayloadError(f"Invalid circuit payload: {exc}") from exc


def parse_circuit_json(text: str) -> CircuitTopology:
    return topology_from_payload(load_circuit_payload(text))


def read_circuit_file(path: str | Path) -> CircuitTopology:
    file_path = Path(path).expanduser().resolve()
    if not file_path.exists():
        raise FileNotFoundError(f"Circuit file not found: {file_path}")
    try:
        text = decode_payload_bytes(file_path.read_bytes())
    except UnicodeDecodeError as exc:
        raise CircuitPayloadError(f"Could not decode circuit file '{file_path}': {exc}") from exc
    return parse_circuit_json(text)
