from __future__ import annotations

import re
from dataclasses import dataclass


ARROW = "->"
_ARROW_GLYPHS = ("→", "⇒")
_PARALLEL_OPERATORS = ("||", "+")
# The return edge marks a feedback/output wire; it is not routed yet.
_RETURN_SUFFIX_RE = re.compile(r"\s*->\s*return\s*$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class PlanToken:
    text: str
    members: tuple[str, ...]
    parallel: bool = False

    def as_dict(self) -> dict[str, object]:
        return {"text": self.text, "members": list(self.members), "parallel": self.parallel}


def normalize_arrows(plan: str) -> str:
    for glyph in _ARROW_GLYPHS:
        plan = plan.replace(glyph, ARROW)
    return plan


def is_parallel_branch(token: str) -> bool:
    return token.startswith("[") and token.endswith("]")


def parse_parallel_branch(token: str) -> list[str]:
    inner = token.strip("[]")
    for operator in _PARALLEL_OPERATORS:
        if operator in inner:
            parts = inner.split(operator)
            break
    else:
        parts = [inner]
    return [part.strip() for part in parts if part.strip()]


def split_verbal_plan(plan: str | None) -> list[str]:
    """Split a verbal plan into raw token strings, in plan order."""
    if not plan:
        return []
    text = _RETURN_SUFFIX_RE.sub("", normalize_arrows(plan))
    return [token.strip() for token in text.split(ARROW) if token.strip()]


def parse_verbal_plan(plan: str | None) -> list[PlanToken]:
    tokens: list[PlanToken] = []
    for raw in split_verbal_plan(plan):
        if is_parallel_branch(raw):
            tokens.append(PlanToken(text=raw, members=tuple(parse_parallel_branch(raw)), parallel=True))
        else:
            tokens.append(PlanToken(text=raw, members=(raw,)))
    return tokens


def plan_component_ids(tokens: list[PlanToken]) -> list[str]:
    return [member for token in tokens for member in token.members]
