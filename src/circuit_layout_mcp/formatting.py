from __future__ import annotations

import math


_SUFFIXES: list[tuple[float, str]] = [
    (1_000_000_000_000, "T"),
    (1_000_000_000, "B"),
    (1_000_000, "M"),
    (1_000, "K"),
]


def _format_number(value: float, decimal_places: int) -> str:
    if decimal_places <= 0:
        return str(int(round(value)))
    text = f"{value:.{decimal_places}f}".rstrip("0").rstrip(".")
    return "0" if text in {"", "-0"} else text


def format_rounded_abbreviation(value: float, decimal_places: int = 0) -> str:
    """Format ``value`` as a compact label such as ``4K`` or ``1.5M``.

    The value is rounded to the nearest integer (half to even) before it is
    scaled: ``1499.6`` becomes ``1500`` and prints as ``1.5K`` with one
    decimal place.
    """
    if math.isnan(value) or math.isinf(value):
        return str(value)
    rounded = float(round(value))
    for threshold, suffix in _SUFFIXES:
        if rounded >= threshold:
            return _format_number(rounded / threshold, decimal_places) + suffix
    return _format_number(rounded, decimal_places)
