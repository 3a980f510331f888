"""
Environment parsing for stage-local options.

Values are read at call time; malformed or out-of-range values fall back to
(or are clamped into) safe defaults rather than failing a stage.
"""
from __future__ import annotations

import math
import os

from loguru import logger

TRUE_VALUES = ("1", "true", "yes", "y", "on")
FALSE_VALUES = ("0", "false", "no", "n", "off")


def env_str(name: str, default: str = "") -> str:
    val = os.environ.get(name)
    if val is None or not val.strip():
        return default
    return val.strip()


def env_int(name: str, default: int, lo: int | None = None, hi: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        v = int(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring malformed {name}={raw!r}; using {default}")
        return default
    if lo is not None and v < lo:
        v = lo
    if hi is not None and v > hi:
        v = hi
    return v


def env_float(name: str, default: float, lo: float | None = None, hi: float | None = None) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        v = float(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring malformed {name}={raw!r}; using {default}")
        return default
    if math.isnan(v) or math.isinf(v):
        return default
    if lo is not None and v < lo:
        v = lo
    if hi is not None and v > hi:
        v = hi
    return v


def env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in TRUE_VALUES:
        return True
    if v in FALSE_VALUES:
        return False
    return default


def env_list(name: str, default: list[str]) -> list[str]:
    """Comma-separated list; empty entries dropped."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return list(default)
    out = [p.strip() for p in raw.split(",") if p.strip()]
    return out or list(default)


def round_half_up(v: float) -> int:
    """Round half away from zero (``round()`` would use banker's rounding)."""
    if v >= 0:
        return int(math.floor(v + 0.5))
    return -int(math.floor(-v + 0.5))


def clamp01(v: float) -> float:
    if v < 0:
        return 0.0
    if v > 1:
        return 1.0
    return float(v)
