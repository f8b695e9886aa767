# matrix.py
from __future__ import annotations

from itertools import product
from typing import Iterable, List, Sequence

from .errors import ConfigError
from .model import Axis, JobInstance


def _check(axes: Sequence[Axis], stage_name: str) -> None:
    where = f" for stage '{stage_name}'" if stage_name else ""
    if not axes:
        raise ConfigError(f"empty matrix{where}: at least one axis is required")

    names = [a.name for a in axes]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(f"duplicate matrix axes{where}: {dupes}")

    for a in axes:
        if not a.values:
            raise ConfigError(f"empty matrix{where}: axis '{a.name}' has no values")
        vals = list(a.values)
        if len(set(vals)) != len(vals):
            raise ConfigError(f"axis '{a.name}'{where} repeats values: {vals}")


def count(axes: Sequence[Axis]) -> int:
    n = 1
    for a in axes:
        n *= len(a.values)
    return n if axes else 0


def expand(axes: Iterable[Axis], stage_name: str = "") -> List[JobInstance]:
    """
    One pending JobInstance per combination of axis values.

    Order is stable: first axis varies slowest, values in declaration order.
    """
    axes = list(axes)
    _check(axes, stage_name)

    names = [a.name for a in axes]
    return [
        JobInstance(stage=stage_name, bindings=dict(zip(names, combo)))
        for combo in product(*(a.values for a in axes))
    ]
