# src/gatedci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Union

from . import settings
from .model import AcceleratorFactory, Axis, EventPredicate, Pipeline, Stage, Step, StepPredicate


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    when: Optional[StepPredicate] = None,
    best_effort: bool = False,
    compiles: bool = False,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        when=when,
        best_effort=best_effort,
        compiles=compiles,
        env=dict(env or {}),
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(name: str, values: Iterable[str]) -> Axis:
    """
    One matrix axis.

    Example:
        stage("test", sh(...), matrix=[matrix("platform", ["macos-latest", "ubuntu-latest"])])
    """
    return Axis(name, tuple(values))


# ---------------------------------------------------------------------
# Functional stage helper
# ---------------------------------------------------------------------

def stage(
    name: str,
    *steps: Step,
    needs: Optional[List[str]] = None,
    matrix: Optional[List[Axis]] = None,
    runs_on: Optional[Dict[str, str]] = None,
    when: Optional[EventPredicate] = None,
    concurrency_group: Optional[str] = None,
    fail_fast: Union[None, bool, EventPredicate] = None,
    required: bool = True,
    accelerator: Optional[AcceleratorFactory] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Stage:
    steps_final = list(steps)
    if not steps_final:
        raise ValueError(f"stage({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Stage(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        matrix=list(matrix or []),
        runs_on=dict(runs_on or {}),
        when=when,
        concurrency_group=concurrency_group,
        fail_fast=fail_fast,
        required=required,
        accelerator=accelerator,
        env=dict(env or {}),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StageBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._needs: list[str] = []
        self._matrix: list[Axis] = []
        self._runs_on: dict[str, str] = {}
        self._when: Optional[EventPredicate] = None
        self._group: Optional[str] = None
        self._fail_fast: Union[None, bool, EventPredicate] = None
        self._required = True
        self._accelerator: Optional[AcceleratorFactory] = None
        self._env: dict[str, str] = {}

    def depends_on(self, *stage_names: str):
        self._needs.extend(stage_names)
        return self

    def define_step(self, name: str, run: str, **kwargs):
        self._steps.append(sh(name, run, **kwargs))
        return self

    def across(self, axis: str, *values: str):
        self._matrix.append(Axis(axis, values))
        return self

    def on(self, **bindings: str):
        self._runs_on.update({k: str(v) for k, v in bindings.items()})
        return self

    def only_when(self, predicate: EventPredicate):
        self._when = predicate
        return self

    def exclusive(self, group: str):
        self._group = group
        return self

    def fail_fast(self, policy: Union[bool, EventPredicate]):
        self._fail_fast = policy
        return self

    def optional(self):
        self._required = False
        return self

    def accelerate(self, factory: AcceleratorFactory):
        self._accelerator = factory
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def build(self) -> Stage:
        if not self._steps:
            raise ValueError(f"Stage '{self.name}' has no steps")
        return Stage(
            name=self.name,
            steps=self._steps,
            needs=self._needs,
            matrix=self._matrix,
            runs_on=self._runs_on,
            when=self._when,
            concurrency_group=self._group,
            fail_fast=self._fail_fast,
            required=self._required,
            accelerator=self._accelerator,
            env=self._env,
        )


def build(name: str) -> StageBuilder:
    """Convenience: build('release').define_step(...).build()"""
    return StageBuilder(name)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipe(
    name: str,
    *stages: Stage,
    env: Optional[Dict[str, str]] = None,
    trunk: Optional[str] = None,
) -> Pipeline:
    """
    Pipeline definition helper. Named `pipe` so a pipeline file can still
    define its own `def pipeline(): return pipe(...)`.
    """
    return Pipeline(name=name, stages=list(stages), env=dict(env or {}), trunk=trunk or settings.TRUNK)
