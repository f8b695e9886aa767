# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

if TYPE_CHECKING:
    from .accelerator import Accelerator


PUSH = "push"
PULL_REQUEST = "pull_request"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class StageStatus(str, Enum):
    WAITING = "waiting"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"      # predicate said no, or the job was cancelled first
    TOLERATED = "tolerated"  # best-effort step failed, job unaffected


@dataclass(frozen=True)
class Event:
    """What triggered the pipeline run. Created once, never mutated."""
    trigger_kind: str
    ref: str
    is_tag: bool = False


@dataclass(frozen=True)
class Axis:
    """A named list of matrix values, e.g. platform = (macos, windows, ubuntu)."""
    name: str
    values: Tuple[str, ...]

    def __post_init__(self) -> None:
        # accept lists from callers but store an immutable tuple
        object.__setattr__(self, "values", tuple(self.values))


Bindings = Dict[str, str]
StepPredicate = Callable[[Mapping[str, str]], bool]
EventPredicate = Callable[[Event], bool]
AcceleratorFactory = Callable[["JobInstance", Any], "Accelerator"]


@dataclass(frozen=True)
class Step:
    """A single command inside a job."""
    name: str
    run: str
    cwd: str | None = None

    # applicability predicate over the instance's axis bindings; None = always
    when: Optional[StepPredicate] = None

    # failure is recorded but never fails the job
    best_effort: bool = False

    # compilation-bearing: bracketed by the cache accelerator
    compiles: bool = False

    env: Dict[str, str] = field(default_factory=dict)

    def applies_to(self, bindings: Mapping[str, str]) -> bool:
        return True if self.when is None else bool(self.when(bindings))


@dataclass
class JobInstance:
    """One concrete job of a stage: a stage plus one combination of axis values."""
    stage: str
    bindings: Bindings
    status: JobStatus = JobStatus.PENDING

    @property
    def label(self) -> str:
        if not self.bindings:
            return self.stage
        inner = ", ".join(f"{k}={v}" for k, v in self.bindings.items())
        return f"{self.stage} ({inner})"


@dataclass
class Stage:
    """
    A pipeline stage.

    `matrix` non-empty -> one JobInstance per axis combination.
    `matrix` empty     -> singleton stage bound to `runs_on`.
    """
    name: str
    steps: List[Step]

    needs: List[str] = field(default_factory=list)

    matrix: List[Axis] = field(default_factory=list)
    runs_on: Dict[str, str] = field(default_factory=dict)

    # run predicate over the event; None = always run
    when: Optional[EventPredicate] = None

    concurrency_group: Optional[str] = None

    # None -> trigger-based policy; bool or callable(event) overrides it
    fail_fast: Union[None, bool, EventPredicate] = None

    # a failed non-required stage does not fail the pipeline
    required: bool = True

    accelerator: Optional[AcceleratorFactory] = None
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def is_matrix(self) -> bool:
        return bool(self.matrix)

    def should_run(self, event: Event, trunk: Optional[str] = None) -> bool:
        if self.when is None:
            return True
        when = self.when
        # trunk-relative predicates (on_trunk()) bind to the pipeline trunk
        bind = getattr(when, "for_trunk", None)
        if bind is not None:
            when = bind(trunk)
        return bool(when(event))


@dataclass
class Pipeline:
    name: str
    stages: List[Stage]
    env: Dict[str, str] = field(default_factory=dict)
    trunk: str = "main"

    def stage(self, name: str) -> Stage:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: StepStatus
    exit_code: int | None = None
    detail: str = ""


@dataclass
class JobOutcome:
    instance: JobInstance
    steps: List[StepResult] = field(default_factory=list)
    cache_stats: Optional[Dict[str, int]] = None

    @property
    def status(self) -> JobStatus:
        return self.instance.status

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "bindings": dict(self.instance.bindings),
            "status": self.status.value,
            "steps": [
                {"name": s.name, "status": s.status.value, "exit_code": s.exit_code}
                for s in self.steps
            ],
        }
        if self.cache_stats is not None:
            d["cache_stats"] = dict(self.cache_stats)
        return d


@dataclass
class StageResult:
    name: str
    status: StageStatus
    jobs: List[JobOutcome] = field(default_factory=list)
    reason: str = ""
    # stage-wide accelerator counters, when the accelerator is shared by the stage
    cache_stats: Optional[Dict[str, int]] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "instances": [j.to_dict() for j in self.jobs],
        }
        if self.reason:
            d["reason"] = self.reason
        if self.cache_stats is not None:
            d["cache_stats"] = dict(self.cache_stats)
        return d


@dataclass
class PipelineResult:
    run_id: str
    status: StageStatus  # SUCCEEDED or FAILED only
    stages: List[StageResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is StageStatus.SUCCEEDED

    def stage(self, name: str) -> StageResult:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "stages": [s.to_dict() for s in self.stages],
        }
