# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .errors import ConfigError
from .model import Event, Stage, StageResult, StageStatus


def build_dag(stages: Sequence[Stage]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build the stage dependency graph.

    Requires:
      - stage.name: str (unique)
      - stage.needs: names of stages that must finish BEFORE this one
    """
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(f"Duplicate stage names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for stage in stages:
        for dep in stage.needs:
            if dep not in name_set:
                raise ConfigError(
                    f"Stage '{stage.name}' needs missing stage '{dep}'. "
                    f"Known stages: {sorted(name_set)}"
                )
            # edge dep -> stage (dep runs first)
            if stage.name not in adj[dep]:
                adj[dep].add(stage.name)
                indeg[stage.name] += 1

    return adj, indeg


def topo_order(stages: Sequence[Stage]) -> List[str]:
    """
    Kahn's algorithm. Ties broken by declaration order so the plan
    reads the same on every run.
    """
    adj, indeg = build_dag(stages)
    indeg = dict(indeg)
    position = {s.name: i for i, s in enumerate(stages)}

    q = deque(s.name for s in stages if indeg[s.name] == 0)
    order: List[str] = []
    while q:
        node = q.popleft()
        order.append(node)
        for child in sorted(adj[node], key=position.__getitem__):
            indeg[child] -= 1
            if indeg[child] == 0:
                q.append(child)

    if len(order) != len(indeg):
        stuck = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigError(f"Stage graph has a cycle. Stuck stages: {stuck}")
    return order


validate = topo_order


@dataclass
class PipelineState:
    """Mutable per-run view of every stage's progress."""
    event: Event
    status: Dict[str, StageStatus] = field(default_factory=dict)
    results: Dict[str, StageResult] = field(default_factory=dict)

    @property
    def done(self) -> bool:
        return all(s.terminal for s in self.status.values())

    def mark(self, name: str, status: StageStatus) -> None:
        self.status[name] = status


class StageScheduler:
    """
    Decides which stage may run next.

    waiting -> ready -> running -> succeeded | failed
    waiting -> skipped   (a dependency did not succeed, or the run predicate is false)
    """

    def __init__(self, stages: Sequence[Stage], trunk: Optional[str] = None):
        self.order = topo_order(stages)
        self.trunk = trunk
        self.stages = {s.name: s for s in stages}

    def new_state(self, event: Event) -> PipelineState:
        return PipelineState(
            event=event,
            status={name: StageStatus.WAITING for name in self.order},
        )

    def advance(self, state: PipelineState) -> Optional[Stage]:
        """
        Return the next stage that became ready, or None when nothing can
        start right now. Check `state.done` to tell "finished" from
        "waiting on running stages".
        """
        for name in self.order:
            if state.status[name] is not StageStatus.WAITING:
                continue
            stage = self.stages[name]
            deps = [state.status[d] for d in stage.needs]
            if not all(d.terminal for d in deps):
                continue

            if any(d is not StageStatus.SUCCEEDED for d in deps):
                self._skip(state, name, "dependency did not succeed")
                continue

            # run predicate: evaluated exactly once, after the join
            if not stage.should_run(state.event, self.trunk):
                self._skip(state, name, "run condition not met")
                continue

            state.mark(name, StageStatus.READY)
            return stage
        return None

    def _skip(self, state: PipelineState, name: str, reason: str) -> None:
        state.mark(name, StageStatus.SKIPPED)
        state.results[name] = StageResult(name=name, status=StageStatus.SKIPPED, reason=reason)

    def overall(self, state: PipelineState) -> StageStatus:
        """failed iff a required stage failed; skipped stages never fail the run."""
        for name in self.order:
            if state.status[name] is StageStatus.FAILED and self.stages[name].required:
                return StageStatus.FAILED
        return StageStatus.SUCCEEDED
