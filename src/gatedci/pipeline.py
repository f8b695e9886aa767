# pipeline.py
from __future__ import annotations

import os
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from typing import Dict, List, Optional

from .accelerator import StageSession
from .dag import PipelineState, StageScheduler
from .errors import GateTimeout, JobAborted
from .gate import ConcurrencyGate, _Gate
from .matrix import expand
from .model import (
    Event,
    JobInstance,
    JobOutcome,
    JobStatus,
    Pipeline,
    PipelineResult,
    Stage,
    StageResult,
    StageStatus,
)
from .policy import FailFastScope, stage_fail_fast
from .runner import JobRunner, ShellExecutor
from .triggers import classify
from .ui.console import Console, get_console


def plan_instances(stage: Stage) -> List[JobInstance]:
    """Matrix stages fan out; singleton stages get one instance bound to runs_on."""
    if stage.is_matrix:
        return expand(stage.matrix, stage.name)
    return [JobInstance(stage=stage.name, bindings=dict(stage.runs_on))]


def _binding_env(instance: JobInstance) -> Dict[str, str]:
    return {f"GATEDCI_{k.upper()}": str(v) for k, v in instance.bindings.items()}


class PipelineRun:
    """One execution of a pipeline for one event."""

    def __init__(
        self,
        pipeline: Pipeline,
        event: Event,
        *,
        executor=None,
        gate: Optional[_Gate] = None,
        run_id: Optional[str] = None,
        max_workers: Optional[int] = None,
        gate_timeout: Optional[float] = None,
        console: Optional[Console] = None,
    ):
        self.pipeline = pipeline
        self.event = event
        self.executor = executor or ShellExecutor()
        self.gate = gate or ConcurrencyGate()
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.gate_timeout = gate_timeout
        self.console = console or get_console()

        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.max_workers = max_workers

        # ConfigError surfaces here, before any job runs
        self.scheduler = StageScheduler(pipeline.stages, pipeline.trunk)
        self.plans = {s.name: plan_instances(s) for s in pipeline.stages}
        self.state: PipelineState = self.scheduler.new_state(event)
        self.runner = JobRunner(self.executor, self.console)

    def run(self) -> PipelineResult:
        c = classify(self.event, self.pipeline.trunk)
        self.console.print_run_started(
            self.pipeline.name, self.run_id, self.event, c, len(self.pipeline.stages)
        )

        reported = set()
        in_flight: Dict = {}
        with ThreadPoolExecutor(max_workers=max(1, len(self.pipeline.stages))) as pool:
            while True:
                stage = self.scheduler.advance(self.state)
                while stage is not None:
                    self.state.mark(stage.name, StageStatus.RUNNING)
                    in_flight[pool.submit(self._run_stage, stage)] = stage.name
                    stage = self.scheduler.advance(self.state)

                for name, res in self.state.results.items():
                    if res.status is StageStatus.SKIPPED and name not in reported:
                        reported.add(name)
                        self.console.print_stage_skipped(name, res.reason)

                if not in_flight:
                    break

                # wait for one stage, then loop to admit newly unblocked ones
                fut = next(as_completed(list(in_flight.keys())))
                name = in_flight.pop(fut)
                try:
                    result = fut.result()
                except Exception as e:
                    self.console.print_exception(e)
                    result = StageResult(name=name, status=StageStatus.FAILED, reason=str(e))
                self.state.results[name] = result
                self.state.mark(name, result.status)
                self.console.print_stage_done(name, result.status.value)

        return PipelineResult(
            run_id=self.run_id,
            status=self.scheduler.overall(self.state),
            stages=[self.state.results[n] for n in self.scheduler.order],
        )

    # ------------------------------------------------------------------

    def _run_stage(self, stage: Stage) -> StageResult:
        if stage.concurrency_group is None:
            return self._run_jobs(stage)

        group = stage.concurrency_group
        try:
            with self.gate.hold(
                group,
                self.run_id,
                timeout=self.gate_timeout,
                on_queued=lambda holder: self.console.print_gate_waiting(group, self.run_id, holder),
            ):
                self.console.print_gate_acquired(group, self.run_id)
                try:
                    return self._run_jobs(stage)
                finally:
                    self.console.print_gate_released(group, self.run_id)
        except GateTimeout as e:
            return StageResult(name=stage.name, status=StageStatus.FAILED, reason=str(e))

    def _run_jobs(self, stage: Stage) -> StageResult:
        instances = self.plans[stage.name]
        enabled = stage_fail_fast(stage, self.event, self.pipeline.trunk)
        scope = FailFastScope(instances, enabled)
        self.console.print_stage_start(stage.name, len(instances), enabled)

        session = self._stage_session(stage, instances)
        workers = max(1, min(self.max_workers, len(instances)))
        outcomes: Dict[int, JobOutcome] = {}
        try:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {
                    pool.submit(self._run_instance, stage, inst, scope, session): i
                    for i, inst in enumerate(instances)
                }
                # join: every instance reaches a terminal state
                wait(futures)
                for fut, i in futures.items():
                    outcomes[i] = self._collect(fut, instances[i], scope)
        finally:
            cache_stats = self._close_session(stage, session)

        jobs = [outcomes[i] for i in range(len(instances))]
        ok = all(j.status is JobStatus.SUCCEEDED for j in jobs)
        return StageResult(
            name=stage.name,
            status=StageStatus.SUCCEEDED if ok else StageStatus.FAILED,
            jobs=jobs,
            cache_stats=cache_stats,
        )

    def _collect(self, fut, inst: JobInstance, scope: FailFastScope) -> JobOutcome:
        try:
            return fut.result()
        except JobAborted as e:
            self.console.print_exception(e.__cause__ or e)
            return e.outcome
        except Exception as e:
            self.console.print_exception(e)
            if not inst.status.terminal:
                # broke before the runner took it over
                scope.start(inst)
                scope.fail(inst)
            return JobOutcome(instance=inst)

    def _stage_session(self, stage: Stage, instances: List[JobInstance]) -> Optional[StageSession]:
        if stage.accelerator is None:
            return None
        first = stage.accelerator(instances[0], self.executor)
        return StageSession(first) if first.per_stage else None

    def _close_session(self, stage: Stage, session: Optional[StageSession]) -> Optional[Dict[str, int]]:
        if session is None:
            return None
        try:
            stats = session.close()
        except Exception as e:
            # stop already ran; stats are informational
            self.console.print_cache(stage.name, f"stats unavailable ({e})")
            return None
        if session.accelerator.session.stop_error:
            self.console.print_debug(f"[{stage.name}] cache stop: {session.accelerator.session.stop_error}")
        if stats is not None:
            self.console.print_cache(stage.name, f"stats {stats}")
        return stats

    def _run_instance(
        self,
        stage: Stage,
        instance: JobInstance,
        scope: FailFastScope,
        session: Optional[StageSession],
    ) -> JobOutcome:
        env = dict(self.pipeline.env)
        env.update(stage.env)
        env.update(_binding_env(instance))
        if session is not None:
            accelerator = session.lease()
        elif stage.accelerator is not None:
            accelerator = stage.accelerator(instance, self.executor)
        else:
            accelerator = None
        return self.runner.run(instance, stage.steps, scope=scope, env=env, accelerator=accelerator)


def run_pipeline(pipeline: Pipeline, event: Event, **kwargs) -> PipelineResult:
    """Validate, run every stage that should run, and report the outcome."""
    return PipelineRun(pipeline, event, **kwargs).run()
