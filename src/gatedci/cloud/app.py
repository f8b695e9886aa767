from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from gatedci import settings
from gatedci.errors import ConfigError
from gatedci.gate import ConcurrencyGate, RedisConcurrencyGate, _Gate
from gatedci.model import Pipeline, PipelineResult, StageStatus
from gatedci.pipeline import PipelineRun
from gatedci.runner import load_pipeline
from gatedci.triggers import event_from_ref
from gatedci.ui.console import get_console

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    trigger_kind: str
    ref: str
    run_id: Optional[str] = None

class CreateRunResponse(BaseModel):
    run_id: str
    status: str

class InstanceView(BaseModel):
    bindings: dict[str, str] = Field(default_factory=dict)
    status: str

class StageView(BaseModel):
    name: str
    status: str
    reason: str = ""
    instances: list[InstanceView] = Field(default_factory=list)

class RunResponse(BaseModel):
    run_id: str
    trigger_kind: str
    ref: str
    status: str  # queued|running|succeeded|failed
    created_at: datetime
    stages: list[StageView]
    error: Optional[str] = None

class GateResponse(BaseModel):
    group: str
    holder: Optional[str]
    waiting: list[str]

# -------------------- Run registry --------------------

class _Entry:
    def __init__(self, run: PipelineRun):
        self.run = run
        self.created_at = datetime.now(timezone.utc)
        self.result: Optional[PipelineResult] = None
        self.error: Optional[str] = None
        self.started = False

    @property
    def done(self) -> bool:
        return self.result is not None or self.error is not None

    def view(self) -> RunResponse:
        run = self.run
        if self.result is not None:
            status = self.result.status.value
            stages = [
                StageView(
                    name=s.name,
                    status=s.status.value,
                    reason=s.reason,
                    instances=[InstanceView(bindings=j.instance.bindings, status=j.status.value) for j in s.jobs],
                )
                for s in self.result.stages
            ]
        else:
            status = "failed" if self.error else ("running" if self.started else "queued")
            stages = []
            for name in run.scheduler.order:
                st = run.state.status[name]
                # instances only mean something once the stage has been admitted
                shown = st not in (StageStatus.WAITING, StageStatus.SKIPPED)
                stages.append(
                    StageView(
                        name=name,
                        status=st.value,
                        instances=[
                            InstanceView(bindings=i.bindings, status=i.status.value)
                            for i in run.plans[name]
                        ] if shown else [],
                    )
                )
        return RunResponse(
            run_id=run.run_id,
            trigger_kind=run.event.trigger_kind,
            ref=run.event.ref,
            status=status,
            created_at=self.created_at,
            stages=stages,
            error=self.error,
        )


def default_gate() -> _Gate:
    if settings.REDIS_URL:
        return RedisConcurrencyGate.from_url(settings.REDIS_URL, prefix=settings.GATE_PREFIX)
    return ConcurrencyGate()


def create_app(
    pipeline: Optional[Pipeline] = None,
    *,
    executor=None,
    gate: Optional[_Gate] = None,
    max_workers: Optional[int] = None,
    max_runs: int = 8,
    keep_runs: Optional[int] = None,
    loader: Callable[[str], Pipeline] = load_pipeline,
) -> FastAPI:
    """
    Status service. Overlapping runs share one gate, so two trunk pushes
    in quick succession release one after the other.

    Only the newest `keep_runs` finished runs are remembered; runs still
    queued or running are never forgotten.
    """
    keep = settings.KEEP_RUNS if keep_runs is None else keep_runs
    app = FastAPI(title="gatedci status service")
    shared_gate = gate or default_gate()
    runs: dict[str, _Entry] = {}
    lock = threading.Lock()
    pool = ThreadPoolExecutor(max_workers=max_runs, thread_name_prefix="gatedci-run")

    def _pipeline() -> Pipeline:
        if pipeline is not None:
            return pipeline
        return loader(settings.PIPELINE_FILE)

    def _execute(entry: _Entry) -> None:
        entry.started = True
        try:
            entry.result = entry.run.run()
        except Exception as e:
            entry.error = str(e)
            get_console().print_exception(e)

    def _evict() -> None:
        # caller holds `lock`; dicts keep insertion order, oldest first
        finished = [rid for rid, e in runs.items() if e.done]
        for rid in finished[: max(len(finished) - keep, 0)]:
            del runs[rid]

    @app.on_event("shutdown")
    def shutdown() -> None:
        pool.shutdown(wait=False, cancel_futures=True)

    # -------------------- Endpoints --------------------

    @app.post("/runs", response_model=CreateRunResponse, status_code=202)
    def create_run(req: CreateRunRequest):
        run_id = req.run_id or uuid.uuid4().hex[:12]
        try:
            run = PipelineRun(
                _pipeline(),
                event_from_ref(req.trigger_kind, req.ref),
                executor=executor,
                gate=shared_gate,
                run_id=run_id,
                max_workers=max_workers if max_workers is not None else settings.MAX_WORKERS,
                gate_timeout=settings.GATE_TIMEOUT,
            )
        except (ConfigError, FileNotFoundError) as e:
            raise HTTPException(status_code=422, detail=str(e))

        entry = _Entry(run)
        with lock:
            if run_id in runs:
                raise HTTPException(status_code=409, detail=f"Run {run_id} already exists")
            _evict()
            runs[run_id] = entry
        pool.submit(_execute, entry)
        return CreateRunResponse(run_id=run_id, status="queued")

    @app.get("/runs", response_model=list[RunResponse])
    def list_runs():
        with lock:
            entries = list(runs.values())
        return [e.view() for e in sorted(entries, key=lambda e: e.created_at)]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        with lock:
            entry = runs.get(run_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return entry.view()

    @app.get("/gates/{group}", response_model=GateResponse)
    def get_gate(group: str):
        return GateResponse(group=group, holder=shared_gate.holder(group), waiting=shared_gate.waiting(group))

    return app
