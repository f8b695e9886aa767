from __future__ import annotations

import threading
import time

import pytest

from gatedci.accelerator import compiler_cache
from gatedci.dsl import matrix, pipe, sh, stage
from gatedci.errors import ConfigError
from gatedci.gate import ConcurrencyGate
from gatedci.model import Axis, Event, JobStatus, StageStatus
from gatedci.pipeline import PipelineRun, plan_instances, run_pipeline
from gatedci.triggers import on_trunk

from conftest import FakeExecutor

PLATFORMS = ["macos-latest", "windows-latest", "ubuntu-latest"]


def _pipeline(**test_kwargs):
    return pipe(
        "ci",
        stage(
            "test",
            sh("clippy", "cargo clippy", compiles=True),
            sh("test", "cargo test", compiles=True),
            matrix=[matrix("platform", PLATFORMS)],
            **test_kwargs,
        ),
        stage(
            "release",
            sh("publish", "cargo publish"),
            needs=["test"],
            runs_on={"platform": "ubuntu-latest"},
            when=on_trunk("main"),
            concurrency_group="release",
        ),
        trunk="main",
    )


class SpyGate(ConcurrencyGate):
    def __init__(self):
        super().__init__()
        self.acquired = []

    def acquire(self, group, run_id, timeout=None, on_queued=None):
        grant = super().acquire(group, run_id, timeout=timeout, on_queued=on_queued)
        self.acquired.append((group, run_id))
        return grant


def _statuses(result, name):
    return {j.instance.bindings["platform"]: j.status for j in result.stage(name).jobs}


def test_trunk_push_runs_every_platform_despite_failure(console):
    executor = FakeExecutor(fail={("cargo test", "ubuntu-latest"): 101})
    result = run_pipeline(
        _pipeline(), Event("push", "main"), executor=executor, max_workers=3, console=console
    )

    assert _statuses(result, "test") == {
        "macos-latest": JobStatus.SUCCEEDED,
        "windows-latest": JobStatus.SUCCEEDED,
        "ubuntu-latest": JobStatus.FAILED,
    }
    for platform in PLATFORMS:
        assert executor.commands(platform)[:2] == ["cargo clippy", "cargo test"]
    assert result.stage("test").status is StageStatus.FAILED
    assert result.stage("release").status is StageStatus.SKIPPED
    assert "cargo publish" not in executor.commands()
    assert not result.succeeded


def test_pull_request_failure_cancels_pending_siblings(console):
    executor = FakeExecutor(fail={("cargo clippy", "macos-latest"): 1})
    result = run_pipeline(
        _pipeline(),
        Event("pull_request", "refs/pull/7/merge"),
        executor=executor,
        max_workers=1,
        console=console,
    )

    assert _statuses(result, "test") == {
        "macos-latest": JobStatus.FAILED,
        "windows-latest": JobStatus.CANCELLED,
        "ubuntu-latest": JobStatus.CANCELLED,
    }
    assert executor.commands() == ["cargo clippy"]
    assert result.stage("test").status is StageStatus.FAILED
    release = result.stage("release")
    assert release.status is StageStatus.SKIPPED
    assert release.reason == "dependency did not succeed"


def test_pull_request_failure_never_touches_finished_siblings(console):
    executor = FakeExecutor(fail={("cargo test", "ubuntu-latest"): 1})
    result = run_pipeline(
        _pipeline(),
        Event("pull_request", "refs/pull/7/merge"),
        executor=executor,
        max_workers=1,
        console=console,
    )

    # macos and windows finished before ubuntu started
    assert _statuses(result, "test") == {
        "macos-latest": JobStatus.SUCCEEDED,
        "windows-latest": JobStatus.SUCCEEDED,
        "ubuntu-latest": JobStatus.FAILED,
    }


def test_green_trunk_push_releases_under_the_gate(console):
    executor = FakeExecutor()
    gate = SpyGate()
    result = run_pipeline(
        _pipeline(),
        Event("push", "refs/heads/main"),
        executor=executor,
        gate=gate,
        run_id="run-1",
        console=console,
    )

    assert result.succeeded
    assert result.stage("release").status is StageStatus.SUCCEEDED
    assert executor.commands("ubuntu-latest").count("cargo publish") == 1
    assert gate.acquired == [("release", "run-1")]
    assert gate.holder("release") is None


def test_feature_branch_push_skips_release(console):
    result = run_pipeline(
        _pipeline(), Event("push", "refs/heads/feature-x"), executor=FakeExecutor(), console=console
    )
    assert result.succeeded
    assert result.stage("release").status is StageStatus.SKIPPED
    assert result.stage("release").reason == "run condition not met"


def test_stage_override_keeps_full_matrix_on_pull_request(console):
    executor = FakeExecutor(fail={("cargo clippy", "macos-latest"): 1})
    result = run_pipeline(
        _pipeline(fail_fast=False),
        Event("pull_request", "refs/pull/7/merge"),
        executor=executor,
        max_workers=1,
        console=console,
    )
    statuses = _statuses(result, "test")
    assert statuses["windows-latest"] is JobStatus.SUCCEEDED
    assert statuses["ubuntu-latest"] is JobStatus.SUCCEEDED


def test_cache_stop_failure_does_not_change_the_outcome(console):
    executor = FakeExecutor(
        fail={"sccache --stop-server": 2},
        stdout={"sccache --show-stats": "Compile requests          5\nCache hits                 4\n"},
    )
    pl = pipe(
        "ci",
        stage(
            "build",
            sh("build", "cargo build", compiles=True),
            sh("package", "tar czf out.tgz target"),
            accelerator=compiler_cache(),
        ),
    )
    result = run_pipeline(pl, Event("push", "main"), executor=executor, console=console)

    assert result.succeeded
    # the server belongs to the stage: stats and stop come after every job
    assert executor.commands() == [
        "sccache --start-server",
        "cargo build",
        "tar czf out.tgz target",
        "sccache --show-stats",
        "sccache --stop-server",
    ]
    assert result.stage("build").cache_stats == {"compile_requests": 5, "cache_hits": 4}
    assert result.stage("build").jobs[0].cache_stats is None
    assert dict(executor.calls)["cargo build"]["RUSTC_WRAPPER"] == "sccache"


def test_unreachable_cache_server_runs_uncached(console):
    executor = FakeExecutor(fail={"sccache --start-server": 127})
    pl = pipe("ci", stage("build", sh("build", "cargo build", compiles=True), accelerator=compiler_cache()))
    result = run_pipeline(pl, Event("push", "main"), executor=executor, console=console)

    assert result.succeeded
    assert "sccache --show-stats" not in executor.commands()
    assert "RUSTC_WRAPPER" not in dict(executor.calls)["cargo build"]


def test_overlapping_runs_serialize_on_the_group(console):
    gate = ConcurrencyGate()
    active = []
    overlaps = []
    lock = threading.Lock()

    def publish(cmd, env):
        if cmd != "cargo publish":
            return
        with lock:
            active.append(1)
            if len(active) > 1:
                overlaps.append(len(active))
        time.sleep(0.05)
        with lock:
            active.pop()

    results = {}

    def go(run_id):
        results[run_id] = run_pipeline(
            _pipeline(),
            Event("push", "main"),
            executor=FakeExecutor(before=publish),
            gate=gate,
            run_id=run_id,
            console=console,
        )

    threads = [threading.Thread(target=go, args=(rid,)) for rid in ("run-a", "run-b", "run-c")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert overlaps == []
    assert all(r.succeeded for r in results.values())
    assert len(results) == 3


def test_gate_timeout_fails_the_stage(console):
    gate = ConcurrencyGate()
    gate.acquire("release", "someone-else")

    result = run_pipeline(
        _pipeline(),
        Event("push", "main"),
        executor=FakeExecutor(),
        gate=gate,
        run_id="run-1",
        gate_timeout=0.05,
        console=console,
    )

    release = result.stage("release")
    assert release.status is StageStatus.FAILED
    assert "timed out" in release.reason
    assert not result.succeeded
    assert gate.holder("release") == "someone-else"


def test_invalid_declaration_fails_before_any_job():
    executor = FakeExecutor()
    pl = pipe(
        "ci",
        stage("a", sh("a", "echo a"), needs=["b"]),
        stage("b", sh("b", "echo b"), needs=["a"]),
    )
    with pytest.raises(ConfigError):
        PipelineRun(pl, Event("push", "main"), executor=executor)
    assert executor.calls == []


def test_empty_matrix_axis_fails_before_any_job():
    executor = FakeExecutor()
    pl = pipe(
        "ci",
        stage("lint", sh("fmt", "cargo fmt --check")),
        stage("test", sh("t", "cargo test"), matrix=[Axis("platform", [])]),
    )
    with pytest.raises(ConfigError, match="empty matrix"):
        run_pipeline(pl, Event("push", "main"), executor=executor)
    assert executor.calls == []


def test_env_layers_and_axis_bindings(console):
    executor = FakeExecutor()
    pl = pipe(
        "ci",
        stage(
            "test",
            sh("t", "cargo test", env={"C": "step"}),
            matrix=[matrix("platform", ["ubuntu-latest"]), matrix("toolchain", ["stable"])],
            env={"B": "stage", "C": "stage"},
        ),
        env={"A": "pipeline", "B": "pipeline"},
    )
    run_pipeline(pl, Event("push", "main"), executor=executor, console=console)

    env = executor.calls[0][1]
    assert env["A"] == "pipeline"
    assert env["B"] == "stage"
    assert env["C"] == "step"
    assert env["GATEDCI_PLATFORM"] == "ubuntu-latest"
    assert env["GATEDCI_TOOLCHAIN"] == "stable"


def test_plan_instances_for_singleton_stage():
    (inst,) = plan_instances(stage("release", sh("p", "publish"), runs_on={"platform": "ubuntu-latest"}))
    assert inst.bindings == {"platform": "ubuntu-latest"}
    assert inst.label == "release (platform=ubuntu-latest)"


def test_result_serializes(console):
    result = run_pipeline(_pipeline(), Event("push", "main"), executor=FakeExecutor(), run_id="r1", console=console)
    d = result.to_dict()

    assert d["run_id"] == "r1"
    assert d["status"] == "succeeded"
    assert [s["name"] for s in d["stages"]] == ["test", "release"]
    assert len(d["stages"][0]["instances"]) == 3


def test_compiler_cache_server_outlives_every_sibling(console):
    def slow_down(cmd, env):
        if env.get("GATEDCI_PLATFORM") == "slow" and cmd == "cargo test":
            time.sleep(0.1)

    executor = FakeExecutor(before=slow_down)
    pl = pipe(
        "ci",
        stage(
            "test",
            sh("build", "cargo build", compiles=True),
            sh("test", "cargo test", compiles=True),
            matrix=[matrix("platform", ["fast", "slow"])],
            accelerator=compiler_cache(),
        ),
    )
    result = run_pipeline(pl, Event("push", "main"), executor=executor, max_workers=2, console=console)

    cmds = executor.commands()
    assert result.succeeded
    assert cmds.count("sccache --start-server") == 1
    assert cmds.count("sccache --stop-server") == 1
    last_compile = max(i for i, c in enumerate(cmds) if c.startswith("cargo "))
    assert cmds.index("sccache --stop-server") > last_compile
    for _, env in executor.calls:
        if env.get("GATEDCI_PLATFORM"):
            assert env["RUSTC_WRAPPER"] == "sccache"


def test_compiler_cache_server_waits_for_pending_siblings(console):
    executor = FakeExecutor()
    pl = pipe(
        "ci",
        stage(
            "test",
            sh("test", "cargo test", compiles=True),
            matrix=[matrix("platform", PLATFORMS)],
            accelerator=compiler_cache(),
        ),
    )
    run_pipeline(pl, Event("push", "main"), executor=executor, max_workers=1, console=console)

    assert executor.commands() == [
        "sccache --start-server",
        "cargo test",
        "cargo test",
        "cargo test",
        "sccache --show-stats",
        "sccache --stop-server",
    ]


def test_unexpected_executor_error_keeps_recorded_steps(console):
    def explode(cmd, env):
        if cmd == "cargo test" and env.get("GATEDCI_PLATFORM") == "ubuntu-latest":
            raise OSError("runner lost")

    executor = FakeExecutor(before=explode)
    result = run_pipeline(
        _pipeline(), Event("push", "main"), executor=executor, max_workers=3, console=console
    )

    ubuntu = next(j for j in result.stage("test").jobs if j.instance.bindings["platform"] == "ubuntu-latest")
    assert ubuntu.status is JobStatus.FAILED
    assert [s.name for s in ubuntu.steps] == ["clippy", "test"]
    assert ubuntu.steps[-1].detail == "runner lost"
    assert result.stage("test").status is StageStatus.FAILED


def test_release_follows_the_pipeline_trunk(console):
    pl = pipe(
        "ci",
        stage("test", sh("t", "cargo test"), matrix=[matrix("platform", PLATFORMS)]),
        stage("release", sh("p", "cargo publish"), needs=["test"], when=on_trunk()),
        trunk="master",
    )

    on_master = run_pipeline(pl, Event("push", "refs/heads/master"), executor=FakeExecutor(), console=console)
    assert on_master.stage("release").status is StageStatus.SUCCEEDED

    on_main = run_pipeline(pl, Event("push", "refs/heads/main"), executor=FakeExecutor(), console=console)
    assert on_main.stage("release").status is StageStatus.SKIPPED


def test_master_trunk_push_runs_full_matrix(console):
    pl = pipe(
        "ci",
        stage("test", sh("t", "cargo test"), matrix=[matrix("platform", PLATFORMS)]),
        trunk="master",
    )
    executor = FakeExecutor(fail={("cargo test", "macos-latest"): 1})
    result = run_pipeline(pl, Event("push", "refs/heads/master"), executor=executor, max_workers=1, console=console)

    assert _statuses(result, "test")["ubuntu-latest"] is JobStatus.SUCCEEDED
