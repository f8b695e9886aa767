from __future__ import annotations

import pytest

from gatedci.dsl import sh, stage
from gatedci.matrix import expand
from gatedci.model import Axis, Event, JobStatus
from gatedci.policy import FailFastScope, fail_fast_enabled, should_cancel_siblings, stage_fail_fast


@pytest.mark.parametrize("ref", ["main", "refs/heads/main"])
def test_trunk_push_disables_fail_fast(ref):
    assert not fail_fast_enabled(Event("push", ref))


@pytest.mark.parametrize(
    "event",
    [
        Event("pull_request", "refs/pull/1/merge"),
        Event("pull_request", "main"),
        Event("push", "refs/heads/feature-x"),
        Event("push", "refs/tags/v1.0.0"),
        Event("push", "main", is_tag=True),
        Event("workflow_dispatch", "refs/heads/main"),
    ],
)
def test_everything_else_enables_fail_fast(event):
    assert fail_fast_enabled(event)


def test_should_cancel_siblings_only_on_failure():
    pr = Event("pull_request", "refs/pull/1/merge")
    assert should_cancel_siblings(pr, JobStatus.FAILED)
    assert not should_cancel_siblings(pr, JobStatus.SUCCEEDED)
    assert not should_cancel_siblings(Event("push", "main"), JobStatus.FAILED)


def test_stage_override_wins():
    trunk = Event("push", "main")
    assert stage_fail_fast(stage("s", sh("x", "true"), fail_fast=True), trunk)
    assert not stage_fail_fast(stage("s", sh("x", "true"), fail_fast=lambda e: False), Event("pull_request", "x"))
    assert not stage_fail_fast(stage("s", sh("x", "true")), trunk)


def _three():
    return expand([Axis("platform", ("macos", "windows", "ubuntu"))], "test")


def test_failure_cancels_pending_and_running_siblings_only():
    mac, win, ubu = _three()
    scope = FailFastScope([mac, win, ubu], enabled=True)

    assert scope.start(mac)
    assert scope.start(win)
    scope.succeed(win)

    cancelled = scope.fail(mac)

    assert cancelled == [ubu]
    assert mac.status is JobStatus.FAILED
    assert win.status is JobStatus.SUCCEEDED
    assert ubu.status is JobStatus.CANCELLED
    assert scope.cancelled
    assert scope.first_failure is mac


def test_cancelled_instance_cannot_start_or_step():
    mac, win, ubu = _three()
    scope = FailFastScope([mac, win, ubu], enabled=True)
    scope.start(mac)
    scope.start(win)

    scope.fail(mac)

    assert not scope.begin_step(win)
    assert not scope.start(ubu)
    # a late result from the in-flight step does not resurrect it
    scope.succeed(win)
    assert win.status is JobStatus.CANCELLED
    assert scope.fail(win) == []
    assert win.status is JobStatus.CANCELLED


def test_disabled_scope_lets_siblings_finish():
    mac, win, ubu = _three()
    scope = FailFastScope([mac, win, ubu], enabled=False)
    for inst in (mac, win, ubu):
        scope.start(inst)

    assert scope.fail(ubu) == []
    assert scope.begin_step(mac)
    scope.succeed(mac)
    scope.succeed(win)

    assert [i.status for i in (mac, win, ubu)] == [JobStatus.SUCCEEDED, JobStatus.SUCCEEDED, JobStatus.FAILED]
    assert not scope.cancelled
