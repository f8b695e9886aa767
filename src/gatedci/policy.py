# policy.py
"""
Fail-fast policy.

The decision (on/off) is taken once per stage execution from the trigger.
Its effect fires on the first failed instance: every sibling that is still
pending or running becomes cancelled. Siblings observe this at their next
step boundary; an in-flight step is never interrupted.
"""
from __future__ import annotations

import threading
from typing import Iterable, List, Optional

from .model import Event, JobInstance, JobStatus, Stage
from .triggers import classify


def fail_fast_enabled(event: Event, trunk: str = "main") -> bool:
    # Trunk pushes always run the full matrix so every platform reports.
    c = classify(event, trunk)
    return not c.is_trunk_push


def should_cancel_siblings(event: Event, outcome: JobStatus, trunk: str = "main") -> bool:
    return outcome is JobStatus.FAILED and fail_fast_enabled(event, trunk)


def stage_fail_fast(stage: Stage, event: Event, trunk: str = "main") -> bool:
    """Per-stage override wins over the trigger-based default."""
    override = stage.fail_fast
    if override is None:
        return fail_fast_enabled(event, trunk)
    if callable(override):
        return bool(override(event))
    return bool(override)


class FailFastScope:
    """
    Owns the status transitions of one stage's instances.

    All transitions go through one lock, so a failure and the sibling
    cancellation it triggers are a single atomic step as seen by any
    instance asking permission to start its next step.
    """

    def __init__(self, instances: Iterable[JobInstance], enabled: bool):
        self.enabled = enabled
        self._instances: List[JobInstance] = list(instances)
        self._lock = threading.Lock()
        self._token = threading.Event()
        self.first_failure: Optional[JobInstance] = None

    @property
    def cancelled(self) -> bool:
        return self._token.is_set()

    def start(self, instance: JobInstance) -> bool:
        """pending -> running. False when the instance was cancelled before it started."""
        with self._lock:
            if instance.status is not JobStatus.PENDING:
                return False
            instance.status = JobStatus.RUNNING
            return True

    def begin_step(self, instance: JobInstance) -> bool:
        with self._lock:
            return instance.status is JobStatus.RUNNING

    def succeed(self, instance: JobInstance) -> None:
        with self._lock:
            if instance.status is JobStatus.RUNNING:
                instance.status = JobStatus.SUCCEEDED

    def fail(self, instance: JobInstance) -> List[JobInstance]:
        """
        Mark `instance` failed. Returns the siblings this failure cancelled
        (empty when fail-fast is off or already fired).
        """
        with self._lock:
            if instance.status is not JobStatus.RUNNING:
                # already cancelled by an earlier failure; stays cancelled
                return []
            instance.status = JobStatus.FAILED
            if self.first_failure is None:
                self.first_failure = instance

            if not self.enabled or self._token.is_set():
                return []

            self._token.set()
            cancelled = []
            for sib in self._instances:
                if sib is instance:
                    continue
                if sib.status in (JobStatus.PENDING, JobStatus.RUNNING):
                    sib.status = JobStatus.CANCELLED
                    cancelled.append(sib)
            return cancelled
