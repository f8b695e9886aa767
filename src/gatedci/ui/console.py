"""Console output formatting utilities for gatedci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from gatedci.model import Event, PipelineResult
    from gatedci.triggers import Classification


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where normal output goes (defaults to stdout at print time)
        """
        self.debug = debug
        self._stream = stream
        # matrix instances print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out("", title, "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        run_id: str,
        event: "Event",
        classification: "Classification",
        stage_count: int,
    ) -> None:
        """Print run start information."""
        kinds = []
        if classification.is_pull_request:
            kinds.append("pull request")
        if classification.is_trunk_push:
            kinds.append("trunk push")
        if classification.is_tag:
            kinds.append("tag")
        self._out(
            "",
            "RUN STARTED",
            f"Pipeline: {pipeline}",
            f"Run ID: {run_id}",
            f"Trigger: {event.trigger_kind} {event.ref} ({', '.join(kinds) or 'other'})",
            f"Stages: {stage_count}",
            "",
        )

    def print_stage_start(self, name: str, instances: int, fail_fast: bool) -> None:
        policy = "fail-fast" if fail_fast else "run to completion"
        self._out("", f"STAGE STARTED: {name} ({instances} job(s), {policy})")

    def print_stage_skipped(self, name: str, reason: str) -> None:
        self._out("", f"STAGE SKIPPED: {name} ({reason})")

    def print_stage_done(self, name: str, status: str) -> None:
        self._out(f"STAGE {status.upper()}: {name}")

    def print_job_start(self, label: str) -> None:
        self._out(f"JOB STARTED: {label}")

    def print_step(self, label: str, name: str) -> None:
        self._out(f"[{label}] STEP: {name}")

    def print_step_skipped(self, label: str, name: str) -> None:
        if self.debug:
            self._out(f"[{label}] STEP SKIPPED: {name} (not applicable)")

    def print_step_tolerated(self, label: str, name: str, exit_code: Optional[int]) -> None:
        self._out(f"[{label}] STEP TOLERATED: {name} (exit={exit_code}, best effort)")

    def print_job_done(self, label: str, status: str) -> None:
        self._out(f"[{label}] STATUS: {status}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            if error_line and error_line != str(reason):
                lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_cancelled(self, cause: str, labels: Iterable[str]) -> None:
        labels = list(labels)
        if labels:
            self._out(f"FAIL-FAST: {cause} failed, cancelling {', '.join(labels)}")

    def print_cache(self, label: str, message: str) -> None:
        self._out(f"[{label}] CACHE: {message}")

    def print_gate_waiting(self, group: str, run_id: str, holder: Optional[str]) -> None:
        self._out(f"GATE: run {run_id} queued for '{group}' (held by {holder or 'unknown'})")

    def print_gate_acquired(self, group: str, run_id: str) -> None:
        self._out(f"GATE: run {run_id} holds '{group}'")

    def print_gate_released(self, group: str, run_id: str) -> None:
        self._out(f"GATE: run {run_id} released '{group}'")

    def print_results(self, result: "PipelineResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for stage in result.stages:
            lines.append(f"  {stage.name}: {stage.status.value.upper()}")
            for job in stage.jobs:
                lines.append(f"    {job.instance.label}: {job.status.value.upper()}")
        lines.append(f"PIPELINE: {result.status.value.upper()}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Print structured error message."""
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
