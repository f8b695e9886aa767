# runner.py
from __future__ import annotations

import os
import runpy
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence

from .accelerator import Accelerator
from .errors import AcceleratorUnreachable, ConfigError, JobAborted, StepFailure
from .model import JobInstance, JobOutcome, Pipeline, Step, StepResult, StepStatus
from .policy import FailFastScope
from .ui.console import Console, get_console


TOOL_HINTS = {
    "cargo": "Install the Rust toolchain (rustup) or fix PATH.",
    "sccache": "Install sccache or drop the compiler cache from the stage.",
    "git": "Install Git or fix PATH.",
}


# ----------------------------------------------------------------------
# Command execution
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class ShellExecutor:
    """
    Runs step commands through the local shell.

    gatedci never interprets a command; it hands the string over and
    looks at the exit status.
    """

    def __init__(self, repo_root: str | Path = ".", base_env: Optional[Mapping[str, str]] = None):
        self.repo_root = Path(repo_root).resolve()
        self.base_env = dict(os.environ if base_env is None else base_env)

    def run(
        self,
        command: str,
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: str | None = None,
    ) -> CommandResult:
        workdir = (self.repo_root / (cwd or ".")).resolve()
        if not workdir.exists():
            raise FileNotFoundError(f"cwd not found: {workdir}")

        full_env = dict(self.base_env)
        full_env.update(env or {})

        proc = subprocess.run(
            command,
            shell=True,
            cwd=str(workdir),
            env=full_env,
            text=True,
            capture_output=True,
        )
        # keep only the tail; enough to explain a failure
        return CommandResult(proc.returncode, proc.stdout[-4000:], proc.stderr[-4000:])


def _hint_for(cmd: str, exit_code: int) -> Optional[str]:
    if exit_code != 127:
        return None
    tool = cmd.strip().split(" ", 1)[0] if cmd.strip() else ""
    return TOOL_HINTS.get(tool)


# ----------------------------------------------------------------------
# Job runner
# ----------------------------------------------------------------------

class JobRunner:
    """Executes the ordered steps of one job instance."""

    def __init__(self, executor, console: Optional[Console] = None):
        self.executor = executor
        self.console = console or get_console()

    def run(
        self,
        instance: JobInstance,
        steps: Sequence[Step],
        *,
        scope: FailFastScope,
        env: Optional[Mapping[str, str]] = None,
        accelerator: Optional[Accelerator] = None,
    ) -> JobOutcome:
        outcome = JobOutcome(instance=instance)
        if not scope.start(instance):
            # cancelled before it ever started
            return outcome

        self.console.print_job_start(instance.label)
        applies = [s.applies_to(instance.bindings) for s in steps]
        compiling = [i for i, s in enumerate(steps) if applies[i] and s.compiles]
        last_compiling = compiling[-1] if compiling else -1

        cache: Optional[Accelerator] = accelerator if compiling else None
        cache_attempted = False
        cache_started = False

        try:
            for idx, step in enumerate(steps):
                if not applies[idx]:
                    outcome.steps.append(StepResult(step.name, StepStatus.SKIPPED))
                    self.console.print_step_skipped(instance.label, step.name)
                    continue

                if not scope.begin_step(instance):
                    outcome.steps.append(StepResult(step.name, StepStatus.SKIPPED, detail="cancelled"))
                    continue

                if step.compiles and cache is not None and not cache_attempted:
                    cache_attempted = True
                    cache_started = self._start_cache(instance, cache)

                step_env: Dict[str, str] = dict(env or {})
                if step.compiles and cache_started:
                    step_env.update(cache.env())
                step_env.update(step.env)

                try:
                    result = self._run_step(instance, step, step_env)
                    outcome.steps.append(result)
                except StepFailure as e:
                    outcome.steps.append(StepResult(step.name, StepStatus.FAILED, e.exit_code, e.stderr))
                    self.console.print_failure(
                        f"{instance.label} / {step.name}",
                        e.stderr or str(e),
                        exit_code=e.exit_code,
                        hint=_hint_for(e.cmd, e.exit_code),
                    )
                    self._fail(scope, instance)
                    break
                except Exception as e:
                    outcome.steps.append(StepResult(step.name, StepStatus.FAILED, detail=str(e)))
                    raise

                if idx == last_compiling and cache_attempted:
                    cache_attempted = False
                    outcome.cache_stats = self._finish_cache(instance, cache, cache_started)
            else:
                scope.succeed(instance)
        except Exception as e:
            # unexpected executor error: the instance is failed and handed up with what it recorded
            self._fail(scope, instance)
            raise JobAborted(outcome) from e
        finally:
            if cache_attempted:
                cache_attempted = False
                outcome.cache_stats = self._finish_cache(instance, cache, cache_started)

        self.console.print_job_done(instance.label, instance.status.value)
        return outcome

    def _run_step(self, instance: JobInstance, step: Step, env: Mapping[str, str]) -> StepResult:
        self.console.print_step(instance.label, step.name)
        res = self.executor.run(step.run, env=env, cwd=step.cwd)
        if res.exit_code == 0:
            return StepResult(step.name, StepStatus.SUCCEEDED, 0)
        if step.best_effort:
            self.console.print_step_tolerated(instance.label, step.name, res.exit_code)
            return StepResult(step.name, StepStatus.TOLERATED, res.exit_code, res.stderr)
        raise StepFailure(
            job=instance.label,
            step=step.name,
            cmd=step.run,
            exit_code=res.exit_code,
            stdout=res.stdout,
            stderr=res.stderr,
        )

    def _fail(self, scope: FailFastScope, instance: JobInstance) -> None:
        cancelled = scope.fail(instance)
        self.console.print_cancelled(instance.label, (c.label for c in cancelled))

    def _start_cache(self, instance: JobInstance, cache: Accelerator) -> bool:
        try:
            cache.start()
        except AcceleratorUnreachable as e:
            self.console.print_cache(instance.label, f"unreachable, continuing uncached ({e})")
            return False
        self.console.print_cache(instance.label, f"{cache.name} started")
        return True

    def _finish_cache(self, instance: JobInstance, cache: Accelerator, started: bool) -> Optional[Dict[str, int]]:
        stats = None
        try:
            if started and cache.job_stats:
                stats = cache.report_stats().counters
                self.console.print_cache(instance.label, f"stats {stats}")
        except Exception as e:
            # stats are informational; the job keeps its outcome
            self.console.print_cache(instance.label, f"stats unavailable ({e})")
        finally:
            cache.stop()
        if cache.session.stop_error:
            self.console.print_debug(f"[{instance.label}] cache stop: {cache.session.stop_error}")
        return stats


# ----------------------------------------------------------------------
# Pipeline loading (local file)
# ----------------------------------------------------------------------

def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    pl_path = Path(path).expanduser().resolve()
    if not pl_path.exists():
        raise FileNotFoundError(f"Pipeline file not found: {pl_path}")
    if pl_path.suffix != ".py":
        raise ConfigError(f"Pipeline must be a .py file, got: {pl_path.name}")

    globals_dict = runpy.run_path(str(pl_path), run_name=f"gatedci_pipeline_{pl_path.stem}")

    found = None
    if callable(globals_dict.get("pipeline")):
        found = globals_dict["pipeline"]()
    elif "PIPELINE" in globals_dict:
        found = globals_dict["PIPELINE"]

    if not isinstance(found, Pipeline):
        raise ConfigError(
            f"{pl_path.name} must define pipeline() -> Pipeline or PIPELINE = Pipeline(...)"
        )
    return found
