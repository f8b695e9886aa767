# errors.py
from __future__ import annotations

from dataclasses import dataclass


class GatedCIError(Exception):
    """Base class for every error gatedci raises on purpose."""


class ConfigError(GatedCIError):
    """
    The pipeline declaration is unusable.

    Raised before any job runs: empty matrix, duplicate names,
    unknown dependency, cyclic dependencies.
    """


@dataclass
class StepFailure(GatedCIError):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class AcceleratorUnreachable(GatedCIError):
    """The cache accelerator could not be started. Jobs continue uncached."""


class GateTimeout(GatedCIError):
    """A bounded wait on a concurrency group expired before the gate was granted."""

    def __init__(self, group: str, run_id: str, timeout: float):
        super().__init__(f"run '{run_id}' timed out after {timeout:.1f}s waiting for group '{group}'")
        self.group = group
        self.run_id = run_id
        self.timeout = timeout


class JobAborted(GatedCIError):
    """An unexpected error stopped a job. `outcome` holds the steps it recorded."""

    def __init__(self, outcome):
        super().__init__(f"[{outcome.instance.label}] aborted")
        self.outcome = outcome
