from .accelerator import compiler_cache, directory_cache
from .errors import AcceleratorUnreachable, ConfigError, GateTimeout, StepFailure
from .gate import ConcurrencyGate, GateGrant
from .model import Event, Pipeline, PipelineResult, Stage, Step
from .pipeline import run_pipeline
from .triggers import classify, on_platform, on_trunk
# Imported after .pipeline: loading the gatedci.matrix submodule would
# otherwise rebind the package attribute `matrix` over the DSL function.
from .dsl import build, matrix, pipe, sh, stage, StageBuilder

__all__ = [
    "compiler_cache", "directory_cache",
    "build", "matrix", "pipe", "sh", "stage", "StageBuilder",
    "AcceleratorUnreachable", "ConfigError", "GateTimeout", "StepFailure",
    "ConcurrencyGate", "GateGrant",
    "Event", "Pipeline", "PipelineResult", "Stage", "Step",
    "run_pipeline",
    "classify", "on_platform", "on_trunk",
]
