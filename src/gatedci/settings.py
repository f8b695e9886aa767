from __future__ import annotations

import os


def _float_or_none(raw: str | None) -> float | None:
    if raw is None or raw.strip() == "":
        return None
    return float(raw)


def _int_or_none(raw: str | None) -> int | None:
    if raw is None or raw.strip() == "":
        return None
    return int(raw)


PIPELINE_FILE = os.environ.get("GATEDCI_PIPELINE", "gatedci_pipeline.py")
TRUNK = os.environ.get("GATEDCI_TRUNK", "main")
CACHE_DIR = os.environ.get("GATEDCI_CACHE_DIR", ".gatedci/cache")
MAX_WORKERS = _int_or_none(os.environ.get("GATEDCI_MAX_WORKERS"))

# unset = wait forever for a concurrency group, 0 = do not wait
GATE_TIMEOUT = _float_or_none(os.environ.get("GATEDCI_GATE_TIMEOUT"))

# set to share concurrency groups across machines
REDIS_URL = os.environ.get("GATEDCI_REDIS_URL")
GATE_PREFIX = os.environ.get("GATEDCI_GATE_PREFIX", "gatedci:gate")

# finished runs the status service remembers; older ones are forgotten
KEEP_RUNS = int(os.environ.get("GATEDCI_KEEP_RUNS", "100"))
