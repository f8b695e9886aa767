# accelerator.py
from __future__ import annotations

import hashlib
import json
import re
import tarfile
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import settings
from .errors import AcceleratorUnreachable
from .model import AcceleratorFactory, JobInstance

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# A cache accelerator wraps the compiling steps of one job instance:
#
#   start()         before the first compiling step (may raise AcceleratorUnreachable)
#   env()           merged into every compiling step while running
#   report_stats()  after the last compiling step, only if start() worked
#   stop()          always, best effort, never raises
#
# Two backends:
#   CompilerCacheServer  sccache-style server driven through the command executor
#   DirectoryCache       keyed tar snapshot of build dirs (target/, ~/.cargo/...)
#
# A per_stage backend is wrapped in a StageSession: instances hold leases,
# the stage reports stats and stops the server once every instance is done.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = settings.CACHE_DIR
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".gatedci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


class ServerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(frozen=True)
class StatsSnapshot:
    counters: Dict[str, int]
    raw: str = ""


@dataclass
class CacheSession:
    server_state: ServerState = ServerState.STOPPED
    stats: Dict[str, int] = field(default_factory=dict)
    started_at: Optional[float] = None
    stop_error: Optional[str] = None


class Accelerator:
    """Lifecycle contract shared by every cache backend."""

    name = "accelerator"

    # one session per stage instead of one per job instance
    per_stage = False
    # report_stats() describes this job alone
    job_stats = True

    def __init__(self) -> None:
        self.session = CacheSession()

    @property
    def running(self) -> bool:
        return self.session.server_state is ServerState.RUNNING

    def start(self) -> None:
        raise NotImplementedError

    def report_stats(self) -> StatsSnapshot:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    def env(self) -> Dict[str, str]:
        return {}

    def _mark_running(self) -> None:
        self.session.server_state = ServerState.RUNNING
        self.session.started_at = time.time()

    def _mark_stopped(self, error: Optional[str] = None) -> None:
        self.session.server_state = ServerState.STOPPED
        self.session.stop_error = error


# ---------------------------------------------------------------------
# Compiler cache server (sccache and friends)
# ---------------------------------------------------------------------

_STAT_LINE = re.compile(r"^(?P<label>[A-Za-z][A-Za-z ()/_-]*?)\s{2,}(?P<value>\d+)\s*$")


def parse_stats(text: str) -> Dict[str, int]:
    """
    Turn `sccache --show-stats` style output into counters.

        Compile requests          12
        Cache hits                 9
    -> {"compile_requests": 12, "cache_hits": 9}
    """
    counters: Dict[str, int] = {}
    for line in text.splitlines():
        m = _STAT_LINE.match(line.strip())
        if not m:
            continue
        key = re.sub(r"[^a-z0-9]+", "_", m.group("label").lower()).strip("_")
        counters[key] = int(m.group("value"))
    return counters


class CompilerCacheServer(Accelerator):
    """
    A compiler-cache server started per job instance.

    Every command goes through the same executor as the job's steps, so the
    server runs wherever the job runs.
    """

    name = "compiler-cache"
    # every instance on a host talks to the same server
    per_stage = True

    def __init__(self, executor: Any, binary: str = "sccache", wrapper_var: str = "RUSTC_WRAPPER"):
        super().__init__()
        self.executor = executor
        self.binary = binary
        self.wrapper_var = wrapper_var

    def start(self) -> None:
        try:
            res = self.executor.run(f"{self.binary} --start-server")
        except OSError as e:
            raise AcceleratorUnreachable(f"{self.binary}: {e}") from e
        if res.exit_code != 0:
            raise AcceleratorUnreachable(
                f"{self.binary} --start-server exited {res.exit_code}: {res.stderr.strip()[:200]}"
            )
        self._mark_running()

    def env(self) -> Dict[str, str]:
        return {self.wrapper_var: self.binary} if self.running else {}

    def report_stats(self) -> StatsSnapshot:
        res = self.executor.run(f"{self.binary} --show-stats")
        counters = parse_stats(res.stdout) if res.exit_code == 0 else {}
        self.session.stats = counters
        return StatsSnapshot(counters=counters, raw=res.stdout)

    def stop(self) -> None:
        # "server not running" is an expected answer here
        try:
            res = self.executor.run(f"{self.binary} --stop-server")
        except OSError as e:
            self._mark_stopped(str(e))
            return
        self._mark_stopped(None if res.exit_code == 0 else f"exit={res.exit_code}")


def compiler_cache(binary: str = "sccache", wrapper_var: str = "RUSTC_WRAPPER") -> AcceleratorFactory:
    def _factory(instance: JobInstance, executor: Any) -> Accelerator:
        return CompilerCacheServer(executor, binary=binary, wrapper_var=wrapper_var)
    return _factory


# ---------------------------------------------------------------------
# Stage-wide session
# ---------------------------------------------------------------------

class StageSession:
    """
    One accelerator session shared by every instance of a stage.

    The first instance to reach a compiling step starts it; a failed start
    is remembered so siblings run uncached without retrying. Only the stage
    closes it, after all of its instances are terminal.
    """

    def __init__(self, accelerator: Accelerator):
        self.accelerator = accelerator
        self._lock = threading.Lock()
        self.attempted = False
        self._error: Optional[str] = None

    def ensure_started(self) -> None:
        with self._lock:
            if not self.attempted:
                self.attempted = True
                try:
                    self.accelerator.start()
                except AcceleratorUnreachable as e:
                    self._error = str(e)
            if self._error is not None:
                raise AcceleratorUnreachable(self._error)

    def lease(self) -> "StageLease":
        return StageLease(self)

    def close(self) -> Optional[Dict[str, int]]:
        """Stats (when the session started), then stop. No-op if nothing compiled."""
        with self._lock:
            if not self.attempted:
                return None
            stats = None
            try:
                if self.accelerator.running:
                    stats = self.accelerator.report_stats().counters
            finally:
                self.accelerator.stop()
            return stats


class StageLease(Accelerator):
    """A job instance's handle on a StageSession. Stopping it leaves the session running."""

    job_stats = False

    def __init__(self, stage_session: StageSession):
        super().__init__()
        self.stage_session = stage_session
        self.name = stage_session.accelerator.name

    def start(self) -> None:
        self.stage_session.ensure_started()
        self._mark_running()

    def env(self) -> Dict[str, str]:
        return self.stage_session.accelerator.env() if self.running else {}

    def report_stats(self) -> StatsSnapshot:
        return StatsSnapshot(counters={})

    def stop(self) -> None:
        self._mark_stopped()


# ---------------------------------------------------------------------
# Directory snapshot cache
# ---------------------------------------------------------------------

def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _excluded(rel: str, globs: Sequence[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand input patterns into concrete paths.
    Supports plain files ("Cargo.lock"), dirs ("crates/") and globs ("**/Cargo.toml").
    """
    out: List[Path] = []
    seen = set()
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        direct = repo_root / pat
        matches = [direct] if direct.exists() else sorted(repo_root.glob(pat))
        for m in matches:
            key = str(m.resolve())
            if key not in seen:
                seen.add(key)
                out.append(m)
    return out


def hash_inputs(repo_root: Path, inputs: Sequence[str], excludes: Sequence[str]) -> str:
    fps: List[Tuple[str, str]] = []
    for p in _resolve_globs(repo_root, inputs):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, repo_root)
            if not _excluded(rel, excludes):
                fps.append((rel, _hash_file_contents(f)))
    fps.sort()
    return _sha256_str(_json_dumps_stable(fps))


class DirectoryCache(Accelerator):
    """
    File-based snapshot of build directories:
      cache_root/
        <scope>/
          <key>.tar.gz
          <key>.manifest.json

    start() restores a matching snapshot, stop() saves one on a miss and
    prunes old snapshots for the same scope.
    """

    name = "directory-cache"

    def __init__(
        self,
        *,
        scope: str,
        dirs: Sequence[str],
        inputs: Sequence[str] = (),
        key_parts: Optional[Mapping[str, Any]] = None,
        repo_root: str | Path = ".",
        cache_root: str | Path = DEFAULT_CACHE_DIR,
        keep: int = 3,
    ):
        super().__init__()
        self.scope = re.sub(r"[^A-Za-z0-9_.-]+", "_", scope)
        self.dirs = list(dirs)
        self.inputs = list(inputs)
        self.key_parts = dict(key_parts or {})
        self.repo_root = Path(repo_root).resolve()
        self.cache_root = Path(cache_root).resolve()
        self.keep = keep
        self.key: Optional[str] = None
        self.hit = False
        self._counters = {"hits": 0, "misses": 0, "restored_files": 0, "saved_files": 0}

    def _scope_dir(self) -> Path:
        d = self.cache_root / self.scope
        d.mkdir(parents=True, exist_ok=True)
        return d

    def compute_key(self) -> str:
        payload = {
            "v": 1,
            "scope": self.scope,
            "dirs": self.dirs,
            "parts": self.key_parts,
            "inputs": hash_inputs(self.repo_root, self.inputs, DEFAULT_CACHE_EXCLUDES),
        }
        return _sha256_str(_json_dumps_stable(payload))

    def start(self) -> None:
        try:
            scope_dir = self._scope_dir()
        except OSError as e:
            raise AcceleratorUnreachable(f"cache root {self.cache_root} unusable: {e}") from e

        self.key = self.compute_key()
        art = scope_dir / f"{self.key}.tar.gz"
        if art.exists():
            try:
                with tarfile.open(str(art), mode="r:gz") as tar:
                    members = [m for m in tar.getmembers() if m.isfile()]
                    tar.extractall(path=str(self.repo_root), filter="data")
            except (OSError, tarfile.TarError) as e:
                raise AcceleratorUnreachable(f"snapshot {art.name} unreadable: {e}") from e
            self.hit = True
            self._counters["hits"] += 1
            self._counters["restored_files"] += len(members)
        else:
            self._counters["misses"] += 1
        self._mark_running()

    def report_stats(self) -> StatsSnapshot:
        self.session.stats = dict(self._counters)
        return StatsSnapshot(counters=dict(self._counters))

    def stop(self) -> None:
        if not self.running or self.key is None:
            self._mark_stopped("not running")
            return
        if self.hit:
            self._mark_stopped()
            return
        try:
            self._save()
            self.prune()
        except (OSError, tarfile.TarError) as e:
            self._mark_stopped(str(e))
            return
        self._mark_stopped()

    def _save(self) -> None:
        scope_dir = self._scope_dir()
        art = scope_dir / f"{self.key}.tar.gz"
        tmp = art.with_suffix(".tmp")
        saved = 0
        try:
            # build in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in self.dirs:
                    src = (self.repo_root / entry).resolve()
                    # snapshots only hold paths under the repo root
                    if not src.exists() or not src.is_relative_to(self.repo_root):
                        continue
                    files = [src] if src.is_file() else list(_iter_files_under(src))
                    for f in files:
                        rel = _relpath(f, self.repo_root)
                        if _excluded(rel, DEFAULT_CACHE_EXCLUDES):
                            continue
                        tar.add(str(f), arcname=rel, recursive=False)
                        saved += 1
            tmp.replace(art)
        finally:
            tmp.unlink(missing_ok=True)

        manifest = {
            "key": self.key,
            "scope": self.scope,
            "dirs": self.dirs,
            "parts": self.key_parts,
            "files": saved,
            "generated_at_unix": int(time.time()),
        }
        (scope_dir / f"{self.key}.manifest.json").write_text(
            json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8"
        )
        self._counters["saved_files"] += saved

    def prune(self) -> None:
        """Keep only the newest N snapshots for this scope (by mtime)."""
        d = self._scope_dir()
        tars = sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in tars[self.keep:]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (d / f"{key}.manifest.json").unlink(missing_ok=True)


def directory_cache(
    dirs: Sequence[str],
    *,
    inputs: Sequence[str] = (),
    repo_root: str | Path = ".",
    cache_root: str | Path = DEFAULT_CACHE_DIR,
    keep: int = 3,
) -> AcceleratorFactory:
    def _factory(instance: JobInstance, executor: Any) -> Accelerator:
        return DirectoryCache(
            scope=instance.label,
            dirs=dirs,
            inputs=inputs,
            key_parts={"stage": instance.stage, "bindings": instance.bindings},
            repo_root=repo_root,
            cache_root=cache_root,
            keep=keep,
        )
    return _factory
