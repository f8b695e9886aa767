from __future__ import annotations

import io
import threading
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from gatedci.runner import CommandResult
from gatedci.ui.console import Console


class FakeExecutor:
    """
    Stands in for the external command executor.

    `fail` maps a command (or (command, platform)) to the exit code it
    should return; everything else exits 0. Every call is recorded.
    """

    def __init__(
        self,
        fail: Optional[Dict] = None,
        stdout: Optional[Dict[str, str]] = None,
        before: Optional[Callable[[str, Dict[str, str]], None]] = None,
    ):
        self.fail = dict(fail or {})
        self.stdout = dict(stdout or {})
        self.before = before
        self.calls: List[Tuple[str, Dict[str, str]]] = []
        self._lock = threading.Lock()

    def run(self, command: str, *, env=None, cwd=None) -> CommandResult:
        env = dict(env or {})
        with self._lock:
            self.calls.append((command, env))
        if self.before is not None:
            self.before(command, env)

        platform = env.get("GATEDCI_PLATFORM")
        code = self.fail.get((command, platform), self.fail.get(command, 0))
        return CommandResult(code, self.stdout.get(command, ""), "boom" if code else "")

    def commands(self, platform: Optional[str] = None) -> List[str]:
        with self._lock:
            return [
                c for c, env in self.calls
                if platform is None or env.get("GATEDCI_PLATFORM") == platform
            ]


@pytest.fixture
def console() -> Console:
    return Console(stream=io.StringIO())


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()
