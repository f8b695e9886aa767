# gate.py
"""
Concurrency groups.

A group is a named mutual-exclusion domain: at most one pipeline run holds
it at a time, later runs queue in arrival order and are handed the gate
when the holder releases. Nobody polls.
"""
from __future__ import annotations

import threading
from collections import deque
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Deque, Dict, Iterator, List, Optional

import redis

from .errors import GateTimeout


class GateGrant(str, Enum):
    ACQUIRED = "acquired"  # free on arrival
    QUEUED = "queued"      # waited behind another run, now holds the gate


OnQueued = Callable[[Optional[str]], None]


class _Gate:
    def acquire(
        self,
        group: str,
        run_id: str,
        timeout: Optional[float] = None,
        on_queued: Optional[OnQueued] = None,
    ) -> GateGrant:
        raise NotImplementedError

    def release(self, group: str, run_id: str) -> None:
        raise NotImplementedError

    def holder(self, group: str) -> Optional[str]:
        raise NotImplementedError

    def waiting(self, group: str) -> List[str]:
        raise NotImplementedError

    @contextmanager
    def hold(
        self,
        group: str,
        run_id: str,
        timeout: Optional[float] = None,
        on_queued: Optional[OnQueued] = None,
    ) -> Iterator[GateGrant]:
        """Hold `group` for the body of the with-block; released on every exit path."""
        grant = self.acquire(group, run_id, timeout=timeout, on_queued=on_queued)
        try:
            yield grant
        finally:
            self.release(group, run_id)


class ConcurrencyGate(_Gate):
    """In-process gate shared by every pipeline run of one process."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queues: Dict[str, Deque[str]] = {}

    def acquire(
        self,
        group: str,
        run_id: str,
        timeout: Optional[float] = None,
        on_queued: Optional[OnQueued] = None,
    ) -> GateGrant:
        with self._cond:
            q = self._queues.setdefault(group, deque())
            if run_id in q:
                raise RuntimeError(f"run '{run_id}' already holds or waits for group '{group}'")
            q.append(run_id)
            if q[0] == run_id:
                return GateGrant.ACQUIRED

            if on_queued is not None:
                on_queued(q[0])
            granted = self._cond.wait_for(lambda: q[0] == run_id, timeout=timeout)
            if not granted:
                q.remove(run_id)
                self._cond.notify_all()
                raise GateTimeout(group, run_id, timeout or 0.0)
            return GateGrant.QUEUED

    def release(self, group: str, run_id: str) -> None:
        with self._cond:
            q = self._queues.get(group)
            if not q or q[0] != run_id:
                raise RuntimeError(f"run '{run_id}' does not hold group '{group}'")
            q.popleft()
            if not q:
                del self._queues[group]
            self._cond.notify_all()

    def holder(self, group: str) -> Optional[str]:
        with self._cond:
            q = self._queues.get(group)
            return q[0] if q else None

    def waiting(self, group: str) -> List[str]:
        with self._cond:
            return list(self._queues.get(group, ()))[1:]


# ----------------------------------------------------------------------
# Redis-backed gate (runs on different machines)
# ----------------------------------------------------------------------

# KEYS[1] = queue list, ARGV[1] = run_id, ARGV[2] = turn key prefix
_RELEASE = """
local head = redis.call('LINDEX', KEYS[1], 0)
if head ~= ARGV[1] then return -1 end
redis.call('LPOP', KEYS[1])
local nxt = redis.call('LINDEX', KEYS[1], 0)
if nxt then redis.call('RPUSH', ARGV[2] .. nxt, '1') end
return 1
"""

_ABANDON = """
local head = redis.call('LINDEX', KEYS[1], 0)
redis.call('LREM', KEYS[1], 1, ARGV[1])
redis.call('DEL', ARGV[2] .. ARGV[1])
if head == ARGV[1] then
  local nxt = redis.call('LINDEX', KEYS[1], 0)
  if nxt then redis.call('RPUSH', ARGV[2] .. nxt, '1') end
  return 1
end
return 0
"""


class RedisConcurrencyGate(_Gate):
    """
    Same contract as ConcurrencyGate, stored in redis.

      <prefix>:<group>:queue        FIFO of run ids, head = holder
      <prefix>:<group>:turn:<run>   hand-off list a waiter blocks on (BLPOP)
    """

    def __init__(self, client: "redis.Redis", prefix: str = "gatedci:gate"):
        self.r = client
        self.prefix = prefix
        self._release = client.register_script(_RELEASE)
        self._abandon = client.register_script(_ABANDON)

    @classmethod
    def from_url(cls, url: str, prefix: str = "gatedci:gate") -> "RedisConcurrencyGate":
        return cls(redis.Redis.from_url(url, decode_responses=True), prefix=prefix)

    def _queue_key(self, group: str) -> str:
        return f"{self.prefix}:{group}:queue"

    def _turn_prefix(self, group: str) -> str:
        return f"{self.prefix}:{group}:turn:"

    def acquire(
        self,
        group: str,
        run_id: str,
        timeout: Optional[float] = None,
        on_queued: Optional[OnQueued] = None,
    ) -> GateGrant:
        qkey = self._queue_key(group)
        turn = self._turn_prefix(group) + run_id
        if run_id in self.r.lrange(qkey, 0, -1):
            raise RuntimeError(f"run '{run_id}' already holds or waits for group '{group}'")

        if self.r.rpush(qkey, run_id) == 1:
            self.r.delete(turn)
            return GateGrant.ACQUIRED

        if on_queued is not None:
            on_queued(self.r.lindex(qkey, 0))
        if timeout is None:
            # BLPOP timeout 0 blocks until the holder hands over
            item = self.r.blpop([turn], timeout=0)
        elif timeout <= 0:
            # no wait at all, same as ConcurrencyGate
            item = self.r.lpop(turn)
        else:
            item = self.r.blpop([turn], timeout=timeout)
        if item is None:
            # leaves the queue; hands the gate on if it was granted meanwhile
            self._abandon(keys=[qkey], args=[run_id, self._turn_prefix(group)])
            raise GateTimeout(group, run_id, timeout or 0.0)
        return GateGrant.QUEUED

    def release(self, group: str, run_id: str) -> None:
        res = self._release(keys=[self._queue_key(group)], args=[run_id, self._turn_prefix(group)])
        if res == -1:
            raise RuntimeError(f"run '{run_id}' does not hold group '{group}'")

    def holder(self, group: str) -> Optional[str]:
        return self.r.lindex(self._queue_key(group), 0)

    def waiting(self, group: str) -> List[str]:
        return list(self.r.lrange(self._queue_key(group), 1, -1))
