# triggers.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from . import settings
from .model import PULL_REQUEST, PUSH, Event

TAG_PREFIX = "refs/tags/"
BRANCH_PREFIX = "refs/heads/"


@dataclass(frozen=True)
class Classification:
    is_pull_request: bool
    is_trunk_push: bool
    is_tag: bool


def event_from_ref(trigger_kind: str, ref: str) -> Event:
    """Build an Event from the `{trigger_kind, ref}` pair handed to us by the host."""
    return Event(trigger_kind=trigger_kind, ref=ref, is_tag=ref.startswith(TAG_PREFIX))


def is_trunk_ref(ref: str, trunk: str = "main") -> bool:
    return ref in (trunk, BRANCH_PREFIX + trunk)


def classify(event: Event, trunk: str = "main") -> Classification:
    """
    Derive the booleans every downstream policy looks at.

    Unknown trigger kinds are neither a pull request nor a trunk push, so
    fail-fast stays on and trunk-only stages are skipped.
    """
    is_tag = event.is_tag or event.ref.startswith(TAG_PREFIX)
    is_pr = event.trigger_kind == PULL_REQUEST
    trunk_push = (
        event.trigger_kind == PUSH
        and not is_tag
        and is_trunk_ref(event.ref, trunk)
    )
    return Classification(is_pull_request=is_pr, is_trunk_push=trunk_push, is_tag=is_tag)


# ----------------------------------------------------------------------
# Predicates for Stage.when / Step.when
# ----------------------------------------------------------------------

class OnTrunk:
    """
    Run predicate: only pushes to the trunk branch.

    Without an explicit trunk it resolves against the pipeline trunk
    (see Stage.should_run), then GATEDCI_TRUNK.
    """

    def __init__(self, trunk: Optional[str] = None):
        self.trunk = trunk

    def for_trunk(self, trunk: Optional[str]) -> "OnTrunk":
        return self if self.trunk or not trunk else OnTrunk(trunk)

    def __call__(self, event: Event) -> bool:
        return classify(event, self.trunk or settings.TRUNK).is_trunk_push


def on_trunk(trunk: Optional[str] = None) -> OnTrunk:
    return OnTrunk(trunk)


def on_platform(*platforms: str, axis: str = "platform"):
    """Step predicate: only on the given matrix platforms."""
    wanted = set(platforms)

    def _pred(bindings: Mapping[str, str]) -> bool:
        return bindings.get(axis) in wanted
    return _pred
