"""Per-request state machine.

pending -> fetching -> building -> hashing -> matching -> {verified | unverified}
Any non-terminal state may move to failed. Terminal states have no exits.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from wasmverify.errors import InvalidTransition


class Stage(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    BUILDING = "building"
    HASHING = "hashing"
    MATCHING = "matching"
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    FAILED = "failed"


TERMINAL_STAGES: FrozenSet[Stage] = frozenset({Stage.VERIFIED, Stage.UNVERIFIED, Stage.FAILED})

_FORWARD: Dict[Stage, FrozenSet[Stage]] = {
    Stage.PENDING: frozenset({Stage.FETCHING}),
    Stage.FETCHING: frozenset({Stage.BUILDING}),
    Stage.BUILDING: frozenset({Stage.HASHING}),
    Stage.HASHING: frozenset({Stage.MATCHING}),
    Stage.MATCHING: frozenset({Stage.VERIFIED, Stage.UNVERIFIED}),
}


def allowed_transitions(stage: Stage) -> FrozenSet[Stage]:
    if stage in TERMINAL_STAGES:
        return frozenset()
    return _FORWARD[stage] | {Stage.FAILED}


class RequestState:
    """Tracks the stage of one request and the failure reason, if any."""

    def __init__(self, request_id: Optional[str] = None):
        self.request_id = request_id
        self.stage = Stage.PENDING
        self.history: List[Stage] = [Stage.PENDING]
        self.failed_stage: Optional[Stage] = None
        self.reason: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def advance(self, target: Stage) -> None:
        if target not in allowed_transitions(self.stage):
            raise InvalidTransition(
                f"Cannot move from '{self.stage.value}' to '{target.value}'",
                stage=self.stage.value,
                request_id=self.request_id,
            )
        self.stage = target
        self.history.append(target)

    def fail(self, reason: str) -> None:
        failed_at = self.stage
        self.advance(Stage.FAILED)
        self.failed_stage = failed_at
        self.reason = reason
