"""
Merge executor state machine

initiated -> tracking -> polling -> (fixing)* -> verifying -> dry_run_testing
-> merging -> cleaning_up -> completed, with aborted reachable from every
non-terminal state.
"""

from typing import Dict, List, Set

from .errors import InvalidTransitionError
from .merge_types import MergeState

_ALLOWED_TRANSITIONS: Dict[MergeState, Set[MergeState]] = {
    MergeState.INITIATED: {MergeState.TRACKING},
    MergeState.TRACKING: {MergeState.POLLING},
    MergeState.POLLING: {MergeState.FIXING, MergeState.VERIFYING},
    MergeState.FIXING: {MergeState.POLLING, MergeState.VERIFYING},
    MergeState.VERIFYING: {MergeState.DRY_RUN_TESTING},
    MergeState.DRY_RUN_TESTING: {MergeState.MERGING},
    MergeState.MERGING: {MergeState.CLEANING_UP},
    MergeState.CLEANING_UP: {MergeState.COMPLETED},
    MergeState.COMPLETED: set(),
    MergeState.ABORTED: set(),
}

_TERMINAL_STATES: Set[MergeState] = {MergeState.COMPLETED, MergeState.ABORTED}

for _state in MergeState:
    if _state not in _TERMINAL_STATES:
        _ALLOWED_TRANSITIONS[_state].add(MergeState.ABORTED)


def can_transition(source: MergeState, target: MergeState) -> bool:
    return target in _ALLOWED_TRANSITIONS[source]


def assert_transition(source: MergeState, target: MergeState) -> None:
    if not can_transition(source, target):
        raise InvalidTransitionError(
            f"Illegal merge state transition: {source.value} -> {target.value}"
        )


def is_terminal(state: MergeState) -> bool:
    return state in _TERMINAL_STATES


def allowed_targets(state: MergeState) -> List[MergeState]:
    return sorted(_ALLOWED_TRANSITIONS[state], key=lambda s: s.value)
