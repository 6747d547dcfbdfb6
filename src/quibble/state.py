"""State machine for round phases."""

from __future__ import annotations

from quibble.models import RoundPhase, SessionManifest, SessionStatus

# Valid transitions: from_phase -> set of allowed to_phases.
# PENDING may jump ahead when a resumed round already has earlier artifacts.
TRANSITIONS: dict[RoundPhase, set[RoundPhase]] = {
    RoundPhase.PENDING: {RoundPhase.CODEX_REVIEW, RoundPhase.CLAUDE_RESPONSE, RoundPhase.CONSENSUS_CHECK},
    RoundPhase.CODEX_REVIEW: {RoundPhase.CLAUDE_RESPONSE},
    RoundPhase.CLAUDE_RESPONSE: {RoundPhase.CONSENSUS_CHECK},
    RoundPhase.CONSENSUS_CHECK: {RoundPhase.COMPLETE},
    RoundPhase.COMPLETE: {RoundPhase.PENDING},
}

# Phases in which current_round may move forward.
ROUND_BOUNDARIES: frozenset[RoundPhase] = frozenset({RoundPhase.PENDING, RoundPhase.COMPLETE})


class InvalidTransitionError(Exception):
    def __init__(self, from_phase: RoundPhase | SessionStatus, to_phase: RoundPhase | SessionStatus) -> None:
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(
            f"Invalid transition: {from_phase.value} -> {to_phase.value}"
        )


def transition(manifest: SessionManifest, to: RoundPhase) -> SessionManifest:
    """Move manifest to a new phase. Raises InvalidTransitionError if not allowed."""
    if manifest.status != SessionStatus.IN_PROGRESS:
        raise InvalidTransitionError(manifest.status, to)
    allowed = TRANSITIONS.get(manifest.current_phase, set())
    if to not in allowed:
        raise InvalidTransitionError(manifest.current_phase, to)
    manifest.current_phase = to
    return manifest


def can_transition(manifest: SessionManifest, to: RoundPhase) -> bool:
    """Check if a transition is valid without performing it."""
    if manifest.status != SessionStatus.IN_PROGRESS:
        return False
    allowed = TRANSITIONS.get(manifest.current_phase, set())
    return to in allowed


def can_advance_round(manifest: SessionManifest) -> bool:
    """Check if the manifest sits at a round boundary."""
    return manifest.current_phase in ROUND_BOUNDARIES


def is_terminal(status: SessionStatus) -> bool:
    return status != SessionStatus.IN_PROGRESS
