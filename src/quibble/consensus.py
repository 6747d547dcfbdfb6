"""Termination judgment: stalemate detection and outcome grading.

A stalemate is two consecutive reviews with the same normalized feedback.
When the round limit is hit instead, the outcome is graded by the worst
severity still unresolved.
"""

from __future__ import annotations

import hashlib

from quibble.models import Review, SessionStatistics, SessionStatus

EXIT_CODES: dict[SessionStatus, int] = {
    SessionStatus.COMPLETED: 0,
    SessionStatus.MAX_ROUNDS_REACHED: 0,
    SessionStatus.MAX_ROUNDS_REACHED_WARNING: 1,
    SessionStatus.MAX_ROUNDS_REACHED_UNSAFE: 2,
    SessionStatus.FAILED: 2,
}


def feedback_fingerprint(review: Review) -> str:
    """Hash the feedback content, ignoring the order items were listed in."""
    issues = sorted(f"{i.id}{i.description}" for i in review.issues)
    opportunities = sorted(f"{o.id}{o.description}" for o in review.opportunities)
    # \x1e separates the two groups so an item cannot migrate between them unnoticed.
    content = "|".join(issues) + "\x1e" + "|".join(opportunities)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def is_stalemate(previous: str | None, current: str) -> bool:
    return previous is not None and previous == current


def max_rounds_status(stats: SessionStatistics) -> SessionStatus:
    """Grade a round-limit termination by unresolved severity."""
    if stats.critical_unresolved > 0:
        return SessionStatus.MAX_ROUNDS_REACHED_UNSAFE
    if stats.major_unresolved > 0:
        return SessionStatus.MAX_ROUNDS_REACHED_WARNING
    return SessionStatus.MAX_ROUNDS_REACHED


def exit_code_for(status: SessionStatus) -> int:
    return EXIT_CODES.get(status, 0)
