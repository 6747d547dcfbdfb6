"""Session statistics, recomputed from persisted round artifacts.

Counters are never carried forward between runs: the artifacts on disk are
the record, and every call rebuilds the totals from them.
"""

from __future__ import annotations

from collections.abc import Iterable

from quibble.models import (
    ResolutionStatus,
    RoundArtifacts,
    SessionStatistics,
    Severity,
    Verdict,
)

ISSUE_PREFIX = "issue-"
OPPORTUNITY_PREFIX = "opp-"

# A consensus check counts these as settled.
_SETTLED = frozenset({ResolutionStatus.RESOLVED, ResolutionStatus.VALIDLY_DISPUTED})


def _count_unresolved(stats: SessionStatistics, severity: Severity | None) -> None:
    if severity == Severity.CRITICAL:
        stats.critical_unresolved += 1
    elif severity == Severity.MAJOR:
        stats.major_unresolved += 1


def compute_statistics(rounds: Iterable[RoundArtifacts]) -> SessionStatistics:
    """Aggregate resolution counts across all given rounds."""
    stats = SessionStatistics()

    for artifacts in rounds:
        review = artifacts.review
        response = artifacts.response
        consensus = artifacts.consensus

        if review:
            stats.total_issues_raised += len(review.issues)
            stats.total_opportunities_raised += len(review.opportunities)

        if response:
            for r in response.responses:
                if r.feedback_id.startswith(OPPORTUNITY_PREFIX):
                    if r.verdict == Verdict.AGREE:
                        stats.opportunities_accepted += 1
                    elif r.verdict == Verdict.DISAGREE:
                        stats.opportunities_rejected += 1
                elif consensus is None and r.feedback_id.startswith(ISSUE_PREFIX):
                    # Without a consensus check the author's verdict is all we have.
                    if r.verdict == Verdict.AGREE:
                        stats.issues_resolved += 1
            if response.consensus_assessment.reached:
                stats.consensus_reached = True

        if consensus and review:
            severity_by_id = {i.id: i.severity for i in review.issues}
            for resolution in consensus.feedback_responses:
                if resolution.resolution_status in _SETTLED:
                    stats.issues_resolved += 1
                elif resolution.resolution_status == ResolutionStatus.INADEQUATE:
                    stats.issues_disputed += 1
                    _count_unresolved(stats, severity_by_id.get(resolution.original_feedback_id))

            stats.total_issues_raised += len(consensus.new_issues)
            for issue in consensus.new_issues:
                _count_unresolved(stats, issue.severity)

    return stats
