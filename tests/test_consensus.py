"""Tests for stalemate detection and termination grading."""

import pytest

from quibble.consensus import (
    EXIT_CODES,
    exit_code_for,
    feedback_fingerprint,
    is_stalemate,
    max_rounds_status,
)
from quibble.models import Issue, Review, SessionStatistics, SessionStatus, Severity


class TestFeedbackFingerprint:
    def test_order_independent(self, sample_review):
        reordered = sample_review.model_copy(deep=True)
        reordered.issues.reverse()
        assert feedback_fingerprint(reordered) == feedback_fingerprint(sample_review)

    def test_ignores_severity_and_suggestion(self, sample_review):
        changed = sample_review.model_copy(deep=True)
        changed.issues[0].severity = Severity.MINOR
        changed.issues[0].suggestion = "Something else."
        changed.overall_assessment = "Different words."
        assert feedback_fingerprint(changed) == feedback_fingerprint(sample_review)

    def test_description_change_detected(self, sample_review):
        changed = sample_review.model_copy(deep=True)
        changed.issues[1].description = "Error responses are now defined but untested."
        assert feedback_fingerprint(changed) != feedback_fingerprint(sample_review)

    def test_new_item_detected(self, sample_review):
        changed = sample_review.model_copy(deep=True)
        changed.issues.append(
            Issue(id="issue-3", severity=Severity.MINOR, section="x", description="Typo."),
        )
        assert feedback_fingerprint(changed) != feedback_fingerprint(sample_review)

    def test_empty_review(self):
        review = Review(issues=[], opportunities=[], overall_assessment="Clean.")
        assert len(feedback_fingerprint(review)) == 64


class TestIsStalemate:
    def test_first_round_never(self):
        assert not is_stalemate(None, "abc")

    def test_same(self):
        assert is_stalemate("abc", "abc")

    def test_different(self):
        assert not is_stalemate("abc", "abd")


class TestMaxRoundsStatus:
    @pytest.mark.parametrize(
        "critical,major,expected",
        [
            (0, 0, SessionStatus.MAX_ROUNDS_REACHED),
            (0, 2, SessionStatus.MAX_ROUNDS_REACHED_WARNING),
            (1, 0, SessionStatus.MAX_ROUNDS_REACHED_UNSAFE),
            (1, 3, SessionStatus.MAX_ROUNDS_REACHED_UNSAFE),
        ],
    )
    def test_grading(self, critical, major, expected):
        stats = SessionStatistics(critical_unresolved=critical, major_unresolved=major)
        assert max_rounds_status(stats) == expected


class TestExitCodes:
    @pytest.mark.parametrize(
        "status,code",
        [
            (SessionStatus.COMPLETED, 0),
            (SessionStatus.MAX_ROUNDS_REACHED, 0),
            (SessionStatus.MAX_ROUNDS_REACHED_WARNING, 1),
            (SessionStatus.MAX_ROUNDS_REACHED_UNSAFE, 2),
            (SessionStatus.FAILED, 2),
        ],
    )
    def test_mapping(self, status, code):
        assert exit_code_for(status) == code

    def test_every_terminal_status_mapped(self):
        terminal = {s for s in SessionStatus if s != SessionStatus.IN_PROGRESS}
        assert set(EXIT_CODES) == terminal
