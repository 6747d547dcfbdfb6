"""Shared fixtures for quibble tests."""

import pytest

from quibble.models import (
    AuthorResponse,
    ConsensusAssessment,
    ConsensusCheck,
    ConsensusVerdict,
    FeedbackResolution,
    FeedbackResponse,
    Impact,
    Issue,
    Opportunity,
    ResolutionStatus,
    Review,
    Severity,
    Verdict,
)
from quibble.session_manager import SessionManager
from quibble.storage import MemoryStorage


@pytest.fixture(autouse=True)
def _isolate_session_storage(tmp_path, monkeypatch):
    """Prevent tests from writing sessions into the real project .quibble/ directory."""
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def sample_review() -> Review:
    return Review(
        issues=[
            Issue(
                id="issue-1",
                severity=Severity.CRITICAL,
                section="Storage",
                description="Writes are not atomic.",
                suggestion="Write to a temp file and rename.",
            ),
            Issue(
                id="issue-2",
                severity=Severity.MAJOR,
                section="API",
                description="Error responses are undefined.",
            ),
        ],
        opportunities=[
            Opportunity(
                id="opp-1",
                impact=Impact.MEDIUM,
                section="Rollout",
                description="Add a feature flag.",
                suggestion="Gate the new path behind a flag.",
            ),
        ],
        overall_assessment="Solid direction, storage needs work.",
    )


@pytest.fixture
def sample_response() -> AuthorResponse:
    return AuthorResponse(
        responses=[
            FeedbackResponse(feedback_id="issue-1", verdict=Verdict.AGREE,
                             reasoning="Correct.", action_taken="Added atomic rename."),
            FeedbackResponse(feedback_id="issue-2", verdict=Verdict.DISAGREE,
                             reasoning="Covered in the API doc.", action_taken=""),
            FeedbackResponse(feedback_id="opp-1", verdict=Verdict.AGREE,
                             reasoning="Cheap to add.", action_taken="Added a flag section."),
        ],
        updated_document="# Design\n\nRevised.\n",
        consensus_assessment=ConsensusAssessment(
            reached=True, outstanding_disagreements=[], confidence=0.9, summary="Close.",
        ),
    )


@pytest.fixture
def sample_consensus() -> ConsensusCheck:
    return ConsensusCheck(
        verdict=ConsensusVerdict.APPROVE,
        feedback_responses=[
            FeedbackResolution(original_feedback_id="issue-1",
                               resolution_status=ResolutionStatus.RESOLVED, comment="Fixed."),
            FeedbackResolution(original_feedback_id="issue-2",
                               resolution_status=ResolutionStatus.VALIDLY_DISPUTED, comment="Fair."),
        ],
        new_issues=[],
        summary="Ready.",
    )


@pytest.fixture
def memory_session() -> SessionManager:
    manager = SessionManager(MemoryStorage("doc-test"), "/tmp/doc.md", "/tmp/doc-quibbled.md", 3)
    manager.initialize()
    return manager
