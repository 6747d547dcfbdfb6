"""Data models for quibble sessions and agent payloads."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field


class Severity(str, enum.Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class Impact(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Verdict(str, enum.Enum):
    AGREE = "agree"
    DISAGREE = "disagree"
    PARTIAL = "partial"


class ResolutionStatus(str, enum.Enum):
    RESOLVED = "resolved"
    INADEQUATE = "inadequate"
    VALIDLY_DISPUTED = "validly_disputed"
    NEW_ISSUES = "new_issues"


class ConsensusVerdict(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


class SessionStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    MAX_ROUNDS_REACHED = "max_rounds_reached"
    MAX_ROUNDS_REACHED_WARNING = "max_rounds_reached_warning"
    MAX_ROUNDS_REACHED_UNSAFE = "max_rounds_reached_unsafe"


class RoundPhase(str, enum.Enum):
    """Phase within a round.

    Lifecycle: PENDING -> CODEX_REVIEW -> CLAUDE_RESPONSE -> CONSENSUS_CHECK -> COMPLETE
    """

    PENDING = "pending"
    CODEX_REVIEW = "codex_review"
    CLAUDE_RESPONSE = "claude_response"
    CONSENSUS_CHECK = "consensus_check"
    COMPLETE = "complete"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Review (phase 1) ---


class Issue(BaseModel):
    id: str
    severity: Severity
    section: str
    description: str
    suggestion: str | None = None


class Opportunity(BaseModel):
    id: str
    impact: Impact
    section: str
    description: str
    suggestion: str | None = None


class Review(BaseModel):
    issues: list[Issue]
    opportunities: list[Opportunity]
    overall_assessment: str


# --- Author response (phase 2) ---


class FeedbackResponse(BaseModel):
    feedback_id: str
    verdict: Verdict
    reasoning: str
    action_taken: str


class ConsensusAssessment(BaseModel):
    reached: bool
    outstanding_disagreements: list[str]
    confidence: float = Field(ge=0.0, le=1.0)
    summary: str


class AuthorResponse(BaseModel):
    responses: list[FeedbackResponse]
    updated_document: str
    consensus_assessment: ConsensusAssessment


# --- Consensus check (phase 3) ---


class FeedbackResolution(BaseModel):
    original_feedback_id: str
    resolution_status: ResolutionStatus
    comment: str


class ConsensusCheck(BaseModel):
    verdict: ConsensusVerdict
    feedback_responses: list[FeedbackResolution]
    new_issues: list[Issue]
    summary: str


# --- Session ---


class SessionStatistics(BaseModel):
    total_issues_raised: int = 0
    issues_resolved: int = 0
    issues_disputed: int = 0
    critical_unresolved: int = 0
    major_unresolved: int = 0
    total_opportunities_raised: int = 0
    opportunities_accepted: int = 0
    opportunities_rejected: int = 0
    consensus_reached: bool = False


class SessionManifest(BaseModel):
    session_id: str
    input_file: str
    output_file: str
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    status: SessionStatus = SessionStatus.IN_PROGRESS
    current_round: int = 1
    current_phase: RoundPhase = RoundPhase.PENDING
    max_rounds: int
    statistics: SessionStatistics = Field(default_factory=SessionStatistics)


class RoundTimings(BaseModel):
    codex_review_ms: int | None = None
    claude_response_ms: int | None = None
    consensus_check_ms: int | None = None
    codex_review_tokens: int | None = None
    claude_response_tokens: int | None = None
    claude_response_tokens_estimated: bool | None = None
    codex_consensus_tokens: int | None = None
    codex_total_tokens: int | None = None
    claude_total_tokens: int | None = None
    round_total_ms: int = 0
    session_elapsed_ms: int = 0


class RoundArtifacts(BaseModel):
    """Everything persisted for one round; any payload may be absent."""

    round: int
    review: Review | None = None
    response: AuthorResponse | None = None
    consensus: ConsensusCheck | None = None
    document: str | None = None
