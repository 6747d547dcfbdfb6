"""Orchestration layer: drives review, response and consensus rounds to a terminal status."""

from __future__ import annotations

import json
import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from quibble.consensus import exit_code_for, feedback_fingerprint, is_stalemate, max_rounds_status
from quibble.context import ContextResult, build_context
from quibble.models import (
    AuthorResponse,
    ConsensusCheck,
    ConsensusVerdict,
    Review,
    RoundPhase,
    RoundTimings,
    SessionStatus,
    Verdict,
)
from quibble.parsing import OutputParseError
from quibble.retry import is_transient_error
from quibble.state import InvalidTransitionError, is_terminal
from quibble.storage import StorageError
from quibble.trigger.base import (
    AgentError,
    AgentNotFoundError,
    AgentTimeoutError,
    AuthorEngine,
    ReviewerEngine,
)

if TYPE_CHECKING:
    from quibble.config import QuibbleConfig
    from quibble.events import EventEmitter
    from quibble.session_manager import SessionManager

logger = logging.getLogger(__name__)

ContextBuilder = Callable[..., ContextResult | None]

T = TypeVar("T")


@dataclass
class OrchestratorResult:
    status: SessionStatus
    exit_code: int
    final_document: str
    total_rounds: int


def classify_error(exc: BaseException) -> tuple[str, bool]:
    """Map an exception to (error code, whether resuming is likely to help)."""
    if isinstance(exc, AgentTimeoutError):
        return "AGENT_TIMEOUT", True
    if isinstance(exc, AgentNotFoundError):
        return "AGENT_NOT_FOUND", False
    if isinstance(exc, AgentError):
        return "AGENT_FAILURE", is_transient_error(exc)
    if isinstance(exc, OutputParseError):
        return "OUTPUT_PARSE_ERROR", True
    if isinstance(exc, StorageError):
        return "STORAGE_ERROR", True
    if isinstance(exc, InvalidTransitionError):
        return "STATE_ERROR", False
    return "ORCHESTRATION_ERROR", is_transient_error(exc)


def _elapsed_ms(start: float, now: float) -> int:
    return int((now - start) * 1000)


class Orchestrator:
    """Runs the review loop for one session.

    Each round: the reviewer critiques the current document, the author
    answers every item and returns a full revision, and (only when the author
    believes consensus is reached) the reviewer checks the answers.  The loop
    ends on approval, on a stalemate, or at the round limit.
    """

    def __init__(
        self,
        config: QuibbleConfig,
        session: SessionManager,
        events: EventEmitter,
        reviewer: ReviewerEngine,
        author: AuthorEngine,
        *,
        context_builder: ContextBuilder = build_context,
        debug_dir: Path | None = None,
        keep_debug: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.session = session
        self.events = events
        self.reviewer = reviewer
        self.author = author
        self._context_builder = context_builder
        self._debug_dir = debug_dir
        self._keep_debug = keep_debug
        self._clock = clock

        self._original_document = ""
        self._document: str | None = None
        self._previous_fingerprint: str | None = None
        self._round: int | None = None
        self._phase = "initialization"
        self._started = 0.0

    # --- Public API ---

    async def run(self) -> OrchestratorResult:
        self._started = self._clock()
        try:
            return await self._run_rounds()
        except Exception as exc:
            return self._fail(exc)

    # --- Loop ---

    async def _run_rounds(self) -> OrchestratorResult:
        self._original_document = Path(self.config.input_file).read_text(encoding="utf-8")
        self._document = self._original_document

        point = self.session.find_resume_point()
        round_num, phase = point.round, point.phase

        manifest = self.session.manifest
        self.events.start(
            self.session.session_id, self.config.input_file,
            manifest.output_file, manifest.max_rounds,
        )

        if round_num > 1:
            previous = round_num - 1
            document = self.session.load_document(previous)
            if document is not None:
                self._document = document
            review = self.session.load_review(previous)
            if review is not None:
                self._previous_fingerprint = feedback_fingerprint(review)
            consensus = self.session.load_consensus_check(previous)
            if consensus is not None and consensus.verdict == ConsensusVerdict.APPROVE:
                logger.info("Round %d was already approved; finalizing", previous)
                return self._terminate(SessionStatus.COMPLETED, previous)
            logger.info("Resuming session %s at round %d (%s)",
                        self.session.session_id, round_num, phase.value)

        while round_num <= manifest.max_rounds:
            self._round = round_num
            round_started = self._clock()
            timings = RoundTimings()

            self.events.round_start(round_num)
            self.session.start_round(round_num)
            self._phase = RoundPhase.PENDING.value

            context_block = self._collect_context(round_num)

            # Phase 1: review
            if phase in (RoundPhase.PENDING, RoundPhase.CODEX_REVIEW):
                self._enter(RoundPhase.CODEX_REVIEW)
                review = await self._run_review(round_num, context_block, timings)
                phase = RoundPhase.CLAUDE_RESPONSE
            else:
                review = self._require(self.session.load_review(round_num), "review", round_num)

            fingerprint = feedback_fingerprint(review)
            if is_stalemate(self._previous_fingerprint, fingerprint):
                logger.info("Round %d repeated the previous round's feedback; stopping", round_num)
                return self._terminate(SessionStatus.MAX_ROUNDS_REACHED, round_num)
            self._previous_fingerprint = fingerprint

            # Phase 2: author response
            if phase == RoundPhase.CLAUDE_RESPONSE:
                self._enter(RoundPhase.CLAUDE_RESPONSE)
                response = await self._run_response(round_num, review, context_block, timings)
            else:
                response = self._require(
                    self.session.load_author_response(round_num), "author response", round_num,
                )
            self._document = response.updated_document

            # Phase 3: consensus check, only when the author claims agreement
            self._enter(RoundPhase.CONSENSUS_CHECK)
            approved = False
            if response.consensus_assessment.reached:
                consensus = self.session.load_consensus_check(round_num)
                if consensus is None:
                    consensus = await self._run_consensus(round_num, review, response, context_block, timings)
                approved = consensus.verdict == ConsensusVerdict.APPROVE
                outstanding = [] if approved else [i.id for i in consensus.new_issues]
                self.events.consensus(round_num, approved, outstanding)
            else:
                self.events.consensus(
                    round_num, False, response.consensus_assessment.outstanding_disagreements,
                )

            # The snapshot marks the round as finished for resume purposes.
            self.session.save_document(round_num, self._document)
            self._finish_timings(timings, round_started)
            self.session.save_round_timings(round_num, timings)
            self.events.round_complete(round_num, timings)
            self._enter(RoundPhase.COMPLETE)

            if approved:
                return self._terminate(SessionStatus.COMPLETED, round_num)

            round_num += 1
            phase = RoundPhase.PENDING

        status = max_rounds_status(self.session.compute_statistics())
        return self._terminate(status, round_num - 1)

    def _enter(self, phase: RoundPhase) -> None:
        self._phase = phase.value
        self.session.set_phase(phase)

    @staticmethod
    def _require(value: T | None, label: str, round_num: int) -> T:
        if value is None:
            raise StorageError(f"Missing persisted {label} for round {round_num}")
        return value

    def _collect_context(self, round_num: int) -> str | None:
        self._phase = "context"
        result = self._context_builder(
            self._document,
            self.config.input_file,
            max_files=self.config.context_max_files,
            max_file_bytes=self.config.context_max_file_bytes,
            max_total_bytes=self.config.context_max_total_bytes,
        )
        if result is None:
            return None
        self.events.context(round_num, result.files, result.total_bytes)
        return result.block

    def _debug_path(self, agent: str, round_num: int) -> Path | None:
        enabled = self.config.debug_codex if agent == "codex" else self.config.debug_claude
        if not enabled or self._debug_dir is None:
            return None
        return self._debug_dir / f"{agent}-stream-round-{round_num}.log"

    # --- Phases ---

    async def _run_review(self, round_num: int, context_block: str | None, timings: RoundTimings) -> Review:
        started = self._clock()
        review = await self.reviewer.review(
            self._document,
            context_block,
            lambda text, tokens, status=None: self.events.codex_progress(round_num, text, tokens, status),
            self._debug_path("codex", round_num),
        )
        timings.codex_review_ms = _elapsed_ms(started, self._clock())
        timings.codex_review_tokens = self.reviewer.last_token_count

        self.session.save_review(round_num, review)
        self.events.codex_review(round_num, review)
        logger.info("Round %d review: %d issues, %d opportunities",
                    round_num, len(review.issues), len(review.opportunities))
        return review

    async def _run_response(
        self,
        round_num: int,
        review: Review,
        context_block: str | None,
        timings: RoundTimings,
    ) -> AuthorResponse:
        started = self._clock()
        response = await self.author.respond(
            self._document,
            review.model_dump_json(indent=2),
            context_block,
            lambda text, tokens, status=None: self.events.claude_progress(round_num, text, tokens),
            self._debug_path("claude", round_num),
        )
        timings.claude_response_ms = _elapsed_ms(started, self._clock())
        timings.claude_response_tokens = self.author.last_token_count
        timings.claude_response_tokens_estimated = self.author.last_tokens_estimated

        self.session.save_author_response(round_num, response)

        buckets: dict[Verdict, list[str]] = {v: [] for v in Verdict}
        for r in response.responses:
            buckets[r.verdict].append(r.feedback_id)
        self.events.claude_response(
            round_num, buckets[Verdict.AGREE], buckets[Verdict.DISAGREE], buckets[Verdict.PARTIAL],
        )
        self.events.round_items(round_num, review, response)
        return response

    async def _run_consensus(
        self,
        round_num: int,
        review: Review,
        response: AuthorResponse,
        context_block: str | None,
        timings: RoundTimings,
    ) -> ConsensusCheck:
        started = self._clock()
        consensus = await self.reviewer.check_consensus(
            self._original_document,
            review.model_dump_json(indent=2),
            json.dumps([r.model_dump(mode="json") for r in response.responses], indent=2),
            response.updated_document,
            context_block,
            lambda text, tokens, status=None: self.events.codex_progress(round_num, text, tokens, status),
        )
        timings.consensus_check_ms = _elapsed_ms(started, self._clock())
        timings.codex_consensus_tokens = self.reviewer.last_token_count

        self.session.save_consensus_check(round_num, consensus)
        logger.info("Round %d consensus: %s", round_num, consensus.verdict.value)
        return consensus

    def _finish_timings(self, timings: RoundTimings, round_started: float) -> None:
        now = self._clock()
        timings.round_total_ms = _elapsed_ms(round_started, now)
        timings.session_elapsed_ms = _elapsed_ms(self._started, now)
        codex = [t for t in (timings.codex_review_tokens, timings.codex_consensus_tokens) if t is not None]
        timings.codex_total_tokens = sum(codex) if codex else None
        timings.claude_total_tokens = timings.claude_response_tokens

    # --- Termination ---

    def _terminate(self, status: SessionStatus, total_rounds: int) -> OrchestratorResult:
        """Single exit for every outcome, including failure."""
        self._phase = "finalization"
        manifest = self.session.manifest
        if self._document is not None:
            self.session.save_final_document(self._document)
            try:
                Path(manifest.output_file).write_text(self._document, encoding="utf-8")
            except OSError as e:
                raise StorageError(f"Failed to write output file {manifest.output_file}: {e}") from e
        else:
            logger.warning("No document was loaded; leaving %s untouched", manifest.output_file)

        exit_code = exit_code_for(status)
        self.session.save_final_summary({
            "status": status.value,
            "exit_code": exit_code,
            "total_rounds": total_rounds,
            "statistics": self.session.compute_statistics().model_dump(),
        })
        # Recording the terminal status is the last step that can fail.
        self.session.complete(status)
        self.events.complete(
            status.value, exit_code, total_rounds, manifest.statistics,
            manifest.output_file, self.session.session_id,
        )
        self._cleanup_debug_logs(status)
        logger.info("Session %s finished: %s", self.session.session_id, status.value)

        return self._result(status, total_rounds)

    def _result(self, status: SessionStatus, total_rounds: int) -> OrchestratorResult:
        return OrchestratorResult(
            status=status,
            exit_code=exit_code_for(status),
            final_document=self._document or "",
            total_rounds=total_rounds,
        )

    def _fail(self, exc: Exception) -> OrchestratorResult:
        code, recoverable = classify_error(exc)
        phase = self._phase
        total_rounds = self._round or 0
        recorded = self.session.manifest.status
        if is_terminal(recorded):
            logger.error("Session %s already finished as %s; error after completion: %s",
                         self.session.session_id, recorded.value, exc)
            return self._result(recorded, total_rounds)

        logger.error("Session failed during %s (round %s): %s", phase, self._round, exc)
        self.events.error(code, str(exc), phase, self._round, recoverable)
        try:
            return self._terminate(SessionStatus.FAILED, total_rounds)
        except Exception:
            logger.exception("Could not finalize failed session %s", self.session.session_id)
        return self._result(SessionStatus.FAILED, total_rounds)

    def _cleanup_debug_logs(self, status: SessionStatus) -> None:
        if self._keep_debug or status != SessionStatus.COMPLETED or self._debug_dir is None:
            return
        try:
            shutil.rmtree(self._debug_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove debug logs at %s: %s", self._debug_dir, e)
