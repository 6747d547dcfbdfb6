"""Session manifest, round artifacts and resume-point discovery."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from quibble.models import (
    AuthorResponse,
    ConsensusCheck,
    Review,
    RoundArtifacts,
    RoundPhase,
    RoundTimings,
    SessionManifest,
    SessionStatistics,
    SessionStatus,
    _utcnow,
)
from quibble.state import InvalidTransitionError, can_advance_round, is_terminal, transition
from quibble.statistics import compute_statistics
from quibble.storage import StorageAdapter, StorageError

logger = logging.getLogger(__name__)

MANIFEST_PATH = "manifest.json"
FINAL_DOCUMENT_PATH = "final/document.md"
FINAL_SUMMARY_PATH = "final/summary.json"

M = TypeVar("M", bound=BaseModel)


def _round_dir(round_num: int) -> str:
    return f"round-{round_num}"


def review_path(round_num: int) -> str:
    return f"{_round_dir(round_num)}/codex-review.json"


def response_path(round_num: int) -> str:
    return f"{_round_dir(round_num)}/claude-response.json"


def consensus_path(round_num: int) -> str:
    return f"{_round_dir(round_num)}/codex-consensus.json"


def document_path(round_num: int) -> str:
    return f"{_round_dir(round_num)}/document-v{round_num}.md"


def timings_path(round_num: int) -> str:
    return f"{_round_dir(round_num)}/timings.json"


@dataclass(frozen=True)
class ResumePoint:
    round: int
    phase: RoundPhase


def _dump(payload: BaseModel | dict[str, Any]) -> str:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return json.dumps(payload, ensure_ascii=False, indent=2)


class SessionManager:
    """Owns the manifest of one session and the artifacts stored beside it."""

    def __init__(
        self,
        storage: StorageAdapter,
        input_file: str,
        output_file: str,
        max_rounds: int,
    ) -> None:
        self.storage = storage
        self.manifest = SessionManifest(
            session_id=storage.session_id,
            input_file=input_file,
            output_file=output_file,
            max_rounds=max_rounds,
        )

    @property
    def session_id(self) -> str:
        return self.manifest.session_id

    @property
    def session_path(self) -> str:
        return self.storage.session_path

    @property
    def current_round(self) -> int:
        return self.manifest.current_round

    @property
    def current_phase(self) -> RoundPhase:
        return self.manifest.current_phase

    # --- Lifecycle ---

    def initialize(self) -> None:
        self.storage.init_session()
        self._save_manifest()

    def load_existing(self) -> bool:
        """Load a persisted manifest. Returns False when none exists."""
        raw = self.storage.read(MANIFEST_PATH)
        if raw is None:
            return False
        try:
            self.manifest = SessionManifest.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"Corrupt session manifest for {self.storage.session_id}: {e}") from e
        self.manifest.statistics = self.compute_statistics()
        logger.info(
            "Loaded session %s at round %d (%s)",
            self.session_id, self.manifest.current_round, self.manifest.current_phase.value,
        )
        return True

    def start_round(self, round_num: int) -> None:
        current = self.manifest.current_round
        if round_num < current:
            raise ValueError(f"Cannot move from round {current} back to round {round_num}")
        if round_num > current and not (
            can_advance_round(self.manifest) or self.storage.exists(document_path(current))
        ):
            raise InvalidTransitionError(self.manifest.current_phase, RoundPhase.PENDING)
        self.manifest.current_round = round_num
        self.manifest.current_phase = RoundPhase.PENDING
        self._save_manifest()

    def set_phase(self, phase: RoundPhase) -> None:
        transition(self.manifest, phase)
        self._save_manifest()

    def complete(self, status: SessionStatus) -> None:
        """Finalize the session. Allowed once."""
        if is_terminal(self.manifest.status):
            raise InvalidTransitionError(self.manifest.status, status)
        if not is_terminal(status):
            raise ValueError(f"Not a terminal status: {status.value}")
        self.manifest.status = status
        self.manifest.completed_at = _utcnow()
        self.manifest.statistics = self.compute_statistics()
        self._save_manifest()

    def reopen(self) -> None:
        """Return a failed session to in_progress so it can be resumed."""
        if self.manifest.status != SessionStatus.FAILED:
            raise InvalidTransitionError(self.manifest.status, SessionStatus.IN_PROGRESS)
        self.manifest.status = SessionStatus.IN_PROGRESS
        self.manifest.completed_at = None
        self._save_manifest()

    def find_resume_point(self) -> ResumePoint:
        """Work out where an interrupted session should continue.

        Artifacts are checked newest-first in the order they are created, so
        the first hit marks the last phase that finished.
        """
        round_num = self.manifest.current_round
        if self.storage.exists(document_path(round_num)):
            return ResumePoint(round_num + 1, RoundPhase.PENDING)
        if self.storage.exists(response_path(round_num)):
            return ResumePoint(round_num, RoundPhase.CONSENSUS_CHECK)
        if self.storage.exists(review_path(round_num)):
            return ResumePoint(round_num, RoundPhase.CLAUDE_RESPONSE)
        return ResumePoint(round_num, RoundPhase.CODEX_REVIEW)

    # --- Statistics ---

    def compute_statistics(self) -> SessionStatistics:
        return compute_statistics(
            self.load_round(n) for n in range(1, self.manifest.current_round + 1)
        )

    # --- Artifacts ---

    def _load_model(self, path: str, model: type[M]) -> M | None:
        raw = self.storage.read(path)
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"Corrupt artifact {path}: {e}") from e

    def save_review(self, round_num: int, review: Review) -> None:
        self.storage.write(review_path(round_num), _dump(review))

    def load_review(self, round_num: int) -> Review | None:
        return self._load_model(review_path(round_num), Review)

    def save_author_response(self, round_num: int, response: AuthorResponse) -> None:
        self.storage.write(response_path(round_num), _dump(response))

    def load_author_response(self, round_num: int) -> AuthorResponse | None:
        return self._load_model(response_path(round_num), AuthorResponse)

    def save_consensus_check(self, round_num: int, consensus: ConsensusCheck) -> None:
        self.storage.write(consensus_path(round_num), _dump(consensus))

    def load_consensus_check(self, round_num: int) -> ConsensusCheck | None:
        return self._load_model(consensus_path(round_num), ConsensusCheck)

    def save_document(self, round_num: int, content: str) -> None:
        self.storage.write(document_path(round_num), content)

    def load_document(self, round_num: int) -> str | None:
        return self.storage.read(document_path(round_num))

    def save_round_timings(self, round_num: int, timings: RoundTimings) -> None:
        self.storage.write(timings_path(round_num), _dump(timings))

    def load_round_timings(self, round_num: int) -> RoundTimings | None:
        return self._load_model(timings_path(round_num), RoundTimings)

    def load_round(self, round_num: int) -> RoundArtifacts:
        return RoundArtifacts(
            round=round_num,
            review=self.load_review(round_num),
            response=self.load_author_response(round_num),
            consensus=self.load_consensus_check(round_num),
            document=self.load_document(round_num),
        )

    def save_final_document(self, content: str) -> None:
        self.storage.write(FINAL_DOCUMENT_PATH, content)

    def save_final_summary(self, summary: dict[str, Any]) -> None:
        self.storage.write(FINAL_SUMMARY_PATH, _dump(summary))

    def _save_manifest(self) -> None:
        self.storage.write(MANIFEST_PATH, _dump(self.manifest))
