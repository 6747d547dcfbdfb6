"""Typed event stream emitted by the orchestrator.

Events are observational: subscribers render or forward them but never feed
anything back into the review loop.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from quibble.models import _utcnow

if TYPE_CHECKING:
    from quibble.context import ContextFile
    from quibble.models import AuthorResponse, Review, RoundTimings, SessionStatistics

logger = logging.getLogger(__name__)


@dataclass
class QuibbleEvent:
    type: str
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **self.data, "timestamp": self.timestamp.isoformat()}

    def format(self) -> str:
        """Render as a single JSON line."""
        return json.dumps(self.to_dict(), ensure_ascii=False)


EventHandler = Callable[[QuibbleEvent], None]


class EventEmitter:
    """Synchronous pub/sub for orchestrator events."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register *handler*; returns a function that removes it again."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, event_type: str, **data: Any) -> QuibbleEvent:
        event = QuibbleEvent(type=event_type, data=data)
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed on %s", event_type)
        return event

    # --- Typed helpers ---

    def start(self, session_id: str, input_file: str, output_file: str, max_rounds: int) -> None:
        self.publish(
            "start",
            session_id=session_id, input_file=input_file,
            output_file=output_file, max_rounds=max_rounds,
        )

    def round_start(self, round_num: int) -> None:
        self.publish("round_start", round=round_num)

    def context(self, round_num: int, files: list[ContextFile], total_bytes: int) -> None:
        self.publish(
            "context",
            round=round_num,
            files=[{"path": f.path, "bytes": f.bytes, "truncated": f.truncated} for f in files],
            total_bytes=total_bytes,
        )

    def codex_review(self, round_num: int, review: Review) -> None:
        self.publish(
            "codex_review",
            round=round_num,
            issues=[{"id": i.id, "severity": i.severity.value} for i in review.issues],
            opportunities=[{"id": o.id, "impact": o.impact.value} for o in review.opportunities],
        )

    def codex_progress(self, round_num: int, text: str, token_count: int | None, status: str | None = None) -> None:
        self.publish("codex_progress", round=round_num, text=text, token_count=token_count, status=status)

    def claude_progress(self, round_num: int, text: str, token_count: int | None) -> None:
        self.publish("claude_progress", round=round_num, text=text, token_count=token_count)

    def claude_response(self, round_num: int, agreed: list[str], disputed: list[str], partial: list[str]) -> None:
        self.publish("claude_response", round=round_num, agreed=agreed, disputed=disputed, partial=partial)

    def round_items(self, round_num: int, review: Review, response: AuthorResponse) -> None:
        """Per-item findings joined with the author's verdict on each."""
        verdicts = {r.feedback_id: r.verdict.value for r in response.responses}
        self.publish(
            "round_items",
            round=round_num,
            issues=[
                {
                    "id": i.id, "severity": i.severity.value,
                    "description": i.description, "verdict": verdicts.get(i.id, "unknown"),
                }
                for i in review.issues
            ],
            opportunities=[
                {
                    "id": o.id, "impact": o.impact.value,
                    "description": o.description, "verdict": verdicts.get(o.id, "unknown"),
                }
                for o in review.opportunities
            ],
        )

    def consensus(self, round_num: int, reached: bool, outstanding: list[str]) -> None:
        self.publish("consensus", round=round_num, reached=reached, outstanding=outstanding)

    def round_complete(self, round_num: int, timings: RoundTimings) -> None:
        self.publish("round_complete", round=round_num, timings=timings.model_dump(exclude_none=True))

    def complete(
        self,
        status: str,
        exit_code: int,
        total_rounds: int,
        statistics: SessionStatistics,
        output_file: str,
        session_id: str,
    ) -> None:
        self.publish(
            "complete",
            status=status, exit_code=exit_code, total_rounds=total_rounds,
            statistics=statistics.model_dump(), output_file=output_file, session_id=session_id,
        )

    def error(self, code: str, message: str, phase: str, round_num: int | None, recoverable: bool) -> None:
        self.publish(
            "error",
            code=code, message=message, phase=phase, round=round_num, recoverable=recoverable,
        )
