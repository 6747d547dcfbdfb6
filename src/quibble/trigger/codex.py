"""Codex CLI reviewer: subprocess-based with JSONL streaming."""

from __future__ import annotations

import json
import logging
import tempfile
import uuid
from contextlib import suppress
from pathlib import Path
from typing import Any

from quibble.models import ConsensusCheck, Review
from quibble.parsing import OutputParseError, extract_codex_assistant_message, parse_cli_output
from quibble.prompts import build_consensus_prompt, build_review_prompt
from quibble.trigger.base import (
    DEFAULT_INACTIVITY_TIMEOUT,
    ProgressCallback,
    ReviewerEngine,
    TriggerEngine,
    notify,
)

logger = logging.getLogger(__name__)

# JSONL event type -> coarse progress status
_STATUS_BY_EVENT = {
    "thread.started": "starting",
    "turn.started": "thinking",
    "item.started": "drafting",
    "item.completed": "finalizing",
    "turn.completed": "done",
}


def _extract_text(event: dict[str, Any]) -> str | None:
    item = event.get("item")
    if isinstance(item, dict) and item.get("type") == "agent_message" and isinstance(item.get("text"), str):
        return item["text"]
    content = event.get("content")
    if isinstance(content, str):
        return content
    message = event.get("message")
    if isinstance(message, dict):
        body = message.get("content")
        if isinstance(body, str):
            return body
        if isinstance(body, list):
            text = "".join(
                part["text"] for part in body
                if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)
            )
            if text:
                return text
    return None


def _extract_tokens(event: dict[str, Any]) -> int | None:
    usage = event.get("usage")
    if not isinstance(usage, dict):
        return None
    for key in ("total_tokens", "output_tokens", "input_tokens"):
        value = usage.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _extract_status(event: dict[str, Any]) -> str | None:
    event_type = event.get("type")
    return _STATUS_BY_EVENT.get(event_type) if isinstance(event_type, str) else None


class _CodexStream:
    """Per-invocation stream state that turns JSONL events into progress."""

    def __init__(self, on_progress: ProgressCallback | None) -> None:
        self.on_progress = on_progress
        self.reset()

    def reset(self) -> None:
        self.last_text: str | None = None
        self.tokens: int | None = None
        self._last_emitted_tokens: int | None = None
        self._last_status: str | None = None

    def __call__(self, line: str) -> None:
        try:
            event = json.loads(line)
        except (json.JSONDecodeError, ValueError):
            return
        if not isinstance(event, dict):
            return

        text = _extract_text(event)
        tokens = _extract_tokens(event)
        status = _extract_status(event)

        if tokens is not None:
            self.tokens = tokens
        tokens_changed = self.tokens is not None and self.tokens != self._last_emitted_tokens
        status_changed = status is not None and status != self._last_status
        if tokens_changed:
            self._last_emitted_tokens = self.tokens
        if status_changed:
            self._last_status = status

        if text:
            self.last_text = text
            notify(self.on_progress, text, self.tokens, status if status_changed else None)
        elif tokens_changed or status_changed:
            notify(self.on_progress, "", self.tokens, status if status_changed else None)


class CodexTrigger(TriggerEngine, ReviewerEngine):
    """Trigger OpenAI Codex CLI via ``codex exec --json``."""

    executable = "codex"

    def __init__(
        self,
        model: str | None = None,
        *,
        inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT,
        cwd: str | Path | None = None,
    ) -> None:
        super().__init__(inactivity_timeout=inactivity_timeout, cwd=cwd)
        self.model = model  # None = codex CLI default

    def _build_args(self, prompt: str, output_file: Path) -> list[str]:
        args = [
            self.executable, "exec",
            "--skip-git-repo-check",
            "--json",
            "-o", str(output_file),
        ]
        if self.model:
            args.extend(["-m", self.model])
        args.append(prompt)
        return args

    async def _run_codex(
        self,
        prompt: str,
        on_progress: ProgressCallback | None = None,
        debug_path: Path | None = None,
    ) -> str:
        """Run codex and return the best available final message."""
        output_file = Path(tempfile.gettempdir()) / f"quibble-codex-{uuid.uuid4().hex}.txt"
        stream = _CodexStream(on_progress)
        self.last_token_count = None
        try:
            stdout = await self._run_streaming(
                self._build_args(prompt, output_file), stream, debug_path, on_attempt=stream.reset,
            )
            self.last_token_count = stream.tokens

            # Preference order: -o file, last assistant message, last streamed text, raw stdout.
            with suppress(OSError):
                content = output_file.read_text(encoding="utf-8")
                if content.strip():
                    return content
            message = extract_codex_assistant_message(stdout)
            if message:
                return message
            if stream.last_text:
                return stream.last_text
            return stdout
        finally:
            output_file.unlink(missing_ok=True)

    async def review(
        self,
        document: str,
        context_block: str | None = None,
        on_progress: ProgressCallback | None = None,
        debug_path: Path | None = None,
    ) -> Review:
        output = await self._run_codex(build_review_prompt(document, context_block), on_progress, debug_path)
        result = parse_cli_output(output, Review)
        if not result.success:
            raise OutputParseError.from_result("Codex review", result)
        logger.debug("Codex review: %d issues, %d opportunities",
                     len(result.data.issues), len(result.data.opportunities))
        return result.data

    async def check_consensus(
        self,
        original_document: str,
        original_feedback: str,
        author_responses: str,
        updated_document: str,
        context_block: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ConsensusCheck:
        prompt = build_consensus_prompt(
            original_document, original_feedback, author_responses, updated_document, context_block,
        )
        output = await self._run_codex(prompt, on_progress)
        result = parse_cli_output(output, ConsensusCheck)
        if not result.success:
            raise OutputParseError.from_result("Codex consensus", result)
        return result.data
