"""Claude Code author: subprocess-based with stream-json output."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from quibble.models import AuthorResponse
from quibble.parsing import OutputParseError, parse_author_response
from quibble.prompts import build_response_prompt
from quibble.trigger.base import (
    DEFAULT_INACTIVITY_TIMEOUT,
    AuthorEngine,
    ProgressCallback,
    TriggerEngine,
    notify,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "opus"


@dataclass
class StreamLine:
    """One meaningful line of Claude's stream-json output.

    kind is ``delta`` (incremental text), ``result`` (final text) or
    ``usage`` (token count only).
    """

    kind: str
    text: str = ""
    tokens: int | None = None


def _usage_tokens(event: dict[str, Any]) -> int | None:
    """Find a usage block on the event or one of its nested records."""
    candidates: list[dict] = [event]
    for key in ("message", "result"):
        if isinstance(event.get(key), dict):
            candidates.append(event[key])
    nested = event.get("event")
    if isinstance(nested, dict):
        candidates.append(nested)
        if isinstance(nested.get("message"), dict):
            candidates.append(nested["message"])

    usage = next((c["usage"] for c in candidates if isinstance(c.get("usage"), dict)), None)
    if usage is None:
        return None

    def _int(key: str) -> int | None:
        value = usage.get(key)
        return value if isinstance(value, int) and not isinstance(value, bool) else None

    total = _int("total_tokens")
    if total is not None:
        return total
    inp, out = _int("input_tokens"), _int("output_tokens")
    if inp is not None and out is not None:
        return inp + out
    return out if out is not None else inp


def parse_stream_line(line: str) -> StreamLine | None:
    """Classify a single stream-json line; None for anything uninteresting."""
    cleaned = line.strip()
    if cleaned.startswith("data:"):
        cleaned = cleaned[5:].strip()
    if not cleaned or cleaned == "[DONE]":
        return None
    try:
        event = json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(event, dict):
        return None

    tokens = _usage_tokens(event)

    for container in (event.get("event"), event):
        if isinstance(container, dict):
            delta = container.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("text"), str):
                return StreamLine("delta", delta["text"], tokens)

    if event.get("type") == "message" and isinstance(event.get("content"), list):
        text = "".join(
            part["text"] for part in event["content"]
            if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)
        )
        if text:
            return StreamLine("result", text, tokens)

    if event.get("type") == "result" and isinstance(event.get("result"), str) and event["result"]:
        return StreamLine("result", event["result"], tokens)

    if tokens is not None:
        return StreamLine("usage", tokens=tokens)
    return None


class _ClaudeStream:
    """Accumulates deltas and tracks token usage for one invocation."""

    def __init__(self, on_progress: ProgressCallback | None) -> None:
        self.on_progress = on_progress
        self.reset()

    def reset(self) -> None:
        self.chunks: list[str] = []
        self.final_result: str | None = None
        self.tokens = 0
        self.reported = False

    def __call__(self, line: str) -> None:
        parsed = parse_stream_line(line)
        if parsed is None:
            return
        if parsed.kind == "delta":
            self.chunks.append(parsed.text)
            if parsed.tokens is not None:
                self.tokens = parsed.tokens
                self.reported = True
            elif not self.reported:
                # No usage yet; count deltas as a rough estimate.
                self.tokens += 1
            notify(self.on_progress, parsed.text, self.tokens)
        elif parsed.kind == "result":
            self.final_result = parsed.text
            if parsed.tokens is not None:
                self.tokens = parsed.tokens
                self.reported = True
                notify(self.on_progress, "", self.tokens)
        else:
            self.tokens = parsed.tokens
            self.reported = True
            notify(self.on_progress, "", self.tokens)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


class ClaudeCodeTrigger(TriggerEngine, AuthorEngine):
    """Trigger Claude Code via subprocess (claude -p)."""

    executable = "claude"

    def __init__(
        self,
        model: str | None = None,
        *,
        inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT,
        cwd: str | Path | None = None,
    ) -> None:
        super().__init__(inactivity_timeout=inactivity_timeout, cwd=cwd)
        self.model = model or DEFAULT_MODEL

    def _build_args(self, prompt: str) -> list[str]:
        return [
            self.executable,
            "--print",
            "--verbose",
            "--output-format", "stream-json",
            "--include-partial-messages",
            "--model", self.model,
            "-p", prompt,
        ]

    async def respond(
        self,
        document: str,
        feedback: str,
        context_block: str | None = None,
        on_progress: ProgressCallback | None = None,
        debug_path: Path | None = None,
    ) -> AuthorResponse:
        prompt = build_response_prompt(document, feedback, context_block)
        stream = _ClaudeStream(on_progress)
        self.last_token_count = None
        self.last_tokens_estimated = False

        stdout = await self._run_streaming(
            self._build_args(prompt), stream, debug_path, on_attempt=stream.reset,
        )
        self.last_token_count = stream.tokens
        self.last_tokens_estimated = not stream.reported

        output = stream.final_result or stream.text or stdout
        result = parse_author_response(output, document)
        if not result.success:
            raise OutputParseError.from_result("Claude response", result)
        return result.data
