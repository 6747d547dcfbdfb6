"""Structured-output extraction from free-form agent text.

Agents are asked to wrap their JSON payload in sentinel markers, but in
practice they add preambles, code fences or trailing chatter.  Extraction
tries, in order:

1. content between ``<<<QUIBBLE_JSON_START>>>`` and ``<<<QUIBBLE_JSON_END>>>``
2. the whole trimmed output
3. the first fenced code block
4. first ``{`` up to the last ``}`` that still parses (scanning backward)

The extracted value is then validated against a pydantic model.  Author
responses additionally get exactly one value-level repair attempt.
"""

from __future__ import annotations

import enum
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from quibble.models import AuthorResponse, Verdict

logger = logging.getLogger(__name__)

SENTINEL_START = "<<<QUIBBLE_JSON_START>>>"
SENTINEL_END = "<<<QUIBBLE_JSON_END>>>"

_CODE_FENCE = re.compile(r"```[\w+-]*[ \t]*\n?(.*?)\n?```", re.DOTALL)

_MISSING = object()

T = TypeVar("T", bound=BaseModel)


class ParseFailure(str, enum.Enum):
    NO_PAYLOAD = "no_payload"
    SCHEMA_MISMATCH = "schema_mismatch"


@dataclass
class ParseResult(Generic[T]):
    success: bool
    data: T | None = None
    error: str = ""
    failure: ParseFailure | None = None
    raw_content: str = ""
    repaired: bool = False


class OutputParseError(Exception):
    """Agent output could not be turned into the expected payload."""

    def __init__(self, kind: ParseFailure, message: str, raw_content: str = "") -> None:
        self.kind = kind
        self.raw_content = raw_content
        super().__init__(message)

    @classmethod
    def from_result(cls, label: str, result: ParseResult) -> OutputParseError:
        return cls(
            result.failure or ParseFailure.NO_PAYLOAD,
            f"Failed to parse {label}: {result.error}",
            result.raw_content,
        )


def _try_parse(content: str) -> Any:
    try:
        return json.loads(content)
    except (json.JSONDecodeError, ValueError):
        return _MISSING


def _between_sentinels(content: str) -> str | None:
    start = content.find(SENTINEL_START)
    end = content.find(SENTINEL_END)
    if start == -1 or end == -1 or end <= start:
        return None
    return content[start + len(SENTINEL_START):end].strip()


def _from_code_fence(content: str) -> str | None:
    match = _CODE_FENCE.search(content)
    return match.group(1).strip() if match else None


def _brace_content(content: str) -> Any:
    first = content.find("{")
    if first == -1:
        return _MISSING
    end = content.rfind("}")
    while end >= first:
        parsed = _try_parse(content[first:end + 1])
        if parsed is not _MISSING:
            return parsed
        end = content.rfind("}", first, end)
    return _MISSING


def _extract_payload(output: str) -> Any:
    """Return the first parseable JSON value in *output*, or _MISSING.

    A payload of JSON `null` is a real value here, distinct from no payload.
    """
    candidate = _between_sentinels(output)
    if candidate is None:
        candidate = output.strip()

    parsed = _try_parse(candidate)

    if parsed is _MISSING:
        fenced = _from_code_fence(output)
        if fenced:
            parsed = _try_parse(fenced)

    if parsed is _MISSING:
        parsed = _brace_content(output)

    return parsed


def extract_json_value(output: str) -> Any | None:
    """Return the first parseable JSON value found in *output*, or None."""
    parsed = _extract_payload(output)
    return None if parsed is _MISSING else parsed


def _validate(value: Any, model: type[T], output: str) -> ParseResult[T]:
    try:
        data = model.model_validate(value)
    except ValidationError as e:
        return ParseResult(
            success=False,
            error=f"Schema validation failed: {e}",
            failure=ParseFailure.SCHEMA_MISMATCH,
            raw_content=output,
        )
    return ParseResult(success=True, data=data, raw_content=output)


def parse_cli_output(output: str, model: type[T]) -> ParseResult[T]:
    """Extract a JSON payload from *output* and validate it against *model*."""
    value = _extract_payload(output)
    if value is _MISSING:
        return ParseResult(
            success=False,
            error="Failed to extract valid JSON from output",
            failure=ParseFailure.NO_PAYLOAD,
            raw_content=output,
        )
    return _validate(value, model, output)


# --- Author response repair ---


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return str(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return False


def _as_str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [_as_text(v) for v in value]
    return []


def _as_confidence(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return 0.0
    else:
        return 0.0
    if math.isnan(number):
        return 0.0
    return max(0.0, min(number, 1.0))


def _repair_feedback_response(item: Any) -> Any:
    if not isinstance(item, dict):
        return item
    fixed = dict(item)
    verdict = fixed.get("verdict")
    normalized = verdict.strip().lower() if isinstance(verdict, str) else ""
    valid = {v.value for v in Verdict}
    # Unknown verdicts need a human look rather than silent agreement.
    fixed["verdict"] = normalized if normalized in valid else Verdict.PARTIAL.value
    fixed["reasoning"] = _as_text(fixed.get("reasoning"))
    fixed["action_taken"] = _as_text(fixed.get("action_taken"))
    return fixed


def repair_author_response(value: Any, original_document: str) -> dict | None:
    """Substitute defaults for missing or mistyped author-response fields.

    Returns None when *value* is not an object at all.  Structural defects
    such as a non-list ``responses`` are left untouched so re-validation fails.
    """
    if not isinstance(value, dict):
        return None

    repaired = dict(value)

    responses = repaired.get("responses")
    if responses is None:
        repaired["responses"] = []
    elif isinstance(responses, list):
        repaired["responses"] = [_repair_feedback_response(r) for r in responses]

    if not isinstance(repaired.get("updated_document"), str):
        repaired["updated_document"] = original_document

    assessment = repaired.get("consensus_assessment")
    if not isinstance(assessment, dict):
        assessment = {}
    repaired["consensus_assessment"] = {
        **assessment,
        "reached": _as_bool(assessment.get("reached")),
        "outstanding_disagreements": _as_str_list(assessment.get("outstanding_disagreements")),
        "confidence": _as_confidence(assessment.get("confidence")),
        "summary": _as_text(assessment.get("summary")),
    }
    return repaired


def parse_author_response(output: str, original_document: str) -> ParseResult[AuthorResponse]:
    """Parse an author response, repairing it once if validation fails."""
    value = _extract_payload(output)
    if value is _MISSING:
        return ParseResult(
            success=False,
            error="Failed to extract valid JSON from output",
            failure=ParseFailure.NO_PAYLOAD,
            raw_content=output,
        )

    result = _validate(value, AuthorResponse, output)
    if result.success:
        return result

    repaired = repair_author_response(value, original_document)
    if repaired is None:
        return result

    retried = _validate(repaired, AuthorResponse, output)
    if not retried.success:
        retried.error = f"{retried.error} (after repair)"
        return retried

    logger.warning("Author response failed validation and was repaired: %s", result.error)
    retried.repaired = True
    return retried


def extract_codex_assistant_message(jsonl_output: str) -> str | None:
    """Return the last assistant message from a Codex JSONL transcript."""
    last: str | None = None
    for line in jsonl_output.strip().splitlines():
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except (json.JSONDecodeError, ValueError):
            continue
        if not isinstance(event, dict):
            continue

        event_type = event.get("type")
        if event_type in ("assistant_message", "message"):
            content = event.get("content")
            message = event.get("message")
            if isinstance(content, str) and content:
                last = content
            elif isinstance(message, dict) and isinstance(message.get("content"), str):
                last = message["content"]
        elif event_type == "item.completed":
            item = event.get("item") or {}
            if item.get("type") == "agent_message" and isinstance(item.get("text"), str):
                last = item["text"]
    return last
