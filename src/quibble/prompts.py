"""Prompt templates for the reviewer and author agents."""

from __future__ import annotations

from quibble.parsing import SENTINEL_END, SENTINEL_START

_OUTPUT_RULE = (
    f"Respond with JSON wrapped in {SENTINEL_START} and {SENTINEL_END} markers. "
    "No other text."
)

REVIEW_SYSTEM_PROMPT = f"""\
You are a senior staff engineer doing a rigorous review of a technical document
(an implementation plan, design doc or research write-up). Be skeptical, specific
and constructive.

Look for:
- technical errors, wrong assumptions, missing edge cases or error handling
- security, scalability and concurrency problems
- ambiguous or incomplete requirements and interface contracts
- architectural problems: poor separation of concerns, tight coupling
- opportunities: simpler or more robust alternatives, missing detail that
  implementers will need

For every finding, name the section (or quote the text), explain the problem and
suggest a fix. If a <repo_context> block is given, use it to check claims instead
of guessing.

Severity:
- critical: would cause incidents, security breaches or major rework
- major: must be addressed before implementation starts
- minor: small improvements and nitpicks

Output format:

{SENTINEL_START}
{{
  "issues": [
    {{"id": "issue-1", "severity": "critical|major|minor", "section": "...",
      "description": "...", "suggestion": "..."}}
  ],
  "opportunities": [
    {{"id": "opp-1", "impact": "high|medium|low", "section": "...",
      "description": "...", "suggestion": "..."}}
  ],
  "overall_assessment": "2-3 sentence summary"
}}
{SENTINEL_END}"""

RESPONSE_SYSTEM_PROMPT = f"""\
You are the author of a technical document answering a peer review.

For each feedback item decide whether you agree, disagree or partially agree.
- agree: apply the fix to the document and say what you changed
- disagree: give concrete technical reasoning; do not be defensive
- partial: say what is valid, what is not, and what partial change you made

Then return the complete updated document with every accepted change applied,
and assess honestly whether you and the reviewer have reached consensus. If a
<repo_context> block is given, ground your edits in it.

Output format:

{SENTINEL_START}
{{
  "responses": [
    {{"feedback_id": "issue-1", "verdict": "agree|disagree|partial",
      "reasoning": "...", "action_taken": "... or empty string"}}
  ],
  "updated_document": "the full updated markdown document",
  "consensus_assessment": {{
    "reached": true,
    "outstanding_disagreements": ["issue-2"],
    "confidence": 0.8,
    "summary": "..."
  }}
}}
{SENTINEL_END}"""

CONSENSUS_SYSTEM_PROMPT = f"""\
You reviewed this document earlier. The author has answered your feedback and
revised the document. Decide where things stand.

For each of your original items, mark it:
- resolved: the revision addresses it
- validly_disputed: the author pushed back and their reasoning holds
- inadequate: the concern still stands
- new_issues: the change introduced new problems

Report anything the revisions broke as new issues. Then give your verdict:
- approve: the document is ready; remaining items are minor
- reject: meaningful problems still need another round

The goal is a good document, not winning the argument. If a <repo_context>
block is given, use it.

Output format:

{SENTINEL_START}
{{
  "verdict": "approve|reject",
  "feedback_responses": [
    {{"original_feedback_id": "issue-1",
      "resolution_status": "resolved|inadequate|validly_disputed|new_issues",
      "comment": "..."}}
  ],
  "new_issues": [
    {{"id": "new-issue-1", "severity": "critical|major|minor", "section": "...",
      "description": "...", "suggestion": "..."}}
  ],
  "summary": "2-3 sentence summary"
}}
{SENTINEL_END}"""


def _tagged(tag: str, body: str) -> str:
    return f"<{tag}>\n{body}\n</{tag}>"


def build_review_prompt(document: str, context_block: str | None = None) -> str:
    parts: list[str] = [
        REVIEW_SYSTEM_PROMPT,
        "",
        "Review the following technical document.",
        "",
    ]
    if context_block:
        parts.extend([context_block, ""])
    parts.extend([_tagged("document", document), "", _OUTPUT_RULE])
    return "\n".join(parts)


def build_response_prompt(
    document: str,
    feedback: str,
    context_block: str | None = None,
) -> str:
    parts: list[str] = [
        RESPONSE_SYSTEM_PROMPT,
        "",
        "Decide how to respond to this review of your document.",
        "",
    ]
    if context_block:
        parts.extend([context_block, ""])
    parts.extend([
        _tagged("original_document", document),
        "",
        _tagged("reviewer_feedback", feedback),
        "",
        'Always include every field; use an empty string for "action_taken" '
        "when nothing changed.",
        _OUTPUT_RULE,
    ])
    return "\n".join(parts)


def build_consensus_prompt(
    original_document: str,
    original_feedback: str,
    author_responses: str,
    updated_document: str,
    context_block: str | None = None,
) -> str:
    parts: list[str] = [
        CONSENSUS_SYSTEM_PROMPT,
        "",
        "Here is how the author handled your review.",
        "",
    ]
    if context_block:
        parts.extend([context_block, ""])
    parts.extend([
        _tagged("original_document", original_document),
        "",
        _tagged("your_original_feedback", original_feedback),
        "",
        _tagged("author_responses", author_responses),
        "",
        _tagged("updated_document", updated_document),
        "",
        _OUTPUT_RULE,
    ])
    return "\n".join(parts)
