"""Tests for prompt templates."""

from quibble.parsing import SENTINEL_END, SENTINEL_START
from quibble.prompts import build_consensus_prompt, build_response_prompt, build_review_prompt


class TestBuildReviewPrompt:
    def test_wraps_document(self):
        prompt = build_review_prompt("# Plan\n\nShip it.")
        assert "<document>\n# Plan\n\nShip it.\n</document>" in prompt

    def test_asks_for_sentinels(self):
        prompt = build_review_prompt("doc")
        assert SENTINEL_START in prompt
        assert SENTINEL_END in prompt
        assert prompt.rstrip().endswith("No other text.")

    def test_severity_scale(self):
        prompt = build_review_prompt("doc")
        for word in ("critical", "major", "minor", "overall_assessment"):
            assert word in prompt

    def test_context_before_document(self):
        prompt = build_review_prompt("doc", "<repo_context>ctx</repo_context>")
        assert prompt.index("<repo_context>ctx") < prompt.index("<document>")

    def test_no_context(self):
        assert "<repo_context>\n" not in build_review_prompt("doc")


class TestBuildResponsePrompt:
    def test_contains_document_and_feedback(self):
        prompt = build_response_prompt("the doc", '{"issues": []}')
        assert "<original_document>\nthe doc\n</original_document>" in prompt
        assert '<reviewer_feedback>\n{"issues": []}\n</reviewer_feedback>' in prompt

    def test_schema_fields(self):
        prompt = build_response_prompt("d", "f")
        for field in ("feedback_id", "updated_document", "consensus_assessment", "action_taken"):
            assert field in prompt


class TestBuildConsensusPrompt:
    def test_all_sections(self):
        prompt = build_consensus_prompt("orig", "feedback", "responses", "updated", "<repo_context>c</repo_context>")
        assert "<original_document>\norig\n</original_document>" in prompt
        assert "<your_original_feedback>\nfeedback\n</your_original_feedback>" in prompt
        assert "<author_responses>\nresponses\n</author_responses>" in prompt
        assert "<updated_document>\nupdated\n</updated_document>" in prompt
        assert prompt.index("<repo_context>c") < prompt.index("<original_document>")

    def test_verdict_vocabulary(self):
        prompt = build_consensus_prompt("a", "b", "c", "d")
        for word in ("approve", "reject", "resolved", "validly_disputed", "inadequate", "new_issues"):
            assert word in prompt
