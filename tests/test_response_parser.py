import pytest

from rolloutagent.services.response_parser import (
    DEFAULT_SECTION_TEXT,
    extract_confidence,
    extract_pr_link,
    extract_promote,
    extract_section,
    parse_free_text,
)


@pytest.mark.parametrize(
    "text",
    [
        "- **promote**: false",
        "promote: false",
        "promote**: `false`",
        '{"promote": false, "confidence": 90}',
        "PROMOTE = FALSE",
    ],
)
def test_explicit_false_is_recognized(text: str) -> None:
    assert extract_promote(text) is False


def test_explicit_false_beats_prose_and_explicit_true() -> None:
    text = "We should promote this eventually.\n- **promote**: false\n- promote: true"
    assert extract_promote(text) is False


def test_explicit_true_beats_negative_keywords() -> None:
    assert extract_promote("No rollback needed.\npromote: true") is True


def test_negative_keywords_without_explicit_value() -> None:
    assert extract_promote("The canary should not be promoted; errors doubled.") is False
    assert extract_promote("Recommend a rollback of the canary.") is False


def test_default_is_promote() -> None:
    assert extract_promote("Both versions look healthy.") is True


def test_confidence_explicit_and_defaults() -> None:
    assert extract_confidence("**Confidence**: 72%", promote=False) == 72
    assert extract_confidence("confidence: 250", promote=True) == 100
    assert extract_confidence("no number here", promote=True) == 80
    assert extract_confidence("no number here", promote=False) == 50


def test_pr_link_extraction() -> None:
    text = "Opened https://github.com/acme/billing-service/pull/42 for review."
    assert extract_pr_link(text) == "https://github.com/acme/billing-service/pull/42"
    assert extract_pr_link("PR: https://git.internal/acme/svc/merge/3") == "https://git.internal/acme/svc/merge/3"
    assert extract_pr_link("no link") is None


def test_extract_section_stops_at_next_header() -> None:
    text = "## Analysis\nall good\n## Root Cause\nmemory leak\n## Remediation\nraise limits"
    assert extract_section(text, "root cause") == "Root Cause\nmemory leak"
    assert extract_section(text, "missing") is None


def test_parse_free_text() -> None:
    text = (
        "## Analysis\nCanary crashes with OOMKilled.\n"
        "## Root Cause\nHeap limit too low\n"
        "- **promote**: false\n"
        "- confidence: 88\n"
    )
    result = parse_free_text(text)
    assert result.promote is False
    assert result.confidence == 88
    assert result.root_cause.startswith("Root Cause")
    assert result.remediation == DEFAULT_SECTION_TEXT
    assert result.external_link is None
