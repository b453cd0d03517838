from rolloutagent.models import FinalResponse
from rolloutagent.services.formatter import format_report


def test_rollback_report_with_pull_request() -> None:
    response = FinalResponse(
        promote=False,
        confidence=85,
        analysis="Canary crashes on start",
        root_cause="Missing env var",
        remediation="Add DATABASE_URL",
        external_link="https://github.com/acme/billing-service/pull/42",
    )
    report = format_report(response)

    assert report.startswith("## Analysis Result\n")
    assert "**Decision:** ROLLBACK" in report
    assert "**Confidence:** 85%" in report
    assert "### Root Cause\nMissing env var" in report
    assert "### Pull Request\nhttps://github.com/acme/billing-service/pull/42" in report


def test_promote_report_skips_empty_sections() -> None:
    report = format_report(FinalResponse(promote=True, confidence=95, analysis="Healthy"))

    assert "**Decision:** PROMOTE" in report
    assert "### Analysis\nHealthy" in report
    assert "### Root Cause" not in report
    assert "### Pull Request" not in report


def test_issue_link_is_labelled_issue() -> None:
    report = format_report(
        FinalResponse(promote=False, confidence=60, external_link="https://github.com/acme/billing-service/issues/9")
    )
    assert "### Issue\nhttps://github.com/acme/billing-service/issues/9" in report
