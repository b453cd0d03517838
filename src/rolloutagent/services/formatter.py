from ..models import FinalResponse


def format_report(response: FinalResponse) -> str:
    """Render a FinalResponse as a Markdown report for chat-style clients."""
    lines = [
        "## Analysis Result",
        "",
        f"**Decision:** {'PROMOTE' if response.promote else 'ROLLBACK'}",
        f"**Confidence:** {response.confidence}%",
        "",
    ]
    for title, body in (
        ("Analysis", response.analysis),
        ("Root Cause", response.root_cause),
        ("Remediation", response.remediation),
    ):
        if body:
            lines += [f"### {title}", body, ""]

    if response.external_link:
        title = "Pull Request" if "/pull/" in response.external_link else "Issue"
        lines += [f"### {title}", response.external_link, ""]

    return "\n".join(lines).rstrip() + "\n"
