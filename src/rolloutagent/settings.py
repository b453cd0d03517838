from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Upstream model service (any OpenAI-compatible chat completions endpoint)
    model: str = "gemini-2.0-flash"
    temperature: float = 0.0
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://generativelanguage.googleapis.com/v1beta/openai/"
    request_timeout_seconds: float = 120.0
    json_mode: bool = True

    # Call governance
    diagnostic_max_tool_calls: int = 4
    remediation_max_tool_calls: int = 2
    governor_session_warning_threshold: int = 100

    # Retry policy for model calls
    retry_max_attempts: int = 3
    retry_initial_backoff_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_backoff_seconds: float = 60.0

    # Workflow bounds
    analysis_max_iterations: int = 3
    max_tool_turns: int = 8
    history_window: int = 10

    cors_origins: str = "*"

    # Published in the agent card
    public_url: str = "http://localhost"
    agent_name: str = "Rollout Agent"
    agent_version: str = "1.0.0"

    redis_url: str | None = None
    context_ttl_seconds: int = 86400  # 24 hours

    mcp_kubernetes_cmd: str | None = None
    mcp_github_cmd: str | None = None

    github_token: str | None = None
    github_api_url: str = "https://api.github.com"
    kube_config_path: str | None = None

    diagnostic_system_prompt: str = (
        "You are a Kubernetes diagnostic specialist. Gather data efficiently. "
        "Do NOT analyze or judge.\n\n"
        "Make ONE tool call at a time. You have a budget of at most {max_tool_calls} calls.\n\n"
        "Workflow for a stable vs canary comparison:\n"
        "1. list_related_resources(namespace, label_selector=\"role=stable\")\n"
        "2. list_related_resources(namespace, label_selector=\"role=canary\")\n"
        "3. get_logs(namespace, name=<first stable pod>)\n"
        "4. get_logs(namespace, name=<first canary pod>), then return the report\n\n"
        "Rules:\n"
        "- Fetch logs from ONE pod per group only.\n"
        "- Skip get_events when pods are Running and Ready.\n"
        "- Use real pod names returned by list_related_resources.\n"
        "- If a tool call is rejected, stop calling tools and write the report.\n\n"
        "Report format:\n"
        "=== DIAGNOSTIC REPORT ===\n"
        "STABLE PODS: <list with status>\n"
        "CANARY PODS: <list with status>\n"
        "STABLE LOGS (from <pod>): <logs>\n"
        "CANARY LOGS (from <pod>): <logs>\n"
        "EVENTS: <events or 'Not gathered - pods running normally'>\n"
        "SUMMARY: <brief status>\n"
        "=== END DIAGNOSTIC REPORT ==="
    )
    analysis_system_prompt: str = (
        "You are a Kubernetes SRE analyzing canary deployment diagnostic data.\n\n"
        "1. Compare stable vs canary health.\n"
        "2. Check logs for errors and crashes.\n"
        "3. Review events if present.\n"
        "4. Decide whether to promote the canary.\n\n"
        "Return ONLY a JSON object:\n"
        "{\n"
        '  "promote": true or false,\n'
        '  "confidence": 0-100,\n'
        '  "analysis": "brief comparison",\n'
        '  "rootCause": "issue or \'No issues detected\'",\n'
        '  "remediation": "action or \'Promote canary\'",\n'
        '  "externalLink": null\n'
        "}\n\n"
        "Confidence: 90-100 definitive, 70-89 high, 50-69 moderate, below 50 low."
    )
    scoring_system_prompt: str = (
        "You are a solution quality evaluator. Evaluate the analysis and return "
        "ONLY a JSON object:\n"
        '{"score": 0-100, "needsRetry": true or false, "reason": "explanation"}\n\n'
        "A good solution has high confidence (above 70), a clear root cause and an "
        "actionable remediation plan. Recommend a retry when confidence is below 50, "
        "the root cause is unclear or the remediation is not actionable."
    )
    remediation_system_prompt: str = (
        "You are a remediation specialist. Implement fixes based on the analysis.\n\n"
        "1. Code fix needed and a repoUrl is present: call create_pull_request.\n"
        "2. Human attention needed and a repoUrl is present: call create_issue.\n"
        "3. No repoUrl or no fix needed: return the analysis unchanged.\n\n"
        "Never write a URL yourself. Only a URL returned by a tool counts.\n"
        "Return ONLY the final analysis as a JSON object with keys promote, "
        "confidence, analysis, rootCause, remediation, externalLink."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
