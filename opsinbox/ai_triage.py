"""Optional Claude-backed triage, always backed by the deterministic rules."""
import json
import logging
import subprocess

from opsinbox.triage_rules import (
    CATEGORIES,
    PRIORITIES,
    EmailForTriage,
    TriageResult,
    clamp,
    triage_email_rules,
)

logger = logging.getLogger("opsinbox.ai_triage")


class AiTriageError(Exception):
    """The AI strategy could not produce a usable result."""
    pass


class RulesTriage:
    name = "rules"

    def classify(self, email: EmailForTriage) -> TriageResult:
        return triage_email_rules(email)


class ClaudeTriage:
    """Classify an email by asking the Claude CLI for a JSON verdict."""

    name = "claude"

    def __init__(self, model: str = "claude-sonnet-4-5-20250929", timeout: int = 30):
        self.model = model
        self.timeout = timeout

    def classify(self, email: EmailForTriage) -> TriageResult:
        return parse_ai_result(self._invoke_claude(build_prompt(email)))

    def _invoke_claude(self, prompt: str) -> str:
        try:
            result = subprocess.run(
                ["claude", "--print", "--model", self.model, prompt],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise AiTriageError("Claude CLI not found") from e
        except subprocess.TimeoutExpired as e:
            raise AiTriageError(f"Claude timed out after {self.timeout} seconds") from e
        if result.returncode != 0:
            raise AiTriageError(f"Claude error: {result.stderr.strip()}")
        return result.stdout.strip()


def build_prompt(email: EmailForTriage) -> str:
    return f"""You triage emails for a busy operator.

## Email
From: {email.sender}
Subject: {email.subject}
Snippet: {email.snippet}
Date: {email.date}

## Instructions
Respond with a single JSON object and nothing else:
{{"priority": "P0|P1|P2|P3", "category": "{'|'.join(CATEGORIES)}",
  "summary": "<one sentence>", "action": "<one suggested action>",
  "confidence": <number between 0 and 1>}}
P0 is most urgent. Use "general" when nothing else fits.
"""


def parse_ai_result(text: str) -> TriageResult:
    """Validate the model's JSON reply into a TriageResult."""
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise AiTriageError("No JSON object in AI response")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise AiTriageError(f"Invalid JSON in AI response: {e}") from e

    priority = data.get("priority")
    category = data.get("category")
    if priority not in PRIORITIES:
        raise AiTriageError(f"Invalid priority: {priority!r}")
    if category not in CATEGORIES:
        raise AiTriageError(f"Invalid category: {category!r}")
    summary, action = data.get("summary"), data.get("action")
    if not isinstance(summary, str) or not isinstance(action, str):
        raise AiTriageError("summary and action must be strings")
    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise AiTriageError(f"Invalid confidence: {confidence!r}")

    return TriageResult(
        priority=priority,
        category=category,
        summary=summary.strip(),
        action=action.strip(),
        confidence=round(clamp(float(confidence), 0.6, 0.98), 2),
    )


class FallbackTriage:
    """Use the primary strategy; fall back to the secondary when it fails."""

    def __init__(self, primary, fallback=None):
        self.primary = primary
        self.fallback = fallback or RulesTriage()

    def classify(self, email: EmailForTriage) -> TriageResult:
        try:
            return self.primary.classify(email)
        except AiTriageError as e:
            logger.warning(f"{getattr(self.primary, 'name', 'primary')} triage failed, using rules: {e}")
            return self.fallback.classify(email)


class TriageEngine:
    """Serve rules-based triage and optionally run an AI strategy in shadow mode.

    The served result always comes from the rules. The shadow comparison is
    separate so callers can run it after the response has been sent.
    """

    def __init__(self, ai=None, rules=None):
        self.rules = rules or RulesTriage()
        self.ai = ai

    def classify(self, email: EmailForTriage) -> TriageResult:
        return self.rules.classify(email)

    def shadow_enabled(self, flags=None) -> bool:
        return self.ai is not None and flags is not None and flags.ai_triage_enabled

    def shadow_classify(self, email: EmailForTriage) -> TriageResult:
        """Run the AI strategy, falling back to the rules when it fails."""
        return FallbackTriage(self.ai, self.rules).classify(email)
