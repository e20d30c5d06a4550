"""Deterministic email triage based on weighted sender and keyword rules."""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from email.utils import parsedate_to_datetime
from types import MappingProxyType

logger = logging.getLogger("opsinbox.triage")

PRIORITIES = ("P0", "P1", "P2", "P3")

# Declaration order doubles as the tie-break order when scores are equal.
SCORE_KEYS = ("security", "billing", "operations", "jobs", "learning", "low", "general")

GENERAL_BASELINE = 0.25
RECENCY_WINDOW_HOURS = 48

_ANGLE_ADDRESS = re.compile(r"<([^>]+)>")
_BARE_ADDRESS = re.compile(r"[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}")


@dataclass(frozen=True)
class EmailForTriage:
    sender: str
    subject: str
    snippet: str
    date: str

    @classmethod
    def from_dict(cls, data: dict) -> "EmailForTriage":
        return cls(
            sender=data.get("from", ""),
            subject=data.get("subject", ""),
            snippet=data.get("snippet", ""),
            date=data.get("date", ""),
        )


@dataclass(frozen=True)
class TriageResult:
    priority: str
    category: str
    summary: str
    action: str
    confidence: float

    def to_dict(self) -> dict:
        return {
            "priority": self.priority,
            "category": self.category,
            "summary": self.summary,
            "action": self.action,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class CategoryProfile:
    priority: str
    category: str
    summary: str
    action: str


@dataclass(frozen=True)
class DomainRule:
    domains: tuple[str, ...]
    score_key: str
    weight: float


@dataclass(frozen=True)
class KeywordRule:
    keywords: tuple[str, ...]
    score_key: str
    weight: float


CATEGORY_PROFILES = MappingProxyType({
    "security": CategoryProfile(
        priority="P0",
        category="security",
        summary="Security-related email. Review immediately.",
        action="Open and verify account activity.",
    ),
    "billing": CategoryProfile(
        priority="P1",
        category="billing",
        summary="Billing-related email needs prompt review.",
        action="Check charges, invoice, and payment status.",
    ),
    "operations": CategoryProfile(
        priority="P1",
        category="operations",
        summary="Operational alert likely requiring quick action.",
        action="Review logs or system status and resolve failures.",
    ),
    "jobs": CategoryProfile(
        priority="P2",
        category="career",
        summary="Career-related email requiring normal follow-up.",
        action="Review opportunity details and respond if relevant.",
    ),
    "learning": CategoryProfile(
        priority="P2",
        category="learning",
        summary="Learning content or course update.",
        action="Schedule review when available.",
    ),
    "low": CategoryProfile(
        priority="P3",
        category="low",
        summary="Low-priority informational or promotional email.",
        action="Archive, unsubscribe, or read later.",
    ),
    "general": CategoryProfile(
        priority="P2",
        category="general",
        summary="General email requiring normal attention.",
        action="Review and respond as appropriate.",
    ),
})

CATEGORIES = tuple(profile.category for profile in CATEGORY_PROFILES.values())

DOMAIN_RULES = (
    DomainRule(domains=("github.com",), score_key="operations", weight=0.45),
    DomainRule(domains=("linkedin.com", "cvkeskus.ee", "cv.ee"), score_key="jobs", weight=0.4),
    DomainRule(domains=("coursera.org", "udemy.com"), score_key="learning", weight=0.35),
)

KEYWORD_RULES = (
    KeywordRule(
        keywords=("verification code", "verify", "2fa", "security alert", "suspicious", "password reset"),
        score_key="security",
        weight=0.5,
    ),
    KeywordRule(
        keywords=("invoice", "receipt", "payment failed", "subscription canceled", "charge", "billing"),
        score_key="billing",
        weight=0.45,
    ),
    KeywordRule(
        keywords=("ci failed", "build failed", "incident", "outage", "failing checks"),
        score_key="operations",
        weight=0.45,
    ),
    KeywordRule(
        keywords=("job alert", "interview", "application", "bonus", "offer"),
        score_key="jobs",
        weight=0.35,
    ),
    KeywordRule(
        keywords=("course", "learning path", "assignment due", "certificate"),
        score_key="learning",
        weight=0.3,
    ),
    KeywordRule(
        keywords=("newsletter", "unsubscribe", "digest", "no-reply"),
        score_key="low",
        weight=0.35,
    ),
)

_URGENT_KEYS = frozenset({"security", "billing", "operations"})
_FOLLOW_UP_KEYS = frozenset({"jobs", "learning"})


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def extract_domain(sender: str) -> str:
    """Return the lower-cased domain of the address in a From header, or ''."""
    lower = sender.lower()
    match = _ANGLE_ADDRESS.search(lower)
    address = match.group(1) if match else None
    if address is None:
        match = _BARE_ADDRESS.search(lower)
        address = match.group(0) if match else None
    if not address:
        return ""
    parts = address.split("@")
    return parts[1] if len(parts) > 1 else ""


def parse_email_date(value: str) -> datetime | None:
    """Parse an RFC 2822 or ISO 8601 date. Naive timestamps are taken as UTC."""
    if not value or not value.strip():
        return None
    parsed = None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        parsed = None
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def recency_boost(date: str, score_key: str, now: datetime | None = None) -> float:
    """Boost for messages received within the last 48 hours, by urgency class."""
    received = parse_email_date(date)
    if received is None:
        return 0.0
    now = now or datetime.now(timezone.utc)
    try:
        age_hours = (now - received).total_seconds() / 3600
    except OverflowError:
        return 0.0
    if age_hours > RECENCY_WINDOW_HOURS or age_hours < 0:
        return 0.0
    if score_key in _URGENT_KEYS:
        return 0.12
    if score_key in _FOLLOW_UP_KEYS:
        return 0.08
    return 0.04


def score_email(email: EmailForTriage) -> tuple[dict[str, float], int]:
    """Accumulate per-category scores and the number of matched signals."""
    text = f"{email.subject} {email.snippet}".lower()
    domain = extract_domain(email.sender)
    scores = {key: 0.0 for key in SCORE_KEYS}
    scores["general"] = GENERAL_BASELINE
    signal_count = 0

    for rule in DOMAIN_RULES:
        if any(domain.endswith(known) for known in rule.domains):
            scores[rule.score_key] += rule.weight
            signal_count += 1

    for rule in KEYWORD_RULES:
        matches = sum(1 for keyword in rule.keywords if keyword in text)
        if matches > 0:
            scores[rule.score_key] += rule.weight + min(0.15, (matches - 1) * 0.05)
            signal_count += matches

    return scores, signal_count


def _round_confidence(value: float) -> float:
    # Half-up on the exact binary value of the float.
    return float(Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def triage_email_rules(email: EmailForTriage, now: datetime | None = None) -> TriageResult:
    """Classify an email into a priority and category with a confidence score.

    Scores every category from the domain and keyword tables, picks the
    highest (ties resolved by SCORE_KEYS order), then adds a recency boost to
    the winner only. Confidence grows with the number of signals (up to five)
    and with the margin between the boosted winner and the runner-up.
    """
    scores, signal_count = score_email(email)
    ranked = sorted(SCORE_KEYS, key=lambda key: scores[key], reverse=True)
    top_key = ranked[0]
    second_score = scores[ranked[1]]
    top_score = scores[top_key] + recency_boost(email.date, top_key, now)

    confidence = clamp(
        0.55 + min(signal_count, 5) * 0.05 + max(0.0, top_score - second_score) * 0.25,
        0.6,
        0.98,
    )

    profile = CATEGORY_PROFILES[top_key]
    logger.debug(
        "Triaged %r as %s (score=%.2f, signals=%d)",
        email.subject, top_key, top_score, signal_count,
    )
    return TriageResult(
        priority=profile.priority,
        category=profile.category,
        summary=profile.summary,
        action=profile.action,
        confidence=_round_confidence(confidence),
    )


classify = triage_email_rules
