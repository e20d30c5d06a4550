"""Persistence of accounts, message metadata, triage results, overrides, rules and feature flags."""
import logging
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert

from opsinbox.database import (
    ActivityLog,
    Assignment,
    FeatureFlagRecord,
    InboxAccount,
    Message,
    Note,
    RuleConfigRecord,
    TriageResultRecord,
    User,
    Workspace,
    WorkspaceMember,
)
from opsinbox.utils import utc_now_iso

logger = logging.getLogger("opsinbox.repository")

FEATURE_FLAGS_KEY = "system"
PERSONAL_WORKSPACE = "Personal"
GOOGLE_PROVIDER = "google"


@dataclass(frozen=True)
class AccountContext:
    """The user, workspace and inbox account a linked Google login maps to."""
    user_id: str
    workspace_id: str
    inbox_account_id: str
    email: str


@dataclass
class TriageOverride:
    done: bool
    note: str
    tags: list[str]
    updated_at: str

    def to_dict(self) -> dict:
        return {"done": self.done, "note": self.note, "tags": self.tags, "updatedAt": self.updated_at}


@dataclass
class RuleConfig:
    id: str
    name: str
    description: str
    matchers: list[str]
    priority: str
    category: str
    enabled: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FeatureFlags:
    ai_triage_enabled: bool = False
    ai_mode: str = "disabled"
    safe_fallback: str = "rules"

    @classmethod
    def for_enabled(cls, enabled: bool) -> "FeatureFlags":
        return cls(ai_triage_enabled=enabled, ai_mode="shadow" if enabled else "disabled")

    def to_dict(self) -> dict:
        return {
            "aiTriageEnabled": self.ai_triage_enabled,
            "aiMode": self.ai_mode,
            "safeFallback": self.safe_fallback,
        }


DEFAULT_SECURITY_RULE = RuleConfig(
    id="rule-security-1",
    name="Security alerts",
    description="Escalate suspicious and verification-related messages.",
    matchers=["verification code", "security alert", "suspicious"],
    priority="P0",
    category="security",
    enabled=True,
)


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


class OpsStateRepository:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self):
        with self._session_factory() as session, session.begin():
            yield session

    # --- accounts ---

    def link_google_account(self, email: str) -> AccountContext:
        """Ensure a user, personal workspace, membership and inbox account for a Google login."""
        normalized = email.strip().lower()
        if not normalized:
            raise ValueError("Google account email is required")
        now = utc_now_iso()
        with self._transaction() as session:
            session.execute(
                insert(User)
                .values(id=str(uuid.uuid4()), email=normalized, created_at=now)
                .on_conflict_do_nothing(index_elements=["email"])
            )
            user_id = session.scalars(select(User.id).where(User.email == normalized)).one()

            session.execute(
                insert(Workspace)
                .values(id=str(uuid.uuid4()), name=PERSONAL_WORKSPACE, owner_user_id=user_id, created_at=now)
                .on_conflict_do_nothing(index_elements=["owner_user_id", "name"])
            )
            workspace_id = session.scalars(
                select(Workspace.id).where(
                    Workspace.owner_user_id == user_id, Workspace.name == PERSONAL_WORKSPACE
                )
            ).one()

            session.execute(
                insert(WorkspaceMember)
                .values(workspace_id=workspace_id, user_id=user_id, role="owner", created_at=now)
                .on_conflict_do_update(
                    index_elements=["workspace_id", "user_id"], set_={"role": "owner"}
                )
            )

            session.execute(
                insert(InboxAccount)
                .values(
                    id=str(uuid.uuid4()),
                    workspace_id=workspace_id,
                    provider=GOOGLE_PROVIDER,
                    email=normalized,
                    created_at=now,
                    linked_at=now,
                )
                .on_conflict_do_update(
                    index_elements=["workspace_id", "provider", "email"], set_={"linked_at": now}
                )
            )
            inbox_account_id = session.scalars(
                select(InboxAccount.id).where(
                    InboxAccount.workspace_id == workspace_id,
                    InboxAccount.provider == GOOGLE_PROVIDER,
                    InboxAccount.email == normalized,
                )
            ).one()
        logger.info(f"Linked Google account {normalized} to workspace {workspace_id}")
        return AccountContext(
            user_id=user_id,
            workspace_id=workspace_id,
            inbox_account_id=inbox_account_id,
            email=normalized,
        )

    def get_active_context(self) -> AccountContext | None:
        """Return the most recently linked inbox account, if any."""
        with self._transaction() as session:
            row = session.execute(
                select(InboxAccount.id, InboxAccount.workspace_id, Workspace.owner_user_id, User.email)
                .join(Workspace, Workspace.id == InboxAccount.workspace_id)
                .join(User, User.id == Workspace.owner_user_id)
                .order_by(InboxAccount.linked_at.desc())
                .limit(1)
            ).first()
        if row is None:
            return None
        return AccountContext(
            user_id=row.owner_user_id,
            workspace_id=row.workspace_id,
            inbox_account_id=row.id,
            email=row.email,
        )

    # --- messages and triage results ---

    def save_message_meta(self, email) -> None:
        """Insert or refresh a message row from an EmailMeta."""
        now = utc_now_iso()
        fields = {
            "thread_id": email.thread_id or None,
            "sender": email.sender,
            "subject": email.subject,
            "snippet": email.snippet,
            "message_date": email.date,
            "updated_at": now,
        }
        with self._transaction() as session:
            session.execute(
                insert(Message)
                .values(id=email.id, created_at=now, **fields)
                .on_conflict_do_update(index_elements=["id"], set_=fields)
            )

    def save_triage_result(self, message_id: str, triage) -> None:
        now = utc_now_iso()
        fields = {
            "priority": triage.priority,
            "category": triage.category,
            "summary": triage.summary,
            "action": triage.action,
            "confidence": triage.confidence,
            "updated_at": now,
        }
        with self._transaction() as session:
            session.execute(
                insert(TriageResultRecord)
                .values(message_id=message_id, created_at=now, **fields)
                .on_conflict_do_update(index_elements=["message_id"], set_=fields)
            )

    # --- overrides ---

    def upsert_override(
        self, user_id: str, message_id: str, done: bool, note: str, tags: list[str]
    ) -> TriageOverride:
        """Record a user's done/tags for a message and append the note to their history."""
        now = utc_now_iso()
        fields = {
            "status": "done" if done else "open",
            "done": done,
            "tags": list(tags),
            "updated_at": now,
        }
        with self._transaction() as session:
            # Placeholder until the message is seen in a listing.
            session.execute(
                insert(Message)
                .values(
                    id=message_id,
                    thread_id=None,
                    sender="unknown",
                    subject="(pending sync)",
                    snippet="",
                    message_date=now,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=["id"])
            )
            session.execute(
                insert(Assignment)
                .values(user_id=user_id, message_id=message_id, created_at=now, **fields)
                .on_conflict_do_update(index_elements=["user_id", "message_id"], set_=fields)
            )
            session.add(Note(
                user_id=user_id, message_id=message_id, body=note, created_at=now, updated_at=now
            ))
        logger.info(f"Override saved for {message_id} (done={done}, tags={len(tags)})")
        return TriageOverride(done=done, note=note, tags=list(tags), updated_at=now)

    def _latest_note(self, session, user_id: str, message_id: str) -> Note | None:
        return session.scalars(
            select(Note)
            .where(Note.user_id == user_id, Note.message_id == message_id)
            .order_by(Note.updated_at.desc(), Note.id.desc())
            .limit(1)
        ).first()

    def list_overrides(self, user_id: str) -> list[tuple[str, TriageOverride]]:
        """Return a user's (message_id, override) pairs, most recently updated first."""
        with self._transaction() as session:
            assignments = session.scalars(
                select(Assignment)
                .where(Assignment.user_id == user_id)
                .order_by(Assignment.updated_at.desc(), Assignment.id.desc())
            ).all()
            items = []
            for assignment in assignments:
                note = self._latest_note(session, user_id, assignment.message_id)
                updated_at = assignment.updated_at
                if note is not None and note.updated_at > updated_at:
                    updated_at = note.updated_at
                items.append((
                    assignment.message_id,
                    TriageOverride(
                        done=bool(assignment.done),
                        note=note.body if note is not None else "",
                        tags=_string_list(assignment.tags),
                        updated_at=updated_at,
                    ),
                ))
            return items

    def list_team_inbox(self, user_id: str) -> list[dict]:
        return [
            {
                "emailId": message_id,
                "done": override.done,
                "note": override.note,
                "tags": override.tags,
                "updatedAt": override.updated_at,
            }
            for message_id, override in self.list_overrides(user_id)
        ]

    # --- admin rules ---

    def list_rule_configs(self) -> list[RuleConfig]:
        with self._transaction() as session:
            rows = session.scalars(select(RuleConfigRecord).order_by(RuleConfigRecord.id)).all()
            rules = [
                RuleConfig(
                    id=row.id,
                    name=row.name,
                    description=row.description,
                    matchers=_string_list(row.matchers),
                    priority=row.priority,
                    category=row.category,
                    enabled=bool(row.enabled),
                )
                for row in rows
            ]
        if not rules:
            self._seed_rule_config(DEFAULT_SECURITY_RULE)
            return [DEFAULT_SECURITY_RULE]
        return rules

    def _rule_values(self, rule: RuleConfig) -> dict:
        now = utc_now_iso()
        return {
            "id": rule.id,
            "name": rule.name,
            "description": rule.description,
            "matchers": list(rule.matchers),
            "priority": rule.priority,
            "category": rule.category,
            "enabled": rule.enabled,
            "created_at": now,
            "updated_at": now,
        }

    def _seed_rule_config(self, rule: RuleConfig) -> None:
        with self._transaction() as session:
            session.execute(
                insert(RuleConfigRecord)
                .values(**self._rule_values(rule))
                .on_conflict_do_nothing(index_elements=["id"])
            )

    def create_rule_config(self, rule: RuleConfig) -> RuleConfig:
        with self._transaction() as session:
            session.add(RuleConfigRecord(**self._rule_values(rule)))
        logger.info(f"Rule config created: {rule.id} ({rule.name})")
        return rule

    # --- feature flags ---

    def get_feature_flags(self) -> FeatureFlags:
        with self._transaction() as session:
            session.execute(
                insert(FeatureFlagRecord)
                .values(key=FEATURE_FLAGS_KEY, value=FeatureFlags().to_dict(), updated_at=utc_now_iso())
                .on_conflict_do_nothing(index_elements=["key"])
            )
            value = session.scalars(
                select(FeatureFlagRecord.value).where(FeatureFlagRecord.key == FEATURE_FLAGS_KEY)
            ).one()
        if not isinstance(value, dict):
            return FeatureFlags()
        return FeatureFlags.for_enabled(bool(value.get("aiTriageEnabled")))

    def set_ai_triage_enabled(self, enabled: bool) -> FeatureFlags:
        flags = FeatureFlags.for_enabled(enabled)
        now = utc_now_iso()
        with self._transaction() as session:
            session.execute(
                insert(FeatureFlagRecord)
                .values(key=FEATURE_FLAGS_KEY, value=flags.to_dict(), updated_at=now)
                .on_conflict_do_update(
                    index_elements=["key"], set_={"value": flags.to_dict(), "updated_at": now}
                )
            )
        logger.info(f"AI triage {'enabled (shadow mode)' if enabled else 'disabled'}")
        return flags

    # --- activity ---

    def log_activity(self, event: str, payload: dict | None = None) -> None:
        with self._transaction() as session:
            session.add(ActivityLog(event=event, payload=dict(payload or {}), created_at=utc_now_iso()))

    def list_activity(self, limit: int = 50) -> list[dict]:
        with self._transaction() as session:
            rows = session.scalars(
                select(ActivityLog).order_by(ActivityLog.id.desc()).limit(limit)
            ).all()
            return [
                {"event": row.event, "payload": row.payload, "createdAt": row.created_at}
                for row in rows
            ]
