"""Gmail client: lists message metadata pages and reads single messages."""
import base64
import logging
from dataclasses import dataclass, field

from googleapiclient.errors import HttpError

from opsinbox.retry import PermanentError, TransientError, with_retry
from opsinbox.triage_rules import EmailForTriage

logger = logging.getLogger("opsinbox.gmail")

METADATA_HEADERS = ["Subject", "From", "Date"]
TRANSIENT_STATUSES = {429, 500, 502, 503, 504}


class GmailApiError(PermanentError):
    """Gmail API call failed with a non-retryable HTTP status."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class GmailTransientError(TransientError):
    """Gmail API call failed with a retryable HTTP status."""

    def __init__(self, status: int, message: str, retry_after: float | None = None):
        super().__init__(message, retry_after=retry_after)
        self.status = status


@dataclass
class EmailMeta:
    id: str
    thread_id: str
    sender: str
    subject: str
    snippet: str
    date: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "threadId": self.thread_id,
            "snippet": self.snippet,
            "subject": self.subject,
            "from": self.sender,
            "date": self.date,
        }

    def to_triage_input(self) -> EmailForTriage:
        return EmailForTriage(
            sender=self.sender,
            subject=self.subject,
            snippet=self.snippet,
            date=self.date,
        )


@dataclass
class EmailPage:
    items: list[EmailMeta]
    next_page_token: str | None = None


@dataclass
class EmailDetail:
    id: str
    thread_id: str
    snippet: str
    headers: dict[str, str] = field(default_factory=dict)
    plain_text_body: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "threadId": self.thread_id,
            "snippet": self.snippet,
            "headers": self.headers,
            "plainTextBody": self.plain_text_body,
        }


def _retry_after(error: HttpError) -> float | None:
    raw = error.resp.get("retry-after") if hasattr(error.resp, "get") else None
    try:
        return float(raw) if raw else None
    except (TypeError, ValueError):
        return None


def _translate_http_error(error: HttpError) -> Exception:
    status = int(getattr(error.resp, "status", 0) or 0)
    message = f"Gmail API error {status}: {error}"
    if status in TRANSIENT_STATUSES:
        return GmailTransientError(status, message, retry_after=_retry_after(error))
    return GmailApiError(status, message)


@with_retry(max_attempts=3, base_delay=1, max_delay=30)
def execute(request):
    """Execute a Gmail API request, retrying rate limits and server errors."""
    try:
        return request.execute()
    except HttpError as e:
        raise _translate_http_error(e) from e


def header_getter(headers: list[dict]):
    """Return a case-insensitive lookup over a Gmail header list; missing names yield ''."""
    def get(name: str) -> str:
        wanted = name.lower()
        for header in headers:
            if (header.get("name") or "").lower() == wanted:
                return header.get("value") or ""
        return ""
    return get


def decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _find_text_plain_part(parts: list[dict]) -> str | None:
    for part in parts:
        if part.get("mimeType") == "text/plain" and part.get("body", {}).get("data"):
            return part["body"]["data"]
        if part.get("parts"):
            nested = _find_text_plain_part(part["parts"])
            if nested:
                return nested
    return None


def extract_plain_text_body(payload: dict | None) -> str | None:
    if not payload:
        return None
    if payload.get("body", {}).get("data"):
        return decode_base64url(payload["body"]["data"])
    data = _find_text_plain_part(payload.get("parts") or [])
    if not data:
        return None
    return decode_base64url(data)


class GmailClient:
    def __init__(self, gmail_service, credentials=None):
        self.service = gmail_service
        # Refreshed in place by google-auth when the access token expires.
        self.credentials = credentials

    def get_profile_email(self) -> str | None:
        profile = execute(self.service.users().getProfile(userId="me"))
        return profile.get("emailAddress") or None

    def list_email_metas_page(self, limit: int = 10, page_token: str | None = None) -> EmailPage:
        params = {"userId": "me", "maxResults": limit}
        if page_token:
            params["pageToken"] = page_token
        listing = execute(self.service.users().messages().list(**params))
        refs = listing.get("messages", [])
        items = [self._get_meta(ref["id"]) for ref in refs]
        logger.info(f"Listed {len(items)} message(s) (page_token={page_token or '-'})")
        return EmailPage(items=items, next_page_token=listing.get("nextPageToken"))

    def list_email_metas(self, limit: int = 10) -> list[EmailMeta]:
        return self.list_email_metas_page(limit).items

    def get_email_detail(self, message_id: str) -> EmailDetail:
        msg = execute(
            self.service.users().messages().get(userId="me", id=message_id, format="full")
        )
        payload = msg.get("payload") or {}
        headers = {
            h["name"]: h["value"]
            for h in payload.get("headers", [])
            if h.get("name") and h.get("value")
        }
        return EmailDetail(
            id=msg.get("id") or message_id,
            thread_id=msg.get("threadId") or "",
            snippet=msg.get("snippet") or "",
            headers=headers,
            plain_text_body=extract_plain_text_body(payload),
        )

    def _get_meta(self, message_id: str) -> EmailMeta:
        msg = execute(
            self.service.users().messages().get(
                userId="me",
                id=message_id,
                format="metadata",
                metadataHeaders=METADATA_HEADERS,
            )
        )
        get_header = header_getter((msg.get("payload") or {}).get("headers", []))
        return EmailMeta(
            id=msg.get("id") or "",
            thread_id=msg.get("threadId") or "",
            sender=get_header("From"),
            subject=get_header("Subject"),
            snippet=msg.get("snippet") or "",
            date=get_header("Date"),
        )
