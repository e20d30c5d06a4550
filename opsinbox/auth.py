"""Gmail OAuth 2.0 web-flow helper."""
import logging
from datetime import datetime, timezone

from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build

from opsinbox.config import ConfigError

logger = logging.getLogger("opsinbox.auth")
SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"


class GoogleOAuth:
    def __init__(self, client_id: str | None, client_secret: str | None, redirect_uri: str | None):
        missing = [
            name for name, value in (
                ("GOOGLE_CLIENT_ID", client_id),
                ("GOOGLE_CLIENT_SECRET", client_secret),
                ("GOOGLE_REDIRECT_URI", redirect_uri),
            ) if not value
        ]
        if missing:
            raise ConfigError(f"{', '.join(missing)} is required")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri

    @classmethod
    def from_config(cls, cfg) -> "GoogleOAuth":
        return cls(cfg.google_client_id, cfg.google_client_secret, cfg.google_redirect_uri)

    def _flow(self) -> Flow:
        client_config = {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [self.redirect_uri],
            }
        }
        # The callback builds a fresh flow, so no PKCE verifier can be carried over.
        return Flow.from_client_config(
            client_config,
            scopes=SCOPES,
            redirect_uri=self.redirect_uri,
            autogenerate_code_verifier=False,
        )

    def authorization_url(self) -> str:
        url, _state = self._flow().authorization_url(access_type="offline", prompt="consent")
        return url

    def exchange_code(self, code: str) -> dict:
        """Trade an authorization code for a token dict."""
        token = self._flow().fetch_token(code=code)
        logger.info("Exchanged OAuth authorization code for tokens")
        return dict(token)

    def credentials(self, tokens: dict) -> Credentials:
        return Credentials(
            token=tokens.get("access_token"),
            refresh_token=tokens.get("refresh_token"),
            token_uri=TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=SCOPES,
            expiry=expiry_from_timestamp(tokens.get("expires_at")),
        )

    def build_gmail_service(self, credentials: Credentials):
        return build("gmail", "v1", credentials=credentials, cache_discovery=False)


def expiry_from_timestamp(expires_at) -> datetime | None:
    """Convert an epoch expires_at into the naive UTC datetime google-auth expects."""
    if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
        return None
    return datetime.fromtimestamp(expires_at, tz=timezone.utc).replace(tzinfo=None)


def timestamp_from_expiry(expiry: datetime | None) -> float | None:
    if expiry is None:
        return None
    return expiry.replace(tzinfo=timezone.utc).timestamp()
