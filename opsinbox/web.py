"""FastAPI backend for OpsInbox: OAuth, message listing, triage, overrides and admin settings."""
import logging
import time

from fastapi import APIRouter, BackgroundTasks, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials

from opsinbox.ai_triage import ClaudeTriage, TriageEngine
from opsinbox.auth import GoogleOAuth, timestamp_from_expiry
from opsinbox.cache import TriageCache
from opsinbox.database import init_db
from opsinbox.gmail_client import GmailClient
from opsinbox.repository import AccountContext, OpsStateRepository, RuleConfig
from opsinbox.token_store import TokenStore, has_credentials, merge_tokens_for_persistence
from opsinbox.triage_rules import PRIORITIES
from opsinbox.utils import log_audit

logger = logging.getLogger("opsinbox.web")

AUTH_ERROR = "Not authenticated with Google OAuth"
NOTE_MAX_LENGTH = 1000
MAX_TAGS = 10

router = APIRouter()


def error_response(status: int, code: str, message: str, details: str | None = None) -> JSONResponse:
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status, content={"message": "error", "error": error})


def parse_limit(raw: str | None, fallback: int = 10, minimum: int = 1, maximum: int = 100) -> tuple[int, str | None]:
    """Parse the limit query parameter; return (value, error message or None)."""
    if raw is None:
        return fallback, None
    try:
        parsed = float(raw)
    except ValueError:
        parsed = None
    if parsed is None or not parsed.is_integer() or parsed < minimum or parsed > maximum:
        return fallback, f"limit must be an integer between {minimum} and {maximum}"
    return int(parsed), None


def _state(request: Request):
    return request.app.state


def _audit(request: Request, event: str, fields: dict | None = None) -> None:
    log_audit(event, fields, repository=_state(request).repository)


def _active_context(request: Request) -> AccountContext | None:
    state = _state(request)
    if not has_credentials(state.credentials):
        return None
    return state.repository.get_active_context()


def _require_auth(request: Request) -> tuple[AccountContext | None, JSONResponse | None]:
    """Return (context, None) for a linked Google account, else (None, 401 response)."""
    context = _active_context(request)
    if context is None:
        return None, error_response(401, "UNAUTHORIZED", AUTH_ERROR)
    return context, None


def _gmail(request: Request) -> GmailClient:
    state = _state(request)
    return state.gmail_client_factory(state.credentials)


def _sync_refreshed_tokens(request: Request, gmail: GmailClient) -> None:
    """Persist an access token that google-auth refreshed during a Gmail call."""
    creds = getattr(gmail, "credentials", None)
    if not isinstance(creds, Credentials) or not creds.token:
        return
    state = _state(request)
    if creds.token == (state.credentials or {}).get("access_token"):
        return
    refreshed = {"access_token": creds.token}
    expires_at = timestamp_from_expiry(creds.expiry)
    if expires_at is not None:
        refreshed["expires_at"] = expires_at
    merged = merge_tokens_for_persistence(
        next_tokens=refreshed,
        current_tokens=state.credentials,
        persisted_tokens=state.token_store.load(),
    )
    state.credentials = merged
    state.token_store.save(merged)
    logger.info("Saved refreshed Google access token")


def _provider_error(e: Exception, fallback_message: str, not_found: bool = False) -> JSONResponse:
    status = getattr(e, "status", None)
    if isinstance(e, RefreshError) or status == 401:
        return error_response(401, "UNAUTHORIZED", AUTH_ERROR)
    if not_found and status == 404:
        return error_response(404, "NOT_FOUND", "Message not found")
    logger.error(f"{fallback_message}: {e}")
    return error_response(500, "INTERNAL_ERROR", str(e) or fallback_message)


def _paging_params(request: Request) -> tuple[int, str | None, JSONResponse | None]:
    limit, limit_error = parse_limit(request.query_params.get("limit"))
    if limit_error:
        return limit, None, error_response(400, "BAD_REQUEST", "Invalid query parameter", limit_error)
    page_token = request.query_params.get("pageToken") or None
    return limit, page_token, None


async def _json_body(request: Request):
    """Return (body, error_response); body is None when the JSON is malformed."""
    try:
        return await request.json(), None
    except ValueError:
        return None, error_response(400, "BAD_REQUEST", "Invalid JSON body")


# --- status and auth ---

@router.get("/")
async def root():
    return {"status": "API running"}


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.get("/auth/google")
def auth_google(request: Request):
    return RedirectResponse(url=_state(request).oauth.authorization_url(), status_code=302)


@router.get("/oauth2callback")
def oauth_callback(request: Request):
    state = _state(request)
    code = request.query_params.get("code")
    if not code:
        return error_response(400, "BAD_REQUEST", "Missing code")
    try:
        tokens = state.oauth.exchange_code(code)
        merged = merge_tokens_for_persistence(
            next_tokens=tokens,
            current_tokens=state.credentials,
            persisted_tokens=state.token_store.load(),
        )
        state.credentials = merged
        state.token_store.save(merged)
        state.cache.clear()
        gmail = _gmail(request)
        account_email = gmail.get_profile_email()
        if not account_email:
            _audit(request, "auth_oauth_failed", {"reason": "missing_account_email"})
            return error_response(500, "INTERNAL_ERROR", "Google account email not available")
        context = state.repository.link_google_account(account_email)
        emails = gmail.list_email_metas(10)
    except Exception as e:
        logger.exception("OAuth callback failed")
        _audit(request, "auth_oauth_failed", {"reason": str(e) or "unknown"})
        return error_response(500, "INTERNAL_ERROR", str(e) or "OAuth failed")

    identity = {
        "userId": context.user_id,
        "workspaceId": context.workspace_id,
        "inboxAccountId": context.inbox_account_id,
    }
    redirect_url = state.config.frontend_redirect_url
    if redirect_url:
        _audit(request, "auth_oauth_success", {"redirectedToFrontend": True, **identity})
        return RedirectResponse(url=f"{redirect_url}?oauth=success", status_code=302)
    _audit(request, "auth_oauth_success", {"redirectedToFrontend": False, **identity})
    return {"message": "OAuth successful", **identity, "emails": [e.to_dict() for e in emails]}


@router.get("/auth/status")
def auth_status(request: Request):
    state = _state(request)
    creds = state.credentials or {}
    context = _active_context(request)
    return {
        "authenticated": context is not None,
        "hasRefreshToken": bool(creds.get("refresh_token")),
        "tokenFilePresent": state.token_store.exists(),
        "userId": context.user_id if context else None,
        "workspaceId": context.workspace_id if context else None,
        "inboxAccountId": context.inbox_account_id if context else None,
        "user": {"id": context.user_id, "email": context.email} if context else None,
    }


@router.post("/auth/logout")
async def auth_logout(request: Request):
    state = _state(request)
    state.credentials = {}
    state.token_store.clear()
    state.cache.clear()
    _audit(request, "auth_logout")
    return {"message": "logged_out"}


# --- mail ---

@router.get("/gmail/messages")
def list_messages(request: Request):
    limit, page_token, bad_request = _paging_params(request)
    if bad_request:
        return bad_request
    _context, unauthorized = _require_auth(request)
    if unauthorized:
        return unauthorized
    gmail = _gmail(request)
    try:
        page = gmail.list_email_metas_page(limit, page_token)
    except Exception as e:
        return _provider_error(e, "Failed to list messages")
    finally:
        _sync_refreshed_tokens(request, gmail)
    return {
        "message": "ok",
        "items": [email.to_dict() for email in page.items],
        "nextPageToken": page.next_page_token,
    }


@router.get("/gmail/messages/{message_id}")
def get_message(request: Request, message_id: str):
    _context, unauthorized = _require_auth(request)
    if unauthorized:
        return unauthorized
    if not message_id.strip():
        return error_response(400, "BAD_REQUEST", "Missing message id")
    gmail = _gmail(request)
    try:
        detail = gmail.get_email_detail(message_id)
    except Exception as e:
        return _provider_error(e, "Failed to fetch message detail", not_found=True)
    finally:
        _sync_refreshed_tokens(request, gmail)
    return {"message": "ok", "item": detail.to_dict()}


# --- triage ---

def run_shadow_triage(engine: TriageEngine, repository, batch) -> None:
    """Compare AI verdicts with the served rules results once the response is out.

    batch holds (message_id, email, served result) tuples.
    """
    for message_id, email, served in batch:
        try:
            shadow = engine.shadow_classify(email)
        except Exception:
            logger.exception(f"Shadow triage failed for {message_id}")
            continue
        log_audit("ai_shadow_triage", {
            "messageId": message_id,
            "rulesCategory": served.category,
            "aiCategory": shadow.category,
            "agrees": shadow.category == served.category and shadow.priority == served.priority,
        }, repository=repository)


@router.get("/triage")
def triage(request: Request, background_tasks: BackgroundTasks):
    state = _state(request)
    limit, page_token, bad_request = _paging_params(request)
    if bad_request:
        return bad_request
    context, unauthorized = _require_auth(request)
    if unauthorized:
        return unauthorized

    cached = state.cache.get(limit, page_token)
    if cached is not None:
        return {"message": "ok", **cached}

    gmail = _gmail(request)
    try:
        page = gmail.list_email_metas_page(limit, page_token)
    except Exception as e:
        return _provider_error(e, "Triage failed")
    finally:
        _sync_refreshed_tokens(request, gmail)

    repository = state.repository
    engine = state.triage_engine
    run_shadow = engine.shadow_enabled(repository.get_feature_flags())
    overrides = dict(repository.list_overrides(context.user_id))
    items = []
    shadow_batch = []
    for email in page.items:
        triage_input = email.to_triage_input()
        result = engine.classify(triage_input)
        repository.save_message_meta(email)
        repository.save_triage_result(email.id, result)
        if run_shadow:
            shadow_batch.append((email.id, triage_input, result))
        item = {"email": email.to_dict(), "triage": result.to_dict()}
        override = overrides.get(email.id)
        if override is not None:
            item["override"] = override.to_dict()
        items.append(item)

    if shadow_batch:
        background_tasks.add_task(run_shadow_triage, engine, repository, shadow_batch)
    payload = {"items": items, "nextPageToken": page.next_page_token}
    state.cache.set(limit, page_token, payload)
    return {"message": "ok", **payload}


@router.get("/triage/overrides")
def list_overrides(request: Request):
    context, unauthorized = _require_auth(request)
    if unauthorized:
        return unauthorized
    items = [
        {"id": message_id, "override": override.to_dict()}
        for message_id, override in _state(request).repository.list_overrides(context.user_id)
    ]
    return {"message": "ok", "items": items}


@router.put("/triage/overrides/{message_id}")
async def put_override(request: Request, message_id: str):
    context, unauthorized = _require_auth(request)
    if unauthorized:
        return unauthorized
    if not message_id.strip():
        return error_response(400, "BAD_REQUEST", "Missing email id")
    body, bad_json = await _json_body(request)
    if bad_json:
        return bad_json
    if not isinstance(body, dict):
        return error_response(400, "BAD_REQUEST", "Invalid override payload")

    done = body.get("done") if isinstance(body.get("done"), bool) else False
    note = body.get("note")[:NOTE_MAX_LENGTH] if isinstance(body.get("note"), str) else ""
    raw_tags = body.get("tags") if isinstance(body.get("tags"), list) else []
    tags = [tag.strip() for tag in raw_tags if isinstance(tag, str) and tag.strip()][:MAX_TAGS]

    state = _state(request)
    override = state.repository.upsert_override(
        context.user_id, message_id, done=done, note=note, tags=tags
    )
    state.cache.clear()
    return {"message": "ok", "id": message_id, "override": override.to_dict()}


@router.get("/team/inbox")
def team_inbox(request: Request):
    context, unauthorized = _require_auth(request)
    if unauthorized:
        return unauthorized
    return {"message": "ok", "items": _state(request).repository.list_team_inbox(context.user_id)}


# --- admin ---

@router.get("/admin/rules")
async def list_rules(request: Request):
    _context, unauthorized = _require_auth(request)
    if unauthorized:
        return unauthorized
    rules = _state(request).repository.list_rule_configs()
    return {"message": "ok", "items": [rule.to_dict() for rule in rules]}


def _clean_str(value) -> str:
    return value.strip() if isinstance(value, str) else ""


@router.post("/admin/rules")
async def create_rule(request: Request):
    _context, unauthorized = _require_auth(request)
    if unauthorized:
        return unauthorized
    body, bad_json = await _json_body(request)
    if bad_json:
        return bad_json
    if not isinstance(body, dict):
        return error_response(400, "BAD_REQUEST", "Invalid rule payload")

    name = _clean_str(body.get("name"))
    description = _clean_str(body.get("description"))
    category = _clean_str(body.get("category"))
    priority = body.get("priority")
    raw_matchers = body.get("matchers") if isinstance(body.get("matchers"), list) else []
    matchers = [m.strip() for m in raw_matchers if isinstance(m, str) and m.strip()]
    if not name or not description or not category or not priority or not matchers:
        return error_response(
            400,
            "BAD_REQUEST",
            "Rule requires name, description, priority, category, and at least one matcher",
        )
    if priority not in PRIORITIES:
        return error_response(400, "BAD_REQUEST", "Invalid priority")

    rule = RuleConfig(
        id=f"rule-{int(time.time() * 1000)}",
        name=name,
        description=description,
        matchers=matchers,
        priority=priority,
        category=category,
        enabled=body.get("enabled") is not False,
    )
    _state(request).repository.create_rule_config(rule)
    return JSONResponse(status_code=201, content={"message": "ok", "item": rule.to_dict()})


@router.get("/feature-flags")
async def get_feature_flags(request: Request):
    return {"message": "ok", "flags": _state(request).repository.get_feature_flags().to_dict()}


@router.patch("/feature-flags/ai")
async def set_ai_flag(request: Request):
    body, bad_json = await _json_body(request)
    if bad_json:
        return bad_json
    if not isinstance(body, dict) or not isinstance(body.get("aiTriageEnabled"), bool):
        return error_response(400, "BAD_REQUEST", "aiTriageEnabled boolean is required")
    flags = _state(request).repository.set_ai_triage_enabled(body["aiTriageEnabled"])
    _audit(request, "feature_flag_ai_updated", {"aiTriageEnabled": flags.ai_triage_enabled})
    return {"message": "ok", "flags": flags.to_dict()}


def create_app(
    cfg,
    repository: OpsStateRepository | None = None,
    token_store: TokenStore | None = None,
    oauth=None,
    gmail_client_factory=None,
    triage_engine: TriageEngine | None = None,
    cache: TriageCache | None = None,
) -> FastAPI:
    """Build the API with its collaborators; any of them may be injected."""
    app = FastAPI(title="OpsInbox API", version="1.0.0")

    if repository is None:
        repository = OpsStateRepository(init_db(cfg.db_path))
    if token_store is None:
        token_store = TokenStore(cfg.token_path, cfg.token_encryption_key)
    if oauth is None:
        oauth = GoogleOAuth.from_config(cfg)
    if gmail_client_factory is None:
        def gmail_client_factory(tokens):
            creds = oauth.credentials(tokens)
            return GmailClient(oauth.build_gmail_service(creds), credentials=creds)
    if triage_engine is None:
        triage_engine = TriageEngine(
            ai=ClaudeTriage(model=cfg.claude_model, timeout=cfg.ai_triage_timeout)
        )
    if cache is None:
        cache = TriageCache(ttl_seconds=cfg.triage_cache_ttl)

    app.state.config = cfg
    app.state.repository = repository
    app.state.token_store = token_store
    app.state.oauth = oauth
    app.state.gmail_client_factory = gmail_client_factory
    app.state.triage_engine = triage_engine
    app.state.cache = cache
    app.state.credentials = token_store.load() or {}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
        return error_response(500, "INTERNAL_ERROR", "Internal server error")

    app.add_exception_handler(Exception, handle_unexpected_error)

    @app.middleware("http")
    async def audit_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        path = request.url.path
        if request.url.query:
            path = f"{path}?{request.url.query}"
        log_audit("http_request", {
            "method": request.method,
            "path": path,
            "status": response.status_code,
            "durationMs": round((time.perf_counter() - started) * 1000),
        }, repository=repository)
        return response

    app.include_router(router)
    return app
