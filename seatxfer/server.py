from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import httpx
import orjson
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import IntegrityError
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import config, export
from .auth import (
    admin_denial, authenticate, generate_unique_email, hash_password,
    is_admin_email, is_reserved_username,
)
from .helpers import ct_equal, is_valid_email, parse_iso, to_iso
from .infra.sql import describe_url, make_async_engine, wait_for_database
from .infra.timings import install_access_log, snapshot, timeit
from .mail.scraper import EmailScraper
from .mail.source import MailSourceError, NotAuthenticated, build_source
from .model import Base, Storage, TicketError, User
from .model.processed import BACKEND as PROCESSED_BACKEND, new_store

logger = logging.getLogger(__name__)

templates = Jinja2Templates(
    directory=str(Path(__file__).resolve().parent / "templates")
)

engine, SessionAsync, gated = make_async_engine(config.DATABASE_URL)

MONITOR_PAGE = "/admin/email-monitor"
SIGNATURE_HEADER = "x-seatxfer-signature"


# ----------------------------
# Storage factories
# ----------------------------
@asynccontextmanager
async def storage_scope():
    async with SessionAsync() as session:
        yield Storage(session, gated)


@asynccontextmanager
async def processed_scope():
    if PROCESSED_BACKEND == "pg":
        async with SessionAsync() as session:
            yield new_store(db=session, gated=gated)
    else:
        yield new_store(r=app.state.redis, ttl_days=config.PROCESSED_TTL_DAYS)


async def get_storage() -> Storage:
    async with storage_scope() as storage:
        yield storage


# ---
# startup / shutdown
# ---
def _say_hello() -> None:
    P = 'PostgreSQL' if PROCESSED_BACKEND == 'pg' else 'Redis'
    logger.info('=' * 50)
    logger.info('SeatXfer is starting up...')
    logger.info('   - Database: %s', describe_url(config.DATABASE_URL))
    logger.info('   - Processed-message Backend: %s', P)
    logger.info('=' * 50)


async def startup(app: FastAPI) -> None:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _say_hello()

    await wait_for_database(
        engine, config.DB_CONNECT_RETRIES, config.DB_CONNECT_RETRY_DELAY
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(max_connections=32, max_keepalive_connections=8),
    )

    app.state.redis = None
    if PROCESSED_BACKEND != 'pg':
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )

    source = build_source()
    app.state.scraper = EmailScraper(source, storage_scope, processed_scope)
    if source is not None and config.EMAIL_MONITOR_AUTOSTART:
        if source.is_authenticated():
            app.state.scraper.start(config.EMAIL_POLL_INTERVAL)
        else:
            logger.warning("mail monitor autostart skipped: %s needs "
                           "authorization", source.name)


async def shutdown(app: FastAPI) -> None:
    scraper = getattr(app.state, "scraper", None)
    if scraper is not None:
        await scraper.stop()

    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None

    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None

    await engine.dispose()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup(app)
    try:
        yield
    finally:
        await shutdown(app)


app = FastAPI(
    title="SeatXfer",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)
app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)
install_access_log(app)


# ----------------------------
# Helpers
# ----------------------------
async def current_user(
    request: Request, storage: Storage = Depends(get_storage)
) -> User:
    user_id = request.session.get("user_id")
    if user_id is None:
        raise HTTPException(401, detail="Not authenticated")
    user = await storage.get_user(user_id)
    if user is None:
        request.session.clear()
        raise HTTPException(401, detail="Not authenticated")
    return user


async def require_admin(user: User = Depends(current_user)) -> User:
    denial = admin_denial(user)
    if denial:
        raise HTTPException(403, detail=denial)
    return user


def get_scraper(request: Request) -> EmailScraper:
    return request.app.state.scraper


def require_source(scraper: EmailScraper = Depends(get_scraper)
                   ) -> EmailScraper:
    if scraper.source is None:
        raise HTTPException(503, detail="No mail source configured")
    return scraper


def _oauth_url(request: Request, scraper: EmailScraper) -> Optional[str]:
    # state ties the Google callback to this browser session
    state = secrets.token_urlsafe(16)
    request.session["oauth_state"] = state
    return scraper.source.auth_url(state)


def _safe_next(dest: Optional[str]) -> str:
    if not dest or not dest.startswith("/") or dest.startswith("//"):
        return MONITOR_PAGE
    return dest


def verify_webhook_signature(payload: bytes, signature: Optional[str]) -> bool:
    mac = hmac.new(config.EMAIL_WEBHOOK_SECRET.encode(), payload,
                   hashlib.sha256).digest()
    expected = base64.b64encode(mac).decode()
    return ct_equal(signature or "", expected)


WEBHOOK_TEXT_FIELDS = ("to", "from", "subject", "text", "html",
                       "messageId", "date")
WEBHOOK_OBJECT_FIELDS = ("headers", "parsed")


def webhook_payload_problem(payload: dict) -> Optional[str]:
    """Why a webhook payload has the wrong shape, or None."""
    for key in WEBHOOK_TEXT_FIELDS:
        if payload.get(key) is not None and not isinstance(payload[key], str):
            return f"{key} must be a string"
    for key in WEBHOOK_OBJECT_FIELDS:
        if payload.get(key) is not None and not isinstance(payload[key], dict):
            return f"{key} must be an object"
    return None


def _int_field(payload: dict, key: str, default: int = 0) -> int:
    value = payload.get(key)
    if value is None or value == "":
        return default
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise HTTPException(400, detail=f"{key} must be an integer")
    if n < 0:
        raise HTTPException(400, detail=f"{key} must not be negative")
    return n


# ----------------------------
# API: auth
# ----------------------------
@app.post("/api/register", status_code=201)
async def register(payload: dict, request: Request,
                   storage: Storage = Depends(get_storage)):
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    email = (payload.get("email") or "").strip().lower()

    if len(username) < 3:
        raise HTTPException(
            400, detail="Username must be at least 3 characters"
        )
    if len(password) < 6:
        raise HTTPException(
            400, detail="Password must be at least 6 characters"
        )
    if not is_valid_email(email):
        raise HTTPException(400, detail="A valid email address is required")

    # the admin mailbox and name belong to the bypass login
    if is_admin_email(email) or await storage.get_user_by_email(email):
        raise HTTPException(400, detail="Email already registered")
    if (is_reserved_username(username)
            or await storage.get_user_by_username(username)):
        raise HTTPException(400, detail="Username already exists")

    async with timeit("auth.hash"):
        hashed = hash_password(password)
    try:
        user = await storage.create_user(
            username=username,
            password=hashed,
            email=email,
            unique_email=generate_unique_email(username),
        )
    except IntegrityError:
        # lost a race with a concurrent registration
        raise HTTPException(400, detail="Username or email already exists")
    request.session["user_id"] = user.id
    return user.to_dict()


@app.post("/api/login")
async def login(payload: dict, request: Request,
                storage: Storage = Depends(get_storage)):
    email = payload.get("email") or ""
    password = payload.get("password") or ""
    async with timeit("auth.login"):
        user = await authenticate(storage, email, password)
    if user is None:
        raise HTTPException(401, detail="Invalid credentials")
    request.session["user_id"] = user.id
    return user.to_dict()


@app.post("/api/logout")
async def logout(request: Request):
    request.session.clear()
    return {"ok": True}


@app.get("/api/user")
async def get_user(user: User = Depends(current_user)):
    return user.to_dict()


@app.get("/api/profile")
async def get_profile(user: User = Depends(current_user)):
    profile = user.to_dict()
    profile["ticketSubmissionEmail"] = user.unique_email
    return profile


@app.post("/api/reset-password")
async def request_password_reset(payload: dict, request: Request,
                                 storage: Storage = Depends(get_storage)):
    email = (payload.get("email") or "").strip().lower()
    if not is_valid_email(email):
        raise HTTPException(400, detail="A valid email address is required")
    user = await storage.get_user_by_email(email)
    if user is None:
        raise HTTPException(404, detail="User not found")

    row = await storage.create_reset_token(
        user.id, config.RESET_TOKEN_TTL_HOURS
    )
    expires_at = to_iso(row.expires_at)

    if config.RESET_NOTIFY_URL:
        client_http: httpx.AsyncClient = request.app.state.http
        try:
            await client_http.post(config.RESET_NOTIFY_URL, json={
                "email": user.email,
                "token": row.token,
                "expiresAt": expires_at,
            })
        except httpx.HTTPError as e:
            # the token stays valid; the user can ask again
            logger.warning("reset notification to %s failed: %s",
                           config.RESET_NOTIFY_URL, e)

    body = {
        "message": "Password reset requested",
        "expiresAt": expires_at,
    }
    if config.RESET_TOKEN_IN_RESPONSE:
        body["token"] = row.token
    return body


@app.post("/api/reset-password/{token}")
async def reset_password(token: str, payload: dict,
                         storage: Storage = Depends(get_storage)):
    password = payload.get("newPassword") or ""
    if len(password) < 6:
        raise HTTPException(
            400, detail="Password must be at least 6 characters"
        )
    async with timeit("auth.hash"):
        hashed = hash_password(password)
    if not await storage.consume_reset_token(token, hashed):
        raise HTTPException(400, detail="Invalid or expired reset token")
    return {"message": "Password has been reset"}


# ----------------------------
# API: tickets
# ----------------------------
@app.get("/api/tickets")
async def list_tickets(user: User = Depends(current_user),
                       storage: Storage = Depends(get_storage)):
    return [t.to_dict() for t in await storage.get_tickets(user.id)]


@app.post("/api/tickets", status_code=201)
async def create_ticket(payload: dict, user: User = Depends(current_user),
                        storage: Storage = Depends(get_storage)):
    event_name = (payload.get("eventName") or "").strip()
    if not event_name:
        raise HTTPException(400, detail="eventName is required")
    try:
        event_date = parse_iso(payload.get("eventDate"))
    except ValueError:
        raise HTTPException(400, detail="eventDate must be an ISO-8601 date")

    ticket = await storage.create_ticket(user.id, {
        "event_name": event_name,
        "event_date": event_date,
        "venue": payload.get("venue"),
        "section": payload.get("section"),
        "row": payload.get("row"),
        "seat": payload.get("seat"),
        "asking_price": _int_field(payload, "askingPrice"),
    })
    return ticket.to_dict()


@app.get("/api/pending-tickets")
async def list_pending(status: Optional[str] = None,
                       user: User = Depends(current_user),
                       storage: Storage = Depends(get_storage)):
    rows = await storage.get_pending_tickets(user.id, status=status)
    return [p.to_dict() for p in rows]


@app.post("/api/pending-tickets/{pending_id}/confirm")
async def confirm_pending(pending_id: int, payload: Optional[dict] = None,
                          user: User = Depends(current_user),
                          storage: Storage = Depends(get_storage)):
    asking_price = _int_field(payload or {}, "askingPrice")
    try:
        async with timeit("db.confirm_pending"):
            ticket = await storage.confirm_pending_ticket(
                pending_id, user.id, asking_price
            )
    except TicketError as e:
        raise HTTPException(e.status_code, detail=e.message)
    return ticket.to_dict()


@app.get("/api/payments")
async def list_payments(user: User = Depends(current_user),
                        storage: Storage = Depends(get_storage)):
    return [p.to_dict() for p in await storage.get_payments(user.id)]


# ----------------------------
# Inbound mail webhook
# ----------------------------
@app.post("/api/email-webhook", status_code=201)
async def email_webhook(request: Request,
                        scraper: EmailScraper = Depends(get_scraper)):
    body = await request.body()
    if config.EMAIL_WEBHOOK_SECRET and not verify_webhook_signature(
        body, request.headers.get(SIGNATURE_HEADER)
    ):
        raise HTTPException(400, detail="invalid signature")

    try:
        payload = orjson.loads(body)
    except orjson.JSONDecodeError:
        raise HTTPException(400, detail="invalid JSON body")
    if not isinstance(payload, dict) or not payload.get("to"):
        raise HTTPException(400, detail="missing recipient (to)")
    problem = webhook_payload_problem(payload)
    if problem:
        raise HTTPException(400, detail=problem)

    try:
        async with timeit("mail.webhook"):
            rows = await scraper.ingest_webhook(payload)
    except LookupError as e:
        raise HTTPException(404, detail=str(e))
    return {"created": len(rows), "items": [r.to_dict() for r in rows]}


# ----------------------------
# Admin API: exports
# ----------------------------
@app.get("/api/admin/export/tickets")
async def export_tickets(_: User = Depends(require_admin),
                         storage: Storage = Depends(get_storage)):
    return export.csv_response("tickets", await storage.get_all_tickets())


@app.get("/api/admin/export/users")
async def export_users(_: User = Depends(require_admin),
                       storage: Storage = Depends(get_storage)):
    return export.csv_response("users", await storage.get_all_users())


@app.get("/api/admin/export/sales")
async def export_sales(_: User = Depends(require_admin),
                       storage: Storage = Depends(get_storage)):
    sales = export.with_commission(await storage.get_all_sales())
    return export.csv_response("sales", sales)


# ----------------------------
# Admin API: mail monitor
# ----------------------------
@app.get("/api/admin/gmail/setup")
async def gmail_setup(request: Request, _: User = Depends(require_admin),
                      scraper: EmailScraper = Depends(require_source)):
    if scraper.source.is_authenticated():
        return {"isAuthenticated": True, "authUrl": None}
    url = _oauth_url(request, scraper)
    if url is None:
        raise HTTPException(400, detail="mail source has no OAuth flow")
    return {"isAuthenticated": False, "authUrl": url}


@app.get("/api/gmail/callback")
async def gmail_callback(request: Request, code: Optional[str] = None,
                         state: Optional[str] = None,
                         scraper: EmailScraper = Depends(require_source)):
    expected = request.session.pop("oauth_state", None)
    if not code:
        raise HTTPException(400, detail="missing authorization code")
    if not expected or not ct_equal(state or "", expected):
        raise HTTPException(400, detail="invalid OAuth state")
    try:
        await scraper.source.handle_callback(code)
    except MailSourceError as e:
        logger.error("OAuth callback failed: %s", e)
        raise HTTPException(502, detail=str(e))
    return RedirectResponse(url=MONITOR_PAGE, status_code=HTTP_303_SEE_OTHER)


@app.post("/api/admin/email/start-monitoring")
async def start_monitoring(request: Request, _: User = Depends(require_admin),
                           scraper: EmailScraper = Depends(require_source)):
    try:
        scraper.start(config.EMAIL_POLL_INTERVAL)
    except NotAuthenticated:
        return ORJSONResponse(
            status_code=401,
            content={
                "detail": "Mail source needs authorization",
                "authUrl": _oauth_url(request, scraper),
            },
        )
    return {"isMonitoring": scraper.is_monitoring,
            "interval": config.EMAIL_POLL_INTERVAL}


@app.post("/api/admin/email/stop-monitoring")
async def stop_monitoring(_: User = Depends(require_admin),
                          scraper: EmailScraper = Depends(require_source)):
    await scraper.stop()
    return {"isMonitoring": scraper.is_monitoring}


@app.post("/api/admin/email/scrape-now")
async def scrape_now(request: Request, _: User = Depends(require_admin),
                     scraper: EmailScraper = Depends(require_source)):
    try:
        result = await scraper.scrape_once()
    except NotAuthenticated:
        return ORJSONResponse(
            status_code=401,
            content={
                "detail": "Mail source needs authorization",
                "authUrl": _oauth_url(request, scraper),
            },
        )
    except MailSourceError as e:
        raise HTTPException(502, detail=str(e))
    return {**result.to_dict(), "lastChecked": to_iso(scraper.last_checked)}


@app.get("/api/admin/email/status")
async def email_status(request: Request, limit: int = 10,
                       _: User = Depends(require_admin),
                       scraper: EmailScraper = Depends(get_scraper)):
    source = scraper.source
    status = {
        "isConnected": source is not None,
        "isAuthenticated": bool(source and source.is_authenticated()),
        "authUrl": None,
        "isMonitoring": scraper.is_monitoring,
        "lastChecked": to_iso(scraper.last_checked),
        "lastResult": (scraper.last_result.to_dict()
                       if scraper.last_result else None),
        "source": source.name if source else None,
        "recentEmails": [],
        "timings": snapshot(),
    }
    if source is None:
        return status
    if not status["isAuthenticated"]:
        status["authUrl"] = _oauth_url(request, scraper)
        return status
    try:
        status["recentEmails"] = await scraper.recent_emails(
            max(1, min(limit, 50))
        )
    except MailSourceError as e:
        logger.warning("could not list recent mail: %s", e)
        status["error"] = str(e)
    return status


# ----------------------------
# Admin pages
# ----------------------------
@app.get("/admin/login", response_class=HTMLResponse)
async def admin_login_get(request: Request, next: str | None = MONITOR_PAGE):
    return templates.TemplateResponse(
        request, "login.html", {"next": _safe_next(next), "error": None}
    )


@app.post("/admin/login", response_class=HTMLResponse)
async def admin_login_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    next: str = Form(MONITOR_PAGE),
    storage: Storage = Depends(get_storage),
):
    user = await authenticate(storage, email, password)
    error, status_code = None, 200
    if user is None:
        error, status_code = "Invalid credentials.", 401
    else:
        error = admin_denial(user)
        status_code = 403 if error else 200
    if error is None:
        request.session["user_id"] = user.id
        return RedirectResponse(url=_safe_next(next),
                                status_code=HTTP_303_SEE_OTHER)
    return templates.TemplateResponse(
        request, "login.html",
        {"next": _safe_next(next), "error": error},
        status_code=status_code,
    )


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/admin/login",
                            status_code=HTTP_303_SEE_OTHER)


@app.get("/admin/email-monitor", response_class=HTMLResponse)
async def email_monitor_page(request: Request,
                             storage: Storage = Depends(get_storage),
                             scraper: EmailScraper = Depends(get_scraper)):
    user_id = request.session.get("user_id")
    user = await storage.get_user(user_id) if user_id is not None else None
    if user is None or admin_denial(user):
        return RedirectResponse(
            url=f"/admin/login?next={MONITOR_PAGE}",
            status_code=307
        )
    return templates.TemplateResponse(
        request, "email_monitor.html",
        {
            "user": user,
            "source": scraper.source.name if scraper.source else None,
            "interval": int(config.EMAIL_POLL_INTERVAL),
        },
    )
