# src/customer_portal_bff/main.py

import json
import logging
import time
import typing
import uuid
from collections.abc import MutableMapping
from pathlib import Path
from typing import Any, Dict, Optional, Union

import httpx
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from .config import settings
from .credential_store import AdminCredentialStore, CredentialStore, JsonFileStorage, MemoryStorage
from .dispatcher import AuthenticatedDispatcher, is_auth_endpoint, normalize_path
from .errors import AuthenticationExpired, AuthError, AuthErrorKind, AuthResult
from .gateway import RemoteAuthGateway
from .logging_setup import configure_logging
from .session_data import Session
from .session_manager import SessionManager
from .signals import AuthExpiredEvent, auth_expired_events

logger = logging.getLogger(__name__)

# --- Per-browser storage ---
# Each browser session gets its own storage mapping (the server-side
# equivalent of the browser's local storage) and its own SessionManager.
_browser_storage: typing.Dict[str, MutableMapping] = {}
_session_managers: typing.Dict[str, SessionManager] = {}
_last_seen: typing.Dict[str, float] = {}


def _storage_file(session_id: str) -> Optional[Path]:
    if settings.CREDENTIAL_STORE_PATH is None:
        return None
    return settings.CREDENTIAL_STORE_PATH / f"{session_id}.json"


def _is_session_id(value: str) -> bool:
    # Cookie values name files on disk, so only our own uuid4 strings are accepted
    try:
        return str(uuid.UUID(value)) == value
    except ValueError:
        return False


def _open_storage(session_id: Optional[str]) -> Optional[MutableMapping]:
    """Storage already belonging to this cookie: in memory, or left on disk by an earlier process."""
    if not session_id or not _is_session_id(session_id):
        return None
    if session_id in _browser_storage:
        return _browser_storage[session_id]
    path = _storage_file(session_id)
    if path is not None and path.exists():
        logger.info("MAIN: Reopening stored credentials for browser session %s", session_id[:8])
        _browser_storage[session_id] = JsonFileStorage(path)
        return _browser_storage[session_id]
    return None


def _new_storage(session_id: str) -> MutableMapping:
    path = _storage_file(session_id)
    if path is not None:
        return JsonFileStorage(path)
    return MemoryStorage()


def _evict_idle_sessions(now: float) -> None:
    """Drops in-memory state of browsers whose cookie has outlived its max age."""
    cutoff = now - settings.SESSION_COOKIE_MAX_AGE
    for session_id in [sid for sid, seen in _last_seen.items() if seen < cutoff]:
        _last_seen.pop(session_id, None)
        _browser_storage.pop(session_id, None)
        manager = _session_managers.pop(session_id, None)
        if manager is not None:
            manager.teardown()
        logger.debug("MAIN: Evicted idle browser session %s", session_id[:8])


class SessionMiddlewareCustom(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        now = time.time()
        _evict_idle_sessions(now)

        session_id = request.cookies.get(settings.SESSION_COOKIE_NAME)
        if _open_storage(session_id) is None:
            session_id = str(uuid.uuid4())
            _browser_storage[session_id] = _new_storage(session_id)
        _last_seen[session_id] = now
        request.state.session_id = session_id
        request.state.storage = _browser_storage[session_id]
        response: StarletteResponse = await call_next(request)
        response.set_cookie(
            settings.SESSION_COOKIE_NAME,
            session_id,
            max_age=settings.SESSION_COOKIE_MAX_AGE,
            httponly=True,
            secure=False,  # Set to True in production with HTTPS
            samesite="lax",
        )
        return response


# --- FastAPI App Setup ---
app = FastAPI(
    title="CustomerPortal-BFF API",
    description="Backend-For-Frontend for the ISP customer portal, owning the customer session.",
    version="0.1.0",
)
app.add_middleware(SessionMiddlewareCustom)


# --- Shared clients ---

def get_backend_client(request: Request) -> httpx.AsyncClient:
    client = getattr(request.app.state, "backend_client", None)
    if client is None:
        client = httpx.AsyncClient(base_url=settings.API_BASE_URL)
        request.app.state.backend_client = client
    return client


def get_gateway(client: httpx.AsyncClient = Depends(get_backend_client)) -> RemoteAuthGateway:
    return RemoteAuthGateway(client=client)


async def get_session_manager(
    request: Request, gateway: RemoteAuthGateway = Depends(get_gateway)
) -> SessionManager:
    session_id = request.state.session_id
    manager = _session_managers.get(session_id)
    if manager is None:
        manager = SessionManager(gateway=gateway, store=CredentialStore(request.state.storage))
        await manager.init()
        _session_managers[session_id] = manager
    return manager


def get_dispatcher(
    request: Request,
    client: httpx.AsyncClient = Depends(get_backend_client),
    manager: SessionManager = Depends(get_session_manager),
) -> AuthenticatedDispatcher:
    return AuthenticatedDispatcher(
        client=client,
        session_manager=manager,
        admin_store=AdminCredentialStore(request.state.storage),
    )


async def require_customer_session(manager: SessionManager = Depends(get_session_manager)) -> SessionManager:
    if not manager.is_authenticated:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return manager


# --- Request bodies ---

class CredentialsLogin(BaseModel):
    phone: str
    password: str


class PhoneOnly(BaseModel):
    phone: str


class OtpVerification(BaseModel):
    phone: str
    otp: str


class SwitchAccountRequest(BaseModel):
    target_id: Union[int, str]


class LogoutRequest(BaseModel):
    notify_server: bool = False


# --- Result rendering ---

ERROR_STATUS = {
    AuthErrorKind.INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.OTP_INVALID_OR_EXPIRED: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.TOKEN_INVALID: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.EXPIRED: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    AuthErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    AuthErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    AuthErrorKind.NETWORK: status.HTTP_503_SERVICE_UNAVAILABLE,
    AuthErrorKind.SERVER: status.HTTP_502_BAD_GATEWAY,
    AuthErrorKind.SUPERSEDED: status.HTTP_409_CONFLICT,
}


PROXY_ERROR_STATUS = {
    "timeout": status.HTTP_504_GATEWAY_TIMEOUT,
    "network": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def session_payload(manager: SessionManager, session: Optional[Session] = None) -> Dict[str, Any]:
    session = session or manager.session
    return {
        "state": manager.state.value,
        "customer": session.active_customer.to_storage() if session else None,
        "accounts": [account.to_storage() for account in session.linked_accounts] if session else [],
    }


def error_response(error: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS.get(error.kind, status.HTTP_400_BAD_REQUEST),
        content={"success": False, "error": error.kind.value, "message": error.message},
    )


def render(manager: SessionManager, result: AuthResult[Session]) -> Union[JSONResponse, Dict[str, Any]]:
    if not result.ok:
        return error_response(result.error)
    return {"success": True, "data": session_payload(manager, result.value)}


def _wants_html(request: Request) -> bool:
    return "text/html" in request.headers.get("accept", "")


@app.exception_handler(AuthenticationExpired)
async def authentication_expired_handler(request: Request, exc: AuthenticationExpired):
    logger.info("MAIN: Authentication expired on %s (scope=%s), sending client to login", request.url.path, exc.scope)
    if _wants_html(request):
        return RedirectResponse(url=settings.LOGIN_PATH, status_code=status.HTTP_303_SEE_OTHER)
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"success": False, "message": exc.message, "status": exc.status, "redirect": settings.LOGIN_PATH},
    )


# --- Authentication Routes ---

@app.post("/customer/login")
async def login(body: CredentialsLogin, manager: SessionManager = Depends(get_session_manager)):
    return render(manager, await manager.login_with_credentials(body.phone, body.password))


@app.post("/customer/otp")
async def request_otp(body: PhoneOnly, manager: SessionManager = Depends(get_session_manager)):
    result = await manager.request_otp(body.phone)
    if not result.ok:
        return error_response(result.error)
    return {"success": True, "data": result.value}


@app.post("/customer/otp/resend")
async def resend_otp(body: PhoneOnly, manager: SessionManager = Depends(get_session_manager)):
    result = await manager.resend_otp(body.phone)
    if not result.ok:
        return error_response(result.error)
    return {"success": True, "data": result.value}


@app.post("/customer/verify-otp")
async def verify_otp(body: OtpVerification, manager: SessionManager = Depends(get_session_manager)):
    return render(manager, await manager.verify_otp(body.phone, body.otp))


@app.post("/customer/login-by-phone")
async def login_by_phone(
    body: PhoneOnly,
    x_trusted_login_key: Optional[str] = Header(None),
    manager: SessionManager = Depends(get_session_manager),
):
    # Only reachable for an upstream component that already verified the phone
    if not settings.TRUSTED_LOGIN_KEY:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    if x_trusted_login_key != settings.TRUSTED_LOGIN_KEY:
        logger.warning("MAIN: /customer/login-by-phone rejected, missing or wrong trusted key")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Untrusted caller")
    return render(manager, await manager.login_by_phone_only(body.phone))


@app.get("/customer/login/{token}")
async def login_with_token(token: str, request: Request, manager: SessionManager = Depends(get_session_manager)):
    result = await manager.bootstrap_from_token(token)
    if _wants_html(request):
        if result.ok:
            return RedirectResponse(url=settings.PORTAL_PATH, status_code=status.HTTP_302_FOUND)
        return RedirectResponse(
            url=f"{settings.LOGIN_PATH}?error={result.error.kind.value}",
            status_code=status.HTTP_302_FOUND,
        )
    return render(manager, result)


@app.post("/customer/switch-account")
async def switch_account(body: SwitchAccountRequest, manager: SessionManager = Depends(require_customer_session)):
    return render(manager, await manager.switch_account(body.target_id))


@app.post("/customer/refresh-token")
async def refresh_token(manager: SessionManager = Depends(require_customer_session)):
    result = await manager.refresh_token()
    if not result.ok:
        return error_response(result.error)
    payload = session_payload(manager, result.value)
    payload["login_url"] = settings.login_url_for(result.value.token)
    return {"success": True, "data": payload}


@app.post("/customer/refresh")
async def refresh_customer_data(manager: SessionManager = Depends(require_customer_session)):
    return render(manager, await manager.refresh_customer_data())


@app.post("/customer/logout")
async def logout(body: Optional[LogoutRequest] = Body(None), manager: SessionManager = Depends(get_session_manager)):
    await manager.logout(notify_server=body.notify_server if body else False)
    return {"success": True, "data": session_payload(manager)}


# --- BFF API Endpoints (called by the frontend) ---

@app.get("/api/bff/session")
async def current_session(manager: SessionManager = Depends(get_session_manager)):
    return {"success": True, "data": session_payload(manager)}


@app.api_route("/api/bff/proxy/{path:path}", methods=["GET", "POST", "PUT", "DELETE"])
async def proxy(path: str, request: Request, dispatcher: AuthenticatedDispatcher = Depends(get_dispatcher)):
    backend_path = normalize_path(path)
    # Auth flows only go through the /customer/* routes above, which own the
    # session and the trusted-login gate
    if is_auth_endpoint(backend_path):
        logger.warning("MAIN: Refusing to proxy auth endpoint %s", backend_path)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    payload = None
    if request.method in ("POST", "PUT"):
        raw = await request.body()
        if raw:
            try:
                payload = json.loads(raw)
            except ValueError:
                return JSONResponse(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    content={"success": False, "error": "Request body must be JSON"},
                )
    result = await dispatcher.request(
        request.method, backend_path,
        json=payload,
        params=dict(request.query_params),
    )
    return JSONResponse(
        status_code=result.status_code or PROXY_ERROR_STATUS.get(result.error, status.HTTP_502_BAD_GATEWAY),
        content=result.model_dump(exclude_none=True),
    )


# --- Startup / Shutdown ---

def _log_auth_expired(event: AuthExpiredEvent) -> None:
    logger.info("MAIN: auth expired event (scope=%s, status=%s): %s", event.scope, event.status, event.message)


@app.on_event("startup")
async def startup_event():
    configure_logging()
    app.state.unsubscribe_auth_expired = auth_expired_events.subscribe(_log_auth_expired)
    logger.info("--- CustomerPortal-BFF (FastAPI) Starting Up ---")
    logger.info("API base URL: %s", settings.API_BASE_URL)
    logger.info("Switch account path: %s", settings.SWITCH_ACCOUNT_PATH)
    logger.info("Phone-only login enabled: %s", "Yes" if settings.TRUSTED_LOGIN_KEY else "No")
    logger.info("Credential storage: %s", settings.CREDENTIAL_STORE_PATH or "in-memory")


@app.on_event("shutdown")
async def shutdown_event():
    unsubscribe = getattr(app.state, "unsubscribe_auth_expired", None)
    if unsubscribe is not None:
        unsubscribe()
    for manager in _session_managers.values():
        manager.teardown()
    _session_managers.clear()
    _last_seen.clear()
    client = getattr(app.state, "backend_client", None)
    if client is not None:
        await client.aclose()
        app.state.backend_client = None
