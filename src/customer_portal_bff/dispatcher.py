# src/customer_portal_bff/dispatcher.py

import logging
import posixpath
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from . import envelope
from .config import Settings, settings as default_settings
from .credential_store import AdminCredentialStore
from .errors import NETWORK_MESSAGE, TIMEOUT_MESSAGE, AuthenticationExpired
from .session_data import ApiResponse
from .session_manager import SessionManager
from .signals import AuthExpiredEvent

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUS = 401
# A `success: false` body only means "not authorized" alongside these codes
AUTH_REJECTION_STATUSES = frozenset({401, 403})
# Failures from these are answers about credentials, not about the session
AUTH_ENDPOINT_PREFIXES = ("/api/v1/customer-auth/", "/api/v1/customer-auth-nextjs/")


class RouteScope(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class TokenSource(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    NONE = "none"


def classify_route(path: str, customer_patterns: List[str]) -> RouteScope:
    if any(pattern in path for pattern in customer_patterns):
        return RouteScope.CUSTOMER
    return RouteScope.ADMIN


def normalize_path(path: str) -> str:
    """Absolute form of a backend path with `//`, `.` and `..` segments collapsed."""
    return posixpath.normpath("/" + path.lstrip("/"))


def is_auth_endpoint(path: str) -> bool:
    """Login, OTP, token and logout endpoints of the customer auth service."""
    normalized = normalize_path(path).lower()
    return any(
        normalized == prefix.rstrip("/") or normalized.startswith(prefix)
        for prefix in AUTH_ENDPOINT_PREFIXES
    )


class AuthenticatedDispatcher:
    """
    Sends requests to protected backend endpoints with the right bearer token
    and turns authentication failures into the session's Expired transition.

    Customer-scoped routes use the customer session token and fall back to
    the admin token (some endpoints serve both); everything else uses the
    admin token.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        session_manager: SessionManager,
        admin_store: AdminCredentialStore,
        config: Optional[Settings] = None,
    ):
        self.client = client
        self.session_manager = session_manager
        self.admin_store = admin_store
        self.config = config or default_settings

    def resolve_token(self, path: str) -> Tuple[Optional[str], TokenSource]:
        scope = classify_route(path, self.config.CUSTOMER_ROUTE_PATTERNS)
        if scope is RouteScope.CUSTOMER:
            customer_token = self.session_manager.store.read_token()
            if customer_token:
                return customer_token, TokenSource.CUSTOMER
        admin_token = self.admin_store.read_token()
        if admin_token:
            return admin_token, TokenSource.ADMIN
        return None, TokenSource.NONE

    def build_headers(self, path: str, extra: Optional[Dict[str, str]] = None) -> Tuple[Dict[str, str], Optional[str], TokenSource]:
        token, source = self.resolve_token(path)
        headers: Dict[str, str] = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        else:
            logger.debug("DISPATCHER: No token available for %s", path)

        if classify_route(path, self.config.CUSTOMER_ROUTE_PATTERNS) is RouteScope.CUSTOMER:
            customer = self.session_manager.store.read()
            if customer is not None and customer.active_customer.phone:
                headers["x-customer-phone"] = customer.active_customer.phone

        if extra:
            headers.update(extra)
        return headers, token, source

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> ApiResponse:
        request_headers, token, source = self.build_headers(path, headers)
        try:
            response = await self.client.request(
                method, path,
                json=json, params=params, headers=request_headers,
                timeout=self.config.REQUEST_TIMEOUT,
            )
        except httpx.TimeoutException:
            logger.warning("DISPATCHER: %s %s timed out after %.1fs", method, path, self.config.REQUEST_TIMEOUT)
            return ApiResponse(success=False, error="timeout", message=TIMEOUT_MESSAGE)
        except httpx.RequestError as e:
            logger.warning("DISPATCHER: %s %s request error: %s", method, path, e)
            return ApiResponse(success=False, error="network", message=NETWORK_MESSAGE)

        try:
            body = response.json()
        except ValueError:
            body = None

        success, data, message = envelope.unwrap(body)

        if (
            self._is_auth_failure(response.status_code, body, success)
            and token is not None
            and not is_auth_endpoint(path)
        ):
            self._expire(source, token, response.status_code)
            raise AuthenticationExpired(
                message="Authentication expired",
                status=response.status_code,
                scope=source.value,
            )

        if not response.is_success or not success:
            error_text = None
            if isinstance(body, dict):
                error_text = body.get("message") or body.get("error")
            logger.info("DISPATCHER: %s %s failed with HTTP %s: %s", method, path, response.status_code, error_text)
            return ApiResponse(
                success=False,
                error=error_text or response.reason_phrase or "Request failed",
                message=message,
                status_code=response.status_code,
            )

        meta = body.get("meta") if isinstance(body, dict) else None
        return ApiResponse(success=True, data=data, message=message, status_code=response.status_code, meta=meta)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> ApiResponse:
        return await self.request("GET", path, params=params, **kwargs)

    async def post(self, path: str, json: Any = None, **kwargs) -> ApiResponse:
        return await self.request("POST", path, json=json, **kwargs)

    async def put(self, path: str, json: Any = None, **kwargs) -> ApiResponse:
        return await self.request("PUT", path, json=json, **kwargs)

    async def delete(self, path: str, **kwargs) -> ApiResponse:
        return await self.request("DELETE", path, **kwargs)

    @staticmethod
    def _is_auth_failure(status_code: int, body: Any, success: bool) -> bool:
        if status_code == AUTH_FAILURE_STATUS:
            return True
        return status_code in AUTH_REJECTION_STATUSES and isinstance(body, dict) and not success

    def _expire(self, source: TokenSource, token: str, status_code: int) -> None:
        if source is TokenSource.CUSTOMER:
            self.session_manager.expire(message="Authentication expired", status=status_code, token=token)
            return

        # Admin credential: only the first failure for the stored token counts
        if self.admin_store.read_token() != token:
            logger.debug("DISPATCHER: Admin auth failure for a token no longer stored, ignoring")
            return
        self.admin_store.clear()
        self.session_manager.events.emit(
            AuthExpiredEvent(message="Authentication expired", status=status_code, scope=RouteScope.ADMIN.value)
        )
