# src/customer_portal_bff/gateway.py

import logging
from typing import Any, Dict, Optional, Union

import httpx
from pydantic import ValidationError

from . import envelope
from .config import Settings, settings as default_settings
from .errors import (
    NETWORK_MESSAGE,
    SERVER_MESSAGE,
    TIMEOUT_MESSAGE,
    AuthErrorKind,
    AuthResult,
)
from .logging_setup import token_preview
from .session_data import AuthGrant, CustomerRecord

logger = logging.getLogger(__name__)

# --- Backend endpoints (paths are fixed by the backend) ---
LOGIN_PATH = "/api/v1/customer-auth/login"
REQUEST_OTP_PATH = "/api/v1/customer-auth/otp"
RESEND_OTP_PATH = "/api/v1/customer-auth/resend-otp"
VERIFY_OTP_PATH = "/api/v1/customer-auth/verify-otp"
LOGIN_BY_PHONE_PATH = "/api/v1/customer-auth/login-by-phone"
LOGIN_WITH_TOKEN_PATH = "/api/v1/customer-auth-nextjs/login-with-token"
GET_CUSTOMER_DATA_PATH = "/api/v1/customer-auth-nextjs/get-customer-data"
REFRESH_PATH = "/api/v1/customer-auth/refresh"
LOGOUT_PATH = "/api/v1/customer-auth/logout"


class RemoteAuthGateway:
    """
    HTTP client for the customer authentication service.

    Every operation returns an `AuthResult`; nothing raises for HTTP,
    transport or payload problems. Responses are normalized here into
    `AuthGrant` / `CustomerRecord` so callers never look at raw envelopes.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, config: Optional[Settings] = None):
        self.config = config or default_settings
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=self.config.API_BASE_URL)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # --- Login flows ---

    async def login_with_credentials(self, phone: str, password: str) -> AuthResult[AuthGrant]:
        return await self._grant(
            "POST", LOGIN_PATH,
            rejection=AuthErrorKind.INVALID_CREDENTIALS,
            default_message="Authentication failed",
            json={"phone": phone, "password": password},
        )

    async def request_otp(self, phone: str) -> AuthResult[Dict[str, Any]]:
        return await self._acknowledge(
            "POST", REQUEST_OTP_PATH,
            rejection=AuthErrorKind.INVALID_CREDENTIALS,
            default_message="OTP could not be sent",
            json={"phone": phone},
        )

    async def resend_otp(self, phone: str) -> AuthResult[Dict[str, Any]]:
        return await self._acknowledge(
            "POST", RESEND_OTP_PATH,
            rejection=AuthErrorKind.INVALID_CREDENTIALS,
            default_message="OTP could not be resent",
            json={"phone": phone},
        )

    async def verify_otp(self, phone: str, code: str) -> AuthResult[AuthGrant]:
        return await self._grant(
            "POST", VERIFY_OTP_PATH,
            rejection=AuthErrorKind.OTP_INVALID_OR_EXPIRED,
            default_message="OTP is invalid",
            json={"phone": phone, "otp": code},
        )

    async def login_by_phone_only(self, phone: str) -> AuthResult[AuthGrant]:
        """Trusted bypass path. Callers must have verified the phone out-of-band."""
        return await self._grant(
            "POST", LOGIN_BY_PHONE_PATH,
            rejection=AuthErrorKind.INVALID_CREDENTIALS,
            default_message="Login failed",
            json={"phone": phone},
        )

    # --- Token flows ---

    async def exchange_login_token(self, token: str) -> AuthResult[AuthGrant]:
        logger.debug("GATEWAY: exchange_login_token - token %s", token_preview(token))
        return await self._grant(
            "POST", LOGIN_WITH_TOKEN_PATH,
            rejection=AuthErrorKind.TOKEN_INVALID,
            default_message="Login token is invalid",
            json={"token": token},
            timeout=self.config.TOKEN_VALIDATION_TIMEOUT,
        )

    async def validate_session_token(self, token: str) -> AuthResult[CustomerRecord]:
        logger.debug("GATEWAY: validate_session_token - token %s", token_preview(token))
        result = await self._call(
            "GET", GET_CUSTOMER_DATA_PATH,
            rejection=AuthErrorKind.TOKEN_INVALID,
            default_message="Session token is invalid",
            headers=self._bearer(token),
            timeout=self.config.TOKEN_VALIDATION_TIMEOUT,
        )
        if not result.ok:
            return result
        customer = envelope.extract_customer(result.value)
        if customer is None:
            return self._malformed(GET_CUSTOMER_DATA_PATH, "customer missing")
        try:
            return AuthResult.success(self._customer(customer))
        except ValidationError as e:
            return self._malformed(GET_CUSTOMER_DATA_PATH, str(e))

    async def switch_account(self, token: str, target_id: Union[int, str]) -> AuthResult[AuthGrant]:
        return await self._grant(
            "POST", self.config.SWITCH_ACCOUNT_PATH,
            rejection=AuthErrorKind.EXPIRED,
            default_message="Account switch was rejected",
            json={"customerId": target_id},
            headers=self._bearer(token),
        )

    async def refresh_token(self, token: str) -> AuthResult[AuthGrant]:
        return await self._grant(
            "POST", REFRESH_PATH,
            rejection=AuthErrorKind.EXPIRED,
            default_message="Token could not be refreshed",
            json={"token": token},
            headers=self._bearer(token),
        )

    async def logout(self, token: str) -> AuthResult[Dict[str, Any]]:
        return await self._acknowledge(
            "POST", LOGOUT_PATH,
            rejection=AuthErrorKind.EXPIRED,
            default_message="Logout failed",
            json={"token": token},
        )

    # --- Internals ---

    @staticmethod
    def _bearer(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    @staticmethod
    def _customer(payload: Dict[str, Any]) -> CustomerRecord:
        customer = CustomerRecord.model_validate(payload)
        if customer.status is not None and not customer.has_known_status:
            logger.info("GATEWAY: Customer id=%s has unrecognized status %r, keeping it", customer.id, customer.status)
        return customer

    async def _grant(self, method: str, path: str, **kwargs) -> AuthResult[AuthGrant]:
        result = await self._call(method, path, **kwargs)
        if not result.ok:
            return result

        customer = envelope.extract_customer(result.value)
        token = envelope.extract_token(result.value)
        if customer is None or token is None:
            return self._malformed(path, "customer or token missing")
        try:
            return AuthResult.success(AuthGrant(customer=self._customer(customer), token=token))
        except ValidationError as e:
            return self._malformed(path, str(e))

    async def _acknowledge(self, method: str, path: str, **kwargs) -> AuthResult[Dict[str, Any]]:
        result = await self._call(method, path, **kwargs)
        if not result.ok:
            return result
        data = result.value if isinstance(result.value, dict) else {}
        return AuthResult.success(data)

    async def _call(
        self,
        method: str,
        path: str,
        rejection: AuthErrorKind,
        default_message: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> AuthResult[Any]:
        request_timeout = timeout if timeout is not None else self.config.REQUEST_TIMEOUT
        try:
            response = await self.client.request(
                method, path, json=json, headers=headers, timeout=request_timeout
            )
        except httpx.TimeoutException:
            logger.warning("GATEWAY: %s %s timed out after %.1fs", method, path, request_timeout)
            return AuthResult.failure(AuthErrorKind.TIMEOUT, TIMEOUT_MESSAGE)
        except httpx.RequestError as e:
            logger.warning("GATEWAY: %s %s request error: %s", method, path, e)
            return AuthResult.failure(AuthErrorKind.NETWORK, NETWORK_MESSAGE)

        try:
            body = response.json()
        except ValueError:
            body = None

        success, data, message = envelope.unwrap(body)
        status_code = response.status_code

        if response.is_success and success:
            return AuthResult.success(data)

        if body is None and response.is_success:
            return self._malformed(path, "response is not JSON")

        kind = self._classify(status_code, rejection)
        if kind is AuthErrorKind.SERVER:
            logger.error("GATEWAY: %s %s failed with HTTP %s: %s", method, path, status_code, message)
            return AuthResult.failure(kind, message or SERVER_MESSAGE, status_code)

        logger.info("GATEWAY: %s %s rejected (HTTP %s, %s): %s", method, path, status_code, kind.value, message)
        return AuthResult.failure(kind, message or default_message, status_code)

    @staticmethod
    def _classify(status_code: int, rejection: AuthErrorKind) -> AuthErrorKind:
        if status_code >= 500:
            return AuthErrorKind.SERVER
        if status_code == 404:
            return AuthErrorKind.NOT_FOUND
        if status_code == 429:
            return AuthErrorKind.RATE_LIMITED
        # Remaining 4xx, or a 2xx carrying `success: false`
        return rejection

    @staticmethod
    def _malformed(path: str, detail: str) -> AuthResult[Any]:
        logger.error("GATEWAY: %s returned an unusable payload: %s", path, detail)
        return AuthResult.failure(AuthErrorKind.SERVER, SERVER_MESSAGE)
