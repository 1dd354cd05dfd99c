import json
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from customer_portal_bff.config import Settings
from customer_portal_bff.credential_store import AdminCredentialStore, CredentialStore, MemoryStorage
from customer_portal_bff.errors import AuthResult
from customer_portal_bff.session_data import AuthGrant, CustomerRecord
from customer_portal_bff.session_manager import SessionManager
from customer_portal_bff.signals import AuthEventBus

BASE_URL = "http://backend.test"


@pytest.fixture
def test_settings():
    return Settings(API_BASE_URL=BASE_URL, TOKEN_VALIDATION_TIMEOUT=8.0, REQUEST_TIMEOUT=10.0)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def store(storage):
    return CredentialStore(storage)


@pytest.fixture
def admin_store(storage):
    return AdminCredentialStore(storage)


@pytest.fixture
def events():
    return AuthEventBus()


@pytest.fixture
def expired_events(events):
    received = []
    events.subscribe(received.append)
    return received


def envelope(data=None, success=True, message=None) -> Dict:
    body = {"success": success}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    return body


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))


def request_json(request: httpx.Request) -> Optional[Dict]:
    return json.loads(request.content) if request.content else None


class FakeGateway:
    """In-memory stand-in for RemoteAuthGateway that records every call."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.responses: Dict[str, AuthResult] = {}
        self.pending: Dict[str, object] = {}

    def respond(self, operation: str, result: AuthResult) -> None:
        self.responses[operation] = result

    async def _answer(self, operation: str, *args):
        self.calls.append((operation,) + args)
        waiter = self.pending.get(operation)
        if waiter is not None:
            await waiter.wait()
        return self.responses[operation]

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def login_with_credentials(self, phone, password):
        return await self._answer("login_with_credentials", phone, password)

    async def request_otp(self, phone):
        return await self._answer("request_otp", phone)

    async def resend_otp(self, phone):
        return await self._answer("resend_otp", phone)

    async def verify_otp(self, phone, code):
        return await self._answer("verify_otp", phone, code)

    async def login_by_phone_only(self, phone):
        return await self._answer("login_by_phone_only", phone)

    async def exchange_login_token(self, token):
        return await self._answer("exchange_login_token", token)

    async def validate_session_token(self, token):
        return await self._answer("validate_session_token", token)

    async def switch_account(self, token, target_id):
        return await self._answer("switch_account", token, target_id)

    async def refresh_token(self, token):
        return await self._answer("refresh_token", token)

    async def logout(self, token):
        return await self._answer("logout", token)


def grant(token: str, **customer) -> AuthResult:
    return AuthResult.success(AuthGrant(customer=CustomerRecord.model_validate(customer), token=token))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def manager(gateway, store, events):
    return SessionManager(gateway=gateway, store=store, events=events)
