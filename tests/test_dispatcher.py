import asyncio

import httpx
import pytest

from conftest import envelope, mock_client
from customer_portal_bff.dispatcher import (
    AuthenticatedDispatcher,
    RouteScope,
    TokenSource,
    classify_route,
    is_auth_endpoint,
)
from customer_portal_bff.errors import AuthenticationExpired
from customer_portal_bff.session_data import CustomerRecord, Session
from customer_portal_bff.session_manager import SessionState


async def sign_in(manager, store, token="abc", phone="081234567890"):
    store.write(Session(token=token, active_customer=CustomerRecord(id=42, phone=phone)))
    await manager.init()


def make_dispatcher(handler, manager, admin_store, test_settings):
    return AuthenticatedDispatcher(
        client=mock_client(handler),
        session_manager=manager,
        admin_store=admin_store,
        config=test_settings,
    )


@pytest.mark.parametrize(
    "path, scope",
    [
        ("/api/v1/customer/invoices", RouteScope.CUSTOMER),
        ("/api/v1/support/tickets", RouteScope.CUSTOMER),
        ("/api/v1/billing/customer/42", RouteScope.CUSTOMER),
        ("/api/v1/billing/my-invoices", RouteScope.CUSTOMER),
        ("/api/v1/customer-billing/summary", RouteScope.CUSTOMER),
        ("/api/v1/billing/invoices", RouteScope.ADMIN),
        ("/api/v1/users", RouteScope.ADMIN),
    ],
)
def test_classify_route(test_settings, path, scope):
    assert classify_route(path, test_settings.CUSTOMER_ROUTE_PATTERNS) is scope


@pytest.mark.asyncio
async def test_customer_route_carries_customer_token_and_phone(manager, store, admin_store, test_settings):
    await sign_in(manager, store)
    admin_store.write_token("admin-jwt")
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, json=envelope({"invoices": []}))

    dispatcher = make_dispatcher(handler, manager, admin_store, test_settings)
    result = await dispatcher.get("/api/v1/customer/invoices")

    assert result.success
    assert result.data == {"invoices": []}
    assert seen["authorization"] == "Bearer abc"
    assert seen["x-customer-phone"] == "081234567890"


def test_customer_route_falls_back_to_admin_token(manager, admin_store, test_settings):
    admin_store.write_token("admin-jwt")

    dispatcher = make_dispatcher(lambda request: httpx.Response(200, json=envelope({})), manager, admin_store, test_settings)

    assert dispatcher.resolve_token("/api/v1/customer/invoices") == ("admin-jwt", TokenSource.ADMIN)
    assert dispatcher.resolve_token("/api/v1/users") == ("admin-jwt", TokenSource.ADMIN)


@pytest.mark.asyncio
async def test_admin_route_never_uses_customer_token(manager, store, admin_store, test_settings):
    await sign_in(manager, store)
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, json=envelope({}))

    await make_dispatcher(handler, manager, admin_store, test_settings).get("/api/v1/users")

    assert "authorization" not in seen
    assert "x-customer-phone" not in seen


@pytest.mark.asyncio
async def test_nested_payload_and_meta_are_unwrapped(manager, store, admin_store, test_settings):
    await sign_in(manager, store)

    def handler(request):
        body = envelope({"data": [{"id": 1}]})
        body["meta"] = {"total": 1}
        return httpx.Response(200, json=body)

    result = await make_dispatcher(handler, manager, admin_store, test_settings).get("/api/v1/customer/invoices")

    assert result.data == [{"id": 1}]
    assert result.meta == {"total": 1}


@pytest.mark.asyncio
async def test_concurrent_401s_expire_the_session_once(manager, store, admin_store, test_settings, expired_events):
    await sign_in(manager, store)
    arrived = []
    all_in_flight = asyncio.Event()

    async def handler(request):
        # Hold every response until all three requests are on the wire
        arrived.append(request)
        if len(arrived) == 3:
            all_in_flight.set()
        await all_in_flight.wait()
        return httpx.Response(401, json=envelope(success=False, message="Token expired"))

    dispatcher = make_dispatcher(handler, manager, admin_store, test_settings)
    results = await asyncio.gather(
        dispatcher.get("/api/v1/customer/invoices"),
        dispatcher.get("/api/v1/customer/profile"),
        dispatcher.get("/api/v1/support/tickets"),
        return_exceptions=True,
    )

    assert all(request.headers["authorization"] == "Bearer abc" for request in arrived)
    assert all(isinstance(r, AuthenticationExpired) for r in results)
    assert all(r.scope == "customer" and r.status == 401 for r in results)
    assert len(expired_events) == 1
    assert store.read() is None
    assert manager.state is SessionState.EXPIRED


@pytest.mark.asyncio
async def test_forbidden_with_success_false_expires_session(manager, store, admin_store, test_settings, expired_events):
    await sign_in(manager, store)

    def handler(request):
        return httpx.Response(403, json=envelope(success=False, message="Customer tidak aktif"))

    with pytest.raises(AuthenticationExpired) as excinfo:
        await make_dispatcher(handler, manager, admin_store, test_settings).post("/api/v1/customer/profile", json={})

    assert excinfo.value.status == 403
    assert store.read() is None
    assert len(expired_events) == 1


@pytest.mark.asyncio
async def test_success_false_on_200_is_a_plain_failure(manager, store, admin_store, test_settings, expired_events):
    await sign_in(manager, store)

    def handler(request):
        return httpx.Response(200, json=envelope(success=False, message="Ticket not found"))

    result = await make_dispatcher(handler, manager, admin_store, test_settings).get("/api/v1/support/tickets/9")

    assert not result.success
    assert result.error == "Ticket not found"
    assert store.read() is not None
    assert expired_events == []


@pytest.mark.asyncio
async def test_401_for_a_replaced_token_keeps_new_session(manager, store, admin_store, test_settings, expired_events):
    await sign_in(manager, store, token="old")

    def handler(request):
        # Session is replaced while this request is in flight
        store.write(Session(token="new", active_customer=CustomerRecord(id=99)))
        return httpx.Response(401, json=envelope(success=False))

    with pytest.raises(AuthenticationExpired):
        await make_dispatcher(handler, manager, admin_store, test_settings).get("/api/v1/customer/invoices")

    assert store.read().token == "new"
    assert expired_events == []


@pytest.mark.asyncio
async def test_admin_401_clears_admin_token_only(manager, store, admin_store, test_settings, expired_events):
    await sign_in(manager, store)
    admin_store.write_token("admin-jwt")

    def handler(request):
        return httpx.Response(401, json=envelope(success=False))

    with pytest.raises(AuthenticationExpired) as excinfo:
        await make_dispatcher(handler, manager, admin_store, test_settings).get("/api/v1/users")

    assert excinfo.value.scope == "admin"
    assert admin_store.read_token() is None
    assert store.read().token == "abc"
    assert [e.scope for e in expired_events] == ["admin"]


@pytest.mark.asyncio
async def test_401_without_any_token_is_a_plain_failure(manager, admin_store, test_settings, expired_events):
    def handler(request):
        assert "authorization" not in request.headers
        return httpx.Response(401, json=envelope(success=False, message="Unauthorized"))

    result = await make_dispatcher(handler, manager, admin_store, test_settings).get("/api/v1/users")

    assert not result.success
    assert result.status_code == 401
    assert expired_events == []


@pytest.mark.asyncio
async def test_timeout_is_reported_distinctly(manager, store, admin_store, test_settings):
    await sign_in(manager, store)

    def handler(request):
        raise httpx.ConnectTimeout("no answer", request=request)

    result = await make_dispatcher(handler, manager, admin_store, test_settings).get("/api/v1/customer/invoices")

    assert not result.success
    assert result.error == "timeout"
    assert "not responding" in result.message
    assert store.read() is not None


@pytest.mark.asyncio
async def test_server_error_is_returned_not_raised(manager, store, admin_store, test_settings):
    await sign_in(manager, store)

    def handler(request):
        return httpx.Response(500, json={"success": False, "error": "database down"})

    result = await make_dispatcher(handler, manager, admin_store, test_settings).put("/api/v1/customer/profile", json={"name": "x"})

    assert not result.success
    assert result.error == "database down"
    assert result.status_code == 500


@pytest.mark.parametrize(
    "path, expected",
    [
        ("/api/v1/customer-auth/login", True),
        ("api/v1/customer-auth/login-by-phone", True),
        ("/api/v1/customer-auth-nextjs/login-with-token", True),
        ("//api/v1//Customer-Auth/verify-otp", True),
        ("/api/v1/customer/../customer-auth/login", True),
        ("/api/v1/customer-auth", True),
        ("/api/v1/customer/invoices", False),
        ("/api/v1/customer-authority/report", False),
    ],
)
def test_is_auth_endpoint(path, expected):
    assert is_auth_endpoint(path) is expected


@pytest.mark.asyncio
async def test_auth_endpoint_401_is_a_plain_failure(manager, store, admin_store, test_settings, expired_events):
    await sign_in(manager, store)

    def handler(request):
        return httpx.Response(401, json=envelope(success=False, message="Phone atau password salah"))

    dispatcher = make_dispatcher(handler, manager, admin_store, test_settings)
    result = await dispatcher.post("/api/v1/customer-auth/login", json={"phone": "0812", "password": "nope"})

    assert not result.success
    assert result.status_code == 401
    assert result.error == "Phone atau password salah"
    assert store.read().token == "abc"
    assert manager.state is SessionState.AUTHENTICATED
    assert expired_events == []
