# src/customer_portal_bff/session_manager.py
"""
Customer session state machine.

    Unauthenticated -> Authenticating -> Authenticated
    Authenticated -> SwitchingAccount -> Authenticated
    Authenticated -> Expired            (dispatcher saw an auth failure)
    Authenticated -> Unauthenticated    (logout)

The manager mediates between the Remote Auth Gateway and the Credential
Store. Gateway failures come back as `AuthResult` values, never as
exceptions.
"""

import logging
from enum import Enum
from typing import Callable, List, Optional, Union

from .credential_store import CredentialStore
from .errors import AuthErrorKind, AuthResult
from .gateway import RemoteAuthGateway
from .logging_setup import token_preview
from .session_data import AuthGrant, CustomerRecord, Session, find_active_account, same_account
from .signals import AuthEventBus, AuthExpiredEvent, auth_expired_events

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    SWITCHING_ACCOUNT = "switching_account"
    EXPIRED = "expired"


StateListener = Callable[[SessionState, Optional[Session]], None]

SIGNED_IN_STATES = frozenset({SessionState.AUTHENTICATED, SessionState.SWITCHING_ACCOUNT})


class SessionManager:
    def __init__(
        self,
        gateway: RemoteAuthGateway,
        store: CredentialStore,
        events: Optional[AuthEventBus] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.events = events or auth_expired_events
        self._state = SessionState.UNAUTHENTICATED
        self._session: Optional[Session] = None
        self._listeners: List[StateListener] = []
        # Bumped by every switch, logout and expiry so a late switch
        # response can tell it has been overtaken
        self._generation = 0

    # --- Lifecycle ---

    async def init(self, revalidate: bool = False) -> SessionState:
        """Restore the session held by the credential store, if any."""
        stored = self.store.read()
        if stored is None:
            self._session = None
            self._set_state(SessionState.UNAUTHENTICATED)
            return self._state

        self._session = self._with_identity_invariant(stored)
        self._set_state(SessionState.AUTHENTICATED)
        logger.info("SESSION: init - Restored session for customer id=%s", stored.active_customer.id)

        if revalidate:
            result = await self.refresh_customer_data()
            if not result.ok and result.error.rejects_session:
                logger.info("SESSION: init - Stored token rejected (%s), clearing", result.error.kind.value)
                self.store.clear()
                self._session = None
                self._generation += 1
                self._set_state(SessionState.UNAUTHENTICATED)
            elif not result.ok:
                logger.warning("SESSION: init - Could not revalidate (%s), keeping cached session", result.error.kind.value)
        return self._state

    def teardown(self) -> None:
        self._listeners.clear()
        self._generation += 1

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Read side ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._state in SIGNED_IN_STATES and self._session is not None

    @property
    def active_customer(self) -> Optional[CustomerRecord]:
        return self._session.active_customer if self._session else None

    @property
    def linked_accounts(self) -> List[CustomerRecord]:
        return list(self._session.linked_accounts) if self._session else []

    @property
    def token(self) -> Optional[str]:
        return self._session.token if self._session else None

    def is_active_account(self, account: CustomerRecord) -> bool:
        active = self.active_customer
        return active is not None and same_account(account, active)

    # --- Login flows ---

    async def login_with_credentials(self, phone: str, password: str) -> AuthResult[Session]:
        return await self._authenticate(self.gateway.login_with_credentials(phone, password), "login_with_credentials")

    async def request_otp(self, phone: str) -> AuthResult[dict]:
        return await self.gateway.request_otp(phone)

    async def resend_otp(self, phone: str) -> AuthResult[dict]:
        return await self.gateway.resend_otp(phone)

    async def verify_otp(self, phone: str, code: str) -> AuthResult[Session]:
        return await self._authenticate(self.gateway.verify_otp(phone, code), "verify_otp")

    async def login_by_phone_only(self, phone: str) -> AuthResult[Session]:
        """
        Trusted bypass. Only reachable from contexts that verified the phone
        out-of-band; the HTTP surface gates it behind a shared key.
        """
        return await self._authenticate(self.gateway.login_by_phone_only(phone), "login_by_phone_only")

    async def bootstrap_from_token(self, token: str) -> AuthResult[Session]:
        """
        Sign in with an opaque token of unknown kind: first as a session token,
        then as a single-use login token.
        """
        previous_state = self._state
        self._set_state(SessionState.AUTHENTICATING)
        logger.info("SESSION: bootstrap_from_token - token %s", token_preview(token))

        validated = await self.gateway.validate_session_token(token)
        if validated.ok:
            grant = AuthGrant(customer=validated.value, token=token)
            return AuthResult.success(self._establish(grant, keep_accounts=True))

        logger.info(
            "SESSION: bootstrap_from_token - Not a session token (%s), trying login token exchange",
            validated.error.kind.value,
        )
        exchanged = await self.gateway.exchange_login_token(token)
        if exchanged.ok:
            return AuthResult.success(self._establish(exchanged.value, keep_accounts=True))

        self._fail_authentication(previous_state)
        return AuthResult(error=exchanged.error)

    async def _authenticate(self, call, operation: str) -> AuthResult[Session]:
        previous_state = self._state
        self._set_state(SessionState.AUTHENTICATING)
        result = await call
        if not result.ok:
            logger.info("SESSION: %s - failed: %s", operation, result.error.kind.value)
            self._fail_authentication(previous_state)
            return AuthResult(error=result.error)
        logger.info("SESSION: %s - succeeded for customer id=%s", operation, result.value.customer.id)
        return AuthResult.success(self._establish(result.value, keep_accounts=False))

    def _fail_authentication(self, previous_state: SessionState) -> None:
        # An existing session survives a failed re-login untouched
        if previous_state in SIGNED_IN_STATES and self._session is not None:
            self._set_state(SessionState.AUTHENTICATED)
        else:
            self._set_state(SessionState.UNAUTHENTICATED)

    # --- Account switching ---

    async def switch_account(self, target_id: Union[int, str]) -> AuthResult[Session]:
        if not self.is_authenticated:
            return AuthResult.failure(AuthErrorKind.EXPIRED, "Not signed in")

        current = self._session
        if current.active_customer.id is not None and str(current.active_customer.id) == str(target_id):
            logger.debug("SESSION: switch_account - %s is already active, nothing to do", target_id)
            return AuthResult.success(current)

        self._generation += 1
        generation = self._generation
        self._set_state(SessionState.SWITCHING_ACCOUNT)
        logger.info("SESSION: switch_account - %s -> %s", current.active_customer.id, target_id)

        result = await self.gateway.switch_account(current.token, target_id)

        if generation != self._generation:
            logger.warning("SESSION: switch_account - Response for %s arrived after a newer operation, discarding", target_id)
            return AuthResult.failure(AuthErrorKind.SUPERSEDED, "Account switch was superseded")

        if not result.ok:
            logger.info("SESSION: switch_account - failed (%s), keeping customer id=%s",
                        result.error.kind.value, current.active_customer.id)
            self._set_state(SessionState.AUTHENTICATED)
            return AuthResult(error=result.error)

        return AuthResult.success(self._establish(result.value, keep_accounts=True))

    # --- Token / data refresh ---

    async def refresh_token(self) -> AuthResult[Session]:
        if not self.is_authenticated:
            return AuthResult.failure(AuthErrorKind.EXPIRED, "Not signed in")
        generation = self._generation
        result = await self.gateway.refresh_token(self._session.token)
        if generation != self._generation:
            return AuthResult.failure(AuthErrorKind.SUPERSEDED, "Token refresh was superseded")
        if not result.ok:
            return AuthResult(error=result.error)
        return AuthResult.success(self._establish(result.value, keep_accounts=True))

    async def refresh_customer_data(self) -> AuthResult[Session]:
        """Re-read the active customer for the current token."""
        if not self.is_authenticated:
            return AuthResult.failure(AuthErrorKind.EXPIRED, "Not signed in")
        generation = self._generation
        token = self._session.token
        result = await self.gateway.validate_session_token(token)
        if generation != self._generation:
            return AuthResult.failure(AuthErrorKind.SUPERSEDED, "Customer refresh was superseded")
        if not result.ok:
            return AuthResult(error=result.error)
        return AuthResult.success(self._establish(AuthGrant(customer=result.value, token=token), keep_accounts=True))

    # --- Teardown transitions ---

    def expire(self, message: str = "Authentication expired", status: int = 401,
               token: Optional[str] = None) -> bool:
        """
        Authenticated -> Expired. `token` is the credential the failing request
        carried; failures of an earlier session leave the current one alone.
        The "auth expired" signal fires once per session. Returns True when
        the transition happened.
        """
        stored_token = self.store.read_token()
        current_token = stored_token or self.token
        if token is not None and current_token is not None and token != current_token:
            logger.debug("SESSION: expire - Failure belongs to an earlier session (%s), ignoring", token_preview(token))
            return False

        self.store.clear()

        if self._session is None or self._state not in SIGNED_IN_STATES:
            logger.debug("SESSION: expire - No live session, nothing to signal")
            return False

        logger.info("SESSION: expire - Session for customer id=%s expired (HTTP %s)",
                    self._session.active_customer.id, status)
        self._session = None
        self._generation += 1
        self._set_state(SessionState.EXPIRED)
        self.events.emit(AuthExpiredEvent(message=message, status=status, scope="customer"))
        return True

    async def logout(self, notify_server: bool = False) -> None:
        """Clear the session. Never fails from the caller's perspective."""
        token = self.token
        self.store.clear()
        self._session = None
        self._generation += 1
        self._set_state(SessionState.UNAUTHENTICATED)
        logger.info("SESSION: logout - Session cleared")

        if notify_server and token:
            result = await self.gateway.logout(token)
            if not result.ok:
                logger.info("SESSION: logout - Server notification failed (%s), ignored", result.error.kind.value)

    # --- Internals ---

    def _establish(self, grant: AuthGrant, keep_accounts: bool) -> Session:
        """
        Persist a granted session. When the grant carries no linkage and
        `keep_accounts` is set, the previously stored accounts list is kept and
        injected into the new active customer.
        """
        customer = grant.customer
        if customer.linked_accounts:
            accounts = list(customer.linked_accounts)
        elif keep_accounts:
            accounts = self.store.read_linked_accounts()
            if not accounts and self._session is not None:
                accounts = list(self._session.linked_accounts)
            if accounts:
                customer = customer.model_copy(update={"linked_accounts": accounts})
        else:
            accounts = []

        session = self._with_identity_invariant(
            Session(token=grant.token, active_customer=customer, linked_accounts=accounts)
        )
        self.store.write(session)
        self._session = session
        self._set_state(SessionState.AUTHENTICATED)
        return session

    @staticmethod
    def _with_identity_invariant(session: Session) -> Session:
        """A non-empty accounts list must contain the active customer."""
        if not session.linked_accounts:
            return session
        if find_active_account(session.linked_accounts, session.active_customer) is not None:
            return session
        logger.warning(
            "SESSION: Active customer id=%s missing from linked accounts, adding it",
            session.active_customer.id,
        )
        accounts = [session.active_customer.without_linkage()] + list(session.linked_accounts)
        customer = session.active_customer
        if customer.linked_accounts:
            customer = customer.model_copy(update={"linked_accounts": accounts})
        return session.model_copy(update={"linked_accounts": accounts, "active_customer": customer})

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.debug("SESSION: state %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state, self._session)
            except Exception:
                logger.exception("SESSION: state listener %r failed", listener)
