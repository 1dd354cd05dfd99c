# src/customer_portal_bff/session_data.py

import re
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Service statuses the portal distinguishes. The backend also reports others
# ("isolated" while unpaid, "terminated"), which are kept as-is.
KNOWN_STATUSES = frozenset({"active", "inactive", "suspended", "isolated", "terminated"})

PHONE_PATTERN = re.compile(r"^(?:\+62|62|0)[0-9]{9,13}$")


class CustomerRecord(BaseModel):
    """
    Snapshot of one billable service/account as reported by the backend.
    Unknown fields sent by the server are kept so that a stored record
    round-trips unchanged.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[Union[int, str]] = None
    customer_code: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("customer_id", "customerCode", "customer_code"),
        serialization_alias="customer_id",
    )
    service_id: Optional[Union[int, str]] = Field(
        default=None,
        validation_alias=AliasChoices("service_id", "serviceId"),
        serialization_alias="service_id",
    )
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    package_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("package_name", "packageName"),
        serialization_alias="package_name",
    )
    package_price: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("package_price", "packagePrice"),
        serialization_alias="package_price",
    )
    pppoe_username: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("pppoe_username", "pppoeUsername", "username"),
        serialization_alias="pppoe_username",
    )
    status: Optional[str] = None
    # The server may or may not echo linkage on every response
    linked_accounts: Optional[List["CustomerRecord"]] = Field(
        default=None,
        validation_alias=AliasChoices("accounts", "linkedAccounts", "linked_accounts"),
        serialization_alias="accounts",
    )

    @field_validator("customer_code", mode="before")
    @classmethod
    def coerce_customer_code(cls, v: Any) -> Any:
        # 5-digit business codes sometimes arrive as numbers
        if isinstance(v, int):
            return str(v)
        return v

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower() or None
        return v

    @property
    def has_known_status(self) -> bool:
        return self.status in KNOWN_STATUSES

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def without_linkage(self) -> "CustomerRecord":
        return self.model_copy(update={"linked_accounts": None})


class Session(BaseModel):
    """Authentication context for one browser/app instance."""
    token: str
    active_customer: CustomerRecord
    linked_accounts: List[CustomerRecord] = Field(default_factory=list)


class AuthGrant(BaseModel):
    """Canonical shape of every gateway call that issues a credential."""
    customer: CustomerRecord
    token: str


class ApiResponse(BaseModel):
    """Normalized envelope returned by the dispatcher for non-auth endpoints."""
    success: bool
    data: Any = None
    message: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    meta: Optional[Dict[str, Any]] = None


def same_account(candidate: CustomerRecord, active: CustomerRecord) -> bool:
    """
    Identity match between a linked account and the active customer.

    Account identity is keyed inconsistently across data sources, so matching
    falls back in order: pppoe username (when both sides carry one), then id,
    then the candidate's service id against the active id.
    """
    if candidate.pppoe_username and active.pppoe_username:
        return candidate.pppoe_username == active.pppoe_username
    if candidate.id is not None and active.id is not None and str(candidate.id) == str(active.id):
        return True
    if candidate.service_id is not None and active.id is not None:
        return str(candidate.service_id) == str(active.id)
    return False


def find_active_account(
    accounts: List[CustomerRecord], active: CustomerRecord
) -> Optional[CustomerRecord]:
    for account in accounts:
        if same_account(account, active):
            return account
    return None


def format_phone(phone: str) -> str:
    """Display form of a phone number: country code 62 becomes a leading 0."""
    if phone.startswith("62"):
        return "0" + phone[2:]
    return phone


def validate_phone(phone: str) -> bool:
    return bool(PHONE_PATTERN.match(phone))
