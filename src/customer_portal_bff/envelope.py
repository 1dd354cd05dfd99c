# src/customer_portal_bff/envelope.py
"""
Normalization of backend response bodies.

The backend answers with `{success, data?, message?}` but sometimes nests the
payload one level deeper (`data.data`), sometimes sends the payload without a
`data` key, and spells the issued credential `token` or `sessionToken`. This
module is the only place that knows about those variations.
"""

from typing import Any, Dict, List, Optional, Tuple

TOKEN_KEYS = ("token", "sessionToken", "session_token")
ACCOUNT_KEYS = ("accounts", "linkedAccounts", "linked_accounts")


def unwrap(body: Any) -> Tuple[bool, Any, Optional[str]]:
    """
    Returns `(success, data, message)` for a decoded JSON body.
    A body without an explicit `success` flag counts as successful.
    """
    if not isinstance(body, dict):
        return False, None, None

    success = body.get("success", True) is not False
    message = body.get("message")
    data = body.get("data")

    if isinstance(data, dict) and isinstance(data.get("data"), (dict, list)):
        data = data["data"]
    elif "data" not in body:
        data = {k: v for k, v in body.items() if k not in ("success", "message", "meta")}

    return success, data, message


def extract_token(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    for key in TOKEN_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def extract_customer(data: Any) -> Optional[Dict[str, Any]]:
    """
    Customer payload with any linkage reported beside it folded into the
    customer itself under `accounts`.
    """
    if not isinstance(data, dict):
        return None
    customer = data.get("customer")
    if not isinstance(customer, dict):
        return None

    customer = dict(customer)
    if not _find_accounts(customer):
        sibling_accounts = _find_accounts(data)
        if sibling_accounts:
            customer["accounts"] = sibling_accounts
    return customer


def _find_accounts(payload: Dict[str, Any]) -> List[Any]:
    for key in ACCOUNT_KEYS:
        value = payload.get(key)
        if isinstance(value, list) and value:
            return value
    return []
