# src/customer_portal_bff/credential_store.py

import json
import logging
import os
import tempfile
from collections.abc import MutableMapping
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pydantic import ValidationError

from .session_data import CustomerRecord, Session

logger = logging.getLogger(__name__)

# Storage key names are shared with the web portal and must stay stable
TOKEN_KEY = "customer_token"
CUSTOMER_KEY = "customer_data"
ACCOUNTS_KEY = "customer_accounts"
ADMIN_STORAGE_KEY = "auth-storage"


# --- Storage backends (string key -> string value, like browser local storage) ---

class MemoryStorage(dict):
    """Process-memory storage for one browser/device."""


class JsonFileStorage(MutableMapping):
    """
    Storage persisted as a single JSON object on disk.
    Every mutation rewrites the file through a temporary file + rename.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning("STORE: Could not read %s, starting empty: %s", self.path, e)
            return {}
        if not isinstance(raw, dict):
            logger.warning("STORE: %s does not hold a JSON object, starting empty", self.path)
            return {}
        return {str(k): str(v) for k, v in raw.items()}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(self._data, fh)
        os.replace(tmp_path, self.path)

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._flush()

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


# --- Customer credential namespace ---

class CredentialStore:
    """
    Durable key/value persistence of the customer session: token, active
    customer record and linked accounts list. No session logic lives here.
    """

    def __init__(self, storage: MutableMapping):
        self.storage = storage

    def read(self) -> Optional[Session]:
        """
        Stored session, or None when either the token or the customer is
        missing or malformed. Never raises for bad data.
        """
        token = self.storage.get(TOKEN_KEY)
        customer_raw = self.storage.get(CUSTOMER_KEY)
        if not token or not customer_raw:
            return None

        try:
            customer = CustomerRecord.model_validate_json(customer_raw)
        except ValidationError as e:
            logger.warning("STORE: read - Stored customer record is malformed, treating as absent: %s", e)
            return None

        return Session(token=token, active_customer=customer, linked_accounts=self.read_linked_accounts())

    def read_token(self) -> Optional[str]:
        return self.storage.get(TOKEN_KEY) or None

    def read_linked_accounts(self) -> List[CustomerRecord]:
        accounts_raw = self.storage.get(ACCOUNTS_KEY)
        if not accounts_raw:
            return []
        try:
            payload = json.loads(accounts_raw)
            if not isinstance(payload, list):
                raise ValueError(f"expected a list, got {type(payload).__name__}")
            return [CustomerRecord.model_validate(item) for item in payload]
        except (ValueError, ValidationError) as e:
            logger.warning("STORE: read_linked_accounts - Stored accounts are malformed, ignoring: %s", e)
            return []

    def write(self, session: Session) -> None:
        self.storage[TOKEN_KEY] = session.token
        self.storage[CUSTOMER_KEY] = json.dumps(session.active_customer.to_storage())
        self.write_linked_accounts(session.linked_accounts)
        logger.debug(
            "STORE: write - Stored session for customer id=%s, linked accounts=%d",
            session.active_customer.id, len(session.linked_accounts),
        )

    def write_linked_accounts(self, accounts: List[CustomerRecord]) -> None:
        self.storage[ACCOUNTS_KEY] = json.dumps([account.to_storage() for account in accounts])

    def clear(self) -> None:
        for key in (TOKEN_KEY, CUSTOMER_KEY, ACCOUNTS_KEY):
            self.storage.pop(key, None)


# --- Admin credential namespace ---

class AdminCredentialStore:
    """
    Back-office session token, kept as `state.token` inside a JSON blob so
    it never collides with the customer keys in the same storage.
    """

    def __init__(self, storage: MutableMapping):
        self.storage = storage

    def read_token(self) -> Optional[str]:
        raw = self.storage.get(ADMIN_STORAGE_KEY)
        if not raw:
            return None
        try:
            blob = json.loads(raw)
        except ValueError as e:
            logger.warning("STORE: Admin auth storage is malformed, treating as absent: %s", e)
            return None
        state = blob.get("state") if isinstance(blob, dict) else None
        token = state.get("token") if isinstance(state, dict) else None
        return token if isinstance(token, str) and token else None

    def write_token(self, token: str) -> None:
        raw = self.storage.get(ADMIN_STORAGE_KEY)
        try:
            blob = json.loads(raw) if raw else {}
        except ValueError:
            blob = {}
        if not isinstance(blob, dict):
            blob = {}
        state = blob.get("state") if isinstance(blob.get("state"), dict) else {}
        blob["state"] = {**state, "token": token}
        self.storage[ADMIN_STORAGE_KEY] = json.dumps(blob)

    def clear(self) -> None:
        self.storage.pop(ADMIN_STORAGE_KEY, None)
