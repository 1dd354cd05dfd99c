# src/customer_portal_bff/config.py

import logging
from pathlib import Path
from typing import Any, List, Optional, Union

from dotenv import load_dotenv
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# .env is at the project root, two levels up from src/customer_portal_bff/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    logger.info("CustomerPortal-BFF: Loaded .env file from: %s", ENV_FILE_PATH)
else:
    logger.info(
        "CustomerPortal-BFF: .env file not found at %s. Relying on environment variables.",
        ENV_FILE_PATH,
    )

DEFAULT_CUSTOMER_ROUTE_PATTERNS = [
    "/api/v1/customer",
    "/api/v1/support/",
    "/api/v1/billing/customer/",
    "/api/v1/billing/my-",
    "/api/v1/customer-billing/",
]


class Settings(BaseSettings):
    # === Backend / Remote Auth Gateway ===
    API_BASE_URL: str = "http://localhost:3001"
    APP_BASE_URL: str = "http://localhost:3000"
    SWITCH_ACCOUNT_PATH: str = "/api/v1/customer-auth/switch-account"

    # === Timeouts (seconds) ===
    TOKEN_VALIDATION_TIMEOUT: float = 8.0
    REQUEST_TIMEOUT: float = 10.0

    # === Dispatcher route classification ===
    # Pydantic sees a comma-separated string from the env, the validator
    # below turns it into List[str]
    CUSTOMER_ROUTE_PATTERNS: Union[str, List[str]] = DEFAULT_CUSTOMER_ROUTE_PATTERNS

    # === Session Management ===
    SESSION_SECRET_KEY: str = "dev-session-secret-change-in-production"
    SESSION_COOKIE_NAME: str = "session_id"
    SESSION_COOKIE_MAX_AGE: int = 60 * 60 * 4  # 4 hours
    CREDENTIAL_STORE_PATH: Optional[Path] = None

    # Phone-only login is disabled unless an upstream trusted component
    # is configured to present this key
    TRUSTED_LOGIN_KEY: Optional[str] = None

    # === UI redirect targets ===
    LOGIN_PATH: str = "/customer/login"
    PORTAL_PATH: str = "/customer/portal"

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("CUSTOMER_ROUTE_PATTERNS", mode="before")
    @classmethod
    def parse_comma_separated_patterns(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            if not v.strip():
                return []
            return [pattern.strip() for pattern in v.split(",") if pattern.strip()]
        if isinstance(v, list):
            return v
        raise TypeError("CUSTOMER_ROUTE_PATTERNS: Expected a comma-separated string or a list.")

    @field_validator("API_BASE_URL", "APP_BASE_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def check_final_patterns_type(self) -> "Settings":
        if not isinstance(self.CUSTOMER_ROUTE_PATTERNS, list):
            raise ValueError(
                f"CUSTOMER_ROUTE_PATTERNS ended up as {type(self.CUSTOMER_ROUTE_PATTERNS)}, expected list."
            )
        if not all(isinstance(item, str) for item in self.CUSTOMER_ROUTE_PATTERNS):
            raise ValueError("All items in CUSTOMER_ROUTE_PATTERNS must be strings.")
        if self.TOKEN_VALIDATION_TIMEOUT <= 0 or self.REQUEST_TIMEOUT <= 0:
            raise ValueError("Timeouts must be positive.")
        return self

    def login_url_for(self, token: str) -> str:
        return f"{self.APP_BASE_URL}{self.LOGIN_PATH}/{token}"


try:
    settings = Settings()
    logger.info("CustomerPortal-BFF: API base URL: %s", settings.API_BASE_URL)
    logger.info("CustomerPortal-BFF: Customer route patterns: %s", settings.CUSTOMER_ROUTE_PATTERNS)
except Exception:
    logger.exception("CustomerPortal-BFF: Error instantiating Settings")
    raise
