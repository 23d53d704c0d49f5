import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from src.storage.errors import ConfigurationError
from src.storage.sheets_transport import AuthMode


@dataclass
class Config:
    """Centralized configuration loaded from environment variables."""

    spreadsheet_id: str
    service_account_email: Optional[str] = None
    private_key: Optional[str] = None
    api_key: Optional[str] = None
    log_level: str = "INFO"
    timezone: str = "UTC"
    request_timeout: float = 30.0
    max_retries: int = 3
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    @property
    def auth_mode(self) -> AuthMode:
        """Service-account credentials win when both credential kinds are set."""

        if self.service_account_email and self.private_key:
            return AuthMode.SERVICE_ACCOUNT
        return AuthMode.API_KEY


def load_config() -> Config:
    """Load configuration values from environment variables.

    The function also loads values from a local `.env` file when present to simplify
    development workflows.
    """

    load_dotenv()

    spreadsheet_id = _require("GOOGLE_SHEETS_SPREADSHEET_ID")
    service_account_email = os.getenv("GOOGLE_SHEETS_SERVICE_ACCOUNT_EMAIL")
    private_key = os.getenv("GOOGLE_SHEETS_PRIVATE_KEY")
    api_key = os.getenv("GOOGLE_SHEETS_API_KEY")

    service_account_json = os.getenv("GOOGLE_SHEETS_SERVICE_ACCOUNT_JSON")
    if service_account_json and not (service_account_email and private_key):
        info = _load_service_account_info(service_account_json)
        service_account_email = info["client_email"]
        private_key = info["private_key"]

    if not ((service_account_email and private_key) or api_key):
        raise ConfigurationError(
            "Provide GOOGLE_SHEETS_SERVICE_ACCOUNT_EMAIL and GOOGLE_SHEETS_PRIVATE_KEY, "
            "GOOGLE_SHEETS_SERVICE_ACCOUNT_JSON, or GOOGLE_SHEETS_API_KEY for Google Sheets access"
        )

    log_level = os.getenv("LOG_LEVEL", "INFO")
    timezone = os.getenv("TIMEZONE", "UTC")
    _validate_timezone(timezone)

    request_timeout = _parse_positive_float(
        os.getenv("SHEETS_REQUEST_TIMEOUT", "30"), "SHEETS_REQUEST_TIMEOUT"
    )
    max_retries = _parse_non_negative_int(os.getenv("SHEETS_MAX_RETRIES", "3"), "SHEETS_MAX_RETRIES")
    api_host = os.getenv("API_HOST", "127.0.0.1")
    api_port = _parse_port(os.getenv("API_PORT", "8000"), "API_PORT")

    return Config(
        spreadsheet_id=spreadsheet_id,
        service_account_email=service_account_email,
        private_key=private_key,
        api_key=api_key,
        log_level=log_level,
        timezone=timezone,
        request_timeout=request_timeout,
        max_retries=max_retries,
        api_host=api_host,
        api_port=api_port,
    )


def _parse_positive_float(value: str, var_name: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:  # noqa: BLE001
        raise ConfigurationError(f"{var_name} must be a number of seconds") from exc
    if parsed <= 0:
        raise ConfigurationError(f"{var_name} must be positive")
    return parsed


def _parse_non_negative_int(value: str, var_name: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:  # noqa: BLE001
        raise ConfigurationError(f"{var_name} must be an integer") from exc
    if parsed < 0:
        raise ConfigurationError(f"{var_name} cannot be negative")
    return parsed


def _parse_port(value: str, var_name: str) -> int:
    port = _parse_non_negative_int(value, var_name)
    if not 0 < port < 65536:
        raise ConfigurationError(f"{var_name} must be between 1 and 65535")
    return port


def _validate_timezone(value: str) -> None:
    """Ensure provided timezone is valid for ZoneInfo."""

    try:
        ZoneInfo(value)
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(
            "TIMEZONE must be a valid IANA timezone, e.g., 'UTC' or 'America/New_York'"
        ) from exc


def _load_service_account_info(value: str) -> Dict[str, Any]:
    """Parse a downloaded service-account key file passed inline as JSON."""

    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            "GOOGLE_SHEETS_SERVICE_ACCOUNT_JSON must be valid JSON if provided"
        ) from exc

    if not isinstance(parsed, dict):
        raise ConfigurationError("GOOGLE_SHEETS_SERVICE_ACCOUNT_JSON must represent a JSON object")

    missing = [key for key in ("client_email", "private_key") if not parsed.get(key)]
    if missing:
        raise ConfigurationError(
            f"GOOGLE_SHEETS_SERVICE_ACCOUNT_JSON is missing required keys: {', '.join(missing)}"
        )
    return parsed


def _require(var_name: str) -> str:
    """Fetch and assert that an environment variable is present."""

    value = os.getenv(var_name)
    if not value:
        raise ConfigurationError(f"{var_name} is required to reach the spreadsheet")
    return value
