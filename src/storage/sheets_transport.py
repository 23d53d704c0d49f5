import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar
from urllib.parse import quote

import requests

from src.storage.errors import (
    NON_RETRYABLE_ERRORS,
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    SheetsPermissionError,
    TransientTransportError,
)
from src.storage.token_manager import ServiceAccountTokenManager


logger = logging.getLogger(__name__)

SHEETS_API_URL = "https://sheets.googleapis.com/v4/spreadsheets"
DEFAULT_TIMEOUT_SECONDS = 30.0
RATE_LIMITED = 429
INVALID_KEY_MARKERS = ("API key not valid", "API_KEY_INVALID")
MISSING_RANGE_MARKERS = ("Unable to parse range", "Requested entity was not found")

T = TypeVar("T")


class AuthMode(str, Enum):
    SERVICE_ACCOUNT = "service_account"
    API_KEY = "api_key"


def build_url(endpoint: str, api_key: Optional[str] = None) -> str:
    """Append ``key=`` to an endpoint whether or not it already has a query string."""

    if not api_key:
        return endpoint
    separator = "&" if "?" in endpoint else "?"
    return f"{endpoint}{separator}key={quote(api_key, safe='')}"


def stringify_rows(rows: Sequence[Sequence[Any]]) -> List[List[str]]:
    """The store has no native types: every outbound cell becomes a string."""

    return [["" if cell is None else str(cell) for cell in row] for row in rows]


class SheetsTransport:
    """Authenticated range reads and writes against the Sheets v4 REST endpoint."""

    def __init__(
        self,
        spreadsheet_id: str,
        *,
        token_manager: Optional[ServiceAccountTokenManager] = None,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        base_url: str = SHEETS_API_URL,
    ) -> None:
        if not spreadsheet_id:
            raise ConfigurationError(
                "Google Sheets Spreadsheet ID is required. "
                "Please check your GOOGLE_SHEETS_SPREADSHEET_ID environment variable."
            )
        if token_manager is None and not api_key:
            raise ConfigurationError(
                "Either Service Account credentials (email + private key) or API key must be provided."
            )

        self.spreadsheet_id = spreadsheet_id
        self.token_manager = token_manager
        self.api_key = None if token_manager else api_key
        self.auth_mode = AuthMode.SERVICE_ACCOUNT if token_manager else AuthMode.API_KEY
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._sleep = sleep

        if self.auth_mode is AuthMode.API_KEY:
            logger.warning(
                "Using API key authentication; write operations are unavailable",
                extra={"spreadsheet_id": spreadsheet_id},
            )

    @classmethod
    def from_credentials(
        cls,
        spreadsheet_id: str,
        *,
        service_account_email: Optional[str] = None,
        private_key: Optional[str] = None,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        **kwargs: Any,
    ) -> "SheetsTransport":
        """Pick service-account mode when email and key are present, else API-key mode."""

        token_manager = None
        if service_account_email and private_key:
            token_manager = ServiceAccountTokenManager(
                service_account_email,
                private_key,
                session=session,
                timeout=kwargs.get("timeout", DEFAULT_TIMEOUT_SECONDS),
            )
        return cls(
            spreadsheet_id,
            token_manager=token_manager,
            api_key=api_key,
            session=session,
            **kwargs,
        )

    @property
    def can_write(self) -> bool:
        return self.auth_mode is AuthMode.SERVICE_ACCOUNT

    def get_values(self, range_ref: str) -> List[List[str]]:
        """Return the rows stored in ``range_ref``; an empty range yields ``[]``."""

        url = build_url(self._values_url(range_ref), self.api_key)
        payload = self._execute_with_retries(
            lambda: self._request("GET", url, range_ref=range_ref),
            action="get_values",
            range_ref=range_ref,
        )
        values = payload.get("values", [])
        logger.debug(
            "Fetched sheet range",
            extra={"range": range_ref, "row_count": len(values)},
        )
        return values

    def update_values(self, range_ref: str, rows: Sequence[Sequence[Any]]) -> Dict[str, Any]:
        """Overwrite ``range_ref`` with ``rows``; safe to retry."""

        self._require_write_access()
        body = self._build_body(range_ref, rows)
        url = build_url(f"{self._values_url(range_ref)}?valueInputOption=RAW", self.api_key)
        logger.info(
            "Updating sheet range",
            extra={"range": range_ref, "row_count": len(body["values"])},
        )
        return self._execute_with_retries(
            lambda: self._request("PUT", url, range_ref=range_ref, json_body=body),
            action="update_values",
            range_ref=range_ref,
        )

    def append_values(self, range_ref: str, rows: Sequence[Sequence[Any]]) -> Dict[str, Any]:
        """Append ``rows`` after the last row of the table in ``range_ref``.

        Only explicit rate-limit rejections are retried: any other failure may
        already have written the rows, and the store offers no dedup.
        """

        self._require_write_access()
        body = self._build_body(range_ref, rows)
        url = build_url(
            f"{self._values_url(range_ref)}:append?valueInputOption=RAW&insertDataOption=INSERT_ROWS",
            self.api_key,
        )
        logger.info(
            "Appending rows to sheet",
            extra={"range": range_ref, "row_count": len(body["values"])},
        )
        response = self._execute_with_retries(
            lambda: self._request("POST", url, range_ref=range_ref, json_body=body),
            action="append_values",
            range_ref=range_ref,
            retry_if=lambda exc: exc.status_code == RATE_LIMITED,
        )

        updates = response.get("updates") if isinstance(response, dict) else None
        updated_rows = updates.get("updatedRows") if isinstance(updates, dict) else None
        if not updated_rows:
            logger.error(
                "Google Sheets append returned no updates",
                extra={
                    "range": range_ref,
                    "spreadsheet_id": self.spreadsheet_id,
                    "response_keys": sorted(response.keys()) if isinstance(response, dict) else None,
                },
            )
            raise TransientTransportError("Google Sheets append did not write any rows")
        return response

    def get_spreadsheet_metadata(self) -> Dict[str, Any]:
        """Fetch spreadsheet properties and the list of worksheet tabs."""

        url = build_url(f"{self.base_url}/{self.spreadsheet_id}", self.api_key)
        return self._execute_with_retries(
            lambda: self._request("GET", url, range_ref=None),
            action="get_metadata",
            range_ref=None,
        )

    def _values_url(self, range_ref: str) -> str:
        return f"{self.base_url}/{self.spreadsheet_id}/values/{quote(range_ref, safe='!:')}"

    @staticmethod
    def _build_body(range_ref: str, rows: Sequence[Sequence[Any]]) -> Dict[str, Any]:
        return {"range": range_ref, "majorDimension": "ROWS", "values": stringify_rows(rows)}

    def _require_write_access(self) -> None:
        if not self.can_write:
            raise SheetsPermissionError(
                "Write operations require Service Account authentication. "
                "API keys only provide read access."
            )

    def _auth_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token_manager is not None:
            headers["Authorization"] = f"Bearer {self.token_manager.get_access_token()}"
        return headers

    def _request(
        self,
        method: str,
        url: str,
        *,
        range_ref: Optional[str],
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        headers = self._auth_headers()
        try:
            response = self._session.request(
                method, url, headers=headers, json=json_body, timeout=self.timeout
            )
        except requests.Timeout as exc:
            raise TransientTransportError(
                f"Google Sheets request timed out after {self.timeout}s"
            ) from exc
        except requests.ConnectionError as exc:
            raise TransientTransportError(f"Could not reach Google Sheets: {exc}") from exc
        except requests.RequestException as exc:
            raise TransientTransportError(f"Google Sheets request failed: {exc}") from exc

        if 200 <= response.status_code < 300:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                raise TransientTransportError(
                    "Google Sheets returned a non-JSON response",
                    status_code=response.status_code,
                    body=response.text or "",
                ) from exc
        raise self._classify_error(response, range_ref)

    def _classify_error(self, response: requests.Response, range_ref: Optional[str]) -> Exception:
        status_code = response.status_code
        body = response.text or ""
        detail = _error_detail(response)
        logger.warning(
            "Google Sheets returned an error",
            extra={"status_code": status_code, "range": range_ref, "detail": detail},
        )

        if status_code == 401 or any(marker in detail for marker in INVALID_KEY_MARKERS):
            if self.token_manager is not None:
                self.token_manager.invalidate()
            return AuthenticationError(
                f"Google rejected the credentials ({status_code}): {detail}", status_code=status_code
            )
        if status_code == 403:
            if self.auth_mode is AuthMode.API_KEY:
                return SheetsPermissionError(
                    "Access denied. API keys have limited permissions. Consider upgrading to "
                    "Service Account authentication for full access."
                )
            return SheetsPermissionError(
                "Access denied. Please ensure the Service Account has been granted access "
                "to the spreadsheet."
            )
        if status_code == 404 or (
            status_code == 400 and any(marker in detail for marker in MISSING_RANGE_MARKERS)
        ):
            if range_ref:
                worksheet = range_ref.split("!")[0]
                return NotFoundError(
                    f'Sheet not found: the worksheet "{worksheet}" or range "{range_ref}" '
                    "does not exist in your Google Sheet."
                )
            return NotFoundError(
                "Spreadsheet not found. Please verify your spreadsheet ID is correct."
            )
        return TransientTransportError(
            f"Google Sheets request failed ({status_code}): {response.reason}. {detail}",
            status_code=status_code,
            body=body,
        )

    def _execute_with_retries(
        self,
        func: Callable[[], T],
        *,
        action: str,
        range_ref: Optional[str],
        retry_if: Callable[[TransientTransportError], bool] = lambda exc: True,
    ) -> T:
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                logger.debug(
                    "Calling Google Sheets API",
                    extra={"action": action, "attempt": attempt + 1, "range": range_ref},
                )
                return func()
            except NON_RETRYABLE_ERRORS:
                raise
            except TransientTransportError as exc:
                is_last_attempt = attempt == attempts - 1
                if is_last_attempt or not retry_if(exc):
                    logger.error(
                        "Google Sheets API call failed",
                        extra={
                            "action": action,
                            "attempt": attempt + 1,
                            "range": range_ref,
                            "spreadsheet_id": self.spreadsheet_id,
                            "error": str(exc),
                        },
                    )
                    raise
                delay = self.retry_delay * (2**attempt)
                logger.warning(
                    "Google Sheets API call failed, retrying",
                    extra={"action": action, "attempt": attempt + 1, "delay": delay, "error": str(exc)},
                )
                self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover


def _error_detail(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or ""
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("status") or response.text)
    if isinstance(error, str):
        return error
    return response.text or ""
