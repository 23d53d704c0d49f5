import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from src.storage.errors import NotFoundError, SheetsError, SheetsPermissionError
from src.storage.row_codec import REQUIRED_SHEETS, SCHEMAS
from src.storage.sheets_transport import AuthMode, SheetsTransport


logger = logging.getLogger(__name__)

EXPECTED_HEADERS: Dict[str, List[str]] = {
    schema.sheet_name: list(schema.headers)
    for schema in SCHEMAS.values()
    if schema.sheet_name in REQUIRED_SHEETS
}


@dataclass
class VerificationResult:
    success: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "details": self.details}


class ConfigurationVerifier:
    """Check the spreadsheet, then its required tabs and their header rows.

    Each step only runs when the previous one passed, and every failure is
    reported as a result rather than raised so a config screen can render it.
    """

    def __init__(self, transport: SheetsTransport) -> None:
        self.transport = transport

    def verify(self) -> VerificationResult:
        auth_mode = self.transport.auth_mode.value
        try:
            metadata = self.transport.get_spreadsheet_metadata()
        except SheetsPermissionError as exc:
            if self.transport.auth_mode is AuthMode.SERVICE_ACCOUNT:
                message = (
                    "Access denied. Please ensure the Service Account email has been granted "
                    "Editor access to the spreadsheet."
                )
            else:
                message = (
                    "Access denied. API key has limited permissions. Consider upgrading to "
                    "Service Account for full functionality."
                )
            return self._failure(message, authMode=auth_mode, error=str(exc))
        except NotFoundError as exc:
            return self._failure(
                "Spreadsheet not found. Please verify your spreadsheet ID is correct.",
                authMode=auth_mode,
                error=str(exc),
            )
        except SheetsError as exc:
            return self._failure(
                f"Configuration verification failed: {exc}",
                authMode=auth_mode,
                error=str(exc),
                remediation=exc.remediation,
            )

        existing_sheets = [
            sheet.get("properties", {}).get("title", "") for sheet in metadata.get("sheets", [])
        ]
        missing_sheets = [name for name in REQUIRED_SHEETS if name not in existing_sheets]
        if missing_sheets:
            return self._failure(
                f"Missing required worksheets: {', '.join(missing_sheets)}. "
                "Please create these worksheets in your Google Sheet.",
                existingSheets=existing_sheets,
                missingSheets=missing_sheets,
            )

        header_issues = self._check_headers()
        if header_issues:
            return self._failure(
                "Header configuration issues found.",
                headerIssues=header_issues,
                expectedHeaders=EXPECTED_HEADERS,
            )

        write_access = self.transport.can_write
        access_note = (
            "Full read/write access available." if write_access else "Read-only access with API key."
        )
        logger.info(
            "Spreadsheet configuration verified",
            extra={"spreadsheet_id": self.transport.spreadsheet_id, "auth_mode": auth_mode},
        )
        return VerificationResult(
            success=True,
            message=f"Google Sheets configuration is valid. Authentication mode: {auth_mode}. {access_note}",
            details={
                "spreadsheetTitle": metadata.get("properties", {}).get("title"),
                "worksheets": existing_sheets,
                "spreadsheetId": self.transport.spreadsheet_id,
                "authMode": auth_mode,
                "writeAccess": write_access,
            },
        )

    def _check_headers(self) -> List[str]:
        issues: List[str] = []
        for sheet_name, expected in EXPECTED_HEADERS.items():
            try:
                values = self.transport.get_values(f"{sheet_name}!1:1")
            except SheetsError as exc:
                logger.warning(
                    "Could not read header row",
                    extra={"sheet": sheet_name, "error": str(exc)},
                )
                issues.append(f"Cannot read headers from {sheet_name} sheet.")
                continue

            actual = values[0] if values else []
            if len(actual) < len(expected):
                issues.append(
                    f"{sheet_name} sheet is missing some headers. "
                    f"Expected {len(expected)}, found {len(actual)}."
                )
        return issues

    @staticmethod
    def _failure(message: str, **details: Any) -> VerificationResult:
        logger.warning("Spreadsheet configuration check failed", extra={"reason": message})
        return VerificationResult(success=False, message=message, details=details)
