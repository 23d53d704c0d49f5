"""Error taxonomy shared by the storage layer, the data service, and the API.

Every failure carries a ``remediation`` kind so callers can switch on it instead
of parsing messages:

* ``configuration`` - the deployment is misconfigured (ids, keys, sheet layout)
* ``credentials`` - the operation is impossible with the current credentials
* ``retry`` - a transient upstream failure; try again later
* ``input`` - the caller supplied data the domain rejects
"""

from __future__ import annotations

from typing import Iterable, List, Optional


class SheetsError(Exception):
    """Base class for every failure raised by the sheet-backed core."""

    remediation = "configuration"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def with_context(self, context: str) -> "SheetsError":
        """Return a copy of this error, same class and attributes, with a prefixed message."""

        clone = self.__class__.__new__(self.__class__)
        clone.__dict__.update(self.__dict__)
        clone.message = f"{context}: {self.message}"
        Exception.__init__(clone, clone.message)
        return clone


class ConfigurationError(SheetsError):
    """Spreadsheet id or credentials are missing or unusable."""


class AuthenticationError(ConfigurationError):
    """Private key is malformed or the OAuth token exchange was rejected."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SheetsPermissionError(SheetsError):
    """HTTP 403, or a write attempted with a read-only API key."""

    remediation = "credentials"


class NotFoundError(SheetsError):
    """Spreadsheet, worksheet, or entity does not exist."""


class RecordNotFoundError(NotFoundError):
    """No row in the worksheet carries the requested id."""

    remediation = "input"


class ValidationError(SheetsError):
    """Aggregated field rule violations detected before any network call."""

    remediation = "input"

    def __init__(self, entity: str, errors: Iterable[str]) -> None:
        self.entity = entity
        self.errors: List[str] = list(errors)
        super().__init__(f"{entity} validation failed: {', '.join(self.errors)}")


class TransientTransportError(SheetsError):
    """Non-2xx response or network failure that may succeed on a later attempt."""

    remediation = "retry"

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class DomainLogicError(SheetsError):
    """Business rule rejected an otherwise valid request."""

    remediation = "input"


NON_RETRYABLE_ERRORS = (ConfigurationError, SheetsPermissionError, NotFoundError)
