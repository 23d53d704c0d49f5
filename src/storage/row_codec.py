"""Typed records for every worksheet and the row codec that maps them to cells.

Each worksheet is a fixed-width table: row 1 holds the headers and data starts at
row 2. A record's dataclass field order *is* the column order, and each field's
default is the value a missing or malformed cell decodes to. This module is the
only place where raw strings from the wire are coerced.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type


class EntityKind(str, Enum):
    PROJECT = "project"
    TASK = "task"
    TIME_ENTRY = "time_entry"
    ACTIVITY = "activity"
    USER = "user"
    CLIENT = "client"
    INVOICE = "invoice"
    EXPENSE = "expense"
    PAYMENT = "payment"


PROJECT_STATUSES = ("Not Started", "In Progress", "Completed", "On Hold")
TASK_PRIORITIES = ("High", "Medium", "Low")
TASK_STATUSES = ("To Do", "In Progress", "Review", "Completed")
CLIENT_STATUSES = ("Active", "Inactive")
INVOICE_STATUSES = ("Draft", "Sent", "Paid", "Overdue", "Cancelled")
EXPENSE_CATEGORIES = ("Travel", "Materials", "Software", "Equipment", "Other")
EXPENSE_STATUSES = ("Pending", "Approved", "Rejected", "Reimbursed")
PAYMENT_METHODS = ("Cash", "Check", "Bank Transfer", "Credit Card", "PayPal", "Other")


@dataclass
class Project:
    id: str = ""
    project_name: str = ""
    client_name: str = ""
    project_description: str = ""
    start_date: str = ""
    end_date: str = ""
    status: str = "Not Started"
    budget: float = 0.0
    per_hour_rate: float = 0.0
    total_estimated_hours: float = 0.0
    total_actual_hours: float = 0.0
    total_billed_hours: float = 0.0
    total_amount: float = 0.0


@dataclass
class Task:
    id: str = ""
    project_id: str = ""
    task_name: str = ""
    task_description: str = ""
    assigned_to: str = ""
    priority: str = "Medium"
    status: str = "To Do"
    estimated_hours: float = 0.0
    actual_hours: float = 0.0
    billed_hours: float = 0.0
    project_per_hour_rate: float = 0.0
    task_per_hour_rate: float = 0.0
    calculated_amount: float = 0.0
    due_date: str = ""
    artifacts: str = ""


@dataclass
class TimeEntry:
    id: str = ""
    project_id: str = ""
    task_id: str = ""
    date: str = ""
    start_time: str = ""
    end_time: str = ""
    duration: float = 0.0
    description: str = ""
    user_name: str = ""


@dataclass
class Activity:
    id: str = ""
    timestamp: str = ""
    type: str = "project_created"
    description: str = ""
    entity_id: str = ""
    entity_name: str = ""
    user_name: str = "System"
    metadata: str = ""


@dataclass
class User:
    # Passwords are stored in plaintext in the Users sheet; this mirrors the
    # existing spreadsheet layout and is a known weakness of the deployment.
    username: str = ""
    password: str = ""
    last_login: str = ""


@dataclass
class Client:
    id: str = ""
    client_name: str = ""
    contact_email: str = ""
    contact_phone: str = ""
    address: str = ""
    company_name: str = ""
    tax_id: str = ""
    payment_terms: float = 0.0
    hourly_rate: float = 0.0
    status: str = "Active"
    created_date: str = ""
    notes: str = ""


@dataclass
class Invoice:
    id: str = ""
    invoice_number: str = ""
    client_id: str = ""
    project_id: str = ""
    issue_date: str = ""
    due_date: str = ""
    status: str = "Draft"
    subtotal: float = 0.0
    tax_rate: float = 0.0
    tax_amount: float = 0.0
    total_amount: float = 0.0
    paid_amount: float = 0.0
    balance_amount: float = 0.0
    payment_date: str = ""
    notes: str = ""
    created_by: str = ""
    created_date: str = ""


@dataclass
class Expense:
    id: str = ""
    project_id: str = ""
    client_id: str = ""
    expense_date: str = ""
    category: str = "Other"
    description: str = ""
    amount: float = 0.0
    receipt_url: str = ""
    billable: bool = False
    reimbursable: bool = False
    status: str = "Pending"
    submitted_by: str = ""
    submitted_date: str = ""
    approved_by: str = ""
    approved_date: str = ""
    notes: str = ""


@dataclass
class Payment:
    id: str = ""
    invoice_id: str = ""
    payment_date: str = ""
    amount: float = 0.0
    payment_method: str = "Bank Transfer"
    reference_number: str = ""
    notes: str = ""
    recorded_by: str = ""
    recorded_date: str = ""


@dataclass(frozen=True)
class EntitySchema:
    kind: EntityKind
    sheet_name: str
    record_type: Type[Any]
    headers: tuple

    @property
    def column_count(self) -> int:
        return len(self.headers)

    @property
    def full_range(self) -> str:
        """Header row plus every data row, e.g. ``Projects!A:M``."""

        return f"{self.sheet_name}!A:{column_letter(self.column_count)}"

    @property
    def header_range(self) -> str:
        return f"{self.sheet_name}!1:1"

    def row_range(self, row_number: int) -> str:
        """The whole-row range for one data row, e.g. ``Projects!A5:M5``."""

        last = column_letter(self.column_count)
        return f"{self.sheet_name}!A{row_number}:{last}{row_number}"

    def cell_range(self, field_name: str, row_number: int) -> str:
        index = [f.name for f in fields(self.record_type)].index(field_name)
        return f"{self.sheet_name}!{column_letter(index + 1)}{row_number}"


SCHEMAS: Dict[EntityKind, EntitySchema] = {
    EntityKind.PROJECT: EntitySchema(
        EntityKind.PROJECT,
        "Projects",
        Project,
        (
            "Project ID", "Project Name", "Client Name", "Project Description", "Start Date",
            "End Date", "Status", "Budget", "Per Hour Rate", "Total Estimated Hours",
            "Total Actual Hours", "Total Billed Hours", "Total Amount",
        ),
    ),
    EntityKind.TASK: EntitySchema(
        EntityKind.TASK,
        "Tasks",
        Task,
        (
            "Task ID", "Project ID", "Task Name", "Task Description", "Assigned To", "Priority",
            "Status", "Estimated Hours", "Actual Hours", "Billed Hours", "Project Per Hour Rate",
            "Task Per Hour Rate", "Calculated Amount", "Due Date", "Artifacts",
        ),
    ),
    EntityKind.TIME_ENTRY: EntitySchema(
        EntityKind.TIME_ENTRY,
        "TimeEntries",
        TimeEntry,
        (
            "Time Entry ID", "Project ID", "Task ID", "Date", "Start Time", "End Time",
            "Duration", "Description/Notes", "User/Employee Name",
        ),
    ),
    EntityKind.ACTIVITY: EntitySchema(
        EntityKind.ACTIVITY,
        "Activities",
        Activity,
        (
            "Activity ID", "Timestamp", "Type", "Description", "Entity ID", "Entity Name",
            "User Name", "Metadata",
        ),
    ),
    EntityKind.USER: EntitySchema(
        EntityKind.USER, "Users", User, ("Username", "Password", "Last Login")
    ),
    EntityKind.CLIENT: EntitySchema(
        EntityKind.CLIENT,
        "Clients",
        Client,
        (
            "ID", "Client Name", "Contact Email", "Contact Phone", "Address", "Company Name",
            "Tax ID", "Payment Terms", "Hourly Rate", "Status", "Created Date", "Notes",
        ),
    ),
    EntityKind.INVOICE: EntitySchema(
        EntityKind.INVOICE,
        "Invoices",
        Invoice,
        (
            "ID", "Invoice Number", "Client ID", "Project ID", "Issue Date", "Due Date", "Status",
            "Subtotal", "Tax Rate", "Tax Amount", "Total Amount", "Paid Amount",
            "Balance Amount", "Payment Date", "Notes", "Created By", "Created Date",
        ),
    ),
    EntityKind.EXPENSE: EntitySchema(
        EntityKind.EXPENSE,
        "Expenses",
        Expense,
        (
            "ID", "Project ID", "Client ID", "Expense Date", "Category", "Description", "Amount",
            "Receipt URL", "Billable", "Reimbursable", "Status", "Submitted By",
            "Submitted Date", "Approved By", "Approved Date", "Notes",
        ),
    ),
    EntityKind.PAYMENT: EntitySchema(
        EntityKind.PAYMENT,
        "Payments",
        Payment,
        (
            "ID", "Invoice ID", "Payment Date", "Amount", "Payment Method", "Reference Number",
            "Notes", "Recorded By", "Recorded Date",
        ),
    ),
}

REQUIRED_SHEETS = tuple(
    SCHEMAS[kind].sheet_name
    for kind in (
        EntityKind.PROJECT,
        EntityKind.TASK,
        EntityKind.TIME_ENTRY,
        EntityKind.ACTIVITY,
        EntityKind.USER,
    )
)


def schema_for(kind: EntityKind) -> EntitySchema:
    return SCHEMAS[EntityKind(kind)]


def column_letter(column_count: int) -> str:
    dividend = column_count
    column_name = ""
    while dividend > 0:
        modulo = (dividend - 1) % 26
        column_name = chr(65 + modulo) + column_name
        dividend = (dividend - modulo) // 26
    return column_name


def parse_number(value: Any) -> float:
    """Safe numeric parse: anything unparseable becomes ``0.0``."""

    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if value == value else 0.0
    text = str(value).strip().replace(",", "")
    if not text:
        return 0.0
    try:
        number = float(text)
    except ValueError:
        return 0.0
    if number != number or number in (float("inf"), float("-inf")):
        return 0.0
    return number


def parse_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().upper() in {"TRUE", "YES", "1"}


def format_number(value: float) -> str:
    """Integral values are written without a trailing ``.0``."""

    number = float(value)
    if number.is_integer():
        return str(int(number))
    return repr(number)


def decode_row(kind: EntityKind, row: Sequence[Any]) -> Any:
    """Decode one data row; short rows are padded with each field's default."""

    schema = schema_for(kind)
    values: Dict[str, Any] = {}
    for index, field in enumerate(fields(schema.record_type)):
        cell = row[index] if index < len(row) else None
        values[field.name] = _decode_cell(cell, field.default)
    return schema.record_type(**values)


def decode(kind: EntityKind, rows: Optional[Sequence[Sequence[Any]]]) -> List[Any]:
    """Decode data rows (header already removed), skipping rows with no content."""

    return [decode_row(kind, row) for row in rows or [] if any(str(cell).strip() for cell in row)]


def decode_table(kind: EntityKind, values: Optional[Sequence[Sequence[Any]]]) -> List[Any]:
    """Decode a full range whose first row is the header; empty or header-only is ``[]``."""

    if not values:
        return []
    return decode(kind, values[1:])


def encode_row(kind: EntityKind, record: Any) -> List[str]:
    """Serialize every field positionally; empty optionals become ``""``."""

    schema = schema_for(kind)
    if not isinstance(record, schema.record_type):
        raise TypeError(
            f"Expected {schema.record_type.__name__} for {kind.value}, got {type(record).__name__}"
        )
    return [_encode_cell(getattr(record, field.name)) for field in fields(schema.record_type)]


def encode(kind: EntityKind, records: Sequence[Any]) -> List[List[str]]:
    return [encode_row(kind, record) for record in records]


def from_payload(kind: EntityKind, payload: Mapping[str, Any]) -> Any:
    """Build a record from an inbound mapping keyed by snake_case or camelCase names."""

    schema = schema_for(kind)
    values: Dict[str, Any] = {}
    for field in fields(schema.record_type):
        camel = to_camel_case(field.name)
        if field.name in payload:
            raw = payload[field.name]
        elif camel in payload:
            raw = payload[camel]
        else:
            continue
        values[field.name] = _decode_cell(raw, field.default)
    return schema.record_type(**values)


def to_payload(record: Any) -> Dict[str, Any]:
    """Outbound mapping with camelCase keys, matching the JSON the UI consumes."""

    return {to_camel_case(name): value for name, value in asdict(record).items()}


def to_camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


_TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


def is_valid_time(value: str) -> bool:
    """``HH:MM`` 24-hour clock, single-digit hours allowed."""

    return bool(_TIME_PATTERN.match(value or ""))


def _decode_cell(cell: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return parse_flag(cell) if cell not in (None, "") else default
    if isinstance(default, float):
        return parse_number(cell)
    if cell is None:
        return default
    text = str(cell)
    return text if text != "" else default


def _encode_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return format_number(value)
    return str(value)
