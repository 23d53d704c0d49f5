"""Domain operations over the spreadsheet tables.

The store has no primary-key update and no transactions, so every update is an
explicit two-phase operation: read the table and locate the row whose id cell
matches (``_locate``), then overwrite that whole row range (``_overwrite``).
Concurrent writers to the same row race; the last write wins.

Activity logging, last-login stamping and the hour rollups that follow a write
are best-effort: they log and swallow their own failures.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

import requests

from src.services.config_verifier import ConfigurationVerifier, VerificationResult
from src.services.identifiers import (
    generate_activity_id,
    generate_client_id,
    generate_expense_id,
    generate_payment_id,
    generate_project_id,
    generate_task_id,
    generate_time_entry_id,
    next_invoice_id,
)
from src.storage.errors import (
    DomainLogicError,
    RecordNotFoundError,
    SheetsError,
    ValidationError,
)
from src.storage.row_codec import (
    CLIENT_STATUSES,
    EXPENSE_CATEGORIES,
    EXPENSE_STATUSES,
    PAYMENT_METHODS,
    PROJECT_STATUSES,
    TASK_PRIORITIES,
    TASK_STATUSES,
    Activity,
    Client,
    EntityKind,
    Expense,
    Invoice,
    Payment,
    Project,
    Task,
    TimeEntry,
    User,
    decode_row,
    encode_row,
    format_number,
    from_payload,
    is_valid_time,
    schema_for,
)
from src.storage.sheets_transport import SheetsTransport


logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"
DEFAULT_TAX_RATE = 0.18
SYSTEM_USER = "System"
RECENT_ACTIVITY_LIMIT = 10

PROJECT_CREATED = "project_created"
PROJECT_UPDATED = "project_updated"
PROJECT_COMPLETED = "project_completed"
TASK_CREATED = "task_created"
TASK_UPDATED = "task_updated"
TASK_STATUS_CHANGED = "task_status_changed"
TIME_LOGGED = "time_logged"
TIME_ENTRY_UPDATED = "time_entry_updated"
CLIENT_CREATED = "client_created"
CLIENT_UPDATED = "client_updated"
INVOICE_GENERATED = "invoice_generated"
EXPENSE_CREATED = "expense_created"
EXPENSE_UPDATED = "expense_updated"
PAYMENT_RECORDED = "payment_recorded"

RecordInput = Union[Mapping[str, Any], Any]


@dataclass
class LocatedRow:
    """A decoded record and the 1-based sheet row it was read from."""

    row_number: int
    record: Any


@dataclass
class InvoiceQuote:
    invoice: Invoice
    project: Project
    client: Client
    billable_hours: float
    unbilled_hours_by_task: Dict[str, float] = field(default_factory=dict)
    time_entries: List[TimeEntry] = field(default_factory=list)


@dataclass
class PaymentReceipt:
    payment: Payment
    invoice: Invoice


@dataclass
class DashboardStats:
    total_projects: int = 0
    active_projects: int = 0
    completed_projects: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    total_hours_logged: float = 0.0
    total_revenue: float = 0.0
    avg_project_completion: float = 0.0


def round_money(value: float) -> float:
    return round(float(value), 2)


def calculate_duration(start_time: str, end_time: str) -> float:
    """Hours between two ``HH:MM`` times on the same day, rounded to 2 decimals."""

    start_hours, start_minutes = (int(part) for part in start_time.split(":"))
    end_hours, end_minutes = (int(part) for part in end_time.split(":"))
    minutes = (end_hours * 60 + end_minutes) - (start_hours * 60 + start_minutes)
    return round(minutes / 60, 2)


def apply_payment(invoice: Invoice, amount: float, today: date) -> Invoice:
    """Return ``invoice`` with ``amount`` applied; balance is always total minus paid."""

    paid_amount = round_money(invoice.paid_amount + amount)
    balance_amount = round_money(invoice.total_amount - paid_amount)
    fully_paid = balance_amount <= 0
    return replace(
        invoice,
        paid_amount=paid_amount,
        balance_amount=balance_amount,
        status="Paid" if fully_paid else invoice.status,
        payment_date=today.isoformat() if fully_paid else invoice.payment_date,
    )


def _parse_date(value: str) -> Optional[date]:
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except (TypeError, ValueError):
        return None


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat((value or "").replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _one_of(allowed: tuple) -> str:
    if len(allowed) == 2:
        return f"{allowed[0]} or {allowed[1]}"
    return f"{', '.join(allowed[:-1])}, or {allowed[-1]}"


def validate_project(project: Project) -> List[str]:
    errors: List[str] = []
    if not project.project_name.strip():
        errors.append("Project name is required")
    if not project.client_name.strip():
        errors.append("Client name is required")
    if not project.start_date:
        errors.append("Start date is required")
    if not project.end_date:
        errors.append("End date is required")

    start = _parse_date(project.start_date) if project.start_date else None
    end = _parse_date(project.end_date) if project.end_date else None
    if project.start_date and start is None:
        errors.append("Start date must use YYYY-MM-DD")
    if project.end_date and end is None:
        errors.append("End date must use YYYY-MM-DD")
    if start and end and start > end:
        errors.append("End date must be after start date")

    if project.status not in PROJECT_STATUSES:
        errors.append(f"Status must be {_one_of(PROJECT_STATUSES)}")
    if project.budget < 0:
        errors.append("Budget cannot be negative")
    if project.per_hour_rate < 0:
        errors.append("Per hour rate cannot be negative")
    if project.total_estimated_hours < 0:
        errors.append("Estimated hours cannot be negative")
    if project.total_billed_hours < 0:
        errors.append("Billed hours cannot be negative")
    return errors


def validate_task(task: Task) -> List[str]:
    errors: List[str] = []
    if not task.project_id.strip():
        errors.append("Project ID is required")
    if not task.task_name.strip():
        errors.append("Task name is required")
    if task.priority not in TASK_PRIORITIES:
        errors.append(f"Priority must be {_one_of(TASK_PRIORITIES)}")
    if task.status not in TASK_STATUSES:
        errors.append(f"Status must be {_one_of(TASK_STATUSES)}")
    if task.estimated_hours < 0:
        errors.append("Estimated hours cannot be negative")
    if task.billed_hours < 0:
        errors.append("Billed hours cannot be negative")
    if task.project_per_hour_rate < 0:
        errors.append("Project per hour rate cannot be negative")
    if task.task_per_hour_rate < 0:
        errors.append("Task per hour rate cannot be negative")
    return errors


def validate_time_entry(entry: TimeEntry) -> List[str]:
    errors: List[str] = []
    if not entry.project_id.strip():
        errors.append("Project ID is required")
    if not entry.task_id.strip():
        errors.append("Task ID is required")
    if not entry.date:
        errors.append("Date is required")
    if not entry.start_time:
        errors.append("Start time is required")
    if not entry.end_time:
        errors.append("End time is required")
    if not entry.user_name.strip():
        errors.append("User name is required")

    if entry.date and _parse_date(entry.date) is None:
        errors.append("Invalid date format")
    if entry.start_time and not is_valid_time(entry.start_time):
        errors.append("Invalid start time format (use HH:MM)")
    if entry.end_time and not is_valid_time(entry.end_time):
        errors.append("Invalid end time format (use HH:MM)")

    if not errors and calculate_duration(entry.start_time, entry.end_time) <= 0:
        errors.append("End time must be after start time")
    return errors


def validate_client(client: Client) -> List[str]:
    errors: List[str] = []
    if not client.client_name.strip():
        errors.append("Client name is required")
    if client.payment_terms < 0:
        errors.append("Payment terms cannot be negative")
    if client.hourly_rate < 0:
        errors.append("Hourly rate cannot be negative")
    if client.status not in CLIENT_STATUSES:
        errors.append(f"Status must be {_one_of(CLIENT_STATUSES)}")
    return errors


def validate_expense(expense: Expense) -> List[str]:
    errors: List[str] = []
    if not expense.expense_date:
        errors.append("Expense date is required")
    elif _parse_date(expense.expense_date) is None:
        errors.append("Invalid expense date format")
    if not expense.description.strip():
        errors.append("Description is required")
    if expense.amount < 0:
        errors.append("Amount cannot be negative")
    if expense.category not in EXPENSE_CATEGORIES:
        errors.append(f"Category must be {_one_of(EXPENSE_CATEGORIES)}")
    if expense.status not in EXPENSE_STATUSES:
        errors.append(f"Status must be {_one_of(EXPENSE_STATUSES)}")
    return errors


def validate_payment(payment: Payment) -> List[str]:
    errors: List[str] = []
    if not payment.invoice_id.strip():
        errors.append("Invoice ID is required")
    if not payment.payment_date:
        errors.append("Payment date is required")
    elif _parse_date(payment.payment_date) is None:
        errors.append("Invalid payment date format")
    if payment.amount <= 0:
        errors.append("Amount must be greater than zero")
    if payment.payment_method not in PAYMENT_METHODS:
        errors.append(f"Payment method must be {_one_of(PAYMENT_METHODS)}")
    return errors


def _require_valid(entity: str, errors: List[str]) -> None:
    if errors:
        raise ValidationError(entity, errors)


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    """Prefix storage failures with the operation that hit them.

    Errors the caller must act on as-is (bad input, rejected business rules,
    unknown ids) pass through untouched; the error class, and so its
    remediation kind, is always preserved.
    """

    try:
        yield
    except (ValidationError, DomainLogicError, RecordNotFoundError):
        raise
    except SheetsError as exc:
        raise exc.with_context(f"Failed to {action}") from exc


class DataService:
    """CRUD-style operations for every worksheet plus the billing workflows."""

    def __init__(
        self,
        transport: SheetsTransport,
        *,
        tax_rate: float = DEFAULT_TAX_RATE,
        today: Callable[[], date] = date.today,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.transport = transport
        self.tax_rate = tax_rate
        self._today = today
        self._now = now

    @classmethod
    def from_config(cls, config: Any, session: Optional[requests.Session] = None) -> "DataService":
        transport = SheetsTransport.from_credentials(
            config.spreadsheet_id,
            service_account_email=config.service_account_email,
            private_key=config.private_key,
            api_key=config.api_key,
            session=session,
            timeout=config.request_timeout,
            max_retries=config.max_retries,
        )
        return cls(transport)

    def verify_configuration(self) -> VerificationResult:
        return ConfigurationVerifier(self.transport).verify()

    # Projects

    def get_projects(self) -> List[Project]:
        with _translate_errors("fetch projects"):
            return self._list(EntityKind.PROJECT)

    def add_project(self, data: RecordInput, *, user_name: str = SYSTEM_USER) -> Project:
        project = self._coerce(EntityKind.PROJECT, data)
        _require_valid("Project", validate_project(project))

        project = replace(
            project,
            id=generate_project_id(self._today()),
            total_actual_hours=0.0,
            total_amount=round_money(project.total_billed_hours * project.per_hour_rate),
        )
        with _translate_errors("create project"):
            self._append(EntityKind.PROJECT, project)

        logger.info("Project created", extra={"entity_id": project.id})
        self.log_activity(
            PROJECT_CREATED,
            f'Project "{project.project_name}" created for client {project.client_name}',
            project.id,
            project.project_name,
            user_name=user_name,
        )
        return project

    def update_project(
        self, project_id: str, data: RecordInput, *, user_name: str = SYSTEM_USER
    ) -> Project:
        project = replace(self._coerce(EntityKind.PROJECT, data), id=project_id)
        _require_valid("Project", validate_project(project))

        with _translate_errors("update project"):
            located = self._locate(EntityKind.PROJECT, project_id)
            existing: Project = located.record
            project = replace(
                project,
                total_actual_hours=existing.total_actual_hours,
                total_amount=round_money(project.total_billed_hours * project.per_hour_rate),
            )
            self._overwrite(EntityKind.PROJECT, located.row_number, project)

        completed = project.status == "Completed" and existing.status != "Completed"
        self.log_activity(
            PROJECT_COMPLETED if completed else PROJECT_UPDATED,
            f'Project "{project.project_name}" '
            + ("marked as completed" if completed else "updated"),
            project.id,
            project.project_name,
            user_name=user_name,
        )
        return project

    # Tasks

    def get_tasks(self) -> List[Task]:
        with _translate_errors("fetch tasks"):
            return self._list(EntityKind.TASK)

    def get_tasks_for_project(self, project_id: str) -> List[Task]:
        return [task for task in self.get_tasks() if task.project_id == project_id]

    def add_task(self, data: RecordInput, *, user_name: str = SYSTEM_USER) -> Task:
        task = self._coerce(EntityKind.TASK, data)
        _require_valid("Task", validate_task(task))

        task = replace(
            task,
            id=generate_task_id(),
            actual_hours=0.0,
            calculated_amount=round_money(task.billed_hours * task.task_per_hour_rate),
        )
        with _translate_errors("create task"):
            self._append(EntityKind.TASK, task)

        logger.info("Task created", extra={"entity_id": task.id, "project_id": task.project_id})
        self.log_activity(
            TASK_CREATED,
            f'Task "{task.task_name}" created',
            task.id,
            task.task_name,
            user_name=user_name,
            metadata={"projectId": task.project_id},
        )
        return task

    def update_task(self, task_id: str, data: RecordInput, *, user_name: str = SYSTEM_USER) -> Task:
        """Overwrite a task row; logged and billed hours stay as the sheet has them."""

        task = replace(self._coerce(EntityKind.TASK, data), id=task_id)
        _require_valid("Task", validate_task(task))

        with _translate_errors("update task"):
            located = self._locate(EntityKind.TASK, task_id)
            existing: Task = located.record
            task = replace(
                task,
                actual_hours=existing.actual_hours,
                billed_hours=existing.billed_hours,
                calculated_amount=round_money(existing.billed_hours * task.task_per_hour_rate),
            )
            self._overwrite(EntityKind.TASK, located.row_number, task)

        self.log_activity(
            TASK_UPDATED, f'Task "{task.task_name}" updated', task.id, task.task_name, user_name=user_name
        )
        return task

    def update_task_status(
        self, task_id: str, new_status: str, *, user_name: str = SYSTEM_USER
    ) -> None:
        """Rewrite only the status cell; repeating the same status is harmless."""

        if new_status not in TASK_STATUSES:
            raise ValidationError("Task", [f"Status must be {_one_of(TASK_STATUSES)}"])

        schema = schema_for(EntityKind.TASK)
        with _translate_errors("update task status"):
            located = self._locate(EntityKind.TASK, task_id)
            self.transport.update_values(
                schema.cell_range("status", located.row_number), [[new_status]]
            )

        logger.info("Task status updated", extra={"entity_id": task_id, "status": new_status})
        self.log_activity(
            TASK_STATUS_CHANGED,
            f'Task status changed to "{new_status}"',
            task_id,
            located.record.task_name or f"Task {task_id}",
            user_name=user_name,
            metadata={"from": located.record.status, "to": new_status},
        )

    # Time entries

    def get_time_entries(self) -> List[TimeEntry]:
        with _translate_errors("fetch time entries"):
            return self._list(EntityKind.TIME_ENTRY)

    def get_time_entries_for_task(self, task_id: str) -> List[TimeEntry]:
        return [entry for entry in self.get_time_entries() if entry.task_id == task_id]

    def add_time_entry(self, data: RecordInput, *, user_name: Optional[str] = None) -> TimeEntry:
        """Append a time entry; the duration is always recomputed from start and end."""

        entry = self._coerce(EntityKind.TIME_ENTRY, data)
        _require_valid("Time entry", validate_time_entry(entry))

        entry = replace(
            entry,
            id=generate_time_entry_id(),
            duration=calculate_duration(entry.start_time, entry.end_time),
        )
        with _translate_errors("create time entry"):
            self._append(EntityKind.TIME_ENTRY, entry)

        logger.info(
            "Time entry created",
            extra={"entity_id": entry.id, "task_id": entry.task_id, "duration": entry.duration},
        )
        self.log_activity(
            TIME_LOGGED,
            f"{format_number(entry.duration)} hours logged by {entry.user_name}",
            entry.id,
            entry.description or entry.task_id,
            user_name=user_name or entry.user_name,
            metadata={"taskId": entry.task_id, "projectId": entry.project_id},
        )
        self._best_effort("refresh actual hours", self.refresh_actual_hours, entry.task_id, entry.project_id)
        return entry

    def update_time_entry(
        self, entry_id: str, data: RecordInput, *, user_name: Optional[str] = None
    ) -> TimeEntry:
        entry = replace(self._coerce(EntityKind.TIME_ENTRY, data), id=entry_id)
        _require_valid("Time entry", validate_time_entry(entry))
        entry = replace(entry, duration=calculate_duration(entry.start_time, entry.end_time))

        with _translate_errors("update time entry"):
            located = self._locate(EntityKind.TIME_ENTRY, entry_id)
            self._overwrite(EntityKind.TIME_ENTRY, located.row_number, entry)

        previous: TimeEntry = located.record
        self.log_activity(
            TIME_ENTRY_UPDATED,
            f"Time entry updated to {format_number(entry.duration)} hours",
            entry.id,
            entry.description or entry.task_id,
            user_name=user_name or entry.user_name,
        )
        self._best_effort("refresh actual hours", self.refresh_actual_hours, entry.task_id, entry.project_id)
        if (previous.task_id, previous.project_id) != (entry.task_id, entry.project_id):
            self._best_effort(
                "refresh actual hours", self.refresh_actual_hours, previous.task_id, previous.project_id
            )
        return entry

    def refresh_actual_hours(self, task_id: str, project_id: str) -> None:
        """Recompute a task's and its project's logged hours from the time entries."""

        entries = self._list(EntityKind.TIME_ENTRY)
        task_hours = round(sum(e.duration for e in entries if e.task_id == task_id), 2)
        project_hours = round(sum(e.duration for e in entries if e.project_id == project_id), 2)

        for kind, entity_id, field_name, hours in (
            (EntityKind.TASK, task_id, "actual_hours", task_hours),
            (EntityKind.PROJECT, project_id, "total_actual_hours", project_hours),
        ):
            if not entity_id:
                continue
            try:
                located = self._locate(kind, entity_id)
            except RecordNotFoundError:
                logger.warning(
                    "Skipping hours rollup for unknown record",
                    extra={"entity_id": entity_id, "kind": kind.value},
                )
                continue
            if getattr(located.record, field_name) == hours:
                continue
            self.transport.update_values(
                schema_for(kind).cell_range(field_name, located.row_number),
                [[format_number(hours)]],
            )

    # Users

    def get_users(self) -> List[User]:
        with _translate_errors("fetch users"):
            return self._list(EntityKind.USER)

    def validate_credentials(self, username: str, password: str) -> bool:
        # Plaintext comparison against the Users sheet; passwords are not hashed.
        return any(
            user.username == username and user.password == password for user in self.get_users()
        )

    def update_last_login(self, username: str) -> bool:
        """Stamp the user's last-login cell; never raises."""

        return bool(self._best_effort("update last login", self._write_last_login, username))

    def login(self, username: str, password: str) -> bool:
        if not self.validate_credentials(username, password):
            logger.info("Login rejected", extra={"username": username})
            return False
        self.update_last_login(username)
        logger.info("Login succeeded", extra={"username": username})
        return True

    def _write_last_login(self, username: str) -> bool:
        schema = schema_for(EntityKind.USER)
        for located in self._read_rows(EntityKind.USER):
            if located.record.username == username:
                self.transport.update_values(
                    schema.cell_range("last_login", located.row_number),
                    [[self._now().isoformat()]],
                )
                return True
        logger.warning("Cannot stamp last login for unknown user", extra={"username": username})
        return False

    # Activities

    def log_activity(
        self,
        activity_type: str,
        description: str,
        entity_id: str,
        entity_name: str,
        *,
        user_name: str = SYSTEM_USER,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Activity]:
        """Append one audit row; returns ``None`` if the write failed."""

        activity = Activity(
            id=generate_activity_id(),
            timestamp=self._now().isoformat(),
            type=activity_type,
            description=description,
            entity_id=entity_id,
            entity_name=entity_name,
            user_name=user_name or SYSTEM_USER,
            metadata=json.dumps(dict(metadata), sort_keys=True) if metadata else "",
        )
        return self._best_effort("log activity", self._log_activity_row, activity)

    def _log_activity_row(self, activity: Activity) -> Activity:
        self._append(EntityKind.ACTIVITY, activity)
        logger.debug("Activity logged", extra={"entity_id": activity.entity_id, "type": activity.type})
        return activity

    def get_activities(self) -> List[Activity]:
        with _translate_errors("fetch activities"):
            return self._list(EntityKind.ACTIVITY)

    def get_recent_activities(self, limit: int = RECENT_ACTIVITY_LIMIT) -> List[Activity]:
        """Newest first; an unreadable log yields an empty list so dashboards still render."""

        activities = self._best_effort("fetch recent activities", self._list, EntityKind.ACTIVITY)
        if not activities:
            return []
        activities.sort(key=lambda activity: _parse_timestamp(activity.timestamp), reverse=True)
        return activities[: max(limit, 0)]

    # Clients

    def get_clients(self) -> List[Client]:
        with _translate_errors("fetch clients"):
            return self._list(EntityKind.CLIENT)

    def add_client(self, data: RecordInput, *, user_name: str = SYSTEM_USER) -> Client:
        client = self._coerce(EntityKind.CLIENT, data)
        _require_valid("Client", validate_client(client))

        client = replace(
            client,
            id=generate_client_id(self._today()),
            created_date=client.created_date or self._today().isoformat(),
        )
        with _translate_errors("create client"):
            self._append(EntityKind.CLIENT, client)

        self.log_activity(
            CLIENT_CREATED,
            f'Client "{client.client_name}" created',
            client.id,
            client.client_name,
            user_name=user_name,
        )
        return client

    def update_client(
        self, client_id: str, data: RecordInput, *, user_name: str = SYSTEM_USER
    ) -> Client:
        client = replace(self._coerce(EntityKind.CLIENT, data), id=client_id)
        _require_valid("Client", validate_client(client))

        with _translate_errors("update client"):
            located = self._locate(EntityKind.CLIENT, client_id)
            client = replace(client, created_date=located.record.created_date)
            self._overwrite(EntityKind.CLIENT, located.row_number, client)

        self.log_activity(
            CLIENT_UPDATED,
            f'Client "{client.client_name}" updated',
            client.id,
            client.client_name,
            user_name=user_name,
        )
        return client

    # Expenses

    def get_expenses(self) -> List[Expense]:
        with _translate_errors("fetch expenses"):
            return self._list(EntityKind.EXPENSE)

    def add_expense(self, data: RecordInput, *, user_name: str = SYSTEM_USER) -> Expense:
        expense = self._coerce(EntityKind.EXPENSE, data)
        _require_valid("Expense", validate_expense(expense))

        expense = replace(
            expense,
            id=generate_expense_id(),
            amount=round_money(expense.amount),
            submitted_by=expense.submitted_by or user_name,
            submitted_date=expense.submitted_date or self._today().isoformat(),
        )
        with _translate_errors("create expense"):
            self._append(EntityKind.EXPENSE, expense)

        self.log_activity(
            EXPENSE_CREATED,
            f"Expense of {format_number(expense.amount)} recorded: {expense.description}",
            expense.id,
            expense.description,
            user_name=user_name,
            metadata={"projectId": expense.project_id, "category": expense.category},
        )
        return expense

    def update_expense(
        self, expense_id: str, data: RecordInput, *, user_name: str = SYSTEM_USER
    ) -> Expense:
        expense = replace(self._coerce(EntityKind.EXPENSE, data), id=expense_id)
        _require_valid("Expense", validate_expense(expense))

        with _translate_errors("update expense"):
            located = self._locate(EntityKind.EXPENSE, expense_id)
            existing: Expense = located.record
            expense = replace(
                expense,
                amount=round_money(expense.amount),
                submitted_by=existing.submitted_by,
                submitted_date=existing.submitted_date,
            )
            self._overwrite(EntityKind.EXPENSE, located.row_number, expense)

        self.log_activity(
            EXPENSE_UPDATED,
            f"Expense updated: {expense.description}",
            expense.id,
            expense.description,
            user_name=user_name,
            metadata={"status": expense.status},
        )
        return expense

    # Invoices

    def get_invoices(self) -> List[Invoice]:
        with _translate_errors("fetch invoices"):
            return self._list(EntityKind.INVOICE)

    def preview_invoice(self, project_id: str, client_id: str) -> InvoiceQuote:
        """Compute the invoice generation would create, without writing anything."""

        with _translate_errors("preview invoice"):
            return self._quote_invoice(project_id, client_id)

    def generate_invoice(
        self,
        project_id: str,
        client_id: str,
        *,
        notes: str = "",
        user_name: str = SYSTEM_USER,
    ) -> InvoiceQuote:
        """Invoice a project's unbilled task hours, then roll them into the tasks.

        The invoice row is written first. Adding the invoiced hours to each task's
        billed hours is a separate best-effort pass; when it fails the invoice
        stands and the pending hours are logged for manual reconciliation.
        """

        with _translate_errors("generate invoice"):
            quote = self._quote_invoice(project_id, client_id)
            if quote.billable_hours <= 0:
                raise DomainLogicError(
                    f"Nothing to invoice: project {project_id} has no unbilled hours."
                )

            invoice_id = next_invoice_id(
                (invoice.id for invoice in self._list(EntityKind.INVOICE)), self._today()
            )
            invoice = replace(
                quote.invoice,
                id=invoice_id,
                invoice_number=invoice_id,
                notes=notes or quote.invoice.notes,
                created_by=user_name,
            )
            self._append(EntityKind.INVOICE, invoice)

        quote = replace(quote, invoice=invoice)
        logger.info(
            "Invoice generated",
            extra={
                "entity_id": invoice.id,
                "project_id": project_id,
                "billable_hours": quote.billable_hours,
                "total_amount": invoice.total_amount,
            },
        )
        self.log_activity(
            INVOICE_GENERATED,
            f"Invoice {invoice.invoice_number} generated for {format_number(quote.billable_hours)} hours",
            invoice.id,
            invoice.invoice_number,
            user_name=user_name,
            metadata={"projectId": project_id, "clientId": client_id, "total": invoice.total_amount},
        )
        self._roll_up_billed_hours(invoice, quote.unbilled_hours_by_task)
        return quote

    def _quote_invoice(self, project_id: str, client_id: str) -> InvoiceQuote:
        project = self._locate(EntityKind.PROJECT, project_id).record
        client = self._locate(EntityKind.CLIENT, client_id).record
        tasks = [task for task in self._list(EntityKind.TASK) if task.project_id == project_id]
        entries = [
            entry for entry in self._list(EntityKind.TIME_ENTRY) if entry.project_id == project_id
        ]

        unbilled: Dict[str, float] = {}
        for task in tasks:
            logged = sum(entry.duration for entry in entries if entry.task_id == task.id)
            hours = round(max(0.0, logged - task.billed_hours), 2)
            if hours > 0:
                unbilled[task.id] = hours

        billable_hours = round(sum(unbilled.values()), 2)
        subtotal = round_money(billable_hours * project.per_hour_rate)
        tax_amount = round_money(subtotal * self.tax_rate)
        total_amount = round_money(subtotal + tax_amount)
        today = self._today()

        invoice = Invoice(
            id="preview",
            invoice_number="PREVIEW",
            client_id=client_id,
            project_id=project_id,
            issue_date=today.isoformat(),
            due_date=(today + timedelta(days=int(client.payment_terms))).isoformat(),
            status="Draft",
            subtotal=subtotal,
            tax_rate=self.tax_rate,
            tax_amount=tax_amount,
            total_amount=total_amount,
            paid_amount=0.0,
            balance_amount=total_amount,
            notes=f"Invoice for project: {project.project_name}",
            created_by=SYSTEM_USER,
            created_date=self._now().isoformat(),
        )
        return InvoiceQuote(
            invoice=invoice,
            project=project,
            client=client,
            billable_hours=billable_hours,
            unbilled_hours_by_task=unbilled,
            time_entries=entries,
        )

    def _roll_up_billed_hours(self, invoice: Invoice, unbilled: Dict[str, float]) -> None:
        pending = dict(unbilled)
        try:
            tasks = {located.record.id: located for located in self._read_rows(EntityKind.TASK)}
            for task_id, hours in unbilled.items():
                located = tasks.get(task_id)
                if located is None:
                    continue
                task: Task = located.record
                billed_hours = round(task.billed_hours + hours, 2)
                updated = replace(
                    task,
                    billed_hours=billed_hours,
                    calculated_amount=round_money(billed_hours * task.task_per_hour_rate),
                )
                self._overwrite(EntityKind.TASK, located.row_number, updated)
                pending.pop(task_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Invoice saved but task billed hours were not fully updated",
                extra={
                    "entity_id": invoice.id,
                    "pending_task_hours": pending,
                    "error": str(exc),
                    "remediation": getattr(exc, "remediation", None),
                },
            )

    # Payments

    def get_payments(self) -> List[Payment]:
        with _translate_errors("fetch payments"):
            return self._list(EntityKind.PAYMENT)

    def record_payment(self, data: RecordInput, *, user_name: str = SYSTEM_USER) -> PaymentReceipt:
        """Append a payment, then rewrite its invoice's paid amount, balance and status."""

        payment = self._coerce(EntityKind.PAYMENT, data)
        _require_valid("Payment", validate_payment(payment))

        with _translate_errors("record payment"):
            located = self._locate(EntityKind.INVOICE, payment.invoice_id)
            invoice: Invoice = located.record
            if invoice.status == "Cancelled":
                raise DomainLogicError(f"Invoice {invoice.id} is cancelled and cannot accept payments.")
            if payment.amount - invoice.balance_amount > 0.005:
                raise DomainLogicError(
                    f"Payment amount {format_number(payment.amount)} exceeds invoice balance "
                    f"{format_number(invoice.balance_amount)}."
                )

            payment = replace(
                payment,
                id=generate_payment_id(),
                amount=round_money(payment.amount),
                recorded_by=payment.recorded_by or user_name,
                recorded_date=self._now().isoformat(),
            )
            self._append(EntityKind.PAYMENT, payment)

            updated = apply_payment(invoice, payment.amount, self._today())
            try:
                self._overwrite(EntityKind.INVOICE, located.row_number, updated)
            except Exception:
                logger.exception(
                    "Payment saved but invoice balance was not updated",
                    extra={"entity_id": payment.id, "invoice_id": invoice.id, "amount": payment.amount},
                )
                raise

        logger.info(
            "Payment recorded",
            extra={
                "entity_id": payment.id,
                "invoice_id": invoice.id,
                "balance_amount": updated.balance_amount,
                "status": updated.status,
            },
        )
        self.log_activity(
            PAYMENT_RECORDED,
            f"Payment of {format_number(payment.amount)} recorded for invoice {invoice.invoice_number}",
            payment.id,
            invoice.invoice_number,
            user_name=user_name,
            metadata={"invoiceId": invoice.id, "status": updated.status},
        )
        return PaymentReceipt(payment=payment, invoice=updated)

    # Dashboard

    def get_dashboard_stats(self) -> DashboardStats:
        projects = self.get_projects()
        tasks = self.get_tasks()
        entries = self.get_time_entries()

        completed_projects = sum(1 for project in projects if project.status == "Completed")
        return DashboardStats(
            total_projects=len(projects),
            active_projects=sum(1 for project in projects if project.status == "In Progress"),
            completed_projects=completed_projects,
            total_tasks=len(tasks),
            completed_tasks=sum(1 for task in tasks if task.status == "Completed"),
            total_hours_logged=round(sum(entry.duration for entry in entries), 2),
            total_revenue=round_money(sum(project.total_amount for project in projects)),
            avg_project_completion=(
                round(completed_projects / len(projects) * 100, 2) if projects else 0.0
            ),
        )

    # Row plumbing

    def _list(self, kind: EntityKind) -> List[Any]:
        return [located.record for located in self._read_rows(kind)]

    def _read_rows(self, kind: EntityKind) -> List[LocatedRow]:
        values = self.transport.get_values(schema_for(kind).full_range)
        located: List[LocatedRow] = []
        for row_number, row in enumerate(values[1:], start=2):
            if not any(str(cell).strip() for cell in row):
                continue
            located.append(LocatedRow(row_number, decode_row(kind, row)))
        return located

    def _locate(self, kind: EntityKind, entity_id: str) -> LocatedRow:
        """Linear scan from row 2 for the row whose first cell is ``entity_id``."""

        for located in self._read_rows(kind):
            if located.record.id == entity_id:
                return located
        raise RecordNotFoundError(
            f"{kind.value.replace('_', ' ').capitalize()} {entity_id} not found in "
            f"{schema_for(kind).sheet_name} sheet"
        )

    def _overwrite(self, kind: EntityKind, row_number: int, record: Any) -> None:
        schema = schema_for(kind)
        self.transport.update_values(schema.row_range(row_number), [encode_row(kind, record)])

    def _append(self, kind: EntityKind, record: Any) -> None:
        self.transport.append_values(schema_for(kind).full_range, [encode_row(kind, record)])

    def _coerce(self, kind: EntityKind, data: RecordInput) -> Any:
        record_type = schema_for(kind).record_type
        if isinstance(data, record_type):
            return replace(data)
        if isinstance(data, Mapping):
            return from_payload(kind, data)
        raise TypeError(f"Cannot build {record_type.__name__} from {type(data).__name__}")

    def _best_effort(self, step: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return func(*args)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Best-effort step failed",
                extra={
                    "step": step,
                    "error": str(exc),
                    "remediation": getattr(exc, "remediation", None),
                },
            )
            return None
