"""JSON API exposing the spreadsheet-backed data service to the web UI."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.config import Config, load_config
from src.services.data_service import (
    RECENT_ACTIVITY_LIMIT,
    SYSTEM_USER,
    DataService,
    InvoiceQuote,
)
from src.storage.errors import (
    ConfigurationError,
    DomainLogicError,
    NotFoundError,
    SheetsError,
    SheetsPermissionError,
    TransientTransportError,
    ValidationError,
)
from src.storage.row_codec import to_payload


logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Name"

ERROR_STATUS_CODES = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (DomainLogicError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (SheetsPermissionError, status.HTTP_403_FORBIDDEN),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (TransientTransportError, status.HTTP_502_BAD_GATEWAY),
)


def status_code_for(exc: SheetsError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    config: Optional[Config] = None, data_service: Optional[DataService] = None
) -> FastAPI:
    """Create and configure the FastAPI application."""

    service = data_service or DataService.from_config(config or load_config())

    app = FastAPI(
        title="Sheets Project Tracker API",
        description="Projects, time tracking and billing stored in Google Sheets",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
    )

    @app.exception_handler(SheetsError)
    async def handle_sheets_error(request: Request, exc: SheetsError) -> JSONResponse:
        status_code = status_code_for(exc)
        logger.warning(
            "Request failed",
            extra={
                "path": request.url.path,
                "status_code": status_code,
                "remediation": exc.remediation,
                "error": exc.message,
            },
        )
        content: Dict[str, Any] = {"error": exc.message, "remediation": exc.remediation}
        if isinstance(exc, ValidationError):
            content["details"] = exc.errors
        return JSONResponse(content, status_code=status_code)

    @app.get("/api/verify-config")
    async def verify_config() -> JSONResponse:
        result = await _run(service.verify_configuration)
        status_code = status.HTTP_200_OK if result.success else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(result.to_dict(), status_code=status_code)

    @app.get("/api/dashboard")
    async def dashboard() -> Dict[str, Any]:
        stats = await _run(service.get_dashboard_stats)
        activities = await _run(service.get_recent_activities, RECENT_ACTIVITY_LIMIT)
        return {
            "stats": to_payload(stats),
            "recentActivities": _payloads(activities),
        }

    @app.get("/api/projects")
    async def list_projects() -> List[Dict[str, Any]]:
        return _payloads(await _run(service.get_projects))

    @app.post("/api/projects", status_code=status.HTTP_201_CREATED)
    async def create_project(request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        return to_payload(await _run(service.add_project, body, user_name=_user(request)))

    @app.put("/api/projects/{project_id}")
    async def update_project(project_id: str, request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        return to_payload(
            await _run(service.update_project, project_id, body, user_name=_user(request))
        )

    @app.get("/api/tasks")
    async def list_tasks(projectId: Optional[str] = None) -> List[Dict[str, Any]]:  # noqa: N803
        if projectId:
            return _payloads(await _run(service.get_tasks_for_project, projectId))
        return _payloads(await _run(service.get_tasks))

    @app.post("/api/tasks", status_code=status.HTTP_201_CREATED)
    async def create_task(request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        return to_payload(await _run(service.add_task, body, user_name=_user(request)))

    @app.put("/api/tasks/{task_id}")
    async def update_task(task_id: str, request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        return to_payload(await _run(service.update_task, task_id, body, user_name=_user(request)))

    @app.patch("/api/tasks/{task_id}/status")
    async def update_task_status(task_id: str, request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        new_status = body.get("status")
        if not new_status:
            raise ValidationError("Task", ["Status is required"])
        await _run(service.update_task_status, task_id, new_status, user_name=_user(request))
        return {"success": True, "taskId": task_id, "status": new_status}

    @app.get("/api/time-entries")
    async def list_time_entries(taskId: Optional[str] = None) -> List[Dict[str, Any]]:  # noqa: N803
        if taskId:
            return _payloads(await _run(service.get_time_entries_for_task, taskId))
        return _payloads(await _run(service.get_time_entries))

    @app.post("/api/time-entries", status_code=status.HTTP_201_CREATED)
    async def create_time_entry(request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        return to_payload(
            await _run(service.add_time_entry, body, user_name=request.headers.get(USER_HEADER))
        )

    @app.put("/api/time-entries/{entry_id}")
    async def update_time_entry(entry_id: str, request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        return to_payload(
            await _run(
                service.update_time_entry,
                entry_id,
                body,
                user_name=request.headers.get(USER_HEADER),
            )
        )

    @app.get("/api/activities")
    async def list_activities(limit: int = RECENT_ACTIVITY_LIMIT) -> List[Dict[str, Any]]:
        return _payloads(await _run(service.get_recent_activities, limit))

    @app.get("/api/clients")
    async def list_clients() -> List[Dict[str, Any]]:
        return _payloads(await _run(service.get_clients))

    @app.post("/api/clients", status_code=status.HTTP_201_CREATED)
    async def create_client(request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        return to_payload(await _run(service.add_client, body, user_name=_user(request)))

    @app.put("/api/clients/{client_id}")
    async def update_client(client_id: str, request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        return to_payload(
            await _run(service.update_client, client_id, body, user_name=_user(request))
        )

    @app.get("/api/invoices")
    async def list_invoices() -> List[Dict[str, Any]]:
        return _payloads(await _run(service.get_invoices))

    @app.post("/api/invoices", status_code=status.HTTP_201_CREATED)
    async def generate_invoice(request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        project_id, client_id = _invoice_target(body)
        quote = await _run(
            service.generate_invoice,
            project_id,
            client_id,
            notes=str(body.get("notes") or ""),
            user_name=_user(request),
        )
        return _quote_payload(quote)

    @app.post("/api/invoices/preview")
    async def preview_invoice(request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        project_id, client_id = _invoice_target(body)
        return _quote_payload(await _run(service.preview_invoice, project_id, client_id))

    @app.get("/api/expenses")
    async def list_expenses() -> List[Dict[str, Any]]:
        return _payloads(await _run(service.get_expenses))

    @app.post("/api/expenses", status_code=status.HTTP_201_CREATED)
    async def create_expense(request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        return to_payload(await _run(service.add_expense, body, user_name=_user(request)))

    @app.put("/api/expenses/{expense_id}")
    async def update_expense(expense_id: str, request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        return to_payload(
            await _run(service.update_expense, expense_id, body, user_name=_user(request))
        )

    @app.get("/api/payments")
    async def list_payments() -> List[Dict[str, Any]]:
        return _payloads(await _run(service.get_payments))

    @app.post("/api/payments", status_code=status.HTTP_201_CREATED)
    async def record_payment(request: Request) -> Dict[str, Any]:
        body = await _json_object(request)
        receipt = await _run(service.record_payment, body, user_name=_user(request))
        return {"payment": to_payload(receipt.payment), "invoice": to_payload(receipt.invoice)}

    @app.post("/api/auth/login")
    async def login(request: Request) -> JSONResponse:
        body = await _json_object(request)
        username = str(body.get("username") or "")
        password = str(body.get("password") or "")
        if not username or not password:
            raise ValidationError("Login", ["Username and password are required"])

        if not await _run(service.login, username, password):
            return JSONResponse(
                {"error": "Invalid username or password", "remediation": "input"},
                status_code=status.HTTP_401_UNAUTHORIZED,
            )
        return JSONResponse(
            {
                "username": username,
                "isAuthenticated": True,
                "loginTime": datetime.now(timezone.utc).isoformat(),
            }
        )

    return app


async def _run(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a blocking data-service call without stalling the event loop."""

    return await asyncio.to_thread(func, *args, **kwargs)


async def _json_object(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise ValidationError("Request", ["Body must be valid JSON"]) from exc
    if not isinstance(body, dict):
        raise ValidationError("Request", ["Body must be a JSON object"])
    return body


def _user(request: Request) -> str:
    return request.headers.get(USER_HEADER) or SYSTEM_USER


def _invoice_target(body: Dict[str, Any]) -> tuple[str, str]:
    project_id = str(body.get("projectId") or "")
    client_id = str(body.get("clientId") or "")
    errors = []
    if not project_id:
        errors.append("Project ID is required")
    if not client_id:
        errors.append("Client ID is required")
    if errors:
        raise ValidationError("Invoice", errors)
    return project_id, client_id


def _payloads(records: List[Any]) -> List[Dict[str, Any]]:
    return [to_payload(record) for record in records]


def _quote_payload(quote: InvoiceQuote) -> Dict[str, Any]:
    return {
        "invoice": to_payload(quote.invoice),
        "project": to_payload(quote.project),
        "client": to_payload(quote.client),
        "billableHours": quote.billable_hours,
        "unbilledHoursByTask": dict(quote.unbilled_hours_by_task),
        "timeEntries": _payloads(quote.time_entries),
    }
