from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from src.api.app import create_app, status_code_for
from src.config import Config
from src.services.data_service import DataService
from src.storage.errors import (
    AuthenticationError,
    DomainLogicError,
    NotFoundError,
    RecordNotFoundError,
    SheetsError,
    SheetsPermissionError,
    TransientTransportError,
    ValidationError,
)
from src.storage.row_codec import (
    Activity,
    Client,
    EntityKind,
    Invoice,
    Project,
    Task,
    TimeEntry,
    User,
    decode_row,
)
from tests.fakes import build_transport, build_workbook


TODAY = date(2024, 6, 3)
NOW = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)
DANA = {"X-User-Name": "dana"}


def _seeded_workbook():
    return build_workbook(
        project=[Project(id="PROJ-1", project_name="Website", client_name="Acme", status="In Progress", per_hour_rate=100.0)],
        client=[Client(id="CLIENT-1", client_name="Acme", payment_terms=14.0)],
        task=[
            Task(id="TASK-1", project_id="PROJ-1", task_name="Design"),
            Task(id="TASK-2", project_id="PROJ-2", task_name="Other"),
        ],
        time_entry=[
            TimeEntry(
                id="TIME-1",
                project_id="PROJ-1",
                task_id="TASK-1",
                date="2024-06-01",
                start_time="09:00",
                end_time="11:00",
                duration=2.0,
                user_name="dana",
            )
        ],
        activity=[
            Activity(id="ACT-1", timestamp="2024-06-01T09:00:00+00:00"),
            Activity(id="ACT-2", timestamp="2024-06-02T09:00:00+00:00"),
        ],
        user=[User("admin", "secret")],
        invoice=[Invoice(id="INV-2024-000001", invoice_number="INV-2024-000001", status="Sent", total_amount=500.0, balance_amount=500.0)],
    )


def _client(session=None, read_only=False):
    session = session or _seeded_workbook()
    service = DataService(
        build_transport(session, read_only=read_only), today=lambda: TODAY, now=lambda: NOW
    )
    return TestClient(create_app(data_service=service)), session


def test_status_codes_follow_error_class():
    assert status_code_for(ValidationError("Task", ["x"])) == 400
    assert status_code_for(DomainLogicError("x")) == 422
    assert status_code_for(RecordNotFoundError("x")) == 404
    assert status_code_for(NotFoundError("x")) == 404
    assert status_code_for(SheetsPermissionError("x")) == 403
    assert status_code_for(AuthenticationError("x", status_code=401)) == 503
    assert status_code_for(TransientTransportError("x")) == 502
    assert status_code_for(SheetsError("x")) == 500


def test_verify_config_reports_success_and_failure():
    client, session = _client()

    ok = client.get("/api/verify-config")
    assert ok.status_code == 200
    assert ok.json()["success"] is True

    del session.sheets["Users"]
    failed = client.get("/api/verify-config")
    assert failed.status_code == 503
    assert failed.json()["success"] is False


def test_dashboard_combines_stats_and_recent_activity():
    client, _ = _client()

    response = client.get("/api/dashboard")

    assert response.status_code == 200
    body = response.json()
    assert body["stats"]["totalProjects"] == 1
    assert body["stats"]["activeProjects"] == 1
    assert body["stats"]["totalHoursLogged"] == 2.0
    assert [a["id"] for a in body["recentActivities"]] == ["ACT-2", "ACT-1"]


def test_list_projects_uses_camel_case():
    client, _ = _client()

    (project,) = client.get("/api/projects").json()

    assert project["id"] == "PROJ-1"
    assert project["projectName"] == "Website"
    assert project["perHourRate"] == 100.0


def test_create_project_attributes_activity_to_header_user():
    client, session = _client()

    response = client.post(
        "/api/projects",
        json={
            "projectName": "Mobile",
            "clientName": "Acme",
            "startDate": "2024-06-01",
            "endDate": "2024-07-01",
            "perHourRate": 80,
            "totalBilledHours": 2,
        },
        headers=DANA,
    )

    assert response.status_code == 201
    assert response.json()["totalAmount"] == 160.0
    activity = decode_row(EntityKind.ACTIVITY, session.rows("Activities")[-1])
    assert activity.user_name == "dana"


def test_validation_errors_are_listed():
    client, session = _client()

    response = client.post("/api/projects", json={"projectName": "Incomplete"})

    assert response.status_code == 400
    body = response.json()
    assert body["remediation"] == "input"
    assert body["details"] == ["Client name is required", "Start date is required", "End date is required"]
    assert session.calls_for("POST") == []


def test_read_only_credentials_cannot_write():
    client, _ = _client(read_only=True)

    response = client.post(
        "/api/clients", json={"clientName": "Globex"}
    )

    assert response.status_code == 403
    assert response.json()["remediation"] == "credentials"
    assert response.json()["error"].startswith("Failed to create client: Write operations require")


def test_updating_unknown_record_is_not_found():
    client, _ = _client()

    response = client.put(
        "/api/projects/PROJ-404",
        json={"projectName": "X", "clientName": "Y", "startDate": "2024-01-01", "endDate": "2024-02-01"},
    )

    assert response.status_code == 404
    assert "PROJ-404" in response.json()["error"]
    assert response.json()["remediation"] == "input"


def test_malformed_bodies_are_rejected():
    client, _ = _client()

    not_json = client.post(
        "/api/tasks", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    not_object = client.post("/api/tasks", json=["TASK-1"])

    assert not_json.status_code == 400
    assert not_json.json()["details"] == ["Body must be valid JSON"]
    assert not_object.status_code == 400
    assert not_object.json()["details"] == ["Body must be a JSON object"]


def test_tasks_can_be_filtered_by_project():
    client, _ = _client()

    assert [t["id"] for t in client.get("/api/tasks").json()] == ["TASK-1", "TASK-2"]
    assert [t["id"] for t in client.get("/api/tasks", params={"projectId": "PROJ-2"}).json()] == ["TASK-2"]


def test_task_create_and_update():
    client, _ = _client()

    created = client.post(
        "/api/tasks", json={"projectId": "PROJ-1", "taskName": "QA", "taskPerHourRate": 50, "billedHours": 2}
    )
    assert created.status_code == 201
    assert created.json()["calculatedAmount"] == 100.0

    updated = client.put(
        "/api/tasks/TASK-1", json={"projectId": "PROJ-1", "taskName": "Design v2", "priority": "High"}
    )
    assert updated.status_code == 200
    assert updated.json()["taskName"] == "Design v2"


def test_patch_task_status():
    client, session = _client()

    response = client.patch("/api/tasks/TASK-1/status", json={"status": "Completed"}, headers=DANA)

    assert response.status_code == 200
    assert response.json() == {"success": True, "taskId": "TASK-1", "status": "Completed"}
    assert decode_row(EntityKind.TASK, session.rows("Tasks")[0]).status == "Completed"


def test_patch_task_status_requires_status():
    client, _ = _client()

    response = client.patch("/api/tasks/TASK-1/status", json={})

    assert response.status_code == 400
    assert response.json()["details"] == ["Status is required"]


def test_time_entries_create_filter_and_update():
    client, session = _client()

    created = client.post(
        "/api/time-entries",
        json={
            "projectId": "PROJ-1",
            "taskId": "TASK-1",
            "date": "2024-06-03",
            "startTime": "14:00",
            "endTime": "14:30",
            "userName": "dana",
        },
    )
    assert created.status_code == 201
    assert created.json()["duration"] == 0.5
    assert decode_row(EntityKind.TASK, session.rows("Tasks")[0]).actual_hours == 2.5

    filtered = client.get("/api/time-entries", params={"taskId": "TASK-1"}).json()
    assert len(filtered) == 2
    assert len(client.get("/api/time-entries").json()) == 2

    updated = client.put(
        "/api/time-entries/TIME-1",
        json={
            "projectId": "PROJ-1",
            "taskId": "TASK-1",
            "date": "2024-06-01",
            "startTime": "09:00",
            "endTime": "10:00",
            "userName": "dana",
        },
    )
    assert updated.status_code == 200
    assert updated.json()["duration"] == 1.0


def test_recent_activities_respect_limit():
    client, _ = _client()

    response = client.get("/api/activities", params={"limit": 1})

    assert [a["id"] for a in response.json()] == ["ACT-2"]


def test_clients_and_expenses_round_trip():
    client, _ = _client()

    created = client.post("/api/clients", json={"clientName": "Globex"})
    assert created.status_code == 201
    client_id = created.json()["id"]
    renamed = client.put(f"/api/clients/{client_id}", json={"clientName": "Globex Corp"})
    assert renamed.json()["createdDate"] == "2024-06-03"
    assert len(client.get("/api/clients").json()) == 2

    expense = client.post(
        "/api/expenses",
        json={"expenseDate": "2024-06-02", "description": "Taxi", "amount": 18.5, "category": "Travel"},
        headers=DANA,
    )
    assert expense.status_code == 201
    assert expense.json()["submittedBy"] == "dana"
    approved = client.put(
        f"/api/expenses/{expense.json()['id']}",
        json={"expenseDate": "2024-06-02", "description": "Taxi", "amount": 18.5, "status": "Approved"},
    )
    assert approved.json()["status"] == "Approved"
    assert [e["id"] for e in client.get("/api/expenses").json()] == [expense.json()["id"]]


def test_invoice_preview_generate_and_list():
    client, session = _client()

    preview = client.post("/api/invoices/preview", json={"projectId": "PROJ-1", "clientId": "CLIENT-1"})
    assert preview.status_code == 200
    assert preview.json()["invoice"]["id"] == "preview"
    assert session.calls_for("POST") == []

    generated = client.post(
        "/api/invoices", json={"projectId": "PROJ-1", "clientId": "CLIENT-1", "notes": "June"}, headers=DANA
    )
    assert generated.status_code == 201
    body = generated.json()
    assert body["billableHours"] == 2.0
    assert body["unbilledHoursByTask"] == {"TASK-1": 2.0}
    assert body["invoice"]["id"] == "INV-2024-000002"
    assert body["invoice"]["totalAmount"] == 236.0
    assert body["invoice"]["dueDate"] == "2024-06-17"
    assert body["invoice"]["createdBy"] == "dana"
    assert [t["id"] for t in body["timeEntries"]] == ["TIME-1"]
    assert [i["id"] for i in client.get("/api/invoices").json()] == ["INV-2024-000001", "INV-2024-000002"]

    again = client.post("/api/invoices", json={"projectId": "PROJ-1", "clientId": "CLIENT-1"})
    assert again.status_code == 422
    assert again.json()["remediation"] == "input"


def test_invoice_requires_project_and_client():
    client, _ = _client()

    response = client.post("/api/invoices", json={})

    assert response.status_code == 400
    assert response.json()["details"] == ["Project ID is required", "Client ID is required"]


def test_record_and_list_payments():
    client, _ = _client()

    response = client.post(
        "/api/payments",
        json={"invoiceId": "INV-2024-000001", "paymentDate": "2024-06-03", "amount": 500, "paymentMethod": "Cash"},
        headers=DANA,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["payment"]["recordedBy"] == "dana"
    assert body["invoice"]["status"] == "Paid"
    assert body["invoice"]["balanceAmount"] == 0.0
    assert len(client.get("/api/payments").json()) == 1


def test_login_success_and_failures():
    client, session = _client()

    ok = client.post("/api/auth/login", json={"username": "admin", "password": "secret"})
    assert ok.status_code == 200
    assert ok.json()["username"] == "admin"
    assert ok.json()["isAuthenticated"] is True
    assert "loginTime" in ok.json()
    assert session.rows("Users")[0][2] == NOW.isoformat()

    wrong = client.post("/api/auth/login", json={"username": "admin", "password": "nope"})
    assert wrong.status_code == 401
    assert wrong.json() == {"error": "Invalid username or password", "remediation": "input"}

    missing = client.post("/api/auth/login", json={"username": "admin"})
    assert missing.status_code == 400


@pytest.mark.parametrize(
    "error, expected_status, remediation",
    [
        (TransientTransportError("Failed to fetch projects: timed out"), 502, "retry"),
        (SheetsError("Failed to fetch projects: unexpected"), 500, "configuration"),
    ],
)
def test_storage_failures_map_to_gateway_errors(error, expected_status, remediation):
    service = MagicMock()
    service.get_projects.side_effect = error
    client = TestClient(create_app(data_service=service))

    response = client.get("/api/projects")

    assert response.status_code == expected_status
    assert response.json() == {"error": error.message, "remediation": remediation}


def test_create_app_builds_service_from_config():
    app = create_app(config=Config(spreadsheet_id="sheet-123", api_key="read-key"))

    paths = {route.path for route in app.routes}
    assert {"/api/projects", "/api/invoices/preview", "/api/auth/login"} <= paths
