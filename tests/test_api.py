import uuid
from datetime import timedelta

import jwt
import pytest
from fastapi.testclient import TestClient

from fleethub.auth.security import get_caller
from fleethub.config import settings
from fleethub.db import get_db
from fleethub.main import app
from fleethub.schemas.common import Role
from fleethub.services.time_rules import utcnow


@pytest.fixture()
def client(db_session):
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def as_caller():
    def _use(caller):
        app.dependency_overrides[get_caller] = lambda: caller

    return _use


def test_vehicle_lifecycle_over_http(client, as_caller, company_admin):
    as_caller(company_admin)

    resp = client.post(
        "/fleet/vehicles",
        json={"plate_number": "1234abc", "make": "Renault", "model": "Kangoo", "year": 2022, "vehicle_type": "van", "odometer": 500},
    )
    assert resp.status_code == 200, resp.text
    vehicle = resp.json()
    assert vehicle["plate_number"] == "1234ABC"
    assert {s["kind"]: s["interval_km"] for s in vehicle["schedules"]}["oil_change"] == 5000
    assert resp.headers["X-Request-ID"]

    resp = client.post(f"/fleet/vehicles/{vehicle['id']}/odometer", json={"reading": 400})
    assert resp.status_code == 409
    assert resp.json()["code"] == "invariant_violation"

    resp = client.post(
        f"/fleet/vehicles/{vehicle['id']}/fuel-records",
        json={"fill_date": (utcnow() - timedelta(days=1)).isoformat(), "liters": 40, "odometer": 900, "price_per_liter": 1.6},
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["total_cost"] == pytest.approx(64.0)

    resp = client.get(f"/fleet/vehicles/{vehicle['id']}")
    assert resp.json()["odometer_current"] == 900

    resp = client.get(f"/fleet/vehicles/{vehicle['id']}/fuel-stats")
    assert resp.json()["record_count"] == 1
    assert resp.json()["average_consumption"] is None

    resp = client.get(f"/fleet/vehicles/{vehicle['id']}/maintenance-due")
    assert set(resp.json()) == {"oil_change", "general_inspection", "tire_rotation"}


def test_maintenance_flow_over_http(client, as_caller, company, make_vehicle, make_user, caller_for):
    vehicle = make_vehicle(company, odometer=1000)
    as_caller(caller_for(make_user(company, Role.mechanic)))

    resp = client.post(
        f"/fleet/vehicles/{vehicle.id}/maintenance",
        json={
            "maintenance_type": "preventivo",
            "schedule_kind": "tire_rotation",
            "title": "Rotate tires",
            "scheduled_date": (utcnow() - timedelta(hours=1)).isoformat(),
        },
    )
    assert resp.status_code == 200, resp.text
    order = resp.json()
    assert order["status"] == "scheduled"
    assert order["is_overdue"] is True

    resp = client.post(f"/fleet/maintenance/{order['id']}/complete", json={"final_odometer": 1200})
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "completed"

    resp = client.post(f"/fleet/maintenance/{order['id']}/complete", json={})
    assert resp.status_code == 409


def test_quota_exceeded_response(client, as_caller, make_company, make_user, make_vehicle, caller_for):
    small = make_company("Small", max_vehicles=1)
    make_vehicle(small)
    as_caller(caller_for(make_user(small, Role.company_admin)))

    resp = client.post(
        "/fleet/vehicles",
        json={"plate_number": "7777GGG", "make": "Fiat", "model": "Ducato", "year": 2020, "vehicle_type": "van"},
    )
    assert resp.status_code == 403
    body = resp.json()
    assert body["code"] == "quota_exceeded"
    assert body["details"] == {"resource": "vehicles", "limit": 1}


def test_denied_response_names_guard(client, as_caller, company, company_admin, make_user):
    target = make_user(company, Role.viewer)
    as_caller(company_admin)

    resp = client.put(f"/tenants/users/{target.id}/role", json={"role": "super_admin"})
    assert resp.status_code == 403
    assert resp.json()["guard"] == "assignable_role"


def test_payload_errors_are_validation_errors(client, as_caller, company_admin):
    as_caller(company_admin)
    resp = client.post(
        "/fleet/vehicles",
        json={"plate_number": "X", "make": "A", "model": "B", "year": 1800, "vehicle_type": "van"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"


def test_bearer_token_resolves_caller(client, company, make_user):
    user = make_user(company, Role.viewer)
    token = jwt.encode({"sub": str(user.id)}, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    resp = client.get("/tenants/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200, resp.text
    assert resp.json()["email"] == user.email

    assert client.get("/tenants/me").status_code == 401
    bad = jwt.encode({"sub": str(uuid.uuid4())}, "wrong-secret", algorithm="HS256")
    assert client.get("/tenants/me", headers={"Authorization": f"Bearer {bad}"}).status_code == 401


def test_work_order_line_items_over_http(client, as_caller, company, make_vehicle, make_user, caller_for):
    vehicle = make_vehicle(company, odometer=1000)
    as_caller(caller_for(make_user(company, Role.mechanic)))

    order = client.post(
        f"/fleet/vehicles/{vehicle.id}/maintenance",
        json={
            "maintenance_type": "correctivo",
            "title": "Brakes",
            "scheduled_date": (utcnow() - timedelta(hours=2)).isoformat(),
            "services": [{"category": "brakes", "description": "Replace pads", "labor_cost": 50}],
            "parts": [{"name": "Pads", "quantity": 2, "unit_price": 25}],
        },
    ).json()
    service_id = order["services"][0]["id"]
    part_id = order["parts"][0]["id"]

    resp = client.post(f"/fleet/maintenance/{order['id']}/parts/{part_id}/install", json={"quantity": 2})
    assert resp.status_code == 200, resp.text
    assert resp.json()["parts"][0]["is_installed"] is True

    assert client.post(f"/fleet/maintenance/{order['id']}/start", json={}).status_code == 200
    resp = client.post(f"/fleet/maintenance/{order['id']}/services/{service_id}/complete", json={})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["completion_percentage"] == 100
    assert body["status"] == "completed"

    resp = client.post(f"/fleet/maintenance/{order['id']}/services/{uuid.uuid4()}/complete", json={})
    assert resp.status_code == 409
