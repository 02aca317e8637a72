import uuid
from datetime import timedelta

import pytest

from fleethub import errors
from fleethub.schemas.common import Role
from fleethub.services import maintenance, vehicles
from fleethub.services.time_rules import as_utc, utcnow


@pytest.fixture()
def vehicle(company, make_vehicle):
    return make_vehicle(company, odometer=40000)


@pytest.fixture()
def mechanic(company, make_user, caller_for):
    return caller_for(make_user(company, Role.mechanic))


def _order(db, caller, vehicle, **attrs):
    payload = {
        "maintenance_type": "preventivo",
        "title": "Oil and filters",
        "scheduled_date": utcnow() - timedelta(hours=4),
    }
    payload.update(attrs)
    return maintenance.create_maintenance(db, caller, vehicle.id, payload)


def test_work_order_numbers_are_sequential(db_session, vehicle, mechanic):
    year = utcnow().year
    first = _order(db_session, mechanic, vehicle)
    second = _order(db_session, mechanic, vehicle)

    assert first.work_order_number == f"WO-{year}-00001"
    assert second.work_order_number == f"WO-{year}-00002"
    assert first.status == "scheduled"


def test_costs_are_computed(db_session, vehicle, mechanic):
    m = _order(
        db_session,
        mechanic,
        vehicle,
        services=[
            {"category": "engine", "description": "Oil change", "labor_hours": 1.5, "labor_rate": 40},
            {"category": "brakes", "description": "Pads", "labor_cost": 30},
        ],
        parts=[
            {"name": "Oil filter", "quantity": 2, "unit_price": 12.5},
            {"name": "Oil 5L", "unit_price": 35, "total_price": 32},
        ],
        materials_cost=5,
        tax=20,
        discount=10,
    )
    assert m.labor_cost == pytest.approx(90)
    assert m.parts_cost == pytest.approx(57)
    assert m.total_cost == pytest.approx(90 + 57 + 5 + 20 - 10)


def test_complete_updates_odometer_and_schedule(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle, schedule_kind="oil_change")
    done_at = utcnow()
    maintenance.complete_maintenance(
        db_session,
        mechanic,
        m.id,
        {"completed_at": done_at, "final_odometer": 41000},
    )

    assert m.status == "completed"
    assert as_utc(m.completed_date) == done_at
    # completing straight from scheduled counts from the scheduled date
    assert m.actual_duration_hours == pytest.approx(4, abs=0.01)

    refreshed = vehicles.get_vehicle(db_session, vehicle.id)
    assert refreshed.odometer_current == 41000
    oil = vehicles.get_schedule(refreshed, "oil_change")
    assert oil.last_km == 41000
    assert as_utc(oil.last_date) == done_at
    assert vehicles.needs_maintenance(db_session, vehicle.id, "oil_change") is False


def test_lower_final_odometer_does_not_rewind(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle)
    maintenance.complete_maintenance(db_session, mechanic, m.id, {"final_odometer": 39000})
    assert vehicles.get_vehicle(db_session, vehicle.id).odometer_current == 40000


def test_inspection_refreshes_general_inspection(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle, maintenance_type="inspeccion", title="ITV")
    assert m.schedule_kind == "general_inspection"

    maintenance.complete_maintenance(db_session, mechanic, m.id)
    entry = vehicles.get_schedule(vehicles.get_vehicle(db_session, vehicle.id), "general_inspection")
    assert entry.last_km == 40000


def test_double_completion_rejected(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle)
    maintenance.complete_maintenance(db_session, mechanic, m.id)

    with pytest.raises(errors.InvariantViolation):
        maintenance.complete_maintenance(db_session, mechanic, m.id)
    with pytest.raises(errors.InvariantViolation):
        maintenance.cancel_maintenance(db_session, mechanic, m.id, {"reason": "too late"})


def test_cancelled_order_cannot_complete(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle)
    maintenance.cancel_maintenance(db_session, mechanic, m.id, {"reason": "Vehicle sold"})
    assert m.status == "cancelled"
    assert m.cancel_reason == "Vehicle sold"

    with pytest.raises(errors.InvariantViolation):
        maintenance.complete_maintenance(db_session, mechanic, m.id)


def test_start_then_complete(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle, scheduled_date=utcnow() - timedelta(hours=10))
    started = utcnow() - timedelta(hours=3)
    maintenance.start_maintenance(db_session, mechanic, m.id, {"started_at": started})
    assert m.status == "in_progress"

    with pytest.raises(errors.InvariantViolation):
        maintenance.start_maintenance(db_session, mechanic, m.id)

    maintenance.complete_maintenance(db_session, mechanic, m.id)
    assert m.actual_duration_hours == pytest.approx(3, abs=0.01)


def test_completion_before_scheduled_date_rejected(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle, scheduled_date=utcnow() + timedelta(days=3))
    with pytest.raises(errors.InvariantViolation):
        maintenance.complete_maintenance(db_session, mechanic, m.id)

    within_grace = _order(db_session, mechanic, vehicle, scheduled_date=utcnow() + timedelta(hours=2))
    maintenance.complete_maintenance(db_session, mechanic, within_grace.id)
    assert within_grace.status == "completed"
    assert within_grace.actual_duration_hours == 0


def test_inactive_vehicle_rejects_new_orders(db_session, vehicle, mechanic, super_admin):
    vehicles.deactivate_vehicle(db_session, super_admin, vehicle.id)
    with pytest.raises(errors.ValidationError):
        _order(db_session, mechanic, vehicle)


def test_inactive_company_rejects_new_orders(db_session, company, vehicle, super_admin):
    company.is_active = False
    db_session.flush()
    with pytest.raises(errors.ValidationError):
        _order(db_session, super_admin, vehicle)


def test_cost_responsibility_snapshot(db_session, company, make_vehicle, mechanic):
    rented = make_vehicle(company, ownership={"ownership_type": "rented", "maintenance_responsibility": "shared"})
    m = _order(db_session, mechanic, rented)
    assert m.cost_responsibility == "shared"


def test_overdue_and_days_until_due(db_session, vehicle, mechanic):
    now = utcnow()
    late = _order(db_session, mechanic, vehicle, scheduled_date=now - timedelta(days=2))
    upcoming = _order(db_session, mechanic, vehicle, scheduled_date=now + timedelta(days=2, hours=1))

    assert maintenance.is_overdue(late, now) is True
    assert maintenance.is_overdue(upcoming, now) is False
    assert maintenance.days_until_due(upcoming, now) == 3
    assert maintenance.days_until_due(late, now) == -2


def test_update_recomputes_costs(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle, parts=[{"name": "Bulb", "unit_price": 4, "quantity": 2}])
    assert m.total_cost == pytest.approx(8)

    maintenance.update_maintenance(db_session, mechanic, m.id, {"external_cost": 100, "discount": 8})
    assert m.total_cost == pytest.approx(100)

    with pytest.raises(errors.ValidationError):
        maintenance.update_maintenance(db_session, mechanic, m.id, {"discount": 500, "title": "Renamed"})
    # a rejected update leaves the order untouched
    assert m.discount == 8
    assert m.total_cost == pytest.approx(100)
    assert m.title == "Oil and filters"


def test_viewer_cannot_complete(db_session, company, vehicle, mechanic, make_user, caller_for):
    m = _order(db_session, mechanic, vehicle)
    viewer = caller_for(make_user(company, Role.viewer))
    with pytest.raises(errors.AuthorizationDenied):
        maintenance.complete_maintenance(db_session, viewer, m.id)


def test_other_tenant_order_is_not_found(db_session, make_company, make_vehicle, super_admin, company_admin):
    foreign_vehicle = make_vehicle(make_company("Other Co"))
    foreign = _order(db_session, super_admin, foreign_vehicle)
    with pytest.raises(errors.NotFound):
        maintenance.get_maintenance_for(db_session, company_admin, foreign.id)


TWO_SERVICES = [
    {"category": "engine", "description": "Oil change", "labor_cost": 30},
    {"category": "other", "description": "Air filter", "labor_cost": 10},
]


def test_completing_every_service_completes_started_order(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle, schedule_kind="oil_change", services=TWO_SERVICES)
    maintenance.start_maintenance(db_session, mechanic, m.id)
    first, second = [s["id"] for s in m.services]

    maintenance.complete_service_item(db_session, mechanic, m.id, first, {"notes": "5W30"})
    assert maintenance.completion_percentage(m) == 50
    assert m.status == "in_progress"
    done = m.services[0]
    assert done["completed_by"] == str(mechanic.id)
    assert done["completed_date"] is not None
    assert done["notes"] == "5W30"

    maintenance.complete_service_item(db_session, mechanic, m.id, second)
    assert maintenance.completion_percentage(m) == 100
    assert m.status == "completed"
    assert m.completed_date is not None
    oil = vehicles.get_schedule(vehicles.get_vehicle(db_session, vehicle.id), "oil_change")
    assert oil.last_km == 40000


def test_services_on_scheduled_order_do_not_complete_it(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle, services=TWO_SERVICES)
    for service in list(m.services):
        maintenance.complete_service_item(db_session, mechanic, m.id, service["id"])
    assert maintenance.completion_percentage(m) == 100
    assert m.status == "scheduled"


def test_early_started_order_stays_open_after_last_service(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle, scheduled_date=utcnow() + timedelta(days=5), services=TWO_SERVICES[:1])
    maintenance.start_maintenance(db_session, mechanic, m.id)
    maintenance.complete_service_item(db_session, mechanic, m.id, m.services[0]["id"])
    assert m.services[0]["is_completed"] is True
    assert m.status == "in_progress"


def test_service_item_errors(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle, services=TWO_SERVICES)
    with pytest.raises(errors.NotFound):
        maintenance.complete_service_item(db_session, mechanic, m.id, uuid.uuid4())

    service_id = m.services[0]["id"]
    maintenance.complete_service_item(db_session, mechanic, m.id, service_id)
    with pytest.raises(errors.InvariantViolation):
        maintenance.complete_service_item(db_session, mechanic, m.id, service_id)

    maintenance.cancel_maintenance(db_session, mechanic, m.id)
    with pytest.raises(errors.InvariantViolation):
        maintenance.complete_service_item(db_session, mechanic, m.id, m.services[1]["id"])


def test_install_part(db_session, vehicle, mechanic):
    m = _order(db_session, mechanic, vehicle, parts=[{"name": "Brake pads", "quantity": 4, "unit_price": 20}])
    part_id = m.parts[0]["id"]

    with pytest.raises(errors.ValidationError):
        maintenance.install_part(db_session, mechanic, m.id, part_id, {"quantity": 5})

    maintenance.install_part(db_session, mechanic, m.id, part_id, {"quantity": 4, "notes": "front axle"})
    part = m.parts[0]
    assert part["is_installed"] is True
    assert part["installed_by"] == str(mechanic.id)
    assert part["notes"] == "front axle"
    assert m.parts_cost == pytest.approx(80)

    with pytest.raises(errors.InvariantViolation):
        maintenance.install_part(db_session, mechanic, m.id, part_id)


def test_viewer_cannot_install_part(db_session, company, vehicle, mechanic, make_user, caller_for):
    m = _order(db_session, mechanic, vehicle, parts=[{"name": "Bulb", "unit_price": 4}])
    viewer = caller_for(make_user(company, Role.viewer))
    with pytest.raises(errors.AuthorizationDenied):
        maintenance.install_part(db_session, viewer, m.id, m.parts[0]["id"])
