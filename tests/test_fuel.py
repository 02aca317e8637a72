from datetime import timedelta

import pytest

from fleethub import errors
from fleethub.schemas.common import Role
from fleethub.services import fuel, vehicles
from fleethub.services.time_rules import utcnow


@pytest.fixture()
def vehicle(company, make_vehicle):
    return make_vehicle(company, odometer=9000)


@pytest.fixture()
def operator(company, make_user, caller_for):
    return caller_for(make_user(company, Role.operator))


def _fill(db, caller, vehicle, days_ago, liters, odometer=None, **extra):
    payload = {"fill_date": utcnow() - timedelta(days=days_ago), "liters": liters, "odometer": odometer}
    payload.update(extra)
    return fuel.create_fuel_record(db, caller, vehicle.id, payload)


def test_consumption_over_two_fills(db_session, vehicle, operator):
    _fill(db_session, operator, vehicle, 10, 40, 10000)
    _fill(db_session, operator, vehicle, 5, 50, 10500)

    assert fuel.average_consumption(db_session, vehicle.id, 30) == pytest.approx(10.0)


def test_consumption_undefined_with_single_record(db_session, vehicle, operator):
    _fill(db_session, operator, vehicle, 3, 40, 10000)
    assert fuel.average_consumption(db_session, vehicle.id, 30) is None


def test_consumption_window_drops_old_fills(db_session, vehicle, operator):
    _fill(db_session, operator, vehicle, 60, 45, 9500)
    _fill(db_session, operator, vehicle, 10, 40, 10000)
    _fill(db_session, operator, vehicle, 5, 50, 10500)

    # the 60-day-old fill is outside the window and 10000 -> 10500 is the only pair
    assert fuel.average_consumption(db_session, vehicle.id, 30) == pytest.approx(10.0)
    assert fuel.average_consumption(db_session, vehicle.id, 90) == pytest.approx(90 / 1000 * 100)


def test_fill_updates_vehicle_odometer(db_session, vehicle, operator):
    _fill(db_session, operator, vehicle, 1, 40, 9800)
    db_session.refresh(vehicle)
    assert vehicle.odometer_current == 9800

    # a back-dated fill below the current reading is accepted but never lowers it
    _fill(db_session, operator, vehicle, 20, 30, 9100)
    db_session.refresh(vehicle)
    assert vehicle.odometer_current == 9800


def test_lower_reading_than_previous_fill_rejected(db_session, vehicle, operator):
    _fill(db_session, operator, vehicle, 5, 40, 10000)
    with pytest.raises(errors.InvariantViolation):
        _fill(db_session, operator, vehicle, 2, 35, 9990)


def test_reading_above_next_fill_rejected(db_session, vehicle, operator):
    _fill(db_session, operator, vehicle, 2, 40, 10000)
    with pytest.raises(errors.InvariantViolation):
        _fill(db_session, operator, vehicle, 5, 35, 10100)


def test_future_fill_date_rejected(db_session, vehicle, operator):
    with pytest.raises(errors.ValidationError):
        _fill(db_session, operator, vehicle, -1, 40)


def test_liters_out_of_range(db_session, vehicle, operator):
    with pytest.raises(errors.ValidationError):
        _fill(db_session, operator, vehicle, 1, 0)
    with pytest.raises(errors.ValidationError):
        _fill(db_session, operator, vehicle, 1, 1500)


def test_total_cost_computed_and_mismatch_flagged(db_session, vehicle, operator):
    computed = _fill(db_session, operator, vehicle, 3, 40, price_per_liter=1.5)
    assert computed.total_cost == pytest.approx(60.0)
    assert computed.cost_mismatch is False

    close = _fill(db_session, operator, vehicle, 2, 40, price_per_liter=1.5, total_cost=60.005)
    assert close.cost_mismatch is False

    flagged = _fill(db_session, operator, vehicle, 1, 40, price_per_liter=1.5, total_cost=65)
    assert flagged.cost_mismatch is True
    assert flagged.total_cost == 65


def test_statistics(db_session, vehicle, operator):
    _fill(db_session, operator, vehicle, 10, 40, 10000, price_per_liter=1.5)
    _fill(db_session, operator, vehicle, 5, 50, 10500)
    _fill(db_session, operator, vehicle, 1, 10, total_cost=16)

    stats = fuel.fuel_statistics(db_session, vehicle.id)
    assert stats.record_count == 3
    assert stats.total_liters == pytest.approx(100)
    assert stats.total_cost == pytest.approx(76)
    assert stats.average_price_per_liter == pytest.approx(0.76)
    assert stats.average_consumption == pytest.approx(10.0)


def test_statistics_without_records(db_session, vehicle):
    stats = fuel.fuel_statistics(db_session, vehicle.id)
    assert stats.record_count == 0
    assert stats.total_cost == 0
    assert stats.average_price_per_liter == 0
    assert stats.average_consumption is None


def test_statistics_date_filter(db_session, vehicle, operator):
    _fill(db_session, operator, vehicle, 10, 40, 10000)
    _fill(db_session, operator, vehicle, 5, 50, 10500)

    stats = fuel.fuel_statistics(db_session, vehicle.id, start_date=utcnow() - timedelta(days=7))
    assert stats.record_count == 1
    assert stats.average_consumption is None


def test_viewer_cannot_record_fuel(db_session, company, vehicle, make_user, caller_for):
    viewer = caller_for(make_user(company, Role.viewer))
    with pytest.raises(errors.AuthorizationDenied) as exc:
        _fill(db_session, viewer, vehicle, 1, 40)
    assert exc.value.guard == "role"


def test_inactive_vehicle_rejects_fills(db_session, vehicle, operator, super_admin):
    vehicles.deactivate_vehicle(db_session, super_admin, vehicle.id)
    with pytest.raises(errors.ValidationError):
        _fill(db_session, operator, vehicle, 1, 40)
