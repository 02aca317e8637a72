"""
Fuel ledger.

Fill-ups are kept in fill-date order per vehicle; that order is the only input
to consumption figures, so odometer readings that would break it are refused
on write.
"""
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Union

import structlog
from sqlalchemy.orm import Session

from .. import errors
from ..config import settings
from ..models.models import FuelRecord
from ..schemas.common import Action, Caller, Module, load
from ..schemas.fleet import FuelRecordCreate, FuelStatistics
from .permissions import authorize
from .tenants import require_active_company
from .time_rules import as_utc, utcnow
from .vehicles import get_vehicle, get_vehicle_for, update_odometer

logger = structlog.get_logger(__name__)


def _neighbour_readings(db: Session, vehicle_id: uuid.UUID, fill_date: datetime):
    """Closest earlier and later fill-ups that carry an odometer reading."""
    base = db.query(FuelRecord).filter(FuelRecord.vehicle_id == vehicle_id, FuelRecord.odometer.isnot(None))
    prior = (
        base.filter(FuelRecord.fill_date <= fill_date)
        .order_by(FuelRecord.fill_date.desc(), FuelRecord.created_at.desc())
        .first()
    )
    following = base.filter(FuelRecord.fill_date > fill_date).order_by(FuelRecord.fill_date.asc()).first()
    return prior, following


def create_fuel_record(db: Session, caller: Caller, vehicle_id: uuid.UUID, attrs: Union[FuelRecordCreate, dict]) -> FuelRecord:
    data = load(FuelRecordCreate, attrs)
    vehicle = get_vehicle_for(db, caller, vehicle_id)
    authorize(
        db,
        caller,
        Module.fuel,
        Action.create,
        target_company_id=vehicle.company_id,
        vehicle_type=vehicle.vehicle_type,
    )
    require_active_company(db, vehicle.company_id)
    if not vehicle.is_active:
        raise errors.ValidationError("Vehicle is inactive", {"vehicle_id": str(vehicle.id)})

    fill_date = as_utc(data.fill_date)
    if fill_date > utcnow():
        raise errors.ValidationError("Fill date cannot be in the future", {"fill_date": fill_date.isoformat()})

    if data.odometer is not None:
        prior, following = _neighbour_readings(db, vehicle.id, fill_date)
        if prior is not None and data.odometer < prior.odometer:
            raise errors.InvariantViolation(
                f"Odometer ({data.odometer}) cannot be lower than the previous fill-up ({prior.odometer})",
                {"odometer": data.odometer, "previous": prior.odometer},
            )
        if following is not None and data.odometer > following.odometer:
            raise errors.InvariantViolation(
                f"Odometer ({data.odometer}) cannot be higher than the next fill-up ({following.odometer})",
                {"odometer": data.odometer, "next": following.odometer},
            )

    total_cost = data.total_cost
    cost_mismatch = False
    if data.price_per_liter is not None:
        computed = round(data.price_per_liter * data.liters, 2)
        if total_cost is None:
            total_cost = computed
        elif abs(computed - total_cost) > settings.fuel_cost_tolerance:
            cost_mismatch = True
            logger.warning(
                "fuel_cost_mismatch",
                vehicle_id=str(vehicle.id),
                computed=computed,
                total_cost=total_cost,
            )

    record = FuelRecord(
        vehicle_id=vehicle.id,
        company_id=vehicle.company_id,
        fill_date=fill_date,
        liters=data.liters,
        odometer=data.odometer,
        price_per_liter=data.price_per_liter,
        total_cost=total_cost,
        cost_mismatch=cost_mismatch,
        fuel_type=data.fuel_type.value,
        station=data.station,
        location=data.location,
        is_full=data.is_full,
        notes=data.notes,
        receipt=data.receipt.model_dump(mode="json") if data.receipt else None,
        created_by=caller.id,
    )
    db.add(record)
    db.flush()

    if data.odometer is not None:
        update_odometer(db, vehicle.id, data.odometer, fill_date)

    logger.info(
        "fuel_record_created",
        fuel_record_id=str(record.id),
        vehicle_id=str(vehicle.id),
        liters=record.liters,
        odometer=record.odometer,
    )
    return record


def consumption_from_records(records: Sequence[FuelRecord]) -> Optional[float]:
    """
    Liters per 100 distance units over fill-date ordered ``records``.

    Only adjacent pairs where both sides have a reading and the distance grew
    count, and each pair contributes the later fill's liters. The first
    record's liters are never counted. Returns None when no pair qualifies.
    """
    liters = 0.0
    distance = 0
    for previous, current in zip(records, records[1:]):
        if previous.odometer is None or current.odometer is None:
            continue
        delta = current.odometer - previous.odometer
        if delta > 0:
            liters += current.liters
            distance += delta
    if distance <= 0:
        return None
    return liters / distance * 100


def average_consumption(db: Session, vehicle_id: uuid.UUID, window_days: Optional[int] = None, now: Optional[datetime] = None) -> Optional[float]:
    get_vehicle(db, vehicle_id)
    if window_days is None:
        window_days = settings.consumption_window_days
    since = (as_utc(now) or utcnow()) - timedelta(days=window_days)
    records = (
        db.query(FuelRecord)
        .filter(FuelRecord.vehicle_id == vehicle_id, FuelRecord.fill_date >= since)
        .order_by(FuelRecord.fill_date.asc())
        .all()
    )
    return consumption_from_records(records)


def list_fuel_records(
    db: Session,
    vehicle_id: uuid.UUID,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> List[FuelRecord]:
    q = db.query(FuelRecord).filter(FuelRecord.vehicle_id == vehicle_id)
    if start_date is not None:
        q = q.filter(FuelRecord.fill_date >= as_utc(start_date))
    if end_date is not None:
        q = q.filter(FuelRecord.fill_date <= as_utc(end_date))
    return q.order_by(FuelRecord.fill_date.asc()).all()


def fuel_statistics(
    db: Session,
    vehicle_id: uuid.UUID,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> FuelStatistics:
    get_vehicle(db, vehicle_id)
    records = list_fuel_records(db, vehicle_id, start_date, end_date)
    if not records:
        return FuelStatistics()

    total_liters = sum(r.liters for r in records)
    total_cost = sum(r.total_cost for r in records if r.total_cost is not None)
    return FuelStatistics(
        total_liters=total_liters,
        total_cost=total_cost,
        average_price_per_liter=total_cost / total_liters if total_cost > 0 else 0,
        record_count=len(records),
        average_consumption=consumption_from_records(records),
    )


def readable_vehicle(db: Session, caller: Caller, vehicle_id: uuid.UUID):
    """Vehicle whose fuel history ``caller`` may read."""
    vehicle = get_vehicle_for(db, caller, vehicle_id)
    authorize(
        db,
        caller,
        Module.fuel,
        Action.read,
        target_company_id=vehicle.company_id,
        vehicle_type=vehicle.vehicle_type,
    )
    return vehicle
