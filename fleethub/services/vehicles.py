"""
Vehicle ledger.

Owns vehicles, their odometer state and per-kind maintenance schedules.
``update_odometer`` is the only code path allowed to move the odometer; fuel
and maintenance go through it.
"""
import uuid
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Union

import structlog
from sqlalchemy.orm import Session

from .. import errors
from ..config import settings
from ..models.models import Vehicle, VehicleMaintenanceSchedule
from ..schemas.common import Action, Caller, Module, QuotaResource, VehicleType, load
from ..schemas.fleet import (
    DEFAULT_SCHEDULE,
    CostResponsibility,
    DocumentType,
    ExpiringDocument,
    MaintenanceAlert,
    MaintenancePriority,
    OdometerReadingIn,
    OwnershipIn,
    OwnershipType,
    ScheduleKind,
    VehicleCreate,
    VehicleUpdate,
)
from .permissions import accessible_vehicle_types, authorize
from .tenants import require_active_branch, require_active_company
from .time_rules import as_utc, days_until, months_between, utcnow

logger = structlog.get_logger(__name__)

ALERT_PRIORITY = {
    ScheduleKind.oil_change: MaintenancePriority.high,
    ScheduleKind.general_inspection: MaintenancePriority.medium,
    ScheduleKind.tire_rotation: MaintenancePriority.medium,
}

ALERT_TITLES = {
    ScheduleKind.oil_change: "Oil change due",
    ScheduleKind.general_inspection: "General inspection due",
    ScheduleKind.tire_rotation: "Tire rotation due",
}

REQUIRED_FIELDS = ("plate_number", "make", "model", "year", "vehicle_type", "status", "condition")

DOCUMENT_FIELDS = {
    DocumentType.registration: "registration_expiry",
    DocumentType.insurance: "insurance_expiry",
    DocumentType.inspection: "inspection_next_date",
}


# ---------- lookups ----------
def get_vehicle(db: Session, vehicle_id: uuid.UUID) -> Vehicle:
    vehicle = db.get(Vehicle, vehicle_id)
    if vehicle is None:
        raise errors.NotFound("Vehicle not found", {"vehicle_id": str(vehicle_id)})
    return vehicle


def get_vehicle_for(db: Session, caller: Caller, vehicle_id: uuid.UUID) -> Vehicle:
    """Tenant-scoped read; another company's vehicle looks exactly like a missing one."""
    vehicle = get_vehicle(db, vehicle_id)
    if not caller.is_super_admin and vehicle.company_id != caller.company_id:
        raise errors.NotFound("Vehicle not found", {"vehicle_id": str(vehicle_id)})
    authorize(
        db,
        caller,
        Module.vehicles,
        Action.read,
        target_company_id=vehicle.company_id,
        vehicle_type=vehicle.vehicle_type,
    )
    return vehicle


def list_vehicles(db: Session, caller: Caller, company_id: Optional[uuid.UUID] = None, include_inactive: bool = False) -> List[Vehicle]:
    company_id = company_id or caller.company_id
    authorize(db, caller, Module.vehicles, Action.read, target_company_id=company_id)
    q = db.query(Vehicle)
    if company_id is not None:
        q = q.filter(Vehicle.company_id == company_id)
    if not include_inactive:
        q = q.filter(Vehicle.is_active.is_(True))
    if caller.vehicle_type_access and not caller.is_super_admin:
        q = q.filter(Vehicle.vehicle_type.in_(accessible_vehicle_types(caller, [t.value for t in VehicleType])))
    return q.order_by(Vehicle.plate_number.asc()).all()


def get_schedule(vehicle: Vehicle, kind: Union[ScheduleKind, str]) -> Optional[VehicleMaintenanceSchedule]:
    kind = ScheduleKind(kind)
    for entry in vehicle.schedules:
        if entry.kind == kind.value:
            return entry
    return None


def _ensure_unique_identifiers(db: Session, company_id: uuid.UUID, plate_number: Optional[str], vin: Optional[str], exclude_id: Optional[uuid.UUID] = None) -> None:
    if plate_number:
        q = db.query(Vehicle).filter(Vehicle.company_id == company_id, Vehicle.plate_number == plate_number)
        if exclude_id is not None:
            q = q.filter(Vehicle.id != exclude_id)
        if q.first():
            raise errors.InvariantViolation("Plate number already registered in this company", {"plate_number": plate_number})
    if vin:
        q = db.query(Vehicle).filter(Vehicle.vin == vin)
        if exclude_id is not None:
            q = q.filter(Vehicle.id != exclude_id)
        if q.first():
            raise errors.InvariantViolation("VIN already registered", {"vin": vin})


def _apply_ownership(vehicle: Vehicle, ownership: dict) -> None:
    if "ownership_type" in ownership and ownership["ownership_type"] is not None:
        vehicle.ownership_type = OwnershipType(ownership["ownership_type"]).value
    for key in ("monthly_rental_cost", "lessor_name"):
        if key in ownership:
            setattr(vehicle, key, ownership[key])
    if "maintenance_responsibility" in ownership:
        value = ownership["maintenance_responsibility"]
        vehicle.maintenance_responsibility = CostResponsibility(value).value if value else None


# ---------- ledger operations ----------
def create_vehicle(db: Session, caller: Caller, company_id: uuid.UUID, attrs: Union[VehicleCreate, dict]) -> Vehicle:
    data = load(VehicleCreate, attrs)
    if company_id is None:
        raise errors.ValidationError("company_id is required")
    authorize(
        db,
        caller,
        Module.vehicles,
        Action.create,
        target_company_id=company_id,
        quota_resource=QuotaResource.vehicles,
        vehicle_type=data.vehicle_type.value,
    )
    company = require_active_company(db, company_id)
    if data.branch_id is not None:
        require_active_branch(db, data.branch_id, company.id)
    _ensure_unique_identifiers(db, company.id, data.plate_number, data.vin)

    now = utcnow()
    vehicle = Vehicle(
        company_id=company.id,
        branch_id=data.branch_id,
        plate_number=data.plate_number,
        vin=data.vin,
        make=data.make.strip(),
        model=data.model.strip(),
        year=data.year,
        color=data.color,
        vehicle_type=data.vehicle_type.value,
        fuel_capacity=data.fuel_capacity,
        odometer_current=data.odometer,
        odometer_unit=data.odometer_unit.value,
        odometer_updated_at=now,
        status=data.status.value,
        condition=data.condition.value,
        notes=data.notes,
        is_active=True,
        created_by=caller.id,
    )
    _apply_ownership(vehicle, (data.ownership or OwnershipIn()).model_dump())
    if data.documents is not None:
        for key, value in data.documents.model_dump().items():
            setattr(vehicle, key, value)

    supplied = data.maintenance_schedule.model_dump() if data.maintenance_schedule else {}
    for kind, (default_km, default_months) in DEFAULT_SCHEDULE.items():
        entry = supplied.get(kind.value) or {}
        vehicle.schedules.append(
            VehicleMaintenanceSchedule(
                kind=kind.value,
                interval_km=entry.get("interval_km") or default_km,
                interval_months=entry.get("interval_months") or default_months,
                last_km=entry.get("last_km") or 0,
                last_date=as_utc(entry.get("last_date")),
            )
        )

    db.add(vehicle)
    db.flush()
    logger.info(
        "vehicle_created",
        vehicle_id=str(vehicle.id),
        company_id=str(company.id),
        plate_number=vehicle.plate_number,
    )
    return vehicle


def update_odometer(db: Session, vehicle_id: uuid.UUID, new_reading: int, at: Optional[datetime] = None) -> Vehicle:
    """
    Move the odometer forward to ``new_reading``.

    The row is re-read under a row lock in the current transaction and the
    comparison is made against that stored value. Readings at or below it are
    ignored and the vehicle is returned unchanged.
    """
    # pending changes must reach the row before it is re-read
    db.flush()
    vehicle = (
        db.query(Vehicle)
        .filter(Vehicle.id == vehicle_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if vehicle is None:
        raise errors.NotFound("Vehicle not found", {"vehicle_id": str(vehicle_id)})

    current = vehicle.odometer_current or 0
    if new_reading is None or new_reading <= current:
        logger.debug("odometer_update_ignored", vehicle_id=str(vehicle.id), current=current, reading=new_reading)
        return vehicle

    vehicle.odometer_current = new_reading
    vehicle.odometer_updated_at = as_utc(at) or utcnow()
    vehicle.updated_at = utcnow()
    db.flush()
    logger.info("odometer_updated", vehicle_id=str(vehicle.id), previous=current, reading=new_reading)
    return vehicle


def record_odometer_reading(db: Session, caller: Caller, vehicle_id: uuid.UUID, attrs: Union[OdometerReadingIn, dict]) -> Vehicle:
    data = load(OdometerReadingIn, attrs)
    vehicle = get_vehicle_for(db, caller, vehicle_id)
    authorize(
        db,
        caller,
        Module.vehicles,
        Action.update,
        target_company_id=vehicle.company_id,
        vehicle_type=vehicle.vehicle_type,
    )
    if data.read_at is not None and as_utc(data.read_at) > utcnow():
        raise errors.ValidationError("Odometer reading date cannot be in the future")
    if data.reading < vehicle.odometer_current:
        raise errors.InvariantViolation(
            "Odometer reading cannot be lower than the current value",
            {"current": vehicle.odometer_current, "reading": data.reading},
        )
    return update_odometer(db, vehicle.id, data.reading, data.read_at)


def update_vehicle(db: Session, caller: Caller, vehicle_id: uuid.UUID, attrs: Union[VehicleUpdate, dict]) -> Vehicle:
    data = load(VehicleUpdate, attrs)
    vehicle = get_vehicle_for(db, caller, vehicle_id)
    authorize(
        db,
        caller,
        Module.vehicles,
        Action.update,
        target_company_id=vehicle.company_id,
        vehicle_type=vehicle.vehicle_type,
    )
    fields = data.model_dump(exclude_unset=True)

    if data.vehicle_type is not None and data.vehicle_type.value != vehicle.vehicle_type:
        authorize(
            db,
            caller,
            Module.vehicles,
            Action.update,
            target_company_id=vehicle.company_id,
            vehicle_type=data.vehicle_type.value,
        )
    if fields.get("branch_id") is not None:
        require_active_branch(db, fields["branch_id"], vehicle.company_id)
    _ensure_unique_identifiers(
        db,
        vehicle.company_id,
        fields.get("plate_number"),
        fields.get("vin"),
        exclude_id=vehicle.id,
    )

    schedule = fields.pop("maintenance_schedule", None) or {}
    ownership = fields.pop("ownership", None)
    documents = fields.pop("documents", None)

    for key, value in fields.items():
        if key in REQUIRED_FIELDS and value is None:
            continue
        if hasattr(value, "value"):
            value = value.value
        setattr(vehicle, key, value)

    for kind_name, entry in schedule.items():
        if not entry:
            continue
        row = get_schedule(vehicle, kind_name)
        if row is None:
            default_km, default_months = DEFAULT_SCHEDULE[ScheduleKind(kind_name)]
            row = VehicleMaintenanceSchedule(kind=kind_name, interval_km=default_km, interval_months=default_months, last_km=0)
            vehicle.schedules.append(row)
        for key, value in entry.items():
            if key in ("interval_km", "interval_months") and value is None:
                continue
            setattr(row, key, as_utc(value) if key == "last_date" else value)

    if ownership is not None:
        _apply_ownership(vehicle, ownership)
    if documents is not None:
        for key, value in documents.items():
            setattr(vehicle, key, value)

    vehicle.updated_at = utcnow()
    db.flush()
    return vehicle


def deactivate_vehicle(db: Session, caller: Caller, vehicle_id: uuid.UUID) -> Vehicle:
    vehicle = get_vehicle_for(db, caller, vehicle_id)
    authorize(
        db,
        caller,
        Module.vehicles,
        Action.delete,
        target_company_id=vehicle.company_id,
        vehicle_type=vehicle.vehicle_type,
    )
    vehicle.is_active = False
    vehicle.updated_at = utcnow()
    db.flush()
    logger.info("vehicle_deactivated", vehicle_id=str(vehicle.id))
    return vehicle


def refresh_schedule(vehicle: Vehicle, kind: Union[ScheduleKind, str], km: int, at: datetime) -> VehicleMaintenanceSchedule:
    """Mark ``kind`` as serviced at ``km`` / ``at``."""
    row = get_schedule(vehicle, kind)
    if row is None:
        default_km, default_months = DEFAULT_SCHEDULE[ScheduleKind(kind)]
        row = VehicleMaintenanceSchedule(kind=ScheduleKind(kind).value, interval_km=default_km, interval_months=default_months)
        vehicle.schedules.append(row)
    row.last_km = km
    row.last_date = as_utc(at)
    return row


# ---------- derived state ----------
def schedule_is_due(entry: VehicleMaintenanceSchedule, odometer_current: int, now: Optional[datetime] = None) -> bool:
    """Either threshold alone makes the entry due; a never-serviced entry is due by date."""
    now = now or utcnow()
    distance = (odometer_current or 0) - (entry.last_km or 0)
    if distance >= entry.interval_km:
        return True
    if entry.last_date is None:
        return True
    return months_between(entry.last_date, now) >= entry.interval_months


def needs_maintenance(db: Session, vehicle_id: uuid.UUID, kind: Union[ScheduleKind, str], now: Optional[datetime] = None) -> bool:
    vehicle = get_vehicle(db, vehicle_id)
    entry = get_schedule(vehicle, kind)
    if entry is None:
        default_km, default_months = DEFAULT_SCHEDULE[ScheduleKind(kind)]
        entry = VehicleMaintenanceSchedule(kind=ScheduleKind(kind).value, interval_km=default_km, interval_months=default_months, last_km=0)
    return schedule_is_due(entry, vehicle.odometer_current, now)


def documents_expiring(vehicle: Vehicle, days_ahead: int, today: Optional[date] = None) -> List[ExpiringDocument]:
    today = today or utcnow().date()
    horizon = today + timedelta(days=days_ahead)
    found = []
    for doc_type, field_name in DOCUMENT_FIELDS.items():
        expiry = getattr(vehicle, field_name)
        if expiry is None or expiry > horizon:
            continue
        found.append(
            ExpiringDocument(
                document_type=doc_type,
                expiry_date=expiry,
                days_until_expiry=days_until(expiry, today),
            )
        )
    found.sort(key=lambda d: d.expiry_date)
    return found


def expiring_documents(db: Session, vehicle_id: uuid.UUID, days_ahead: Optional[int] = None, today: Optional[date] = None) -> List[ExpiringDocument]:
    vehicle = get_vehicle(db, vehicle_id)
    if days_ahead is None:
        days_ahead = settings.document_alert_days
    return documents_expiring(vehicle, days_ahead, today)


def maintenance_cost_responsibility(vehicle: Vehicle) -> CostResponsibility:
    if vehicle.ownership_type != OwnershipType.rented.value:
        return CostResponsibility.owner_company
    if not vehicle.maintenance_responsibility:
        return CostResponsibility.owner_company
    return CostResponsibility(vehicle.maintenance_responsibility)


def maintenance_alerts(
    db: Session,
    vehicle_id: uuid.UUID,
    days_ahead: Optional[int] = None,
    now: Optional[datetime] = None,
    kinds: Optional[Iterable[ScheduleKind]] = None,
) -> List[MaintenanceAlert]:
    vehicle = get_vehicle(db, vehicle_id)
    now = now or utcnow()
    alerts = []
    for kind in kinds or list(ScheduleKind):
        entry = get_schedule(vehicle, kind)
        if entry is None or not schedule_is_due(entry, vehicle.odometer_current, now):
            continue
        alerts.append(
            MaintenanceAlert(
                alert_type="maintenance",
                priority=ALERT_PRIORITY[kind],
                title=ALERT_TITLES[kind],
                schedule_kind=kind,
                due_km=(entry.last_km or 0) + entry.interval_km,
            )
        )

    if days_ahead is None:
        days_ahead = settings.document_alert_days
    for doc in documents_expiring(vehicle, days_ahead, as_utc(now).date()):
        expired = doc.days_until_expiry < 0
        alerts.append(
            MaintenanceAlert(
                alert_type="document",
                priority=MaintenancePriority.critical if expired else MaintenancePriority.high,
                title=f"{doc.document_type.value.capitalize()} {'expired' if expired else 'expiring'}",
                document_type=doc.document_type,
                due_date=doc.expiry_date,
            )
        )
    return alerts
