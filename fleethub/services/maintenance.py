"""
Maintenance ledger: work orders and their state machine.

    scheduled -> in_progress -> completed
    scheduled | in_progress -> cancelled

Completing a work order feeds the vehicle ledger (odometer and the matching
schedule entry).
"""
import math
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Union

import structlog
from sqlalchemy.orm import Session

from .. import errors
from ..config import settings
from ..models.models import Maintenance, User
from ..schemas.common import Action, Caller, Module, load
from ..schemas.fleet import (
    MaintenanceCancel,
    MaintenanceComplete,
    MaintenanceCreate,
    MaintenanceStart,
    MaintenanceStatus,
    MaintenanceType,
    MaintenanceUpdate,
    PartInstallation,
    ScheduleKind,
    ServiceCompletion,
)
from .permissions import authorize
from .tenants import require_active_branch, require_active_company
from .time_rules import as_utc, utcnow
from .vehicles import (
    get_vehicle,
    get_vehicle_for,
    maintenance_cost_responsibility,
    refresh_schedule,
    update_odometer,
)

logger = structlog.get_logger(__name__)

OPEN_STATUSES = (MaintenanceStatus.scheduled.value, MaintenanceStatus.in_progress.value)
REQUIRED_FIELDS = (
    "title",
    "scheduled_date",
    "priority",
    "estimated_duration_hours",
    "services",
    "parts",
    "materials_cost",
    "external_cost",
    "tax",
    "discount",
)


def generate_work_order_number(db: Session) -> str:
    """Generate a unique work order number"""
    prefix = settings.work_order_prefix
    year = utcnow().year
    count = db.query(Maintenance).filter(
        Maintenance.work_order_number.like(f"{prefix}-{year}-%")
    ).count()
    return f"{prefix}-{year}-{count + 1:05d}"


def _line_items(services, parts):
    services = [s.model_dump(mode="json") for s in services]
    for s in services:
        s["id"] = s.get("id") or str(uuid.uuid4())
        if s.get("labor_cost") is None:
            s["labor_cost"] = round(s["labor_hours"] * s["labor_rate"], 2)
    parts = [p.model_dump(mode="json") for p in parts]
    for p in parts:
        p["id"] = p.get("id") or str(uuid.uuid4())
        if p.get("total_price") is None:
            p["total_price"] = round(p["quantity"] * p["unit_price"], 2)
    return services, parts


def cost_breakdown(services, parts, materials_cost=0, external_cost=0, tax=0, discount=0):
    """Return ``(labor, parts, total)``; a discount larger than the rest is rejected."""
    labor = sum(s.get("labor_cost") or 0 for s in services or [])
    parts_total = sum(p.get("total_price") or 0 for p in parts or [])
    total = labor + parts_total + (materials_cost or 0) + (external_cost or 0) + (tax or 0) - (discount or 0)
    if total < 0:
        raise errors.ValidationError("Discount exceeds the work order cost", {"total_cost": total})
    return labor, parts_total, total


def recompute_costs(m: Maintenance) -> None:
    m.labor_cost, m.parts_cost, m.total_cost = cost_breakdown(
        m.services, m.parts, m.materials_cost, m.external_cost, m.tax, m.discount
    )


def _check_assignee(db: Session, company_id: uuid.UUID, user_id: Optional[uuid.UUID]) -> None:
    if user_id is None:
        return
    user = db.get(User, user_id)
    if user is None:
        raise errors.NotFound("User not found", {"user_id": str(user_id)})
    if user.company_id != company_id or not user.is_active:
        raise errors.ValidationError("Assignee must be an active user of the same company", {"user_id": str(user_id)})


def get_maintenance(db: Session, maintenance_id: uuid.UUID) -> Maintenance:
    m = db.get(Maintenance, maintenance_id)
    if m is None:
        raise errors.NotFound("Work order not found", {"maintenance_id": str(maintenance_id)})
    return m


def get_maintenance_for(db: Session, caller: Caller, maintenance_id: uuid.UUID, action: Action = Action.read) -> Maintenance:
    m = get_maintenance(db, maintenance_id)
    if not caller.is_super_admin and m.company_id != caller.company_id:
        raise errors.NotFound("Work order not found", {"maintenance_id": str(maintenance_id)})
    vehicle = get_vehicle(db, m.vehicle_id)
    authorize(
        db,
        caller,
        Module.maintenance,
        action,
        target_company_id=m.company_id,
        vehicle_type=vehicle.vehicle_type,
    )
    return m


def list_maintenance(
    db: Session,
    caller: Caller,
    vehicle_id: Optional[uuid.UUID] = None,
    status: Optional[MaintenanceStatus] = None,
) -> List[Maintenance]:
    authorize(db, caller, Module.maintenance, Action.read, target_company_id=caller.company_id)
    q = db.query(Maintenance).filter(Maintenance.is_active.is_(True))
    if not caller.is_super_admin:
        q = q.filter(Maintenance.company_id == caller.company_id)
    if vehicle_id is not None:
        q = q.filter(Maintenance.vehicle_id == vehicle_id)
    if status is not None:
        q = q.filter(Maintenance.status == MaintenanceStatus(status).value)
    return q.order_by(Maintenance.scheduled_date.asc()).all()


def create_maintenance(db: Session, caller: Caller, vehicle_id: uuid.UUID, attrs: Union[MaintenanceCreate, dict]) -> Maintenance:
    data = load(MaintenanceCreate, attrs)
    vehicle = get_vehicle_for(db, caller, vehicle_id)
    authorize(
        db,
        caller,
        Module.maintenance,
        Action.create,
        target_company_id=vehicle.company_id,
        vehicle_type=vehicle.vehicle_type,
    )
    require_active_company(db, vehicle.company_id)
    if not vehicle.is_active:
        raise errors.ValidationError("Vehicle is inactive", {"vehicle_id": str(vehicle.id)})
    if data.branch_id is not None:
        require_active_branch(db, data.branch_id, vehicle.company_id)
    _check_assignee(db, vehicle.company_id, data.assigned_to_user_id)

    schedule_kind = data.schedule_kind
    if schedule_kind is None and data.maintenance_type == MaintenanceType.inspeccion:
        schedule_kind = ScheduleKind.general_inspection

    services, parts = _line_items(data.services, data.parts)
    m = Maintenance(
        work_order_number=generate_work_order_number(db),
        vehicle_id=vehicle.id,
        company_id=vehicle.company_id,
        branch_id=data.branch_id or vehicle.branch_id,
        maintenance_type=data.maintenance_type.value,
        schedule_kind=schedule_kind.value if schedule_kind else None,
        priority=data.priority.value,
        status=MaintenanceStatus.scheduled.value,
        title=data.title.strip(),
        description=data.description,
        scheduled_date=as_utc(data.scheduled_date),
        estimated_duration_hours=data.estimated_duration_hours,
        odometer_reading=data.odometer_reading,
        services=services,
        parts=parts,
        materials_cost=data.materials_cost,
        external_cost=data.external_cost,
        tax=data.tax,
        discount=data.discount,
        cost_responsibility=maintenance_cost_responsibility(vehicle).value,
        assigned_to_user_id=data.assigned_to_user_id,
        notes=data.notes,
        is_active=True,
        created_by=caller.id,
    )
    recompute_costs(m)
    db.add(m)
    db.flush()
    logger.info(
        "maintenance_created",
        maintenance_id=str(m.id),
        work_order_number=m.work_order_number,
        vehicle_id=str(vehicle.id),
    )
    return m


def _require_open(m: Maintenance, operation: str) -> None:
    if m.status not in OPEN_STATUSES:
        raise errors.InvariantViolation(
            f"Cannot {operation} a work order with status '{m.status}'",
            {"maintenance_id": str(m.id), "status": m.status},
        )


def update_maintenance(db: Session, caller: Caller, maintenance_id: uuid.UUID, attrs: Union[MaintenanceUpdate, dict]) -> Maintenance:
    data = load(MaintenanceUpdate, attrs)
    m = get_maintenance_for(db, caller, maintenance_id, Action.update)
    _require_open(m, "edit")

    fields = data.model_dump(exclude_unset=True)
    for key in REQUIRED_FIELDS:
        if key in fields and fields[key] is None:
            del fields[key]
    services, parts = _line_items(data.services or [], data.parts or [])
    if "services" in fields:
        fields["services"] = services
    if "parts" in fields:
        fields["parts"] = parts

    if "assigned_to_user_id" in fields:
        _check_assignee(db, m.company_id, fields["assigned_to_user_id"])
    if fields.get("scheduled_date") is not None:
        fields["scheduled_date"] = as_utc(fields["scheduled_date"])

    # nothing is written until the new cost breakdown is known to be valid
    costs = {key: fields.get(key, getattr(m, key)) for key in ("services", "parts", "materials_cost", "external_cost", "tax", "discount")}
    labor, parts_total, total = cost_breakdown(**costs)

    for key, value in fields.items():
        if hasattr(value, "value"):
            value = value.value
        setattr(m, key, value)

    m.labor_cost, m.parts_cost, m.total_cost = labor, parts_total, total
    m.updated_at = utcnow()
    db.flush()
    return m


def start_maintenance(db: Session, caller: Caller, maintenance_id: uuid.UUID, attrs: Union[MaintenanceStart, dict, None] = None) -> Maintenance:
    data = load(MaintenanceStart, attrs or {})
    m = get_maintenance_for(db, caller, maintenance_id, Action.update)
    if m.status != MaintenanceStatus.scheduled.value:
        raise errors.InvariantViolation(
            f"Cannot start a work order with status '{m.status}'",
            {"maintenance_id": str(m.id), "status": m.status},
        )
    started_at = as_utc(data.started_at) or utcnow()
    if started_at > utcnow():
        raise errors.ValidationError("Start date cannot be in the future")

    m.status = MaintenanceStatus.in_progress.value
    m.started_at = started_at
    m.updated_at = utcnow()
    db.flush()
    logger.info("maintenance_started", maintenance_id=str(m.id))
    return m


def _earliest_completion(m: Maintenance) -> datetime:
    return as_utc(m.scheduled_date) - timedelta(hours=settings.completion_grace_hours)


def _check_completion_date(m: Maintenance, completed_at: datetime, now: datetime) -> None:
    if completed_at > now:
        raise errors.ValidationError("Completion date cannot be in the future")
    if completed_at < _earliest_completion(m):
        raise errors.InvariantViolation(
            "Completion date cannot precede the scheduled date",
            {"completed_at": completed_at.isoformat(), "scheduled_date": as_utc(m.scheduled_date).isoformat()},
        )


def _finish(db: Session, m: Maintenance, completed_at: datetime, final_odometer: Optional[int] = None) -> None:
    """Move an open work order to completed and feed the vehicle ledger."""
    started_at = as_utc(m.started_at) or as_utc(m.scheduled_date)
    m.status = MaintenanceStatus.completed.value
    m.started_at = started_at
    m.completed_date = completed_at
    m.actual_duration_hours = round(max((completed_at - started_at).total_seconds(), 0) / 3600, 2)
    if final_odometer is not None:
        m.odometer_reading = final_odometer
    m.updated_at = utcnow()

    vehicle = get_vehicle(db, m.vehicle_id)
    if final_odometer is not None:
        vehicle = update_odometer(db, vehicle.id, final_odometer, completed_at)
    if m.schedule_kind:
        service_km = final_odometer if final_odometer is not None else (m.odometer_reading or vehicle.odometer_current)
        refresh_schedule(vehicle, m.schedule_kind, service_km, completed_at)

    db.flush()
    logger.info(
        "maintenance_completed",
        maintenance_id=str(m.id),
        vehicle_id=str(m.vehicle_id),
        final_odometer=final_odometer,
    )


def complete_maintenance(db: Session, caller: Caller, maintenance_id: uuid.UUID, attrs: Union[MaintenanceComplete, dict, None] = None) -> Maintenance:
    data = load(MaintenanceComplete, attrs or {})
    m = get_maintenance_for(db, caller, maintenance_id, Action.update)
    _require_open(m, "complete")

    now = utcnow()
    completed_at = as_utc(data.completed_at) or now
    _check_completion_date(m, completed_at, now)
    _finish(db, m, completed_at, data.final_odometer)
    return m


def _find_item(items: list, item_id: uuid.UUID, label: str) -> int:
    for index, item in enumerate(items):
        if item.get("id") == str(item_id):
            return index
    raise errors.NotFound(f"{label} not found", {"item_id": str(item_id)})


def complete_service_item(
    db: Session,
    caller: Caller,
    maintenance_id: uuid.UUID,
    service_id: uuid.UUID,
    attrs: Union[ServiceCompletion, dict, None] = None,
) -> Maintenance:
    """
    Mark one service line as done.

    When the last open service of an in-progress work order is completed the
    order itself is completed, unless it is still too early to complete it.
    """
    data = load(ServiceCompletion, attrs or {})
    m = get_maintenance_for(db, caller, maintenance_id, Action.update)
    _require_open(m, "complete a service on")

    services = [dict(s) for s in m.services or []]
    index = _find_item(services, service_id, "Service")
    if services[index].get("is_completed"):
        raise errors.InvariantViolation("Service already completed", {"service_id": str(service_id)})

    now = utcnow()
    services[index].update(is_completed=True, completed_by=str(caller.id), completed_date=now.isoformat())
    if data.notes:
        services[index]["notes"] = data.notes
    m.services = services
    m.updated_at = now
    db.flush()
    logger.info("maintenance_service_completed", maintenance_id=str(m.id), service_id=str(service_id))

    if m.status == MaintenanceStatus.in_progress.value and all(s.get("is_completed") for s in services):
        if now >= _earliest_completion(m):
            _finish(db, m, now)
        else:
            logger.info("maintenance_autocomplete_deferred", maintenance_id=str(m.id))
    return m


def install_part(
    db: Session,
    caller: Caller,
    maintenance_id: uuid.UUID,
    part_id: uuid.UUID,
    attrs: Union[PartInstallation, dict, None] = None,
) -> Maintenance:
    data = load(PartInstallation, attrs or {})
    m = get_maintenance_for(db, caller, maintenance_id, Action.update)
    _require_open(m, "install a part on")

    parts = [dict(p) for p in m.parts or []]
    index = _find_item(parts, part_id, "Part")
    part = parts[index]
    if part.get("is_installed"):
        raise errors.InvariantViolation("Part already installed", {"part_id": str(part_id)})
    if data.quantity is not None and data.quantity > part["quantity"]:
        raise errors.ValidationError(
            f"Cannot install {data.quantity} units, the work order lists {part['quantity']}",
            {"quantity": data.quantity},
        )

    now = utcnow()
    part.update(is_installed=True, installed_by=str(caller.id), installed_date=now.isoformat())
    if data.notes:
        part["notes"] = data.notes
    m.parts = parts
    m.updated_at = now
    db.flush()
    logger.info("maintenance_part_installed", maintenance_id=str(m.id), part_id=str(part_id))
    return m


def cancel_maintenance(db: Session, caller: Caller, maintenance_id: uuid.UUID, attrs: Union[MaintenanceCancel, dict, None] = None) -> Maintenance:
    data = load(MaintenanceCancel, attrs or {})
    m = get_maintenance_for(db, caller, maintenance_id, Action.update)
    _require_open(m, "cancel")

    m.status = MaintenanceStatus.cancelled.value
    m.cancelled_at = utcnow()
    m.cancel_reason = data.reason
    m.updated_at = m.cancelled_at
    db.flush()
    logger.info("maintenance_cancelled", maintenance_id=str(m.id), reason=data.reason)
    return m


# ---------- derived ----------
def is_overdue(m: Maintenance, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return m.status == MaintenanceStatus.scheduled.value and as_utc(m.scheduled_date) < as_utc(now)


def days_until_due(m: Maintenance, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    seconds = (as_utc(m.scheduled_date) - as_utc(now)).total_seconds()
    return math.ceil(seconds / 86400)


def completion_percentage(m: Maintenance) -> int:
    services = m.services or []
    if not services:
        return 0
    done = sum(1 for s in services if s.get("is_completed"))
    return round(done / len(services) * 100)
