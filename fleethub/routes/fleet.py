import uuid
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_caller
from ..db import get_db, transaction
from ..models.models import Maintenance
from ..schemas.common import Caller
from ..schemas.fleet import (
    ExpiringDocument,
    FuelRecordCreate,
    FuelRecordResponse,
    FuelStatistics,
    MaintenanceAlert,
    MaintenanceCancel,
    MaintenanceComplete,
    MaintenanceCreate,
    MaintenanceResponse,
    MaintenanceStart,
    MaintenanceStatus,
    MaintenanceUpdate,
    OdometerReadingIn,
    PartInstallation,
    ScheduleKind,
    ServiceCompletion,
    VehicleCreate,
    VehicleResponse,
    VehicleUpdate,
)
from ..services import fuel, maintenance, vehicles

router = APIRouter(prefix="/fleet", tags=["fleet"])


def _maintenance_view(m: Maintenance) -> MaintenanceResponse:
    return MaintenanceResponse.model_validate(m).model_copy(
        update={
            "is_overdue": maintenance.is_overdue(m),
            "days_until_due": maintenance.days_until_due(m),
            "completion_percentage": maintenance.completion_percentage(m),
        }
    )


# ---------- VEHICLES ----------
@router.get("/vehicles", response_model=List[VehicleResponse])
def list_vehicles(
    company_id: Optional[uuid.UUID] = Query(None),
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    return vehicles.list_vehicles(db, caller, company_id, include_inactive)


@router.post("/vehicles", response_model=VehicleResponse)
def create_vehicle(
    payload: VehicleCreate,
    company_id: Optional[uuid.UUID] = Query(None),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    """Register a vehicle in the caller's company (super admins pass company_id)"""
    with transaction(db):
        vehicle = vehicles.create_vehicle(db, caller, company_id or caller.company_id, payload)
    db.refresh(vehicle)
    return vehicle


@router.get("/vehicles/{vehicle_id}", response_model=VehicleResponse)
def get_vehicle(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    return vehicles.get_vehicle_for(db, caller, vehicle_id)


@router.put("/vehicles/{vehicle_id}", response_model=VehicleResponse)
def update_vehicle(
    vehicle_id: uuid.UUID,
    payload: VehicleUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        vehicle = vehicles.update_vehicle(db, caller, vehicle_id, payload)
    db.refresh(vehicle)
    return vehicle


@router.delete("/vehicles/{vehicle_id}")
def deactivate_vehicle(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    """Soft delete; the vehicle stops counting against the quota"""
    with transaction(db):
        vehicles.deactivate_vehicle(db, caller, vehicle_id)
    return {"message": "Vehicle deactivated successfully"}


@router.post("/vehicles/{vehicle_id}/odometer", response_model=VehicleResponse)
def record_odometer_reading(
    vehicle_id: uuid.UUID,
    payload: OdometerReadingIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        vehicle = vehicles.record_odometer_reading(db, caller, vehicle_id, payload)
    db.refresh(vehicle)
    return vehicle


@router.get("/vehicles/{vehicle_id}/maintenance-due", response_model=Dict[str, bool])
def get_maintenance_due(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    vehicle = vehicles.get_vehicle_for(db, caller, vehicle_id)
    return {kind.value: vehicles.needs_maintenance(db, vehicle.id, kind) for kind in ScheduleKind}


@router.get("/vehicles/{vehicle_id}/documents", response_model=List[ExpiringDocument])
def get_expiring_documents(
    vehicle_id: uuid.UUID,
    days_ahead: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    vehicle = vehicles.get_vehicle_for(db, caller, vehicle_id)
    return vehicles.expiring_documents(db, vehicle.id, days_ahead)


@router.get("/vehicles/{vehicle_id}/alerts", response_model=List[MaintenanceAlert])
def get_alerts(
    vehicle_id: uuid.UUID,
    days_ahead: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    vehicle = vehicles.get_vehicle_for(db, caller, vehicle_id)
    return vehicles.maintenance_alerts(db, vehicle.id, days_ahead)


# ---------- FUEL ----------
@router.post("/vehicles/{vehicle_id}/fuel-records", response_model=FuelRecordResponse)
def create_fuel_record(
    vehicle_id: uuid.UUID,
    payload: FuelRecordCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        record = fuel.create_fuel_record(db, caller, vehicle_id, payload)
    db.refresh(record)
    return record


@router.get("/vehicles/{vehicle_id}/fuel-records", response_model=List[FuelRecordResponse])
def list_fuel_records(
    vehicle_id: uuid.UUID,
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    vehicle = fuel.readable_vehicle(db, caller, vehicle_id)
    return fuel.list_fuel_records(db, vehicle.id, start_date, end_date)


@router.get("/vehicles/{vehicle_id}/fuel-stats", response_model=FuelStatistics)
def get_fuel_statistics(
    vehicle_id: uuid.UUID,
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    vehicle = fuel.readable_vehicle(db, caller, vehicle_id)
    return fuel.fuel_statistics(db, vehicle.id, start_date, end_date)


@router.get("/vehicles/{vehicle_id}/consumption")
def get_average_consumption(
    vehicle_id: uuid.UUID,
    window_days: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    vehicle = fuel.readable_vehicle(db, caller, vehicle_id)
    return {"average_consumption": fuel.average_consumption(db, vehicle.id, window_days)}


# ---------- MAINTENANCE ----------
@router.post("/vehicles/{vehicle_id}/maintenance", response_model=MaintenanceResponse)
def create_maintenance(
    vehicle_id: uuid.UUID,
    payload: MaintenanceCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        m = maintenance.create_maintenance(db, caller, vehicle_id, payload)
    db.refresh(m)
    return _maintenance_view(m)


@router.get("/maintenance", response_model=List[MaintenanceResponse])
def list_maintenance(
    vehicle_id: Optional[uuid.UUID] = Query(None),
    status: Optional[MaintenanceStatus] = Query(None),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    return [_maintenance_view(m) for m in maintenance.list_maintenance(db, caller, vehicle_id, status)]


@router.get("/maintenance/{maintenance_id}", response_model=MaintenanceResponse)
def get_maintenance(
    maintenance_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    return _maintenance_view(maintenance.get_maintenance_for(db, caller, maintenance_id))


@router.put("/maintenance/{maintenance_id}", response_model=MaintenanceResponse)
def update_maintenance(
    maintenance_id: uuid.UUID,
    payload: MaintenanceUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        m = maintenance.update_maintenance(db, caller, maintenance_id, payload)
    db.refresh(m)
    return _maintenance_view(m)


@router.post("/maintenance/{maintenance_id}/start", response_model=MaintenanceResponse)
def start_maintenance(
    maintenance_id: uuid.UUID,
    payload: Optional[MaintenanceStart] = None,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        m = maintenance.start_maintenance(db, caller, maintenance_id, payload)
    db.refresh(m)
    return _maintenance_view(m)


@router.post("/maintenance/{maintenance_id}/complete", response_model=MaintenanceResponse)
def complete_maintenance(
    maintenance_id: uuid.UUID,
    payload: Optional[MaintenanceComplete] = None,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        m = maintenance.complete_maintenance(db, caller, maintenance_id, payload)
    db.refresh(m)
    return _maintenance_view(m)


@router.post("/maintenance/{maintenance_id}/cancel", response_model=MaintenanceResponse)
def cancel_maintenance(
    maintenance_id: uuid.UUID,
    payload: Optional[MaintenanceCancel] = None,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        m = maintenance.cancel_maintenance(db, caller, maintenance_id, payload)
    db.refresh(m)
    return _maintenance_view(m)


@router.post("/maintenance/{maintenance_id}/services/{service_id}/complete", response_model=MaintenanceResponse)
def complete_service_item(
    maintenance_id: uuid.UUID,
    service_id: uuid.UUID,
    payload: Optional[ServiceCompletion] = None,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        m = maintenance.complete_service_item(db, caller, maintenance_id, service_id, payload)
    db.refresh(m)
    return _maintenance_view(m)


@router.post("/maintenance/{maintenance_id}/parts/{part_id}/install", response_model=MaintenanceResponse)
def install_part(
    maintenance_id: uuid.UUID,
    part_id: uuid.UUID,
    payload: Optional[PartInstallation] = None,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        m = maintenance.install_part(db, caller, maintenance_id, part_id, payload)
    db.refresh(m)
    return _maintenance_view(m)
