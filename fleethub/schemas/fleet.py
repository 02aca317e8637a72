import uuid
from datetime import datetime, date
from typing import List, Optional
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from .common import VehicleType


# Enums
class VehicleStatus(str, Enum):
    active = "active"
    in_maintenance = "in_maintenance"
    out_of_service = "out_of_service"
    sold = "sold"
    written_off = "written_off"


class Condition(str, Enum):
    excellent = "excellent"
    good = "good"
    fair = "fair"
    poor = "poor"
    critical = "critical"


class OdometerUnit(str, Enum):
    km = "km"
    miles = "miles"


class OwnershipType(str, Enum):
    owned = "owned"
    rented = "rented"


class CostResponsibility(str, Enum):
    owner_company = "owner_company"
    lessee_company = "lessee_company"
    shared = "shared"


class ScheduleKind(str, Enum):
    oil_change = "oil_change"
    general_inspection = "general_inspection"
    tire_rotation = "tire_rotation"


class DocumentType(str, Enum):
    registration = "registration"
    insurance = "insurance"
    inspection = "inspection"


class FuelType(str, Enum):
    diesel = "diesel"
    gasoline_95 = "gasoline_95"
    gasoline_98 = "gasoline_98"
    natural_gas = "natural_gas"
    electric = "electric"
    hybrid = "hybrid"
    other = "other"


class MaintenanceType(str, Enum):
    preventivo = "preventivo"
    correctivo = "correctivo"
    inspeccion = "inspeccion"


class MaintenancePriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class MaintenanceStatus(str, Enum):
    scheduled = "scheduled"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class ServiceCategory(str, Enum):
    engine = "engine"
    transmission = "transmission"
    brakes = "brakes"
    suspension = "suspension"
    steering = "steering"
    electrical = "electrical"
    air_conditioning = "air_conditioning"
    fuel_system = "fuel_system"
    exhaust = "exhaust"
    tires = "tires"
    bodywork = "bodywork"
    interior = "interior"
    diagnostics = "diagnostics"
    other = "other"


# (interval_km, interval_months) applied when a schedule entry is not supplied
DEFAULT_SCHEDULE = {
    ScheduleKind.oil_change: (5000, 6),
    ScheduleKind.general_inspection: (10000, 12),
    ScheduleKind.tire_rotation: (8000, 6),
}


# Vehicle sub-structures
class ScheduleEntryIn(BaseModel):
    interval_km: Optional[int] = Field(default=None, gt=0)
    interval_months: Optional[int] = Field(default=None, gt=0)
    last_km: int = Field(default=0, ge=0)
    last_date: Optional[datetime] = None


class MaintenanceScheduleIn(BaseModel):
    oil_change: Optional[ScheduleEntryIn] = None
    general_inspection: Optional[ScheduleEntryIn] = None
    tire_rotation: Optional[ScheduleEntryIn] = None


class OwnershipIn(BaseModel):
    ownership_type: OwnershipType = OwnershipType.owned
    monthly_rental_cost: Optional[float] = Field(default=None, ge=0)
    lessor_name: Optional[str] = Field(default=None, max_length=100)
    maintenance_responsibility: Optional[CostResponsibility] = None


class VehicleDocumentsIn(BaseModel):
    registration_number: Optional[str] = None
    registration_expiry: Optional[date] = None
    insurance_company: Optional[str] = None
    insurance_policy_number: Optional[str] = None
    insurance_expiry: Optional[date] = None
    inspection_last_date: Optional[date] = None
    inspection_next_date: Optional[date] = None


# Vehicle Schemas
class VehicleCreate(BaseModel):
    branch_id: Optional[uuid.UUID] = None
    plate_number: str = Field(min_length=1, max_length=15)
    vin: Optional[str] = Field(default=None, max_length=17)
    make: str = Field(min_length=1, max_length=50)
    model: str = Field(min_length=1, max_length=50)
    year: int
    color: Optional[str] = Field(default=None, max_length=30)
    vehicle_type: VehicleType
    fuel_capacity: Optional[float] = Field(default=None, gt=0)
    odometer: int = Field(default=0, ge=0, le=9_999_999)
    odometer_unit: OdometerUnit = OdometerUnit.km
    maintenance_schedule: Optional[MaintenanceScheduleIn] = None
    ownership: Optional[OwnershipIn] = None
    documents: Optional[VehicleDocumentsIn] = None
    status: VehicleStatus = VehicleStatus.active
    condition: Condition = Condition.good
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("plate_number", "vin", mode="before")
    @classmethod
    def normalize_identifier(cls, v):
        if v is None:
            return None
        v = str(v).strip().upper()
        return v or None

    @field_validator("year")
    @classmethod
    def check_year(cls, v):
        if v < 1900 or v > datetime.now().year + 1:
            raise ValueError("year out of range")
        return v


class VehicleUpdate(BaseModel):
    branch_id: Optional[uuid.UUID] = None
    plate_number: Optional[str] = Field(default=None, min_length=1, max_length=15)
    vin: Optional[str] = Field(default=None, max_length=17)
    make: Optional[str] = Field(default=None, min_length=1, max_length=50)
    model: Optional[str] = Field(default=None, min_length=1, max_length=50)
    color: Optional[str] = Field(default=None, max_length=30)
    vehicle_type: Optional[VehicleType] = None
    maintenance_schedule: Optional[MaintenanceScheduleIn] = None
    ownership: Optional[OwnershipIn] = None
    documents: Optional[VehicleDocumentsIn] = None
    status: Optional[VehicleStatus] = None
    condition: Optional[Condition] = None
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("plate_number", "vin", mode="before")
    @classmethod
    def normalize_identifier(cls, v):
        if v is None:
            return None
        v = str(v).strip().upper()
        return v or None


class OdometerReadingIn(BaseModel):
    reading: int = Field(ge=0, le=9_999_999)
    read_at: Optional[datetime] = None


class ScheduleEntryResponse(BaseModel):
    kind: ScheduleKind
    interval_km: int
    interval_months: int
    last_km: int
    last_date: Optional[datetime] = None

    class Config:
        from_attributes = True


class VehicleResponse(BaseModel):
    id: uuid.UUID
    company_id: uuid.UUID
    branch_id: Optional[uuid.UUID] = None
    plate_number: str
    vin: Optional[str] = None
    make: str
    model: str
    year: int
    color: Optional[str] = None
    vehicle_type: VehicleType
    odometer_current: int
    odometer_unit: OdometerUnit
    odometer_updated_at: Optional[datetime] = None
    ownership_type: OwnershipType
    monthly_rental_cost: Optional[float] = None
    maintenance_responsibility: Optional[CostResponsibility] = None
    registration_expiry: Optional[date] = None
    insurance_expiry: Optional[date] = None
    inspection_next_date: Optional[date] = None
    status: VehicleStatus
    condition: Condition
    is_active: bool
    schedules: List[ScheduleEntryResponse] = []
    created_at: datetime

    class Config:
        from_attributes = True


class ExpiringDocument(BaseModel):
    document_type: DocumentType
    expiry_date: date
    days_until_expiry: int  # negative once expired


class MaintenanceAlert(BaseModel):
    alert_type: str  # maintenance|document
    priority: MaintenancePriority
    title: str
    schedule_kind: Optional[ScheduleKind] = None
    due_km: Optional[int] = None
    document_type: Optional[DocumentType] = None
    due_date: Optional[date] = None


# Fuel Schemas
class FuelReceipt(BaseModel):
    file_name: Optional[str] = None
    file_url: Optional[str] = None
    upload_date: Optional[datetime] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None

    class Config:
        extra = "forbid"


class FuelRecordCreate(BaseModel):
    fill_date: datetime
    liters: float = Field(ge=0.1, le=1000)
    odometer: Optional[int] = Field(default=None, ge=0, le=9_999_999)
    price_per_liter: Optional[float] = Field(default=None, ge=0, le=10)
    total_cost: Optional[float] = Field(default=None, ge=0)
    fuel_type: FuelType = FuelType.diesel
    station: Optional[str] = Field(default=None, max_length=100)
    location: Optional[str] = Field(default=None, max_length=200)
    is_full: bool = True
    notes: Optional[str] = Field(default=None, max_length=500)
    receipt: Optional[FuelReceipt] = None


class FuelRecordResponse(BaseModel):
    id: uuid.UUID
    vehicle_id: uuid.UUID
    company_id: uuid.UUID
    fill_date: datetime
    liters: float
    odometer: Optional[int] = None
    price_per_liter: Optional[float] = None
    total_cost: Optional[float] = None
    cost_mismatch: bool
    fuel_type: FuelType
    station: Optional[str] = None
    is_full: bool
    created_by: uuid.UUID

    class Config:
        from_attributes = True


class FuelStatistics(BaseModel):
    total_liters: float = 0
    total_cost: float = 0
    average_price_per_liter: float = 0
    record_count: int = 0
    average_consumption: Optional[float] = None  # liters per 100 distance units


# Maintenance Schemas
class ServiceItem(BaseModel):
    id: Optional[uuid.UUID] = None
    category: ServiceCategory
    description: str = Field(min_length=1)
    labor_hours: float = Field(default=0, ge=0)
    labor_rate: float = Field(default=0, ge=0)
    labor_cost: Optional[float] = Field(default=None, ge=0)
    is_completed: bool = False
    completed_by: Optional[uuid.UUID] = None
    completed_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class PartItem(BaseModel):
    id: Optional[uuid.UUID] = None
    name: str = Field(min_length=1)
    part_number: Optional[str] = None
    quantity: int = Field(default=1, ge=1)
    unit_price: float = Field(ge=0)
    total_price: Optional[float] = Field(default=None, ge=0)
    is_installed: bool = False
    installed_by: Optional[uuid.UUID] = None
    installed_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class MaintenanceCreate(BaseModel):
    maintenance_type: MaintenanceType
    schedule_kind: Optional[ScheduleKind] = None
    priority: MaintenancePriority = MaintenancePriority.medium
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    scheduled_date: datetime
    estimated_duration_hours: float = Field(default=1, gt=0)
    odometer_reading: Optional[int] = Field(default=None, ge=0, le=9_999_999)
    services: List[ServiceItem] = []
    parts: List[PartItem] = []
    materials_cost: float = Field(default=0, ge=0)
    external_cost: float = Field(default=0, ge=0)
    tax: float = Field(default=0, ge=0)
    discount: float = Field(default=0, ge=0)
    assigned_to_user_id: Optional[uuid.UUID] = None
    branch_id: Optional[uuid.UUID] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class MaintenanceUpdate(BaseModel):
    priority: Optional[MaintenancePriority] = None
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    scheduled_date: Optional[datetime] = None
    estimated_duration_hours: Optional[float] = Field(default=None, gt=0)
    services: Optional[List[ServiceItem]] = None
    parts: Optional[List[PartItem]] = None
    materials_cost: Optional[float] = Field(default=None, ge=0)
    external_cost: Optional[float] = Field(default=None, ge=0)
    tax: Optional[float] = Field(default=None, ge=0)
    discount: Optional[float] = Field(default=None, ge=0)
    assigned_to_user_id: Optional[uuid.UUID] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class MaintenanceStart(BaseModel):
    started_at: Optional[datetime] = None


class MaintenanceComplete(BaseModel):
    completed_at: Optional[datetime] = None
    final_odometer: Optional[int] = Field(default=None, ge=0, le=9_999_999)


class MaintenanceCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ServiceCompletion(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=500)


class PartInstallation(BaseModel):
    quantity: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = Field(default=None, max_length=500)


class MaintenanceResponse(BaseModel):
    id: uuid.UUID
    work_order_number: str
    vehicle_id: uuid.UUID
    company_id: uuid.UUID
    branch_id: Optional[uuid.UUID] = None
    maintenance_type: MaintenanceType
    schedule_kind: Optional[ScheduleKind] = None
    priority: MaintenancePriority
    status: MaintenanceStatus
    title: str
    scheduled_date: datetime
    started_at: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    actual_duration_hours: Optional[float] = None
    odometer_reading: Optional[int] = None
    labor_cost: float
    parts_cost: float
    total_cost: float
    cost_responsibility: CostResponsibility
    assigned_to_user_id: Optional[uuid.UUID] = None
    services: List[ServiceItem] = []
    parts: List[PartItem] = []
    is_overdue: bool = False
    days_until_due: Optional[int] = None
    completion_percentage: int = 0

    class Config:
        from_attributes = True
