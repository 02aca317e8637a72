import uuid
from datetime import datetime, date
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


# =====================
# Tenant directory
# =====================

class Company(Base):
    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    tax_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    # Subscription plan, filled from settings when the company is created
    max_users: Mapped[int] = mapped_column(Integer, nullable=False)
    max_vehicles: Mapped[int] = mapped_column(Integer, nullable=False)
    max_branches: Mapped[int] = mapped_column(Integer, nullable=False)
    # Weak reference; must point at an active company_admin of this company
    administrator_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    timezone: Mapped[str] = mapped_column(String(64), default="Europe/Madrid")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    branches = relationship("Branch", back_populates="company")


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[str] = mapped_column(String(10), nullable=False)
    branch_type: Mapped[str] = mapped_column(String(30), default="delegation")  # delegation|farm|subsidiary|office|warehouse|workshop
    city: Mapped[Optional[str]] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    company = relationship("Company", back_populates="branches")

    __table_args__ = (
        UniqueConstraint("company_id", "code", name="uq_branch_company_code"),
        Index("idx_branch_company_active", "company_id", "is_active"),
    )


# =====================
# Identity & roles
# =====================

class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id"), index=True)  # null only for super_admin
    branch_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("branches.id", ondelete="SET NULL"))
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(50), nullable=False)
    last_name: Mapped[str] = mapped_column(String(50), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    role: Mapped[str] = mapped_column(String(30), nullable=False)  # super_admin|company_admin|branch_manager|mechanic|operator|viewer
    permission_overrides: Mapped[Optional[dict]] = mapped_column(JSON)  # {module: [actions]}
    vehicle_type_access: Mapped[Optional[list]] = mapped_column(JSON)  # empty means unrestricted
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    __table_args__ = (
        Index("idx_user_company_active", "company_id", "is_active"),
        Index("idx_user_company_role", "company_id", "role"),
    )


# =====================
# Vehicle ledger
# =====================

class Vehicle(Base):
    __tablename__ = "vehicles"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False, index=True)
    branch_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("branches.id", ondelete="SET NULL"), index=True)
    plate_number: Mapped[str] = mapped_column(String(15), nullable=False)  # uppercased/trimmed
    vin: Mapped[Optional[str]] = mapped_column(String(17), unique=True)
    make: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str] = mapped_column(String(50), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(30))
    vehicle_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    fuel_capacity: Mapped[Optional[float]] = mapped_column(Float)

    # Odometer
    odometer_current: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    odometer_unit: Mapped[str] = mapped_column(String(10), default="km")  # km|miles
    odometer_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Ownership
    ownership_type: Mapped[str] = mapped_column(String(20), default="owned")  # owned|rented
    monthly_rental_cost: Mapped[Optional[float]] = mapped_column(Float)
    lessor_name: Mapped[Optional[str]] = mapped_column(String(100))
    maintenance_responsibility: Mapped[Optional[str]] = mapped_column(String(30))  # owner_company|lessee_company|shared

    # Documents
    registration_number: Mapped[Optional[str]] = mapped_column(String(50))
    registration_expiry: Mapped[Optional[date]] = mapped_column(Date, index=True)
    insurance_company: Mapped[Optional[str]] = mapped_column(String(100))
    insurance_policy_number: Mapped[Optional[str]] = mapped_column(String(50))
    insurance_expiry: Mapped[Optional[date]] = mapped_column(Date, index=True)
    inspection_last_date: Mapped[Optional[date]] = mapped_column(Date)
    inspection_next_date: Mapped[Optional[date]] = mapped_column(Date)

    status: Mapped[str] = mapped_column(String(30), default="active", index=True)  # active|in_maintenance|out_of_service|sold|written_off
    condition: Mapped[str] = mapped_column(String(20), default="good")  # excellent|good|fair|poor|critical
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    schedules = relationship(
        "VehicleMaintenanceSchedule",
        back_populates="vehicle",
        cascade="all, delete-orphan",
        order_by="VehicleMaintenanceSchedule.kind",
    )

    __table_args__ = (
        UniqueConstraint("company_id", "plate_number", name="uq_vehicle_company_plate"),
        Index("idx_vehicle_company_status", "company_id", "status"),
        Index("idx_vehicle_company_active", "company_id", "is_active"),
    )


class VehicleMaintenanceSchedule(Base):
    """One row per maintenance kind tracked for a vehicle"""
    __tablename__ = "vehicle_maintenance_schedules"

    id: Mapped[uuid.UUID] = uuid_pk()
    vehicle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)  # oil_change|general_inspection|tire_rotation
    interval_km: Mapped[int] = mapped_column(Integer, nullable=False)
    interval_months: Mapped[int] = mapped_column(Integer, nullable=False)
    last_km: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    vehicle = relationship("Vehicle", back_populates="schedules")

    __table_args__ = (
        UniqueConstraint("vehicle_id", "kind", name="uq_schedule_vehicle_kind"),
    )


# =====================
# Fuel ledger
# =====================

class FuelRecord(Base):
    __tablename__ = "fuel_records"

    id: Mapped[uuid.UUID] = uuid_pk()
    vehicle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("vehicles.id"), nullable=False)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    fill_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    liters: Mapped[float] = mapped_column(Float, nullable=False)
    odometer: Mapped[Optional[int]] = mapped_column(Integer)
    price_per_liter: Mapped[Optional[float]] = mapped_column(Float)
    total_cost: Mapped[Optional[float]] = mapped_column(Float)
    cost_mismatch: Mapped[bool] = mapped_column(Boolean, default=False)  # price x liters differs from total_cost beyond tolerance
    fuel_type: Mapped[str] = mapped_column(String(20), default="diesel", index=True)
    station: Mapped[Optional[str]] = mapped_column(String(100))
    location: Mapped[Optional[str]] = mapped_column(String(200))
    is_full: Mapped[bool] = mapped_column(Boolean, default=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    receipt: Mapped[Optional[dict]] = mapped_column(JSON)  # {file_name, file_url, upload_date, file_size, mime_type}
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    __table_args__ = (
        Index("idx_fuel_vehicle_date", "vehicle_id", "fill_date"),
        Index("idx_fuel_company_date", "company_id", "fill_date"),
    )


# =====================
# Maintenance ledger
# =====================

class Maintenance(Base):
    """Maintenance work orders"""
    __tablename__ = "maintenances"

    id: Mapped[uuid.UUID] = uuid_pk()
    work_order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    vehicle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("vehicles.id"), nullable=False)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    branch_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("branches.id", ondelete="SET NULL"))
    maintenance_type: Mapped[str] = mapped_column(String(20), nullable=False)  # preventivo|correctivo|inspeccion
    schedule_kind: Mapped[Optional[str]] = mapped_column(String(30))  # schedule entry refreshed on completion
    priority: Mapped[str] = mapped_column(String(20), default="medium")  # low|medium|high|critical
    status: Mapped[str] = mapped_column(String(20), default="scheduled", index=True)  # scheduled|in_progress|completed|cancelled
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    scheduled_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(500))
    estimated_duration_hours: Mapped[float] = mapped_column(Float, default=1)
    actual_duration_hours: Mapped[Optional[float]] = mapped_column(Float)
    odometer_reading: Mapped[Optional[int]] = mapped_column(Integer)
    services: Mapped[Optional[list]] = mapped_column(JSON)  # [{category, description, labor_hours, labor_rate, labor_cost, is_completed}]
    parts: Mapped[Optional[list]] = mapped_column(JSON)  # [{part_number, name, quantity, unit_price, total_price}]
    labor_cost: Mapped[float] = mapped_column(Float, default=0)
    parts_cost: Mapped[float] = mapped_column(Float, default=0)
    materials_cost: Mapped[float] = mapped_column(Float, default=0)
    external_cost: Mapped[float] = mapped_column(Float, default=0)
    tax: Mapped[float] = mapped_column(Float, default=0)
    discount: Mapped[float] = mapped_column(Float, default=0)
    total_cost: Mapped[float] = mapped_column(Float, default=0)
    cost_responsibility: Mapped[str] = mapped_column(String(30), default="owner_company")
    assigned_to_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    __table_args__ = (
        Index("idx_maintenance_vehicle_date", "vehicle_id", "scheduled_date"),
        Index("idx_maintenance_company_status", "company_id", "status"),
    )
