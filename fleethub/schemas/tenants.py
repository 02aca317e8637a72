import uuid
from datetime import datetime
from typing import List, Optional
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from .common import Role, PermissionOverrides, VehicleType


class BranchType(str, Enum):
    delegation = "delegation"
    farm = "farm"
    subsidiary = "subsidiary"
    office = "office"
    warehouse = "warehouse"
    workshop = "workshop"


# Company Schemas
class SubscriptionPlan(BaseModel):
    max_users: Optional[int] = Field(default=None, ge=0)
    max_vehicles: Optional[int] = Field(default=None, ge=0)
    max_branches: Optional[int] = Field(default=None, ge=0)


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    tax_id: str = Field(min_length=1, max_length=50)
    currency: str = "EUR"
    timezone: str = "Europe/Madrid"
    subscription: Optional[SubscriptionPlan] = None

    @field_validator("tax_id", mode="before")
    @classmethod
    def normalize_tax_id(cls, v):
        return str(v).strip().upper() if v is not None else v


class CompanyResponse(BaseModel):
    id: uuid.UUID
    name: str
    tax_id: str
    is_active: bool
    max_users: int
    max_vehicles: int
    max_branches: int
    administrator_user_id: Optional[uuid.UUID] = None
    currency: str
    timezone: str
    created_at: datetime

    class Config:
        from_attributes = True


# Branch Schemas
class BranchCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    code: str = Field(min_length=1, max_length=10)
    branch_type: BranchType = BranchType.delegation
    city: Optional[str] = None

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code(cls, v):
        return str(v).strip().upper() if v is not None else v


class BranchResponse(BaseModel):
    id: uuid.UUID
    company_id: uuid.UUID
    name: str
    code: str
    branch_type: BranchType
    city: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True


# User Schemas
class UserCreate(BaseModel):
    company_id: Optional[uuid.UUID] = None  # defaults to the caller's company
    branch_id: Optional[uuid.UUID] = None
    email: str = Field(min_length=3, max_length=255)
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    phone: Optional[str] = None
    role: Role = Role.viewer
    permission_overrides: Optional[PermissionOverrides] = None
    vehicle_type_access: Optional[List[VehicleType]] = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return str(v).strip().lower() if v is not None else v


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    phone: Optional[str] = None


class UserResponse(BaseModel):
    id: uuid.UUID
    company_id: Optional[uuid.UUID] = None
    branch_id: Optional[uuid.UUID] = None
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    role: Role
    permission_overrides: Optional[dict] = None
    vehicle_type_access: Optional[List[str]] = None
    is_active: bool

    class Config:
        from_attributes = True


class RoleUpdate(BaseModel):
    role: Role


class PermissionOverridesUpdate(BaseModel):
    permission_overrides: PermissionOverrides = {}


class VehicleTypeAccessUpdate(BaseModel):
    vehicle_type_access: List[VehicleType] = []
