import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_caller
from ..db import get_db, transaction
from ..schemas.common import Action, Caller, Module
from ..schemas.tenants import (
    BranchCreate,
    BranchResponse,
    CompanyCreate,
    CompanyResponse,
    PermissionOverridesUpdate,
    ProfileUpdate,
    RoleUpdate,
    SubscriptionPlan,
    UserCreate,
    UserResponse,
    VehicleTypeAccessUpdate,
)
from ..services import identity, tenants
from ..services.permissions import authorize

router = APIRouter(prefix="/tenants", tags=["tenants"])


# ---------- COMPANIES ----------
@router.post("/companies", response_model=CompanyResponse)
def create_company(
    payload: CompanyCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    """Create a company with its subscription plan"""
    with transaction(db):
        company = tenants.create_company(db, caller, payload)
    db.refresh(company)
    return company


@router.get("/companies/{company_id}", response_model=CompanyResponse)
def get_company(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    company = tenants.get_company(db, company_id)
    authorize(db, caller, Module.companies, Action.read, target_company_id=company.id)
    return company


@router.put("/companies/{company_id}/subscription", response_model=CompanyResponse)
def update_subscription(
    company_id: uuid.UUID,
    payload: SubscriptionPlan,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        company = tenants.update_subscription(db, caller, company_id, payload)
    db.refresh(company)
    return company


@router.put("/companies/{company_id}/administrator", response_model=CompanyResponse)
def set_company_administrator(
    company_id: uuid.UUID,
    user_id: Optional[uuid.UUID] = Body(None, embed=True),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        company = tenants.set_company_administrator(db, caller, company_id, user_id)
    db.refresh(company)
    return company


@router.delete("/companies/{company_id}")
def deactivate_company(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        tenants.deactivate_company(db, caller, company_id)
    return {"message": "Company deactivated successfully"}


# ---------- BRANCHES ----------
@router.post("/companies/{company_id}/branches", response_model=BranchResponse)
def create_branch(
    company_id: uuid.UUID,
    payload: BranchCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        branch = tenants.create_branch(db, caller, company_id, payload)
    db.refresh(branch)
    return branch


@router.delete("/branches/{branch_id}")
def deactivate_branch(
    branch_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        tenants.deactivate_branch(db, caller, branch_id)
    return {"message": "Branch deactivated successfully"}


# ---------- USERS ----------
@router.post("/users", response_model=UserResponse)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        user = identity.create_user(db, caller, payload)
    db.refresh(user)
    return user


@router.put("/users/{user_id}/role", response_model=UserResponse)
def update_user_role(
    user_id: uuid.UUID,
    payload: RoleUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        user = identity.update_user_role(db, caller, user_id, payload.role)
    db.refresh(user)
    return user


@router.put("/users/{user_id}/permissions", response_model=UserResponse)
def set_permission_overrides(
    user_id: uuid.UUID,
    payload: PermissionOverridesUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        user = identity.set_permission_overrides(db, caller, user_id, payload.permission_overrides)
    db.refresh(user)
    return user


@router.put("/users/{user_id}/vehicle-types", response_model=UserResponse)
def set_vehicle_type_access(
    user_id: uuid.UUID,
    payload: VehicleTypeAccessUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        user = identity.set_vehicle_type_access(db, caller, user_id, payload.vehicle_type_access)
    db.refresh(user)
    return user


@router.delete("/users/{user_id}")
def deactivate_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    with transaction(db):
        identity.deactivate_user(db, caller, user_id)
    return {"message": "User deactivated successfully"}


# ---------- PROFILE ----------
@router.get("/me", response_model=UserResponse)
def get_me(
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    return identity.get_user(db, caller.id)


@router.put("/me", response_model=UserResponse)
def update_profile(
    payload: ProfileUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    """Self-service profile edits; role and company are not editable here"""
    with transaction(db):
        user = identity.update_profile(db, caller, payload)
    db.refresh(user)
    return user
