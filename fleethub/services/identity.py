"""
Identity & role registry: users, their roles, permission overrides and
vehicle-type restrictions.
"""
import uuid
from typing import Union

import structlog
from sqlalchemy.orm import Session

from .. import errors
from ..models.models import User
from ..schemas.common import Action, Caller, Module, QuotaResource, Role, dump_overrides, load
from ..schemas.tenants import (
    PermissionOverridesUpdate,
    ProfileUpdate,
    RoleUpdate,
    UserCreate,
    VehicleTypeAccessUpdate,
)
from .permissions import TargetUser, authorize
from .tenants import release_administrator, require_active_branch, require_active_company
from .time_rules import utcnow

logger = structlog.get_logger(__name__)


def get_user(db: Session, user_id: uuid.UUID) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise errors.NotFound("User not found", {"user_id": str(user_id)})
    return user


def create_user(db: Session, caller: Caller, attrs: Union[UserCreate, dict]) -> User:
    data = load(UserCreate, attrs)
    company_id = data.company_id or caller.company_id

    if data.role != Role.super_admin and company_id is None:
        raise errors.ValidationError("company_id is required for this role")

    authorize(
        db,
        caller,
        Module.users,
        Action.create,
        target_company_id=company_id,
        quota_resource=QuotaResource.users if company_id else None,
        assign_role=data.role,
    )

    if data.role != Role.super_admin:
        require_active_company(db, company_id)
    if data.branch_id is not None:
        require_active_branch(db, data.branch_id, company_id)

    if db.query(User).filter(User.email == data.email).first():
        raise errors.InvariantViolation("Email already registered", {"email": data.email})

    user = User(
        company_id=company_id if data.role != Role.super_admin else data.company_id,
        branch_id=data.branch_id,
        email=data.email,
        first_name=data.first_name.strip(),
        last_name=data.last_name.strip(),
        phone=data.phone,
        role=data.role.value,
        permission_overrides=dump_overrides(data.permission_overrides),
        vehicle_type_access=[t.value for t in data.vehicle_type_access or []],
        is_active=True,
        created_by=caller.id,
    )
    db.add(user)
    db.flush()
    logger.info("user_created", user_id=str(user.id), company_id=str(company_id), role=user.role)
    return user


def _authorize_on_user(db: Session, caller: Caller, target: User, action: Action, **kwargs) -> None:
    authorize(
        db,
        caller,
        Module.users,
        action,
        target_company_id=target.company_id,
        target_user=TargetUser.from_user(target),
        **kwargs,
    )


def update_user_role(db: Session, caller: Caller, user_id: uuid.UUID, role: Union[Role, str]) -> User:
    new_role = load(RoleUpdate, {"role": role}).role
    user = get_user(db, user_id)
    _authorize_on_user(db, caller, user, Action.update, assign_role=new_role)

    user.role = new_role.value
    user.updated_at = utcnow()
    release_administrator(db, user)
    db.flush()
    logger.info("user_role_changed", user_id=str(user.id), role=user.role)
    return user


def set_permission_overrides(db: Session, caller: Caller, user_id: uuid.UUID, overrides: dict) -> User:
    data = load(PermissionOverridesUpdate, {"permission_overrides": overrides})
    user = get_user(db, user_id)
    _authorize_on_user(db, caller, user, Action.update)

    user.permission_overrides = dump_overrides(data.permission_overrides)
    user.updated_at = utcnow()
    db.flush()
    return user


def set_vehicle_type_access(db: Session, caller: Caller, user_id: uuid.UUID, vehicle_types: list) -> User:
    data = load(VehicleTypeAccessUpdate, {"vehicle_type_access": vehicle_types})
    user = get_user(db, user_id)
    _authorize_on_user(db, caller, user, Action.update)

    user.vehicle_type_access = sorted({t.value for t in data.vehicle_type_access})
    user.updated_at = utcnow()
    db.flush()
    return user


def deactivate_user(db: Session, caller: Caller, user_id: uuid.UUID) -> User:
    user = get_user(db, user_id)
    _authorize_on_user(db, caller, user, Action.delete)

    user.is_active = False
    user.updated_at = utcnow()
    release_administrator(db, user)
    db.flush()
    logger.info("user_deactivated", user_id=str(user.id))
    return user


def update_profile(db: Session, caller: Caller, attrs: Union[ProfileUpdate, dict]) -> User:
    """Self-service path; never touches role, company, overrides or active flag."""
    data = load(ProfileUpdate, attrs)
    user = get_user(db, caller.id)
    if not user.is_active:
        raise errors.AuthorizationDenied("tenant_active", "User is inactive")

    for key, value in data.model_dump(exclude_unset=True).items():
        if value is None and key in ("first_name", "last_name"):
            continue
        setattr(user, key, value.strip() if isinstance(value, str) else value)
    user.updated_at = utcnow()
    db.flush()
    return user
