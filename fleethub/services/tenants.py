"""
Tenant directory: companies and their branches.
"""
import uuid
from typing import Optional, Union

import structlog
from sqlalchemy.orm import Session

from .. import errors
from ..config import settings
from ..models.models import Branch, Company, User
from ..schemas.common import Action, Caller, Module, QuotaResource, Role, load
from ..schemas.tenants import BranchCreate, CompanyCreate, SubscriptionPlan
from .permissions import authorize
from .time_rules import utcnow

logger = structlog.get_logger(__name__)


def get_company(db: Session, company_id: uuid.UUID) -> Company:
    company = db.get(Company, company_id)
    if company is None:
        raise errors.NotFound("Company not found", {"company_id": str(company_id)})
    return company


def get_branch(db: Session, branch_id: uuid.UUID) -> Branch:
    branch = db.get(Branch, branch_id)
    if branch is None:
        raise errors.NotFound("Branch not found", {"branch_id": str(branch_id)})
    return branch


def require_active_company(db: Session, company_id: uuid.UUID) -> Company:
    company = get_company(db, company_id)
    if not company.is_active:
        raise errors.ValidationError("Company is inactive", {"company_id": str(company_id)})
    return company


def require_active_branch(db: Session, branch_id: uuid.UUID, company_id: uuid.UUID) -> Branch:
    branch = get_branch(db, branch_id)
    if branch.company_id != company_id:
        raise errors.ValidationError("Branch does not belong to this company", {"branch_id": str(branch_id)})
    if not branch.is_active:
        raise errors.ValidationError("Branch is inactive", {"branch_id": str(branch_id)})
    return branch


def create_company(db: Session, caller: Caller, attrs: Union[CompanyCreate, dict]) -> Company:
    data = load(CompanyCreate, attrs)
    authorize(db, caller, Module.companies, Action.create)

    if db.query(Company).filter(Company.tax_id == data.tax_id).first():
        raise errors.InvariantViolation("A company with this tax id already exists", {"tax_id": data.tax_id})

    plan = data.subscription or SubscriptionPlan()
    company = Company(
        name=data.name.strip(),
        tax_id=data.tax_id,
        currency=data.currency,
        timezone=data.timezone,
        max_users=plan.max_users if plan.max_users is not None else settings.default_max_users,
        max_vehicles=plan.max_vehicles if plan.max_vehicles is not None else settings.default_max_vehicles,
        max_branches=plan.max_branches if plan.max_branches is not None else settings.default_max_branches,
        is_active=True,
        created_by=caller.id,
    )
    db.add(company)
    db.flush()
    logger.info("company_created", company_id=str(company.id), tax_id=company.tax_id)
    return company


def update_subscription(db: Session, caller: Caller, company_id: uuid.UUID, plan: Union[SubscriptionPlan, dict]) -> Company:
    plan = load(SubscriptionPlan, plan)
    company = get_company(db, company_id)
    authorize(db, caller, Module.companies, Action.update, target_company_id=company.id)
    if not caller.is_super_admin:
        raise errors.AuthorizationDenied("role", "Only super administrators can change subscription plans")

    if plan.max_users is not None:
        company.max_users = plan.max_users
    if plan.max_vehicles is not None:
        company.max_vehicles = plan.max_vehicles
    if plan.max_branches is not None:
        company.max_branches = plan.max_branches
    company.updated_at = utcnow()
    db.flush()
    return company


def deactivate_company(db: Session, caller: Caller, company_id: uuid.UUID) -> Company:
    company = get_company(db, company_id)
    authorize(db, caller, Module.companies, Action.delete, target_company_id=company.id)
    company.is_active = False
    company.updated_at = utcnow()
    db.flush()
    logger.info("company_deactivated", company_id=str(company.id))
    return company


def set_company_administrator(db: Session, caller: Caller, company_id: uuid.UUID, user_id: Optional[uuid.UUID]) -> Company:
    """Point the company's administrator reference at ``user_id`` (or clear it)."""
    company = get_company(db, company_id)
    authorize(db, caller, Module.companies, Action.update, target_company_id=company.id)

    if user_id is not None:
        user = db.get(User, user_id)
        if user is None:
            raise errors.NotFound("User not found", {"user_id": str(user_id)})
        if user.company_id != company.id or not user.is_active or user.role != Role.company_admin.value:
            raise errors.InvariantViolation(
                "Company administrator must be an active company_admin of the same company",
                {"user_id": str(user_id)},
            )
    company.administrator_user_id = user_id
    company.updated_at = utcnow()
    db.flush()
    return company


def release_administrator(db: Session, user: User) -> None:
    """Drop the administrator reference once ``user`` no longer qualifies for it."""
    if user.company_id is None:
        return
    company = db.get(Company, user.company_id)
    if company is None or company.administrator_user_id != user.id:
        return
    if user.is_active and user.role == Role.company_admin.value:
        return
    company.administrator_user_id = None
    company.updated_at = utcnow()
    logger.info("company_administrator_cleared", company_id=str(company.id), user_id=str(user.id))


def create_branch(db: Session, caller: Caller, company_id: uuid.UUID, attrs: Union[BranchCreate, dict]) -> Branch:
    data = load(BranchCreate, attrs)
    authorize(
        db,
        caller,
        Module.branches,
        Action.create,
        target_company_id=company_id,
        quota_resource=QuotaResource.branches,
    )
    company = require_active_company(db, company_id)

    existing = db.query(Branch).filter(Branch.company_id == company.id, Branch.code == data.code).first()
    if existing:
        raise errors.InvariantViolation("Branch code already exists in this company", {"code": data.code})

    branch = Branch(
        company_id=company.id,
        name=data.name.strip(),
        code=data.code,
        branch_type=data.branch_type.value,
        city=data.city,
        is_active=True,
        created_by=caller.id,
    )
    db.add(branch)
    db.flush()
    logger.info("branch_created", branch_id=str(branch.id), company_id=str(company.id))
    return branch


def deactivate_branch(db: Session, caller: Caller, branch_id: uuid.UUID) -> Branch:
    branch = get_branch(db, branch_id)
    authorize(db, caller, Module.branches, Action.delete, target_company_id=branch.company_id)
    branch.is_active = False
    db.flush()
    return branch
