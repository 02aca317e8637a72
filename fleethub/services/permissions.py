"""
Authorization pipeline.

Every mutation runs the same ordered chain of guards before it reaches a ledger:
tenant-active, role, same-company, resource quota, assignable role and
vehicle-type access. Evaluation stops at the first failing guard and that
guard's reason is what the caller sees. Guards only read.
"""
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from .. import errors
from ..models.models import Branch, Company, User, Vehicle
from ..schemas.common import (
    ASSIGNABLE_ROLES,
    ROLE_DEFAULT_PERMISSIONS,
    Action,
    Caller,
    Module,
    QuotaResource,
    Role,
)

logger = structlog.get_logger(__name__)


@dataclass
class TargetUser:
    id: uuid.UUID
    company_id: Optional[uuid.UUID]
    role: Role

    @classmethod
    def from_user(cls, user: User) -> "TargetUser":
        return cls(id=user.id, company_id=user.company_id, role=Role(user.role))


@dataclass
class AccessRequest:
    caller: Caller
    module: Module
    action: Action
    target_company_id: Optional[uuid.UUID] = None
    target_user: Optional[TargetUser] = None
    quota_resource: Optional[QuotaResource] = None
    assign_role: Optional[Role] = None
    vehicle_type: Optional[str] = None


@dataclass(frozen=True)
class GuardResult:
    guard: str
    passed: bool
    reason: Optional[str] = None
    quota_resource: Optional[QuotaResource] = None
    quota_limit: Optional[int] = None

    @classmethod
    def ok(cls, guard: str) -> "GuardResult":
        return cls(guard=guard, passed=True)


def effective_permissions(caller: Caller) -> dict:
    """Role defaults with the caller's per-module overrides applied on top."""
    perm_map = {module: set(actions) for module, actions in ROLE_DEFAULT_PERMISSIONS.get(caller.role, {}).items()}
    for module, actions in (caller.permission_overrides or {}).items():
        perm_map[Module(module)] = {Action(a) for a in actions}
    return perm_map


def has_permission(caller: Caller, module: Module, action: Action) -> bool:
    if caller.is_super_admin:
        return True
    return action in effective_permissions(caller).get(module, set())


def accessible_vehicle_types(caller: Caller, vehicle_types: Iterable[str]) -> List[str]:
    vehicle_types = list(vehicle_types)
    if caller.is_super_admin or not caller.vehicle_type_access:
        return vehicle_types
    return [t for t in vehicle_types if t in caller.vehicle_type_access]


def count_active(db: Session, company_id: uuid.UUID, resource: QuotaResource) -> int:
    model = {
        QuotaResource.users: User,
        QuotaResource.vehicles: Vehicle,
        QuotaResource.branches: Branch,
    }[resource]
    return db.query(model).filter(model.company_id == company_id, model.is_active.is_(True)).count()


def _quota_limit(company: Company, resource: QuotaResource) -> int:
    return {
        QuotaResource.users: company.max_users,
        QuotaResource.vehicles: company.max_vehicles,
        QuotaResource.branches: company.max_branches,
    }[resource]


class AuthorizationPipeline:
    def __init__(self, db: Session):
        self.db = db
        self.guards: List[Callable[[AccessRequest], GuardResult]] = [
            self.tenant_active,
            self.role,
            self.same_company,
            self.resource_quota,
            self.assignable_role,
            self.vehicle_type_access,
        ]

    def evaluate(self, request: AccessRequest) -> GuardResult:
        for guard in self.guards:
            result = guard(request)
            if not result.passed:
                return result
        return GuardResult.ok("pipeline")

    def authorize(self, request: AccessRequest) -> None:
        result = self.evaluate(request)
        if result.passed:
            return
        logger.info(
            "authorization_denied",
            guard=result.guard,
            reason=result.reason,
            caller_id=str(request.caller.id),
            module=request.module.value,
            action=request.action.value,
        )
        if result.quota_resource is not None:
            raise errors.QuotaExceeded(result.quota_resource.value, result.quota_limit, result.reason)
        raise errors.AuthorizationDenied(result.guard, result.reason)

    # ---------- guards ----------
    def tenant_active(self, request: AccessRequest) -> GuardResult:
        caller = request.caller
        if caller.is_super_admin:
            return GuardResult.ok("tenant_active")
        if caller.company_id is None:
            return GuardResult("tenant_active", False, "User has no company assigned")
        company = self.db.get(Company, caller.company_id)
        if company is None or not company.is_active:
            return GuardResult("tenant_active", False, "Company is inactive")
        return GuardResult.ok("tenant_active")

    def role(self, request: AccessRequest) -> GuardResult:
        if has_permission(request.caller, request.module, request.action):
            return GuardResult.ok("role")
        return GuardResult(
            "role",
            False,
            f"Role '{request.caller.role.value}' may not {request.action.value} {request.module.value}",
        )

    def same_company(self, request: AccessRequest) -> GuardResult:
        caller = request.caller
        if caller.is_super_admin:
            return GuardResult.ok("same_company")
        target = request.target_user
        if target is not None:
            if target.company_id != caller.company_id:
                return GuardResult("same_company", False, "Cannot manage users of another company")
            if target.id == caller.id:
                return GuardResult("same_company", False, "Use the profile path to modify your own user")
            if target.role == Role.super_admin:
                return GuardResult("same_company", False, "Cannot modify super administrators")
            if target.role == Role.company_admin and caller.role == Role.company_admin:
                return GuardResult("same_company", False, "Cannot modify other company administrators")
        if request.target_company_id is not None and request.target_company_id != caller.company_id:
            return GuardResult("same_company", False, "Resource belongs to another company")
        return GuardResult.ok("same_company")

    def resource_quota(self, request: AccessRequest) -> GuardResult:
        if request.caller.is_super_admin or request.action != Action.create or request.quota_resource is None:
            return GuardResult.ok("resource_quota")
        company_id = request.target_company_id or request.caller.company_id
        company = self.db.get(Company, company_id) if company_id else None
        if company is None:
            return GuardResult("resource_quota", False, "Company not found")
        resource = request.quota_resource
        limit = _quota_limit(company, resource)
        current = count_active(self.db, company.id, resource)
        if current >= limit:
            return GuardResult(
                "resource_quota",
                False,
                f"{resource.value.capitalize()} limit reached ({limit})",
                quota_resource=resource,
                quota_limit=limit,
            )
        return GuardResult.ok("resource_quota")

    def assignable_role(self, request: AccessRequest) -> GuardResult:
        if request.assign_role is None or request.caller.is_super_admin:
            return GuardResult.ok("assignable_role")
        if request.assign_role not in ASSIGNABLE_ROLES:
            allowed = ", ".join(sorted(r.value for r in ASSIGNABLE_ROLES))
            return GuardResult(
                "assignable_role",
                False,
                f"Cannot assign role '{request.assign_role.value}'. Allowed roles: {allowed}",
            )
        return GuardResult.ok("assignable_role")

    def vehicle_type_access(self, request: AccessRequest) -> GuardResult:
        caller = request.caller
        if caller.is_super_admin or not caller.vehicle_type_access or not request.vehicle_type:
            return GuardResult.ok("vehicle_type_access")
        if request.vehicle_type not in caller.vehicle_type_access:
            return GuardResult(
                "vehicle_type_access",
                False,
                f"No access to vehicle type '{request.vehicle_type}'",
            )
        return GuardResult.ok("vehicle_type_access")


def authorize(db: Session, caller: Caller, module: Module, action: Action, **kwargs) -> None:
    """Run the pipeline for one request; raises on the first failing guard."""
    AuthorizationPipeline(db).authorize(AccessRequest(caller=caller, module=module, action=action, **kwargs))
