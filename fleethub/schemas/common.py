import uuid
from enum import Enum
from typing import Dict, List, Optional, Set, Type, TypeVar, Union

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .. import errors


class Role(str, Enum):
    super_admin = "super_admin"
    company_admin = "company_admin"
    branch_manager = "branch_manager"
    mechanic = "mechanic"
    operator = "operator"
    viewer = "viewer"


class Module(str, Enum):
    companies = "companies"
    branches = "branches"
    users = "users"
    vehicles = "vehicles"
    fuel = "fuel"
    maintenance = "maintenance"
    reports = "reports"


class Action(str, Enum):
    create = "create"
    read = "read"
    update = "update"
    delete = "delete"
    export = "export"


class QuotaResource(str, Enum):
    users = "users"
    vehicles = "vehicles"
    branches = "branches"


class VehicleType(str, Enum):
    car = "car"
    motorcycle = "motorcycle"
    scooter = "scooter"
    van = "van"
    pickup = "pickup"
    truck = "truck"
    trailer = "trailer"
    bus = "bus"
    minibus = "minibus"
    tractor = "tractor"
    harvester = "harvester"
    sprayer = "sprayer"
    farm_implement = "farm_implement"
    excavator = "excavator"
    bulldozer = "bulldozer"
    loader = "loader"
    crane = "crane"
    ambulance = "ambulance"
    other = "other"


# Module -> actions a role gets when the user carries no override for it
ROLE_DEFAULT_PERMISSIONS: Dict[Role, Dict[Module, Set[Action]]] = {
    Role.company_admin: {
        Module.companies: {Action.read, Action.update},
        Module.branches: {Action.create, Action.read, Action.update, Action.delete},
        Module.users: {Action.create, Action.read, Action.update, Action.delete},
        Module.vehicles: {Action.create, Action.read, Action.update, Action.delete},
        Module.fuel: {Action.create, Action.read, Action.update, Action.delete},
        Module.maintenance: {Action.create, Action.read, Action.update, Action.delete},
        Module.reports: {Action.read, Action.export},
    },
    Role.branch_manager: {
        Module.companies: {Action.read},
        Module.branches: {Action.read, Action.update},
        Module.users: {Action.create, Action.read, Action.update},
        Module.vehicles: {Action.create, Action.read, Action.update},
        Module.fuel: {Action.create, Action.read, Action.update},
        Module.maintenance: {Action.create, Action.read, Action.update},
        Module.reports: {Action.read, Action.export},
    },
    Role.mechanic: {
        Module.companies: {Action.read},
        Module.branches: {Action.read},
        Module.vehicles: {Action.read, Action.update},
        Module.fuel: {Action.create, Action.read},
        Module.maintenance: {Action.create, Action.read, Action.update},
        Module.reports: {Action.read},
    },
    Role.operator: {
        Module.companies: {Action.read},
        Module.branches: {Action.read},
        Module.vehicles: {Action.read},
        Module.fuel: {Action.create, Action.read},
        Module.maintenance: {Action.read},
        Module.reports: {Action.read},
    },
    Role.viewer: {
        Module.companies: {Action.read},
        Module.branches: {Action.read},
        Module.vehicles: {Action.read},
        Module.fuel: {Action.read},
        Module.maintenance: {Action.read},
        Module.reports: {Action.read},
    },
}

# Roles a company_admin may hand out
ASSIGNABLE_ROLES = {Role.branch_manager, Role.mechanic, Role.operator, Role.viewer}


PermissionOverrides = Dict[Module, Set[Action]]


def dump_overrides(overrides: Optional[PermissionOverrides]) -> Dict[str, List[str]]:
    """JSON-safe form stored on the user row."""
    if not overrides:
        return {}
    return {
        Module(module).value: sorted(Action(a).value for a in actions)
        for module, actions in overrides.items()
    }


class Caller(BaseModel):
    """Resolved identity of whoever issued the request."""
    id: uuid.UUID
    role: Role
    company_id: Optional[uuid.UUID] = None
    branch_id: Optional[uuid.UUID] = None
    permission_overrides: PermissionOverrides = Field(default_factory=dict)
    vehicle_type_access: Set[str] = Field(default_factory=set)

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.super_admin

    @classmethod
    def from_user(cls, user) -> "Caller":
        return cls(
            id=user.id,
            role=user.role,
            company_id=user.company_id,
            branch_id=user.branch_id,
            permission_overrides=user.permission_overrides or {},
            vehicle_type_access=set(user.vehicle_type_access or []),
        )


M = TypeVar("M", bound=BaseModel)


def load(model_cls: Type[M], data: Union[M, dict, None]) -> M:
    """Coerce a payload into ``model_cls``, reporting problems as a ValidationError."""
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data or {})
    except PydanticValidationError as exc:
        problems = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise errors.ValidationError(f"Invalid {model_cls.__name__} payload", {"errors": problems})
