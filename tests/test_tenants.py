import uuid

import pytest

from fleethub import errors
from fleethub.config import settings
from fleethub.schemas.common import Role
from fleethub.services import identity, tenants


def test_company_gets_default_plan(company):
    assert company.max_users == settings.default_max_users
    assert company.max_vehicles == settings.default_max_vehicles
    assert company.max_branches == settings.default_max_branches
    assert company.tax_id == "B00000001"


def test_duplicate_tax_id_rejected(db_session, super_admin, company):
    with pytest.raises(errors.InvariantViolation):
        tenants.create_company(db_session, super_admin, {"name": "Copy", "tax_id": company.tax_id.lower()})


def test_only_super_admin_creates_companies(db_session, company_admin):
    with pytest.raises(errors.AuthorizationDenied) as exc:
        tenants.create_company(db_session, company_admin, {"name": "Mine", "tax_id": "X1"})
    assert exc.value.guard == "role"


def test_update_subscription_requires_super_admin(db_session, super_admin, company, company_admin):
    with pytest.raises(errors.AuthorizationDenied):
        tenants.update_subscription(db_session, company_admin, company.id, {"max_vehicles": 100})

    updated = tenants.update_subscription(db_session, super_admin, company.id, {"max_vehicles": 100})
    assert updated.max_vehicles == 100
    assert updated.max_users == settings.default_max_users


def test_branch_code_unique_per_company(db_session, company, company_admin):
    branch = tenants.create_branch(db_session, company_admin, company.id, {"name": "Norte", "code": " nt1 "})
    assert branch.code == "NT1"
    with pytest.raises(errors.InvariantViolation):
        tenants.create_branch(db_session, company_admin, company.id, {"name": "Norte 2", "code": "NT1"})


def test_branch_quota(db_session, make_company, make_user, caller_for):
    small = make_company("Small", max_branches=1)
    admin = caller_for(make_user(small, Role.company_admin))
    tenants.create_branch(db_session, admin, small.id, {"name": "HQ", "code": "HQ"})
    with pytest.raises(errors.QuotaExceeded):
        tenants.create_branch(db_session, admin, small.id, {"name": "Second", "code": "SEC"})


def test_inactive_branch_rejected_for_new_user(db_session, company, company_admin, super_admin):
    branch = tenants.create_branch(db_session, company_admin, company.id, {"name": "Sur", "code": "S1"})
    tenants.deactivate_branch(db_session, super_admin, branch.id)

    with pytest.raises(errors.ValidationError):
        identity.create_user(
            db_session,
            company_admin,
            {"email": "x@example.com", "first_name": "X", "last_name": "Y", "branch_id": branch.id},
        )


def test_user_creation_normalizes_and_checks_email(db_session, company, company_admin):
    user = identity.create_user(
        db_session,
        company_admin,
        {
            "email": "  Driver@Example.COM ",
            "first_name": "Luis",
            "last_name": "Pérez",
            "role": "operator",
            "vehicle_type_access": ["van", "truck"],
            "permission_overrides": {"maintenance": ["read", "create"]},
        },
    )
    assert user.email == "driver@example.com"
    assert user.company_id == company.id
    assert user.vehicle_type_access == ["van", "truck"]
    assert user.permission_overrides == {"maintenance": ["create", "read"]}

    with pytest.raises(errors.InvariantViolation):
        identity.create_user(
            db_session,
            company_admin,
            {"email": "driver@example.com", "first_name": "Other", "last_name": "Driver"},
        )


def test_unknown_override_module_is_a_validation_error(db_session, company, company_admin):
    with pytest.raises(errors.ValidationError):
        identity.create_user(
            db_session,
            company_admin,
            {
                "email": "typo@example.com",
                "first_name": "T",
                "last_name": "Y",
                "permission_overrides": {"vehicels": ["read"]},
            },
        )


def test_administrator_reference(db_session, super_admin, company, make_user):
    admin_user = make_user(company, Role.company_admin)
    mechanic = make_user(company, Role.mechanic)

    with pytest.raises(errors.InvariantViolation):
        tenants.set_company_administrator(db_session, super_admin, company.id, mechanic.id)

    tenants.set_company_administrator(db_session, super_admin, company.id, admin_user.id)
    assert company.administrator_user_id == admin_user.id

    identity.update_user_role(db_session, super_admin, admin_user.id, Role.branch_manager)
    assert company.administrator_user_id is None


def test_deactivating_administrator_clears_reference(db_session, super_admin, company, make_user):
    admin_user = make_user(company, Role.company_admin)
    tenants.set_company_administrator(db_session, super_admin, company.id, admin_user.id)

    identity.deactivate_user(db_session, super_admin, admin_user.id)
    assert admin_user.is_active is False
    assert company.administrator_user_id is None


def test_vehicle_type_access_update(db_session, company, company_admin, make_user):
    target = make_user(company, Role.operator)
    user = identity.set_vehicle_type_access(db_session, company_admin, target.id, ["truck", "car", "truck"])
    assert user.vehicle_type_access == ["car", "truck"]

    with pytest.raises(errors.ValidationError):
        identity.set_vehicle_type_access(db_session, company_admin, target.id, ["spaceship"])


def test_inactive_user_cannot_edit_profile(db_session, company, make_user, caller_for):
    user = make_user(company, Role.viewer, is_active=False)
    with pytest.raises(errors.AuthorizationDenied):
        identity.update_profile(db_session, caller_for(user), {"phone": "600000000"})


def test_missing_company_is_not_found(db_session):
    with pytest.raises(errors.NotFound):
        tenants.get_company(db_session, uuid.uuid4())
