import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fleethub.db import Base
from fleethub.models import models
from fleethub.schemas.common import Caller, Role
from fleethub.services import tenants, vehicles


@pytest.fixture()
def db_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = SessionLocal()
    yield db
    db.close()
    engine.dispose()


@pytest.fixture()
def super_admin():
    return Caller(id=uuid.uuid4(), role=Role.super_admin)


@pytest.fixture()
def make_company(db_session, super_admin):
    counter = {"n": 0}

    def _make(name=None, **plan):
        counter["n"] += 1
        company = tenants.create_company(
            db_session,
            super_admin,
            {
                "name": name or f"Company {counter['n']}",
                "tax_id": f"B{counter['n']:08d}",
                "subscription": plan or None,
            },
        )
        db_session.commit()
        return company

    return _make


@pytest.fixture()
def make_user(db_session):
    counter = {"n": 0}

    def _make(company, role=Role.viewer, **kw):
        counter["n"] += 1
        user = models.User(
            company_id=company.id if company is not None else None,
            email=f"user{counter['n']}@example.com",
            first_name="Test",
            last_name=f"User{counter['n']}",
            role=Role(role).value,
            permission_overrides=kw.pop("permission_overrides", {}),
            vehicle_type_access=kw.pop("vehicle_type_access", []),
            is_active=kw.pop("is_active", True),
            **kw,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture()
def caller_for():
    return Caller.from_user


@pytest.fixture()
def make_vehicle(db_session, super_admin):
    counter = {"n": 0}

    def _make(company, **attrs):
        counter["n"] += 1
        payload = {
            "plate_number": f"{counter['n']:04d}ABC",
            "make": "Ford",
            "model": "Transit",
            "year": 2020,
            "vehicle_type": "van",
        }
        payload.update(attrs)
        vehicle = vehicles.create_vehicle(db_session, super_admin, company.id, payload)
        db_session.commit()
        return vehicle

    return _make


@pytest.fixture()
def company(make_company):
    return make_company("Acme Logistics")


@pytest.fixture()
def company_admin(company, make_user, caller_for):
    return caller_for(make_user(company, Role.company_admin))
