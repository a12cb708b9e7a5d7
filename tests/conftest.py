from __future__ import annotations

import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path

import pytest

# Set env before any tripledger imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.tripledger_test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")
os.environ.setdefault("FX_AUTO_FETCH", "false")


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import tripledger.core.storage as storage_mod
    import tripledger.models  # noqa: F401
    from tripledger.core.db import engine
    from tripledger.core.models import Base

    storage_mod._storage = None

    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield


@dataclass(frozen=True)
class Team:
    organization_id: uuid.UUID
    org_admin_id: uuid.UUID
    manager_id: uuid.UUID
    employee_id: uuid.UUID
    accounting_id: uuid.UUID


@pytest.fixture
def team() -> Team:
    """One organization with an org admin, a manager, their report and an accountant."""
    from tripledger.core.db import SessionLocal
    from tripledger.modules.identity.models import Role
    from tripledger.modules.identity.service import create_organization, create_user

    with SessionLocal() as session:
        org = create_organization(
            session, name="Acme Travel", home_country="Israel", home_currency="USD"
        )
        org_admin = create_user(
            session,
            email="admin@acme.io",
            password="password123",
            roles=[Role.ORG_ADMIN],
            full_name="Olga Admin",
            organization_id=org.id,
            is_manager=True,
        )
        manager = create_user(
            session,
            email="manager@acme.io",
            password="password123",
            roles=[Role.MANAGER],
            full_name="Mia Manager",
            organization_id=org.id,
            is_manager=True,
        )
        employee = create_user(
            session,
            email="employee@acme.io",
            password="password123",
            full_name="Eli Employee",
            organization_id=org.id,
            manager_id=manager.id,
        )
        accounting = create_user(
            session,
            email="books@acme.io",
            password="password123",
            roles=[Role.ACCOUNTING_MANAGER],
            full_name="Ada Accounting",
            organization_id=org.id,
        )
        return Team(
            organization_id=org.id,
            org_admin_id=org_admin.id,
            manager_id=manager.id,
            employee_id=employee.id,
            accounting_id=accounting.id,
        )
