"""Test configuration and fixtures."""
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient

from app.core import config
from app.core.database.engine import build_engine, build_sessionmaker, get_db, init_db
from app.core.rate_limit import limiter
from app.features.permissions.capabilities import Action
from app.features.permissions.dependencies import get_authorization_service, get_mutation_gateway
from app.features.permissions.gateway import MutationGateway
from app.features.permissions.models import Group, Module, Permission, Role
from app.features.permissions.service import AuthorizationService
from app.features.permissions.store import EntityStore, Relation
from app.features.users.models import User

from tests.helpers import ADMIN_SUBJECT, auth_headers


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite database per test."""
    async_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(async_engine)
    yield async_engine
    await async_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as db:
        yield db


@pytest.fixture
def store(session):
    return EntityStore(session)


@pytest.fixture
def authorization(session_factory):
    return AuthorizationService(session_factory)


@pytest.fixture
def gateway(authorization, session_factory):
    return MutationGateway(authorization, session_factory)


@pytest.fixture
async def graph(gateway):
    """
    alice -> Editors -> ContentEditor -> {Modules:read, Modules:update}.
    bob exists and belongs to no group.
    """
    modules = await gateway.create(Module, {"name": "Modules"})
    roles_module = await gateway.create(Module, {"name": "Roles"})

    permissions = {}
    for action in (Action.READ, Action.UPDATE, Action.DELETE):
        permissions[f"Modules:{action.value}"] = await gateway.create(
            Permission, {"module_id": modules.id, "action": action}
        )
    permissions["Roles:create"] = await gateway.create(
        Permission, {"module_id": roles_module.id, "action": Action.CREATE}
    )

    editor = await gateway.create(Role, {"name": "ContentEditor"})
    await gateway.assign(Relation.ROLE_PERMISSION, editor.id, permissions["Modules:read"].id)
    await gateway.assign(Relation.ROLE_PERMISSION, editor.id, permissions["Modules:update"].id)

    editors = await gateway.create(Group, {"name": "Editors"})
    await gateway.assign(Relation.GROUP_ROLE, editors.id, editor.id)

    alice = await gateway.create(User, {"username": "alice", "credential_ref": "alice-subject"})
    bob = await gateway.create(User, {"username": "bob", "credential_ref": "bob-subject"})
    await gateway.assign(Relation.USER_GROUP, alice.id, editors.id)

    return SimpleNamespace(
        modules=modules,
        roles_module=roles_module,
        permissions=permissions,
        editor=editor,
        editors=editors,
        alice=alice,
        bob=bob,
    )


@pytest.fixture
async def seeded(gateway, session_factory, monkeypatch):
    """Console modules, the Administrator role and a bootstrap admin user."""
    from scripts.seed_permissions import seed

    monkeypatch.setattr(config, "BOOTSTRAP_ADMIN_CREDENTIAL_REF", ADMIN_SUBJECT)
    monkeypatch.setattr(config, "BOOTSTRAP_ADMIN_USERNAME", "admin")
    async with session_factory() as db:
        await seed(gateway, db)
        admin = await EntityStore(db).find_user(credential_ref=ADMIN_SUBJECT)
    return admin


@pytest.fixture
def app(session_factory, authorization, gateway):
    """The application wired to the per-test database and services."""
    from app.main import app as fastapi_app

    async def override_get_db():
        async with session_factory() as db:
            try:
                yield db
            except Exception:
                await db.rollback()
                raise

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_authorization_service] = lambda: authorization
    fastapi_app.dependency_overrides[get_mutation_gateway] = lambda: gateway
    limiter.reset()
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def admin_headers(seeded):
    return auth_headers(ADMIN_SUBJECT)
