"""Fixtures compartilhadas: banco SQLite em memória, usuários e dados de exemplo."""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from mantencion_pro.database import create_db_and_tables, get_session
from mantencion_pro.main import app
from mantencion_pro.models import Equipment, Part, Role, User
from mantencion_pro.orders import create_maintenance


def _save(session, obj):
    session.add(obj)
    session.commit()
    session.refresh(obj)
    return obj


@pytest.fixture(name="engine")
def engine_fixture():
    # Uma única conexão compartilhada: todas as sessões enxergam o mesmo banco
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    create_db_and_tables(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="client")
def client_fixture(engine):
    def get_session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = get_session_override
    yield TestClient(app)
    app.dependency_overrides.clear()


# --- Usuários ---

@pytest.fixture
def admin(session):
    return _save(session, User(uid="admin-1", email="admin@flota.cl", name="Ana Admin", role=Role.ADMIN))


@pytest.fixture
def mechanic(session):
    return _save(session, User(uid="mec-1", email="mecanico@flota.cl", name="Mario Mecánico", role=Role.MECHANIC))


@pytest.fixture
def driver(session):
    return _save(session, User(uid="con-1", email="conductor@flota.cl", name="Carla Conductora", role=Role.DRIVER))


# --- Dados de exemplo ---

@pytest.fixture
def truck(session):
    return _save(session, Equipment(
        number="12", plate="ABCD12", model="Volvo FH", year=2020,
        mileage=10000, next_maintenance_km=15000,
    ))


@pytest.fixture
def make_part(session):
    def factory(name="Filtro de aceite", stock=5, minimum=1, **fields):
        return _save(session, Part(name=name, stock=stock, minimum=minimum, **fields))
    return factory


@pytest.fixture
def maintenance_order(session, mechanic, truck):
    return create_maintenance(
        session, mechanic, "Cambio de aceite", equipment_id=truck.id, mileage=12000,
    )
