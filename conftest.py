"""
Fixtures compartidas para los tests de los módulos

La base de test es SQLite en memoria (StaticPool: una sola conexión
compartida), así que DATABASE_URL y ENVIRONMENT deben fijarse antes de
importar la app.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"

from datetime import datetime, timedelta
from uuid import uuid4

import jwt
import pytest
from fastapi.testclient import TestClient

from app.core.config import settings
from app.database.database import Base, SessionLocal, engine, get_db
from app.main import app
from app.common.money import Currency
from app.modules.payments.models import Payment, PaymentStatus


# ===== DATABASE =====

@pytest.fixture
def db_session():
    """Sesión sobre un esquema recién creado para cada test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


# ===== HTTP =====

def make_token(role: str = "owner", email: str = "cajero@test.com") -> str:
    payload = {
        "sub": str(uuid4()),
        "email": email,
        "user_role": role,
        "exp": datetime.utcnow() + timedelta(hours=1),
    }
    return jwt.encode(payload, settings.APP_SECRET_STRING, algorithm=settings.ALGORITHM)


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Headers de un usuario owner (todos los permisos)"""
    return {"Authorization": f"Bearer {make_token('owner')}"}


@pytest.fixture
def headers_for():
    """Headers para un rol arbitrario"""
    def _headers(role: str, email: str = "usuario@test.com") -> dict:
        return {"Authorization": f"Bearer {make_token(role, email)}"}
    return _headers


# ===== FACTORIES =====

class FailingAuditSink:
    """Sink de auditoría que siempre falla"""

    def __init__(self):
        self.calls = 0

    def record(self, event):
        self.calls += 1
        raise RuntimeError("audit store down")


class RecordingAuditSink:
    """Sink de auditoría en memoria"""

    def __init__(self):
        self.events = []

    def record(self, event):
        self.events.append(event)


@pytest.fixture
def recording_sink():
    return RecordingAuditSink()


@pytest.fixture
def failing_sink():
    return FailingAuditSink()


@pytest.fixture
def payment_factory(db_session):
    """Crear pagos internos (APPROVED por defecto)"""
    def _create(amount_minor: int, occurred_at: datetime, currency: Currency = Currency.ARS,
                status: PaymentStatus = PaymentStatus.APPROVED) -> Payment:
        payment = Payment(
            amount_minor=amount_minor,
            currency=currency,
            occurred_at=occurred_at,
            status=status,
        )
        db_session.add(payment)
        db_session.commit()
        db_session.refresh(payment)
        return payment
    return _create
